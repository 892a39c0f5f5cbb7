"""
=============================================================================
R6CASH - Monitoreo: Actividad Sospechosa y Salud del Sistema
=============================================================================
Detección del lado del servidor (la ventana es la última hora):
- high_transaction_volume:   más transacciones que el umbral configurado
- rapid_game_creation:       más partidas creadas que el umbral configurado
- payment_identity_mismatch: intentos de acreditar sesiones de otro usuario

Health check: métricas operativas + verificaciones de base de datos,
integridad del ledger y configuración del procesador.
=============================================================================
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from .audit import count_recent
from .config import Settings
from .database import Database
from .ledger import ZERO, ledger_drift, to_money
from .models import (
    AuditLog,
    Game,
    GameStatus,
    PlatformRevenue,
    Profile,
    Transaction,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .withdrawals import pending_total

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# Umbrales del health check
WARNING_RECENT_ERRORS = 10
CRITICAL_RECENT_ERRORS = 50


class MonitoringService:
    def __init__(self, database: Database, settings: Settings):
        self._db = database
        self._settings = settings

    async def detect_suspicious_activity(self, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Retorna `[{user_id, reason, count}]` para la última hora."""
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=1)
        findings: List[Dict[str, Any]] = []

        async with self._db.session() as session:
            tx_counts = await session.execute(
                select(Transaction.user_id, func.count(Transaction.id))
                .where(Transaction.created_at >= since)
                .group_by(Transaction.user_id)
                .having(func.count(Transaction.id) > self._settings.suspicious_transactions_per_hour)
            )
            for user_id, count in tx_counts.all():
                findings.append({"user_id": user_id, "reason": "high_transaction_volume", "count": count})

            game_counts = await session.execute(
                select(Game.creator_id, func.count(Game.id))
                .where(Game.created_at >= since)
                .group_by(Game.creator_id)
                .having(func.count(Game.id) > self._settings.suspicious_games_per_hour)
            )
            for user_id, count in game_counts.all():
                findings.append({"user_id": user_id, "reason": "rapid_game_creation", "count": count})

            mismatches = await session.execute(
                select(AuditLog.user_id, func.count(AuditLog.id))
                .where(
                    AuditLog.action == "PAYMENT_USER_MISMATCH",
                    AuditLog.created_at >= since,
                    AuditLog.user_id.is_not(None),
                )
                .group_by(AuditLog.user_id)
            )
            for user_id, count in mismatches.all():
                findings.append({"user_id": user_id, "reason": "payment_identity_mismatch", "count": count})

        if findings:
            logger.warning("Suspicious activity detected: %d findings", len(findings))
        return findings

    async def system_health_check(self) -> Dict[str, Any]:
        database_ok = await self._db.ping()
        metrics: Dict[str, Any] = {}
        drift: List[dict] = []

        if database_ok:
            async with self._db.session() as session:
                metrics["total_users"] = await _count(session, select(func.count(Profile.id)))
                metrics["active_games"] = await _count(
                    session, select(func.count(Game.id)).where(Game.status == GameStatus.ACTIVE)
                )
                metrics["waiting_games"] = await _count(
                    session, select(func.count(Game.id)).where(Game.status == GameStatus.WAITING)
                )
                metrics["pending_withdrawals"] = await _count(
                    session,
                    select(func.count(WithdrawalRequest.id)).where(
                        WithdrawalRequest.status.in_([WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED])
                    ),
                )
                metrics["pending_withdrawal_amount"] = await pending_total(session)
                metrics["recent_errors"] = await count_recent(session)
                unswept = await session.execute(
                    select(func.coalesce(func.sum(PlatformRevenue.amount), 0)).where(
                        PlatformRevenue.transfer_id.is_(None)
                    )
                )
                metrics["unswept_commission"] = to_money(unswept.scalar_one() or ZERO)
                drift = await ledger_drift(session)

        checks = {
            "database_connection": database_ok,
            "ledger_integrity": database_ok and not drift,
            "payment_processor_configured": self._settings.processor_configured,
        }

        if not database_ok or drift:
            status = "CRITICAL"
        elif metrics.get("recent_errors", 0) >= CRITICAL_RECENT_ERRORS:
            status = "CRITICAL"
        elif metrics.get("recent_errors", 0) >= WARNING_RECENT_ERRORS or not checks["payment_processor_configured"]:
            status = "WARNING"
        else:
            status = "HEALTHY"

        if drift:
            logger.error("Ledger integrity check failed for %d profiles: %s", len(drift), drift[:5])
        return {
            "status": status,
            "metrics": metrics,
            "additional_checks": checks,
            "ledger_drift": drift,
            "version": SERVICE_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


async def _count(session, query) -> int:
    result = await session.execute(query)
    return int(result.scalar_one())


__all__ = ["MonitoringService", "SERVICE_VERSION"]
