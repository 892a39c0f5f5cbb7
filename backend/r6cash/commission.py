"""
=============================================================================
R6CASH - Comisiones de la Plataforma
=============================================================================
Cálculo de comisiones y libro de ingresos (platform_revenue).

- Partidas: comisión = pot × tasa configurada (5% por defecto)
- Depósitos: fee del procesador (2.9% + $0.30) y comisión de depósito
  opcional, ambas descontadas del crédito neto
- Barrido periódico: reclama las filas no barridas, transfiere a la cuenta
  del operador con el id del barrido como llave de idempotencia y marca cada
  fila con el transfer_id. Un barrido interrumpido se retoma, no se repite.
=============================================================================
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .config import Settings
from .database import Database
from .errors import Conflict, ExternalServiceError, InvalidInput
from .ledger import ZERO, to_cents, to_money
from .models import CommissionSweep, PlatformRevenue, RevenueType, SweepStatus, utcnow
from .processor import PaymentProcessor

logger = logging.getLogger(__name__)

SWEEP_PERIODS: Dict[str, timedelta] = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


# =============================================================================
# CÁLCULOS
# =============================================================================

def calculate_game_commission(stake: Decimal, num_players: int, rate: Decimal) -> Dict[str, Decimal]:
    """
    Calcula la comisión total y el premio neto de una partida.

    Returns:
        Dict con total_pot, commission y winner_payout. Se cumple siempre
        total_pot == commission + winner_payout.
    """
    if num_players < 1:
        raise InvalidInput("La partida no tiene jugadores")
    total_pot = to_money(to_money(stake) * num_players)
    commission = to_money(total_pot * rate)
    return {
        "total_pot": total_pot,
        "commission": commission,
        "winner_payout": total_pot - commission,
    }


def calculate_processor_fee(gross: Decimal, rate: Decimal, fixed: Decimal) -> Decimal:
    """fee = gross × rate + fixed, redondeado a centavos (ROUND_HALF_UP)."""
    return to_money(to_money(gross) * rate + fixed)


@dataclass(frozen=True)
class DepositSplit:
    gross: Decimal
    processor_fee: Decimal
    platform_commission: Decimal
    net_credit: Decimal


def split_deposit(gross: Decimal, settings: Settings) -> DepositSplit:
    """Divide un depósito bruto en fee, comisión y crédito neto."""
    gross = to_money(gross)
    fee = calculate_processor_fee(gross, settings.processor_fee_rate, settings.processor_fee_fixed)
    commission = to_money(gross * settings.deposit_commission_rate)
    net = gross - fee - commission
    if net <= 0:
        raise InvalidInput("El depósito no cubre las comisiones")
    return DepositSplit(gross=gross, processor_fee=fee, platform_commission=commission, net_credit=net)


async def record_revenue(
    session: AsyncSession,
    amount: Decimal,
    revenue_type: RevenueType,
    *,
    game_id: Optional[int] = None,
    user_id: Optional[uuid.UUID] = None,
    source_transaction_id: Optional[uuid.UUID] = None,
    external_ref: Optional[str] = None,
) -> PlatformRevenue:
    """Agrega una fila al libro de ingresos dentro de la transacción del llamador."""
    row = PlatformRevenue(
        amount=to_money(amount),
        transaction_type=revenue_type,
        game_id=game_id,
        user_id=user_id,
        source_transaction_id=source_transaction_id,
        external_ref=external_ref,
    )
    session.add(row)
    await session.flush()
    logger.info("[REVENUE] %s %s (game=%s user=%s)", revenue_type.value, row.amount, game_id, user_id)
    return row


# =============================================================================
# BARRIDO DE COMISIONES
# =============================================================================

@dataclass(frozen=True)
class _SweepClaim:
    sweep_id: uuid.UUID
    period: str
    amount: Decimal
    count: int
    window_start: datetime
    window_end: datetime
    resumed: bool

    @classmethod
    def of(cls, sweep: CommissionSweep, *, resumed: bool) -> "_SweepClaim":
        return cls(
            sweep_id=sweep.id,
            period=sweep.period,
            amount=to_money(sweep.amount),
            count=sweep.row_count,
            window_start=sweep.window_start,
            window_end=sweep.window_end,
            resumed=resumed,
        )


class CommissionService:
    """Barrido periódico y resumen del libro de ingresos."""

    def __init__(self, database: Database, processor: Optional[PaymentProcessor], settings: Settings):
        self._db = database
        self._processor = processor
        self._settings = settings

    async def sweep(self, period: str, admin_id: uuid.UUID, *, now: Optional[datetime] = None) -> dict:
        """
        Transfiere las comisiones no barridas del periodo a la cuenta del
        operador, en tres fases:

        1. Reclama las filas (sweep_id) y registra el barrido en una
           transacción confirmada.
        2. Llama al procesador fuera de toda transacción, con el id del
           barrido como llave de idempotencia.
        3. Confirma el transfer_id en el barrido y en sus filas.

        Si existe un barrido reclamado sin confirmar, se retoma con la misma
        llave en lugar de seleccionar filas nuevas.
        """
        window = SWEEP_PERIODS.get(period)
        if window is None:
            raise InvalidInput(f"Periodo inválido: {period!r}")
        if self._processor is None or not self._settings.operator_account_id:
            raise ExternalServiceError("Operator payout account is not configured")
        now = now or datetime.now(timezone.utc)

        claim = await self._claim(period, admin_id, now - window, now)
        if claim is None:
            logger.info("[SWEEP] No pending commissions for %s", period)
            return {
                "success": True,
                "amount": ZERO,
                "count": 0,
                "transfer_id": None,
                "sweep_id": None,
                "resumed": False,
            }

        transfer_id = await self._processor.create_transfer(
            amount_cents=to_cents(claim.amount),
            destination=self._settings.operator_account_id,
            description=f"R6Cash commission transfer - {claim.period} - {claim.count} transactions",
            idempotency_key=f"commission-{claim.sweep_id}",
        )

        await self._finalize(claim, transfer_id, admin_id)
        return {
            "success": True,
            "amount": claim.amount,
            "count": claim.count,
            "transfer_id": transfer_id,
            "sweep_id": claim.sweep_id,
            "resumed": claim.resumed,
        }

    async def _claim(
        self, period: str, admin_id: uuid.UUID, start: datetime, end: datetime
    ) -> Optional[_SweepClaim]:
        async with self._db.transaction() as session:
            result = await session.execute(
                select(CommissionSweep)
                .where(CommissionSweep.status == SweepStatus.PENDING)
                .order_by(CommissionSweep.created_at)
                .limit(1)
                .with_for_update()
            )
            pending = result.scalar_one_or_none()
            if pending is not None:
                logger.warning("[SWEEP] Resuming interrupted sweep %s (%s)", pending.id, pending.period)
                return _SweepClaim.of(pending, resumed=True)

            result = await session.execute(
                select(PlatformRevenue)
                .where(
                    PlatformRevenue.sweep_id.is_(None),
                    PlatformRevenue.transfer_id.is_(None),
                    PlatformRevenue.amount > 0,
                    PlatformRevenue.created_at >= start,
                    PlatformRevenue.created_at <= end,
                )
                .order_by(PlatformRevenue.created_at, PlatformRevenue.id)
                .with_for_update()
            )
            rows = list(result.scalars().all())
            if not rows:
                return None

            sweep = CommissionSweep(
                period=period,
                amount=to_money(sum((r.amount for r in rows), ZERO)),
                row_count=len(rows),
                window_start=start,
                window_end=end,
                requested_by=admin_id,
            )
            session.add(sweep)
            await session.flush()

            ids = [r.id for r in rows]
            claimed = await session.execute(
                update(PlatformRevenue)
                .where(PlatformRevenue.id.in_(ids), PlatformRevenue.sweep_id.is_(None))
                .values(sweep_id=sweep.id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != len(ids):
                raise Conflict("Las comisiones fueron reclamadas por otro barrido")
            logger.info("[SWEEP] Claimed %d rows (%s) as sweep %s", len(ids), sweep.amount, sweep.id)
            return _SweepClaim.of(sweep, resumed=False)

    async def _finalize(self, claim: _SweepClaim, transfer_id: str, admin_id: uuid.UUID) -> None:
        async with self._db.transaction() as session:
            done = await session.execute(
                update(CommissionSweep)
                .where(CommissionSweep.id == claim.sweep_id, CommissionSweep.status == SweepStatus.PENDING)
                .values(status=SweepStatus.COMPLETED, transfer_id=transfer_id, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if done.rowcount != 1:
                logger.info("[SWEEP] Sweep %s already finalized", claim.sweep_id)
                return

            await session.execute(
                update(PlatformRevenue)
                .where(PlatformRevenue.sweep_id == claim.sweep_id)
                .values(transfer_id=transfer_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await record_audit(
                session,
                "COMMISSION_PROCESSED",
                user_id=admin_id,
                table_name="commission_sweeps",
                record_id=str(claim.sweep_id),
                new_values={
                    "period": claim.period,
                    "amount": str(claim.amount),
                    "count": claim.count,
                    "transfer_id": transfer_id,
                    "resumed": claim.resumed,
                    "start_date": claim.window_start.isoformat(),
                    "end_date": claim.window_end.isoformat(),
                },
            )

        logger.info(
            "[SWEEP] %s: %s across %d rows -> %s", claim.period, claim.amount, claim.count, transfer_id
        )

    async def summary(self) -> dict:
        """Totales por tipo, barridos y pendientes."""
        swept = case((PlatformRevenue.transfer_id.is_not(None), PlatformRevenue.amount), else_=0)
        pending = case((PlatformRevenue.transfer_id.is_(None), PlatformRevenue.amount), else_=0)
        async with self._db.session() as session:
            result = await session.execute(
                select(
                    PlatformRevenue.transaction_type,
                    func.count(PlatformRevenue.id),
                    func.coalesce(func.sum(PlatformRevenue.amount), 0),
                    func.coalesce(func.sum(swept), 0),
                    func.coalesce(func.sum(pending), 0),
                ).group_by(PlatformRevenue.transaction_type)
            )
            rows = result.all()

        by_type = {}
        totals = {"total": ZERO, "swept": ZERO, "unswept": ZERO, "count": 0}
        for revenue_type, count, total, swept_total, pending_total in rows:
            key = RevenueType(revenue_type).value
            by_type[key] = {
                "count": count,
                "total": to_money(total),
                "swept": to_money(swept_total),
                "unswept": to_money(pending_total),
            }
            totals["count"] += count
            totals["total"] += to_money(total)
            totals["swept"] += to_money(swept_total)
            totals["unswept"] += to_money(pending_total)
        return {"by_type": by_type, **totals}


__all__ = [
    "CommissionService",
    "DepositSplit",
    "SWEEP_PERIODS",
    "calculate_game_commission",
    "calculate_processor_fee",
    "record_revenue",
    "split_deposit",
]
