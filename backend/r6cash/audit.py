"""Bitácora persistente de acciones administrativas y errores del sistema."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog

logger = logging.getLogger(__name__)

# Acciones que cuentan como error en el health check
ERROR_ACTIONS = (
    "SYSTEM_ERROR",
    "PAYMENT_VERIFICATION_ERROR",
    "PAYMENT_USER_MISMATCH",
    "WEBHOOK_SIGNATURE_INVALID",
)


async def record_audit(
    session: AsyncSession,
    action: str,
    *,
    user_id: Optional[uuid.UUID] = None,
    table_name: Optional[str] = None,
    record_id: Optional[str] = None,
    old_values: Optional[Any] = None,
    new_values: Optional[Any] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=user_id,
        action=action,
        table_name=table_name,
        record_id=record_id,
        old_values=old_values,
        new_values=new_values,
        ip_address=ip_address,
    )
    session.add(entry)
    await session.flush()
    return entry


async def log_system_error(
    session: AsyncSession,
    error_type: str,
    error_message: str,
    *,
    severity: str = "error",
    context: Optional[dict] = None,
    user_id: Optional[uuid.UUID] = None,
) -> AuditLog:
    logger.error("System error [%s/%s]: %s", error_type, severity, error_message)
    return await record_audit(
        session,
        "SYSTEM_ERROR",
        user_id=user_id,
        record_id=error_type[:255],
        new_values={
            "error_type": error_type,
            "severity": severity,
            "message": error_message,
            "context": context or {},
        },
    )


async def log_payment_verification_error(
    session: AsyncSession,
    session_id: str,
    error_message: str,
    *,
    user_id: Optional[uuid.UUID] = None,
    context: Optional[dict] = None,
    action: str = "PAYMENT_VERIFICATION_ERROR",
) -> AuditLog:
    return await record_audit(
        session,
        action,
        user_id=user_id,
        table_name="payment_completions",
        record_id=session_id[:255],
        new_values={"message": error_message, "context": context or {}},
    )


async def count_recent(
    session: AsyncSession,
    actions: Iterable[str] = ERROR_ACTIONS,
    *,
    since: Optional[datetime] = None,
) -> int:
    since = since or datetime.now(timezone.utc) - timedelta(hours=1)
    result = await session.execute(
        select(func.count(AuditLog.id)).where(
            AuditLog.action.in_(list(actions)),
            AuditLog.created_at >= since,
        )
    )
    return int(result.scalar_one())
