"""
=============================================================================
R6CASH - Ingesta de Pagos
=============================================================================
Dos caminos independientes acreditan depósitos y deben converger:
- Webhook del procesador (checkout.session.completed)
- Verificación del cliente al volver del checkout

Ambos ejecutan la misma secuencia idempotente:
1. Si payment_completions ya tiene la sesión -> devuelve el resultado previo
2. Consulta la sesión al procesador (pagada, usuario correcto)
3. Calcula neto = bruto - fee del procesador - comisión de depósito
4. Acredita en el ledger (deposit, external_ref = session_id)
5. Inserta la fila en payment_completions como último paso, en la misma
   transacción que el crédito

Si los dos caminos compiten, el UNIQUE sobre session_id deja pasar sólo a
uno; el otro detecta la fila y devuelve el resultado original.
=============================================================================
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import log_payment_verification_error
from .commission import record_revenue, split_deposit
from .config import Settings
from .database import Database
from .errors import ExternalServiceError, Forbidden, InvalidInput
from .ledger import ZERO, apply_ledger_entry, ensure_profile, to_cents, to_money
from .models import PaymentCompletion, PaymentSource, Profile, RevenueType, TransactionType
from .processor import PaymentProcessor, ProcessorTimeout
from .websocket_handler import Outbox, RealtimeHub

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass
class PaymentOutcome:
    """Resultado de una ingesta. `pending` no es un error: se puede reintentar."""

    status: str
    session_id: str
    amount_credited: Decimal = ZERO
    gross_amount: Optional[Decimal] = None
    processor_fee: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None
    message: Optional[str] = None
    retryable: bool = False

    CREDITED = "credited"
    ALREADY_CREDITED = "already_credited"
    PENDING = "pending"

    @property
    def success(self) -> bool:
        return self.status in (self.CREDITED, self.ALREADY_CREDITED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "session_id": self.session_id,
            "amount_credited": self.amount_credited,
            "gross_amount": self.gross_amount,
            "processor_fee": self.processor_fee,
            "new_balance": self.new_balance,
            "message": self.message,
            "retryable": self.retryable,
        }


def _parse_user_id(value: Any) -> Optional[uuid.UUID]:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class PaymentIngestion:
    """Acreditación idempotente de depósitos."""

    def __init__(
        self,
        database: Database,
        processor: Optional[PaymentProcessor],
        settings: Settings,
        hub: Optional[RealtimeHub] = None,
    ):
        self._db = database
        self._processor = processor
        self._settings = settings
        self._hub = hub

    def _require_processor(self) -> PaymentProcessor:
        if self._processor is None:
            raise ExternalServiceError("Payment processor is not configured")
        return self._processor

    # -------------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------------

    async def create_checkout(
        self,
        user_id: uuid.UUID,
        amount: Any,
        *,
        customer_email: Optional[str] = None,
    ) -> Dict[str, str]:
        """Crea una sesión de checkout para uno de los montos permitidos."""
        amount = to_money(amount)
        if amount not in self._settings.deposit_amounts:
            allowed = ", ".join(f"${a}" for a in self._settings.deposit_amounts)
            raise InvalidInput(f"Monto de depósito inválido. Permitidos: {allowed}")

        processor = self._require_processor()
        site = self._settings.public_site_url.rstrip("/")
        checkout = await processor.create_checkout_session(
            amount_cents=to_cents(amount),
            metadata={"user_id": str(user_id), "amount": str(amount), "type": "deposit"},
            success_url=f"{site}/?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{site}/?payment=cancelled",
            customer_email=customer_email,
        )
        logger.info("Checkout %s for user %s (%s)", checkout.session_id, user_id, amount)
        return {"url": checkout.url, "session_id": checkout.session_id}

    # -------------------------------------------------------------------------
    # Ingesta
    # -------------------------------------------------------------------------

    async def _find_completion(self, session: AsyncSession, session_id: str) -> Optional[PaymentCompletion]:
        result = await session.execute(
            select(PaymentCompletion).where(PaymentCompletion.session_id == session_id)
        )
        return result.scalar_one_or_none()

    async def _prior_outcome(
        self,
        completion: PaymentCompletion,
        expected_user_id: Optional[uuid.UUID],
    ) -> PaymentOutcome:
        if expected_user_id is not None and completion.user_id != expected_user_id:
            logger.warning(
                "Session %s already credited to %s, requested by %s",
                completion.session_id, completion.user_id, expected_user_id,
            )
            raise Forbidden()
        async with self._db.session() as session:
            profile = await session.get(Profile, completion.user_id)
        return PaymentOutcome(
            status=PaymentOutcome.ALREADY_CREDITED,
            session_id=completion.session_id,
            amount_credited=completion.amount_credited,
            gross_amount=completion.gross_amount,
            processor_fee=completion.processor_fee,
            new_balance=profile.balance if profile else None,
            message="Pago ya acreditado",
        )

    async def _record_error(
        self,
        session_id: str,
        message: str,
        *,
        user_id: Optional[uuid.UUID] = None,
        action: str = "PAYMENT_VERIFICATION_ERROR",
        context: Optional[dict] = None,
    ) -> None:
        try:
            async with self._db.transaction() as session:
                await log_payment_verification_error(
                    session, session_id, message, user_id=user_id, context=context, action=action
                )
        except Exception:
            logger.exception("Could not persist payment verification error for %s", session_id)

    async def ingest(
        self,
        session_id: str,
        expected_user_id: uuid.UUID,
        source: PaymentSource,
    ) -> PaymentOutcome:
        """
        Verifica y acredita una sesión de checkout exactamente una vez.

        Raises:
            Forbidden: la sesión pertenece a otro usuario (nada se acredita)
            ExternalServiceError: el procesador falló (reintentable)
        """
        session_id = (session_id or "").strip()
        if not session_id:
            raise InvalidInput("session_id requerido")

        # 1. Resultado previo
        async with self._db.session() as session:
            completion = await self._find_completion(session, session_id)
        if completion is not None:
            return await self._prior_outcome(completion, expected_user_id)

        # 2. Verificación con el procesador
        processor = self._require_processor()
        try:
            remote = await processor.retrieve_session(session_id)
        except ProcessorTimeout:
            logger.warning("Processor timed out for session %s, reporting pending", session_id)
            return PaymentOutcome(
                status=PaymentOutcome.PENDING,
                session_id=session_id,
                message="El procesador no respondió a tiempo, reintente",
                retryable=True,
            )
        except ExternalServiceError as exc:
            logger.error("Processor error for session %s: %s", session_id, exc.message)
            await self._record_error(session_id, exc.message, user_id=expected_user_id)
            raise

        if not remote.is_paid:
            logger.info("Session %s not paid yet (%s)", session_id, remote.payment_status)
            return PaymentOutcome(
                status=PaymentOutcome.PENDING,
                session_id=session_id,
                message=f"Pago no completado: {remote.payment_status}",
            )

        owner_id = _parse_user_id(remote.user_id)
        if owner_id is None or owner_id != expected_user_id:
            logger.warning(
                "Payment user mismatch for session %s: metadata=%s caller=%s (%s)",
                session_id, remote.user_id, expected_user_id, source.value,
            )
            await self._record_error(
                session_id,
                "Payment user mismatch",
                user_id=expected_user_id,
                action="PAYMENT_USER_MISMATCH",
                context={"metadata_user_id": remote.user_id, "source": source.value},
            )
            raise Forbidden()

        if remote.amount_total_cents is None or remote.amount_total_cents <= 0:
            await self._record_error(session_id, "Session without amount", user_id=owner_id)
            raise ExternalServiceError(f"Session {session_id} has no amount")

        split = split_deposit(remote.gross_amount, self._settings)

        # 3-5. Crédito + ingreso + completion en una sola transacción
        outbox = Outbox(self._hub)
        try:
            async with self._db.transaction() as session:
                completion = await self._find_completion(session, session_id)
                if completion is not None:
                    prior = completion
                else:
                    prior = None
                    await ensure_profile(session, owner_id, default_elo=self._settings.default_elo)
                    entry = await apply_ledger_entry(
                        session,
                        owner_id,
                        split.net_credit,
                        TransactionType.DEPOSIT,
                        external_ref=session_id,
                        processor_fee=split.processor_fee,
                        description=f"Depósito ${split.gross} (fee ${split.processor_fee})",
                    )
                    await record_revenue(
                        session,
                        split.platform_commission,
                        RevenueType.DEPOSIT_COMMISSION,
                        user_id=owner_id,
                        source_transaction_id=entry.id,
                        external_ref=session_id,
                    )
                    session.add(PaymentCompletion(
                        session_id=session_id,
                        user_id=owner_id,
                        gross_amount=split.gross,
                        processor_fee=split.processor_fee,
                        amount_credited=split.net_credit,
                        source=source,
                        transaction_id=entry.id,
                    ))
                    await session.flush()
                    profile = await session.get(Profile, owner_id)
                    new_balance = profile.balance
                    outbox.balance(profile)
        except IntegrityError:
            # Otro camino insertó la misma sesión primero
            async with self._db.session() as session:
                prior = await self._find_completion(session, session_id)
            if prior is None:
                raise
            logger.info("Session %s was credited concurrently", session_id)

        if prior is not None:
            return await self._prior_outcome(prior, expected_user_id)

        logger.info(
            "[DEPOSIT] %s credited %s (gross %s, fee %s) via %s",
            owner_id, split.net_credit, split.gross, split.processor_fee, source.value,
        )
        await outbox.deliver()
        return PaymentOutcome(
            status=PaymentOutcome.CREDITED,
            session_id=session_id,
            amount_credited=split.net_credit,
            gross_amount=split.gross,
            processor_fee=split.processor_fee,
            new_balance=new_balance,
            message="Pago acreditado",
        )

    async def handle_webhook_event(self, event: Dict[str, Any]) -> Optional[PaymentOutcome]:
        """
        Procesa un evento ya verificado. Eventos distintos de
        checkout.session.completed se ignoran (retorna None).
        """
        event_type = event.get("type")
        if event_type != CHECKOUT_COMPLETED:
            logger.info("Ignoring webhook event %s", event_type)
            return None

        obj = (event.get("data") or {}).get("object") or {}
        session_id = obj.get("id")
        user_id = _parse_user_id((obj.get("metadata") or {}).get("user_id"))
        if not session_id or user_id is None:
            raise InvalidInput("Evento de checkout sin session id o user_id")

        if obj.get("payment_status") not in (None, "paid"):
            return PaymentOutcome(status=PaymentOutcome.PENDING, session_id=session_id)
        return await self.ingest(session_id, user_id, PaymentSource.WEBHOOK)

    # -------------------------------------------------------------------------
    # Crédito manual
    # -------------------------------------------------------------------------

    async def deposit_credit(
        self,
        user_id: uuid.UUID,
        amount: Any,
        external_ref: str,
        *,
        admin_id: Optional[uuid.UUID] = None,
    ) -> PaymentOutcome:
        """
        Crédito manual de un depósito conciliado fuera de línea.
        Idempotente sobre `external_ref` (misma tabla payment_completions).
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidInput("El monto debe ser positivo")
        external_ref = (external_ref or "").strip()
        if not external_ref:
            raise InvalidInput("external_ref requerido")

        commission = to_money(amount * self._settings.deposit_commission_rate)
        net = amount - commission
        outbox = Outbox(self._hub)
        prior = None

        try:
            async with self._db.transaction() as session:
                prior = await self._find_completion(session, external_ref)
                if prior is None:
                    await ensure_profile(session, user_id, default_elo=self._settings.default_elo)
                    entry = await apply_ledger_entry(
                        session,
                        user_id,
                        net,
                        TransactionType.DEPOSIT,
                        external_ref=external_ref,
                        description=f"Crédito manual por {admin_id or 'sistema'}",
                    )
                    await record_revenue(
                        session,
                        commission,
                        RevenueType.DEPOSIT_COMMISSION,
                        user_id=user_id,
                        source_transaction_id=entry.id,
                        external_ref=external_ref,
                    )
                    session.add(PaymentCompletion(
                        session_id=external_ref,
                        user_id=user_id,
                        gross_amount=amount,
                        processor_fee=ZERO,
                        amount_credited=net,
                        source=PaymentSource.MANUAL,
                        transaction_id=entry.id,
                    ))
                    await session.flush()
                    profile = await session.get(Profile, user_id)
                    new_balance = profile.balance
                    outbox.balance(profile)
        except IntegrityError:
            async with self._db.session() as session:
                prior = await self._find_completion(session, external_ref)
            if prior is None:
                raise

        if prior is not None:
            return await self._prior_outcome(prior, user_id)

        logger.info("[DEPOSIT] Manual credit %s to %s (ref %s) by %s", net, user_id, external_ref, admin_id)
        await outbox.deliver()
        return PaymentOutcome(
            status=PaymentOutcome.CREDITED,
            session_id=external_ref,
            amount_credited=net,
            gross_amount=amount,
            processor_fee=ZERO,
            new_balance=new_balance,
            message="Crédito aplicado",
        )


__all__ = ["PaymentIngestion", "PaymentOutcome", "CHECKOUT_COMPLETED"]
