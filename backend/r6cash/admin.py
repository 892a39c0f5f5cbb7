"""
=============================================================================
R6CASH - Endpoints de Administración, Wallet y Webhooks
=============================================================================
- router:         panel de administración (cola de retiros, comisiones,
                  actividad sospechosa, salud del sistema)
- wallet_router:  balance, historial, depósitos y retiros del usuario
- webhook_router: callback firmado del procesador de pagos
=============================================================================
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status

from .audit import record_audit
from .deps import client_ip, get_current_admin, get_current_user, get_services, rate_limit
from .errors import ExternalServiceError, NotFound
from .ledger import list_transactions
from .models import PaymentSource, Profile, WithdrawalStatus
from .processor import WebhookSignatureError, verify_webhook_signature
from .schemas import (
    BalanceResponse,
    CheckoutRequest,
    CheckoutResponse,
    CommissionSweepRequest,
    PaymentResponse,
    SuspiciousActivity,
    TransactionResponse,
    VerifyPaymentRequest,
    WithdrawalActionRequest,
    WithdrawalCreateRequest,
    WithdrawalCreatedResponse,
    WithdrawalResponse,
    encode,
)
from .security import AuthenticatedUser
from .services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])
wallet_router = APIRouter(prefix="/wallet", tags=["Wallet"])
webhook_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# =============================================================================
# ADMIN: COLA DE RETIROS
# =============================================================================

@router.get("/withdrawals", response_model=List[WithdrawalResponse])
async def get_withdrawal_queue(
    status_filter: Optional[WithdrawalStatus] = Query(WithdrawalStatus.PENDING, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    """Lista retiros por estado (pending por defecto) para el cajero."""
    return await services.withdrawals.list_requests(status=status_filter, limit=limit, offset=offset)


@router.post("/withdrawals/{withdrawal_id}/{action}", response_model=WithdrawalResponse)
async def transition_withdrawal(
    withdrawal_id: UUID,
    action: str,
    body: Optional[WithdrawalActionRequest] = None,
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    """
    approve / reject / process.

    FLUJO PROCESS:
    1. Débito `withdrawal` en el ledger (libera la reserva si la hubo)
    2. Marca el retiro como processed
    Un segundo process responde 409 sin debitar otra vez.
    """
    return await services.withdrawals.admin_transition(
        withdrawal_id,
        action,
        admin.user_id,
        notes=body.notes if body else None,
        ip_address=admin.ip_address,
    )


# =============================================================================
# ADMIN: COMISIONES
# =============================================================================

@router.post("/commissions/sweep")
async def sweep_commissions(
    body: CommissionSweepRequest,
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    """Transfiere las comisiones no barridas del periodo a la cuenta del operador."""
    return encode(await services.commissions.sweep(body.period, admin.user_id))


@router.get("/commissions/summary")
async def commission_summary(
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return encode(await services.commissions.summary())


# =============================================================================
# ADMIN: MONITOREO
# =============================================================================

@router.get("/suspicious-activity", response_model=List[SuspiciousActivity])
async def suspicious_activity(
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return await services.monitoring.detect_suspicious_activity()


@router.get("/health")
async def admin_health(
    admin: AuthenticatedUser = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return encode(await services.monitoring.system_health_check())


# =============================================================================
# WALLET DEL USUARIO
# =============================================================================

@wallet_router.get("/balance", response_model=BalanceResponse)
async def get_wallet_balance(
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Balance total, reservado para retiros y disponible."""
    async with services.database.session() as session:
        profile = await session.get(Profile, user.user_id)
        if profile is None:
            raise NotFound("Perfil no encontrado")
        return BalanceResponse(
            user_id=profile.id,
            display_name=profile.display_name,
            balance=profile.balance,
            reserved_balance=profile.reserved_balance,
            available_balance=profile.available_balance,
            elo_rating=profile.elo_rating,
        )


@wallet_router.get("/transactions", response_model=List[TransactionResponse])
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    async with services.database.session() as session:
        rows = await list_transactions(session, user.user_id, limit=limit, offset=offset)
        return [TransactionResponse.model_validate(row) for row in rows]


@wallet_router.post("/deposits/checkout", response_model=CheckoutResponse)
async def create_deposit_checkout(
    body: CheckoutRequest,
    user: AuthenticatedUser = Depends(rate_limit("deposit")),
    services: Services = Depends(get_services),
):
    return await services.payments.create_checkout(user.user_id, body.amount)


@wallet_router.post("/verify-payment", response_model=PaymentResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    response: Response,
    user: AuthenticatedUser = Depends(rate_limit("verify_payment")),
    services: Services = Depends(get_services),
):
    """
    Verificación del cliente al volver del checkout.
    Un pago todavía no completado responde 202 (pendiente, reintentable).
    """
    outcome = await services.payments.ingest(body.session_id, user.user_id, PaymentSource.CLIENT)
    if not outcome.success:
        response.status_code = status.HTTP_202_ACCEPTED
    return outcome.to_dict()


@wallet_router.post("/withdraw", response_model=WithdrawalCreatedResponse)
async def request_withdrawal(
    body: WithdrawalCreateRequest,
    user: AuthenticatedUser = Depends(rate_limit("withdraw")),
    services: Services = Depends(get_services),
):
    """
    Solicita un retiro.

    REGLAS DE NEGOCIO:
    - Mínimo de retiro configurable ($20 por defecto)
    - El monto queda retenido hasta que el admin rechace o procese
    """
    withdrawal = await services.withdrawals.request(
        user.user_id,
        body.amount,
        body.payment_method,
        body.payment_details,
        ip_address=user.ip_address,
    )
    return {"success": True, "withdrawal_id": withdrawal["id"], "withdrawal": withdrawal}


@wallet_router.get("/withdrawals", response_model=List[WithdrawalResponse])
async def my_withdrawals(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.withdrawals.list_requests(user_id=user.user_id, limit=limit, offset=offset)


# =============================================================================
# WEBHOOK DEL PROCESADOR DE PAGOS
# =============================================================================

@webhook_router.post("/stripe")
async def stripe_webhook(
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
):
    """
    Recibe eventos firmados del procesador.

    - Firma inválida -> 400 (registrado)
    - Evento no manejado -> 200, ignorado
    - Procesador sin respuesta -> 503 para que el procesador reintente
    """
    secret = services.settings.stripe_webhook_secret
    if not secret:
        raise ExternalServiceError("Webhook secret is not configured")

    payload = await request.body()
    try:
        event = verify_webhook_signature(payload, request.headers.get("stripe-signature"), secret)
    except WebhookSignatureError as exc:
        ip = client_ip(request)
        logger.warning("Rejected webhook from %s: %s", ip, exc.message)
        async with services.database.transaction() as session:
            await record_audit(
                session,
                "WEBHOOK_SIGNATURE_INVALID",
                table_name="payment_completions",
                new_values={"reason": exc.message},
                ip_address=ip,
            )
        raise

    outcome = await services.payments.handle_webhook_event(event)
    if outcome is None:
        return {"received": True, "ignored": True}
    if outcome.retryable:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return encode({"received": True, **outcome.to_dict()})
