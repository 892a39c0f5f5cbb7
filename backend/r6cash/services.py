"""Contenedor de servicios construido una vez por aplicación e inyectado en cada handler."""

import logging
from dataclasses import dataclass
from typing import Optional

from .commission import CommissionService
from .config import Settings
from .database import Database
from .game_engine import GameManager
from .monitoring import MonitoringService
from .payments import PaymentIngestion
from .processor import PaymentProcessor, StripeProcessor
from .security import RateLimiter, TokenVerifier
from .websocket_handler import RealtimeHub
from .withdrawals import WithdrawalService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    token_verifier: TokenVerifier
    rate_limiter: RateLimiter
    hub: RealtimeHub
    processor: Optional[PaymentProcessor]
    games: GameManager
    payments: PaymentIngestion
    withdrawals: WithdrawalService
    commissions: CommissionService
    monitoring: MonitoringService


def build_services(
    settings: Settings,
    *,
    database: Optional[Database] = None,
    processor: Optional[PaymentProcessor] = None,
) -> Services:
    """
    Arma el grafo de servicios. Sin procesador explícito se usa Stripe si
    hay clave configurada; sin clave, las operaciones de pago fallan con
    ExternalServiceError.
    """
    database = database or Database(settings.database_url)
    if processor is None and settings.processor_configured:
        processor = StripeProcessor(
            settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            timeout=settings.processor_timeout_seconds,
        )
    if processor is None:
        logger.warning("No payment processor configured; deposits are disabled")

    verifier = TokenVerifier(settings.jwt_secret, audience=settings.jwt_audience or None)
    hub = RealtimeHub(verifier, cors_allowed_origins=[settings.public_site_url])
    return Services(
        settings=settings,
        database=database,
        token_verifier=verifier,
        rate_limiter=RateLimiter(
            database,
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        hub=hub,
        processor=processor,
        games=GameManager(database, settings, hub),
        payments=PaymentIngestion(database, processor, settings, hub),
        withdrawals=WithdrawalService(database, settings, hub),
        commissions=CommissionService(database, processor, settings),
        monitoring=MonitoringService(database, settings),
    )


__all__ = ["Services", "build_services"]
