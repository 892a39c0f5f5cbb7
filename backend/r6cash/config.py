"""
=============================================================================
R6CASH - Configuración del Servicio
=============================================================================
Toda la configuración se lee del entorno (con soporte de archivo .env).
Las tasas de comisión y las fórmulas de fee del procesador de pagos son
parámetros, nunca literales en la lógica de negocio.
=============================================================================
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _parse_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Expected boolean but received {value!r}")


def _parse_int(value: Optional[str], *, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Expected integer but received {value!r}") from exc


def _parse_decimal(value: Optional[str], *, default: str) -> Decimal:
    raw = default if value is None or value.strip() == "" else value.strip()
    try:
        result = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Expected decimal but received {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Expected finite decimal but received {value!r}")
    return result


def _parse_decimal_list(value: Optional[str], *, default: str) -> Tuple[Decimal, ...]:
    raw = default if value is None or value.strip() == "" else value
    result: List[Decimal] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        result.append(_parse_decimal(item, default="0"))
    return tuple(result)


@dataclass(slots=True)
class Settings:
    """Configuración en tiempo de ejecución."""

    jwt_secret: str
    database_url: str = "sqlite+aiosqlite:///./r6cash.db"
    auto_create_schema: bool = True
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    jwt_audience: str = "authenticated"

    # Procesador de pagos (Stripe)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com"
    processor_timeout_seconds: float = 10.0
    operator_account_id: Optional[str] = None
    public_site_url: str = "http://localhost:5173"

    # Comisiones y fees
    game_commission_rate: Decimal = Decimal("0.05")
    deposit_commission_rate: Decimal = Decimal("0.00")
    processor_fee_rate: Decimal = Decimal("0.029")
    processor_fee_fixed: Decimal = Decimal("0.30")

    # Reglas de negocio
    min_stake: Decimal = Decimal("4")
    max_stake: Decimal = Decimal("1000")
    min_withdrawal: Decimal = Decimal("20")
    deposit_amounts: Tuple[Decimal, ...] = field(
        default_factory=lambda: tuple(Decimal(v) for v in ("5", "10", "25", "50", "100"))
    )
    elo_k_factor: int = 32
    default_elo: int = 1200
    withdrawal_reserve_funds: bool = True

    # Rate limiting y detección de abuso
    rate_limit_requests: int = 20
    rate_limit_window_seconds: int = 60
    suspicious_transactions_per_hour: int = 10
    suspicious_games_per_hour: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        """Crea :class:`Settings` a partir de variables de entorno."""

        jwt_secret = os.getenv("JWT_SECRET")
        if not jwt_secret:
            raise ValueError("JWT_SECRET environment variable is required")

        settings = cls(
            jwt_secret=jwt_secret,
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./r6cash.db"),
            auto_create_schema=_parse_bool(os.getenv("AUTO_CREATE_SCHEMA"), default=True),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_parse_int(os.getenv("API_PORT"), default=8000),
            jwt_audience=os.getenv("JWT_AUDIENCE", "authenticated"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            stripe_api_base=os.getenv("STRIPE_API_BASE", "https://api.stripe.com"),
            processor_timeout_seconds=float(
                _parse_decimal(os.getenv("PROCESSOR_TIMEOUT_SECONDS"), default="10")
            ),
            operator_account_id=os.getenv("ADMIN_STRIPE_ACCOUNT_ID") or None,
            public_site_url=os.getenv("PUBLIC_SITE_URL", "http://localhost:5173"),
            game_commission_rate=_parse_decimal(
                os.getenv("GAME_COMMISSION_RATE"), default="0.05"
            ),
            deposit_commission_rate=_parse_decimal(
                os.getenv("DEPOSIT_COMMISSION_RATE"), default="0.00"
            ),
            processor_fee_rate=_parse_decimal(os.getenv("PROCESSOR_FEE_RATE"), default="0.029"),
            processor_fee_fixed=_parse_decimal(os.getenv("PROCESSOR_FEE_FIXED"), default="0.30"),
            min_stake=_parse_decimal(os.getenv("MIN_STAKE"), default="4"),
            max_stake=_parse_decimal(os.getenv("MAX_STAKE"), default="1000"),
            min_withdrawal=_parse_decimal(os.getenv("MIN_WITHDRAWAL"), default="20"),
            deposit_amounts=_parse_decimal_list(
                os.getenv("DEPOSIT_AMOUNTS"), default="5,10,25,50,100"
            ),
            elo_k_factor=_parse_int(os.getenv("ELO_K_FACTOR"), default=32),
            default_elo=_parse_int(os.getenv("DEFAULT_ELO"), default=1200),
            withdrawal_reserve_funds=_parse_bool(
                os.getenv("WITHDRAWAL_RESERVE_FUNDS"), default=True
            ),
            rate_limit_requests=_parse_int(os.getenv("RATE_LIMIT_REQUESTS"), default=20),
            rate_limit_window_seconds=_parse_int(
                os.getenv("RATE_LIMIT_WINDOW_SECONDS"), default=60
            ),
            suspicious_transactions_per_hour=_parse_int(
                os.getenv("SUSPICIOUS_TRANSACTIONS_PER_HOUR"), default=10
            ),
            suspicious_games_per_hour=_parse_int(
                os.getenv("SUSPICIOUS_GAMES_PER_HOUR"), default=5
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Verifica la coherencia de los valores configurados."""

        for name in ("game_commission_rate", "deposit_commission_rate", "processor_fee_rate"):
            rate = getattr(self, name)
            if rate < 0 or rate >= 1:
                raise ValueError(f"{name} must be in [0, 1), got {rate}")
        if self.processor_fee_fixed < 0:
            raise ValueError("processor_fee_fixed must not be negative")
        if self.min_stake <= 0 or self.max_stake < self.min_stake:
            raise ValueError("Stake bounds are inconsistent")
        if self.min_withdrawal <= 0:
            raise ValueError("min_withdrawal must be positive")
        if not self.deposit_amounts or any(a <= 0 for a in self.deposit_amounts):
            raise ValueError("deposit_amounts must be a non-empty list of positive amounts")
        if self.rate_limit_requests <= 0 or self.rate_limit_window_seconds <= 0:
            raise ValueError("Rate limit settings must be positive")

    @property
    def processor_configured(self) -> bool:
        return bool(self.stripe_secret_key)


__all__ = ["Settings"]
