"""Payment processor client abstractions (Stripe checkout, transfers, webhooks)."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
from yarl import URL

from .errors import ExternalServiceError, InvalidInput

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


class ProcessorTimeout(ExternalServiceError):
    """The processor did not answer within the configured timeout."""


class WebhookSignatureError(InvalidInput):
    code = "invalid_signature"
    public_message = "Firma de webhook inválida"

    def client_message(self) -> str:
        return self.public_message


@dataclass(frozen=True)
class ProcessorSession:
    """State of a hosted checkout session as reported by the processor."""

    session_id: str
    payment_status: str
    amount_total_cents: Optional[int] = None
    currency: str = "usd"
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def gross_amount(self) -> Decimal:
        return (Decimal(self.amount_total_cents or 0) / 100).quantize(Decimal("0.01"))

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


class PaymentProcessor(abc.ABC):
    """Abstract base class for payment processor integrations."""

    @abc.abstractmethod
    async def retrieve_session(self, session_id: str) -> ProcessorSession:
        """Fetch a checkout session. Raises ProcessorTimeout on timeout."""

    @abc.abstractmethod
    async def create_checkout_session(
        self,
        *,
        amount_cents: int,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a hosted checkout session and return its id and URL."""

    @abc.abstractmethod
    async def create_transfer(
        self,
        *,
        amount_cents: int,
        destination: str,
        description: str,
        idempotency_key: str,
    ) -> str:
        """Transfer funds to a connected account and return the transfer id."""


class StripeProcessor(PaymentProcessor):
    """Stripe client built on the official SDK, using its aiohttp transport."""

    def __init__(
        self,
        secret_key: str,
        *,
        api_base: str = "https://api.stripe.com",
        timeout: float = 10.0,
        currency: str = "usd",
        max_network_retries: int = 2,
        http_client: Optional[stripe.HTTPClient] = None,
    ) -> None:
        if not secret_key:
            raise ValueError("Stripe secret key must be provided")
        base = URL(api_base)
        if not base.scheme or not base.host:
            raise ValueError("Stripe API base must include a scheme (e.g. https://)")
        self._currency = currency
        self._client = stripe.StripeClient(
            secret_key,
            base_addresses={"api": str(base).rstrip("/")},
            max_network_retries=max_network_retries,
            http_client=http_client or stripe.AIOHTTPClient(timeout=timeout),
        )

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except stripe.APIConnectionError as exc:
            raise ProcessorTimeout(f"Stripe {operation} did not answer: {exc.user_message or exc}") from exc
        except stripe.StripeError as exc:
            raise ExternalServiceError(
                f"Stripe {operation} failed with status {exc.http_status}: {exc.user_message or exc}"
            ) from exc

    async def retrieve_session(self, session_id: str) -> ProcessorSession:
        data = await self._call(
            "checkout.sessions.retrieve",
            self._client.v1.checkout.sessions.retrieve_async(session_id),
        )
        metadata = data.metadata or {}
        return ProcessorSession(
            session_id=str(data.id or session_id),
            payment_status=str(data.payment_status or "unpaid"),
            amount_total_cents=data.amount_total,
            currency=str(data.currency or self._currency),
            metadata={k: str(v) for k, v in metadata.items()},
        )

    async def create_checkout_session(
        self,
        *,
        amount_cents: int,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        params: Dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": self._currency,
                    "unit_amount": amount_cents,
                    "product_data": {"name": "R6Cash balance deposit"},
                },
            }],
            "metadata": dict(metadata),
        }
        if customer_email:
            params["customer_email"] = customer_email

        checkout = await self._call(
            "checkout.sessions.create",
            self._client.v1.checkout.sessions.create_async(params=params),
        )
        if not checkout.id or not checkout.url:
            raise ExternalServiceError("Stripe response missing checkout session id or url")
        logger.info("Checkout session %s created (%s cents)", checkout.id, amount_cents)
        return CheckoutSession(session_id=str(checkout.id), url=str(checkout.url))

    async def create_transfer(
        self,
        *,
        amount_cents: int,
        destination: str,
        description: str,
        idempotency_key: str,
    ) -> str:
        transfer = await self._call(
            "transfers.create",
            self._client.v1.transfers.create_async(
                params={
                    "amount": amount_cents,
                    "currency": self._currency,
                    "destination": destination,
                    "description": description,
                },
                options={"idempotency_key": idempotency_key},
            ),
        )
        if not transfer.id:
            raise ExternalServiceError("Stripe response missing transfer identifier")
        logger.info("Transfer %s created (%s cents -> %s)", transfer.id, amount_cents, destination)
        return str(transfer.id)


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    *,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
) -> Dict[str, Any]:
    """
    Verify a `Stripe-Signature` header and return the decoded event as a
    plain dict. Raises WebhookSignatureError when the signature is missing,
    malformed, stale or does not match, or the payload is not JSON.
    """
    if not signature_header or not secret:
        raise WebhookSignatureError("Missing webhook signature")
    try:
        event = stripe.Webhook.construct_event(payload, signature_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(f"Webhook signature rejected: {exc}") from exc
    except ValueError as exc:
        raise WebhookSignatureError("Webhook payload is not valid JSON") from exc
    return event.to_dict()


__all__ = [
    "CheckoutSession",
    "PaymentProcessor",
    "ProcessorSession",
    "ProcessorTimeout",
    "StripeProcessor",
    "WebhookSignatureError",
    "verify_webhook_signature",
]
