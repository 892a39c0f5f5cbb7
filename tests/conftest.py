import asyncio
import hashlib
import hmac
import time
import uuid
from decimal import Decimal
from typing import Dict, List, Optional, Set

import httpx
import jwt
import pytest

from r6cash.config import Settings
from r6cash.database import Database
from r6cash.errors import ExternalServiceError
from r6cash.ledger import apply_ledger_entry, ensure_profile
from r6cash.main import create_app
from r6cash.models import AppRole, Profile, TransactionType, UserRole
from r6cash.processor import CheckoutSession, PaymentProcessor, ProcessorSession, ProcessorTimeout

JWT_SECRET = "test-jwt-secret"
WEBHOOK_SECRET = "whsec_test_secret"
OPERATOR_ACCOUNT = "acct_operator_test"


class FakeProcessor(PaymentProcessor):
    """Procesador en memoria: cada test registra sus sesiones."""

    def __init__(self) -> None:
        self.sessions: Dict[str, ProcessorSession] = {}
        self.timeouts: Set[str] = set()
        self.failures: Set[str] = set()
        self.checkouts: List[dict] = []
        self.transfers: Dict[str, dict] = {}
        self.retrieve_calls = 0
        self.delay = 0.0

    def add_session(self, session_id: str, user_id, amount, *, payment_status: str = "paid") -> None:
        self.sessions[session_id] = ProcessorSession(
            session_id=session_id,
            payment_status=payment_status,
            amount_total_cents=int(Decimal(str(amount)) * 100),
            metadata={"user_id": str(user_id), "amount": str(amount), "type": "deposit"},
        )

    async def retrieve_session(self, session_id: str) -> ProcessorSession:
        self.retrieve_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if session_id in self.timeouts:
            raise ProcessorTimeout(f"timeout retrieving {session_id}")
        if session_id in self.failures or session_id not in self.sessions:
            raise ExternalServiceError(f"No such checkout session: {session_id}")
        return self.sessions[session_id]

    async def create_checkout_session(self, *, amount_cents, metadata, success_url, cancel_url, customer_email=None):
        session_id = f"cs_test_{len(self.checkouts) + 1}"
        self.checkouts.append({
            "session_id": session_id,
            "amount_cents": amount_cents,
            "metadata": dict(metadata),
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        return CheckoutSession(session_id=session_id, url=f"https://checkout.test/{session_id}")

    async def create_transfer(self, *, amount_cents, destination, description, idempotency_key):
        if idempotency_key not in self.transfers:
            self.transfers[idempotency_key] = {
                "id": f"tr_{len(self.transfers) + 1}",
                "amount_cents": amount_cents,
                "destination": destination,
                "description": description,
            }
        return self.transfers[idempotency_key]["id"]


def make_token(user_id, *, display_name: Optional[str] = None, secret: str = JWT_SECRET, expires_in: int = 3600) -> str:
    payload = {
        "sub": str(user_id),
        "aud": "authenticated",
        "exp": int(time.time()) + expires_in,
        "email": f"{user_id}@example.com",
    }
    if display_name:
        payload["user_metadata"] = {"display_name": display_name}
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def sign_payload(payload: bytes, secret: str, *, timestamp: Optional[int] = None) -> str:
    """Encabezado Stripe-Signature v1: HMAC-SHA256 de "<timestamp>.<body>"."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        jwt_secret=JWT_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'r6cash_test.db'}",
        auto_create_schema=False,
        stripe_webhook_secret=WEBHOOK_SECRET,
        operator_account_id=OPERATOR_ACCOUNT,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.create_schema()
    yield db
    await db.dispose()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def app(settings, database, processor):
    return create_app(settings, database=database, processor=processor)


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


@pytest.fixture
def create_user(database):
    """Factory: crea un perfil fondeado con un depósito en el ledger."""

    async def _create(balance="0", *, role: AppRole = AppRole.CLIENT, name: str = "Player", elo: int = 1200):
        user_id = uuid.uuid4()
        async with database.transaction() as session:
            await ensure_profile(session, user_id, name, default_elo=elo)
            if Decimal(str(balance)) > 0:
                await apply_ledger_entry(
                    session, user_id, Decimal(str(balance)), TransactionType.DEPOSIT,
                    external_ref=f"seed-{user_id}",
                )
            if role != AppRole.CLIENT:
                session.add(UserRole(user_id=user_id, role=role))
        return user_id

    return _create


@pytest.fixture
def get_balance(database):
    async def _get(user_id):
        async with database.session() as session:
            profile = await session.get(Profile, user_id)
            return profile.balance, profile.reserved_balance

    return _get


@pytest.fixture
def auth():
    """Factory de headers Authorization para un usuario."""
    return auth_headers


@pytest.fixture
def sign():
    """Firma payloads de webhook como lo hace el procesador."""
    return sign_payload


@pytest.fixture
def token():
    return make_token
