"""Global test configuration and fixtures for the credit ledger API."""

import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator, Awaitable
from datetime import datetime, timedelta, timezone
from typing import Callable
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

# Settings are read at import time; keep the app off Postgres and the scheduler off
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ["ROTATION_ENABLED"] = "false"

import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.api.core.constants import (
    JWT_ALGORITHM,
    SERVICE_KEY_HEADER,
    STRIPE_SIGNATURE_HEADER,
)
from src.database.models import Base, CreditBalance, TransactionReason
from src.modules.ledger.spend import SpendCoordinator
from src.modules.ledger.store import LedgerStore, PoolDelta
from src.redis.client import get_redis_client
from src.utils.settings.auth import AuthSettings
from src.utils.settings.ledger import LedgerSettings
from src.utils.settings.stripe import StripeSettings

from tests.factories import (
    CostThrottleCounterFactory,
    CreditBalanceFactory,
    CreditPurchaseFactory,
    SubscriptionFactory,
)

BASE_URL = "http://test-credit-ledger"


@pytest.fixture
def balance_factory():
    return CreditBalanceFactory


@pytest.fixture
def subscription_factory():
    return SubscriptionFactory


@pytest.fixture
def purchase_factory():
    return CreditPurchaseFactory


@pytest.fixture
def throttle_counter_factory():
    return CostThrottleCounterFactory


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    return LedgerSettings()


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """File-backed SQLite so the app and the test see the same data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=async_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(db_session: AsyncSession, ledger_settings: LedgerSettings) -> LedgerStore:
    return LedgerStore(db_session, ledger_settings)


@pytest.fixture
def coordinator(
    db_session: AsyncSession, ledger_settings: LedgerSettings
) -> SpendCoordinator:
    return SpendCoordinator(db_session, ledger_settings)


@pytest.fixture
def seed_account(
    db_session: AsyncSession, store: LedgerStore
) -> Callable[..., Awaitable[CreditBalance]]:
    """Create a committed account whose pools are funded through the ledger."""

    async def create(
        account_id: UUID | None = None,
        monthly: int = 0,
        rollover: int = 0,
        purchased: int = 0,
        **balance_fields,
    ) -> CreditBalance:
        balance = await CreditBalanceFactory.create_async(
            db_session,
            commit=True,
            account_id=account_id or uuid4(),
            **balance_fields,
        )
        if monthly or rollover or purchased:
            await store.mutate(
                balance.account_id,
                PoolDelta(monthly=monthly, rollover=rollover, purchased=purchased),
                TransactionReason.ADMIN_ADJUSTMENT,
                correlation_id=f"seed:{balance.account_id}",
                description="Test funding",
            )
        return balance

    return create


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Redis stand-in: marker claims succeed and health round-trips pass."""
    client = AsyncMock()
    client.ping.return_value = True
    client.set.return_value = True
    client.get.return_value = "ok"
    return client


@pytest_asyncio.fixture
async def app(session_factory, mock_redis) -> AsyncGenerator[FastAPI, None]:
    """Create FastAPI application with lifespan manager for testing."""
    from src.main import app

    async with LifespanManager(app):
        app.state.session_factory = session_factory
        app.dependency_overrides[get_redis_client] = lambda: mock_redis
        try:
            yield app
        finally:
            app.dependency_overrides.clear()


@pytest.fixture
def jwt_token_factory() -> Callable[..., str]:
    """Build signed access tokens whose subject is the account id."""

    def create_token(account_id: UUID | str, expires_in: int = 3600, **claims) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(account_id),
            "aud": AuthSettings().JWT_AUDIENCE,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in),
            "role": "authenticated",
            **claims,
        }
        return jwt.encode(
            payload,
            AuthSettings().JWT_SECRET.get_secret_value(),
            algorithm=JWT_ALGORITHM,
        )

    return create_token


@pytest.fixture
def stripe_signature() -> Callable[[bytes], str]:
    """Sign a payload the way Stripe does for the `stripe-signature` header."""

    def sign(payload: bytes, timestamp: int | None = None, secret: str | None = None):
        timestamp = timestamp or int(time.time())
        secret = secret or StripeSettings().STRIPE_WEBHOOK_SECRET
        signed = f"{timestamp}.{payload.decode()}".encode()
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    return sign


@pytest.fixture
def signed_webhook(stripe_signature) -> Callable[[dict], tuple[bytes, dict]]:
    """Serialize an event and return it with signed headers."""

    def build(event: dict) -> tuple[bytes, dict]:
        payload = json.dumps(event).encode()
        headers = {
            STRIPE_SIGNATURE_HEADER: stripe_signature(payload),
            "Content-Type": "application/json",
        }
        return payload, headers

    return build


@pytest_asyncio.fixture
async def public_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create HTTP client without authentication."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url=BASE_URL,
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def service_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create HTTP client authenticated as the internal execution service."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url=BASE_URL,
        headers={
            SERVICE_KEY_HEADER: AuthSettings().LEDGER_SERVICE_KEY.get_secret_value()
        },
    ) as ac:
        yield ac


@pytest.fixture
def client_factory(app: FastAPI, jwt_token_factory):
    """Factory for creating HTTP clients authorized as a given account."""

    def create_client_for_account(account_id: UUID) -> AsyncClient:
        token = jwt_token_factory(account_id)
        return AsyncClient(
            transport=ASGITransport(app=app),
            base_url=BASE_URL,
            headers={"Authorization": f"Bearer {token}"},
        )

    return create_client_for_account
