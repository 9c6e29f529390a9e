"""Pytest configuration and fixtures for the PaySync test suite.

This module provides reusable fixtures for testing:
- A file-backed SQLite database per test (aiosqlite)
- A transaction manager and reconciliation engine wired to it
- Booking/payment factories and signed actor tokens
"""

import os

# === Environment Setup ===

# Settings are read once at import time, so configure them before any
# paysync module is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "test-callback-secret")
os.environ.setdefault("IDEMPOTENCY_BACKEND", "memory")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "false")

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from paysync.core.idempotency import InMemoryIdempotencyStore  # noqa: E402
from paysync.core.immutability import register_immutability_enforcement  # noqa: E402
from paysync.core.security import Actor, create_access_token  # noqa: E402
from paysync.database import build_engine, build_session_factory, init_db  # noqa: E402
from paysync.gateways.base import GatewayType  # noqa: E402
from paysync.gateways.manual import ManualGateway  # noqa: E402
from paysync.models.booking import Booking  # noqa: E402
from paysync.models.payment import Payment  # noqa: E402
from paysync.services.gateway_service import GatewayService  # noqa: E402
from paysync.services.notification_service import NotificationService  # noqa: E402
from paysync.services.reconciliation_service import ReconciliationEngine  # noqa: E402
from paysync.services.transaction_manager import (  # noqa: E402
    ConsistencyTransactionManager,
    PaymentOutcome,
)

CALLBACK_TOKEN = os.environ["GATEWAY_WEBHOOK_SECRET"]

REQUESTER_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")
PROVIDER_ID = uuid.UUID("22222222-2222-4222-8222-222222222222")
STAFF_ID = "33333333-3333-4333-8333-333333333333"


# === Database Fixtures ===


@pytest.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database file with every table created."""
    register_immutability_enforcement()
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'paysync.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


# === Service Fixtures ===


@pytest.fixture
def idempotency_store() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore(ttl_seconds=300)


@pytest.fixture
def gateways() -> GatewayService:
    """Both gateway types answered by the manual adapter; no network."""
    return GatewayService({GatewayType.MANUAL: ManualGateway(), GatewayType.MPESA: ManualGateway()})


@pytest.fixture
def notifier() -> NotificationService:
    return NotificationService(webhook_url="")


@pytest.fixture
def manager(
    session_factory: async_sessionmaker[AsyncSession],
    idempotency_store: InMemoryIdempotencyStore,
    gateways: GatewayService,
    notifier: NotificationService,
) -> ConsistencyTransactionManager:
    return ConsistencyTransactionManager(
        session_factory,
        idempotency_store,
        notifier=notifier,
        gateways=gateways,
        amount_tolerance=Decimal("1.00"),
    )


@pytest.fixture
def reconciliation(
    session_factory: async_sessionmaker[AsyncSession],
    manager: ConsistencyTransactionManager,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        session_factory,
        manager,
        audit=manager.audit,
        amount_tolerance=Decimal("1.00"),
        window_minutes=30,
    )


# === Actor Fixtures ===


@pytest.fixture
def client_actor() -> Actor:
    return Actor(id=str(REQUESTER_ID), role="client")


@pytest.fixture
def provider_actor() -> Actor:
    return Actor(id=str(PROVIDER_ID), role="provider")


@pytest.fixture
def staff_actor() -> Actor:
    return Actor(id=STAFF_ID, role="staff")


def auth_headers(actor: Actor) -> dict[str, str]:
    """Bearer header for ``actor``."""
    return {"Authorization": f"Bearer {create_access_token(actor.id, actor.role)}"}


# === Flow Helpers ===


@pytest.fixture
def approved_booking(manager, client_actor, provider_actor):
    """Factory: a booking approved by its provider with the amount locked."""

    async def _create(amount: Decimal = Decimal("2000.00")) -> Booking:
        booking = await manager.create_booking(
            requester_id=REQUESTER_ID,
            provider_id=PROVIDER_ID,
            scheduled_at=datetime.now(UTC) + timedelta(days=2),
            actor=client_actor,
            amount=amount,
        )
        return await manager.request_booking_transition(booking.id, "approved", provider_actor)

    return _create


@pytest.fixture
def initiated_payment(manager, approved_booking, client_actor):
    """Factory: an approved booking plus a payment waiting for its outcome."""

    async def _create(amount: Decimal = Decimal("2000.00")) -> tuple[Booking, Payment]:
        booking = await approved_booking(amount)
        payment = await manager.initiate_payment(booking.id, client_actor, gateway=GatewayType.MANUAL)
        return booking, payment

    return _create


def outcome_for(payment: Payment, amount: Decimal | None = None, result_code: int = 0, **kwargs: Any) -> PaymentOutcome:
    """Gateway outcome for ``payment``'s current attempt."""
    return PaymentOutcome(
        correlation_id=payment.correlation_id,
        result_code=result_code,
        result_description=kwargs.get("result_description", "The service request is processed successfully."),
        external_transaction_id=kwargs.get("external_transaction_id", f"TX{uuid.uuid4().hex[:8].upper()}"),
        amount=payment.amount if amount is None else amount,
    )


# === HTTP Fixtures ===


@pytest.fixture
async def api_client(
    session_factory: async_sessionmaker[AsyncSession],
    idempotency_store: InMemoryIdempotencyStore,
    gateways: GatewayService,
    notifier: NotificationService,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to an application wired to the test database."""
    from paysync.main import create_application

    app = create_application(
        session_factory=session_factory,
        idempotency_store=idempotency_store,
        gateways=gateways,
        notifier=notifier,
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
