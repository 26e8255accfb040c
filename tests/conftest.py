"""Root conftest: test infrastructure for all billing tests.

Provides:
- Markers for DB integration tests
- Transaction-rollback db_session fixture (integration only)
- API client with dependency overrides and gateway identity headers
- Autouse mock for the Stripe service
"""

from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from billing.config.settings import settings
from billing.services.stripe_service import CheckoutSession

# ─────────────────────────────────────────────────────────────────────────────
# Markers
# ─────────────────────────────────────────────────────────────────────────────


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "integration: DB integration tests (transaction rollback)")


# ─────────────────────────────────────────────────────────────────────────────
# Transaction-Rollback Fixture
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def db_session():
    """Database session wrapped in a transaction that is ALWAYS rolled back.

    Uses the direct connection. Skips the test when no database is reachable.
    """
    from sqlalchemy import event
    from sqlalchemy.exc import OperationalError
    from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

    engine = create_async_engine(settings.database_url_direct, echo=False, pool_pre_ping=True)
    try:
        conn = await engine.connect()
    except (OperationalError, OSError) as e:
        await engine.dispose()
        pytest.skip(f"Database not available: {e}")

    trans = await conn.begin()
    session = AsyncSession(bind=conn, expire_on_commit=False)
    await conn.begin_nested()

    @event.listens_for(session.sync_session, "after_transaction_end")
    def restart_savepoint(session_sync, transaction):
        """Restart SAVEPOINT after each nested transaction ends."""
        if transaction.nested and not transaction._parent.nested:
            session_sync.begin_nested()

    try:
        yield session
    finally:
        await session.close()
        await trans.rollback()
        await conn.close()
        await engine.dispose()


# ─────────────────────────────────────────────────────────────────────────────
# API Client
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def payer_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def identity_headers(payer_id: uuid.UUID, organization_id: uuid.UUID) -> dict[str, str]:
    """Gateway headers for a payer controlling one organization."""
    return {
        "X-User-Id": str(payer_id),
        "X-User-Email": "owner@example.com",
        "X-User-Organizations": json.dumps([{"id": str(organization_id), "name": "Main Street Salon"}]),
    }


@pytest.fixture
def mock_db() -> MagicMock:
    db = MagicMock()
    db.execute = AsyncMock()
    db.flush = AsyncMock()
    db.refresh = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


@pytest.fixture
async def api_client(mock_db: MagicMock):
    """HTTP client against the app with get_db overridden by a mock session."""
    from billing.core.database import get_db
    from billing.main import app

    async def override_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ─────────────────────────────────────────────────────────────────────────────
# External Service Mocks
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def mock_external_services():
    """SAFETY: Always mock Stripe so no test can reach the real API."""
    with patch("billing.services.stripe_service.stripe") as mock_stripe:
        mock_stripe.SignatureVerificationError = type("SignatureVerificationError", (Exception,), {})
        mock_stripe.Customer.create.return_value = MagicMock(id="cus_test")
        mock_stripe.checkout.Session.create.return_value = MagicMock(
            id="cs_test", url="https://checkout.stripe.com/test"
        )
        yield {"stripe": mock_stripe}


@pytest.fixture
def mock_provider() -> MagicMock:
    """A PaymentProvider stand-in for services that take one by injection."""
    provider = MagicMock()
    provider.create_customer.return_value = "cus_new"
    provider.create_checkout_session.return_value = CheckoutSession(
        id="cs_test_123", url="https://checkout.stripe.com/c/cs_test_123"
    )
    provider.create_portal_session.return_value = "https://billing.stripe.com/p/session_123"
    provider.create_invoice_item.return_value = "ii_test"
    return provider
