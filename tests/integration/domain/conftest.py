"""Domain integration test fixtures.

The billing tables are created inside the rollback transaction, so each
test runs against a fresh schema and nothing is left behind.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

import billing.models  # noqa: F401  (registers tables on SQLModel.metadata)
from billing.domain.subscription_operations import subscription_ops


@pytest.fixture(autouse=True)
async def billing_schema(db_session: AsyncSession):
    """Create any missing billing tables; rolled back with the test."""
    await db_session.run_sync(lambda session: SQLModel.metadata.create_all(session.connection()))


@pytest.fixture
async def test_subscription(db_session: AsyncSession):
    """An ACTIVE monthly subscription for a fresh organization."""
    now = datetime.now(UTC)
    return await subscription_ops.create(
        db_session,
        organization_id=uuid.uuid4(),
        payer_id=uuid.uuid4(),
        status="ACTIVE",
        standard_price=Decimal("39.00"),
        started_at=now,
        renews_at=now + timedelta(days=30),
        provider_customer_id=f"cus_test_{uuid.uuid4().hex[:8]}",
        provider_subscription_id=f"sub_test_{uuid.uuid4().hex[:8]}",
        provider_metadata={"checkout_session_id": f"cs_test_{uuid.uuid4().hex[:8]}"},
    )
