"""Fixtures for tests that race two real transactions.

Unlike the rollback fixture, these sessions commit: a row lock or a unique
index only serializes writers that run on separate connections. Every test
records what it wrote in ``cleanup`` and the rows are deleted afterwards.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError

from billing.core.database import async_session_maker, direct_engine, engine, init_db
from billing.models.invoice import Invoice
from billing.models.ledger import ProcessedWebhookEvent, SubscriptionLog, UserTrialStatus
from billing.models.subscription import Subscription


@pytest.fixture
async def session_factory() -> Callable:
    """The application's pooled session maker, against a migrated schema."""
    try:
        await init_db()
    except (OperationalError, OSError) as e:
        await direct_engine.dispose()
        pytest.skip(f"Database not available: {e}")

    yield async_session_maker

    # Pooled connections belong to this test's event loop
    await engine.dispose()
    await direct_engine.dispose()


@pytest.fixture
async def cleanup(session_factory):
    """Collect ids written by the test; delete them once it finishes."""
    written: dict[str, list] = {"subscriptions": [], "payers": [], "events": [], "invoices": []}
    yield written

    async with session_factory() as db:
        if written["subscriptions"]:
            ids = written["subscriptions"]
            await db.execute(delete(SubscriptionLog).where(SubscriptionLog.subscription_id.in_(ids)))
            await db.execute(delete(Invoice).where(Invoice.subscription_id.in_(ids)))
            await db.execute(delete(Subscription).where(Subscription.id.in_(ids)))
        if written["payers"]:
            await db.execute(delete(UserTrialStatus).where(UserTrialStatus.user_id.in_(written["payers"])))
        if written["events"]:
            await db.execute(
                delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id.in_(written["events"]))
            )
        if written["invoices"]:
            await db.execute(delete(Invoice).where(Invoice.provider_invoice_id.in_(written["invoices"])))
        await db.commit()
