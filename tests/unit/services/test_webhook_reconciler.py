"""Unit tests for exactly-once webhook processing."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from billing.services.provider_events import CompleteCheckout
from billing.services.webhook_reconciler import MAX_ERROR_LENGTH, WebhookReconciler, WebhookStatus

CHECKOUT_PAYLOAD = {
    "id": "evt_checkout",
    "type": "checkout.session.completed",
    "created": 1773144000,
    "data": {"object": {"id": "cs_123", "subscription": "sub_123", "customer": "cus_123"}},
}


@pytest.fixture
def event_ops():
    with patch("billing.services.webhook_reconciler.webhook_event_ops", autospec=True) as ops:
        ops.claim.return_value = (MagicMock(processed=False, attempts=1), True)
        yield ops


@pytest.fixture
def failure_session() -> MagicMock:
    session = MagicMock()
    session.commit = AsyncMock()
    return session


@pytest.fixture
def reconciler(failure_session):
    applier = MagicMock()
    applier.apply = AsyncMock()
    session_factory = MagicMock()
    session_factory.return_value.__aenter__.return_value = failure_session
    return WebhookReconciler(applier=applier, session_factory=session_factory)


class TestProcessEvent:
    @pytest.mark.asyncio
    async def test_applies_effects_and_marks_processed(self, reconciler, event_ops, mock_db):
        status = await reconciler.process_event(mock_db, CHECKOUT_PAYLOAD)

        assert status == WebhookStatus.PROCESSED
        effect = reconciler.applier.apply.call_args.args[1]
        assert effect == CompleteCheckout("cs_123", "sub_123", "cus_123", None)
        row = event_ops.claim.return_value[0]
        event_ops.mark_processed.assert_awaited_once_with(mock_db, row)
        mock_db.commit.assert_awaited_once()
        mock_db.rollback.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_skipped(self, reconciler, event_ops, mock_db):
        event_ops.claim.return_value = (MagicMock(processed=True, attempts=2), False)

        status = await reconciler.process_event(mock_db, CHECKOUT_PAYLOAD)

        assert status == WebhookStatus.DUPLICATE
        reconciler.applier.apply.assert_not_called()
        event_ops.mark_processed.assert_not_called()

    @pytest.mark.asyncio
    async def test_event_without_effects_is_still_processed(self, reconciler, event_ops, mock_db):
        payload = {**CHECKOUT_PAYLOAD, "id": "evt_other", "type": "customer.tax_id.created"}

        status = await reconciler.process_event(mock_db, payload)

        assert status == WebhookStatus.PROCESSED
        reconciler.applier.apply.assert_not_called()
        event_ops.mark_processed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_rolls_back_and_is_recorded_separately(
        self, reconciler, event_ops, mock_db, failure_session
    ):
        reconciler.applier.apply.side_effect = RuntimeError("deadlock detected")

        status = await reconciler.process_event(mock_db, CHECKOUT_PAYLOAD)

        assert status == WebhookStatus.FAILED
        mock_db.rollback.assert_awaited_once()
        event_ops.mark_processed.assert_not_called()
        event_ops.record_failure.assert_awaited_once_with(
            failure_session, "evt_checkout", "checkout.session.completed", CHECKOUT_PAYLOAD, "deadlock detected"
        )
        failure_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_long_errors_are_truncated(self, reconciler, event_ops, mock_db):
        reconciler.applier.apply.side_effect = ValueError("x" * (MAX_ERROR_LENGTH + 500))

        await reconciler.process_event(mock_db, CHECKOUT_PAYLOAD)

        stored_error = event_ops.record_failure.call_args.args[4]
        assert len(stored_error) == MAX_ERROR_LENGTH

    @pytest.mark.asyncio
    async def test_error_without_message_uses_type_name(self, reconciler, event_ops, mock_db):
        event_ops.claim.side_effect = KeyError()

        status = await reconciler.process_event(mock_db, CHECKOUT_PAYLOAD)

        assert status == WebhookStatus.FAILED
        assert event_ops.record_failure.call_args.args[4] == "KeyError"
