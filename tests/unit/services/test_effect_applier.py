"""Unit tests for applying webhook effects to local subscription and invoice state."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from billing.domain.results import Conflict
from billing.models.ledger import SubscriptionAction
from billing.services.effect_applier import EffectApplier, EffectConflictError
from billing.services.provider_events import (
    ClearSuspension,
    CompleteCheckout,
    EndSubscription,
    InvoiceSnapshot,
    MirrorSubscription,
    ProviderEvent,
    ProviderRef,
    RecordInvoice,
    RefundInvoice,
    SuspendForNonPayment,
    SyncInvoiceUsage,
    UpsertPaymentMethod,
)

from tests.helpers.mock_factories import apply_changes_in_memory, make_mock_invoice, make_mock_subscription

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
REF = ProviderRef("sub_123", "cus_123")


def _event(event_id: str = "evt_1", created: datetime = NOW) -> ProviderEvent:
    return ProviderEvent(id=event_id, type="test", created=created, data={})


def _snapshot(**overrides) -> InvoiceSnapshot:
    fields = {
        "provider_invoice_id": "in_123",
        "ref": REF,
        "period_start": NOW - timedelta(days=30),
        "period_end": NOW,
        "currency": "CAD",
        "subtotal": Decimal("49.00"),
        "tax": Decimal("6.37"),
        "total": Decimal("55.37"),
    }
    fields.update(overrides)
    return InvoiceSnapshot(**fields)


@pytest.fixture
def ops():
    with (
        patch("billing.services.effect_applier.subscription_ops", autospec=True) as sub_ops,
        patch("billing.services.effect_applier.invoice_ops", autospec=True) as invoices,
        patch("billing.services.effect_applier.payment_method_ops", autospec=True) as payment_methods,
    ):
        sub_ops.apply_changes.side_effect = apply_changes_in_memory
        sub_ops.get_by_provider_subscription.return_value = []
        sub_ops.get_by_provider_customer.return_value = []
        yield {"subscription": sub_ops, "invoice": invoices, "payment_method": payment_methods}


@pytest.fixture
def usage_sync() -> MagicMock:
    sync = MagicMock()
    sync.sync_invoice_usage = AsyncMock()
    return sync


@pytest.fixture
def applier(usage_sync):
    return EffectApplier(usage_sync=usage_sync, clock=lambda: NOW)


def _bind(ops, subscription):
    """Make ``subscription`` the one resolved by provider subscription id and by get()."""
    ops["subscription"].get_by_provider_subscription.return_value = [subscription]
    ops["subscription"].get.return_value = subscription


def _logged_actions(sub_ops) -> list[SubscriptionAction]:
    return [c.kwargs["action"] for c in sub_ops.log_event.call_args_list]


# ─────────────────────────────────────────────────────────────────────────────
# Checkout
# ─────────────────────────────────────────────────────────────────────────────


class TestCompleteCheckout:
    @pytest.mark.asyncio
    async def test_binds_provider_subscription(self, applier, ops):
        sub = make_mock_subscription(
            status="TRIAL",
            provider_subscription_id=None,
            provider_metadata={"checkout_session_id": "cs_123", "checkout_session_status": "pending"},
        )
        ops["subscription"].get_by_checkout_session.return_value = [sub]
        ops["subscription"].get.return_value = sub

        await applier.apply(MagicMock(), CompleteCheckout("cs_123", "sub_123", "cus_123"), _event())

        assert sub.provider_subscription_id == "sub_123"
        assert sub.provider_customer_id == "cus_123"
        assert sub.provider_metadata["checkout_session_status"] == "complete"
        assert sub.provider_metadata["checkout_session_id"] == "cs_123"
        assert _logged_actions(ops["subscription"]) == [SubscriptionAction.CHECKOUT_COMPLETED]

    @pytest.mark.asyncio
    async def test_redelivery_is_a_no_op(self, applier, ops):
        sub = make_mock_subscription(provider_subscription_id="sub_123", checkout_session_status="complete")
        ops["subscription"].get_by_checkout_session.return_value = [sub]
        ops["subscription"].get.return_value = sub

        await applier.apply(MagicMock(), CompleteCheckout("cs_123", "sub_123", "cus_123"), _event())

        ops["subscription"].apply_changes.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_session(self, applier, ops):
        ops["subscription"].get_by_checkout_session.return_value = []

        await applier.apply(MagicMock(), CompleteCheckout("cs_404", "sub_123", "cus_123"), _event())

        ops["subscription"].get.assert_not_called()


# ─────────────────────────────────────────────────────────────────────────────
# Subscription status mirroring
# ─────────────────────────────────────────────────────────────────────────────


class TestMirrorSubscription:
    @pytest.mark.asyncio
    async def test_renewal_starts_new_period(self, applier, ops):
        sub = make_mock_subscription(
            renews_at=NOW - timedelta(hours=1),
            sms_current_spending=Decimal("12.50"),
            sms_budget_alerts=[50],
        )
        _bind(ops, sub)
        next_period = NOW + timedelta(days=30)

        await applier.apply(MagicMock(), MirrorSubscription(REF, "active", next_period, NOW), _event())

        assert sub.status == "ACTIVE"
        assert sub.renews_at == next_period
        assert sub.sms_current_spending == 0
        assert sub.sms_budget_alerts == []
        assert sub.last_provider_event_at == NOW
        assert _logged_actions(ops["subscription"]) == [SubscriptionAction.SUBSCRIPTION_RENEWED]

    @pytest.mark.asyncio
    async def test_renewal_without_period_end_uses_anchor(self, applier, ops):
        sub = make_mock_subscription(renews_at=datetime(2026, 3, 9, tzinfo=UTC))
        _bind(ops, sub)

        await applier.apply(MagicMock(), MirrorSubscription(REF, "active", None, NOW), _event())

        assert sub.renews_at == datetime(2026, 4, 9, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_renewal_keeps_end_of_month_anchor_after_short_month(self, ops, usage_sync):
        renewed_at = datetime(2026, 4, 30, 6, 0, tzinfo=UTC)
        applier = EffectApplier(usage_sync=usage_sync, clock=lambda: renewed_at)
        # Anchored on the 31st, clamped to April 30 this period
        sub = make_mock_subscription(renews_at=datetime(2026, 4, 30, tzinfo=UTC), billing_anchor_day=31)
        _bind(ops, sub)

        await applier.apply(
            MagicMock(), MirrorSubscription(REF, "active", None, renewed_at), _event(created=renewed_at)
        )

        assert sub.renews_at == datetime(2026, 5, 31, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_past_due_suspends_with_grace(self, applier, ops):
        sub = make_mock_subscription(renews_at=NOW + timedelta(days=10))
        _bind(ops, sub)

        await applier.apply(MagicMock(), MirrorSubscription(REF, "past_due", None, NOW), _event())

        assert sub.status == "SUSPENDED"
        assert sub.grace_period_ends_at == NOW + timedelta(days=7)
        assert sub.grace_alert_sent is False
        details = ops["subscription"].log_event.call_args.kwargs["details"]
        assert details == {"from": "ACTIVE", "to": "SUSPENDED", "provider_status": "past_due"}

    @pytest.mark.asyncio
    async def test_stale_event_is_skipped(self, applier, ops):
        sub = make_mock_subscription(last_provider_event_at=NOW)
        _bind(ops, sub)

        await applier.apply(
            MagicMock(),
            MirrorSubscription(REF, "past_due", None, NOW - timedelta(seconds=1)),
            _event(created=NOW - timedelta(seconds=1)),
        )

        ops["subscription"].apply_changes.assert_not_called()
        assert sub.status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_illegal_transition_is_ignored(self, applier, ops):
        sub = make_mock_subscription(status="EXPIRED", renews_at=NOW + timedelta(days=3))
        _bind(ops, sub)

        await applier.apply(MagicMock(), MirrorSubscription(REF, "trialing", None, NOW), _event())

        ops["subscription"].apply_changes.assert_not_called()
        assert sub.status == "EXPIRED"

    @pytest.mark.asyncio
    async def test_unknown_provider_status(self, applier, ops):
        await applier.apply(MagicMock(), MirrorSubscription(REF, "paused", None, NOW), _event())

        ops["subscription"].get_by_provider_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_same_status_only_moves_event_clock(self, applier, ops):
        sub = make_mock_subscription(renews_at=NOW + timedelta(days=10))
        _bind(ops, sub)

        await applier.apply(MagicMock(), MirrorSubscription(REF, "active", None, NOW), _event())

        changes = ops["subscription"].apply_changes.call_args.args[2]
        assert changes == {"last_provider_event_at": NOW}
        ops["subscription"].log_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises(self, applier, ops):
        sub = make_mock_subscription(renews_at=NOW + timedelta(days=10))
        _bind(ops, sub)
        ops["subscription"].apply_changes.side_effect = None
        ops["subscription"].apply_changes.return_value = Conflict("Subscription", "busy")

        with pytest.raises(EffectConflictError):
            await applier.apply(MagicMock(), MirrorSubscription(REF, "past_due", None, NOW), _event())


class TestEndSubscription:
    @pytest.mark.asyncio
    async def test_cancels_and_keeps_original_cancel_time(self, applier, ops):
        cancelled_at = NOW - timedelta(days=5)
        sub = make_mock_subscription(cancelled_at=cancelled_at)
        _bind(ops, sub)

        await applier.apply(MagicMock(), EndSubscription(REF, NOW), _event())

        assert sub.status == "CANCELLED"
        assert sub.cancelled_at == cancelled_at
        assert sub.auto_renew is False
        assert _logged_actions(ops["subscription"]) == [SubscriptionAction.SUBSCRIPTION_CANCELLED]

    @pytest.mark.asyncio
    async def test_already_ended(self, applier, ops):
        _bind(ops, make_mock_subscription(status="EXPIRED"))

        await applier.apply(MagicMock(), EndSubscription(REF, NOW), _event())

        ops["subscription"].apply_changes.assert_not_called()


# ─────────────────────────────────────────────────────────────────────────────
# Payments
# ─────────────────────────────────────────────────────────────────────────────


class TestPaymentOutcomes:
    @pytest.mark.asyncio
    async def test_failure_suspends(self, applier, ops):
        sub = make_mock_subscription()
        _bind(ops, sub)

        await applier.apply(MagicMock(), SuspendForNonPayment(REF, "in_123", "card_declined", NOW), _event())

        assert sub.status == "SUSPENDED"
        assert sub.grace_period_ends_at == NOW + timedelta(days=7)
        assert _logged_actions(ops["subscription"]) == [SubscriptionAction.PAYMENT_FAILED]

    @pytest.mark.asyncio
    async def test_repeated_failure_keeps_grace_deadline(self, applier, ops):
        grace_end = NOW + timedelta(days=2)
        sub = make_mock_subscription(status="SUSPENDED", grace_period_ends_at=grace_end, grace_alert_sent=True)
        _bind(ops, sub)

        await applier.apply(MagicMock(), SuspendForNonPayment(REF, "in_124", "card_declined", NOW), _event())

        assert sub.grace_period_ends_at == grace_end
        assert sub.grace_alert_sent is True

    @pytest.mark.asyncio
    async def test_failure_on_cancelled_does_not_suspend(self, applier, ops):
        _bind(ops, make_mock_subscription(status="CANCELLED"))

        await applier.apply(MagicMock(), SuspendForNonPayment(REF, "in_123", "card_declined", NOW), _event())

        ops["subscription"].apply_changes.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_clears_suspension(self, applier, ops):
        sub = make_mock_subscription(status="SUSPENDED", grace_period_ends_at=NOW + timedelta(days=2))
        _bind(ops, sub)

        await applier.apply(MagicMock(), ClearSuspension(REF, "in_123", Decimal("55.37"), NOW), _event())

        assert sub.status == "ACTIVE"
        assert sub.grace_period_ends_at is None
        details = ops["subscription"].log_event.call_args.kwargs["details"]
        assert details == {"invoice_id": "in_123", "amount": Decimal("55.37")}

    @pytest.mark.asyncio
    async def test_success_on_active_only_clears_grace(self, applier, ops):
        sub = make_mock_subscription()
        _bind(ops, sub)

        await applier.apply(MagicMock(), ClearSuspension(REF, "in_123", Decimal("49.00"), NOW), _event())

        changes = ops["subscription"].apply_changes.call_args.args[2]
        assert "status" not in changes


# ─────────────────────────────────────────────────────────────────────────────
# Invoices & payment methods
# ─────────────────────────────────────────────────────────────────────────────


class TestInvoiceEffects:
    @pytest.mark.asyncio
    async def test_sync_usage_delegates(self, applier, ops, usage_sync):
        sub = make_mock_subscription()
        _bind(ops, sub)
        snapshot = _snapshot()

        await applier.apply(MagicMock(), SyncInvoiceUsage(snapshot), _event())

        args = usage_sync.sync_invoice_usage.call_args
        assert args.args[1] == [sub]
        assert args.args[2:] == ("in_123", "cus_123", snapshot.period_start, snapshot.period_end, "CAD")
        assert args.kwargs["provider_event_id"] == "evt_1"

    @pytest.mark.asyncio
    async def test_new_invoice_is_mirrored_on_first_subscription(self, applier, ops):
        first = make_mock_subscription()
        second = make_mock_subscription()
        ops["subscription"].get_by_provider_subscription.return_value = [first, second]
        ops["invoice"].get_by_provider_invoice.return_value = None
        ops["invoice"].next_number.return_value = "INV-2026-03-004"
        ops["invoice"].create_if_absent.return_value = True

        await applier.apply(MagicMock(), RecordInvoice(_snapshot(), status="PAID"), _event())

        create_kwargs = ops["invoice"].create_if_absent.call_args.kwargs
        assert create_kwargs["subscription_id"] == first.id
        assert create_kwargs["number"] == "INV-2026-03-004"
        assert create_kwargs["status"] == "PAID"
        assert create_kwargs["paid_at"] == NOW
        assert create_kwargs["total"] == Decimal("55.37")
        ops["invoice"].update.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_mirror_is_merged_not_failed(self, applier, ops):
        _bind(ops, make_mock_subscription())
        mirrored = make_mock_invoice(status="FAILED", paid_at=None, retry_count=1)
        # The lookup misses, then the insert collides with another delivery's row
        ops["invoice"].get_by_provider_invoice.side_effect = [None, mirrored]
        ops["invoice"].next_number.return_value = "INV-2026-03-005"
        ops["invoice"].create_if_absent.return_value = False

        await applier.apply(MagicMock(), RecordInvoice(_snapshot(), status="PAID"), _event())

        assert ops["invoice"].get_by_provider_invoice.await_count == 2
        merged, updates = ops["invoice"].update.call_args.args[1:]
        assert merged is mirrored
        assert updates["status"] == "PAID"
        assert updates["paid_at"] == NOW
        assert updates["total"] == Decimal("55.37")

    @pytest.mark.asyncio
    async def test_paid_invoice_is_not_walked_back(self, applier, ops):
        existing = make_mock_invoice(status="PAID", retry_count=0)
        ops["invoice"].get_by_provider_invoice.return_value = existing

        await applier.apply(
            MagicMock(), RecordInvoice(_snapshot(), status="FAILED", failure_reason="late failure"), _event()
        )

        updates = ops["invoice"].update.call_args.args[2]
        assert "status" not in updates
        assert updates["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_then_paid(self, applier, ops):
        existing = make_mock_invoice(status="FAILED", paid_at=None)
        ops["invoice"].get_by_provider_invoice.return_value = existing

        await applier.apply(MagicMock(), RecordInvoice(_snapshot(), status="PAID"), _event())

        updates = ops["invoice"].update.call_args.args[2]
        assert updates["status"] == "PAID"
        assert updates["paid_at"] == NOW

    @pytest.mark.asyncio
    async def test_refund(self, applier, ops):
        invoice = make_mock_invoice(status="PAID")
        ops["invoice"].get_by_provider_invoice.return_value = invoice

        await applier.apply(MagicMock(), RefundInvoice("in_123", "ch_1", Decimal("15.00")), _event())

        assert ops["invoice"].update.call_args.args[2] == {"status": "REFUNDED"}
        assert _logged_actions(ops["subscription"]) == [SubscriptionAction.CHARGE_REFUNDED]

    @pytest.mark.asyncio
    async def test_refund_is_idempotent(self, applier, ops):
        ops["invoice"].get_by_provider_invoice.return_value = make_mock_invoice(status="REFUNDED")

        await applier.apply(MagicMock(), RefundInvoice("in_123", "ch_1", Decimal("15.00")), _event())

        ops["invoice"].update.assert_not_called()

    @pytest.mark.asyncio
    async def test_payment_method_attached_to_payer(self, applier, ops):
        sub = make_mock_subscription()
        ops["subscription"].get_by_provider_customer.return_value = [sub]
        db = MagicMock()

        await applier.apply(db, UpsertPaymentMethod("pm_1", "cus_123", {"brand": "visa"}), _event())

        ops["payment_method"].upsert_for_payer.assert_awaited_once_with(db, sub.payer_id, "pm_1", {"brand": "visa"})


class TestResolve:
    @pytest.mark.asyncio
    async def test_falls_back_to_unbound_customer_subscriptions(self, applier, ops):
        bound = make_mock_subscription(provider_subscription_id="sub_other")
        unbound = make_mock_subscription(provider_subscription_id=None)
        ops["subscription"].get_by_provider_customer.return_value = [bound, unbound]

        assert await applier._resolve(MagicMock(), REF) == [unbound]

    @pytest.mark.asyncio
    async def test_no_references(self, applier, ops):
        assert await applier._resolve(MagicMock(), ProviderRef(None, None)) == []
