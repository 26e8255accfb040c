"""Unit tests for mapping provider webhook events to local effects."""

from datetime import UTC, datetime
from decimal import Decimal

from billing.services.provider_events import (
    ClearSuspension,
    CompleteCheckout,
    DeactivatePaymentMethod,
    EndSubscription,
    MergeCustomerSnapshot,
    MirrorSubscription,
    ProviderEvent,
    ProviderRef,
    RecordInvoice,
    RefundInvoice,
    SuspendForNonPayment,
    SyncInvoiceUsage,
    UpsertPaymentMethod,
    from_minor_units,
    object_id,
    plan_effects,
)

CREATED = 1773144000  # 2026-03-10 12:00 UTC
CREATED_AT = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _event(event_type: str, obj: dict) -> ProviderEvent:
    return ProviderEvent.from_payload(
        {"id": "evt_1", "type": event_type, "created": CREATED, "data": {"object": obj}}
    )


def _invoice(**overrides) -> dict:
    invoice = {
        "id": "in_123",
        "subscription": "sub_123",
        "customer": "cus_123",
        "period_start": 1770724800,
        "period_end": CREATED,
        "currency": "cad",
        "subtotal": 4900,
        "tax": 637,
        "total": 5537,
        "amount_paid": 5537,
        "invoice_pdf": "https://pay.stripe.com/invoice/in_123/pdf",
        "lines": {"data": [{"description": "Standard plan", "amount": 4900, "quantity": 1}]},
    }
    invoice.update(overrides)
    return invoice


class TestHelpers:
    def test_from_payload(self):
        event = _event("invoice.created", {"id": "in_1"})
        assert event.id == "evt_1"
        assert event.created == CREATED_AT
        assert event.data == {"id": "in_1"}

    def test_minor_units(self):
        assert from_minor_units(4999) == Decimal("49.99")
        assert from_minor_units(None) == Decimal("0.00")

    def test_object_id_accepts_expanded_objects(self):
        assert object_id("cus_1") == "cus_1"
        assert object_id({"id": "cus_2"}) == "cus_2"
        assert object_id(None) is None


class TestCheckoutEvents:
    def test_completed_session(self):
        effects = plan_effects(
            _event(
                "checkout.session.completed",
                {
                    "id": "cs_123",
                    "subscription": "sub_123",
                    "customer": {"id": "cus_123"},
                    "metadata": {"payer_id": "payer-1"},
                },
            )
        )
        assert effects == [CompleteCheckout("cs_123", "sub_123", "cus_123", "payer-1")]

    def test_session_without_subscription_is_ignored(self):
        assert plan_effects(_event("checkout.session.completed", {"id": "cs_123", "customer": "cus_1"})) == []


class TestSubscriptionEvents:
    def test_updated_mirrors_status_and_period(self):
        effects = plan_effects(
            _event(
                "customer.subscription.updated",
                {"id": "sub_123", "customer": "cus_123", "status": "past_due", "current_period_end": CREATED},
            )
        )
        assert effects == [
            MirrorSubscription(ProviderRef("sub_123", "cus_123"), "past_due", CREATED_AT, CREATED_AT)
        ]

    def test_period_end_read_from_items_on_newer_api(self):
        effects = plan_effects(
            _event(
                "customer.subscription.created",
                {
                    "id": "sub_123",
                    "customer": "cus_123",
                    "status": "trialing",
                    "items": {"data": [{"current_period_end": CREATED}]},
                },
            )
        )
        assert effects[0].current_period_end == CREATED_AT

    def test_deleted(self):
        effects = plan_effects(_event("customer.subscription.deleted", {"id": "sub_123", "customer": "cus_123"}))
        assert effects == [EndSubscription(ProviderRef("sub_123", "cus_123"), CREATED_AT)]


class TestInvoiceEvents:
    def test_created_syncs_usage(self):
        (effect,) = plan_effects(_event("invoice.created", _invoice()))
        assert isinstance(effect, SyncInvoiceUsage)
        snapshot = effect.invoice
        assert snapshot.provider_invoice_id == "in_123"
        assert snapshot.ref == ProviderRef("sub_123", "cus_123")
        assert snapshot.currency == "CAD"
        assert snapshot.total == Decimal("55.37")
        assert snapshot.tax == Decimal("6.37")
        assert snapshot.period_end == CREATED_AT
        assert snapshot.items == [{"description": "Standard plan", "amount": "49.00", "quantity": 1}]

    def test_subscription_found_under_parent_on_newer_api(self):
        invoice = _invoice(subscription=None, parent={"subscription_details": {"subscription": "sub_999"}})
        (effect,) = plan_effects(_event("invoice.created", invoice))
        assert effect.invoice.ref.provider_subscription_id == "sub_999"

    def test_finalized_records_pending(self):
        (effect,) = plan_effects(_event("invoice.finalized", _invoice()))
        assert isinstance(effect, RecordInvoice)
        assert effect.status == "PENDING"

    def test_payment_succeeded(self):
        clear, record = plan_effects(_event("invoice.payment_succeeded", _invoice()))
        assert isinstance(clear, ClearSuspension)
        assert clear.amount_paid == Decimal("55.37")
        assert clear.occurred_at == CREATED_AT
        assert record.status == "PAID"

    def test_payment_failed(self):
        invoice = _invoice(last_finalization_error={"message": "Your card was declined."})
        suspend, record = plan_effects(_event("invoice.payment_failed", invoice))
        assert isinstance(suspend, SuspendForNonPayment)
        assert suspend.failure_reason == "Your card was declined."
        assert record.status == "FAILED"
        assert record.failure_reason == "Your card was declined."

    def test_payment_failed_default_reason(self):
        suspend, _ = plan_effects(_event("invoice.payment_failed", _invoice()))
        assert suspend.failure_reason == "Payment failed"

    def test_one_off_invoice_is_ignored(self):
        assert plan_effects(_event("invoice.created", _invoice(subscription=None))) == []

    def test_other_invoice_events_plan_nothing(self):
        assert plan_effects(_event("invoice.upcoming", _invoice())) == []


class TestOtherEvents:
    def test_payment_method_attached(self):
        effects = plan_effects(
            _event(
                "payment_method.attached",
                {"id": "pm_1", "customer": "cus_1", "card": {"brand": "visa", "last4": "4242"}},
            )
        )
        assert effects == [UpsertPaymentMethod("pm_1", "cus_1", {"brand": "visa", "last4": "4242"})]

    def test_payment_method_detached(self):
        assert plan_effects(_event("payment_method.detached", {"id": "pm_1"})) == [DeactivatePaymentMethod("pm_1")]

    def test_charge_refunded(self):
        effects = plan_effects(
            _event("charge.refunded", {"id": "ch_1", "invoice": "in_123", "amount_refunded": 1500})
        )
        assert effects == [RefundInvoice("in_123", "ch_1", Decimal("15.00"))]

    def test_refund_without_invoice_is_ignored(self):
        assert plan_effects(_event("charge.refunded", {"id": "ch_1"})) == []

    def test_customer_updated_keeps_known_keys(self):
        effects = plan_effects(
            _event("customer.updated", {"id": "cus_1", "email": "new@example.com", "balance": 0})
        )
        assert effects == [MergeCustomerSnapshot("cus_1", {"email": "new@example.com"})]

    def test_unknown_type(self):
        assert plan_effects(_event("radar.early_fraud_warning.created", {"id": "x"})) == []
