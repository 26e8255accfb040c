"""Provider webhook events and the effects they imply.

``plan_effects`` is a pure function: it reads a normalized event and returns
the intended local effects without touching the database or the provider.
The EffectApplier turns each effect into writes.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

# ─────────────────────────────────────────────────────────────────────────────
# Normalized event
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProviderEvent:
    id: str
    type: str
    created: datetime
    data: dict[str, Any]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ProviderEvent":
        """Build from a verified Stripe event dict."""
        data = payload.get("data") or {}
        return cls(
            id=str(payload["id"]),
            type=str(payload["type"]),
            created=to_datetime(payload.get("created")) or datetime.now(UTC),
            data=dict(data.get("object") or {}),
        )


def to_datetime(epoch: int | float | None) -> datetime | None:
    if epoch is None:
        return None
    return datetime.fromtimestamp(int(epoch), UTC)


def from_minor_units(cents: int | None) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(Decimal("0.01"))


def object_id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


# ─────────────────────────────────────────────────────────────────────────────
# Effects
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProviderRef:
    """How to find the local subscriptions an event is about."""

    provider_subscription_id: str | None
    customer_id: str | None


@dataclass(frozen=True)
class CompleteCheckout:
    checkout_session_id: str
    provider_subscription_id: str
    customer_id: str
    payer_id: str | None = None


@dataclass(frozen=True)
class MirrorSubscription:
    ref: ProviderRef
    provider_status: str
    current_period_end: datetime | None
    occurred_at: datetime


@dataclass(frozen=True)
class EndSubscription:
    ref: ProviderRef
    occurred_at: datetime


@dataclass(frozen=True)
class InvoiceSnapshot:
    provider_invoice_id: str
    ref: ProviderRef
    period_start: datetime
    period_end: datetime
    currency: str
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    items: list[dict[str, Any]] = field(default_factory=list)
    pdf_url: str | None = None


@dataclass(frozen=True)
class SyncInvoiceUsage:
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class RecordInvoice:
    """Upsert the local invoice mirror in the given status."""

    invoice: InvoiceSnapshot
    status: str
    failure_reason: str | None = None


@dataclass(frozen=True)
class ClearSuspension:
    ref: ProviderRef
    provider_invoice_id: str
    amount_paid: Decimal
    occurred_at: datetime


@dataclass(frozen=True)
class SuspendForNonPayment:
    ref: ProviderRef
    provider_invoice_id: str
    failure_reason: str
    occurred_at: datetime


@dataclass(frozen=True)
class UpsertPaymentMethod:
    payment_method_id: str
    customer_id: str
    card: dict[str, Any]


@dataclass(frozen=True)
class DeactivatePaymentMethod:
    payment_method_id: str


@dataclass(frozen=True)
class RefundInvoice:
    provider_invoice_id: str
    charge_id: str
    amount_refunded: Decimal


@dataclass(frozen=True)
class MergeCustomerSnapshot:
    customer_id: str
    snapshot: dict[str, Any]


Effect = (
    CompleteCheckout
    | MirrorSubscription
    | EndSubscription
    | SyncInvoiceUsage
    | RecordInvoice
    | ClearSuspension
    | SuspendForNonPayment
    | UpsertPaymentMethod
    | DeactivatePaymentMethod
    | RefundInvoice
    | MergeCustomerSnapshot
)


# ─────────────────────────────────────────────────────────────────────────────
# Planning
# ─────────────────────────────────────────────────────────────────────────────


def _current_period_end(subscription: dict[str, Any]) -> datetime | None:
    # Newer API versions moved the period onto subscription items
    if subscription.get("current_period_end"):
        return to_datetime(subscription["current_period_end"])
    items = (subscription.get("items") or {}).get("data") or []
    if items and items[0].get("current_period_end"):
        return to_datetime(items[0]["current_period_end"])
    return None


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    if invoice.get("subscription"):
        return object_id(invoice["subscription"])
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return object_id(details.get("subscription"))


def _invoice_snapshot(invoice: dict[str, Any]) -> InvoiceSnapshot | None:
    subscription_id = _invoice_subscription_id(invoice)
    if not invoice.get("id") or not subscription_id:
        return None
    lines = (invoice.get("lines") or {}).get("data") or []
    return InvoiceSnapshot(
        provider_invoice_id=invoice["id"],
        ref=ProviderRef(subscription_id, object_id(invoice.get("customer"))),
        period_start=to_datetime(invoice.get("period_start")) or datetime.now(UTC),
        period_end=to_datetime(invoice.get("period_end")) or datetime.now(UTC),
        currency=str(invoice.get("currency") or "cad").upper(),
        subtotal=from_minor_units(invoice.get("subtotal")),
        tax=from_minor_units(invoice.get("tax")),
        total=from_minor_units(invoice.get("total", invoice.get("amount_due"))),
        items=[
            {
                "description": line.get("description"),
                "amount": str(from_minor_units(line.get("amount"))),
                "quantity": line.get("quantity"),
            }
            for line in lines
        ],
        pdf_url=invoice.get("invoice_pdf"),
    )


def plan_effects(event: ProviderEvent) -> list[Effect]:
    """Map one provider event to the local effects it implies. Unknown types plan nothing."""
    obj = event.data
    event_type = event.type

    if event_type == "checkout.session.completed":
        subscription_id = object_id(obj.get("subscription"))
        customer_id = object_id(obj.get("customer"))
        if not obj.get("id") or not subscription_id or not customer_id:
            return []
        return [
            CompleteCheckout(
                checkout_session_id=obj["id"],
                provider_subscription_id=subscription_id,
                customer_id=customer_id,
                payer_id=(obj.get("metadata") or {}).get("payer_id"),
            )
        ]

    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return [
            MirrorSubscription(
                ref=ProviderRef(obj.get("id"), object_id(obj.get("customer"))),
                provider_status=str(obj.get("status") or ""),
                current_period_end=_current_period_end(obj),
                occurred_at=event.created,
            )
        ]

    if event_type == "customer.subscription.deleted":
        return [
            EndSubscription(
                ref=ProviderRef(obj.get("id"), object_id(obj.get("customer"))),
                occurred_at=event.created,
            )
        ]

    if event_type.startswith("invoice."):
        snapshot = _invoice_snapshot(obj)
        if snapshot is None:
            # Only subscription invoices concern us
            return []
        if event_type == "invoice.created":
            return [SyncInvoiceUsage(snapshot)]
        if event_type == "invoice.finalized":
            return [RecordInvoice(snapshot, status="PENDING")]
        if event_type == "invoice.payment_succeeded":
            return [
                ClearSuspension(
                    ref=snapshot.ref,
                    provider_invoice_id=snapshot.provider_invoice_id,
                    amount_paid=from_minor_units(obj.get("amount_paid")),
                    occurred_at=event.created,
                ),
                RecordInvoice(snapshot, status="PAID"),
            ]
        if event_type == "invoice.payment_failed":
            reason = ((obj.get("last_finalization_error") or {}).get("message")) or "Payment failed"
            return [
                SuspendForNonPayment(
                    ref=snapshot.ref,
                    provider_invoice_id=snapshot.provider_invoice_id,
                    failure_reason=reason,
                    occurred_at=event.created,
                ),
                RecordInvoice(snapshot, status="FAILED", failure_reason=reason),
            ]
        return []

    if event_type == "payment_method.attached":
        customer_id = object_id(obj.get("customer"))
        if not obj.get("id") or not customer_id:
            return []
        return [UpsertPaymentMethod(obj["id"], customer_id, dict(obj.get("card") or {}))]

    if event_type == "payment_method.detached":
        if not obj.get("id"):
            return []
        return [DeactivatePaymentMethod(obj["id"])]

    if event_type == "charge.refunded":
        invoice_id = object_id(obj.get("invoice"))
        if not invoice_id:
            return []
        return [
            RefundInvoice(
                provider_invoice_id=invoice_id,
                charge_id=str(obj.get("id")),
                amount_refunded=from_minor_units(obj.get("amount_refunded")),
            )
        ]

    if event_type == "customer.updated":
        if not obj.get("id"):
            return []
        snapshot = {
            key: obj.get(key)
            for key in ("email", "name", "phone", "address", "invoice_settings", "metadata")
            if key in obj
        }
        return [MergeCustomerSnapshot(obj["id"], snapshot)]

    return []
