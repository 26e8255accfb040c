"""Apply planned webhook effects to local state.

Every effect is idempotent on its own: subscriptions are found by provider
reference, status moves go through the state machine with versioned writes,
and invoice mirrors are upserted by provider invoice id.
"""

import logging
import uuid as uuid_pkg
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import settings
from billing.core.concurrency import retry_on_conflict
from billing.domain.invoice_operations import invoice_ops, payment_method_ops
from billing.domain.proration import add_days, next_renewal
from billing.domain.results import Conflict, Ok, Result
from billing.domain.state_machine import can_transition, map_provider_status
from billing.domain.subscription_operations import subscription_ops
from billing.models.invoice import Invoice, InvoiceStatus
from billing.models.ledger import SubscriptionAction
from billing.models.subscription import CheckoutSessionStatus, Subscription, SubscriptionStatus
from billing.services.invoice_sync import InvoiceUsageSync, invoice_usage_sync
from billing.services.provider_events import (
    ClearSuspension,
    CompleteCheckout,
    DeactivatePaymentMethod,
    Effect,
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
)

logger = logging.getLogger(__name__)

S = SubscriptionStatus

# Invoice statuses a later event must not walk back from
SETTLED_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID.value, InvoiceStatus.REFUNDED.value})


class EffectConflictError(RuntimeError):
    """A subscription kept changing underneath an effect. The event is recorded as failed."""


class EffectApplier:
    def __init__(
        self,
        usage_sync: InvoiceUsageSync | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.usage_sync = usage_sync or invoice_usage_sync
        self.clock = clock

    async def apply(self, db: AsyncSession, effect: Effect, event: ProviderEvent) -> None:
        if isinstance(effect, CompleteCheckout):
            await self._complete_checkout(db, effect, event)
        elif isinstance(effect, MirrorSubscription):
            await self._mirror_subscription(db, effect, event)
        elif isinstance(effect, EndSubscription):
            await self._end_subscription(db, effect, event)
        elif isinstance(effect, SyncInvoiceUsage):
            await self._sync_invoice_usage(db, effect, event)
        elif isinstance(effect, RecordInvoice):
            await self._record_invoice(db, effect)
        elif isinstance(effect, ClearSuspension):
            await self._clear_suspension(db, effect, event)
        elif isinstance(effect, SuspendForNonPayment):
            await self._suspend_for_non_payment(db, effect, event)
        elif isinstance(effect, UpsertPaymentMethod):
            await self._upsert_payment_method(db, effect)
        elif isinstance(effect, DeactivatePaymentMethod):
            await payment_method_ops.deactivate(db, effect.payment_method_id)
        elif isinstance(effect, RefundInvoice):
            await self._refund_invoice(db, effect, event)
        elif isinstance(effect, MergeCustomerSnapshot):
            await self._merge_customer_snapshot(db, effect)
        else:
            raise TypeError(f"Unhandled effect: {type(effect).__name__}")

    # ─────────────────────────────────────────────────────────────────────────
    # Subscription effects
    # ─────────────────────────────────────────────────────────────────────────

    async def _complete_checkout(self, db: AsyncSession, effect: CompleteCheckout, event: ProviderEvent) -> None:
        subscriptions = await subscription_ops.get_by_checkout_session(db, effect.checkout_session_id)
        if not subscriptions:
            logger.warning(f"No subscriptions found for checkout session {effect.checkout_session_id}")
            return

        for subscription in subscriptions:

            async def attempt(subscription_id: uuid_pkg.UUID = subscription.id) -> Result[None]:
                sub = await subscription_ops.get(db, subscription_id)
                if sub is None:
                    return Ok(None)
                if (
                    sub.provider_subscription_id == effect.provider_subscription_id
                    and sub.checkout_session_status == CheckoutSessionStatus.COMPLETE.value
                ):
                    return Ok(None)

                metadata = {
                    **(sub.provider_metadata or {}),
                    "checkout_session_status": CheckoutSessionStatus.COMPLETE.value,
                    "stripe_subscription_id": effect.provider_subscription_id,
                }
                result = await subscription_ops.apply_changes(
                    db,
                    sub,
                    {
                        "provider_subscription_id": effect.provider_subscription_id,
                        "provider_customer_id": effect.customer_id,
                        "provider_metadata": metadata,
                    },
                )
                if not isinstance(result, Ok):
                    return result
                await subscription_ops.log_event(
                    db,
                    subscription_id=sub.id,
                    action=SubscriptionAction.CHECKOUT_COMPLETED,
                    provider_event_id=event.id,
                    details={
                        "checkout_session_id": effect.checkout_session_id,
                        "stripe_subscription_id": effect.provider_subscription_id,
                    },
                )
                return Ok(None)

            await self._retry(attempt)

        logger.info(
            f"Checkout {effect.checkout_session_id} completed for {len(subscriptions)} subscription(s)"
        )

    async def _mirror_subscription(self, db: AsyncSession, effect: MirrorSubscription, event: ProviderEvent) -> None:
        target = map_provider_status(effect.provider_status)
        if target is None:
            logger.warning(f"Unknown provider status '{effect.provider_status}' in event {event.id}, skipping")
            return

        for subscription in await self._resolve(db, effect.ref):

            async def attempt(subscription_id: uuid_pkg.UUID = subscription.id) -> Result[None]:
                sub = await subscription_ops.get(db, subscription_id)
                if sub is None or self._is_stale(sub, effect.occurred_at, event):
                    return Ok(None)

                now = self.clock()
                current = S(sub.status)
                changes: dict[str, Any] = {"last_provider_event_at": effect.occurred_at}

                if sub.renews_at <= now and effect.provider_status == "active":
                    if not can_transition(current, S.ACTIVE, period_open=False):
                        logger.warning(f"Ignoring renewal of {sub.id}: {current.value} cannot renew")
                        return Ok(None)
                    anchor_day = sub.billing_anchor_day or sub.renews_at.day
                    renews_at = effect.current_period_end or next_renewal(anchor_day, now)
                    changes.update(
                        status=S.ACTIVE.value,
                        renews_at=renews_at,
                        sms_current_spending=0,
                        sms_budget_alerts=[],
                        grace_period_ends_at=None,
                        grace_alert_sent=False,
                    )
                    action = SubscriptionAction.SUBSCRIPTION_RENEWED
                    details: dict[str, Any] = {"from": current.value, "renews_at": renews_at}
                elif target == current:
                    result = await subscription_ops.apply_changes(db, sub, changes)
                    return result if isinstance(result, Conflict) else Ok(None)
                else:
                    if not can_transition(current, target, period_open=now < sub.renews_at):
                        logger.warning(
                            f"Ignoring illegal transition {current.value} -> {target.value} "
                            f"for {sub.id} (event {event.id})"
                        )
                        return Ok(None)
                    changes["status"] = target.value
                    if target == S.CANCELLED and sub.cancelled_at is None:
                        changes["cancelled_at"] = now
                    if target == S.SUSPENDED and sub.grace_period_ends_at is None:
                        changes["grace_period_ends_at"] = add_days(now, settings.billing_grace_period_days)
                        changes["grace_alert_sent"] = False
                    if target == S.ACTIVE:
                        changes["grace_period_ends_at"] = None
                        changes["grace_alert_sent"] = False
                    action = SubscriptionAction.SUBSCRIPTION_UPDATED
                    details = {"from": current.value, "to": target.value}

                result = await subscription_ops.apply_changes(db, sub, changes)
                if not isinstance(result, Ok):
                    return result
                await subscription_ops.log_event(
                    db,
                    subscription_id=sub.id,
                    action=action,
                    provider_event_id=event.id,
                    details={**details, "provider_status": effect.provider_status},
                )
                return Ok(None)

            await self._retry(attempt)

    async def _end_subscription(self, db: AsyncSession, effect: EndSubscription, event: ProviderEvent) -> None:
        for subscription in await self._resolve(db, effect.ref):

            async def attempt(subscription_id: uuid_pkg.UUID = subscription.id) -> Result[None]:
                sub = await subscription_ops.get(db, subscription_id)
                if sub is None or self._is_stale(sub, effect.occurred_at, event):
                    return Ok(None)
                if sub.status in (S.CANCELLED.value, S.EXPIRED.value):
                    return Ok(None)

                now = self.clock()
                result = await subscription_ops.apply_changes(
                    db,
                    sub,
                    {
                        "status": S.CANCELLED.value,
                        "cancelled_at": sub.cancelled_at or now,
                        "auto_renew": False,
                        "last_provider_event_at": effect.occurred_at,
                    },
                )
                if not isinstance(result, Ok):
                    return result
                await subscription_ops.log_event(
                    db,
                    subscription_id=sub.id,
                    action=SubscriptionAction.SUBSCRIPTION_CANCELLED,
                    provider_event_id=event.id,
                    details={"source": "provider", "provider_subscription_id": effect.ref.provider_subscription_id},
                )
                return Ok(None)

            await self._retry(attempt)

    async def _clear_suspension(self, db: AsyncSession, effect: ClearSuspension, event: ProviderEvent) -> None:
        for subscription in await self._resolve(db, effect.ref):

            async def attempt(subscription_id: uuid_pkg.UUID = subscription.id) -> Result[None]:
                sub = await subscription_ops.get(db, subscription_id)
                if sub is None:
                    return Ok(None)

                changes: dict[str, Any] = {"grace_period_ends_at": None, "grace_alert_sent": False}
                if sub.status == S.SUSPENDED.value and not self._is_stale(sub, effect.occurred_at, event):
                    changes["status"] = S.ACTIVE.value
                    changes["last_provider_event_at"] = effect.occurred_at

                result = await subscription_ops.apply_changes(db, sub, changes)
                if not isinstance(result, Ok):
                    return result
                await subscription_ops.log_event(
                    db,
                    subscription_id=sub.id,
                    action=SubscriptionAction.PAYMENT_SUCCEEDED,
                    provider_event_id=event.id,
                    details={"invoice_id": effect.provider_invoice_id, "amount": effect.amount_paid},
                )
                return Ok(None)

            await self._retry(attempt)

    async def _suspend_for_non_payment(
        self,
        db: AsyncSession,
        effect: SuspendForNonPayment,
        event: ProviderEvent,
    ) -> None:
        for subscription in await self._resolve(db, effect.ref):

            async def attempt(subscription_id: uuid_pkg.UUID = subscription.id) -> Result[None]:
                sub = await subscription_ops.get(db, subscription_id)
                if sub is None or self._is_stale(sub, effect.occurred_at, event):
                    return Ok(None)
                if not can_transition(sub.status, S.SUSPENDED):
                    logger.warning(f"Payment failed for {sub.status} subscription {sub.id}, not suspending")
                    return Ok(None)

                # Repeated failures do not extend an open grace period
                grace_ends = sub.grace_period_ends_at or add_days(self.clock(), settings.billing_grace_period_days)
                result = await subscription_ops.apply_changes(
                    db,
                    sub,
                    {
                        "status": S.SUSPENDED.value,
                        "grace_period_ends_at": grace_ends,
                        "grace_alert_sent": False if sub.grace_period_ends_at is None else sub.grace_alert_sent,
                        "last_provider_event_at": effect.occurred_at,
                    },
                )
                if not isinstance(result, Ok):
                    return result
                await subscription_ops.log_event(
                    db,
                    subscription_id=sub.id,
                    action=SubscriptionAction.PAYMENT_FAILED,
                    provider_event_id=event.id,
                    details={
                        "invoice_id": effect.provider_invoice_id,
                        "grace_period_ends_at": grace_ends,
                        "error": effect.failure_reason,
                    },
                )
                logger.warning(f"Payment failed, subscription {sub.id} suspended until {grace_ends}")
                return Ok(None)

            await self._retry(attempt)

    async def _merge_customer_snapshot(self, db: AsyncSession, effect: MergeCustomerSnapshot) -> None:
        for subscription in await subscription_ops.get_by_provider_customer(db, effect.customer_id):

            async def attempt(subscription_id: uuid_pkg.UUID = subscription.id) -> Result[None]:
                sub = await subscription_ops.get(db, subscription_id)
                if sub is None:
                    return Ok(None)
                metadata = {**(sub.provider_metadata or {}), "customer": effect.snapshot}
                result = await subscription_ops.apply_changes(db, sub, {"provider_metadata": metadata})
                return result if isinstance(result, Conflict) else Ok(None)

            await self._retry(attempt)

    # ─────────────────────────────────────────────────────────────────────────
    # Invoice & payment method effects
    # ─────────────────────────────────────────────────────────────────────────

    async def _sync_invoice_usage(self, db: AsyncSession, effect: SyncInvoiceUsage, event: ProviderEvent) -> None:
        invoice = effect.invoice
        subscriptions = await self._resolve(db, invoice.ref)
        if not subscriptions:
            logger.warning(f"No subscriptions found for invoice {invoice.provider_invoice_id}")
            return
        customer_id = invoice.ref.customer_id or subscriptions[0].provider_customer_id
        if not customer_id:
            logger.warning(f"Invoice {invoice.provider_invoice_id} has no customer, skipping usage sync")
            return
        await self.usage_sync.sync_invoice_usage(
            db,
            subscriptions,
            invoice.provider_invoice_id,
            customer_id,
            invoice.period_start,
            invoice.period_end,
            invoice.currency,
            provider_event_id=event.id,
        )

    async def _record_invoice(self, db: AsyncSession, effect: RecordInvoice) -> None:
        snapshot = effect.invoice
        now = self.clock()
        existing = await invoice_ops.get_by_provider_invoice(db, snapshot.provider_invoice_id)
        if existing is not None:
            await self._merge_invoice(db, existing, effect, now)
            return

        subscriptions = await self._resolve(db, snapshot.ref)
        if not subscriptions:
            logger.warning(f"No subscription for invoice {snapshot.provider_invoice_id}, not mirroring")
            return

        inserted = await invoice_ops.create_if_absent(
            db,
            subscription_id=subscriptions[0].id,
            number=await invoice_ops.next_number(db, now),
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
            items=snapshot.items,
            subtotal=snapshot.subtotal,
            tax=snapshot.tax,
            total=snapshot.total,
            currency=snapshot.currency,
            status=effect.status,
            paid_at=now if effect.status == InvoiceStatus.PAID.value else None,
            failure_reason=effect.failure_reason,
            retry_count=1 if effect.status == InvoiceStatus.FAILED.value else 0,
            provider_invoice_id=snapshot.provider_invoice_id,
            pdf_url=snapshot.pdf_url,
            provider_metadata={
                "provider_subscription_id": snapshot.ref.provider_subscription_id,
                "customer_id": snapshot.ref.customer_id,
            },
        )
        if inserted:
            return

        # A concurrent event for the same invoice inserted first; its row is committed now
        logger.info(f"Invoice {snapshot.provider_invoice_id} mirrored concurrently, merging")
        existing = await invoice_ops.get_by_provider_invoice(db, snapshot.provider_invoice_id)
        if existing is not None:
            await self._merge_invoice(db, existing, effect, now)

    async def _merge_invoice(self, db: AsyncSession, existing: Invoice, effect: RecordInvoice, now: datetime) -> None:
        """Fold a later invoice event into the mirrored row. PAID overrides a settled status."""
        snapshot = effect.invoice
        updates: dict[str, Any] = {
            "subtotal": snapshot.subtotal,
            "tax": snapshot.tax,
            "total": snapshot.total,
            "items": snapshot.items,
            "pdf_url": snapshot.pdf_url or existing.pdf_url,
        }
        if existing.status not in SETTLED_INVOICE_STATUSES or effect.status == InvoiceStatus.PAID.value:
            updates["status"] = effect.status
        if effect.status == InvoiceStatus.PAID.value and existing.paid_at is None:
            updates["paid_at"] = now
        if effect.status == InvoiceStatus.FAILED.value:
            updates["failure_reason"] = effect.failure_reason
            updates["retry_count"] = existing.retry_count + 1
        await invoice_ops.update(db, existing, updates)

    async def _refund_invoice(self, db: AsyncSession, effect: RefundInvoice, event: ProviderEvent) -> None:
        invoice = await invoice_ops.get_by_provider_invoice(db, effect.provider_invoice_id)
        if invoice is None:
            logger.info(f"Refund for unknown invoice {effect.provider_invoice_id}, ignoring")
            return
        if invoice.status == InvoiceStatus.REFUNDED.value:
            return

        await invoice_ops.update(db, invoice, {"status": InvoiceStatus.REFUNDED.value})
        await subscription_ops.log_event(
            db,
            subscription_id=invoice.subscription_id,
            action=SubscriptionAction.CHARGE_REFUNDED,
            provider_event_id=event.id,
            details={
                "charge_id": effect.charge_id,
                "invoice_id": effect.provider_invoice_id,
                "amount_refunded": effect.amount_refunded,
            },
        )

    async def _upsert_payment_method(self, db: AsyncSession, effect: UpsertPaymentMethod) -> None:
        subscriptions = await subscription_ops.get_by_provider_customer(db, effect.customer_id)
        if not subscriptions:
            logger.info(f"Payment method {effect.payment_method_id} for unknown customer, ignoring")
            return
        await payment_method_ops.upsert_for_payer(
            db, subscriptions[0].payer_id, effect.payment_method_id, effect.card
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    async def _resolve(self, db: AsyncSession, ref: ProviderRef) -> list[Subscription]:
        """Local subscriptions for a provider reference: provider subscription id first, then customer."""
        if ref.provider_subscription_id:
            subscriptions = await subscription_ops.get_by_provider_subscription(db, ref.provider_subscription_id)
            if subscriptions:
                return subscriptions
        if not ref.customer_id:
            return []
        subscriptions = await subscription_ops.get_by_provider_customer(db, ref.customer_id)
        if ref.provider_subscription_id:
            # Never touch a subscription bound to a different provider subscription
            subscriptions = [s for s in subscriptions if s.provider_subscription_id is None]
        return subscriptions

    def _is_stale(self, subscription: Subscription, occurred_at: datetime, event: ProviderEvent) -> bool:
        last = subscription.last_provider_event_at
        if last is not None and occurred_at < last:
            logger.info(f"Skipping stale event {event.id} for {subscription.id} ({occurred_at} < {last})")
            return True
        return False

    async def _retry(self, attempt: Callable[[], Awaitable[Result[None]]]) -> None:
        result = await retry_on_conflict(attempt)
        if isinstance(result, Conflict):
            raise EffectConflictError(f"{result.resource}: {result.detail}")


effect_applier = EffectApplier()
