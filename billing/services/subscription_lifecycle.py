"""Subscription lifecycle service - user-initiated state machine operations.

Every operation validates against freshly read state, performs one versioned
write to the Subscription (wrapped in ``retry_on_conflict``), then writes its
attachments, usage rows and audit log in the same transaction. Provider calls
come after the versioned write: a failure on a primary path raises
PaymentProviderError (the request's transaction rolls back), a failure on a
secondary path is logged and ignored.
"""

import logging
import uuid as uuid_pkg
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import settings
from billing.config.catalog import STANDARD_PLAN, currency_for_region, get_module, get_resource
from billing.core.concurrency import retry_on_conflict
from billing.domain.pricing import PriceBreakdown, SubscriptionItem, price_item, validate_catalog_keys
from billing.domain.proration import (
    add_days,
    days_until,
    next_renewal,
    prorated_charge,
    prorated_resource_charge,
    round_money,
)
from billing.domain.results import ErrorCode, Invalid, Ok, Result
from billing.domain.state_machine import BILLABLE_STATUSES, LIVE_STATUSES, can_transition
from billing.domain.subscription_operations import subscription_ops
from billing.domain.trial_operations import trial_ops
from billing.domain.usage_operations import usage_ops
from billing.models.ledger import SubscriptionAction
from billing.models.subscription import (
    CancelReason,
    CheckoutSessionStatus,
    Subscription,
    SubscriptionStatus,
)
from billing.models.usage import UsageType
from billing.services.stripe_service import (
    CheckoutLineItem,
    PaymentProvider,
    PaymentProviderError,
    stripe_service,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


# ─────────────────────────────────────────────────────────────────────────────
# Inputs & outcomes
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OrganizationRef:
    """An organization the payer controls, as asserted by the gateway."""

    id: uuid_pkg.UUID
    name: str | None = None
    email: str | None = None


@dataclass
class CreateSubscriptionsOutcome:
    subscriptions: list[Subscription]
    checkout_url: str
    checkout_session_id: str
    pricing: list[PriceBreakdown]
    currency: str
    is_trial: bool
    trial_ends_at: datetime | None

    @property
    def total_monthly_price(self) -> Decimal:
        return round_money(sum((p.total for p in self.pricing), Decimal("0")))


@dataclass
class PriceQuote:
    pricing: list[PriceBreakdown]
    currency: str
    trial_eligible: bool
    trial_days: int

    @property
    def total_monthly_price(self) -> Decimal:
        return round_money(sum((p.total for p in self.pricing), Decimal("0")))


@dataclass
class ActivationOutcome:
    subscription: Subscription
    status: str
    renews_at: datetime


@dataclass
class CancellationOutcome:
    subscription: Subscription
    effective_date: datetime
    remaining_days: int
    cancel_reason: str


@dataclass
class ReactivationOutcome:
    subscription: Subscription
    restored_configuration: dict[str, Any]


@dataclass
class ProratedChargeOutcome:
    subscription: Subscription
    prorated_charge: Decimal
    remaining_days: int
    next_billing_date: datetime
    usage_id: uuid_pkg.UUID
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class BudgetOutcome:
    monthly_budget: Decimal | None
    current_spending: Decimal
    remaining_budget: Decimal | None
    usage_percentage: Decimal | None
    notify_by_email: bool
    notify_by_sms: bool


# ─────────────────────────────────────────────────────────────────────────────
# Service
# ─────────────────────────────────────────────────────────────────────────────


class SubscriptionLifecycleService:
    """User-facing subscription operations."""

    def __init__(
        self,
        provider: PaymentProvider | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider: PaymentProvider = provider or stripe_service
        self.clock = clock

    # ─── create ──────────────────────────────────────────────────────────────

    async def create_subscriptions(
        self,
        db: AsyncSession,
        payer_id: uuid_pkg.UUID,
        organizations: list[OrganizationRef],
        items: list[SubscriptionItem],
        payer_email: str | None = None,
    ) -> Result[CreateSubscriptionsOutcome]:
        """
        Create one subscription per item and open a checkout session for all of them.

        First-time payers get a TRIAL (the trial flag is claimed in this same
        transaction); everyone else starts ACTIVE on a day-of-month anchor.
        CANCELLED / EXPIRED rows for an organization are restarted in place.
        """
        invalid = self._validate_items(items, organizations)
        if invalid:
            return invalid

        org_ids = [item.organization_id for item in items]
        existing = {s.organization_id: s for s in await subscription_ops.get_by_orgs(db, org_ids)}
        live = [s for s in existing.values() if SubscriptionStatus(s.status) in LIVE_STATUSES]
        if live:
            return Invalid(
                ErrorCode.ALREADY_SUBSCRIBED,
                "Some organizations already have a subscription. Manage the existing subscription instead.",
                {
                    "organization_ids": [str(s.organization_id) for s in live],
                    "statuses": [s.status for s in live],
                },
            )

        is_trial = await trial_ops.claim_trial(db, payer_id, org_ids)

        now = self.clock()
        currency = currency_for_region(settings.billing_region)
        trial_ends_at = add_days(now, STANDARD_PLAN.trial_duration_days) if is_trial else None
        status = SubscriptionStatus.TRIAL if is_trial else SubscriptionStatus.ACTIVE
        base_fields: dict[str, Any] = {
            "payer_id": payer_id,
            "status": status.value,
            "billing_cycle": "monthly",
            "standard_price": STANDARD_PLAN.monthly_price,
            "currency": currency,
            "started_at": now,
            "renews_at": trial_ends_at if trial_ends_at else next_renewal(now.day, now),
            "billing_anchor_day": (trial_ends_at or now).day,
            "trial_ends_at": trial_ends_at,
            "grace_period_ends_at": None,
            "grace_alert_sent": False,
            "cancelled_at": None,
            "cancel_reason": None,
            "auto_renew": True,
            "provider_subscription_id": None,
            "provider_metadata": {},
            "last_provider_event_at": None,
            "trial_sms_enabled": is_trial,
            "trial_sms_used": 0,
            "sms_monthly_budget": None,
            "sms_current_spending": Decimal("0"),
            "sms_budget_alerts": [],
            "sms_notify_by_email": False,
            "sms_notify_by_sms": False,
        }

        pricing = [price_item(item) for item in items]
        subscriptions: list[Subscription] = []

        for item, breakdown in zip(items, pricing, strict=True):
            previous = existing.get(item.organization_id)
            if previous is None:
                try:
                    subscription = await subscription_ops.create(
                        db, organization_id=item.organization_id, **base_fields
                    )
                except IntegrityError:
                    logger.info(f"Concurrent create for org {item.organization_id}, rejecting")
                    return Invalid(
                        ErrorCode.ALREADY_SUBSCRIBED,
                        "Organization already has a subscription",
                        {"organization_ids": [str(item.organization_id)]},
                    )
                action = SubscriptionAction.TRIAL_STARTED if is_trial else SubscriptionAction.SUBSCRIPTION_STARTED
            else:
                previous_status = previous.status

                async def restart(
                    subscription_id: uuid_pkg.UUID = previous.id,
                    organization_id: uuid_pkg.UUID = item.organization_id,
                ) -> Result[Subscription]:
                    current = await subscription_ops.get(db, subscription_id)
                    if current is None or SubscriptionStatus(current.status) in LIVE_STATUSES:
                        return Invalid(
                            ErrorCode.ALREADY_SUBSCRIBED,
                            "Organization already has a subscription",
                            {"organization_ids": [str(organization_id)]},
                        )
                    return await subscription_ops.apply_changes(db, current, base_fields)

                result = await retry_on_conflict(restart)
                if not isinstance(result, Ok):
                    return result
                subscription = result.value
                await subscription_ops.deactivate_attachments(db, subscription.id)
                action = SubscriptionAction.SUBSCRIPTION_RESTARTED
                logger.info(
                    f"Restarting subscription {subscription.id} for org {item.organization_id} "
                    f"(was {previous_status})"
                )

            await self._attach_configuration(db, subscription.id, breakdown)
            await subscription_ops.log_event(
                db,
                subscription_id=subscription.id,
                action=action,
                actor_id=payer_id,
                details={
                    "status": status.value,
                    "monthly_price": breakdown.total,
                    "trial_ends_at": trial_ends_at,
                    "renews_at": subscription.renews_at,
                },
            )
            subscriptions.append(subscription)

        # Checkout collects the payment method for every subscription in this request
        org_names = {org.id: org.name for org in organizations}
        customer_id = await subscription_ops.find_customer_id_for_payer(db, payer_id)
        if not customer_id:
            first_org = organizations[0] if organizations else None
            customer_id = self.provider.create_customer(
                str(payer_id),
                payer_email or (first_org.email if first_org else None),
                first_org.name if first_org else None,
            )

        line_items = [
            CheckoutLineItem(
                name=f"{STANDARD_PLAN.name} plan - {org_names.get(b.organization_id) or b.organization_id}",
                monthly_amount=b.total,
                metadata={"organization_id": str(b.organization_id)},
            )
            for b in pricing
        ]
        session = self.provider.create_checkout_session(
            customer_id,
            line_items,
            currency,
            trial_ends_at,
            {"payer_id": str(payer_id), "organization_count": str(len(items))},
        )

        stamped: list[Subscription] = []
        for subscription in subscriptions:

            async def stamp(subscription_id: uuid_pkg.UUID = subscription.id) -> Result[Subscription]:
                current = await subscription_ops.get(db, subscription_id)
                if current is None:
                    return Invalid(ErrorCode.SUBSCRIPTION_NOT_FOUND, "Subscription not found")
                metadata = {
                    **(current.provider_metadata or {}),
                    "stripe_customer_id": customer_id,
                    "checkout_session_id": session.id,
                    "checkout_session_status": CheckoutSessionStatus.PENDING.value,
                }
                return await subscription_ops.apply_changes(
                    db,
                    current,
                    {"provider_customer_id": customer_id, "provider_metadata": metadata},
                )

            result = await retry_on_conflict(stamp)
            if not isinstance(result, Ok):
                return result
            await subscription_ops.log_event(
                db,
                subscription_id=subscription.id,
                action=SubscriptionAction.CHECKOUT_SESSION_CREATED,
                actor_id=payer_id,
                details={"checkout_session_id": session.id, "customer_id": customer_id},
            )
            stamped.append(result.value)

        logger.info(
            f"Created {len(stamped)} subscription(s) for payer {payer_id} "
            f"(trial={is_trial}, checkout={session.id})"
        )
        return Ok(
            CreateSubscriptionsOutcome(
                subscriptions=stamped,
                checkout_url=session.url,
                checkout_session_id=session.id,
                pricing=pricing,
                currency=currency,
                is_trial=is_trial,
                trial_ends_at=trial_ends_at,
            )
        )

    async def calculate_price(
        self,
        db: AsyncSession,
        payer_id: uuid_pkg.UUID,
        items: list[SubscriptionItem],
    ) -> Result[PriceQuote]:
        """Price preview with the same rules as create. Writes nothing."""
        if len({item.organization_id for item in items}) != len(items):
            return Invalid(ErrorCode.DUPLICATE_ORGANIZATION, "Each organization may appear only once")
        invalid = validate_catalog_keys(items)
        if invalid:
            return invalid

        return Ok(
            PriceQuote(
                pricing=[price_item(item) for item in items],
                currency=currency_for_region(settings.billing_region),
                trial_eligible=await trial_ops.is_first_time(db, payer_id),
                trial_days=STANDARD_PLAN.trial_duration_days,
            )
        )

    # ─── activate / cancel / reactivate ──────────────────────────────────────

    async def activate_subscription(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
    ) -> Result[ActivationOutcome]:
        """End a TRIAL early: TRIAL -> ACTIVE, billed from today on a new anchor."""

        async def attempt() -> Result[ActivationOutcome]:
            loaded = await self._get_owned(db, organization_id, payer_id)
            if isinstance(loaded, Invalid):
                return loaded
            subscription = loaded

            if subscription.status != SubscriptionStatus.TRIAL.value:
                return Invalid(
                    ErrorCode.INVALID_STATUS,
                    f"Only TRIAL subscriptions can be activated (current: {subscription.status})",
                )
            if subscription.cancelled_at is not None:
                return Invalid(ErrorCode.ALREADY_CANCELLED, "Subscription has been cancelled")
            if (
                subscription.checkout_session_status != CheckoutSessionStatus.COMPLETE.value
                or not subscription.provider_subscription_id
            ):
                return Invalid(
                    ErrorCode.PAYMENT_SETUP_INCOMPLETE,
                    "Complete checkout to add a payment method before activating",
                )

            now = self.clock()
            previous_trial_end = subscription.trial_ends_at
            provider_subscription_id = subscription.provider_subscription_id
            renews_at = next_renewal(now.day, now)

            result = await subscription_ops.apply_changes(
                db,
                subscription,
                {
                    "status": SubscriptionStatus.ACTIVE.value,
                    "trial_ends_at": now,
                    "renews_at": renews_at,
                    "billing_anchor_day": now.day,
                },
            )
            if not isinstance(result, Ok):
                return result

            # Primary path: a provider failure rolls the local change back
            self.provider.end_trial_now(provider_subscription_id)

            await subscription_ops.log_event(
                db,
                subscription_id=subscription.id,
                action=SubscriptionAction.TRIAL_ENDED_MANUALLY,
                actor_id=payer_id,
                details={
                    "from": SubscriptionStatus.TRIAL.value,
                    "to": SubscriptionStatus.ACTIVE.value,
                    "original_trial_ends_at": previous_trial_end,
                    "renews_at": renews_at,
                },
            )
            logger.info(f"Activated subscription {subscription.id} (renews {renews_at.date()})")
            return Ok(
                ActivationOutcome(
                    subscription=result.value,
                    status=SubscriptionStatus.ACTIVE.value,
                    renews_at=renews_at,
                )
            )

        return await retry_on_conflict(attempt)

    async def cancel_subscription(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
        reason: CancelReason,
        other_reason: str | None = None,
    ) -> Result[CancellationOutcome]:
        """
        Schedule cancellation at the end of the current period.

        Status and renews_at are unchanged; access continues until the
        effective date, when the provider (or the lifecycle sweep) ends it.
        """

        async def attempt() -> Result[CancellationOutcome]:
            loaded = await self._get_owned(db, organization_id, payer_id)
            if isinstance(loaded, Invalid):
                return loaded
            subscription = loaded

            if subscription.is_cancelled:
                return Invalid(ErrorCode.ALREADY_CANCELLED, "Subscription is already cancelled")
            if subscription.status == SubscriptionStatus.EXPIRED.value:
                return Invalid(ErrorCode.INVALID_STATUS, "Expired subscriptions cannot be cancelled")

            now = self.clock()
            if subscription.status == SubscriptionStatus.TRIAL.value and subscription.trial_ends_at:
                effective_date = subscription.trial_ends_at
            else:
                effective_date = subscription.renews_at
            cancel_reason = other_reason if reason == CancelReason.OTHER and other_reason else reason.value

            result = await subscription_ops.apply_changes(
                db,
                subscription,
                {"cancelled_at": now, "cancel_reason": cancel_reason, "auto_renew": False},
            )
            if not isinstance(result, Ok):
                return result

            remaining_days = days_until(now, effective_date)
            await subscription_ops.log_event(
                db,
                subscription_id=subscription.id,
                action=SubscriptionAction.SUBSCRIPTION_CANCELLED,
                actor_id=payer_id,
                details={
                    "reason": reason.value,
                    "other_reason": other_reason,
                    "status": subscription.status,
                    "effective_date": effective_date,
                    "remaining_days": remaining_days,
                },
            )

            if subscription.provider_subscription_id:
                try:
                    self.provider.set_cancel_at_period_end(subscription.provider_subscription_id, True)
                except PaymentProviderError as e:
                    logger.warning(
                        f"Cancellation of {subscription.id} recorded locally but not at provider: {e}"
                    )

            return Ok(
                CancellationOutcome(
                    subscription=result.value,
                    effective_date=effective_date,
                    remaining_days=remaining_days,
                    cancel_reason=cancel_reason,
                )
            )

        return await retry_on_conflict(attempt)

    async def reactivate_subscription(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
    ) -> Result[ReactivationOutcome]:
        """Undo a cancellation while the paid (or trial) period is still running."""

        async def attempt() -> Result[ReactivationOutcome]:
            loaded = await self._get_owned(db, organization_id, payer_id)
            if isinstance(loaded, Invalid):
                return loaded
            subscription = loaded

            if not subscription.is_cancelled:
                return Invalid(ErrorCode.NOT_CANCELLED, "Subscription is not cancelled")

            now = self.clock()
            if now >= subscription.renews_at:
                return Invalid(
                    ErrorCode.PERIOD_ENDED,
                    "The billing period has ended. Create a new subscription instead.",
                )
            if subscription.status in (SubscriptionStatus.SUSPENDED.value, SubscriptionStatus.EXPIRED.value):
                return Invalid(
                    ErrorCode.INVALID_STATUS,
                    f"Cannot reactivate a {subscription.status} subscription",
                )

            changes: dict[str, Any] = {"cancelled_at": None, "cancel_reason": None, "auto_renew": True}
            if subscription.status == SubscriptionStatus.CANCELLED.value:
                in_trial = subscription.trial_ends_at is not None and now < subscription.trial_ends_at
                target = SubscriptionStatus.TRIAL if in_trial else SubscriptionStatus.ACTIVE
                if not can_transition(subscription.status, target, period_open=now < subscription.renews_at):
                    return Invalid(ErrorCode.INVALID_STATUS, "Subscription cannot be reactivated")
                changes["status"] = target.value

            previous_status = subscription.status
            result = await subscription_ops.apply_changes(db, subscription, changes)
            if not isinstance(result, Ok):
                return result

            restored = await self._restored_configuration(db, subscription)
            await subscription_ops.log_event(
                db,
                subscription_id=subscription.id,
                action=SubscriptionAction.SUBSCRIPTION_REACTIVATED,
                actor_id=payer_id,
                details={
                    "from": previous_status,
                    "to": subscription.status,
                    "monthly_price": restored["monthly_price"],
                },
            )

            if subscription.provider_subscription_id:
                try:
                    self.provider.set_cancel_at_period_end(subscription.provider_subscription_id, False)
                except PaymentProviderError as e:
                    logger.warning(
                        f"Reactivation of {subscription.id} recorded locally but not at provider: {e}"
                    )

            return Ok(ReactivationOutcome(subscription=result.value, restored_configuration=restored))

        return await retry_on_conflict(attempt)

    # ─── add-ons ─────────────────────────────────────────────────────────────

    async def add_module(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
        module_key: str,
    ) -> Result[ProratedChargeOutcome]:
        """Attach a module mid-period and record its prorated charge as usage."""

        async def attempt() -> Result[ProratedChargeOutcome]:
            loaded = await self._get_billable(db, organization_id, payer_id)
            if isinstance(loaded, Invalid):
                return loaded
            subscription = loaded

            module = get_module(module_key)
            if module is None:
                return Invalid(ErrorCode.MODULE_NOT_FOUND, f"Module '{module_key}' does not exist")
            if not module.is_active:
                return Invalid(ErrorCode.MODULE_NOT_AVAILABLE, f"Module '{module_key}' is not available")

            attached = await subscription_ops.get_modules(db, subscription.id)
            if any(m.module_key == module_key for m in attached):
                return Invalid(ErrorCode.ALREADY_ADDED, f"Module '{module_key}' is already enabled")

            now = self.clock()
            renews_at = subscription.renews_at
            remaining_days = days_until(now, renews_at)
            charge = prorated_charge(module.monthly_price, remaining_days)

            # Version bump serializes concurrent add-ons on this subscription
            result = await subscription_ops.apply_changes(db, subscription, {})
            if not isinstance(result, Ok):
                return result

            await subscription_ops.add_module(db, subscription.id, module.key, module.monthly_price)
            usage = await usage_ops.create(
                db,
                subscription_id=subscription.id,
                usage_type=UsageType.MODULE_PRORATED.value,
                quantity=1,
                unit_price=charge,
                amount=charge,
                is_free=charge == 0,
                usage_metadata={
                    "module_key": module.key,
                    "module_name": module.name,
                    "monthly_price": module.monthly_price,
                    "remaining_days": remaining_days,
                    "period_end": renews_at,
                },
            )
            await subscription_ops.log_event(
                db,
                subscription_id=subscription.id,
                action=SubscriptionAction.MODULE_ADDED,
                actor_id=payer_id,
                details={
                    "module_key": module.key,
                    "monthly_price": module.monthly_price,
                    "prorated_charge": charge,
                    "remaining_days": remaining_days,
                },
            )
            return Ok(
                ProratedChargeOutcome(
                    subscription=result.value,
                    prorated_charge=charge,
                    remaining_days=remaining_days,
                    next_billing_date=renews_at,
                    usage_id=usage.id,
                    details={"module_key": module.key, "monthly_price": module.monthly_price},
                )
            )

        return await retry_on_conflict(attempt)

    async def add_resource(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
        resource_type: str,
        quantity: int,
    ) -> Result[ProratedChargeOutcome]:
        """Add units of a resource mid-period; an existing row of that type grows."""

        async def attempt() -> Result[ProratedChargeOutcome]:
            loaded = await self._get_billable(db, organization_id, payer_id)
            if isinstance(loaded, Invalid):
                return loaded
            subscription = loaded

            resource = get_resource(resource_type)
            if resource is None:
                return Invalid(ErrorCode.RESOURCE_NOT_FOUND, f"Resource type '{resource_type}' does not exist")
            if not resource.is_active:
                return Invalid(
                    ErrorCode.RESOURCE_NOT_AVAILABLE, f"Resource type '{resource_type}' is not available"
                )

            now = self.clock()
            renews_at = subscription.renews_at
            remaining_days = days_until(now, renews_at)
            unit_charge = prorated_charge(resource.monthly_price, remaining_days)
            charge = prorated_resource_charge(resource.monthly_price, quantity, remaining_days)

            result = await subscription_ops.apply_changes(db, subscription, {})
            if not isinstance(result, Ok):
                return result

            existing = next(
                (r for r in await subscription_ops.get_resources(db, subscription.id) if r.resource_type == resource_type),
                None,
            )
            if existing is not None:
                previous_quantity = existing.quantity
                await subscription_ops.increase_resource_quantity(db, existing, quantity)
                new_quantity = previous_quantity + quantity
                action = SubscriptionAction.RESOURCE_QUANTITY_INCREASED
            else:
                previous_quantity = 0
                await subscription_ops.add_resource(
                    db, subscription.id, resource_type, quantity, resource.monthly_price
                )
                new_quantity = quantity
                action = SubscriptionAction.RESOURCE_ADDED

            usage = await usage_ops.create(
                db,
                subscription_id=subscription.id,
                usage_type=UsageType.RESOURCE_PRORATED.value,
                quantity=quantity,
                unit_price=unit_charge,
                amount=charge,
                is_free=charge == 0,
                usage_metadata={
                    "resource_type": resource_type,
                    "resource_name": resource.name,
                    "monthly_unit_price": resource.monthly_price,
                    "remaining_days": remaining_days,
                    "period_end": renews_at,
                },
            )
            await subscription_ops.log_event(
                db,
                subscription_id=subscription.id,
                action=action,
                actor_id=payer_id,
                details={
                    "resource_type": resource_type,
                    "previous_quantity": previous_quantity,
                    "new_quantity": new_quantity,
                    "prorated_charge": charge,
                    "remaining_days": remaining_days,
                },
            )
            return Ok(
                ProratedChargeOutcome(
                    subscription=result.value,
                    prorated_charge=charge,
                    remaining_days=remaining_days,
                    next_billing_date=renews_at,
                    usage_id=usage.id,
                    details={
                        "resource_type": resource_type,
                        "quantity": quantity,
                        "total_quantity": new_quantity,
                        "unit_prorated_charge": unit_charge,
                    },
                )
            )

        return await retry_on_conflict(attempt)

    # ─── budget & portal ─────────────────────────────────────────────────────

    async def update_sms_budget(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
        monthly_budget: Decimal | None,
        notify_by_email: bool | None = None,
        notify_by_sms: bool | None = None,
    ) -> Result[BudgetOutcome]:
        """Set the shared SMS/Email monthly budget (None means unlimited)."""
        if monthly_budget is not None and monthly_budget <= 0:
            return Invalid(ErrorCode.INVALID_BUDGET, "Monthly budget must be greater than 0, or null for unlimited")

        async def attempt() -> Result[BudgetOutcome]:
            loaded = await self._get_owned(db, organization_id, payer_id)
            if isinstance(loaded, Invalid):
                return loaded
            subscription = loaded

            if not await subscription_ops.has_active_module(db, subscription.id, ["sms", "email"]):
                return Invalid(ErrorCode.MODULE_NOT_ENABLED, "Enable the SMS or Email module first")

            changes: dict[str, Any] = {"sms_monthly_budget": monthly_budget}
            if monthly_budget != subscription.sms_monthly_budget:
                # A new budget starts its own set of threshold warnings
                changes["sms_budget_alerts"] = []
            if notify_by_email is not None:
                changes["sms_notify_by_email"] = notify_by_email
            if notify_by_sms is not None:
                changes["sms_notify_by_sms"] = notify_by_sms

            previous_budget = subscription.sms_monthly_budget
            result = await subscription_ops.apply_changes(db, subscription, changes)
            if not isinstance(result, Ok):
                return result
            updated = result.value

            await subscription_ops.log_event(
                db,
                subscription_id=updated.id,
                action=SubscriptionAction.SMS_BUDGET_UPDATED,
                actor_id=payer_id,
                details={"previous_budget": previous_budget, "new_budget": monthly_budget},
            )

            spending = Decimal(updated.sms_current_spending or 0)
            remaining = percentage = None
            if monthly_budget is not None:
                remaining = round_money(max(monthly_budget - spending, Decimal("0")))
                percentage = round_money(spending / monthly_budget * 100)
            return Ok(
                BudgetOutcome(
                    monthly_budget=monthly_budget,
                    current_spending=spending,
                    remaining_budget=remaining,
                    usage_percentage=percentage,
                    notify_by_email=updated.sms_notify_by_email,
                    notify_by_sms=updated.sms_notify_by_sms,
                )
            )

        return await retry_on_conflict(attempt)

    async def open_billing_portal(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
    ) -> Result[str]:
        """Provider-hosted page where the payer updates their payment method."""
        loaded = await self._get_owned(db, organization_id, payer_id)
        if isinstance(loaded, Invalid):
            return loaded
        subscription = loaded

        if not subscription.provider_customer_id:
            return Invalid(ErrorCode.NO_SUBSCRIPTION, "No billing account exists for this subscription yet")
        if subscription.status == SubscriptionStatus.TRIAL.value:
            return Invalid(
                ErrorCode.TRIAL_NO_PAYMENT,
                "Payment methods can be managed once the trial has been activated",
            )

        url = self.provider.create_portal_session(subscription.provider_customer_id, settings.portal_return_url)
        await subscription_ops.log_event(
            db,
            subscription_id=subscription.id,
            action=SubscriptionAction.BILLING_PORTAL_ACCESSED,
            actor_id=payer_id,
        )
        return Ok(url)

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _validate_items(
        self,
        items: list[SubscriptionItem],
        organizations: list[OrganizationRef],
    ) -> Invalid | None:
        owned = {org.id for org in organizations}
        missing = [str(item.organization_id) for item in items if item.organization_id not in owned]
        if missing:
            return Invalid(
                ErrorCode.ORGANIZATION_NOT_FOUND,
                "Some organizations do not exist or are not controlled by this user",
                {"organization_ids": missing},
            )

        seen: set[uuid_pkg.UUID] = set()
        duplicates = []
        for item in items:
            if item.organization_id in seen:
                duplicates.append(str(item.organization_id))
            seen.add(item.organization_id)
        if duplicates:
            return Invalid(
                ErrorCode.DUPLICATE_ORGANIZATION,
                "Each organization may appear only once",
                {"organization_ids": duplicates},
            )

        return validate_catalog_keys(items)

    async def _get_owned(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
    ) -> Subscription | Invalid:
        subscription = await subscription_ops.get_by_org(db, organization_id)
        if subscription is None or subscription.payer_id != payer_id:
            return Invalid(ErrorCode.SUBSCRIPTION_NOT_FOUND, "Subscription not found")
        return subscription

    async def _get_billable(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payer_id: uuid_pkg.UUID,
    ) -> Subscription | Invalid:
        """An owned subscription that can take add-ons: TRIAL or ACTIVE, not cancelled."""
        loaded = await self._get_owned(db, organization_id, payer_id)
        if isinstance(loaded, Invalid):
            return loaded
        if SubscriptionStatus(loaded.status) not in BILLABLE_STATUSES:
            return Invalid(
                ErrorCode.INVALID_STATUS,
                f"Add-ons require an ACTIVE or TRIAL subscription (current: {loaded.status})",
            )
        if loaded.cancelled_at is not None:
            return Invalid(ErrorCode.ALREADY_CANCELLED, "Subscription has been cancelled")
        return loaded

    async def _attach_configuration(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        breakdown: PriceBreakdown,
    ) -> None:
        """Bundled modules at no charge, then priced add-ons and resources."""
        for key in STANDARD_PLAN.included_module_keys:
            await subscription_ops.add_module(db, subscription_id, key, Decimal("0"))
        for module in breakdown.modules:
            await subscription_ops.add_module(db, subscription_id, module.key, module.monthly_price)
        for resource in breakdown.resources:
            await subscription_ops.add_resource(
                db, subscription_id, resource.resource_type, resource.quantity, resource.unit_price
            )

    async def _restored_configuration(
        self,
        db: AsyncSession,
        subscription: Subscription,
    ) -> dict[str, Any]:
        modules = await subscription_ops.get_modules(db, subscription.id)
        resources = await subscription_ops.get_resources(db, subscription.id)

        modules_total = round_money(sum((Decimal(m.monthly_price) for m in modules), Decimal("0")))
        resources_total = round_money(
            sum((Decimal(r.unit_price) * r.quantity for r in resources), Decimal("0"))
        )
        standard_price = Decimal(subscription.standard_price)
        return {
            "modules": [
                {
                    "key": m.module_key,
                    "name": (catalog.name if (catalog := get_module(m.module_key)) else m.module_key),
                    "monthly_price": m.monthly_price,
                }
                for m in modules
            ],
            "resources": [
                {"resource_type": r.resource_type, "quantity": r.quantity, "unit_price": r.unit_price}
                for r in resources
            ],
            "monthly_price": round_money(standard_price + modules_total + resources_total),
            "breakdown": {
                "standard_price": standard_price,
                "modules_total": modules_total,
                "resources_total": resources_total,
            },
        }


subscription_lifecycle = SubscriptionLifecycleService()
