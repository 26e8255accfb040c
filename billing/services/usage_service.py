"""Metered usage recording, quota and access checks for internal callers."""

import logging
import uuid as uuid_pkg
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing.config.catalog import (
    BUDGET_ALERT_THRESHOLDS,
    METERED_USAGE_TYPES,
    STANDARD_PLAN,
    get_resource,
    get_usage_pricing,
)
from billing.core.concurrency import retry_on_conflict
from billing.domain.proration import round_money
from billing.domain.results import Conflict, ErrorCode, Invalid, Ok, Result
from billing.domain.subscription_operations import subscription_ops
from billing.domain.usage_operations import usage_ops
from billing.models.subscription import Subscription, SubscriptionStatus
from billing.models.usage import Usage, UsageType

logger = logging.getLogger(__name__)

# sms and email share one monthly budget
BUDGETED_USAGE_TYPES = frozenset({UsageType.SMS.value, UsageType.EMAIL.value})


@dataclass
class BudgetWarning:
    current_spending: Decimal
    budget: Decimal
    percentage: Decimal
    triggered_alerts: list[int]
    notify_by_email: bool
    notify_by_sms: bool


@dataclass
class UsageRecordOutcome:
    recorded: bool
    usage_id: uuid_pkg.UUID
    is_free: bool
    unit_price: Decimal
    amount: Decimal
    budget_warning: BudgetWarning | None = None
    reason: str | None = None


@dataclass
class AccessDecision:
    allowed: bool
    reason: str | None
    subscription_status: str | None
    grace_period_ends_at: datetime | None = None


@dataclass
class UsageEntry:
    usage_type: str
    quantity: int = 1
    provider_record_id: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class BatchFailure:
    index: int
    code: str
    message: str


@dataclass
class BatchUsageOutcome:
    recorded: int
    failed: int
    total_amount: Decimal
    # Latest warning raised by the batch; earlier ones are superseded
    budget_warning: BudgetWarning | None
    failures: list[BatchFailure]


@dataclass
class QuotaDecision:
    allowed: bool
    total: int
    used: int
    available: int
    subscription_status: str
    reason: str | None = None


def crossed_thresholds(spending: Decimal, budget: Decimal, already_sent: list[int]) -> list[int]:
    """Alert thresholds reached by ``spending`` that have not fired this period."""
    percentage = spending / budget * 100
    return [t for t in BUDGET_ALERT_THRESHOLDS if percentage >= t and t not in already_sent]


class UsageService:
    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        self.clock = clock

    async def record_usage(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        usage_type: str,
        quantity: int,
        provider_record_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Result[UsageRecordOutcome]:
        """
        Record one metered usage event (called after an SMS or email is sent).

        A repeated ``provider_record_id`` returns the stored row with
        ``recorded=False``. Trial SMS is free until the plan's trial quota is
        used up. Paid sms/email add to the shared monthly spending and may
        fire budget alerts, each threshold at most once per period.
        """
        if usage_type not in METERED_USAGE_TYPES:
            return Invalid(ErrorCode.INVALID_USAGE_TYPE, f"Unsupported usage type: {usage_type}")
        pricing = get_usage_pricing(usage_type)
        if pricing is None:
            return Invalid(ErrorCode.USAGE_PRICING_NOT_FOUND, f"No pricing found for usage type: {usage_type}")

        async def attempt() -> Result[UsageRecordOutcome]:
            subscription = await subscription_ops.get_by_org(db, organization_id)
            if subscription is None:
                return Invalid(ErrorCode.SUBSCRIPTION_NOT_FOUND, "Subscription not found for this organization")

            if not await subscription_ops.has_active_module(db, subscription.id, [usage_type]):
                return Invalid(
                    ErrorCode.MODULE_NOT_ENABLED,
                    f"{usage_type.upper()} module is not enabled for this organization",
                )

            if provider_record_id:
                existing = await usage_ops.get_by_provider_record(db, subscription.id, provider_record_id)
                if existing is not None:
                    return Ok(_already_recorded(existing))

            is_free = (
                usage_type == UsageType.SMS.value
                and subscription.status == SubscriptionStatus.TRIAL.value
                and subscription.trial_sms_enabled
                and subscription.trial_sms_used < STANDARD_PLAN.trial_sms_quota
            )
            amount = Decimal("0") if is_free else round_money(pricing.unit_price * quantity)

            changes, warning = self._spending_changes(subscription, usage_type, quantity, amount, is_free)
            # Always bump the version so concurrent records for one subscription serialize
            result = await subscription_ops.apply_changes(db, subscription, changes)
            if not isinstance(result, Ok):
                return result

            usage = await usage_ops.create(
                db,
                subscription_id=subscription.id,
                usage_type=usage_type,
                quantity=quantity,
                unit_price=pricing.unit_price,
                amount=amount,
                is_free=is_free,
                provider_record_id=provider_record_id,
                usage_metadata=metadata or {},
            )
            if warning:
                logger.info(
                    f"Budget alert {warning.triggered_alerts} for subscription {subscription.id} "
                    f"({warning.percentage}% of {warning.budget})"
                )
            return Ok(
                UsageRecordOutcome(
                    recorded=True,
                    usage_id=usage.id,
                    is_free=is_free,
                    unit_price=pricing.unit_price,
                    amount=amount,
                    budget_warning=warning,
                )
            )

        return await retry_on_conflict(attempt)

    async def batch_record_usage(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        entries: list[UsageEntry],
    ) -> BatchUsageOutcome:
        """
        Record several usage events for one organization, in order.

        A rejected entry is counted in ``failed`` and the rest still record.
        Repeats of a known ``provider_record_id`` count as recorded but add
        nothing to ``total_amount``.
        """
        recorded = 0
        total_amount = Decimal("0")
        warning: BudgetWarning | None = None
        failures: list[BatchFailure] = []

        for index, entry in enumerate(entries):
            result = await self.record_usage(
                db,
                organization_id,
                entry.usage_type,
                entry.quantity,
                provider_record_id=entry.provider_record_id,
                metadata=entry.metadata,
            )
            if isinstance(result, Invalid):
                failures.append(BatchFailure(index, result.code.value, result.message))
                continue
            if isinstance(result, Conflict):
                failures.append(BatchFailure(index, ErrorCode.CONCURRENT_UPDATE.value, result.detail))
                continue

            outcome = result.value
            recorded += 1
            if outcome.recorded:
                total_amount += outcome.amount
            if outcome.budget_warning:
                warning = outcome.budget_warning

        if failures:
            logger.warning(
                f"Batch usage for org {organization_id}: {len(failures)} of {len(entries)} entries rejected"
            )
        return BatchUsageOutcome(
            recorded=recorded,
            failed=len(failures),
            total_amount=round_money(total_amount),
            budget_warning=warning,
            failures=failures,
        )

    async def check_quota(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        resource_type: str,
        quantity: int = 1,
        used: int = 0,
    ) -> Result[QuotaDecision]:
        """
        Whether ``quantity`` more units of a resource fit the organization's quota.

        The quota is the plan's included units plus every purchased unit still
        attached. ``used`` is the caller's live count; this service does not
        track devices or accounts itself.
        """
        resource = get_resource(resource_type)
        if resource is None:
            return Invalid(ErrorCode.RESOURCE_NOT_FOUND, f"Unknown resource type: {resource_type}")

        subscription = await subscription_ops.get_by_org(db, organization_id)
        if subscription is None:
            return Invalid(ErrorCode.SUBSCRIPTION_NOT_FOUND, "No subscription found for this organization")

        status = subscription.status
        if status in (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
            return Ok(QuotaDecision(False, 0, used, 0, status, f"Subscription is {status}"))

        attachments = await subscription_ops.get_resources(db, subscription.id)
        total = resource.included_quantity + sum(
            a.quantity for a in attachments if a.resource_type == resource_type
        )
        available = total - used
        if available >= quantity:
            return Ok(QuotaDecision(True, total, used, available, status))
        return Ok(
            QuotaDecision(
                False,
                total,
                used,
                available,
                status,
                f"Insufficient quota. Available: {available}, Requested: {quantity}",
            )
        )

    def _spending_changes(
        self,
        subscription: Subscription,
        usage_type: str,
        quantity: int,
        amount: Decimal,
        is_free: bool,
    ) -> tuple[dict[str, Any], BudgetWarning | None]:
        if is_free:
            return {"trial_sms_used": subscription.trial_sms_used + quantity}, None
        if usage_type not in BUDGETED_USAGE_TYPES:
            return {}, None

        spending = round_money(Decimal(subscription.sms_current_spending or 0) + amount)
        changes: dict[str, Any] = {"sms_current_spending": spending}
        budget = subscription.sms_monthly_budget
        if not budget:
            return changes, None

        already_sent = list(subscription.sms_budget_alerts or [])
        triggered = crossed_thresholds(spending, Decimal(budget), already_sent)
        if not triggered:
            return changes, None

        changes["sms_budget_alerts"] = already_sent + triggered
        warning = BudgetWarning(
            current_spending=spending,
            budget=Decimal(budget),
            percentage=round_money(spending / Decimal(budget) * 100),
            triggered_alerts=triggered,
            notify_by_email=subscription.sms_notify_by_email,
            notify_by_sms=subscription.sms_notify_by_sms,
        )
        return changes, warning

    async def check_access(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        module_key: str | None = None,
    ) -> AccessDecision:
        """Whether an organization's members may use the product right now."""
        subscription = await subscription_ops.get_by_org(db, organization_id)
        if subscription is None:
            return AccessDecision(False, "No subscription found for this organization", None)

        status = subscription.status
        if status in (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
            return AccessDecision(False, f"Subscription is {status}", status)

        if status == SubscriptionStatus.SUSPENDED.value:
            grace_end = subscription.grace_period_ends_at
            if grace_end is None or grace_end <= self.clock():
                return AccessDecision(False, "Subscription suspended due to payment failure", status, grace_end)

        if module_key and not await subscription_ops.has_active_module(db, subscription.id, [module_key]):
            return AccessDecision(False, f"Module '{module_key}' is not enabled", status)

        return AccessDecision(True, None, status, subscription.grace_period_ends_at)


def _already_recorded(usage: Usage) -> UsageRecordOutcome:
    return UsageRecordOutcome(
        recorded=False,
        usage_id=usage.id,
        is_free=usage.is_free,
        unit_price=Decimal(usage.unit_price),
        amount=Decimal(usage.amount),
        reason="Usage already recorded",
    )


usage_service = UsageService()
