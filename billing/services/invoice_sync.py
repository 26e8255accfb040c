"""Attach unbilled usage to a freshly created provider invoice."""

import logging
import uuid as uuid_pkg
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing.domain.proration import round_money
from billing.domain.subscription_operations import subscription_ops
from billing.domain.usage_operations import usage_ops
from billing.models.ledger import SubscriptionAction
from billing.models.subscription import Subscription
from billing.models.usage import Usage, UsageType
from billing.services.stripe_service import PaymentProvider, PaymentProviderError, stripe_service

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    synced: int = 0
    free: int = 0
    failed: int = 0
    total_amount: Decimal = Decimal("0")
    failed_usage_ids: list[uuid_pkg.UUID] = field(default_factory=list)


def describe_usage(usage: Usage) -> str:
    """Human-readable invoice line for a usage row."""
    metadata: dict[str, Any] = usage.usage_metadata or {}
    if usage.usage_type == UsageType.SMS.value:
        return f"SMS messages ({usage.quantity})"
    if usage.usage_type == UsageType.EMAIL.value:
        return f"Emails ({usage.quantity})"
    if usage.usage_type == UsageType.MODULE_PRORATED.value:
        name = metadata.get("module_name") or metadata.get("module_key") or "Unknown"
        return f"Module: {name} (prorated)"
    if usage.usage_type == UsageType.RESOURCE_PRORATED.value:
        name = metadata.get("resource_name") or metadata.get("resource_type") or "Unknown"
        return f"Resource: {name} ({usage.quantity} units, prorated)"
    return f"Usage: {usage.usage_type} ({usage.quantity} units)"


class InvoiceUsageSync:
    def __init__(
        self,
        provider: PaymentProvider | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.provider: PaymentProvider = provider or stripe_service
        self.clock = clock

    async def sync_invoice_usage(
        self,
        db: AsyncSession,
        subscriptions: list[Subscription],
        provider_invoice_id: str,
        customer_id: str,
        period_start: datetime,
        period_end: datetime,
        currency: str,
        provider_event_id: str | None = None,
    ) -> SyncOutcome:
        """
        Turn every unbilled usage row in [period_start, period_end) into an invoice line.

        Free and zero-amount rows are stamped billed without a provider call.
        A provider failure on one row is logged and skipped; that row stays
        unbilled and is picked up by the next invoice-created event. Each
        provider call is keyed ``usage-<id>`` so a replay never bills twice.
        """
        outcome = SyncOutcome()
        if not subscriptions:
            return outcome

        usages = await usage_ops.list_unbilled(db, [s.id for s in subscriptions], period_start, period_end)
        if not usages:
            logger.info(f"No unbilled usage for invoice {provider_invoice_id}")
            return outcome

        logger.info(f"Syncing {len(usages)} usage row(s) to invoice {provider_invoice_id}")
        synced_by_subscription: dict[uuid_pkg.UUID, Decimal] = {}

        for usage in usages:
            amount = Decimal(usage.amount)
            if usage.is_free or amount == 0:
                if await usage_ops.mark_billed(db, usage.id, self.clock()):
                    outcome.free += 1
                continue

            try:
                self.provider.create_invoice_item(
                    customer_id,
                    provider_invoice_id,
                    amount,
                    currency,
                    describe_usage(usage),
                    {
                        "usage_id": str(usage.id),
                        "usage_type": usage.usage_type,
                        "quantity": str(usage.quantity),
                        "subscription_id": str(usage.subscription_id),
                    },
                    idempotency_key=f"usage-{usage.id}",
                )
            except PaymentProviderError as e:
                logger.error(f"Failed to sync usage {usage.id} to invoice {provider_invoice_id}: {e}")
                outcome.failed += 1
                outcome.failed_usage_ids.append(usage.id)
                continue

            if await usage_ops.mark_billed(db, usage.id, self.clock()):
                outcome.synced += 1
                outcome.total_amount += amount
                synced_by_subscription[usage.subscription_id] = (
                    synced_by_subscription.get(usage.subscription_id, Decimal("0")) + amount
                )

        outcome.total_amount = round_money(outcome.total_amount)

        for subscription_id, total in synced_by_subscription.items():
            await subscription_ops.log_event(
                db,
                subscription_id=subscription_id,
                action=SubscriptionAction.USAGE_SYNCED,
                provider_event_id=provider_event_id,
                details={"invoice_id": provider_invoice_id, "amount": round_money(total)},
            )

        logger.info(
            f"Usage sync for invoice {provider_invoice_id}: synced={outcome.synced}, "
            f"free={outcome.free}, failed={outcome.failed}, total={outcome.total_amount}"
        )
        return outcome


invoice_usage_sync = InvoiceUsageSync()
