"""Time-driven subscription transitions.

Provider webhooks drive most transitions, but some deadlines are local:
a scheduled cancellation reaching its effective date, a grace period running
out, or a trial ending without checkout ever completing.
"""

import logging
import time
import uuid as uuid_pkg
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.concurrency import retry_on_conflict
from billing.domain.results import Ok, Result
from billing.domain.state_machine import can_transition
from billing.domain.subscription_operations import subscription_ops
from billing.models.ledger import SubscriptionAction
from billing.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

S = SubscriptionStatus


@dataclass
class SweepReport:
    cancelled: int = 0
    expired: int = 0
    skipped: int = 0
    conflicts: int = 0
    duration_seconds: float = 0.0


def due_transition(subscription: Subscription, now: datetime) -> tuple[SubscriptionStatus, str] | None:
    """The (target status, reason) a subscription is due for at ``now``, if any."""
    status = S(subscription.status)

    if status in (S.TRIAL, S.ACTIVE) and subscription.cancelled_at is not None:
        effective = subscription.trial_ends_at if status == S.TRIAL else subscription.renews_at
        if effective is not None and effective <= now:
            return S.CANCELLED, "cancellation_effective"

    if status == S.SUSPENDED and subscription.grace_period_ends_at is not None:
        if subscription.grace_period_ends_at <= now:
            return S.EXPIRED, "grace_period_ended"

    if (
        status == S.TRIAL
        and subscription.provider_subscription_id is None
        and subscription.trial_ends_at is not None
        and subscription.trial_ends_at <= now
    ):
        return S.EXPIRED, "trial_ended_without_payment"

    return None


class LifecycleSweep:
    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        self.clock = clock

    async def run(self, db: AsyncSession) -> SweepReport:
        started = time.monotonic()
        report = SweepReport()
        now = self.clock()

        for candidate in await subscription_ops.list_sweep_candidates(db, now):
            result = await retry_on_conflict(lambda sid=candidate.id: self._transition(db, sid, now))
            if not isinstance(result, Ok):
                report.conflicts += 1
                logger.warning(f"[sweep] Gave up on {candidate.id} after repeated conflicts")
                continue

            target = result.value
            if target == S.CANCELLED:
                report.cancelled += 1
            elif target == S.EXPIRED:
                report.expired += 1
            else:
                report.skipped += 1

        report.duration_seconds = round(time.monotonic() - started, 2)
        return report

    async def _transition(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        now: datetime,
    ) -> Result[SubscriptionStatus | None]:
        sub = await subscription_ops.get(db, subscription_id)
        if sub is None:
            return Ok(None)

        due = due_transition(sub, now)
        if due is None:
            return Ok(None)
        target, reason = due
        if not can_transition(sub.status, target):
            return Ok(None)

        previous = sub.status
        changes = {"status": target.value}
        if target == S.CANCELLED:
            changes["auto_renew"] = False
        result = await subscription_ops.apply_changes(db, sub, changes)
        if not isinstance(result, Ok):
            return result

        await subscription_ops.log_event(
            db,
            subscription_id=sub.id,
            action=(
                SubscriptionAction.SUBSCRIPTION_CANCELLED
                if target == S.CANCELLED
                else SubscriptionAction.SUBSCRIPTION_EXPIRED
            ),
            details={"from": previous, "to": target.value, "reason": reason, "source": "sweep"},
        )
        logger.info(f"[sweep] {sub.id}: {previous} -> {target.value} ({reason})")
        return Ok(target)


lifecycle_sweep = LifecycleSweep()
