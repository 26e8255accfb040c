"""Subscription status transition rules."""

from billing.models.subscription import SubscriptionStatus

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.TRIAL: frozenset({S.ACTIVE, S.SUSPENDED, S.CANCELLED, S.EXPIRED}),
    S.ACTIVE: frozenset({S.SUSPENDED, S.CANCELLED, S.EXPIRED}),
    S.SUSPENDED: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    # Reactivation back edges only while the paid period is still running
    S.CANCELLED: frozenset({S.ACTIVE, S.TRIAL, S.EXPIRED}),
    S.EXPIRED: frozenset(),
}

# Provider subscription status -> local status
PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trialing": S.TRIAL,
    "active": S.ACTIVE,
    "past_due": S.SUSPENDED,
    "canceled": S.CANCELLED,
    "cancelled": S.CANCELLED,
    "unpaid": S.EXPIRED,
    "incomplete_expired": S.EXPIRED,
}

# Statuses in which add-ons can be purchased and usage is accepted
BILLABLE_STATUSES = frozenset({S.TRIAL, S.ACTIVE})

# Statuses that block creating a new subscription for the same organization
LIVE_STATUSES = frozenset({S.TRIAL, S.ACTIVE, S.SUSPENDED})


def can_transition(
    current: SubscriptionStatus | str,
    target: SubscriptionStatus | str,
    period_open: bool = True,
) -> bool:
    """
    Whether ``current -> target`` is a legal move.

    A same-state move is always allowed (a no-op). ``period_open`` gates the
    CANCELLED -> ACTIVE/TRIAL back edge, which is only legal while
    ``now < renews_at``.
    """
    current, target = S(current), S(target)
    if current == target:
        return True
    if current == S.CANCELLED and target in (S.ACTIVE, S.TRIAL) and not period_open:
        return False
    return target in ALLOWED_TRANSITIONS[current]


def map_provider_status(provider_status: str | None) -> SubscriptionStatus | None:
    """Translate a provider status, or None for statuses we do not mirror."""
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status)
