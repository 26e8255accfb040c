"""Subscription model - organization billing state mirrored from the payment provider."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, Index, Integer, Numeric, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"  # Payment failed, inside grace period
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"  # Terminal


class CancelReason(str, Enum):
    """Reasons a payer can give when cancelling."""

    TOO_EXPENSIVE = "TOO_EXPENSIVE"
    MISSING_FEATURES = "MISSING_FEATURES"
    SWITCHED_SERVICE = "SWITCHED_SERVICE"
    NOT_USING = "NOT_USING"
    TEMPORARY = "TEMPORARY"
    OTHER = "OTHER"


class CheckoutSessionStatus(str, Enum):
    """Provider checkout handshake state kept in provider_metadata."""

    PENDING = "pending"
    COMPLETE = "complete"


class Subscription(SQLModel, table=True):
    """
    Subscription model - one per organization, never physically deleted.

    The payment provider is authoritative for money; this row mirrors it and
    adds trial eligibility, add-on modules, budget alerts and the audit trail.
    Every mutation bumps ``version`` through a conditional UPDATE
    (see SubscriptionOperations.apply_changes).
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_provider_subscription_id", "provider_subscription_id"),
        Index("ix_subscriptions_status_renews_at", "status", "renews_at"),
    )

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    organization_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, unique=True),
    )
    payer_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, index=True),
    )

    # Lifecycle
    status: str = Field(
        default=SubscriptionStatus.TRIAL.value,
        sa_column=Column(String(20), nullable=False, server_default=SubscriptionStatus.TRIAL.value),
    )
    billing_cycle: str = Field(default="monthly", max_length=20, nullable=False)
    standard_price: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(12, 2), nullable=False, server_default=text("0")),
    )
    currency: str = Field(default="CAD", max_length=3, nullable=False)
    auto_renew: bool = Field(
        default=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("true")},
    )

    started_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
    )
    renews_at: datetime = Field(  # type: ignore[call-overload]
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"comment": "End of the current period; next charge date"},
    )
    billing_anchor_day: int | None = Field(
        default=None,
        nullable=True,
        sa_column_kwargs={"comment": "Day of month renewals fall on; clamped in short months"},
    )
    trial_ends_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    grace_period_ends_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    grace_alert_sent: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )
    cancelled_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    cancel_reason: str | None = Field(default=None, max_length=500, nullable=True)

    # Payment provider references
    payment_provider: str = Field(default="stripe", max_length=20, nullable=False)
    provider_customer_id: str | None = Field(default=None, max_length=255, nullable=True, index=True)
    provider_subscription_id: str | None = Field(default=None, max_length=255, nullable=True)
    provider_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    )
    last_provider_event_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        nullable=True,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"comment": "created time of the newest applied status event"},
    )

    # Optimistic lock
    version: int = Field(
        default=1,
        sa_column=Column(Integer, nullable=False, server_default=text("1")),
    )

    # Metered notifications (SMS and Email share one budget)
    trial_sms_enabled: bool = Field(
        default=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("true")},
    )
    trial_sms_used: int = Field(
        default=0,
        nullable=False,
        sa_column_kwargs={"server_default": text("0")},
    )
    sms_monthly_budget: Decimal | None = Field(
        default=None,
        sa_column=Column(Numeric(12, 2), nullable=True),
    )
    sms_current_spending: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(12, 2), nullable=False, server_default=text("0")),
    )
    sms_budget_alerts: list[int] = Field(
        default_factory=list,
        sa_column=Column(JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    )
    sms_notify_by_email: bool = Field(
        default=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("true")},
    )
    sms_notify_by_sms: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )

    # Timestamps
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    updated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": text("now()")},
    )

    @property
    def is_cancelled(self) -> bool:
        """True once cancellation was requested, even while access continues."""
        return self.status == SubscriptionStatus.CANCELLED.value or self.cancelled_at is not None

    @property
    def checkout_session_status(self) -> str | None:
        return (self.provider_metadata or {}).get("checkout_session_status")


class SubscriptionModule(SQLModel, table=True):
    """An add-on module attached to a subscription, with its price at attach time."""

    __tablename__ = "subscription_modules"
    __table_args__ = (Index("ix_subscription_modules_sub_key", "subscription_id", "module_key"),)

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    subscription_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, index=True),
    )
    module_key: str = Field(max_length=100, nullable=False)
    monthly_price: Decimal = Field(
        sa_column=Column(Numeric(12, 2), nullable=False),
    )
    is_active: bool = Field(
        default=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("true")},
    )
    added_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
    )
    removed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )


class SubscriptionResource(SQLModel, table=True):
    """A quantity of a billable resource attached to a subscription."""

    __tablename__ = "subscription_resources"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    subscription_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, index=True),
    )
    resource_type: str = Field(max_length=50, nullable=False)
    quantity: int = Field(default=1, nullable=False)
    unit_price: Decimal = Field(
        sa_column=Column(Numeric(12, 2), nullable=False),
    )
    added_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
    )
    removed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
