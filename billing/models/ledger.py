"""Ledger models - webhook dedup, trial eligibility and the subscription audit trail."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class ProcessedWebhookEvent(SQLModel, table=True):
    """
    One row per provider event id ever received.

    ``processed`` is set in the same transaction as the event's effects, so a
    True row means the effects are durable. A False row records a failed
    attempt whose effects were rolled back.
    """

    __tablename__ = "processed_webhook_events"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    event_id: str = Field(
        sa_column=Column(String(255), nullable=False, unique=True),
    )
    provider: str = Field(default="stripe", max_length=20, nullable=False)
    event_type: str = Field(
        sa_column=Column(String(100), nullable=False, index=True),
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    )
    processed: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )
    attempts: int = Field(
        default=1,
        nullable=False,
        sa_column_kwargs={"server_default": text("1")},
    )
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    processed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )


class UserTrialStatus(SQLModel, table=True):
    """Per-user one-time trial flag. Once ``has_used_trial`` is true it never reverts."""

    __tablename__ = "user_trial_statuses"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    user_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, unique=True),
    )
    has_used_trial: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )
    trial_activated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    initial_trial_org_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    )
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )


class SubscriptionAction(str, Enum):
    """Audit actions recorded against a subscription."""

    TRIAL_STARTED = "TRIAL_STARTED"
    SUBSCRIPTION_STARTED = "SUBSCRIPTION_STARTED"
    SUBSCRIPTION_RESTARTED = "SUBSCRIPTION_RESTARTED"
    CHECKOUT_SESSION_CREATED = "CHECKOUT_SESSION_CREATED"
    CHECKOUT_COMPLETED = "CHECKOUT_COMPLETED"
    TRIAL_ENDED_MANUALLY = "TRIAL_ENDED_MANUALLY"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    MODULE_ADDED = "MODULE_ADDED"
    RESOURCE_ADDED = "RESOURCE_ADDED"
    RESOURCE_QUANTITY_INCREASED = "RESOURCE_QUANTITY_INCREASED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CHARGE_REFUNDED = "CHARGE_REFUNDED"
    USAGE_SYNCED = "USAGE_SYNCED"
    SMS_BUDGET_UPDATED = "SMS_BUDGET_UPDATED"
    BILLING_PORTAL_ACCESSED = "BILLING_PORTAL_ACCESSED"


class SubscriptionLog(SQLModel, table=True):
    """
    Append-only subscription audit log.

    Every applied state transition and every billing-relevant change writes
    exactly one row, in the same transaction as the change itself.
    """

    __tablename__ = "subscription_logs"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    subscription_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, index=True),
    )
    action: str = Field(
        sa_column=Column(String(50), nullable=False, index=True),
    )
    # None for provider-driven and scheduled changes
    actor_id: uuid_pkg.UUID | None = Field(
        default=None,
        sa_column=Column(PG_UUID(as_uuid=True), nullable=True),
    )
    provider_event_id: str | None = Field(default=None, max_length=255, nullable=True)
    details: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    )
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
