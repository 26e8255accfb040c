"""Usage model - metered and prorated charges waiting to be billed."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, Index, Numeric, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class UsageType(str, Enum):
    """Kinds of chargeable usage."""

    SMS = "sms"
    EMAIL = "email"
    MODULE_PRORATED = "module_prorated"
    RESOURCE_PRORATED = "resource_prorated"


class Usage(SQLModel, table=True):
    """
    A single chargeable usage record.

    Immutable once written, except ``billed_at`` which is stamped exactly once
    when the row is attached to a provider invoice.
    """

    __tablename__ = "usages"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "provider_record_id",
            name="uq_usages_subscription_provider_record",
        ),
        Index("ix_usages_unbilled", "subscription_id", "created_at"),
    )

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    subscription_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, index=True),
    )
    usage_type: str = Field(
        sa_column=Column(String(30), nullable=False),
    )
    quantity: int = Field(default=1, nullable=False)
    unit_price: Decimal = Field(
        sa_column=Column(Numeric(12, 4), nullable=False),
    )
    amount: Decimal = Field(
        sa_column=Column(Numeric(12, 2), nullable=False),
    )
    is_free: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )
    provider_record_id: str | None = Field(
        default=None,
        max_length=255,
        nullable=True,
        sa_column_kwargs={"comment": "Caller-supplied idempotency key"},
    )
    usage_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    )
    billed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
