"""Invoice and payment method models - local mirrors of provider objects."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, Numeric, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Invoice(SQLModel, table=True):
    """
    Invoice mirror.

    One row per provider invoice (``provider_invoice_id`` is unique), written
    only by webhook effects.
    """

    __tablename__ = "invoices"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    subscription_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, index=True),
    )
    number: str = Field(max_length=100, nullable=False, unique=True)
    period_start: datetime = Field(  # type: ignore[call-overload]
        nullable=False, sa_type=DateTime(timezone=True)
    )
    period_end: datetime = Field(  # type: ignore[call-overload]
        nullable=False, sa_type=DateTime(timezone=True)
    )
    items: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    )
    subtotal: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(12, 2), nullable=False, server_default=text("0")),
    )
    tax: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(12, 2), nullable=False, server_default=text("0")),
    )
    total: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(12, 2), nullable=False, server_default=text("0")),
    )
    currency: str = Field(default="CAD", max_length=3, nullable=False)
    status: str = Field(
        default=InvoiceStatus.PENDING.value,
        sa_column=Column(String(20), nullable=False, server_default=InvoiceStatus.PENDING.value),
    )
    paid_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    failure_reason: str | None = Field(default=None, max_length=500, nullable=True)
    retry_count: int = Field(
        default=0,
        nullable=False,
        sa_column_kwargs={"server_default": text("0")},
    )
    provider_invoice_id: str = Field(
        sa_column=Column(String(255), nullable=False, unique=True),
    )
    pdf_url: str | None = Field(default=None, max_length=1000, nullable=True)
    provider_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    )
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


class PaymentMethod(SQLModel, table=True):
    """The payer's default card, as last reported by the provider."""

    __tablename__ = "payment_methods"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    payer_id: uuid_pkg.UUID = Field(
        sa_column=Column(PG_UUID(as_uuid=True), nullable=False, unique=True),
    )
    provider_payment_method_id: str = Field(max_length=255, nullable=False, index=True)
    brand: str | None = Field(default=None, max_length=50, nullable=True)
    last4: str | None = Field(default=None, max_length=4, nullable=True)
    exp_month: int | None = Field(default=None, nullable=True)
    exp_year: int | None = Field(default=None, nullable=True)
    is_active: bool = Field(
        default=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("true")},
    )
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
