"""create_billing_tables

Revision ID: 5b1e2c7d9a40
Revises:
Create Date: 2026-10-17 09:12:31.402118

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5b1e2c7d9a40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        sa.Uuid(),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _created_at_column() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # 1. Subscriptions (one per organization)
    op.create_table(
        "subscriptions",
        _id_column(),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("payer_id", sa.UUID(), nullable=False),
        sa.Column("status", sa.String(length=20), server_default="TRIAL", nullable=False),
        sa.Column("billing_cycle", sa.String(length=20), nullable=False),
        sa.Column("standard_price", sa.Numeric(12, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("auto_renew", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "renews_at",
            sa.DateTime(timezone=True),
            nullable=False,
            comment="End of the current period; next charge date",
        ),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_alert_sent", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(length=500), nullable=True),
        sa.Column("payment_provider", sa.String(length=20), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=255), nullable=True),
        sa.Column("provider_subscription_id", sa.String(length=255), nullable=True),
        sa.Column(
            "provider_metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "last_provider_event_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="created time of the newest applied status event",
        ),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("trial_sms_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("trial_sms_used", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("sms_monthly_budget", sa.Numeric(12, 2), nullable=True),
        sa.Column("sms_current_spending", sa.Numeric(12, 2), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "sms_budget_alerts",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("sms_notify_by_email", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("sms_notify_by_sms", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at_column(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id"),
    )
    op.create_index("ix_subscriptions_payer_id", "subscriptions", ["payer_id"], unique=False)
    op.create_index(
        "ix_subscriptions_provider_customer_id", "subscriptions", ["provider_customer_id"], unique=False
    )
    op.create_index(
        "ix_subscriptions_provider_subscription_id",
        "subscriptions",
        ["provider_subscription_id"],
        unique=False,
    )
    op.create_index("ix_subscriptions_status_renews_at", "subscriptions", ["status", "renews_at"], unique=False)

    # 2. Add-on attachments
    op.create_table(
        "subscription_modules",
        _id_column(),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("module_key", sa.String(length=100), nullable=False),
        sa.Column("monthly_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_modules_subscription_id", "subscription_modules", ["subscription_id"], unique=False
    )
    op.create_index(
        "ix_subscription_modules_sub_key",
        "subscription_modules",
        ["subscription_id", "module_key"],
        unique=False,
    )

    op.create_table(
        "subscription_resources",
        _id_column(),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("resource_type", sa.String(length=50), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_resources_subscription_id",
        "subscription_resources",
        ["subscription_id"],
        unique=False,
    )

    # 3. Usage records
    op.create_table(
        "usages",
        _id_column(),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("usage_type", sa.String(length=30), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 4), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_free", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "provider_record_id",
            sa.String(length=255),
            nullable=True,
            comment="Caller-supplied idempotency key",
        ),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("billed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "subscription_id",
            "provider_record_id",
            name="uq_usages_subscription_provider_record",
        ),
    )
    op.create_index("ix_usages_subscription_id", "usages", ["subscription_id"], unique=False)
    op.create_index("ix_usages_unbilled", "usages", ["subscription_id", "created_at"], unique=False)

    # 4. Invoice and payment method mirrors
    op.create_table(
        "invoices",
        _id_column(),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("number", sa.String(length=100), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "items",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("subtotal", sa.Numeric(12, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("tax", sa.Numeric(12, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), server_default="PENDING", nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("provider_invoice_id", sa.String(length=255), nullable=False),
        sa.Column("pdf_url", sa.String(length=1000), nullable=True),
        sa.Column(
            "provider_metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        _created_at_column(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_invoice_id"),
    )
    op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"], unique=False)

    op.create_table(
        "payment_methods",
        _id_column(),
        sa.Column("payer_id", sa.UUID(), nullable=False),
        sa.Column("provider_payment_method_id", sa.String(length=255), nullable=False),
        sa.Column("brand", sa.String(length=50), nullable=True),
        sa.Column("last4", sa.String(length=4), nullable=True),
        sa.Column("exp_month", sa.Integer(), nullable=True),
        sa.Column("exp_year", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at_column(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payer_id"),
    )
    op.create_index(
        "ix_payment_methods_provider_payment_method_id",
        "payment_methods",
        ["provider_payment_method_id"],
        unique=False,
    )

    # 5. Ledgers
    op.create_table(
        "processed_webhook_events",
        _id_column(),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("processed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index(
        "ix_processed_webhook_events_event_type", "processed_webhook_events", ["event_type"], unique=False
    )

    op.create_table(
        "user_trial_statuses",
        _id_column(),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("has_used_trial", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("trial_activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "initial_trial_org_ids",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "subscription_logs",
        _id_column(),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.UUID(), nullable=True),
        sa.Column("provider_event_id", sa.String(length=255), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_logs_subscription_id", "subscription_logs", ["subscription_id"], unique=False)
    op.create_index("ix_subscription_logs_action", "subscription_logs", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_subscription_logs_action", table_name="subscription_logs")
    op.drop_index("ix_subscription_logs_subscription_id", table_name="subscription_logs")
    op.drop_table("subscription_logs")
    op.drop_table("user_trial_statuses")
    op.drop_index("ix_processed_webhook_events_event_type", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_payment_methods_provider_payment_method_id", table_name="payment_methods")
    op.drop_table("payment_methods")
    op.drop_index("ix_invoices_subscription_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_usages_unbilled", table_name="usages")
    op.drop_index("ix_usages_subscription_id", table_name="usages")
    op.drop_table("usages")
    op.drop_index("ix_subscription_resources_subscription_id", table_name="subscription_resources")
    op.drop_table("subscription_resources")
    op.drop_index("ix_subscription_modules_sub_key", table_name="subscription_modules")
    op.drop_index("ix_subscription_modules_subscription_id", table_name="subscription_modules")
    op.drop_table("subscription_modules")
    op.drop_index("ix_subscriptions_status_renews_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_customer_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_payer_id", table_name="subscriptions")
    op.drop_table("subscriptions")
