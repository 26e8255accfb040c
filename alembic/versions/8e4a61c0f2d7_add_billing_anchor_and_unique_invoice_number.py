"""add_billing_anchor_and_unique_invoice_number

Revision ID: 8e4a61c0f2d7
Revises: 5b1e2c7d9a40
Create Date: 2026-10-17 14:40:12.518903

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '8e4a61c0f2d7'
down_revision: Union[str, None] = '5b1e2c7d9a40'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        'subscriptions',
        sa.Column(
            'billing_anchor_day',
            sa.Integer(),
            nullable=True,
            comment='Day of month renewals fall on; clamped in short months',
        ),
    )
    # Existing rows keep the day of their next renewal as the anchor
    op.execute(
        "UPDATE subscriptions SET billing_anchor_day = EXTRACT(DAY FROM renews_at)::int "
        "WHERE billing_anchor_day IS NULL"
    )
    op.create_unique_constraint('invoices_number_key', 'invoices', ['number'])


def downgrade() -> None:
    op.drop_constraint('invoices_number_key', 'invoices', type_='unique')
    op.drop_column('subscriptions', 'billing_anchor_day')
