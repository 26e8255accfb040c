"""Domain operations for the Invoice and PaymentMethod mirrors."""

import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.invoice import Invoice, PaymentMethod

# Two-key advisory lock namespace for invoice numbering (key 2 = hashtext of the month prefix)
INVOICE_NUMBER_LOCK_NAMESPACE = 735002


class InvoiceOperations:
    """Invoice mirror reads and writes (webhook-driven only)."""

    async def get_by_provider_invoice(
        self,
        db: AsyncSession,
        provider_invoice_id: str,
    ) -> Invoice | None:
        """Get the mirror row, locked for the rest of the transaction."""
        statement = (
            select(Invoice)
            .where(Invoice.provider_invoice_id == provider_invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def next_number(self, db: AsyncSession, issued_at: datetime) -> str:
        """
        Sequential local number: INV-YYYY-MM-NNN.

        Takes a transaction-scoped advisory lock on the month, so concurrent
        mirrors for one month number one at a time; the lock is held until the
        caller's transaction ends, after its invoice row is visible. The unique
        constraint on ``number`` backs this up.
        """
        prefix = f"INV-{issued_at.year}-{issued_at.month:02d}-"
        await db.execute(
            text("SELECT pg_advisory_xact_lock(:namespace, hashtext(:prefix))"),
            {"namespace": INVOICE_NUMBER_LOCK_NAMESPACE, "prefix": prefix},
        )
        statement = select(func.count()).select_from(Invoice).where(
            Invoice.number.startswith(prefix)  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        count = result.scalar() or 0
        return f"{prefix}{count + 1:03d}"

    async def create_if_absent(
        self,
        db: AsyncSession,
        **fields: Any,
    ) -> bool:
        """
        INSERT ... ON CONFLICT (provider_invoice_id) DO NOTHING.

        Returns False when another delivery already mirrored this invoice; the
        caller then re-reads the row with get_by_provider_invoice and merges.
        A concurrent uncommitted insert of the same id makes this wait for it.
        """
        statement = (
            pg_insert(Invoice)
            .values(id=uuid_pkg.uuid4(), **fields)
            .on_conflict_do_nothing(index_elements=["provider_invoice_id"])
            .returning(Invoice.id)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def update(
        self,
        db: AsyncSession,
        invoice: Invoice,
        updates: dict[str, Any],
    ) -> Invoice:
        for field, value in updates.items():
            setattr(invoice, field, value)
        db.add(invoice)
        await db.flush()
        return invoice


class PaymentMethodOperations:
    """One active payment method per payer."""

    async def upsert_for_payer(
        self,
        db: AsyncSession,
        payer_id: uuid_pkg.UUID,
        provider_payment_method_id: str,
        card: dict[str, Any],
    ) -> None:
        values = {
            "provider_payment_method_id": provider_payment_method_id,
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
            "is_active": True,
        }
        statement = pg_insert(PaymentMethod).values(id=uuid_pkg.uuid4(), payer_id=payer_id, **values)
        statement = statement.on_conflict_do_update(
            index_elements=["payer_id"],
            set_={**values, "updated_at": func.now()},
        )
        await db.execute(statement)

    async def deactivate(
        self,
        db: AsyncSession,
        provider_payment_method_id: str,
    ) -> int:
        """Mark a detached method inactive. Returns the number of rows changed."""
        statement = select(PaymentMethod).where(
            PaymentMethod.provider_payment_method_id == provider_payment_method_id,
            PaymentMethod.is_active.is_(True),  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        methods = list(result.scalars().all())
        for method in methods:
            method.is_active = False
            db.add(method)
        await db.flush()
        return len(methods)


invoice_ops = InvoiceOperations()
payment_method_ops = PaymentMethodOperations()
