"""Domain operations for Usage records."""

import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.usage import Usage


class UsageOperations:
    """Usage rows and the one-time billed stamp."""

    async def get_by_provider_record(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        provider_record_id: str,
    ) -> Usage | None:
        statement = select(Usage).where(
            Usage.subscription_id == subscription_id,
            Usage.provider_record_id == provider_record_id,
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def create(
        self,
        db: AsyncSession,
        **fields: Any,
    ) -> Usage:
        usage = Usage(**fields)
        db.add(usage)
        await db.flush()
        return usage

    async def list_unbilled(
        self,
        db: AsyncSession,
        subscription_ids: list[uuid_pkg.UUID],
        period_start: datetime,
        period_end: datetime,
    ) -> list[Usage]:
        """Unbilled rows created in [period_start, period_end), oldest first."""
        statement = (
            select(Usage)
            .where(
                Usage.subscription_id.in_(subscription_ids),  # type: ignore[attr-defined]
                Usage.billed_at.is_(None),  # type: ignore[union-attr]
                Usage.created_at >= period_start,
                Usage.created_at < period_end,
            )
            .order_by(Usage.created_at)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def mark_billed(
        self,
        db: AsyncSession,
        usage_id: uuid_pkg.UUID,
        billed_at: datetime,
    ) -> bool:
        """Stamp billed_at once. False if another sync already billed the row."""
        statement = (
            update(Usage)
            .where(Usage.id == usage_id, Usage.billed_at.is_(None))  # type: ignore[union-attr]
            .values(billed_at=billed_at)
            .returning(Usage.id)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None


usage_ops = UsageOperations()
