"""Domain operations for per-user trial eligibility."""

import uuid as uuid_pkg
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.ledger import UserTrialStatus


class TrialOperations:
    """One free trial per payer, ever."""

    async def get(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
    ) -> UserTrialStatus | None:
        statement = select(UserTrialStatus).where(UserTrialStatus.user_id == user_id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def is_first_time(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
    ) -> bool:
        """Read-only check, for previews. Use claim_trial when creating subscriptions."""
        status = await self.get(db, user_id)
        return status is None or not status.has_used_trial

    async def claim_trial(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        organization_ids: list[uuid_pkg.UUID],
    ) -> bool:
        """
        Atomically flip has_used_trial from false to true.

        INSERT ... ON CONFLICT (user_id) DO UPDATE ... WHERE has_used_trial = false
        RETURNING id. A returned row means this call claimed the trial. Two
        concurrent claims serialize on the row lock, so exactly one sees false.
        Runs inside the caller's transaction: rolling back un-claims.
        """
        now = datetime.now(UTC)
        org_ids = [str(org_id) for org_id in organization_ids]

        statement = pg_insert(UserTrialStatus).values(
            id=uuid_pkg.uuid4(),
            user_id=user_id,
            has_used_trial=True,
            trial_activated_at=now,
            initial_trial_org_ids=org_ids,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["user_id"],
            set_={
                "has_used_trial": True,
                "trial_activated_at": now,
                "initial_trial_org_ids": org_ids,
            },
            where=UserTrialStatus.has_used_trial.is_(False),  # type: ignore[attr-defined]
        ).returning(UserTrialStatus.id)

        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None


trial_ops = TrialOperations()
