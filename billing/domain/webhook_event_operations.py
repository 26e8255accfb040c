"""Domain operations for the processed-webhook-event ledger."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.ledger import ProcessedWebhookEvent


class WebhookEventOperations:
    """Claim, complete and fail provider event ids."""

    async def claim(
        self,
        db: AsyncSession,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> tuple[ProcessedWebhookEvent, bool]:
        """
        Insert the event id, or lock the existing row.

        Returns (row, first_delivery). The row stays locked (FOR UPDATE) until
        the caller's transaction ends, so concurrent deliveries of one event
        id are applied one at a time.
        """
        insert_stmt = (
            pg_insert(ProcessedWebhookEvent)
            .values(
                id=uuid_pkg.uuid4(),
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                processed=False,
                attempts=1,
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(ProcessedWebhookEvent.id)
        )
        inserted_id = (await db.execute(insert_stmt)).scalar_one_or_none()

        statement = (
            select(ProcessedWebhookEvent)
            .where(ProcessedWebhookEvent.event_id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await db.execute(statement)).scalar_one()

        if inserted_id is None:
            row.attempts = row.attempts + 1
            db.add(row)
            await db.flush()
        return row, inserted_id is not None

    async def mark_processed(
        self,
        db: AsyncSession,
        row: ProcessedWebhookEvent,
    ) -> None:
        row.processed = True
        row.processed_at = datetime.now(UTC)
        row.error = None
        db.add(row)
        await db.flush()

    async def record_failure(
        self,
        db: AsyncSession,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        error: str,
    ) -> None:
        """
        Record a failed attempt in its own transaction.

        Never downgrades a row that another delivery already processed.
        """
        statement = pg_insert(ProcessedWebhookEvent).values(
            id=uuid_pkg.uuid4(),
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            processed=False,
            attempts=1,
            error=error,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["event_id"],
            set_={
                "error": error,
                "attempts": ProcessedWebhookEvent.attempts + 1,
            },
            where=ProcessedWebhookEvent.processed.is_(False),  # type: ignore[attr-defined]
        )
        await db.execute(statement)


webhook_event_ops = WebhookEventOperations()
