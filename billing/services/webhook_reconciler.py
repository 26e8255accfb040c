"""Webhook reconciler - exactly-once application of provider events.

Protocol per delivery:
1. Claim the event id in the processed-events ledger (row-locked).
2. Skip if an earlier delivery already processed it.
3. Plan effects (pure) and apply them.
4. Mark the ledger row processed in the same transaction as the effects.

On any failure the transaction is rolled back and the failure is recorded in
a separate transaction, so the endpoint can still acknowledge the delivery.
"""

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.database import async_session_maker
from billing.domain.webhook_event_operations import webhook_event_ops
from billing.services.effect_applier import EffectApplier, effect_applier
from billing.services.provider_events import ProviderEvent, plan_effects

logger = logging.getLogger(__name__)

# Keep stored error text bounded
MAX_ERROR_LENGTH = 2000


class WebhookStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class WebhookReconciler:
    def __init__(
        self,
        applier: EffectApplier | None = None,
        session_factory: Callable[[], Any] = async_session_maker,
    ) -> None:
        self.applier = applier or effect_applier
        self.session_factory = session_factory

    async def process_event(self, db: AsyncSession, payload: dict[str, Any]) -> WebhookStatus:
        """Apply one verified provider event at most once."""
        event = ProviderEvent.from_payload(payload)

        try:
            row, first_delivery = await webhook_event_ops.claim(db, event.id, event.type, payload)
            if row.processed:
                logger.info(f"Webhook {event.id} ({event.type}) already processed, attempt {row.attempts}")
                await db.commit()
                return WebhookStatus.DUPLICATE
            if not first_delivery:
                logger.info(f"Retrying webhook {event.id} ({event.type}), attempt {row.attempts}")

            effects = plan_effects(event)
            if not effects:
                logger.info(f"No effects for webhook {event.id} ({event.type})")
            for effect in effects:
                await self.applier.apply(db, effect, event)

            await webhook_event_ops.mark_processed(db, row)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.exception(f"Failed to process webhook {event.id} ({event.type}): {e}")
            await self._record_failure(event, payload, str(e) or type(e).__name__)
            return WebhookStatus.FAILED

        logger.info(f"Processed webhook {event.id} ({event.type}), {len(effects)} effect(s)")
        return WebhookStatus.PROCESSED

    async def _record_failure(self, event: ProviderEvent, payload: dict[str, Any], error: str) -> None:
        # Own session: the request's transaction has just been rolled back
        async with self.session_factory() as session:
            await webhook_event_ops.record_failure(
                session, event.id, event.type, payload, error[:MAX_ERROR_LENGTH]
            )
            await session.commit()


webhook_reconciler = WebhookReconciler()
