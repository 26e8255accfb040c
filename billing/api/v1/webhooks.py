"""Payment provider webhook endpoint."""

import logging

from fastapi import APIRouter, HTTPException, Request

from billing.api.deps import DbSession
from billing.services.stripe_service import WebhookSignatureError, stripe_service
from billing.services.webhook_reconciler import webhook_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    db: DbSession,
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    Verifies the webhook signature before processing. No authentication
    required (verified by Stripe signature). Once the event is durably
    recorded the delivery is acknowledged with 200, whatever the outcome,
    so a failing handler does not turn into a provider retry storm.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = stripe_service.construct_webhook_event(payload, sig_header)
    except WebhookSignatureError:
        raise HTTPException(400, "Invalid webhook signature") from None

    logger.info(f"Received Stripe webhook: {event.get('type')} ({event.get('id')})")

    status = await webhook_reconciler.process_event(db, event)
    return {"status": status.value}
