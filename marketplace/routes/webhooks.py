import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from marketplace.config import settings
from marketplace.errors import SignatureError
from marketplace.metrics import (
    webhook_events_duplicate_total,
    webhook_events_received_total,
    webhook_signature_failures_total,
)
from marketplace.queue import push_to_queue
from marketplace.redis_client import check_idempotency, release_idempotency

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> JSONResponse:
    """
    Verify the gateway signature over the raw body, then queue the event for reconciliation
    and acknowledge. Processing happens in the worker with bounded retries and a DLQ, so a
    slow or failing reconciliation never holds up the acknowledgment.
    A redelivered event id -> 200 without queuing it again.
    """
    secret = settings.stripe_webhook_secret
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        return JSONResponse(status_code=500, content={"error": "Webhook secret not configured"})

    raw_body = await request.body()
    try:
        event = request.app.state.gateway.construct_webhook_event(raw_body, stripe_signature, secret)
    except SignatureError as e:
        webhook_signature_failures_total.inc()
        logger.warning("Webhook signature verification failed: %s", e)
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})

    if not isinstance(event, dict):
        return JSONResponse(status_code=400, content={"error": "Malformed event: expected a JSON object"})
    event_id, event_type = event.get("id"), event.get("type")
    if not event_id or not event_type:
        return JSONResponse(status_code=400, content={"error": "Malformed event: missing id or type"})

    idempotency_key = f"idempotency:webhook:{event_id}"
    if await check_idempotency(idempotency_key):
        webhook_events_duplicate_total.inc()
        logger.info("Duplicate webhook event %s (%s), already queued", event_id, event_type)
        return JSONResponse(status_code=200, content={"received": True, "duplicate": True})

    try:
        await push_to_queue(event)
    except Exception:
        # Let the gateway redeliver: forget the id so the retry is not treated as a duplicate
        await release_idempotency(idempotency_key)
        logger.exception("Failed to queue webhook event %s", event_id)
        return JSONResponse(status_code=500, content={"error": "Failed to queue event"})

    webhook_events_received_total.labels(event_type=event_type).inc()
    logger.info("Received webhook event %s with ID %s", event_type, event_id)
    return JSONResponse(status_code=200, content={"received": True})
