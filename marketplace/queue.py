"""
Push verified gateway events to the reconciliation queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
import json
import time

from marketplace.config import settings
from marketplace.redis_client import get_redis
from marketplace.sqs_client import replay_dlq_to_main, send_message, send_message_to_dlq

GATEWAY_QUEUE_KEY = "queue:gateway_events"
GATEWAY_DLQ_KEY = "queue:gateway_events:dlq"


def make_body(event: dict, attempts: int = 0) -> dict:
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "event": event,
        "attempts": attempts,
    }


async def push_to_queue(event: dict, attempts: int = 0) -> None:
    body = make_body(event, attempts)
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(GATEWAY_QUEUE_KEY, json.dumps(body))


async def push_to_dlq(event: dict, attempts: int, last_error: str) -> None:
    body = make_body(event, attempts)
    body["last_error"] = last_error
    body["failed_at"] = time.time()
    if settings.sqs_queue_url:
        await send_message_to_dlq(body)
    else:
        r = await get_redis()
        await r.lpush(GATEWAY_DLQ_KEY, json.dumps(body))


async def replay_dlq(limit: int = 100) -> int:
    """Move up to `limit` dead-lettered events back onto the main queue with attempts reset."""
    if settings.sqs_queue_url:
        return await replay_dlq_to_main(limit=limit)
    r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(GATEWAY_DLQ_KEY)
        if raw is None:
            break
        replayed += 1
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        event = data.get("event") or {}
        if not event.get("id") or not event.get("type"):
            continue
        await r.lpush(GATEWAY_QUEUE_KEY, json.dumps(make_body(event)))
    return replayed
