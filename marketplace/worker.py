"""
Worker: pull verified gateway events from Redis or AWS SQS and reconcile them into order / plan state.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m marketplace.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading

import redis.asyncio as redis

from marketplace.config import settings
from marketplace.db import DocumentStore, close_pool, get_pool, init_schema
from marketplace.deps import build_reconciliation_handler
from marketplace.gateway import get_gateway
from marketplace.metrics import events_dlq_total, events_failed_total, events_ignored_total, events_processed_total
from marketplace.queue import GATEWAY_QUEUE_KEY, push_to_dlq, push_to_queue
from marketplace.reconciliation import PROCESSED
from marketplace.sqs_client import change_message_visibility, delete_message, receive_messages

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090
MAX_VISIBILITY_BACKOFF_SEC = 900


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def parse_body(raw: str) -> dict | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return None
    event = data.get("event") or {}
    if not event.get("id") or not event.get("type"):
        logger.warning("Message missing event id or type, skipping")
        return None
    return data


async def process_event(handler, event: dict) -> str:
    """Reconcile one event and count the outcome. Raises on failure so the caller can retry."""
    event_type = event.get("type")
    try:
        outcome = await handler.handle(event)
    except Exception:
        events_failed_total.inc()
        raise
    if outcome == PROCESSED:
        events_processed_total.labels(event_type=event_type).inc()
    else:
        events_ignored_total.labels(event_type=event_type).inc()
    return outcome


async def retry_or_dead_letter(event: dict, attempts: int, error: Exception, sleep=asyncio.sleep) -> None:
    next_attempts = attempts + 1
    if next_attempts >= settings.worker_max_retries:
        await push_to_dlq(event, next_attempts, str(error))
        events_dlq_total.inc()
        logger.warning("Moved event %s to DLQ after %d attempts", event.get("id"), next_attempts)
        return
    backoff_sec = 2 ** attempts
    logger.info(
        "Re-queuing event %s in %ds (attempt %d/%d)",
        event.get("id"), backoff_sec, next_attempts, settings.worker_max_retries,
    )
    await sleep(backoff_sec)
    await push_to_queue(event, attempts=next_attempts)


async def process_one_redis(handler, raw: str, sem: asyncio.Semaphore) -> None:
    data = parse_body(raw)
    if data is None:
        return
    event = data["event"]
    attempts = data.get("attempts", 0)

    async with sem:
        try:
            outcome = await process_event(handler, event)
            logger.info("Event %s (%s) %s", event["id"], event["type"], outcome)
        except Exception as e:
            logger.exception("Failed to reconcile event %s (attempt %d): %s", event["id"], attempts + 1, e)
            await retry_or_dead_letter(event, attempts, e)


async def process_one_sqs(handler, body: str, receipt_handle: str, receive_count: int, sem: asyncio.Semaphore) -> None:
    data = parse_body(body)
    if data is None:
        await asyncio.to_thread(delete_message, receipt_handle)
        return
    event = data["event"]

    async with sem:
        try:
            outcome = await process_event(handler, event)
            logger.info("Event %s (%s) %s", event["id"], event["type"], outcome)
            await asyncio.to_thread(delete_message, receipt_handle)
        except Exception as e:
            logger.exception("Failed to reconcile event %s (receive #%d): %s", event["id"], receive_count, e)
            # Don't delete: message will reappear after visibility timeout; after max receives SQS moves to DLQ
            backoff = min(2 ** receive_count, MAX_VISIBILITY_BACKOFF_SEC)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def _build_handler():
    pool = await get_pool()
    await init_schema(pool)
    return build_reconciliation_handler(DocumentStore(pool), get_gateway())


async def run_worker_redis(shutdown_event: asyncio.Event) -> None:
    handler = await _build_handler()
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        GATEWAY_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(GATEWAY_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(handler, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await r.aclose()
        await close_pool()
        logger.info("Worker stopped.")


async def run_worker_sqs(shutdown_event: asyncio.Event) -> None:
    handler = await _build_handler()
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(handler, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await close_pool()
        logger.info("Worker stopped.")


async def run_worker(shutdown_event: asyncio.Event) -> None:
    if settings.sqs_queue_url:
        await run_worker_sqs(shutdown_event)
    else:
        await run_worker_redis(shutdown_event)


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
