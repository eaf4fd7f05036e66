import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from marketplace.auth import get_identity_provider
from marketplace.config import settings
from marketplace.db import DocumentStore, close_pool, get_pool, init_schema
from marketplace.errors import MarketplaceError, ValidationError
from marketplace.gateway import get_gateway
from marketplace.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from marketplace.rate_limit import build_rate_limiter
from marketplace.redis_client import close_redis, get_redis
from marketplace.routes import admin, feedback, orders, plans, webhooks
from marketplace.schemas import violations_from
from marketplace.sqs_client import get_queue_depth

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    pool = await get_pool()
    await init_schema(pool)
    app.state.store = DocumentStore(pool)
    app.state.gateway = get_gateway()
    app.state.identity = get_identity_provider()
    app.state.rate_limiter = await build_rate_limiter()
    logger.info("Marketplace API ready (rate limiter=%s)", settings.rate_limit_backend)
    yield
    await close_redis()
    await close_pool()


app = FastAPI(title="Marketplace Orders", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(plans.router)
app.include_router(feedback.router)
app.include_router(webhooks.router)
app.include_router(admin.router)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError(violations_from(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: webhook intake, state transitions, SQS queue depth (when using SQS)."""
    try:
        if settings.sqs_queue_url:
            waiting, in_flight = await get_queue_depth()
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
    except Exception:
        logger.warning("Could not read SQS queue depth", exc_info=True)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.api_port)
