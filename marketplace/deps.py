"""
FastAPI dependencies: services built from the clients the lifespan put on app.state,
the authenticated actor, role guards and the rate limiter.
"""
import logging

from fastapi import Depends, Header, HTTPException, Request

from marketplace.auth import Actor, AuthenticationError
from marketplace.errors import RateLimited, Unauthorized
from marketplace.metrics import rate_limited_requests_total
from marketplace.reconciliation import ReconciliationHandler
from marketplace.schemas import OrderFilters, parse_or_raise
from marketplace.services.feedback import FeedbackService
from marketplace.services.orders import OrderService
from marketplace.services.plans import PlanService

logger = logging.getLogger(__name__)


def get_order_service(request: Request) -> OrderService:
    return OrderService(request.app.state.store, request.app.state.gateway)


def get_plan_service(request: Request) -> PlanService:
    return PlanService(request.app.state.store, request.app.state.gateway)


def get_feedback_service(request: Request) -> FeedbackService:
    return FeedbackService(request.app.state.store)


def build_reconciliation_handler(store, gateway) -> ReconciliationHandler:
    return ReconciliationHandler(OrderService(store, gateway), PlanService(store, gateway), gateway)


async def get_current_actor(request: Request, authorization: str | None = Header(default=None)) -> Actor:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="No token provided or invalid format")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    try:
        identity = await request.app.state.identity.verify_token(token)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))

    user = await request.app.state.store.get("users", identity["uid"])
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if user.get("status") in ("suspended", "inactive"):
        raise HTTPException(status_code=403, detail="Account is suspended or inactive")
    return Actor(
        uid=identity["uid"],
        user_type=user.get("userType") or "customer",
        email=user.get("email") or identity["claims"].get("email"),
        profile=user,
    )


def require_role(*roles: str):
    async def _guard(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.user_type not in roles:
            raise Unauthorized(f"{' or '.join(roles).capitalize()} access required")
        return actor

    return _guard


async def rate_limit(request: Request) -> None:
    key = request.client.host if request.client else "unknown"
    if not await request.app.state.rate_limiter.allow(key):
        rate_limited_requests_total.inc()
        logger.warning("Rate limit exceeded for %s", key)
        raise RateLimited("Too many requests from this IP, please try again later.")


def order_filters(request: Request) -> OrderFilters:
    """Query string -> OrderFilters; every bad parameter is reported, not just the first."""
    return parse_or_raise(OrderFilters, dict(request.query_params))
