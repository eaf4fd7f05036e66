from fastapi import APIRouter, Body, Depends, Header
from fastapi.responses import JSONResponse

from marketplace.auth import Actor
from marketplace.deps import get_current_actor, get_order_service, order_filters, rate_limit, require_role
from marketplace.order_state import ensure_order_access, is_customer
from marketplace.redis_client import cache_response, get_cached_response
from marketplace.schemas import (
    CancellationRequest,
    MessageRequest,
    OrderFilters,
    PaymentStatusUpdate,
    ReviewRequest,
    StatusUpdate,
)
from marketplace.services.orders import OrderService

router = APIRouter(prefix="/orders", tags=["orders"], dependencies=[Depends(rate_limit)])


def ok(data, message: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data, "message": message})


def _scoped(filters: OrderFilters, actor: Actor) -> OrderFilters:
    """Customers see their own orders, providers orders for their services, admins everything."""
    if is_customer(actor.user_type):
        return filters.model_copy(update={"customerId": actor.uid})
    if actor.user_type == "provider":
        return filters.model_copy(update={"providerId": actor.uid})
    return filters


@router.get("/statistics")
async def order_statistics(
    filters: OrderFilters = Depends(order_filters),
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    stats = await orders.get_order_statistics(_scoped(filters, actor))
    return ok(stats, "Order statistics retrieved successfully")


@router.get("")
async def list_orders(
    filters: OrderFilters = Depends(order_filters),
    actor: Actor = Depends(require_role("admin")),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    return ok(await orders.list_orders(filters), "Orders retrieved successfully")


@router.get("/my")
async def my_orders(
    filters: OrderFilters = Depends(order_filters),
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    return ok(await orders.list_orders(_scoped(filters, actor)), "User orders retrieved successfully")


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await orders.get_order(order_id)
    ensure_order_access(order, actor.uid, actor.user_type, action="access")
    return ok(order, "Order retrieved successfully")


@router.post("")
async def create_order(
    body: dict = Body(...),
    actor: Actor = Depends(require_role("customer", "client")),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await orders.create_order(body, actor.uid)
    return ok(order, "Order created successfully", status_code=201)


@router.put("/{order_id}/status")
async def update_status(
    order_id: str,
    body: StatusUpdate,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await orders.update_order_status(order_id, body.status, actor.uid, actor.user_type)
    return ok(order, "Order status updated successfully")


@router.put("/{order_id}/payment-status")
async def update_payment_status(
    order_id: str,
    body: PaymentStatusUpdate,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await orders.update_payment_status(order_id, body.paymentStatus, actor.uid, actor.user_type)
    return ok(order, "Payment status updated successfully")


@router.post("/{order_id}/payment")
async def create_payment_session(
    order_id: str,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    actor: Actor = Depends(require_role("customer", "client")),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    """
    Open a checkout session for the order. A repeated Idempotency-Key returns the
    session minted for the first request instead of creating another one.
    """
    cache_key = f"idempotency:payment-session:{order_id}:{idempotency_key}" if idempotency_key else None
    if cache_key:
        cached = await get_cached_response(cache_key)
        if cached is not None:
            return ok(cached, "Payment session already created")

    session = await orders.create_payment_session(order_id, actor.uid)
    if cache_key:
        await cache_response(cache_key, session)
    return ok(session, "Payment session created successfully")


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancellationRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await orders.cancel_order(order_id, body or CancellationRequest(), actor.uid, actor.user_type)
    return ok(order, "Order cancelled successfully")


@router.post("/{order_id}/messages")
async def add_message(
    order_id: str,
    body: MessageRequest,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await orders.add_message(order_id, body, actor.uid, actor.user_type)
    return ok(order, "Message added successfully")


@router.post("/{order_id}/review")
async def add_review(
    order_id: str,
    body: ReviewRequest,
    actor: Actor = Depends(require_role("customer", "client")),
    orders: OrderService = Depends(get_order_service),
) -> JSONResponse:
    order = await orders.add_review(order_id, body, actor.uid, actor.user_type)
    return ok(order, "Review added successfully")
