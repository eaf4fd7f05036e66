"""
Order state machine: creation, status and payment-status transitions, cancellation,
reviews, messages and checkout sessions. Writes are dot-path merges stamped with updatedAt.
"""
import logging
import secrets
import string
import time

from marketplace.config import settings
from marketplace.db import get_path
from marketplace.errors import (
    AlreadyReviewed,
    CannotCancel,
    CannotReview,
    InvalidOrderStatus,
    InvalidStatus,
    NotFound,
    Unauthorized,
)
from marketplace.metrics import order_transitions_total
from marketplace.order_state import (
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    STATUS_TIMESTAMPS,
    can_cancel,
    ensure_order_access,
    is_customer,
    is_payable,
    is_valid_payment_status,
    is_valid_status,
)
from marketplace.schemas import (
    CancellationRequest,
    CreateOrderRequest,
    MessageRequest,
    OrderFilters,
    ReviewRequest,
    parse_or_raise,
)
from marketplace.timeutil import now_iso, parse_ts

logger = logging.getLogger(__name__)

COLLECTION = "orders"
ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

# Equality filters the store can apply; the first one present becomes the query predicate
FILTER_FIELDS = ("status", "paymentStatus", "customerId", "providerId", "listingId")

SORT_FIELDS = {
    "createdAt": "createdAt",
    "scheduledDate": "bookingDetails.scheduledDate",
    "totalAmount": "pricing.totalAmount",
    "status": "status",
}


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(5))
    return f"PNL-{int(time.time() * 1000)}-{suffix}"


class OrderService:
    def __init__(self, store, gateway):
        self.store = store
        self.gateway = gateway

    async def get_order(self, order_id: str) -> dict:
        order = await self.store.get(COLLECTION, order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    async def get_order_by_number(self, order_number: str) -> dict:
        matches = await self.store.query(COLLECTION, "orderNumber", order_number)
        if not matches:
            raise NotFound("Order not found")
        return matches[0]

    async def _write(self, order_id: str, fields: dict) -> dict:
        fields["updatedAt"] = now_iso()
        return await self.store.update(COLLECTION, order_id, fields)

    async def create_order(self, data: dict, customer_id: str) -> dict:
        request = parse_or_raise(CreateOrderRequest, data)
        now = now_iso()
        order = request.model_dump(exclude_none=True)
        order.update({
            "customerId": customer_id,
            "orderNumber": generate_order_number(),
            "status": "pending",
            "paymentStatus": "pending",
            "messages": [],
            "payment": {
                "sessionId": None,
                "paymentIntentId": None,
                "customerId": None,
                "subscriptionId": None,
            },
            "createdAt": now,
            "updatedAt": now,
        })
        order_id = await self.store.add(COLLECTION, order)
        logger.info("Created order %s (%s) for customer %s", order_id, order["orderNumber"], customer_id)
        return {"id": order_id, **order}

    async def update_order_status(self, order_id: str, status: str, actor_id: str, actor_role: str) -> dict:
        if not is_valid_status(status):
            raise InvalidStatus(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
        order = await self.get_order(order_id)
        ensure_order_access(order, actor_id, actor_role)

        fields = {"status": status}
        stamp_field = STATUS_TIMESTAMPS.get(status)
        if stamp_field:
            fields[stamp_field] = now_iso()
        updated = await self._write(order_id, fields)
        order_transitions_total.labels(axis="status", value=status).inc()
        logger.info("Order %s status %s -> %s by %s:%s", order_id, order.get("status"), status, actor_role, actor_id)
        return updated

    async def update_payment_status(self, order_id: str, payment_status: str, actor_id: str, actor_role: str) -> dict:
        if not is_valid_payment_status(payment_status):
            raise InvalidStatus(f"Invalid payment status. Must be one of: {', '.join(PAYMENT_STATUSES)}")
        order = await self.get_order(order_id)
        ensure_order_access(order, actor_id, actor_role)

        updated = await self._write(order_id, {"paymentStatus": payment_status})
        order_transitions_total.labels(axis="paymentStatus", value=payment_status).inc()
        logger.info(
            "Order %s paymentStatus %s -> %s by %s:%s",
            order_id, order.get("paymentStatus"), payment_status, actor_role, actor_id,
        )
        return updated

    async def attach_payment_refs(self, order_id: str, refs: dict) -> dict:
        """Record gateway correlation ids (payment intent, gateway customer, ...) on the order."""
        fields = {f"payment.{k}": v for k, v in refs.items() if v}
        if not fields:
            return await self.get_order(order_id)
        return await self._write(order_id, fields)

    async def cancel_order(self, order_id: str, cancellation_data, actor_id: str, actor_role: str) -> dict:
        order = await self.get_order(order_id)
        if order.get("status") == "completed":
            raise CannotCancel("Cannot cancel a completed order")
        if not can_cancel(order.get("status")):
            raise CannotCancel("Order is already cancelled")
        ensure_order_access(order, actor_id, actor_role, action="cancel")

        if not isinstance(cancellation_data, CancellationRequest):
            cancellation_data = parse_or_raise(CancellationRequest, cancellation_data or {})
        cancellation = cancellation_data.model_dump(exclude_none=True)
        cancellation.update({"cancelledBy": actor_role, "cancelledAt": now_iso()})

        updated = await self._write(order_id, {"status": "cancelled", "cancellation": cancellation})
        order_transitions_total.labels(axis="status", value="cancelled").inc()
        logger.info("Order %s cancelled by %s:%s", order_id, actor_role, actor_id)
        return updated

    async def add_review(self, order_id: str, review_data, actor_id: str, actor_role: str) -> dict:
        order = await self.get_order(order_id)
        if not is_customer(actor_role) or order.get("customerId") != actor_id:
            raise Unauthorized("Unauthorized: Only customers can add reviews to their orders")
        if order.get("status") != "completed":
            raise CannotReview("Can only review completed orders")
        if order.get("review"):
            raise AlreadyReviewed("Review already exists for this order")

        if not isinstance(review_data, ReviewRequest):
            review_data = parse_or_raise(ReviewRequest, review_data)
        review = {"rating": review_data.rating, "comment": review_data.comment, "submittedAt": now_iso()}
        return await self._write(order_id, {"review": review})

    async def add_message(self, order_id: str, message_data, actor_id: str, actor_role: str) -> dict:
        order = await self.get_order(order_id)
        if is_customer(actor_role):
            allowed = order.get("customerId") == actor_id
        elif actor_role == "provider":
            allowed = order.get("providerId") == actor_id
        else:
            allowed = False
        if not allowed:
            raise Unauthorized("Unauthorized: You can only message about your own orders")

        if not isinstance(message_data, MessageRequest):
            message_data = parse_or_raise(MessageRequest, message_data)
        message = {
            "senderId": actor_id,
            "senderType": "customer" if is_customer(actor_role) else actor_role,
            "message": message_data.message,
            "timestamp": now_iso(),
            "isRead": False,
        }
        # Appended under the row lock
        return await self.store.update(COLLECTION, order_id, {"updatedAt": now_iso()}, appends={"messages": message})

    def _checkout_params(self, order_id: str, order: dict, customer_id: str) -> dict:
        pricing = order.get("pricing") or {}
        details = order.get("serviceDetails") or {}
        currency = (pricing.get("currency") or settings.currency).lower()
        metadata = {"orderId": order_id, "customerId": customer_id, "type": "order_payment"}
        tracking_url = f"{settings.frontend_url}/client-dashboard/service-tracking/{order_id}"
        params = {
            "line_items": [{
                "price_data": {
                    "currency": currency,
                    "product_data": {
                        "name": details.get("title") or "Service",
                        "description": details.get("description") or f"Service: {details.get('category', '')}",
                    },
                    "unit_amount": int(round(pricing["totalAmount"] * 100)),
                },
                "quantity": 1,
            }],
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": f"{tracking_url}?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": tracking_url,
            "metadata": metadata,
            "allow_promotion_codes": False,
        }
        if order.get("customerEmail"):
            params["customer_email"] = order["customerEmail"]
        return params

    async def create_payment_session(self, order_id: str, customer_id: str) -> dict:
        order = await self.get_order(order_id)
        if order.get("customerId") != customer_id:
            raise Unauthorized("Unauthorized: You can only pay for your own orders")
        if order.get("paymentStatus") == "paid":
            raise InvalidOrderStatus("Order has already been paid")
        if not is_payable(order):
            raise InvalidOrderStatus("Order is not in a payable state")

        session = await self.gateway.create_checkout_session(self._checkout_params(order_id, order, customer_id))
        await self._write(order_id, {"payment.sessionId": session["id"]})
        logger.info("Checkout session %s created for order %s", session["id"], order_id)
        return {
            "sessionId": session["id"],
            "url": session["url"],
            "orderId": order_id,
            "amount": order["pricing"]["totalAmount"],
            "currency": (order["pricing"].get("currency") or settings.currency).lower(),
        }

    async def _filtered(self, filters: OrderFilters) -> list[dict]:
        wanted = {f: getattr(filters, f) for f in FILTER_FIELDS if getattr(filters, f) is not None}
        if wanted:
            primary, value = next(iter(wanted.items()))
            orders = await self.store.query(COLLECTION, primary, value)
        else:
            orders = await self.store.query(COLLECTION)
        orders = [o for o in orders if all(o.get(f) == v for f, v in wanted.items())]

        if filters.dateFrom or filters.dateTo:
            date_from = parse_ts(filters.dateFrom) if filters.dateFrom else None
            date_to = parse_ts(filters.dateTo) if filters.dateTo else None

            def in_range(order: dict) -> bool:
                scheduled = get_path(order, "bookingDetails.scheduledDate")
                if not scheduled:
                    return False
                ts = parse_ts(scheduled)
                if date_from and ts < date_from:
                    return False
                if date_to and ts > date_to:
                    return False
                return True

            orders = [o for o in orders if in_range(o)]
        return orders

    async def list_orders(self, filters=None) -> dict:
        if not isinstance(filters, OrderFilters):
            filters = parse_or_raise(OrderFilters, filters or {})
        orders = await self._filtered(filters)

        path = SORT_FIELDS[filters.sortBy]
        present = [o for o in orders if get_path(o, path) is not None]
        missing = [o for o in orders if get_path(o, path) is None]
        present.sort(key=lambda o: get_path(o, path), reverse=filters.sortOrder == "desc")
        ordered = present + missing

        page = ordered[filters.offset:filters.offset + filters.limit]
        return {"orders": page, "total": len(ordered), "limit": filters.limit, "offset": filters.offset}

    async def get_order_statistics(self, filters=None) -> dict:
        if not isinstance(filters, OrderFilters):
            filters = parse_or_raise(OrderFilters, filters or {})
        orders = await self._filtered(filters)

        stats = {
            "total": len(orders),
            "byStatus": {s: 0 for s in ORDER_STATUSES},
            "byPaymentStatus": {s: 0 for s in PAYMENT_STATUSES},
            "totalRevenue": 0.0,
            "averageOrderValue": 0.0,
        }
        paid = 0
        for order in orders:
            if order.get("status") in stats["byStatus"]:
                stats["byStatus"][order["status"]] += 1
            if order.get("paymentStatus") in stats["byPaymentStatus"]:
                stats["byPaymentStatus"][order["paymentStatus"]] += 1
            if order.get("paymentStatus") == "paid":
                paid += 1
                stats["totalRevenue"] += get_path(order, "pricing.totalAmount") or 0
        stats["totalRevenue"] = round(stats["totalRevenue"], 2)
        if paid:
            stats["averageOrderValue"] = round(stats["totalRevenue"] / paid, 2)
        return stats
