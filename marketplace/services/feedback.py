"""
Client feedback on completed, paid orders. The provider's rating summary
(ratingSum, totalReviews, averageRating) is adjusted incrementally in the same batch
as the feedback write.
"""
import logging
import math
import uuid

from marketplace.errors import AlreadyReviewed, CannotReview, NotFound, Unauthorized
from marketplace.schemas import FeedbackRequest, parse_or_raise
from marketplace.timeutil import now_iso

logger = logging.getLogger(__name__)

FEEDBACK = "feedback"
ORDERS = "orders"
USERS = "users"


def rating_summary(rating_sum: float, count: int) -> dict:
    if count <= 0:
        return {"ratingSum": 0, "totalReviews": 0, "averageRating": 0}
    return {
        "ratingSum": rating_sum,
        "totalReviews": count,
        "averageRating": round(rating_sum / count, 1),
    }


class FeedbackService:
    def __init__(self, store):
        self.store = store

    async def _provider(self, provider_id: str) -> dict:
        provider = await self.store.get(USERS, provider_id)
        if provider is None:
            raise NotFound("Invalid client or provider")
        return provider

    async def create_feedback(self, client_id: str, data) -> dict:
        if not isinstance(data, FeedbackRequest):
            data = parse_or_raise(FeedbackRequest, data)

        order = await self.store.get(ORDERS, data.orderId)
        if order is None:
            raise NotFound("Order not found")
        if order.get("customerId") != client_id:
            raise Unauthorized("You can only review your own orders")
        if order.get("paymentStatus") != "paid":
            raise CannotReview("You can only review paid orders")
        if order.get("status") != "completed":
            raise CannotReview("You can only review completed orders")
        if await self.store.query(FEEDBACK, "orderId", data.orderId):
            raise AlreadyReviewed("You have already reviewed this order")

        provider_id = order["providerId"]
        provider = await self._provider(provider_id)
        now = now_iso()
        feedback = {
            "orderId": data.orderId,
            "clientId": client_id,
            "providerId": provider_id,
            "serviceId": data.serviceId or order.get("listingId"),
            "rating": data.rating,
            "comment": data.comment,
            "status": "approved",
            "serviceName": (order.get("serviceDetails") or {}).get("title") or "Service",
            "createdAt": now,
            "updatedAt": now,
        }
        summary = rating_summary(
            (provider.get("ratingSum") or 0) + data.rating,
            (provider.get("totalReviews") or 0) + 1,
        )

        feedback_id = uuid.uuid4().hex
        async with self.store.batch() as batch:
            batch.set(FEEDBACK, feedback_id, feedback)
            batch.update(USERS, provider_id, summary)
        logger.info("Feedback %s (%d stars) on order %s for provider %s", feedback_id, data.rating, data.orderId, provider_id)
        return {"id": feedback_id, **feedback}

    async def delete_feedback(self, feedback_id: str, actor_id: str, actor_role: str) -> None:
        feedback = await self.store.get(FEEDBACK, feedback_id)
        if feedback is None:
            raise NotFound("Feedback not found")
        if actor_role != "admin" and feedback.get("clientId") != actor_id:
            raise Unauthorized("You can only delete your own reviews")

        provider_id = feedback["providerId"]
        provider = await self._provider(provider_id)
        summary = rating_summary(
            (provider.get("ratingSum") or 0) - feedback["rating"],
            (provider.get("totalReviews") or 0) - 1,
        )
        async with self.store.batch() as batch:
            batch.delete(FEEDBACK, feedback_id)
            batch.update(USERS, provider_id, summary)
        logger.info("Feedback %s deleted by %s:%s", feedback_id, actor_role, actor_id)

    async def list_provider_feedback(self, provider_id: str, page: int = 1, limit: int = 10) -> dict:
        items = [
            f for f in await self.store.query(FEEDBACK, "providerId", provider_id)
            if f.get("status") == "approved"
        ]
        items.sort(key=lambda f: f.get("createdAt") or "", reverse=True)
        start = (page - 1) * limit
        return {
            "data": items[start:start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": len(items),
                "totalPages": math.ceil(len(items) / limit) if limit else 0,
            },
        }
