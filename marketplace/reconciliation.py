"""
Payment reconciliation: turn a verified gateway event into order / plan state changes.

Every write sets an absolute value (paymentStatus=paid, status=confirmed, plan period
from a given invoice), so redelivered or reordered events converge on the same state.
Errors propagate to the caller (the queue worker), which retries and dead-letters.
"""
import logging

from marketplace.errors import PlanNotFound

logger = logging.getLogger(__name__)

ORDER_PAYMENT = "order_payment"

PROCESSED = "processed"
IGNORED = "ignored"


def _subscription_id(invoice: dict) -> str | None:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return details.get("subscription")


def _plan_metadata(metadata: dict) -> tuple[str, str, str] | None:
    user_id, plan_name, plan_type = metadata.get("userId"), metadata.get("planName"), metadata.get("planType")
    if user_id and plan_name and plan_type:
        return user_id, plan_name, plan_type
    return None


class ReconciliationHandler:
    def __init__(self, orders, plans, gateway):
        self.orders = orders
        self.plans = plans
        self.gateway = gateway
        self._handlers = {
            "checkout.session.completed": self._payment_succeeded,
            "payment_intent.succeeded": self._payment_succeeded,
            "payment_intent.payment_failed": self._payment_failed,
            "invoice.payment_succeeded": self._invoice_paid,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
        }

    async def handle(self, event: dict) -> str:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type %s (id=%s), dropping", event_type, event.get("id"))
            return IGNORED
        logger.info("Processing %s (id=%s, object=%s)", event_type, event.get("id"), obj.get("id"))
        return await handler(event_type, obj)

    async def _payment_succeeded(self, event_type: str, obj: dict) -> str:
        metadata = obj.get("metadata") or {}
        if metadata.get("type") == ORDER_PAYMENT:
            return await self._order_paid(event_type, obj, metadata)
        plan = _plan_metadata(metadata)
        if plan:
            user_id, plan_name, plan_type = plan
            is_session = event_type == "checkout.session.completed"
            await self.plans.activate_provider_plan(user_id, plan_name, plan_type, {
                "sessionId": obj.get("id") if is_session else None,
                "paymentIntentId": obj.get("payment_intent") if is_session else obj.get("id"),
                "customerId": obj.get("customer"),
                "subscriptionId": obj.get("subscription"),
            })
            return PROCESSED
        logger.info("%s %s is not an order or plan payment, skipping", event_type, obj.get("id"))
        return IGNORED

    async def _order_paid(self, event_type: str, obj: dict, metadata: dict) -> str:
        order_id, customer_id = metadata.get("orderId"), metadata.get("customerId")
        if not order_id or not customer_id:
            logger.warning("%s %s has order_payment metadata without orderId/customerId", event_type, obj.get("id"))
            return IGNORED

        paid = await self.orders.update_payment_status(order_id, "paid", customer_id, "client")
        if paid.get("status") in ("cancelled", "refunded"):
            logger.warning("Payment received for %s order %s; needs a refund", paid["status"], order_id)
        # Absolute targets, applied in this order on every delivery
        await self.orders.update_order_status(order_id, "confirmed", customer_id, "client")

        is_session = event_type == "checkout.session.completed"
        await self.orders.attach_payment_refs(order_id, {
            "paymentIntentId": obj.get("payment_intent") if is_session else obj.get("id"),
            "customerId": obj.get("customer"),
        })
        logger.info("Order %s reconciled as paid from %s", order_id, event_type)
        return PROCESSED

    async def _payment_failed(self, event_type: str, obj: dict) -> str:
        metadata = obj.get("metadata") or {}
        if metadata.get("type") != ORDER_PAYMENT:
            logger.info("payment_intent.payment_failed %s is not an order payment, skipping", obj.get("id"))
            return IGNORED
        order_id, customer_id = metadata.get("orderId"), metadata.get("customerId")
        if not order_id or not customer_id:
            return IGNORED
        # Business status is left untouched
        await self.orders.update_payment_status(order_id, "failed", customer_id, "client")
        logger.info("Order %s payment marked failed", order_id)
        return PROCESSED

    async def _invoice_paid(self, event_type: str, invoice: dict) -> str:
        subscription_id = _subscription_id(invoice)
        if not subscription_id:
            return IGNORED
        # The first invoice of a subscription is covered by checkout.session.completed
        if invoice.get("billing_reason") == "subscription_create":
            logger.info("Invoice %s opens subscription %s, activation handled at checkout", invoice.get("id"), subscription_id)
            return IGNORED

        subscription = await self.gateway.retrieve_subscription(subscription_id)
        plan = _plan_metadata(subscription.get("metadata") or {})
        if not plan:
            logger.info("Subscription %s carries no plan metadata, skipping", subscription_id)
            return IGNORED
        user_id, plan_name, plan_type = plan
        await self.plans.renew_plan(user_id, plan_name, plan_type, renewal_id=invoice.get("id"))
        return PROCESSED

    async def _subscription_updated(self, event_type: str, subscription: dict) -> str:
        user_id = (subscription.get("metadata") or {}).get("userId")
        if not user_id:
            return IGNORED
        await self.plans.update_subscription_status(user_id, subscription.get("status"))
        return PROCESSED

    async def _subscription_deleted(self, event_type: str, subscription: dict) -> str:
        user_id = (subscription.get("metadata") or {}).get("userId")
        if not user_id:
            return IGNORED
        try:
            await self.plans.cancel_provider_plan(user_id)
        except PlanNotFound:
            logger.warning("Subscription %s deleted but provider %s has no plan", subscription.get("id"), user_id)
            return IGNORED
        return PROCESSED
