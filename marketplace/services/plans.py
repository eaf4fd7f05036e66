"""
Provider plan engine: activate / upgrade / renew / cancel / expire.

One plan document per provider (providerPlans/<providerId>). Every mutation also
rewrites the denormalized summary on users/<providerId>; both writes go through one
batch so they commit or fail together. daysRemaining is derived from endDate on read.
"""
import logging

from marketplace.errors import CannotDowngrade, InvalidStatus, PlanNotFound, ValidationError
from marketplace.metrics import plan_transitions_total
from marketplace.plan_catalog import (
    PLAN_CONFIG,
    PLAN_ORDER,
    PLAN_STATUSES,
    PLAN_TYPES,
    can_upgrade,
    days_remaining,
    end_date_for,
    is_valid_plan_transition,
    plan_features,
    plan_price,
    upgrade_price,
)
from marketplace.timeutil import utcnow

logger = logging.getLogger(__name__)

PLANS = "providerPlans"
USERS = "users"

PAYMENT_REF_FIELDS = ("sessionId", "paymentIntentId", "customerId", "subscriptionId")


def _check_plan(plan_name: str, plan_type: str) -> None:
    violations = []
    if plan_name not in PLAN_CONFIG:
        violations.append({"field": "planName", "message": f"must be one of: {', '.join(PLAN_ORDER)}"})
    if plan_type not in PLAN_TYPES:
        violations.append({"field": "planType", "message": f"must be one of: {', '.join(PLAN_TYPES)}"})
    if violations:
        raise ValidationError(violations)


def _summary(plan: dict) -> dict:
    return {
        "name": plan["planName"],
        "type": plan["planType"],
        "status": plan["status"],
        "endDate": plan["endDate"],
        "daysRemaining": plan["daysRemaining"],
    }


def _same_payment(recorded: dict | None, payment_data: dict) -> bool:
    """True when both carry the same gateway session or payment intent."""
    recorded = recorded or {}
    return any(
        payment_data.get(k) and recorded.get(k) == payment_data[k]
        for k in ("sessionId", "paymentIntentId")
    )


class PlanService:
    def __init__(self, store, gateway=None):
        self.store = store
        self.gateway = gateway

    async def get_provider_plan(self, provider_id: str) -> dict:
        plan = await self.store.get(PLANS, provider_id)
        if plan is None:
            raise PlanNotFound("Plan not found")
        plan["daysRemaining"] = days_remaining(plan["endDate"])
        return plan

    async def _save_plan(self, provider_id: str, plan: dict, operation: str) -> dict:
        """Write the full plan document and the user's summary copy in one batch."""
        now = utcnow().isoformat()
        plan["updatedAt"] = now
        plan.setdefault("createdAt", now)
        async with self.store.batch() as batch:
            batch.set(PLANS, provider_id, plan)
            batch.update(USERS, provider_id, {
                "providerInfo.plan": _summary(plan),
                "planName": plan["planName"],
                "planType": plan["planType"],
                "updatedAt": now,
            })
        plan_transitions_total.labels(operation=operation, status=plan["status"]).inc()
        logger.info(
            "Plan %s for provider %s: %s/%s status=%s endDate=%s",
            operation, provider_id, plan["planName"], plan["planType"], plan["status"], plan["endDate"],
        )
        return {"id": provider_id, **plan}

    async def _set_status(self, provider_id: str, plan: dict, status: str, extra: dict, operation: str) -> dict:
        now = utcnow().isoformat()
        fields = {"status": status, "updatedAt": now, **extra}
        summary_fields = {"providerInfo.plan.status": status, "updatedAt": now}
        if "daysRemaining" in extra:
            summary_fields["providerInfo.plan.daysRemaining"] = extra["daysRemaining"]
        async with self.store.batch() as batch:
            batch.update(PLANS, provider_id, fields)
            batch.update(USERS, provider_id, summary_fields)
        plan_transitions_total.labels(operation=operation, status=status).inc()
        logger.info("Plan %s for provider %s: %s -> %s", operation, provider_id, plan.get("status"), status)
        return {**plan, **fields}

    def _new_period(self, provider_id: str, plan_name: str, plan_type: str, extra_days: int = 0) -> dict:
        start = utcnow()
        end = end_date_for(plan_type, start, extra_days)
        return {
            "providerId": provider_id,
            "planName": plan_name,
            "planType": plan_type,
            "status": "active",
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "daysRemaining": days_remaining(end, start),
            "price": plan_price(plan_name, plan_type),
            "currency": "usd",
            "features": plan_features(plan_name),
            "autoRenew": plan_type == "monthly",
        }

    async def activate_provider_plan(
        self, provider_id: str, plan_name: str, plan_type: str, payment_data: dict | None = None
    ) -> dict:
        """
        Start a fresh period from now, whatever state the previous plan was in. A payment
        the active plan already references only fills in missing payment refs.
        """
        _check_plan(plan_name, plan_type)
        payment_data = payment_data or {}
        existing = await self.store.get(PLANS, provider_id)
        if existing and existing.get("status") == "active" and _same_payment(existing.get("payment"), payment_data):
            return await self._merge_payment_refs(provider_id, existing, payment_data)

        plan = self._new_period(provider_id, plan_name, plan_type)
        plan["payment"] = {k: payment_data.get(k) for k in PAYMENT_REF_FIELDS}
        if existing and existing.get("createdAt"):
            plan["createdAt"] = existing["createdAt"]
        return await self._save_plan(provider_id, plan, "activate")

    async def _merge_payment_refs(self, provider_id: str, plan: dict, payment_data: dict) -> dict:
        current = plan.get("payment") or {}
        fields = {
            f"payment.{k}": payment_data[k]
            for k in PAYMENT_REF_FIELDS
            if payment_data.get(k) and not current.get(k)
        }
        if fields:
            await self.store.update(PLANS, provider_id, fields)
        logger.info("Payment for provider %s already applied, merged refs %s", provider_id, sorted(fields))
        merged = {**current, **{k.split(".", 1)[1]: v for k, v in fields.items()}}
        return {"id": provider_id, **plan, "payment": merged, "daysRemaining": days_remaining(plan["endDate"])}

    async def upgrade_provider_plan(self, provider_id: str, new_plan_name: str, new_plan_type: str) -> dict:
        _check_plan(new_plan_name, new_plan_type)
        try:
            current = await self.get_provider_plan(provider_id)
        except PlanNotFound:
            raise PlanNotFound("Current plan not found")
        if not can_upgrade(current["planName"], new_plan_name):
            raise CannotDowngrade("Cannot downgrade plan")
        if not is_valid_plan_transition(current["status"], "active"):
            raise InvalidStatus(f"Cannot upgrade a {current['status']} plan")

        remaining = current["daysRemaining"]
        plan = self._new_period(provider_id, new_plan_name, new_plan_type, extra_days=remaining)
        plan.update({
            "payment": current.get("payment") or {},
            "upgradePrice": upgrade_price(current["planName"], new_plan_name, new_plan_type),
            "previousPlan": current["planName"],
        })
        if current.get("createdAt"):
            plan["createdAt"] = current["createdAt"]
        return await self._save_plan(provider_id, plan, "upgrade")

    async def renew_plan(
        self, provider_id: str, plan_name: str, plan_type: str, renewal_id: str | None = None
    ) -> dict:
        """
        Extend the plan by one period on a renewal payment. Days left on the current
        period carry over, the same policy as upgrade. A renewal_id (gateway invoice id)
        that was already applied is a no-op, so redelivered renewal events do not stack.
        """
        _check_plan(plan_name, plan_type)
        current = await self.store.get(PLANS, provider_id)
        if current and renewal_id and current.get("lastRenewalId") == renewal_id:
            logger.info("Renewal %s already applied to provider %s, skipping", renewal_id, provider_id)
            current["daysRemaining"] = days_remaining(current["endDate"])
            return current

        remaining = days_remaining(current["endDate"]) if current and current.get("status") == "active" else 0
        plan = self._new_period(provider_id, plan_name, plan_type, extra_days=remaining)
        plan["renewedAt"] = plan["startDate"]
        plan["lastRenewalId"] = renewal_id
        if current:
            plan["payment"] = current.get("payment") or {}
            if current.get("createdAt"):
                plan["createdAt"] = current["createdAt"]
        return await self._save_plan(provider_id, plan, "renew")

    async def cancel_provider_plan(self, provider_id: str) -> dict:
        """Stop auto-renewal; access continues until the existing endDate."""
        plan = await self.get_provider_plan(provider_id)
        if plan["status"] == "cancelled":
            return plan
        if not is_valid_plan_transition(plan["status"], "cancelled"):
            raise InvalidStatus(f"Cannot cancel a {plan['status']} plan")
        return await self._set_status(provider_id, plan, "cancelled", {"autoRenew": False}, "cancel")

    async def check_and_update_plan_expiration(self, provider_id: str) -> dict:
        plan = await self.get_provider_plan(provider_id)
        if plan["status"] == "active" and plan["daysRemaining"] <= 0:
            expired = await self._set_status(provider_id, plan, "expired", {"daysRemaining": 0}, "expire")
            return {"expired": True, "plan": expired}
        return {"expired": False, "plan": plan}

    async def expire_plans(self) -> dict:
        """Sweep every active plan; run by an external scheduler."""
        expired, failed = [], []
        for plan in await self.store.query(PLANS, "status", "active"):
            provider_id = plan["id"]
            if days_remaining(plan["endDate"]) > 0:
                continue
            try:
                result = await self.check_and_update_plan_expiration(provider_id)
            except Exception:
                logger.exception("Failed to expire plan for provider %s", provider_id)
                failed.append(provider_id)
                continue
            if result["expired"]:
                expired.append(provider_id)
        logger.info("Expiration sweep: %d expired, %d failed", len(expired), len(failed))
        return {"expired": expired, "failed": failed}

    async def update_subscription_status(self, provider_id: str, subscription_status: str) -> None:
        await self.store.update(USERS, provider_id, {
            "providerInfo.subscriptionStatus": subscription_status,
            "updatedAt": utcnow().isoformat(),
        })

    async def get_plan_statistics(self) -> dict:
        stats = {
            "total": 0,
            **{status: 0 for status in PLAN_STATUSES},
            "byPlan": {name: 0 for name in PLAN_ORDER},
        }
        for plan in await self.store.query(PLANS):
            stats["total"] += 1
            if plan.get("status") in PLAN_STATUSES:
                stats[plan["status"]] += 1
            if plan.get("planName") in stats["byPlan"]:
                stats["byPlan"][plan["planName"]] += 1
        return stats

    async def create_plan_checkout(
        self,
        provider_id: str,
        plan_name: str,
        plan_type: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> dict:
        """Free plans activate immediately; paid plans go through a gateway checkout session."""
        _check_plan(plan_name, plan_type)
        if plan_price(plan_name, plan_type) == 0:
            plan = await self.activate_provider_plan(provider_id, plan_name, plan_type)
            return {"freePlan": True, "plan": plan}

        metadata = {"userId": provider_id, "planName": plan_name, "planType": plan_type}
        subscription = plan_type == "monthly"
        price_data = {
            "currency": "usd",
            "product_data": {
                "name": f"{PLAN_CONFIG[plan_name]['name']} Plan ({plan_type})",
                "description": (
                    f"Access to {PLAN_CONFIG[plan_name]['name']} features for "
                    f"{'1 month' if subscription else '1 year'}"
                ),
            },
            "unit_amount": int(round(plan_price(plan_name, plan_type) * 100)),
        }
        params = {
            "payment_method_types": ["card"],
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "mode": "subscription" if subscription else "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if subscription:
            price_data["recurring"] = {"interval": "month"}
            params["subscription_data"] = {"metadata": metadata}
        if customer_email:
            params["customer_email"] = customer_email

        session = await self.gateway.create_checkout_session(params)
        logger.info("Plan checkout %s created for provider %s (%s/%s)", session["id"], provider_id, plan_name, plan_type)
        return {"freePlan": False, "sessionId": session["id"], "sessionUrl": session["url"]}
