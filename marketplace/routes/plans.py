from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from marketplace.auth import Actor
from marketplace.deps import get_plan_service, rate_limit, require_role
from marketplace.schemas import PlanCheckoutRequest, PlanUpgradeRequest
from marketplace.services.plans import PlanService

router = APIRouter(prefix="/plans", tags=["plans"], dependencies=[Depends(rate_limit)])

provider_only = require_role("provider")


@router.post("/checkout")
async def create_checkout(
    body: PlanCheckoutRequest,
    actor: Actor = Depends(provider_only),
    plans: PlanService = Depends(get_plan_service),
) -> JSONResponse:
    result = await plans.create_plan_checkout(
        actor.uid, body.planName, body.planType, body.successUrl, body.cancelUrl, customer_email=actor.email,
    )
    message = "Free plan activated successfully" if result["freePlan"] else "Checkout session created"
    return JSONResponse(status_code=200, content={"success": True, "message": message, **result})


@router.get("/current")
async def current_plan(
    actor: Actor = Depends(provider_only),
    plans: PlanService = Depends(get_plan_service),
) -> JSONResponse:
    plan = await plans.get_provider_plan(actor.uid)
    return JSONResponse(status_code=200, content={"success": True, "plan": plan})


@router.post("/upgrade")
async def upgrade_plan(
    body: PlanUpgradeRequest,
    actor: Actor = Depends(provider_only),
    plans: PlanService = Depends(get_plan_service),
) -> JSONResponse:
    plan = await plans.upgrade_provider_plan(actor.uid, body.newPlanName, body.newPlanType)
    return JSONResponse(
        status_code=200,
        content={"success": True, "message": "Plan upgraded successfully", "plan": plan},
    )


@router.post("/cancel")
async def cancel_plan(
    actor: Actor = Depends(provider_only),
    plans: PlanService = Depends(get_plan_service),
) -> JSONResponse:
    plan = await plans.cancel_provider_plan(actor.uid)
    return JSONResponse(
        status_code=200,
        content={"success": True, "message": "Plan cancelled successfully", "plan": plan},
    )


@router.post("/check-expiration")
async def check_expiration(
    actor: Actor = Depends(provider_only),
    plans: PlanService = Depends(get_plan_service),
) -> JSONResponse:
    result = await plans.check_and_update_plan_expiration(actor.uid)
    return JSONResponse(status_code=200, content={"success": True, **result})
