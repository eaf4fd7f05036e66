from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from marketplace.deps import get_plan_service, require_role
from marketplace.queue import replay_dlq
from marketplace.services.plans import PlanService

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_role("admin"))])


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay dead-lettered gateway events to the main queue with their attempt count reset.
    Returns number of messages replayed.
    """
    replayed = await replay_dlq(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )


@router.post("/plans/expire")
async def expire_plans(plans: PlanService = Depends(get_plan_service)) -> JSONResponse:
    """Expiration sweep entry point for an external scheduler."""
    result = await plans.expire_plans()
    return JSONResponse(status_code=200, content={"status": "ok", **result})


@router.get("/plans/statistics")
async def plan_statistics(plans: PlanService = Depends(get_plan_service)) -> JSONResponse:
    return JSONResponse(status_code=200, content={"success": True, "statistics": await plans.get_plan_statistics()})
