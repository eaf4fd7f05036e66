from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from marketplace.auth import Actor
from marketplace.deps import get_current_actor, get_feedback_service, rate_limit, require_role
from marketplace.schemas import FeedbackRequest
from marketplace.services.feedback import FeedbackService

router = APIRouter(prefix="/feedback", tags=["feedback"], dependencies=[Depends(rate_limit)])


@router.post("")
async def create_feedback(
    body: FeedbackRequest,
    actor: Actor = Depends(require_role("customer", "client")),
    feedback: FeedbackService = Depends(get_feedback_service),
) -> JSONResponse:
    created = await feedback.create_feedback(actor.uid, body)
    return JSONResponse(
        status_code=201,
        content={"success": True, "data": created, "message": "Review submitted successfully"},
    )


@router.delete("/{feedback_id}")
async def delete_feedback(
    feedback_id: str,
    actor: Actor = Depends(get_current_actor),
    feedback: FeedbackService = Depends(get_feedback_service),
) -> JSONResponse:
    await feedback.delete_feedback(feedback_id, actor.uid, actor.user_type)
    return JSONResponse(status_code=200, content={"success": True, "message": "Feedback deleted successfully"})


@router.get("/provider/{provider_id}")
async def provider_feedback(
    provider_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    feedback: FeedbackService = Depends(get_feedback_service),
) -> JSONResponse:
    result = await feedback.list_provider_feedback(provider_id, page, limit)
    return JSONResponse(status_code=200, content={"success": True, **result})
