from fastapi import APIRouter, Depends

from app.api.v1.deps import (
    get_read_model,
    get_workflow_notifier,
    get_workflow_service,
    raise_http_for,
)
from app.core.roles import require_any_role
from app.models.user import UserProfile, UserRole
from app.schemas.workflow import InvitationResponse, ReviewSubmitRequest
from app.services.read_model import ManuscriptReadModel
from app.services.workflow_notifications import WorkflowNotifier
from app.services.workflow_service import WorkflowService

router = APIRouter(prefix="/reviews", tags=["Reviews"])

_require_reviewer = require_any_role([UserRole.PEER_REVIEWER])


@router.post("/manuscripts/{manuscript_id}/invitation")
async def respond_to_invitation(
    manuscript_id: str,
    body: InvitationResponse,
    profile: UserProfile = Depends(_require_reviewer),
    workflow: WorkflowService = Depends(get_workflow_service),
    notifier: WorkflowNotifier = Depends(get_workflow_notifier),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    """
    审稿人接受/拒绝邀请（只改变本人的 invitation_status，稿件状态由服务端重算）
    """
    try:
        ms = workflow.respond_to_invitation(manuscript_id, reviewer_id=profile.id, accept=body.accept)
    except Exception as e:
        raise_http_for(e)
    notifier.invitation_responded(ms, profile.id)
    # 拒绝后审稿人不再可见该稿件
    view = read_model.project_one(ms, viewer_id=profile.id, role=UserRole.PEER_REVIEWER)
    return {"success": True, "data": view}


@router.post("/manuscripts/{manuscript_id}/submission")
async def submit_review(
    manuscript_id: str,
    body: ReviewSubmitRequest,
    profile: UserProfile = Depends(_require_reviewer),
    workflow: WorkflowService = Depends(get_workflow_service),
    notifier: WorkflowNotifier = Depends(get_workflow_notifier),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    try:
        ms = workflow.submit_review(
            manuscript_id,
            reviewer_id=profile.id,
            decision=body.decision,
            comment=body.comment,
            review_file=body.review_file,
        )
    except Exception as e:
        raise_http_for(e)
    notifier.review_completed(ms, profile.id)
    return {
        "success": True,
        "data": read_model.project_one(ms, viewer_id=profile.id, role=UserRole.PEER_REVIEWER),
    }
