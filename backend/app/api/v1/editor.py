from typing import Optional

from fastapi import APIRouter, Depends

from app.api.v1.deps import (
    get_identity_service,
    get_read_model,
    get_workflow_notifier,
    get_workflow_service,
    raise_http_for,
)
from app.core.roles import require_any_role
from app.models.user import UserProfile, UserRole
from app.schemas.workflow import (
    FinalDecisionRequest,
    ManuscriptDecisionNote,
    ReviewerAssignRequest,
    ReviewerDeadlineUpdate,
)
from app.services.identity_service import IdentityService
from app.services.read_model import ManuscriptReadModel
from app.services.workflow_notifications import WorkflowNotifier
from app.services.workflow_service import WorkflowService

router = APIRouter(prefix="/editor", tags=["Editor Command Center"])

_require_admin = require_any_role([UserRole.ADMIN])


def _admin_view(read_model: ManuscriptReadModel, ms, profile: UserProfile) -> dict:
    return read_model.project_one(ms, viewer_id=profile.id, role=UserRole.ADMIN)


@router.post("/manuscripts/{manuscript_id}/accept")
async def accept_manuscript(
    manuscript_id: str,
    body: Optional[ManuscriptDecisionNote] = None,
    profile: UserProfile = Depends(_require_admin),
    workflow: WorkflowService = Depends(get_workflow_service),
    notifier: WorkflowNotifier = Depends(get_workflow_notifier),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    try:
        ms = workflow.accept_manuscript(manuscript_id, actor=profile.id, note=body.note if body else "")
    except Exception as e:
        raise_http_for(e)
    notifier.status_changed(ms, previous_status="Pending")
    return {"success": True, "data": _admin_view(read_model, ms, profile)}


@router.post("/manuscripts/{manuscript_id}/non-acceptance")
async def decline_manuscript(
    manuscript_id: str,
    body: Optional[ManuscriptDecisionNote] = None,
    profile: UserProfile = Depends(_require_admin),
    workflow: WorkflowService = Depends(get_workflow_service),
    notifier: WorkflowNotifier = Depends(get_workflow_notifier),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    try:
        ms = workflow.decline_manuscript(manuscript_id, actor=profile.id, note=body.note if body else "")
    except Exception as e:
        raise_http_for(e)
    notifier.status_changed(ms, previous_status="Pending")
    return {"success": True, "data": _admin_view(read_model, ms, profile)}


@router.get("/manuscripts/{manuscript_id}/eligible-reviewers")
async def eligible_reviewers(
    manuscript_id: str,
    _profile: UserProfile = Depends(_require_admin),
    workflow: WorkflowService = Depends(get_workflow_service),
    identity: IdentityService = Depends(get_identity_service),
):
    """
    审稿人候选：全部 Peer Reviewer 账号，标注利益冲突/已在岗/历史审稿人
    """
    candidates = identity.list_ids_by_role(UserRole.PEER_REVIEWER)
    try:
        checks = workflow.eligible_reviewers(manuscript_id, candidates)
    except Exception as e:
        raise_http_for(e)
    data = [
        {"reviewer_id": rid, "display_name": identity.display_name(rid), **flags}
        for rid, flags in checks.items()
    ]
    return {"success": True, "data": data}


@router.post("/manuscripts/{manuscript_id}/reviewers")
async def assign_reviewers(
    manuscript_id: str,
    body: ReviewerAssignRequest,
    profile: UserProfile = Depends(_require_admin),
    workflow: WorkflowService = Depends(get_workflow_service),
    notifier: WorkflowNotifier = Depends(get_workflow_notifier),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    try:
        ms = workflow.assign_reviewers(
            manuscript_id,
            body.reviewer_ids,
            actor=profile.id,
            deadline=body.deadline,
        )
    except Exception as e:
        raise_http_for(e)
    notifier.reviewers_assigned(ms, body.reviewer_ids)
    return {"success": True, "data": _admin_view(read_model, ms, profile)}


@router.delete("/manuscripts/{manuscript_id}/reviewers/{reviewer_id}")
async def unassign_reviewer(
    manuscript_id: str,
    reviewer_id: str,
    profile: UserProfile = Depends(_require_admin),
    workflow: WorkflowService = Depends(get_workflow_service),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    try:
        ms = workflow.unassign_reviewer(manuscript_id, reviewer_id, actor=profile.id)
    except Exception as e:
        raise_http_for(e)
    return {"success": True, "data": _admin_view(read_model, ms, profile)}


@router.patch("/manuscripts/{manuscript_id}/reviewers/{reviewer_id}/deadline")
async def update_reviewer_deadline(
    manuscript_id: str,
    reviewer_id: str,
    body: ReviewerDeadlineUpdate,
    profile: UserProfile = Depends(_require_admin),
    workflow: WorkflowService = Depends(get_workflow_service),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    try:
        ms = workflow.set_reviewer_deadline(
            manuscript_id,
            reviewer_id,
            actor=profile.id,
            deadline=body.deadline,
            reminder_enabled=body.reminder_enabled,
            reminder_days_before=body.reminder_days_before,
        )
    except Exception as e:
        raise_http_for(e)
    return {"success": True, "data": _admin_view(read_model, ms, profile)}


@router.get("/manuscripts/{manuscript_id}/decisions")
async def get_decision_summary(
    manuscript_id: str,
    _profile: UserProfile = Depends(_require_admin),
    workflow: WorkflowService = Depends(get_workflow_service),
):
    """
    审稿建议汇总（仅供参考，不自动决定结局）
    """
    try:
        summary = workflow.decisions(manuscript_id)
    except Exception as e:
        raise_http_for(e)
    return {"success": True, "data": summary.model_dump(mode="json")}


@router.post("/manuscripts/{manuscript_id}/decision")
async def finalize_decision(
    manuscript_id: str,
    body: FinalDecisionRequest,
    profile: UserProfile = Depends(_require_admin),
    workflow: WorkflowService = Depends(get_workflow_service),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    """
    Back to Admin 阶段的最终裁决；作者通知由 outbox worker 异步发送
    """
    try:
        ms = workflow.finalize_decision(manuscript_id, body.outcome, actor=profile.id, note=body.note)
    except Exception as e:
        raise_http_for(e)
    return {"success": True, "data": _admin_view(read_model, ms, profile)}
