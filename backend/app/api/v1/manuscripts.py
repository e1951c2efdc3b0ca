from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.v1.deps import (
    get_manuscript_repository,
    get_read_model,
    get_workflow_notifier,
    get_workflow_service,
    raise_http_for,
)
from app.core.roles import get_current_profile, require_any_role
from app.models.manuscript import ManuscriptStatus, normalize_status
from app.models.user import UserProfile, UserRole
from app.schemas.workflow import ManuscriptResubmit, ManuscriptSubmit
from app.services.manuscript_repository import ManuscriptRepository
from app.services.read_model import ManuscriptReadModel
from app.services.workflow_notifications import WorkflowNotifier
from app.services.workflow_service import WorkflowService

router = APIRouter(tags=["Manuscripts"])


@router.post("/manuscripts", status_code=201)
async def submit_manuscript(
    body: ManuscriptSubmit,
    profile: UserProfile = Depends(require_any_role([UserRole.RESEARCHER, UserRole.ADMIN])),
    workflow: WorkflowService = Depends(get_workflow_service),
    notifier: WorkflowNotifier = Depends(get_workflow_notifier),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    """
    作者投稿：创建 Pending 状态的稿件（version 1）
    """
    try:
        ms = workflow.submit_manuscript(
            title=body.title,
            file=body.file,
            submitter_id=profile.id,
            co_author_ids=body.co_author_ids,
            notes=body.notes,
        )
    except Exception as e:
        raise_http_for(e)
    notifier.manuscript_submitted(ms)
    return {"success": True, "data": read_model.project_one(ms, viewer_id=profile.id, role=UserRole.RESEARCHER)}


@router.get("/manuscripts")
async def list_manuscripts(
    status: list[str] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    profile: UserProfile = Depends(get_current_profile),
    repo: ManuscriptRepository = Depends(get_manuscript_repository),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    """
    按角色过滤的稿件列表（Admin 全部 / 作者本人 / 审稿人名单内）
    """
    statuses: list[ManuscriptStatus] | None = None
    if status:
        statuses = []
        for raw in status:
            parsed = normalize_status(raw)
            if parsed is None:
                raise HTTPException(status_code=422, detail=f"Unknown status: {raw}")
            statuses.append(parsed)
    # 中文注释: 先按角色过滤再截断，逐页读取直到凑满 limit 条可见稿件。
    data: list[dict] = []
    for page in repo.iter_pages(statuses=statuses, page_size=limit):
        data.extend(read_model.project(page, viewer_id=profile.id, role=profile.role))
        if len(data) >= limit:
            break
    return {"success": True, "data": data[:limit]}


@router.get("/manuscripts/{manuscript_id}")
async def get_manuscript(
    manuscript_id: str,
    profile: UserProfile = Depends(get_current_profile),
    workflow: WorkflowService = Depends(get_workflow_service),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    try:
        ms = workflow.get(manuscript_id)
    except Exception as e:
        raise_http_for(e)
    view = read_model.project_one(ms, viewer_id=profile.id, role=profile.role)
    if view is None:
        raise HTTPException(status_code=403, detail="Not allowed to view this manuscript")
    return {"success": True, "data": view}


@router.post("/manuscripts/{manuscript_id}/resubmit")
async def resubmit_manuscript(
    manuscript_id: str,
    body: ManuscriptResubmit,
    profile: UserProfile = Depends(require_any_role([UserRole.RESEARCHER, UserRole.ADMIN])),
    workflow: WorkflowService = Depends(get_workflow_service),
    notifier: WorkflowNotifier = Depends(get_workflow_notifier),
    read_model: ManuscriptReadModel = Depends(get_read_model),
):
    """
    作者提交修回稿（Minor -> 重新选审稿人；Major -> 原审稿人复审）
    """
    try:
        ms = workflow.resubmit(
            manuscript_id,
            actor=profile.id,
            file=body.file,
            notes=body.revision_notes,
        )
    except Exception as e:
        raise_http_for(e)
    notifier.resubmitted(ms)
    return {"success": True, "data": read_model.project_one(ms, viewer_id=profile.id, role=UserRole.RESEARCHER)}
