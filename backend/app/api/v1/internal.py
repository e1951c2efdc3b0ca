from fastapi import APIRouter, Depends

from app.api.v1.deps import (
    get_identity_service,
    get_manuscript_repository,
    get_notification_service,
)
from app.core.config import WorkflowConfig
from app.core.scheduler import ReminderScheduler
from app.core.security import require_admin_key
from app.services.identity_service import IdentityService
from app.services.manuscript_repository import ManuscriptRepository
from app.services.notification_service import NotificationService
from app.services.outbox_worker import NotificationOutboxWorker

router = APIRouter(prefix="/internal", tags=["Internal"])


@router.post("/cron/drain-outbox")
async def drain_outbox(
    _admin: None = Depends(require_admin_key),
    repo: ManuscriptRepository = Depends(get_manuscript_repository),
    notifications: NotificationService = Depends(get_notification_service),
    identity: IdentityService = Depends(get_identity_service),
):
    """
    投递稿件 outbox 中的状态变更事件（at-least-once）
    """
    worker = NotificationOutboxWorker.with_default_triggers(repo, notifications, identity, WorkflowConfig.from_env())
    report = worker.drain()
    return {"success": True, **report.as_dict()}


@router.post("/cron/reviewer-reminders")
async def reviewer_reminders(
    _admin: None = Depends(require_admin_key),
    repo: ManuscriptRepository = Depends(get_manuscript_repository),
    notifications: NotificationService = Depends(get_notification_service),
):
    """
    触发审稿期限提醒（轮询式，best-effort）
    """
    scheduler = ReminderScheduler(repo, notifications)
    result = scheduler.run()
    return {"success": True, **result}
