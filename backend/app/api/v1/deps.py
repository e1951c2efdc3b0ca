"""
服务依赖提供者（FastAPI Depends）

中文注释:
- 身份缓存必须在进程内共享，因此 IdentityService 由 lru_cache 保证单例；
- 测试通过 `app.dependency_overrides[get_xxx_service]` 注入内存 stub。
"""

from functools import lru_cache

from fastapi import Depends, HTTPException

from app.core.config import IdentityCacheConfig, WorkflowConfig
from app.core.short_ttl_cache import ShortTTLCache
from app.services.deadline_service import DeadlineSettingsService
from app.services.identity_service import IdentityService
from app.services.manuscript_repository import (
    ConcurrencyConflictError,
    ManuscriptNotFoundError,
    ManuscriptRepository,
)
from app.services.notification_service import NotificationService, NotificationValidationError
from app.services.read_model import ManuscriptReadModel
from app.services.workflow_notifications import WorkflowNotifier
from app.services.workflow_service import (
    WorkflowPermissionError,
    WorkflowService,
    WorkflowValidationError,
)


@lru_cache
def get_identity_service() -> IdentityService:
    cfg = IdentityCacheConfig.from_env()
    cache: ShortTTLCache = ShortTTLCache(max_entries=cfg.max_entries, default_ttl_sec=cfg.ttl_sec)
    return IdentityService(cache=cache, config=cfg)


def get_manuscript_repository() -> ManuscriptRepository:
    return ManuscriptRepository()


def get_workflow_service(
    repo: ManuscriptRepository = Depends(get_manuscript_repository),
) -> WorkflowService:
    return WorkflowService(repo=repo, deadline_settings=DeadlineSettingsService(), config=WorkflowConfig.from_env())


def get_notification_service(
    identity: IdentityService = Depends(get_identity_service),
) -> NotificationService:
    return NotificationService(identity=identity)


def get_workflow_notifier(
    notifications: NotificationService = Depends(get_notification_service),
    identity: IdentityService = Depends(get_identity_service),
) -> WorkflowNotifier:
    return WorkflowNotifier(notifications, identity)


def get_read_model() -> ManuscriptReadModel:
    return ManuscriptReadModel()


def raise_http_for(exc: Exception) -> None:
    """
    领域异常 -> HTTP 状态码（未知异常原样抛出，交给中间件兜底 500）
    """
    if isinstance(exc, ManuscriptNotFoundError):
        raise HTTPException(status_code=404, detail="Manuscript not found") from exc
    if isinstance(exc, WorkflowPermissionError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if isinstance(exc, (WorkflowValidationError, NotificationValidationError)):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, ConcurrencyConflictError):
        raise HTTPException(
            status_code=409,
            detail="Manuscript was updated concurrently, please retry",
        ) from exc
    raise exc
