from fastapi import APIRouter, Depends, HTTPException

from app.api.v1.deps import get_notification_service, raise_http_for
from app.core.auth_utils import get_current_user
from app.models.notification import BulkNotificationRequest, BulkNotificationResult
from app.services.notification_service import NotificationService

router = APIRouter(tags=["Notifications"])


@router.post("/notifications/bulk", response_model=BulkNotificationResult)
async def create_bulk_notifications(
    body: BulkNotificationRequest,
    _current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    """
    批量通知（单批原子写入）：不存在的收件人记入 skipped，单个失败记入 errors
    """
    try:
        return service.create_bulk(
            recipient_ids=body.recipient_ids,
            type=body.type,
            title=body.title,
            message=body.message,
            metadata=body.metadata,
            created_at_client=body.created_at_client,
        )
    except Exception as e:
        raise_http_for(e)


@router.get("/notifications")
async def list_notifications(
    limit: int = 20,
    unseen_only: bool = False,
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    """
    获取当前用户的通知列表（按服务端 created_at 倒序）
    """
    rows = service.list_for_user(current_user["id"], limit=limit, unseen_only=unseen_only)
    return {"success": True, "data": [r.model_dump(mode="json") for r in rows]}


@router.patch("/notifications/{id}/seen")
async def mark_notification_seen(
    id: str,
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    """
    将通知标记为已读（仅允许更新自己的记录）
    """
    updated = service.mark_seen(current_user["id"], id)
    if updated is None:
        # 中文注释: 可能是不存在或不属于当前用户
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True, "data": updated.model_dump(mode="json")}
