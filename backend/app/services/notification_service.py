from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from app.lib.api_client import supabase_admin
from app.models.notification import (
    BulkNotificationResult,
    CreatedNotification,
    Notification,
    NotificationError,
)
from app.services.identity_service import IdentityService

logger = logging.getLogger("reviewflow.notifications")

NOTIFICATIONS_TABLE = "notifications"


@dataclass
class NotificationValidationError(Exception):
    message: str

    def __str__(self) -> str:
        return self.message


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise TypeError(f"metadata value of type {type(value).__name__} is not JSON serializable")


class NotificationService:
    """
    通知服务：封装 notifications 表的读写

    中文注释:
    1) 批量写入是“一次 insert 多行”，要么全部成功要么全部失败（单批原子）。
    2) 不存在的收件人记入 skipped，不算错误；单个收件人准备失败记入 errors，不影响其他人。
    3) created_at 交给数据库默认值 now()，服务端从不回传；返回值只带 createdAtClient。
    """

    def __init__(
        self,
        client: Any = None,
        identity: Optional[IdentityService] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.client = client or supabase_admin
        self.identity = identity or IdentityService(client=self.client)
        self._clock = clock

    @staticmethod
    def _validate(recipient_ids: Any, type: str, title: str, message: str) -> list[str]:
        if not isinstance(recipient_ids, (list, tuple)) or not recipient_ids:
            raise NotificationValidationError("recipientIds must be a non-empty list")
        for label, value in (("type", type), ("title", title), ("message", message)):
            if not isinstance(value, str) or not value.strip():
                raise NotificationValidationError(f"{label} is required")
        ids = list(dict.fromkeys(str(r).strip() for r in recipient_ids if str(r or "").strip()))
        if not ids:
            raise NotificationValidationError("recipientIds must contain at least one id")
        return ids

    def _prepare_row(
        self,
        recipient_id: str,
        *,
        type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]],
        created_at_client: datetime,
    ) -> Dict[str, Any]:
        return {
            "id": str(uuid4()),
            "recipient_id": recipient_id,
            "type": type.strip(),
            "title": title.strip(),
            "message": message.strip(),
            "seen": False,
            "created_at_client": created_at_client.isoformat(),
            "metadata": _json_safe(metadata or {}),
        }

    def create_bulk(
        self,
        *,
        recipient_ids: Iterable[str],
        type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        created_at_client: Optional[datetime] = None,
    ) -> BulkNotificationResult:
        ids = self._validate(recipient_ids, type, title, message)
        stamp = created_at_client or self._clock()

        existing = self.identity.existing_user_ids(ids)
        skipped = [rid for rid in ids if rid not in existing]

        rows: List[Dict[str, Any]] = []
        errors: List[NotificationError] = []
        for rid in ids:
            if rid not in existing:
                continue
            try:
                rows.append(
                    self._prepare_row(
                        rid,
                        type=type,
                        title=title,
                        message=message,
                        metadata=metadata,
                        created_at_client=stamp,
                    )
                )
            except Exception as e:
                logger.warning("notification preparation failed for %s: %s", rid, e)
                errors.append(NotificationError(recipient_id=rid, error=str(e)))

        if rows:
            # 单次 insert 多行 = 单批原子写入
            self.client.table(NOTIFICATIONS_TABLE).insert(rows).execute()

        created = [
            CreatedNotification(
                id=row["id"],
                recipient_id=row["recipient_id"],
                type=row["type"],
                title=row["title"],
                created_at_client=stamp,
            )
            for row in rows
        ]
        if skipped:
            logger.info("bulk notification %s: skipped unknown recipients %s", type, skipped)
        return BulkNotificationResult(success=True, created=created, skipped=skipped, errors=errors)

    def list_for_user(self, user_id: str, *, limit: int = 20, unseen_only: bool = False) -> List[Notification]:
        query = self.client.table(NOTIFICATIONS_TABLE).select("*").eq("recipient_id", str(user_id))
        if unseen_only:
            query = query.eq("seen", False)
        res = query.order("created_at", desc=True).limit(int(limit)).execute()
        rows = getattr(res, "data", None) or []
        return [Notification.model_validate(row) for row in rows]

    def mark_seen(self, user_id: str, notification_id: str) -> Optional[Notification]:
        res = (
            self.client.table(NOTIFICATIONS_TABLE)
            .update({"seen": True})
            .eq("id", str(notification_id))
            .eq("recipient_id", str(user_id))
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return Notification.model_validate(rows[0]) if rows else None
