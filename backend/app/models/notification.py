from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict


class Notification(BaseModel):
    """
    通知实体（用于 API 返回）

    中文注释:
    - created_at 由数据库 `now()` 赋值，是唯一的权威排序时间；
    - created_at_client 仅用于展示，可安全回传给调用方。
    """

    id: str
    recipient_id: str
    type: str
    title: str = Field(..., max_length=255)
    message: str = Field(..., max_length=2000)
    seen: bool = False
    created_at: Optional[datetime] = None
    created_at_client: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class BulkNotificationRequest(BaseModel):
    """
    批量通知入参（前端沿用 camelCase：recipientIds / createdAtClient）
    """

    model_config = ConfigDict(populate_by_name=True)

    recipient_ids: list[str] = Field(..., alias="recipientIds")
    type: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=2000)
    metadata: Optional[dict[str, Any]] = None
    created_at_client: Optional[datetime] = Field(None, alias="createdAtClient")

    @field_validator("recipient_ids")
    @classmethod
    def recipients_non_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("recipientIds must be a non-empty list")
        return v


class CreatedNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    recipient_id: str = Field(..., alias="recipientId")
    type: str
    title: str
    created_at_client: datetime = Field(..., alias="createdAtClient")


class NotificationError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recipient_id: str = Field(..., alias="recipientId")
    error: str


class BulkNotificationResult(BaseModel):
    success: bool
    created: list[CreatedNotification] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    errors: list[NotificationError] = Field(default_factory=list)
