from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.core.config import DeadlineDefaults
from app.lib.api_client import supabase_admin
from app.models.deadline import DeadlineView, DeadlineWindow, RemainingTime, UrgencyTier
from app.models.manuscript import InvitationStatus, Manuscript, ManuscriptStatus, ReviewerAssignment
from app.models.user import UserRole
from app.services.assignment_registry import active_reviewer_ids, completed_reviewer_ids

logger = logging.getLogger("reviewflow.deadlines")

CRITICAL_FRACTION = 0.25
WARNING_FRACTION = 0.60

SETTINGS_TABLE = "deadline_settings"
SETTINGS_ROW_ID = "deadlines"

# 状态 -> 稿件上的期限字段
DEADLINE_FIELD_BY_STATUS: dict[ManuscriptStatus, str] = {
    ManuscriptStatus.ASSIGNING_PEER_REVIEWER: "invitation_deadline",
    ManuscriptStatus.PEER_REVIEWER_ASSIGNED: "review_deadline",
    ManuscriptStatus.PEER_REVIEWER_REVIEWING: "review_deadline",
    ManuscriptStatus.FOR_REVISION_MINOR: "revision_deadline",
    ManuscriptStatus.FOR_REVISION_MAJOR: "revision_deadline",
    ManuscriptStatus.BACK_TO_ADMIN: "finalization_deadline",
}

# 进入这些状态时重新盖章期限（Reviewing 沿用 Assigned 的 review_deadline）
STAMPED_ON_ENTRY: frozenset[ManuscriptStatus] = frozenset(
    {
        ManuscriptStatus.ASSIGNING_PEER_REVIEWER,
        ManuscriptStatus.PEER_REVIEWER_ASSIGNED,
        ManuscriptStatus.FOR_REVISION_MINOR,
        ManuscriptStatus.FOR_REVISION_MAJOR,
        ManuscriptStatus.BACK_TO_ADMIN,
    }
)

# 旧版 settings 文档使用的字段名
_LEGACY_SETTINGS_KEY: dict[str, str] = {
    "invitation_deadline": "invitationDeadline",
    "review_deadline": "reviewDeadline",
    "revision_deadline": "revisionDeadline",
    "finalization_deadline": "finalizationDeadline",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def remaining_time(end: datetime, now: Optional[datetime] = None) -> RemainingTime:
    """剩余时间（拆分为天/时/分）；remaining <= 0 视为逾期"""
    current = as_utc(now or _utc_now())
    total = (as_utc(end) - current).total_seconds()
    magnitude = int(abs(total))
    days, rest = divmod(magnitude, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    return RemainingTime(
        days=days,
        hours=hours,
        minutes=minutes,
        total_seconds=total,
        is_overdue=total <= 0,
    )


def urgency_tier(start: Optional[datetime], end: datetime, now: Optional[datetime] = None) -> UrgencyTier:
    """
    按“剩余比例”而不是绝对剩余时间分级：
    overdue (<=0) / critical (<25%) / warning (<60%) / ok。
    """
    current = as_utc(now or _utc_now())
    end_utc = as_utc(end)
    remaining = (end_utc - current).total_seconds()
    if remaining <= 0:
        return UrgencyTier.OVERDUE
    if start is None:
        return UrgencyTier.OK
    window = (end_utc - as_utc(start)).total_seconds()
    if window <= 0:
        return UrgencyTier.OK
    fraction = remaining / window
    if fraction < CRITICAL_FRACTION:
        return UrgencyTier.CRITICAL
    if fraction < WARNING_FRACTION:
        return UrgencyTier.WARNING
    return UrgencyTier.OK


def deadline_from_days(days: int, start: Optional[datetime] = None) -> datetime:
    return as_utc(start or _utc_now()) + timedelta(days=int(days))


class DeadlineSettings:
    """
    一次读取的 settings 快照：状态名 -> 天数。

    解析顺序：状态名键（如 "Back to Admin"）-> 旧字段名（如 finalizationDeadline）-> 默认值。
    """

    def __init__(self, values: Optional[dict[str, Any]] = None, defaults: Optional[DeadlineDefaults] = None):
        self.values = dict(values or {})
        self.defaults = defaults or DeadlineDefaults.from_env()

    def _default_for_field(self, field: str) -> int:
        return {
            "invitation_deadline": self.defaults.invitation_days,
            "review_deadline": self.defaults.review_days,
            "revision_deadline": self.defaults.revision_days,
            "finalization_deadline": self.defaults.finalization_days,
        }[field]

    @staticmethod
    def _positive_int(raw: Any) -> Optional[int]:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    def days_for_field(self, field: str) -> int:
        legacy = _LEGACY_SETTINGS_KEY.get(field)
        if legacy:
            value = self._positive_int(self.values.get(legacy))
            if value is not None:
                return value
        return self._default_for_field(field)

    def days_for_status(self, status: ManuscriptStatus) -> Optional[int]:
        field = DEADLINE_FIELD_BY_STATUS.get(status)
        if field is None:
            return None
        value = self._positive_int(self.values.get(status.value))
        if value is not None:
            return value
        return self.days_for_field(field)

    @property
    def invitation_days(self) -> int:
        return self.days_for_field("invitation_deadline")

    @property
    def review_days(self) -> int:
        return self.days_for_field("review_deadline")


class DeadlineSettingsService:
    """
    Settings 协作方（只读）：`deadline_settings` 表中 id='deadlines' 的单行 JSON。

    中文注释:
    - 文档缺失/读取失败时回退默认值，不让工作流操作失败。
    """

    def __init__(self, client: Any = None, defaults: Optional[DeadlineDefaults] = None) -> None:
        self.client = client or supabase_admin
        self.defaults = defaults or DeadlineDefaults.from_env()

    def load(self) -> DeadlineSettings:
        try:
            resp = (
                self.client.table(SETTINGS_TABLE)
                .select("values")
                .eq("id", SETTINGS_ROW_ID)
                .limit(1)
                .execute()
            )
            rows = getattr(resp, "data", None) or []
        except Exception as e:
            logger.warning("deadline settings read failed, using defaults: %s", e)
            rows = []
        values = (rows[0] or {}).get("values") if rows else None
        if not isinstance(values, dict):
            logger.info("deadline settings document missing, using defaults")
            values = {}
        return DeadlineSettings(values, self.defaults)


def stamp_status_deadline(
    ms: Manuscript,
    status: ManuscriptStatus,
    settings: DeadlineSettings,
    now: datetime,
) -> Optional[str]:
    """进入某状态时按配置重新计算该状态对应的稿件级期限（重算而非沿用旧值）"""
    if status not in STAMPED_ON_ENTRY:
        return None
    field = DEADLINE_FIELD_BY_STATUS[status]
    days = settings.days_for_status(status)
    if days is None:
        return None
    setattr(ms, field, deadline_from_days(days, now))
    return field


def update_reviewer_deadlines(ms: Manuscript, days: int, now: datetime) -> list[str]:
    """
    给每个仍在岗（未拒绝、当前版本未完成）的审稿人推送新的 deadline。
    """
    completed = completed_reviewer_ids(ms)
    new_deadline = deadline_from_days(days, now)
    updated: list[str] = []
    for rid in active_reviewer_ids(ms):
        if rid in completed:
            continue
        meta = ms.assigned_reviewers_meta.get(rid)
        if meta is None:
            continue
        meta.deadline = new_deadline
        meta.last_reminded_for = None
        updated.append(rid)
    return updated


def reviewer_window(meta: ReviewerAssignment) -> Optional[DeadlineWindow]:
    """审稿人期限窗口：起点为接受时间（未接受时为指派时间）"""
    if meta.deadline is None:
        return None
    start = meta.responded_at if meta.invitation_status == InvitationStatus.ACCEPTED else meta.assigned_at
    return DeadlineWindow(start=start or meta.assigned_at, end=meta.deadline)


def latest_active_deadline(ms: Manuscript) -> Optional[DeadlineWindow]:
    """
    已接受且当前版本未完成的审稿人中，最晚（最远未来）的 deadline。
    管理员/作者只看这条“约束性”期限。
    """
    completed = completed_reviewer_ids(ms)
    best: Optional[DeadlineWindow] = None
    for rid in active_reviewer_ids(ms):
        if rid in completed:
            continue
        meta = ms.assigned_reviewers_meta.get(rid)
        if meta is None or meta.invitation_status != InvitationStatus.ACCEPTED:
            continue
        window = reviewer_window(meta)
        if window is None:
            continue
        if best is None or as_utc(window.end) > as_utc(best.end):
            best = DeadlineWindow(start=window.start, end=window.end, reviewer_id=rid)
    return best


def _status_entered_at(ms: Manuscript, status: ManuscriptStatus) -> Optional[datetime]:
    for entry in reversed(ms.status_history):
        if entry.status == status:
            return entry.timestamp
    return ms.resubmitted_at or ms.submitted_at


def status_deadline(ms: Manuscript) -> Optional[DeadlineWindow]:
    field = DEADLINE_FIELD_BY_STATUS.get(ms.status)
    if field is None:
        return None
    end = getattr(ms, field)
    if end is None:
        return None
    return DeadlineWindow(start=_status_entered_at(ms, ms.status), end=end)


def _view(field: str, window: DeadlineWindow, now: datetime) -> DeadlineView:
    return DeadlineView(
        field=field,
        start=window.start,
        end=window.end,
        remaining=remaining_time(window.end, now),
        urgency=urgency_tier(window.start, window.end, now),
    )


def deadline_view(
    ms: Manuscript,
    *,
    viewer_id: Optional[str],
    role: str,
    now: Optional[datetime] = None,
) -> Optional[DeadlineView]:
    """
    按角色返回应展示的期限：
    - 审稿人：自己的 deadline；
    - 其他角色：在审阶段取最晚的在岗审稿人 deadline，否则取状态对应的稿件级期限。
    """
    current = now or _utc_now()
    if role == UserRole.PEER_REVIEWER and viewer_id:
        meta = ms.assigned_reviewers_meta.get(viewer_id)
        if meta is None:
            return None
        window = reviewer_window(meta)
        return _view("reviewer_deadline", window, current) if window else None

    if ms.status in (ManuscriptStatus.PEER_REVIEWER_ASSIGNED, ManuscriptStatus.PEER_REVIEWER_REVIEWING):
        window = latest_active_deadline(ms)
        if window is not None:
            return _view("reviewer_deadline", window, current)

    window = status_deadline(ms)
    if window is None:
        return None
    return _view(DEADLINE_FIELD_BY_STATUS[ms.status], window, current)
