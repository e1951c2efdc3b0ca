from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from app.core.config import WorkflowConfig
from app.models.manuscript import InvitationStatus, Manuscript, ManuscriptStatus
from app.services.assignment_registry import active_reviewer_ids, completed_reviewer_ids
from app.services.deadline_service import as_utc, remaining_time
from app.services.manuscript_repository import ManuscriptRepository
from app.services.notification_service import NotificationService

logger = logging.getLogger("reviewflow.reminders")

REMINDABLE_STATUSES = (
    ManuscriptStatus.ASSIGNING_PEER_REVIEWER,
    ManuscriptStatus.PEER_REVIEWER_ASSIGNED,
    ManuscriptStatus.PEER_REVIEWER_REVIEWING,
)


class ReminderScheduler:
    """
    审稿期限提醒（轮询式，best-effort）

    中文注释:
    1) 触发方式：通过内部接口 /api/v1/internal/cron/reviewer-reminders 手动/定时触发；
       不保证在精确时刻送达，逾期本身是读取时推导出来的状态。
    2) 幂等性：meta.last_reminded_for 记录“已针对哪个 deadline 提醒过”，deadline 变化后才会再次提醒。
    3) 失败处理：通知失败只记录日志；last_reminded_for 仅在发送成功后通过 compare-and-set 写入。
    """

    def __init__(
        self,
        repo: ManuscriptRepository,
        notifications: NotificationService,
        config: Optional[WorkflowConfig] = None,
    ):
        self.repo = repo
        self.notifications = notifications
        self.config = config or WorkflowConfig.from_env()

    @staticmethod
    def due_reviewers(ms: Manuscript, now: datetime) -> list[tuple[str, datetime]]:
        completed = completed_reviewer_ids(ms)
        out: list[tuple[str, datetime]] = []
        for rid in active_reviewer_ids(ms):
            if rid in completed:
                continue
            meta = ms.assigned_reviewers_meta.get(rid)
            if meta is None or not meta.reminder_enabled or meta.deadline is None:
                continue
            deadline = as_utc(meta.deadline)
            if meta.last_reminded_for is not None and as_utc(meta.last_reminded_for) == deadline:
                continue
            if deadline - timedelta(days=meta.reminder_days_before) > now:
                continue
            out.append((rid, deadline))
        return out

    def _stamp(self, manuscript_id: str, reviewer_id: str, deadline: datetime) -> None:
        def mutate(ms: Manuscript) -> None:
            meta = ms.assigned_reviewers_meta.get(reviewer_id)
            # deadline 在发送期间被修改过：不盖章，下一轮按新 deadline 处理
            if meta is None or meta.deadline is None or as_utc(meta.deadline) != deadline:
                return
            meta.last_reminded_for = deadline

        self.repo.update_with_retry(manuscript_id, mutate, max_retries=self.config.max_cas_retries)

    def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        current = as_utc(now or datetime.now(timezone.utc))
        processed_count = 0
        reminders_sent = 0

        try:
            manuscripts = self.repo.list(statuses=REMINDABLE_STATUSES)
        except Exception as e:
            logger.warning("reminder scan failed: %s", e)
            return {"processed_count": 0, "reminders_sent": 0}

        for ms in manuscripts:
            for reviewer_id, deadline in self.due_reviewers(ms, current):
                processed_count += 1
                meta = ms.assigned_reviewers_meta[reviewer_id]
                left = remaining_time(deadline, current)
                if left.is_overdue:
                    message = f'Your review for "{ms.title}" is overdue (deadline {deadline.date().isoformat()}).'
                elif meta.invitation_status == InvitationStatus.PENDING:
                    message = f'Please respond to the review invitation for "{ms.title}" ({left.days}d {left.hours}h left).'
                else:
                    message = f'Your review for "{ms.title}" is due in {left.days}d {left.hours}h.'
                try:
                    result = self.notifications.create_bulk(
                        recipient_ids=[reviewer_id],
                        type="deadline_reminder",
                        title="Review deadline approaching",
                        message=message,
                        metadata={
                            "manuscript_id": ms.id,
                            "deadline": deadline.isoformat(),
                            "overdue": left.is_overdue,
                        },
                        created_at_client=current,
                    )
                except Exception as e:
                    logger.warning("reminder for %s on %s failed: %s", reviewer_id, ms.id, e)
                    continue
                if not result.created:
                    continue

                reminders_sent += 1
                try:
                    self._stamp(ms.id, reviewer_id, deadline)
                except Exception as e:
                    # 仅影响幂等标记，不影响本次 Cron 调用结果
                    logger.warning("stamping last_reminded_for failed for %s on %s: %s", reviewer_id, ms.id, e)

        return {"processed_count": processed_count, "reminders_sent": reminders_sent}
