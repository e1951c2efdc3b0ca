from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Iterable, Optional

from app.models.manuscript import InvitationStatus, Manuscript
from app.services.identity_service import IdentityService
from app.services.notification_service import NotificationService

logger = logging.getLogger("reviewflow.notifications")


def _swallow(fn: Callable[..., int]) -> Callable[..., int]:
    @functools.wraps(fn)
    def _wrapped(*args: Any, **kwargs: Any) -> int:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.warning("%s notification skipped: %s", fn.__name__, e)
            return 0

    return _wrapped


class WorkflowNotifier:
    """
    由发起操作的一方（API 层）在工作流写入成功后调用的通知助手。

    中文注释:
    - 与 outbox 触发器互补：这里覆盖“非状态变化”的事件（指派、接受/拒绝邀请、提交审稿意见等）。
    - 每个方法都吞掉异常并返回创建数量：通知失败不影响已提交的工作流状态。
    """

    def __init__(self, notifications: NotificationService, identity: IdentityService) -> None:
        self.notifications = notifications
        self.identity = identity

    def _send(
        self,
        recipients: Iterable[str],
        *,
        type: str,
        title: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        ids = [r for r in dict.fromkeys(recipients) if r]
        if not ids:
            return 0
        try:
            result = self.notifications.create_bulk(
                recipient_ids=ids,
                type=type,
                title=title,
                message=message,
                metadata=metadata,
            )
            return len(result.created)
        except Exception as e:
            logger.warning("notification %s failed: %s", type, e)
            return 0

    @staticmethod
    def _authors(ms: Manuscript) -> list[str]:
        return [ms.submitter_id, *ms.co_author_ids]

    @_swallow
    def manuscript_submitted(self, ms: Manuscript) -> int:
        return self._send(
            self.identity.list_admin_ids(),
            type="manuscript_submitted",
            title="New manuscript submitted",
            message=f'"{ms.title}" was submitted by {self.identity.display_name(ms.submitter_id)}.',
            metadata={"manuscript_id": ms.id},
        )

    @_swallow
    def reviewers_assigned(self, ms: Manuscript, reviewer_ids: Iterable[str]) -> int:
        return self._send(
            reviewer_ids,
            type="review_invitation",
            title="You have been invited to review a manuscript",
            message=f'Please accept or decline the review invitation for "{ms.title}".',
            metadata={"manuscript_id": ms.id, "version_number": ms.version_number},
        )

    @_swallow
    def invitation_responded(self, ms: Manuscript, reviewer_id: str) -> int:
        meta = ms.assigned_reviewers_meta.get(reviewer_id)
        if meta is None or meta.invitation_status == InvitationStatus.PENDING:
            return 0
        verb = "accepted" if meta.invitation_status == InvitationStatus.ACCEPTED else "declined"
        return self._send(
            self.identity.list_admin_ids(),
            type=f"invitation_{verb}",
            title=f"Review invitation {verb}",
            message=f'{self.identity.display_name(reviewer_id)} {verb} the invitation for "{ms.title}".',
            metadata={"manuscript_id": ms.id, "reviewer_id": reviewer_id},
        )

    @_swallow
    def review_completed(self, ms: Manuscript, reviewer_id: str) -> int:
        return self._send(
            self.identity.list_admin_ids(),
            type="review_completed",
            title="Review submitted",
            message=f'{self.identity.display_name(reviewer_id)} submitted a review for "{ms.title}" (v{ms.version_number}).',
            metadata={"manuscript_id": ms.id, "reviewer_id": reviewer_id, "status": ms.status.value},
        )

    @_swallow
    def resubmitted(self, ms: Manuscript) -> int:
        """修回稿提交：通知管理员；Major 修回额外通知需要复审的审稿人"""
        count = self._send(
            self.identity.list_admin_ids(),
            type="manuscript_resubmitted",
            title="Revised manuscript submitted",
            message=f'"{ms.title}" was resubmitted as version {ms.version_number}.',
            metadata={"manuscript_id": ms.id, "version_number": ms.version_number},
        )
        re_review = [
            rid
            for rid in ms.assigned_reviewers
            if (meta := ms.assigned_reviewers_meta.get(rid)) is not None and meta.is_re_review
        ]
        if re_review:
            count += self._send(
                re_review,
                type="re_review_invitation",
                title="A revised manuscript is ready for re-review",
                message=f'"{ms.title}" (v{ms.version_number}) addresses your previous review. Please confirm the re-review.',
                metadata={"manuscript_id": ms.id, "version_number": ms.version_number},
            )
        return count

    @_swallow
    def status_changed(self, ms: Manuscript, previous_status: str) -> int:
        if ms.status.value == previous_status:
            return 0
        return self._send(
            self._authors(ms),
            type="status_update",
            title="Manuscript status updated",
            message=f'"{ms.title}" is now {ms.status.value}.',
            metadata={"manuscript_id": ms.id, "from_status": previous_status, "to_status": ms.status.value},
        )
