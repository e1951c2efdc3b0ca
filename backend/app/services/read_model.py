from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from app.models.manuscript import InvitationStatus, Manuscript
from app.models.user import UserRole
from app.services.deadline_service import deadline_view
from app.services.decision_aggregator import summarize

# 内部字段，任何角色都不返回
_INTERNAL_FIELDS = {"outbox", "revision"}

# 作者视角需要隐藏的审稿人身份字段（双盲）
_REVIEWER_IDENTITY_FIELDS = {
    "assigned_reviewers",
    "assigned_reviewers_meta",
    "reviewer_decision_meta",
    "previous_reviewers",
    "previous_reviewers_meta",
}


def _strip_rounds(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{k: v for k, v in entry.items() if k != "reviewed_round"} for entry in history]


class ManuscriptReadModel:
    """
    按角色投影稿件列表/详情（只读，不写任何状态）。

    - Admin：全部稿件 + 审稿建议汇总 + 约束性期限与紧急度
    - Researcher：自己（作者/共同作者）的稿件，隐藏审稿人身份
    - Peer Reviewer：名单内且未拒绝的稿件，只带自己的邀请状态/期限/审稿意见
    """

    def __init__(self, clock=None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def is_visible(ms: Manuscript, *, viewer_id: str, role: UserRole) -> bool:
        if role == UserRole.ADMIN:
            return True
        if role == UserRole.PEER_REVIEWER:
            meta = ms.assigned_reviewers_meta.get(viewer_id)
            return (
                viewer_id in ms.assigned_reviewers
                and meta is not None
                and meta.invitation_status != InvitationStatus.DECLINED
            )
        return viewer_id == ms.submitter_id or viewer_id in ms.co_author_ids

    def _deadline(self, ms: Manuscript, viewer_id: str, role: UserRole, now: datetime) -> Optional[dict[str, Any]]:
        view = deadline_view(ms, viewer_id=viewer_id, role=role, now=now)
        return view.model_dump(mode="json") if view else None

    def _admin_view(self, ms: Manuscript, viewer_id: str, now: datetime) -> dict[str, Any]:
        data = ms.model_dump(mode="json", exclude=_INTERNAL_FIELDS)
        data["decision_summary"] = summarize(ms).model_dump(mode="json")
        data["deadline"] = self._deadline(ms, viewer_id, UserRole.ADMIN, now)
        return data

    def _author_view(self, ms: Manuscript, viewer_id: str, now: datetime) -> dict[str, Any]:
        data = ms.model_dump(mode="json", exclude=_INTERNAL_FIELDS | _REVIEWER_IDENTITY_FIELDS)
        data["reviewer_submissions"] = [
            {k: v for k, v in s.items() if k != "reviewer_id"} for s in data.get("reviewer_submissions") or []
        ]
        data["submission_history"] = _strip_rounds(data.get("submission_history") or [])
        data["deadline"] = self._deadline(ms, viewer_id, UserRole.RESEARCHER, now)
        return data

    def _reviewer_view(self, ms: Manuscript, viewer_id: str, now: datetime) -> dict[str, Any]:
        meta = ms.assigned_reviewers_meta[viewer_id]
        data = ms.model_dump(
            mode="json",
            include={"id", "title", "status", "version_number", "file", "submission_history", "submitted_at", "resubmitted_at"},
        )
        data["submission_history"] = _strip_rounds(data.get("submission_history") or [])
        data["my_assignment"] = meta.model_dump(mode="json")
        data["my_submissions"] = [
            s.model_dump(mode="json") for s in ms.reviewer_submissions if s.reviewer_id == viewer_id
        ]
        data["deadline"] = self._deadline(ms, viewer_id, UserRole.PEER_REVIEWER, now)
        return data

    def project_one(
        self,
        ms: Manuscript,
        *,
        viewer_id: str,
        role: UserRole,
        now: Optional[datetime] = None,
    ) -> Optional[dict[str, Any]]:
        if not self.is_visible(ms, viewer_id=viewer_id, role=role):
            return None
        current = now or self._clock()
        if role == UserRole.ADMIN:
            return self._admin_view(ms, viewer_id, current)
        if role == UserRole.PEER_REVIEWER:
            return self._reviewer_view(ms, viewer_id, current)
        return self._author_view(ms, viewer_id, current)

    def project(
        self,
        manuscripts: Iterable[Manuscript],
        *,
        viewer_id: str,
        role: UserRole,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        current = now or self._clock()
        out: list[dict[str, Any]] = []
        for ms in manuscripts:
            view = self.project_one(ms, viewer_id=viewer_id, role=role, now=current)
            if view is not None:
                out.append(view)
        return out
