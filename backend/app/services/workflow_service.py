"""
Workflow Service: 稿件审稿状态机（唯一有权修改 status 的组件）

中文注释:
1. 每个操作 = 读取最新文档 -> 纯内存 mutation -> compare-and-set 一次性提交
   （状态 + 审稿人名单 + meta + outbox 事件同一次写入）。
2. 冲突时由仓储层重读并重算，不重放旧 payload；状态字段不允许 last-writer-wins。
3. 通知不在这里发送：状态变化以 outbox 事件形式落库，由 outbox worker 异步投递。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from uuid import uuid4

from app.core.config import WorkflowConfig
from app.models.manuscript import (
    REVIEW_PHASE_STATUSES,
    REVISION_STATUSES,
    FileRef,
    FinalOutcome,
    InvitationStatus,
    Manuscript,
    ManuscriptStatus,
    OutboxEvent,
    ReviewDecision,
    ReviewRoundSnapshot,
    StatusHistoryEntry,
    SubmissionVersion,
)
from app.services import assignment_registry as registry
from app.services.assignment_registry import WorkflowValidationError
from app.services.deadline_service import (
    DeadlineSettings,
    DeadlineSettingsService,
    as_utc,
    deadline_from_days,
    stamp_status_deadline,
    update_reviewer_deadlines,
)
from app.services.decision_aggregator import DecisionSummary, summarize
from app.services.manuscript_repository import ManuscriptRepository

logger = logging.getLogger("reviewflow.workflow")

__all__ = [
    "WorkflowPermissionError",
    "WorkflowService",
    "WorkflowValidationError",
    "recompute_status",
]


class WorkflowPermissionError(WorkflowValidationError):
    """操作者与稿件关系不满足（非作者修回、非本稿审稿人等）"""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def recompute_status(ms: Manuscript) -> ManuscriptStatus:
    """
    审稿阶段的状态重算（只读）。

    规则顺序:
    - 没有未拒绝的审稿人 -> Assigning Peer Reviewer（Accepted 且名单为空时保持 Accepted）
    - 未拒绝的审稿人全部完成当前版本 -> Back to Admin
    - 没有任何已接受（或 re-review 待确认）的审稿人 -> Assigning Peer Reviewer
    - 当前版本已有提交，或已处于 Reviewing/Back to Admin -> Peer Reviewer Reviewing
    - 否则 -> Peer Reviewer Assigned
    """
    status = ms.status
    if status not in REVIEW_PHASE_STATUSES:
        return status
    if status == ManuscriptStatus.ACCEPTED and not ms.assigned_reviewers:
        return status

    if not registry.active_reviewer_ids(ms):
        return ManuscriptStatus.ASSIGNING_PEER_REVIEWER
    if registry.all_reviewers_completed(ms):
        return ManuscriptStatus.BACK_TO_ADMIN
    if not registry.engaged_reviewer_ids(ms):
        return ManuscriptStatus.ASSIGNING_PEER_REVIEWER
    if registry.submissions_for_version(ms) or status in (
        ManuscriptStatus.PEER_REVIEWER_REVIEWING,
        ManuscriptStatus.BACK_TO_ADMIN,
    ):
        return ManuscriptStatus.PEER_REVIEWER_REVIEWING
    return ManuscriptStatus.PEER_REVIEWER_ASSIGNED


class WorkflowService:
    def __init__(
        self,
        repo: Optional[ManuscriptRepository] = None,
        deadline_settings: Optional[DeadlineSettingsService] = None,
        config: Optional[WorkflowConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.repo = repo or ManuscriptRepository()
        self.deadline_settings = deadline_settings or DeadlineSettingsService()
        self.config = config or WorkflowConfig.from_env()
        self._clock = clock

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _set_status(
        self,
        ms: Manuscript,
        new_status: ManuscriptStatus,
        *,
        actor: str,
        settings: DeadlineSettings,
        now: datetime,
        note: str = "",
    ) -> bool:
        current = ms.status
        if new_status == current:
            return False
        if new_status not in ManuscriptStatus.allowed_next(current):
            raise WorkflowValidationError(
                f"Invalid status transition: {current.value} -> {new_status.value}"
            )
        ms.status = new_status
        ms.status_history.append(
            StatusHistoryEntry(status=new_status, note=note, changed_by=actor, timestamp=now)
        )
        ms.outbox.append(
            OutboxEvent(
                id=str(uuid4()),
                from_status=current,
                to_status=new_status,
                occurred_at=now,
            )
        )
        stamp_status_deadline(ms, new_status, settings, now)
        if new_status.is_terminal:
            ms.final_decision_by = actor
            ms.final_decision_at = now
        return True

    def _apply_recompute(
        self,
        ms: Manuscript,
        *,
        actor: str,
        settings: DeadlineSettings,
        now: datetime,
        note: str = "",
    ) -> None:
        target = recompute_status(ms)
        self._set_status(ms, target, actor=actor, settings=settings, now=now, note=note)

    def _commit(
        self,
        manuscript_id: str,
        mutate: Callable[[Manuscript, DeadlineSettings, datetime], None],
    ) -> Manuscript:
        # settings 在读-改-写循环之外读取，保证 mutation 内没有 I/O
        settings = self.deadline_settings.load()

        def _apply(ms: Manuscript) -> None:
            now = self._clock()
            mutate(ms, settings, now)
            ms.updated_at = now
            registry.check_invariants(ms)

        return self.repo.update_with_retry(
            manuscript_id,
            _apply,
            max_retries=self.config.max_cas_retries,
        )

    @staticmethod
    def _require_status(ms: Manuscript, allowed: Iterable[ManuscriptStatus], action: str) -> None:
        allowed_set = set(allowed)
        if ms.status not in allowed_set:
            raise WorkflowValidationError(f"Cannot {action} while manuscript is '{ms.status.value}'")

    @staticmethod
    def _require_reviewer(ms: Manuscript, reviewer_id: str) -> None:
        if reviewer_id not in ms.assigned_reviewers_meta:
            raise WorkflowPermissionError("You are not assigned to this manuscript")

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    def get(self, manuscript_id: str) -> Manuscript:
        return self.repo.get(manuscript_id)

    def decisions(self, manuscript_id: str) -> DecisionSummary:
        return summarize(self.repo.get(manuscript_id))

    def eligible_reviewers(self, manuscript_id: str, candidate_ids: Iterable[str]) -> dict[str, dict[str, bool]]:
        return registry.eligible_reviewers(self.repo.get(manuscript_id), candidate_ids)

    # ------------------------------------------------------------------
    # 作者
    # ------------------------------------------------------------------

    def submit_manuscript(
        self,
        *,
        title: str,
        file: FileRef,
        submitter_id: str,
        co_author_ids: Optional[Iterable[str]] = None,
        notes: str = "",
    ) -> Manuscript:
        clean_title = (title or "").strip()
        if not clean_title:
            raise WorkflowValidationError("title is required")
        if file is None or not (file.url or "").strip():
            raise WorkflowValidationError("file is required")

        now = self._clock()
        co_authors = [
            cid
            for cid in dict.fromkeys(str(c).strip() for c in (co_author_ids or []))
            if cid and cid != submitter_id
        ]
        ms = Manuscript(
            id=str(uuid4()),
            title=clean_title,
            status=ManuscriptStatus.PENDING,
            version_number=1,
            submitter_id=submitter_id,
            co_author_ids=co_authors,
            file=file,
            submission_history=[
                SubmissionVersion(
                    version_number=1,
                    file=file,
                    submitted_by=submitter_id,
                    submitted_at=now,
                    revision_notes=(notes or "").strip(),
                )
            ],
            status_history=[
                StatusHistoryEntry(
                    status=ManuscriptStatus.PENDING,
                    note="submitted",
                    changed_by=submitter_id,
                    timestamp=now,
                )
            ],
            submitted_at=now,
            updated_at=now,
        )
        registry.check_invariants(ms)
        created = self.repo.create(ms)
        logger.info("manuscript %s submitted by %s", created.id, submitter_id)
        return created

    def resubmit(
        self,
        manuscript_id: str,
        *,
        actor: str,
        file: FileRef,
        notes: str,
    ) -> Manuscript:
        """
        修回提交：version+1，并冻结上一版本的审稿名单/建议。

        - Minor: 整轮审稿人退役 -> Assigning Peer Reviewer
        - Major: 同一批审稿人全部回到 pending(is_re_review) -> Peer Reviewer Assigned，
          并给每位审稿人重新推送 deadline
        """
        clean_notes = (notes or "").strip()
        if not clean_notes:
            raise WorkflowValidationError("revision notes are required")

        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            if ms.submitter_id != actor:
                raise WorkflowPermissionError("Only the submitting author can resubmit")
            self._require_status(ms, REVISION_STATUSES, "resubmit")

            reviewed = ms.version_number
            snapshot = ReviewRoundSnapshot(
                version_number=reviewed,
                reviewers=list(ms.assigned_reviewers),
                decisions={
                    rid: record.decision
                    for rid, record in ms.reviewer_decision_meta.items()
                    if record.manuscript_version_number == reviewed
                },
            )
            ms.version_number = reviewed + 1
            ms.submission_history.append(
                SubmissionVersion(
                    version_number=ms.version_number,
                    file=file,
                    submitted_by=actor,
                    submitted_at=now,
                    revision_notes=clean_notes,
                    reviewed_round=snapshot,
                )
            )
            ms.file = file
            ms.resubmitted_at = now

            if ms.status == ManuscriptStatus.FOR_REVISION_MINOR:
                registry.retire_roster(ms)
                self._set_status(
                    ms,
                    ManuscriptStatus.ASSIGNING_PEER_REVIEWER,
                    actor=actor,
                    settings=settings,
                    now=now,
                    note=f"minor revision resubmitted (v{ms.version_number})",
                )
            else:
                registry.reset_for_re_review(ms, now=now)
                self._set_status(
                    ms,
                    ManuscriptStatus.PEER_REVIEWER_ASSIGNED,
                    actor=actor,
                    settings=settings,
                    now=now,
                    note=f"major revision resubmitted (v{ms.version_number})",
                )
                days = settings.days_for_status(ManuscriptStatus.PEER_REVIEWER_ASSIGNED) or settings.review_days
                update_reviewer_deadlines(ms, days, now)

        saved = self._commit(manuscript_id, mutate)
        logger.info("manuscript %s resubmitted as v%s -> %s", manuscript_id, saved.version_number, saved.status.value)
        return saved

    # ------------------------------------------------------------------
    # 管理员
    # ------------------------------------------------------------------

    def accept_manuscript(self, manuscript_id: str, *, actor: str, note: str = "") -> Manuscript:
        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            self._require_status(ms, [ManuscriptStatus.PENDING], "accept")
            self._set_status(ms, ManuscriptStatus.ACCEPTED, actor=actor, settings=settings, now=now, note=note)

        return self._commit(manuscript_id, mutate)

    def decline_manuscript(self, manuscript_id: str, *, actor: str, note: str = "") -> Manuscript:
        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            self._require_status(ms, [ManuscriptStatus.PENDING], "decline")
            self._set_status(
                ms, ManuscriptStatus.NON_ACCEPTANCE, actor=actor, settings=settings, now=now, note=note
            )

        return self._commit(manuscript_id, mutate)

    def assign_reviewers(
        self,
        manuscript_id: str,
        reviewer_ids: Iterable[str],
        *,
        actor: str,
        deadline: Optional[datetime] = None,
    ) -> Manuscript:
        ids = list(reviewer_ids or [])
        if not ids:
            raise WorkflowValidationError("reviewer_ids must be a non-empty list")

        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            self._require_status(ms, REVIEW_PHASE_STATUSES | {ManuscriptStatus.PENDING}, "assign reviewers")
            if deadline is not None and as_utc(deadline) <= now:
                raise WorkflowValidationError("deadline must be in the future")
            if ms.status == ManuscriptStatus.PENDING:
                self._set_status(
                    ms,
                    ManuscriptStatus.ACCEPTED,
                    actor=actor,
                    settings=settings,
                    now=now,
                    note="accepted on reviewer assignment",
                )
            invite_days = settings.days_for_status(ManuscriptStatus.ASSIGNING_PEER_REVIEWER) or settings.invitation_days
            registry.add_assignments(
                ms,
                ids,
                assigned_by=actor,
                deadline=as_utc(deadline) if deadline is not None else deadline_from_days(invite_days, now),
                now=now,
            )
            self._apply_recompute(ms, actor=actor, settings=settings, now=now, note="reviewers assigned")

        saved = self._commit(manuscript_id, mutate)
        logger.info("manuscript %s: reviewers %s assigned by %s", manuscript_id, ids, actor)
        return saved

    def unassign_reviewer(self, manuscript_id: str, reviewer_id: str, *, actor: str) -> Manuscript:
        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            self._require_status(ms, REVIEW_PHASE_STATUSES, "unassign reviewers")
            registry.remove_assignment(ms, reviewer_id)
            self._apply_recompute(ms, actor=actor, settings=settings, now=now, note="reviewer unassigned")

        saved = self._commit(manuscript_id, mutate)
        logger.info("manuscript %s: reviewer %s unassigned by %s", manuscript_id, reviewer_id, actor)
        return saved

    def set_reviewer_deadline(
        self,
        manuscript_id: str,
        reviewer_id: str,
        *,
        actor: str,
        deadline: datetime,
        reminder_enabled: Optional[bool] = None,
        reminder_days_before: Optional[int] = None,
    ) -> Manuscript:
        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            registry.update_assignment_deadline(
                ms,
                reviewer_id,
                deadline=as_utc(deadline),
                now=now,
                reminder_enabled=reminder_enabled,
                reminder_days_before=reminder_days_before,
            )

        saved = self._commit(manuscript_id, mutate)
        logger.info("manuscript %s: deadline for %s set to %s by %s", manuscript_id, reviewer_id, deadline, actor)
        return saved

    def finalize_decision(
        self,
        manuscript_id: str,
        outcome: FinalOutcome,
        *,
        actor: str,
        note: str = "",
    ) -> Manuscript:
        target = FinalOutcome(outcome).status

        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            self._require_status(ms, [ManuscriptStatus.BACK_TO_ADMIN], "finalize a decision")
            self._set_status(ms, target, actor=actor, settings=settings, now=now, note=note)

        saved = self._commit(manuscript_id, mutate)
        logger.info("manuscript %s finalized as %s by %s", manuscript_id, target.value, actor)
        return saved

    # ------------------------------------------------------------------
    # 审稿人
    # ------------------------------------------------------------------

    def respond_to_invitation(self, manuscript_id: str, *, reviewer_id: str, accept: bool) -> Manuscript:
        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            self._require_status(ms, REVIEW_PHASE_STATUSES, "respond to the invitation")
            self._require_reviewer(ms, reviewer_id)
            review_deadline = None
            if accept:
                days = settings.days_for_status(ManuscriptStatus.PEER_REVIEWER_ASSIGNED) or settings.review_days
                review_deadline = deadline_from_days(days, now)
            registry.record_response(ms, reviewer_id, accept=accept, now=now, review_deadline=review_deadline)
            note = "invitation accepted" if accept else "invitation declined"
            self._apply_recompute(ms, actor=reviewer_id, settings=settings, now=now, note=note)

        saved = self._commit(manuscript_id, mutate)
        meta = saved.assigned_reviewers_meta.get(reviewer_id)
        logger.info(
            "manuscript %s: reviewer %s %s invitation",
            manuscript_id,
            reviewer_id,
            meta.invitation_status.value if meta else InvitationStatus.PENDING.value,
        )
        return saved

    def submit_review(
        self,
        manuscript_id: str,
        *,
        reviewer_id: str,
        decision: ReviewDecision,
        comment: str,
        review_file: Optional[FileRef] = None,
    ) -> Manuscript:
        def mutate(ms: Manuscript, settings: DeadlineSettings, now: datetime) -> None:
            self._require_status(ms, REVIEW_PHASE_STATUSES, "submit a review")
            self._require_reviewer(ms, reviewer_id)
            registry.record_submission(
                ms,
                reviewer_id,
                decision=ReviewDecision(decision),
                comment=comment,
                review_file=review_file,
                now=now,
            )
            self._apply_recompute(ms, actor=reviewer_id, settings=settings, now=now, note="review submitted")

        saved = self._commit(manuscript_id, mutate)
        logger.info(
            "manuscript %s: review by %s for v%s -> %s",
            manuscript_id,
            reviewer_id,
            saved.version_number,
            saved.status.value,
        )
        return saved
