from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from app.models.manuscript import (
    FileRef,
    InvitationStatus,
    Manuscript,
    ReviewDecision,
    ReviewerAssignment,
    ReviewerDecisionRecord,
    ReviewerSubmission,
)


@dataclass
class WorkflowValidationError(Exception):
    message: str

    def __str__(self) -> str:
        return self.message


def _dedupe(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(str(x).strip() for x in ids if str(x or "").strip()))


# ---------------------------------------------------------------------------
# 只读判定
# ---------------------------------------------------------------------------


def active_reviewer_ids(ms: Manuscript) -> list[str]:
    """当前名单中未拒绝邀请的审稿人（完成度闸门只看这些人）"""
    out: list[str] = []
    for rid in ms.assigned_reviewers:
        meta = ms.assigned_reviewers_meta.get(rid)
        if meta is not None and meta.invitation_status == InvitationStatus.DECLINED:
            continue
        out.append(rid)
    return out


def submissions_for_version(ms: Manuscript, version_number: int | None = None) -> list[ReviewerSubmission]:
    version = ms.version_number if version_number is None else version_number
    return [s for s in ms.reviewer_submissions if s.manuscript_version_number == version]


def completed_reviewer_ids(ms: Manuscript, version_number: int | None = None) -> set[str]:
    return {s.reviewer_id for s in submissions_for_version(ms, version_number) if s.status == "Completed"}


def has_participated(ms: Manuscript, reviewer_id: str) -> bool:
    """是否曾在任一版本提交过审稿意见或给出过建议（历史归属依据）"""
    if reviewer_id in ms.reviewer_decision_meta:
        return True
    return any(s.reviewer_id == reviewer_id for s in ms.reviewer_submissions)


def all_reviewers_completed(ms: Manuscript) -> bool:
    """
    当且仅当：当前名单里每一个“未拒绝”的审稿人都对当前版本有 Completed 记录。

    中文注释:
    - 拒绝邀请的审稿人（无论之前是否参与过旧版本）都不参与当前版本闸门；
      参与过旧版本的人通过 previous_reviewers 保留历史归属。
    - 名单为空时返回 False，避免“零审稿人 = 全部完成”。
    """
    active = active_reviewer_ids(ms)
    if not active:
        return False
    completed = completed_reviewer_ids(ms)
    return all(rid in completed for rid in active)


def engaged_reviewer_ids(ms: Manuscript) -> list[str]:
    """已接受邀请，或处于 re-review 待确认的审稿人"""
    out: list[str] = []
    for rid in active_reviewer_ids(ms):
        meta = ms.assigned_reviewers_meta.get(rid)
        if meta is None:
            continue
        if meta.invitation_status == InvitationStatus.ACCEPTED:
            out.append(rid)
        elif meta.invitation_status == InvitationStatus.PENDING and meta.is_re_review:
            out.append(rid)
    return out


def eligible_reviewers(ms: Manuscript, candidate_ids: Iterable[str]) -> dict[str, dict[str, bool]]:
    """
    审稿人候选过滤：排除作者/共同作者、当前已在岗的审稿人，
    以及已对当前版本提交过意见的人（被撤销后不能再次计入本版本），并标记历史审稿人。
    """
    authors = {ms.submitter_id, *ms.co_author_ids}
    active = set(active_reviewer_ids(ms))
    reviewed = completed_reviewer_ids(ms)
    previous = set(ms.previous_reviewers)
    out: dict[str, dict[str, bool]] = {}
    for rid in _dedupe(candidate_ids):
        conflict = rid in authors
        out[rid] = {
            "eligible": not conflict and rid not in active and rid not in reviewed,
            "conflict": conflict,
            "already_assigned": rid in active,
            "already_reviewed": rid in reviewed,
            "previous_reviewer": rid in previous,
        }
    return out


# ---------------------------------------------------------------------------
# 变更（就地修改聚合根；调用方负责原子提交）
# ---------------------------------------------------------------------------


def _require_meta(ms: Manuscript, reviewer_id: str) -> ReviewerAssignment:
    meta = ms.assigned_reviewers_meta.get(reviewer_id)
    if reviewer_id not in ms.assigned_reviewers or meta is None:
        raise WorkflowValidationError(f"Reviewer {reviewer_id} is not assigned to this manuscript")
    return meta


def add_assignments(
    ms: Manuscript,
    reviewer_ids: Iterable[str],
    *,
    assigned_by: str,
    deadline: datetime,
    now: datetime,
) -> list[str]:
    ids = _dedupe(reviewer_ids)
    if not ids:
        raise WorkflowValidationError("reviewer_ids must be a non-empty list")

    checks = eligible_reviewers(ms, ids)
    conflicts = sorted(rid for rid, c in checks.items() if c["conflict"])
    if conflicts:
        raise WorkflowValidationError(f"Authors cannot review their own manuscript: {conflicts}")
    duplicates = sorted(rid for rid, c in checks.items() if c["already_assigned"])
    if duplicates:
        raise WorkflowValidationError(f"Reviewers already assigned: {duplicates}")
    reviewed = sorted(rid for rid, c in checks.items() if c["already_reviewed"])
    if reviewed:
        raise WorkflowValidationError(
            f"Reviewers already reviewed version {ms.version_number}: {reviewed}"
        )

    for rid in ids:
        # 曾拒绝过的人重新邀请：覆盖旧 meta，名单位置保持不变
        if rid not in ms.assigned_reviewers:
            ms.assigned_reviewers.append(rid)
        ms.assigned_reviewers_meta[rid] = ReviewerAssignment(
            invitation_status=InvitationStatus.PENDING,
            assigned_at=now,
            assigned_by=assigned_by,
            deadline=deadline,
            assigned_version=ms.version_number,
        )
    return ids


def record_response(
    ms: Manuscript,
    reviewer_id: str,
    *,
    accept: bool,
    now: datetime,
    review_deadline: Optional[datetime] = None,
) -> ReviewerAssignment:
    meta = _require_meta(ms, reviewer_id)
    if meta.invitation_status != InvitationStatus.PENDING:
        raise WorkflowValidationError(
            f"Invitation already {meta.invitation_status.value}; cannot respond again"
        )
    meta.responded_at = now
    if accept:
        meta.invitation_status = InvitationStatus.ACCEPTED
        if review_deadline is not None:
            meta.deadline = review_deadline
            meta.last_reminded_for = None
    else:
        meta.invitation_status = InvitationStatus.DECLINED
    return meta


def record_submission(
    ms: Manuscript,
    reviewer_id: str,
    *,
    decision: ReviewDecision,
    comment: str,
    review_file: Optional[FileRef],
    now: datetime,
) -> ReviewerSubmission:
    meta = _require_meta(ms, reviewer_id)
    if meta.invitation_status != InvitationStatus.ACCEPTED:
        raise WorkflowValidationError("Reviewer must accept the invitation before submitting a review")
    if reviewer_id in completed_reviewer_ids(ms):
        raise WorkflowValidationError(
            f"Reviewer already submitted a review for version {ms.version_number}"
        )
    if not (comment or "").strip():
        raise WorkflowValidationError("comment is required")

    submission = ReviewerSubmission(
        reviewer_id=reviewer_id,
        manuscript_version_number=ms.version_number,
        decision=decision,
        comment=comment.strip(),
        review_file=review_file,
        completed_at=now,
    )
    ms.reviewer_submissions.append(submission)
    ms.reviewer_decision_meta[reviewer_id] = ReviewerDecisionRecord(
        decision=decision,
        decided_at=now,
        manuscript_version_number=ms.version_number,
    )
    return submission


def _archive(ms: Manuscript, reviewer_id: str) -> None:
    meta = ms.assigned_reviewers_meta.get(reviewer_id)
    if not has_participated(ms, reviewer_id):
        return
    if reviewer_id not in ms.previous_reviewers:
        ms.previous_reviewers.append(reviewer_id)
    if meta is not None:
        ms.previous_reviewers_meta[reviewer_id] = meta.model_copy(deep=True)


def remove_assignment(ms: Manuscript, reviewer_id: str) -> None:
    """
    撤销指派：从名单与 meta 中移除；曾参与过的审稿人转入 previous_reviewers。

    中文注释:
    - reviewer_submissions 是只追加历史，不在这里删除；
      被撤销者对当前版本的提交不再参与闸门（已不在名单中，且本版本内不可再指派）。
    - 当前轮的建议随撤销一并移除，汇总里不再出现该审稿人。
    """
    _require_meta(ms, reviewer_id)
    _archive(ms, reviewer_id)
    ms.assigned_reviewers = [rid for rid in ms.assigned_reviewers if rid != reviewer_id]
    ms.assigned_reviewers_meta.pop(reviewer_id, None)
    ms.reviewer_decision_meta.pop(reviewer_id, None)


def update_assignment_deadline(
    ms: Manuscript,
    reviewer_id: str,
    *,
    deadline: datetime,
    now: datetime,
    reminder_enabled: Optional[bool] = None,
    reminder_days_before: Optional[int] = None,
) -> ReviewerAssignment:
    meta = _require_meta(ms, reviewer_id)
    if deadline <= now:
        raise WorkflowValidationError("deadline must be in the future")
    if meta.deadline != deadline:
        meta.last_reminded_for = None
    meta.deadline = deadline
    if reminder_enabled is not None:
        meta.reminder_enabled = bool(reminder_enabled)
    if reminder_days_before is not None:
        if reminder_days_before < 0:
            raise WorkflowValidationError("reminder_days_before must be >= 0")
        meta.reminder_days_before = int(reminder_days_before)
    return meta


def retire_roster(ms: Manuscript) -> list[str]:
    """Minor 修回：整轮审稿人退役，当前版本的审稿产物全部清空"""
    retired = list(ms.assigned_reviewers)
    for rid in retired:
        _archive(ms, rid)
    ms.assigned_reviewers = []
    ms.assigned_reviewers_meta = {}
    ms.reviewer_decision_meta = {}
    return retired


def reset_for_re_review(ms: Manuscript, *, now: datetime) -> list[str]:
    """
    Major 修回：沿用同一批审稿人，全部回到 pending。
    只有真正参与过审稿的人标记 is_re_review（上一轮直接拒绝的人按普通邀请处理）。
    """
    for rid in ms.assigned_reviewers:
        _archive(ms, rid)
        meta = ms.assigned_reviewers_meta.get(rid)
        if meta is None:
            continue
        meta.invitation_status = InvitationStatus.PENDING
        meta.is_re_review = has_participated(ms, rid)
        meta.responded_at = None
        meta.assigned_at = now
        meta.assigned_version = ms.version_number
        meta.last_reminded_for = None
    ms.reviewer_decision_meta = {}
    return list(ms.assigned_reviewers)


def check_invariants(ms: Manuscript) -> None:
    if ms.version_number != len(ms.submission_history):
        raise WorkflowValidationError(
            f"version_number {ms.version_number} != submission_history length {len(ms.submission_history)}"
        )
    for s in ms.reviewer_submissions:
        if s.manuscript_version_number > ms.version_number:
            raise WorkflowValidationError(
                f"submission by {s.reviewer_id} references future version {s.manuscript_version_number}"
            )
    unknown = [rid for rid in ms.assigned_reviewers if rid not in ms.assigned_reviewers_meta]
    if unknown:
        raise WorkflowValidationError(f"assigned reviewers without meta: {unknown}")
