from __future__ import annotations

from datetime import timedelta

import pytest

from app.models.manuscript import InvitationStatus, Manuscript, ReviewDecision, SubmissionVersion
from app.services import assignment_registry as registry
from app.services.assignment_registry import WorkflowValidationError
from tests.utils.factories import ADMIN, AUTHOR, CO_AUTHOR, R1, R2, R3, T0, file_ref


def _ms(**kw) -> Manuscript:
    base = dict(
        id="m-1",
        title="t",
        submitter_id=AUTHOR,
        co_author_ids=[CO_AUTHOR],
        status="Assigning Peer Reviewer",
        submission_history=[SubmissionVersion(version_number=1, file=file_ref(), submitted_by=AUTHOR, submitted_at=T0)],
    )
    base.update(kw)
    return Manuscript(**base)


def _assign(ms: Manuscript, *ids: str) -> None:
    registry.add_assignments(ms, ids, assigned_by=ADMIN, deadline=T0 + timedelta(days=5), now=T0)


def _accept(ms: Manuscript, rid: str) -> None:
    registry.record_response(ms, rid, accept=True, now=T0, review_deadline=T0 + timedelta(days=6))


def _review(ms: Manuscript, rid: str, decision: ReviewDecision = ReviewDecision.MINOR) -> None:
    registry.record_submission(ms, rid, decision=decision, comment="ok", review_file=None, now=T0)


def test_add_assignments_dedupes_and_rejects_authors():
    ms = _ms()
    assert registry.add_assignments(ms, [R1, R1, " ", R2], assigned_by=ADMIN, deadline=T0, now=T0) == [R1, R2]
    assert ms.assigned_reviewers == [R1, R2]

    with pytest.raises(WorkflowValidationError, match="Authors cannot review"):
        _assign(ms, AUTHOR)
    with pytest.raises(WorkflowValidationError, match="already assigned"):
        _assign(ms, R2)


def test_declined_reviewer_can_be_re_invited_in_place():
    ms = _ms()
    _assign(ms, R1, R2)
    registry.record_response(ms, R1, accept=False, now=T0)
    assert registry.active_reviewer_ids(ms) == [R2]

    _assign(ms, R1)
    assert ms.assigned_reviewers == [R1, R2]
    assert ms.assigned_reviewers_meta[R1].invitation_status == InvitationStatus.PENDING


def test_response_only_once():
    ms = _ms()
    _assign(ms, R1)
    _accept(ms, R1)
    assert ms.assigned_reviewers_meta[R1].deadline == T0 + timedelta(days=6)
    with pytest.raises(WorkflowValidationError, match="cannot respond again"):
        registry.record_response(ms, R1, accept=False, now=T0)
    with pytest.raises(WorkflowValidationError, match="not assigned"):
        registry.record_response(ms, R3, accept=True, now=T0)


def test_submission_requires_acceptance_and_is_once_per_version():
    ms = _ms()
    _assign(ms, R1)
    with pytest.raises(WorkflowValidationError):
        _review(ms, R1)
    _accept(ms, R1)
    with pytest.raises(WorkflowValidationError, match="comment is required"):
        registry.record_submission(ms, R1, decision=ReviewDecision.MINOR, comment="  ", review_file=None, now=T0)
    _review(ms, R1)
    with pytest.raises(WorkflowValidationError, match="already submitted"):
        _review(ms, R1)
    assert ms.reviewer_decision_meta[R1].manuscript_version_number == 1


def test_all_reviewers_completed_ignores_declined_and_requires_nonempty_roster():
    ms = _ms()
    assert registry.all_reviewers_completed(ms) is False

    _assign(ms, R1, R2)
    registry.record_response(ms, R2, accept=False, now=T0)
    _accept(ms, R1)
    assert registry.all_reviewers_completed(ms) is False
    _review(ms, R1)
    assert registry.all_reviewers_completed(ms) is True


def test_declined_previous_reviewer_keeps_history_but_not_gating():
    ms = _ms()
    _assign(ms, R1, R2)
    _accept(ms, R1)
    _accept(ms, R2)
    _review(ms, R1)
    _review(ms, R2)

    ms.version_number = 2
    ms.submission_history.append(
        SubmissionVersion(version_number=2, file=file_ref("v2.pdf"), submitted_by=AUTHOR, submitted_at=T0)
    )
    registry.reset_for_re_review(ms, now=T0)
    assert set(ms.previous_reviewers) == {R1, R2}
    assert all(m.is_re_review for m in ms.assigned_reviewers_meta.values())
    assert set(registry.engaged_reviewer_ids(ms)) == {R1, R2}

    # R2 拒绝 re-review：历史归属保留，但不再计入 v2 的完成度
    registry.record_response(ms, R2, accept=False, now=T0)
    _accept(ms, R1)
    _review(ms, R1)
    assert registry.all_reviewers_completed(ms) is True
    assert R2 in ms.previous_reviewers
    assert registry.has_participated(ms, R2)
    registry.check_invariants(ms)


def test_remove_assignment_archives_only_participants():
    ms = _ms()
    _assign(ms, R1, R2)
    _accept(ms, R1)
    _review(ms, R1)

    registry.remove_assignment(ms, R1)
    registry.remove_assignment(ms, R2)
    assert ms.assigned_reviewers == []
    assert ms.previous_reviewers == [R1]
    assert R1 in ms.previous_reviewers_meta
    # 只追加的提交历史不因撤销而删除
    assert len(ms.reviewer_submissions) == 1
    with pytest.raises(WorkflowValidationError):
        registry.remove_assignment(ms, R1)


def test_remove_assignment_drops_current_decision_and_blocks_reassign():
    ms = _ms()
    _assign(ms, R1, R2)
    _accept(ms, R1)
    _review(ms, R1)

    registry.remove_assignment(ms, R1)
    assert R1 not in ms.reviewer_decision_meta
    assert registry.has_participated(ms, R1)
    with pytest.raises(WorkflowValidationError, match="already reviewed version 1"):
        _assign(ms, R1)
    assert ms.assigned_reviewers == [R2]


def test_re_review_flag_only_for_participants():
    ms = _ms()
    _assign(ms, R1, R2)
    _accept(ms, R1)
    registry.record_response(ms, R2, accept=False, now=T0)
    _review(ms, R1)

    ms.version_number = 2
    ms.submission_history.append(
        SubmissionVersion(version_number=2, file=file_ref("v2.pdf"), submitted_by=AUTHOR, submitted_at=T0)
    )
    registry.reset_for_re_review(ms, now=T0)
    assert ms.assigned_reviewers_meta[R1].is_re_review is True
    assert ms.assigned_reviewers_meta[R2].is_re_review is False
    assert ms.assigned_reviewers_meta[R2].invitation_status == InvitationStatus.PENDING
    assert registry.engaged_reviewer_ids(ms) == [R1]


def test_retire_roster_clears_current_round():
    ms = _ms()
    _assign(ms, R1, R2)
    _accept(ms, R1)
    _review(ms, R1, ReviewDecision.MAJOR)

    retired = registry.retire_roster(ms)
    assert retired == [R1, R2]
    assert ms.assigned_reviewers == [] and ms.assigned_reviewers_meta == {}
    assert ms.reviewer_decision_meta == {}
    assert ms.previous_reviewers == [R1]


def test_eligible_reviewers_flags():
    ms = _ms(previous_reviewers=[R3])
    _assign(ms, R1)
    out = registry.eligible_reviewers(ms, [R1, R3, CO_AUTHOR])
    assert out[R1] == {
        "eligible": False,
        "conflict": False,
        "already_assigned": True,
        "already_reviewed": False,
        "previous_reviewer": False,
    }
    assert out[R3]["eligible"] is True and out[R3]["previous_reviewer"] is True
    assert out[CO_AUTHOR]["conflict"] is True and out[CO_AUTHOR]["eligible"] is False


def test_update_assignment_deadline_validates():
    ms = _ms()
    _assign(ms, R1)
    with pytest.raises(WorkflowValidationError, match="future"):
        registry.update_assignment_deadline(ms, R1, deadline=T0, now=T0)
    with pytest.raises(WorkflowValidationError, match=">= 0"):
        registry.update_assignment_deadline(
            ms, R1, deadline=T0 + timedelta(days=1), now=T0, reminder_days_before=-1
        )


def test_check_invariants_detects_version_drift():
    ms = _ms(version_number=2)
    with pytest.raises(WorkflowValidationError, match="version_number"):
        registry.check_invariants(ms)
