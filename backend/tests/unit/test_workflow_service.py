from __future__ import annotations

from datetime import timedelta

import pytest

from app.models.manuscript import (
    FinalOutcome,
    InvitationStatus,
    ManuscriptStatus,
    ReviewDecision,
)
from app.services.assignment_registry import submissions_for_version
from app.services.manuscript_repository import ConcurrencyConflictError
from app.services.workflow_service import (
    WorkflowPermissionError,
    WorkflowValidationError,
    recompute_status,
)
from tests.utils.factories import ADMIN, AUTHOR, CO_AUTHOR, R1, R2, R3, T0, file_ref

S = ManuscriptStatus


def _submit(workflow):
    return workflow.submit_manuscript(
        title="Graph Neural Networks for Peer Review",
        file=file_ref(),
        submitter_id=AUTHOR,
        co_author_ids=[CO_AUTHOR],
        notes="initial submission",
    )


def _to_back_to_admin(workflow, clock):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1, R2], actor=ADMIN)
    clock.advance(hours=1)
    workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)
    workflow.respond_to_invitation(ms.id, reviewer_id=R2, accept=True)
    clock.advance(days=1)
    workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.MINOR, comment="Tighten section 3.")
    return workflow.submit_review(ms.id, reviewer_id=R2, decision=ReviewDecision.MAJOR, comment="Needs more data.")


def test_full_review_cycle_to_major_revision_and_re_review(workflow, clock):
    ms = _submit(workflow)
    assert ms.status == S.PENDING
    assert ms.version_number == 1 and len(ms.submission_history) == 1
    assert ms.submitted_at == T0

    ms = workflow.assign_reviewers(ms.id, [R1, R2], actor=ADMIN)
    assert ms.status == S.ASSIGNING_PEER_REVIEWER
    assert [h.status for h in ms.status_history] == [S.PENDING, S.ACCEPTED, S.ASSIGNING_PEER_REVIEWER]
    assert ms.assigned_reviewers == [R1, R2]
    assert all(m.invitation_status == InvitationStatus.PENDING for m in ms.assigned_reviewers_meta.values())
    assert ms.invitation_deadline == T0 + timedelta(days=5)
    assert ms.assigned_reviewers_meta[R1].deadline == T0 + timedelta(days=5)

    clock.advance(hours=2)
    ms = workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)
    assert ms.status == S.PEER_REVIEWER_ASSIGNED
    assert ms.assigned_reviewers_meta[R1].responded_at == clock.now
    assert ms.assigned_reviewers_meta[R1].deadline == clock.now + timedelta(days=6)
    assert ms.review_deadline == clock.now + timedelta(days=6)

    ms = workflow.respond_to_invitation(ms.id, reviewer_id=R2, accept=True)
    assert ms.status == S.PEER_REVIEWER_ASSIGNED

    ms = workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.MINOR, comment="Minor fixes.")
    assert ms.status == S.PEER_REVIEWER_REVIEWING

    ms = workflow.submit_review(ms.id, reviewer_id=R2, decision=ReviewDecision.MAJOR, comment="Major issues.")
    assert ms.status == S.BACK_TO_ADMIN
    assert ms.finalization_deadline == clock.now + timedelta(days=5)

    ms = workflow.finalize_decision(ms.id, FinalOutcome.MAJOR, actor=ADMIN, note="address reviewer 2")
    assert ms.status == S.FOR_REVISION_MAJOR
    assert ms.revision_deadline == clock.now + timedelta(days=6)
    assert ms.final_decision_by is None

    clock.advance(days=3)
    ms = workflow.resubmit(ms.id, actor=AUTHOR, file=file_ref("paper-v2.pdf"), notes="Added experiments.")
    assert ms.version_number == 2
    assert len(ms.submission_history) == 2
    assert ms.status == S.PEER_REVIEWER_ASSIGNED
    assert set(ms.assigned_reviewers) == {R1, R2}
    for rid in (R1, R2):
        meta = ms.assigned_reviewers_meta[rid]
        assert meta.invitation_status == InvitationStatus.PENDING
        assert meta.is_re_review is True
        assert meta.deadline == clock.now + timedelta(days=6)
    assert ms.reviewer_decision_meta == {}
    assert ms.resubmitted_at == clock.now

    snapshot = ms.submission_history[-1].reviewed_round
    assert snapshot is not None
    assert snapshot.version_number == 1
    assert snapshot.decisions == {R1: ReviewDecision.MINOR, R2: ReviewDecision.MAJOR}


def test_re_review_round_completes_on_new_version_only(workflow, clock):
    ms = _to_back_to_admin(workflow, clock)
    workflow.finalize_decision(ms.id, FinalOutcome.MAJOR, actor=ADMIN)
    ms = workflow.resubmit(ms.id, actor=AUTHOR, file=file_ref("paper-v2.pdf"), notes="v2")

    # 旧版本的提交不计入 v2 的完成度
    assert recompute_status(ms) == S.PEER_REVIEWER_ASSIGNED
    workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)
    workflow.respond_to_invitation(ms.id, reviewer_id=R2, accept=True)
    ms = workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.PUBLICATION, comment="Good now.")
    assert ms.status == S.PEER_REVIEWER_REVIEWING
    ms = workflow.submit_review(ms.id, reviewer_id=R2, decision=ReviewDecision.PUBLICATION, comment="Accept.")
    assert ms.status == S.BACK_TO_ADMIN
    assert len(ms.reviewer_submissions) == 4
    assert len(submissions_for_version(ms, 2)) == 2


def test_minor_revision_resubmission_clears_review_artifacts(workflow, clock):
    ms = _to_back_to_admin(workflow, clock)
    workflow.finalize_decision(ms.id, FinalOutcome.MINOR, actor=ADMIN)
    ms = workflow.resubmit(ms.id, actor=AUTHOR, file=file_ref("paper-v2.pdf"), notes="Fixed typos.")

    assert ms.status == S.ASSIGNING_PEER_REVIEWER
    assert ms.version_number == 2 == len(ms.submission_history)
    assert ms.assigned_reviewers == []
    assert ms.assigned_reviewers_meta == {}
    assert ms.reviewer_decision_meta == {}
    assert submissions_for_version(ms) == []
    assert set(ms.previous_reviewers) == {R1, R2}
    # 历史提交保留（只追加）
    assert len(ms.reviewer_submissions) == 2

    # 新一轮可以重新邀请历史审稿人
    ms = workflow.assign_reviewers(ms.id, [R1, R3], actor=ADMIN)
    assert ms.status == S.ASSIGNING_PEER_REVIEWER
    assert ms.assigned_reviewers_meta[R1].assigned_version == 2


def test_unassigning_last_reviewer_returns_to_assigning(workflow, clock):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1, R2], actor=ADMIN)
    workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)
    workflow.respond_to_invitation(ms.id, reviewer_id=R2, accept=True)
    ms = workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.MINOR, comment="ok")
    assert ms.status == S.PEER_REVIEWER_REVIEWING

    ms = workflow.unassign_reviewer(ms.id, R1, actor=ADMIN)
    assert ms.status == S.PEER_REVIEWER_REVIEWING
    assert ms.assigned_reviewers == [R2]
    assert R1 in ms.previous_reviewers
    assert R1 in ms.previous_reviewers_meta

    ms = workflow.unassign_reviewer(ms.id, R2, actor=ADMIN)
    assert ms.status == S.ASSIGNING_PEER_REVIEWER
    assert ms.assigned_reviewers == []
    # R2 从未提交/决定，不进入历史审稿人
    assert R2 not in ms.previous_reviewers


def test_unassigning_pending_reviewer_when_rest_completed_goes_back_to_admin(workflow, clock):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1, R2], actor=ADMIN)
    workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)
    ms = workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.PUBLICATION, comment="fine")
    assert ms.status == S.PEER_REVIEWER_REVIEWING

    ms = workflow.unassign_reviewer(ms.id, R2, actor=ADMIN)
    assert ms.status == S.BACK_TO_ADMIN


def test_unassigned_reviewer_cannot_rejoin_the_version_they_reviewed(workflow, clock):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1, R2], actor=ADMIN)
    workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)
    workflow.respond_to_invitation(ms.id, reviewer_id=R2, accept=True)
    workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.MINOR, comment="ok")

    ms = workflow.unassign_reviewer(ms.id, R1, actor=ADMIN)
    assert R1 not in ms.reviewer_decision_meta
    assert workflow.decisions(ms.id).decisions == {}
    assert workflow.eligible_reviewers(ms.id, [R1])[R1]["already_reviewed"] is True

    with pytest.raises(WorkflowValidationError, match="already reviewed"):
        workflow.assign_reviewers(ms.id, [R1], actor=ADMIN)

    ms = workflow.submit_review(ms.id, reviewer_id=R2, decision=ReviewDecision.MAJOR, comment="rework")
    assert ms.status == S.BACK_TO_ADMIN
    assert ms.assigned_reviewers == [R2]
    assert workflow.decisions(ms.id).decisions == {R2: ReviewDecision.MAJOR}


def test_declined_reviewer_is_excluded_from_completion(workflow, clock):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1, R2], actor=ADMIN)
    ms = workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=False)
    assert ms.status == S.ASSIGNING_PEER_REVIEWER
    assert ms.assigned_reviewers_meta[R1].invitation_status == InvitationStatus.DECLINED

    workflow.respond_to_invitation(ms.id, reviewer_id=R2, accept=True)
    ms = workflow.submit_review(ms.id, reviewer_id=R2, decision=ReviewDecision.REJECT, comment="flawed")
    assert ms.status == S.BACK_TO_ADMIN


def test_assigning_reviewer_after_completed_reviews_merges_into_current_round(workflow, clock):
    ms = _to_back_to_admin(workflow, clock)
    ms = workflow.assign_reviewers(ms.id, [R3], actor=ADMIN)
    assert ms.status == S.PEER_REVIEWER_REVIEWING
    assert len(submissions_for_version(ms)) == 2

    workflow.respond_to_invitation(ms.id, reviewer_id=R3, accept=True)
    ms = workflow.submit_review(ms.id, reviewer_id=R3, decision=ReviewDecision.MINOR, comment="third opinion")
    assert ms.status == S.BACK_TO_ADMIN


def test_validation_errors_do_not_write(workflow, stub):
    ms = _submit(workflow)
    revision_before = stub.rows("manuscripts")[0]["revision"]

    with pytest.raises(WorkflowValidationError, match="Authors cannot review"):
        workflow.assign_reviewers(ms.id, [CO_AUTHOR], actor=ADMIN)
    with pytest.raises(WorkflowValidationError):
        workflow.assign_reviewers(ms.id, [], actor=ADMIN)
    with pytest.raises(WorkflowValidationError, match="Cannot finalize"):
        workflow.finalize_decision(ms.id, FinalOutcome.PUBLICATION, actor=ADMIN)
    with pytest.raises(WorkflowValidationError, match="Cannot resubmit"):
        workflow.resubmit(ms.id, actor=AUTHOR, file=file_ref("v2.pdf"), notes="early")

    assert stub.rows("manuscripts")[0]["revision"] == revision_before


def test_duplicate_assignment_and_premature_review_are_rejected(workflow):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1], actor=ADMIN)
    with pytest.raises(WorkflowValidationError, match="already assigned"):
        workflow.assign_reviewers(ms.id, [R1], actor=ADMIN)
    with pytest.raises(WorkflowValidationError, match="accept the invitation"):
        workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.MINOR, comment="x")
    with pytest.raises(WorkflowPermissionError):
        workflow.respond_to_invitation(ms.id, reviewer_id=R3, accept=True)


def test_only_submitter_can_resubmit(workflow, clock):
    ms = _to_back_to_admin(workflow, clock)
    workflow.finalize_decision(ms.id, FinalOutcome.MINOR, actor=ADMIN)
    with pytest.raises(WorkflowPermissionError):
        workflow.resubmit(ms.id, actor=CO_AUTHOR, file=file_ref("v2.pdf"), notes="by co-author")
    with pytest.raises(WorkflowValidationError, match="revision notes"):
        workflow.resubmit(ms.id, actor=AUTHOR, file=file_ref("v2.pdf"), notes="   ")


def test_non_acceptance_is_terminal(workflow, clock):
    ms = _submit(workflow)
    ms = workflow.decline_manuscript(ms.id, actor=ADMIN, note="out of scope")
    assert ms.status == S.NON_ACCEPTANCE
    assert ms.final_decision_by == ADMIN
    assert ms.final_decision_at == clock.now
    with pytest.raises(WorkflowValidationError):
        workflow.accept_manuscript(ms.id, actor=ADMIN)
    with pytest.raises(WorkflowValidationError):
        workflow.assign_reviewers(ms.id, [R1], actor=ADMIN)


def test_publication_records_final_decision(workflow, clock):
    ms = _to_back_to_admin(workflow, clock)
    ms = workflow.finalize_decision(ms.id, FinalOutcome.PUBLICATION, actor=ADMIN)
    assert ms.status == S.FOR_PUBLICATION
    assert ms.final_decision_by == ADMIN


def test_status_changes_are_queued_in_outbox(workflow, clock):
    ms = _to_back_to_admin(workflow, clock)
    transitions = [(e.from_status, e.to_status) for e in ms.outbox]
    assert transitions == [
        (S.PENDING, S.ACCEPTED),
        (S.ACCEPTED, S.ASSIGNING_PEER_REVIEWER),
        (S.ASSIGNING_PEER_REVIEWER, S.PEER_REVIEWER_ASSIGNED),
        (S.PEER_REVIEWER_ASSIGNED, S.PEER_REVIEWER_REVIEWING),
        (S.PEER_REVIEWER_REVIEWING, S.BACK_TO_ADMIN),
    ]
    assert len({e.id for e in ms.outbox}) == len(ms.outbox)


def test_concurrent_submission_is_not_lost(workflow, stub, clock):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1, R2], actor=ADMIN)
    workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)
    workflow.respond_to_invitation(ms.id, reviewer_id=R2, accept=True)

    # R2 提交的 compare-and-set 之前，R1 抢先写入
    def concurrent_writer(_stub, _table):
        workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.MINOR, comment="first")

    stub.before_update = concurrent_writer
    ms = workflow.submit_review(ms.id, reviewer_id=R2, decision=ReviewDecision.MAJOR, comment="second")

    assert ms.status == S.BACK_TO_ADMIN
    assert {s.reviewer_id for s in ms.reviewer_submissions} == {R1, R2}


def test_concurrent_unassign_during_submission_recomputes_on_fresh_roster(workflow, stub):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1, R2], actor=ADMIN)
    workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)

    def admin_unassigns_r2(_stub, _table):
        workflow.unassign_reviewer(ms.id, R2, actor=ADMIN)

    stub.before_update = admin_unassigns_r2
    ms = workflow.submit_review(ms.id, reviewer_id=R1, decision=ReviewDecision.PUBLICATION, comment="done")
    assert ms.assigned_reviewers == [R1]
    assert ms.status == S.BACK_TO_ADMIN


def test_conflict_retries_are_bounded(workflow, stub):
    ms = _submit(workflow)

    def keep_bumping(s, _table):
        s.tables["manuscripts"][0]["revision"] += 1
        s.before_update = keep_bumping

    stub.before_update = keep_bumping
    updates_before = stub.count("manuscripts", "update")
    with pytest.raises(ConcurrencyConflictError):
        workflow.accept_manuscript(ms.id, actor=ADMIN)
    assert stub.count("manuscripts", "update") - updates_before == 3


def test_settings_document_overrides_default_windows(workflow, stub):
    stub.tables["deadline_settings"] = [
        {"id": "deadlines", "values": {"Assigning Peer Reviewer": 10, "reviewDeadline": 14}}
    ]
    ms = _submit(workflow)
    ms = workflow.assign_reviewers(ms.id, [R1], actor=ADMIN)
    assert ms.invitation_deadline == T0 + timedelta(days=10)
    assert ms.assigned_reviewers_meta[R1].deadline == T0 + timedelta(days=10)
    ms = workflow.respond_to_invitation(ms.id, reviewer_id=R1, accept=True)
    assert ms.assigned_reviewers_meta[R1].deadline == T0 + timedelta(days=14)


def test_explicit_assignment_deadline_must_be_in_future(workflow, clock):
    ms = _submit(workflow)
    with pytest.raises(WorkflowValidationError, match="future"):
        workflow.assign_reviewers(ms.id, [R1], actor=ADMIN, deadline=clock.now - timedelta(minutes=1))
    ms = workflow.assign_reviewers(ms.id, [R1], actor=ADMIN, deadline=clock.now + timedelta(days=2))
    assert ms.assigned_reviewers_meta[R1].deadline == clock.now + timedelta(days=2)


def test_set_reviewer_deadline_resets_reminder_marker(workflow, clock, stub):
    ms = _submit(workflow)
    workflow.assign_reviewers(ms.id, [R1], actor=ADMIN)
    row = stub.tables["manuscripts"][0]
    row["assigned_reviewers_meta"][R1]["last_reminded_for"] = row["assigned_reviewers_meta"][R1]["deadline"]

    new_deadline = clock.now + timedelta(days=9)
    ms = workflow.set_reviewer_deadline(
        ms.id, R1, actor=ADMIN, deadline=new_deadline, reminder_enabled=False, reminder_days_before=1
    )
    meta = ms.assigned_reviewers_meta[R1]
    assert meta.deadline == new_deadline
    assert meta.last_reminded_for is None
    assert meta.reminder_enabled is False
    assert meta.reminder_days_before == 1


def test_version_number_matches_history_after_every_operation(workflow, clock):
    ms = _to_back_to_admin(workflow, clock)
    assert ms.version_number == len(ms.submission_history)
    workflow.finalize_decision(ms.id, FinalOutcome.MAJOR, actor=ADMIN)
    ms = workflow.resubmit(ms.id, actor=AUTHOR, file=file_ref("v2.pdf"), notes="v2")
    assert ms.version_number == len(ms.submission_history) == 2
    assert all(s.manuscript_version_number <= ms.version_number for s in ms.reviewer_submissions)
