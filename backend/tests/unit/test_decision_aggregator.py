from __future__ import annotations

from app.models.manuscript import InvitationStatus, ReviewDecision, ReviewerAssignment, ReviewerDecisionRecord
from app.services.decision_aggregator import aggregate_decisions
from tests.utils.factories import ADMIN, R1, R2, R3, T0


def _rec(decision: ReviewDecision, version: int = 1) -> ReviewerDecisionRecord:
    return ReviewerDecisionRecord(decision=decision, decided_at=T0, manuscript_version_number=version)


def test_all_decided_with_counts():
    summary = aggregate_decisions(
        {R1: _rec(ReviewDecision.MINOR), R2: _rec(ReviewDecision.MINOR), R3: _rec(ReviewDecision.REJECT)},
        [R1, R2, R3],
    )
    assert summary.all_decided is True
    assert summary.waiting_on == []
    assert summary.counts == {ReviewDecision.MINOR: 2, ReviewDecision.REJECT: 1}


def test_waiting_on_reviewers_without_decision():
    summary = aggregate_decisions({R1: _rec(ReviewDecision.PUBLICATION)}, [R1, R2])
    assert summary.all_decided is False
    assert summary.waiting_on == [R2]
    assert summary.decisions == {R1: ReviewDecision.PUBLICATION}
    assert summary.counts == {}


def test_empty_roster_is_not_all_decided():
    summary = aggregate_decisions({R1: _rec(ReviewDecision.MINOR)}, [])
    assert summary.all_decided is False
    assert summary.active_reviewer_ids == []


def test_decisions_from_other_reviewers_are_ignored():
    # 已撤销审稿人的历史建议不应出现在汇总中
    summary = aggregate_decisions({R1: _rec(ReviewDecision.MAJOR), R3: _rec(ReviewDecision.REJECT)}, [R1])
    assert summary.all_decided is True
    assert summary.decisions == {R1: ReviewDecision.MAJOR}


def test_declined_and_stale_version_handling():
    meta = {
        R1: ReviewerAssignment(assigned_at=T0, assigned_by=ADMIN),
        R2: ReviewerAssignment(assigned_at=T0, assigned_by=ADMIN, invitation_status=InvitationStatus.DECLINED),
    }
    summary = aggregate_decisions(
        {R1: _rec(ReviewDecision.MAJOR, version=1)},
        [R1, R2],
        assignment_meta=meta,
        version_number=2,
    )
    assert summary.active_reviewer_ids == [R1]
    assert summary.all_decided is False
    assert summary.waiting_on == [R1]
