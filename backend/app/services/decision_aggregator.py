from __future__ import annotations

from collections import Counter
from typing import Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from app.models.manuscript import (
    InvitationStatus,
    Manuscript,
    ReviewDecision,
    ReviewerAssignment,
    ReviewerDecisionRecord,
)


class DecisionSummary(BaseModel):
    """
    审稿建议汇总（仅供管理员参考）。

    中文注释:
    - 这里只回答“是否所有在岗审稿人都已给出建议”，以及建议的多重集合；
    - 不挑选“胜出”的结论：最终结局由管理员人工裁决。
    """

    all_decided: bool
    active_reviewer_ids: list[str] = Field(default_factory=list)
    decisions: dict[str, ReviewDecision] = Field(default_factory=dict)
    waiting_on: list[str] = Field(default_factory=list)
    counts: dict[ReviewDecision, int] = Field(default_factory=dict)


def aggregate_decisions(
    decision_meta: Mapping[str, ReviewerDecisionRecord],
    assigned_reviewers: Sequence[str],
    *,
    assignment_meta: Optional[Mapping[str, ReviewerAssignment]] = None,
    version_number: Optional[int] = None,
) -> DecisionSummary:
    active: list[str] = []
    for rid in dict.fromkeys(assigned_reviewers):
        meta = (assignment_meta or {}).get(rid)
        if meta is not None and meta.invitation_status == InvitationStatus.DECLINED:
            continue
        active.append(rid)

    decided: dict[str, ReviewDecision] = {}
    waiting: list[str] = []
    for rid in active:
        record = decision_meta.get(rid)
        if record is None:
            waiting.append(rid)
            continue
        if version_number is not None and record.manuscript_version_number != version_number:
            waiting.append(rid)
            continue
        decided[rid] = record.decision

    all_decided = bool(active) and not waiting
    counts = dict(Counter(decided.values())) if all_decided else {}
    return DecisionSummary(
        all_decided=all_decided,
        active_reviewer_ids=active,
        decisions=decided,
        waiting_on=waiting,
        counts=counts,
    )


def summarize(ms: Manuscript) -> DecisionSummary:
    return aggregate_decisions(
        ms.reviewer_decision_meta,
        ms.assigned_reviewers,
        assignment_meta=ms.assigned_reviewers_meta,
        version_number=ms.version_number,
    )
