from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ManuscriptStatus(str, Enum):
    """
    稿件生命周期状态（封闭枚举）。

    中文注释:
    - 存储值与前端展示文案一致（如 "Back to Admin"），避免双向映射。
    - 所有流转都必须命中 `allowed_next` 的显式转移表。
    """

    PENDING = "Pending"
    ACCEPTED = "Accepted"
    ASSIGNING_PEER_REVIEWER = "Assigning Peer Reviewer"
    PEER_REVIEWER_ASSIGNED = "Peer Reviewer Assigned"
    PEER_REVIEWER_REVIEWING = "Peer Reviewer Reviewing"
    BACK_TO_ADMIN = "Back to Admin"
    FOR_REVISION_MINOR = "For Revision (Minor)"
    FOR_REVISION_MAJOR = "For Revision (Major)"
    FOR_PUBLICATION = "For Publication"
    REJECTED = "Rejected"
    PEER_REVIEWER_REJECTED = "Peer Reviewer Rejected"
    NON_ACCEPTANCE = "Non-Acceptance"

    @classmethod
    def allowed_next(cls, current: "ManuscriptStatus | str") -> frozenset["ManuscriptStatus"]:
        status = normalize_status(current)
        if status is None:
            return frozenset()
        return _TRANSITIONS[status]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_revision(self) -> bool:
        return self in REVISION_STATUSES


_S = ManuscriptStatus

# 外审循环内的四个状态之间由“重算”驱动，可互相流转（不回退到 Accepted）。
REVIEW_LOOP_STATUSES: frozenset[ManuscriptStatus] = frozenset(
    {
        _S.ASSIGNING_PEER_REVIEWER,
        _S.PEER_REVIEWER_ASSIGNED,
        _S.PEER_REVIEWER_REVIEWING,
        _S.BACK_TO_ADMIN,
    }
)

# 可以指派/撤销审稿人的状态
REVIEW_PHASE_STATUSES: frozenset[ManuscriptStatus] = REVIEW_LOOP_STATUSES | {_S.ACCEPTED}

REVISION_STATUSES: frozenset[ManuscriptStatus] = frozenset({_S.FOR_REVISION_MINOR, _S.FOR_REVISION_MAJOR})

TERMINAL_STATUSES: frozenset[ManuscriptStatus] = frozenset(
    {_S.FOR_PUBLICATION, _S.REJECTED, _S.PEER_REVIEWER_REJECTED, _S.NON_ACCEPTANCE}
)

ADMIN_DECISION_STATUSES: frozenset[ManuscriptStatus] = REVISION_STATUSES | frozenset(
    {_S.FOR_PUBLICATION, _S.REJECTED, _S.PEER_REVIEWER_REJECTED}
)

_TRANSITIONS: dict[ManuscriptStatus, frozenset[ManuscriptStatus]] = {
    _S.PENDING: frozenset({_S.ACCEPTED, _S.NON_ACCEPTANCE}),
    _S.ACCEPTED: frozenset({_S.ASSIGNING_PEER_REVIEWER}),
    _S.ASSIGNING_PEER_REVIEWER: REVIEW_LOOP_STATUSES - {_S.ASSIGNING_PEER_REVIEWER},
    _S.PEER_REVIEWER_ASSIGNED: REVIEW_LOOP_STATUSES - {_S.PEER_REVIEWER_ASSIGNED},
    _S.PEER_REVIEWER_REVIEWING: REVIEW_LOOP_STATUSES - {_S.PEER_REVIEWER_REVIEWING},
    _S.BACK_TO_ADMIN: (REVIEW_LOOP_STATUSES - {_S.BACK_TO_ADMIN}) | ADMIN_DECISION_STATUSES,
    _S.FOR_REVISION_MINOR: frozenset({_S.ASSIGNING_PEER_REVIEWER}),
    _S.FOR_REVISION_MAJOR: frozenset({_S.PEER_REVIEWER_ASSIGNED}),
    _S.FOR_PUBLICATION: frozenset(),
    _S.REJECTED: frozenset(),
    _S.PEER_REVIEWER_REJECTED: frozenset(),
    _S.NON_ACCEPTANCE: frozenset(),
}

# 转移表必须覆盖全部状态（新增枚举成员时 import 即失败）
_missing = set(ManuscriptStatus) - set(_TRANSITIONS)
if _missing:
    raise RuntimeError(f"transition table missing statuses: {sorted(s.value for s in _missing)}")


def normalize_status(value: ManuscriptStatus | str | None) -> ManuscriptStatus | None:
    if value is None:
        return None
    if isinstance(value, ManuscriptStatus):
        return value
    v = str(value).strip()
    if not v:
        return None
    try:
        return ManuscriptStatus(v)
    except ValueError:
        pass
    # 兼容大小写不一致的历史数据
    lowered = v.lower()
    for member in ManuscriptStatus:
        if member.value.lower() == lowered:
            return member
    return None


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class ReviewDecision(str, Enum):
    """审稿人给出的建议（不直接决定稿件结局）"""

    MINOR = "minor"
    MAJOR = "major"
    PUBLICATION = "publication"
    REJECT = "reject"


class FinalOutcome(str, Enum):
    """管理员在 Back to Admin 阶段的最终裁决"""

    MINOR = "minor"
    MAJOR = "major"
    PUBLICATION = "publication"
    REJECTED = "rejected"
    PEER_REVIEWER_REJECTED = "peer_reviewer_rejected"

    @property
    def status(self) -> ManuscriptStatus:
        return _OUTCOME_STATUS[self]


_OUTCOME_STATUS: dict[FinalOutcome, ManuscriptStatus] = {
    FinalOutcome.MINOR: ManuscriptStatus.FOR_REVISION_MINOR,
    FinalOutcome.MAJOR: ManuscriptStatus.FOR_REVISION_MAJOR,
    FinalOutcome.PUBLICATION: ManuscriptStatus.FOR_PUBLICATION,
    FinalOutcome.REJECTED: ManuscriptStatus.REJECTED,
    FinalOutcome.PEER_REVIEWER_REJECTED: ManuscriptStatus.PEER_REVIEWER_REJECTED,
}


class FileRef(BaseModel):
    """
    对象存储返回的文件引用；工作流只保存/转发，不处理字节流。
    """

    url: str = Field(..., min_length=1)
    name: str = ""
    type: str = ""
    size: int = Field(0, ge=0)
    path: str = ""


class ReviewerAssignment(BaseModel):
    invitation_status: InvitationStatus = InvitationStatus.PENDING
    assigned_at: datetime
    assigned_by: str
    responded_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    reminder_enabled: bool = True
    reminder_days_before: int = Field(2, ge=0)
    is_re_review: bool = False
    assigned_version: int = 1
    # 已针对哪个 deadline 发过提醒（deadline 变化后允许再次提醒）
    last_reminded_for: Optional[datetime] = None


class ReviewerDecisionRecord(BaseModel):
    decision: ReviewDecision
    decided_at: datetime
    manuscript_version_number: int


class ReviewerSubmission(BaseModel):
    model_config = ConfigDict(frozen=True)

    reviewer_id: str
    manuscript_version_number: int
    decision: ReviewDecision
    comment: str
    review_file: Optional[FileRef] = None
    completed_at: datetime
    status: Literal["Completed"] = "Completed"


class ReviewRoundSnapshot(BaseModel):
    """某一版本外审结束时的审稿人名单与建议（冻结副本，后续改派不影响历史归属）"""

    model_config = ConfigDict(frozen=True)

    version_number: int
    reviewers: list[str] = Field(default_factory=list)
    decisions: dict[str, ReviewDecision] = Field(default_factory=dict)


class SubmissionVersion(BaseModel):
    model_config = ConfigDict(frozen=True)

    version_number: int
    file: FileRef
    submitted_by: str
    submitted_at: datetime
    revision_notes: str = ""
    reviewed_round: Optional[ReviewRoundSnapshot] = None


class StatusHistoryEntry(BaseModel):
    status: ManuscriptStatus
    note: str = ""
    changed_by: str
    timestamp: datetime


class OutboxEvent(BaseModel):
    """与稿件状态写入同一次原子提交的待投递事件"""

    id: str
    type: Literal["status_changed"] = "status_changed"
    from_status: ManuscriptStatus
    to_status: ManuscriptStatus
    occurred_at: datetime
    attempts: int = 0


class Manuscript(BaseModel):
    """
    稿件聚合根：审稿人指派/决定/提交等元数据全部内嵌在同一文档中，
    以单文档 compare-and-set 保证“名单 + 状态”一次性原子写入。
    """

    id: str
    title: str
    status: ManuscriptStatus = ManuscriptStatus.PENDING
    version_number: int = 1
    submitter_id: str
    co_author_ids: list[str] = Field(default_factory=list)
    file: Optional[FileRef] = None

    assigned_reviewers: list[str] = Field(default_factory=list)
    assigned_reviewers_meta: dict[str, ReviewerAssignment] = Field(default_factory=dict)
    reviewer_decision_meta: dict[str, ReviewerDecisionRecord] = Field(default_factory=dict)
    reviewer_submissions: list[ReviewerSubmission] = Field(default_factory=list)
    submission_history: list[SubmissionVersion] = Field(default_factory=list)
    previous_reviewers: list[str] = Field(default_factory=list)
    previous_reviewers_meta: dict[str, ReviewerAssignment] = Field(default_factory=dict)

    invitation_deadline: Optional[datetime] = None
    review_deadline: Optional[datetime] = None
    revision_deadline: Optional[datetime] = None
    finalization_deadline: Optional[datetime] = None

    submitted_at: Optional[datetime] = None
    resubmitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    final_decision_by: Optional[str] = None
    final_decision_at: Optional[datetime] = None

    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    outbox: list[OutboxEvent] = Field(default_factory=list)

    # compare-and-set 令牌：每次写入 +1
    revision: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Manuscript":
        # PostgREST 对空 json 列返回 null，这里统一丢弃让默认值生效
        cleaned = {k: v for k, v in (row or {}).items() if v is not None and k in cls.model_fields}
        return cls.model_validate(cleaned)

    def to_row(self) -> dict[str, Any]:
        row = self.model_dump(mode="json")
        row["outbox_pending"] = bool(self.outbox)
        return row
