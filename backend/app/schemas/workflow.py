from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from app.models.manuscript import FileRef, FinalOutcome, ReviewDecision


def _aware(v: Optional[datetime]) -> Optional[datetime]:
    # 前端偶尔传不带时区的时间，统一按 UTC 处理
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class ManuscriptSubmit(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    file: FileRef
    co_author_ids: list[str] = Field(default_factory=list)
    notes: str = Field(default="", max_length=5000)


class ManuscriptResubmit(BaseModel):
    file: FileRef
    revision_notes: str = Field(..., min_length=1, max_length=10000)


class ManuscriptDecisionNote(BaseModel):
    note: str = Field(default="", max_length=5000)


class ReviewerAssignRequest(BaseModel):
    reviewer_ids: list[str] = Field(..., min_length=1)
    deadline: Optional[datetime] = None

    @field_validator("deadline")
    @classmethod
    def deadline_as_utc(cls, v):
        return _aware(v)


class ReviewerDeadlineUpdate(BaseModel):
    deadline: datetime
    reminder_enabled: Optional[bool] = None
    reminder_days_before: Optional[int] = Field(default=None, ge=0, le=30)

    @field_validator("deadline")
    @classmethod
    def deadline_as_utc(cls, v):
        return _aware(v)


class FinalDecisionRequest(BaseModel):
    outcome: FinalOutcome
    note: str = Field(default="", max_length=5000)


class InvitationResponse(BaseModel):
    accept: bool


class ReviewSubmitRequest(BaseModel):
    decision: ReviewDecision
    comment: str = Field(..., min_length=1, max_length=20000)
    review_file: Optional[FileRef] = None
