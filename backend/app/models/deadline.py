from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class UrgencyTier(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    OVERDUE = "overdue"


class RemainingTime(BaseModel):
    """剩余时间拆分；逾期时 days/hours/minutes 表示已逾期的时长"""

    days: int
    hours: int
    minutes: int
    total_seconds: float
    is_overdue: bool


class DeadlineWindow(BaseModel):
    start: Optional[datetime] = None
    end: datetime
    reviewer_id: Optional[str] = None


class DeadlineView(BaseModel):
    field: str
    start: Optional[datetime] = None
    end: datetime
    remaining: RemainingTime
    urgency: UrgencyTier
