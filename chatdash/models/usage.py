"""
chatdash/models/usage.py

Monthly message usage models.
"""

from datetime import datetime
from typing import Union
from pydantic import BaseModel, ConfigDict


class UsagePeriod(BaseModel):
    """Calendar-month window, inclusive on both ends."""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime


class UsageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    count: int
    period_start: datetime
    period_end: datetime
    created_at: datetime
    updated_at: datetime


class UsageDecision(BaseModel):
    """
    Outcome of a message-send attempt.

    A rejection (allowed=False) is a normal result, not an error.
    remaining is math.inf for unbounded plans.
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    remaining: Union[int, float]
