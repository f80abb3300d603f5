from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


DEFAULT_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
MAX_EASE_FACTOR = 2.5

SECONDS_PER_DAY = 86400


class ReviewStatus(str, Enum):
    """Where an identity stands in the review cycle."""
    NEVER_PRACTICED = "never_practiced"
    DUE = "due"
    SCHEDULED = "scheduled"


class SchedulerState(BaseModel):
    """
    Per-identity SM-2 bookkeeping.

    Instances are immutable; the scheduler's update function returns a new
    state for every quiz outcome and the host persists it.
    """
    model_config = ConfigDict(frozen=True)

    ease_factor: float = Field(
        default=DEFAULT_EASE_FACTOR,
        ge=MIN_EASE_FACTOR,
        le=MAX_EASE_FACTOR,
        description="Interval growth multiplier"
    )
    interval: int = Field(default=0, ge=0, description="Days until the next review")
    repetitions: int = Field(default=0, ge=0, description="Consecutive correct answers")
    next_review_date: datetime
    last_review_date: Optional[datetime] = None
    total_attempts: int = Field(default=0, ge=0)
    correct_attempts: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_counters(self) -> "SchedulerState":
        if self.correct_attempts > self.total_attempts:
            raise ValueError(
                f"correct_attempts ({self.correct_attempts}) cannot exceed "
                f"total_attempts ({self.total_attempts})"
            )
        if self.repetitions >= 1 and self.interval < 1:
            raise ValueError("interval must be at least 1 day once repetitions >= 1")
        return self

    @classmethod
    def fresh(cls, now: datetime) -> "SchedulerState":
        """State of an identity that has never been quizzed, due immediately."""
        return cls(next_review_date=now)

    @property
    def accuracy(self) -> float:
        """Share of correct attempts in [0, 1]; 0 before the first attempt."""
        if self.total_attempts == 0:
            return 0.0
        return self.correct_attempts / self.total_attempts

    def needs_review(self, now: datetime) -> bool:
        return self.next_review_date <= now

    def days_until_review(self, now: datetime) -> int:
        """Whole days until the next review; negative when overdue."""
        seconds = (self.next_review_date - now).total_seconds()
        # int() truncates toward zero, matching calendar day differences
        return int(seconds / SECONDS_PER_DAY)


def review_label(days_until_review: int) -> str:
    """Short status text used in review lists."""
    if days_until_review < 0:
        return f"{abs(days_until_review)}d overdue"
    if days_until_review == 0:
        return "Due today"
    return f"In {days_until_review}d"
