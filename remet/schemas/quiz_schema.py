from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class QuizMode(str, Enum):
    """REVIEW quizzes only people due for review, PRACTICE_ALL everyone."""
    REVIEW = "review"
    PRACTICE_ALL = "practice_all"


class QuizTrial(BaseModel):
    """
    One multiple-choice question of a quiz session.

    `chosen` stays None both before the trial is answered and when the user
    answers "I don't know"; `answered` tells the two apart.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    identity_id: str
    correct_name: str
    options: tuple[str, ...]
    face_crop: Any = None
    answered: bool = False
    chosen: Optional[str] = None
    was_correct: Optional[bool] = None
    response_time_ms: Optional[int] = Field(default=None, ge=0)
    skipped: bool = False
    answered_at: Optional[datetime] = None


class QuizSessionStats(BaseModel):
    """Running totals for one quiz session, discarded when it ends."""
    total_attempts: int = Field(default=0, ge=0)
    correct_attempts: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)

    @property
    def accuracy(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.correct_attempts / self.total_attempts
