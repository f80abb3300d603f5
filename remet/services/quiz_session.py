import random
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from remet.core.config import settings
from remet.core.logging import get_logger
from remet.models.identity import Identity
from remet.schemas.quiz_schema import QuizMode, QuizSessionStats, QuizTrial
from remet.services.spaced_repetition import SpacedRepetitionScheduler


logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_quiz_pool(
    identities: Iterable[Identity],
    include_self: bool = False,
) -> list[Identity]:
    """
    Keeps the identities that can be quizzed: at least one face sample, and
    not the user's own profile unless `include_self` is set.
    """
    return [
        identity for identity in identities
        if identity.has_samples and (include_self or not identity.is_self)
    ]


class QuizSession:
    """
    Drives one "who is this?" quiz session.

    The trial order is shuffled once, at construction, and never changes.
    Each trial offers the correct name plus up to `max_distractors` other
    distinct names from the pool, in shuffled order. Every answer (including
    "I don't know") is forwarded to the scheduler; a skipped trial is only
    marked as passed over.

    Args:
        pool: Quizzable identities (see `build_quiz_pool`).
        scheduler: Receives one outcome per answered trial.
        mode: REVIEW restricts trials to identities due for review, falling
            back to the whole pool when nobody is due.
        rng: Source of randomness; pass a seeded `random.Random` in tests.
        clock: Returns the wall-clock time recorded with each outcome.
        timer: Monotonic seconds used to measure response latency.
    """

    def __init__(
        self,
        pool: Sequence[Identity],
        scheduler: SpacedRepetitionScheduler,
        mode: QuizMode = QuizMode.REVIEW,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
        timer: Callable[[], float] = time.monotonic,
        max_distractors: int = settings.QUIZ_MAX_DISTRACTORS,
    ):
        self.scheduler = scheduler
        self.mode = mode
        self.max_distractors = max_distractors
        self._rng = rng or random.Random()
        self._clock = clock
        self._timer = timer

        self.pool = [identity for identity in pool if identity.has_samples]
        self.fell_back_to_full_pool = False

        selected = self._select_identities(clock())
        self._rng.shuffle(selected)

        self._trials: list[QuizTrial] = [self._build_trial(identity) for identity in selected]
        self._index = 0
        self._ended = False
        self._stats = QuizSessionStats()
        self._presented_at = timer()

        logger.info(
            f"Quiz session started: mode={mode.value} trials={len(self._trials)} "
            f"pool={len(self.pool)} fallback={self.fell_back_to_full_pool}"
        )

    # --- Construction helpers ---

    def _select_identities(self, now: datetime) -> list[Identity]:
        if self.mode is QuizMode.PRACTICE_ALL:
            return list(self.pool)

        due_ids = set(self.scheduler.due_identities(
            (identity.identity_id for identity in self.pool), now
        ))
        due = [identity for identity in self.pool if identity.identity_id in due_ids]

        if not due:
            self.fell_back_to_full_pool = True
            return list(self.pool)

        return due

    def _build_trial(self, identity: Identity) -> QuizTrial:
        other_names = []
        for other in self.pool:
            name = other.display_name
            if other.identity_id == identity.identity_id or name == identity.display_name:
                continue
            if name not in other_names:
                other_names.append(name)

        count = min(self.max_distractors, len(other_names))
        options = self._rng.sample(other_names, count) + [identity.display_name]
        self._rng.shuffle(options)

        crop = self._rng.choice(identity.samples).face_crop if identity.samples else None

        return QuizTrial(
            identity_id=identity.identity_id,
            correct_name=identity.display_name,
            options=tuple(options),
            face_crop=crop,
        )

    # --- Read access ---

    @property
    def trials(self) -> tuple[QuizTrial, ...]:
        return tuple(self._trials)

    @property
    def current_trial(self) -> Optional[QuizTrial]:
        if self.is_finished:
            return None
        return self._trials[self._index]

    @property
    def is_finished(self) -> bool:
        return self._ended or self._index >= len(self._trials)

    @property
    def remaining(self) -> int:
        if self._ended:
            return 0
        return max(0, len(self._trials) - self._index)

    @property
    def stats(self) -> QuizSessionStats:
        return self._stats.model_copy()

    def summary(self) -> QuizSessionStats:
        """End-of-session statistics. Reading them changes nothing."""
        return self.stats

    # --- Events ---

    def answer(self, choice: Optional[str]) -> QuizTrial:
        """
        Records the user's pick for the current trial and moves on.

        Args:
            choice: One of the presented names, or None for "I don't know".

        Returns:
            QuizTrial: The completed trial.

        Raises:
            RuntimeError: If the session is already finished.
            ValueError: If `choice` is not one of the presented options.
        """
        trial = self._require_current()

        if choice is not None and choice not in trial.options:
            raise ValueError(f"'{choice}' is not one of the presented options")

        response_time_ms = max(0, int(round((self._timer() - self._presented_at) * 1000)))
        now = self._clock()
        was_correct = choice == trial.correct_name

        self.scheduler.record_outcome(trial.identity_id, was_correct, now)

        completed = trial.model_copy(update={
            "answered": True,
            "chosen": choice,
            "was_correct": was_correct,
            "response_time_ms": response_time_ms,
            "answered_at": now,
        })
        self._trials[self._index] = completed

        self._stats = self._stats.model_copy(update={
            "total_attempts": self._stats.total_attempts + 1,
            "correct_attempts": self._stats.correct_attempts + int(was_correct),
        })

        logger.debug(
            f"Trial {self._index + 1}/{len(self._trials)} answered "
            f"correct={was_correct} in {response_time_ms}ms",
            extra={"identity_id": trial.identity_id}
        )

        self._advance()
        return completed

    def dont_know(self) -> QuizTrial:
        """Explicit "I don't know": counts as an incorrect answer."""
        return self.answer(None)

    def skip(self) -> QuizTrial:
        """Passes over the current trial without recording an outcome."""
        trial = self._require_current()

        skipped = trial.model_copy(update={"skipped": True})
        self._trials[self._index] = skipped
        self._stats = self._stats.model_copy(update={"skipped": self._stats.skipped + 1})

        self._advance()
        return skipped

    def end(self) -> QuizSessionStats:
        """Stops the session early and returns its statistics."""
        self._ended = True
        logger.info(
            f"Quiz session ended: {self._stats.correct_attempts}/"
            f"{self._stats.total_attempts} correct"
        )
        return self.summary()

    def _require_current(self) -> QuizTrial:
        trial = self.current_trial
        if trial is None:
            raise RuntimeError("The quiz session has no trial left")
        return trial

    def _advance(self) -> None:
        self._index += 1
        self._presented_at = self._timer()
