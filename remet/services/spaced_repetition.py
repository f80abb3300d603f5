import math
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from remet.core.exceptions import InvalidTimestamp
from remet.core.logging import get_logger
from remet.schemas.scheduler_schema import (
    MAX_EASE_FACTOR,
    MIN_EASE_FACTOR,
    ReviewStatus,
    SchedulerState,
)


logger = get_logger(__name__)

# SM-2 constants
FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6
EASE_BONUS = 0.1
EASE_PENALTY = 0.2


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def record_outcome(
    state: Optional[SchedulerState],
    was_correct: bool,
    now: datetime,
) -> SchedulerState:
    """
    Applies one quiz outcome to an identity's SM-2 state.

    Pure function of the current state, the outcome and the clock. An
    identity without a state yet starts from `SchedulerState.fresh(now)`.

    Args:
        state (Optional[SchedulerState]): Current state, None if never quizzed.
        was_correct (bool): Whether the user named the person correctly.
        now (datetime): Time of the answer.

    Returns:
        SchedulerState: The updated state. The caller persists it.

    Raises:
        InvalidTimestamp: If `now` is earlier than the last recorded review.
            Non-monotonic clocks are rejected rather than clamped.
    """
    if state is None:
        state = SchedulerState.fresh(now)

    if state.last_review_date is not None and now < state.last_review_date:
        raise InvalidTimestamp(
            f"Review at {now.isoformat()} precedes the last review "
            f"at {state.last_review_date.isoformat()}"
        )

    total_attempts = state.total_attempts + 1
    correct_attempts = state.correct_attempts

    if was_correct:
        correct_attempts += 1
        repetitions = state.repetitions + 1

        if repetitions == 1:
            interval = FIRST_INTERVAL_DAYS
        elif repetitions == 2:
            interval = SECOND_INTERVAL_DAYS
        else:
            interval = _round_half_up(state.interval * state.ease_factor)

        ease_factor = min(MAX_EASE_FACTOR, state.ease_factor + EASE_BONUS)
    else:
        repetitions = 0
        interval = FIRST_INTERVAL_DAYS
        ease_factor = max(MIN_EASE_FACTOR, state.ease_factor - EASE_PENALTY)

    return SchedulerState(
        # rounding keeps repeated +0.1 / -0.2 steps from drifting
        ease_factor=round(ease_factor, 4),
        interval=interval,
        repetitions=repetitions,
        next_review_date=now + timedelta(days=interval),
        last_review_date=now,
        total_attempts=total_attempts,
        correct_attempts=correct_attempts,
    )


class SpacedRepetitionScheduler:
    """
    Owns the scheduling state of every identity for one user.

    Updates to a given identity are serialized through a per-identity lock, so
    two quiz sessions can never interleave their read-modify-write of the
    same state. The optional `on_update` hook receives every new state and is
    where the host plugs in its persistence.
    """

    def __init__(
        self,
        states: Optional[dict[str, SchedulerState]] = None,
        on_update: Optional[Callable[[str, SchedulerState], None]] = None,
    ):
        self._states: dict[str, SchedulerState] = dict(states or {})
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.on_update = on_update

    def _lock_for(self, identity_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(identity_id)
            if lock is None:
                lock = self._locks[identity_id] = threading.Lock()
            return lock

    # --- State access ---

    def state_for(self, identity_id: str) -> Optional[SchedulerState]:
        return self._states.get(identity_id)

    def load(self, identity_id: str, state: SchedulerState) -> None:
        """Hydrates a state read from the host's storage."""
        with self._lock_for(identity_id):
            self._states[identity_id] = state

    def forget(self, identity_id: str) -> None:
        """Drops the state of a deleted identity."""
        with self._lock_for(identity_id):
            self._states.pop(identity_id, None)
        with self._registry_lock:
            self._locks.pop(identity_id, None)

    # --- Updates ---

    def record_outcome(
        self,
        identity_id: str,
        was_correct: bool,
        now: datetime,
    ) -> SchedulerState:
        """
        Applies one outcome to an identity and stores the new state.

        The state is created on the first attempt.
        """
        with self._lock_for(identity_id):
            updated = record_outcome(self._states.get(identity_id), was_correct, now)
            self._states[identity_id] = updated

        logger.info(
            f"Review recorded: correct={was_correct} "
            f"interval={updated.interval}d ease={updated.ease_factor:.2f} "
            f"accuracy={updated.accuracy:.2f}",
            extra={"identity_id": identity_id}
        )

        if self.on_update is not None:
            self.on_update(identity_id, updated)

        return updated

    # --- Queries ---

    def review_status(self, identity_id: str, now: datetime) -> ReviewStatus:
        state = self._states.get(identity_id)
        if state is None:
            return ReviewStatus.NEVER_PRACTICED
        if state.needs_review(now):
            return ReviewStatus.DUE
        return ReviewStatus.SCHEDULED

    def is_due(self, identity_id: str, now: datetime) -> bool:
        """
        True when the identity should be reviewed now.

        Identities never practiced count as due.
        """
        return self.review_status(identity_id, now) is not ReviewStatus.SCHEDULED

    def due_identities(self, identity_ids: Iterable[str], now: datetime) -> list[str]:
        """
        Filters identities down to those due for review, most overdue first.

        Never-practiced identities come before everything else; ties keep the
        input order.
        """
        due = [identity_id for identity_id in identity_ids if self.is_due(identity_id, now)]

        def sort_key(identity_id: str):
            state = self._states.get(identity_id)
            if state is None:
                return (0, datetime.min.replace(tzinfo=now.tzinfo))
            return (1, state.next_review_date)

        return sorted(due, key=sort_key)
