from datetime import timedelta

import numpy as np
import pytest

from remet.schemas.quiz_schema import QuizMode
from remet.schemas.scheduler_schema import SchedulerState
from remet.services.quiz_session import QuizSession, build_quiz_pool
from remet.services.spaced_repetition import SpacedRepetitionScheduler
from tests.mocks import make_identity


def _people(count: int) -> list:
    rng = np.random.default_rng(seed=7)
    return [
        make_identity(f"Person {i}", [rng.standard_normal(8)], identity_id=f"p{i}")
        for i in range(count)
    ]


class _Timer:
    """Monotonic timer the test advances by hand."""

    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestBuildQuizPool:

    def test_excludes_self_and_identities_without_samples(self):
        people = _people(2)
        me = make_identity("Me", [np.ones(8)], is_self=True)
        empty = make_identity("Nobody", [])

        pool = build_quiz_pool(people + [me, empty])
        assert [p.display_name for p in pool] == ["Person 0", "Person 1"]

    def test_include_self(self):
        me = make_identity("Me", [np.ones(8)], is_self=True)
        assert build_quiz_pool([me], include_self=True) == [me]


class TestQuizSession:
    """Tests for QuizSession."""

    def test_falls_back_to_full_pool_when_nobody_is_due(self, fixed_now, seeded_rng):
        """Four identities, none due: every one of them is quizzed."""
        people = _people(4)
        scheduler = SpacedRepetitionScheduler({
            p.identity_id: SchedulerState(
                next_review_date=fixed_now + timedelta(days=3),
                interval=3, repetitions=1,
            )
            for p in people
        })

        session = QuizSession(people, scheduler, rng=seeded_rng, clock=lambda: fixed_now)

        assert session.fell_back_to_full_pool
        assert sorted(t.identity_id for t in session.trials) == ["p0", "p1", "p2", "p3"]

    def test_review_mode_keeps_only_due_identities(self, fixed_now, seeded_rng):
        people = _people(4)
        scheduler = SpacedRepetitionScheduler({
            "p0": SchedulerState(next_review_date=fixed_now + timedelta(days=3), interval=3, repetitions=1),
            "p1": SchedulerState(next_review_date=fixed_now + timedelta(days=3), interval=3, repetitions=1),
            "p2": SchedulerState(next_review_date=fixed_now - timedelta(days=1), interval=1, repetitions=1),
        })

        session = QuizSession(people, scheduler, rng=seeded_rng, clock=lambda: fixed_now)

        assert not session.fell_back_to_full_pool
        assert sorted(t.identity_id for t in session.trials) == ["p2", "p3"]

    def test_practice_all_ignores_schedule(self, fixed_now, seeded_rng):
        people = _people(3)
        scheduler = SpacedRepetitionScheduler({
            p.identity_id: SchedulerState(next_review_date=fixed_now + timedelta(days=3), interval=3, repetitions=1)
            for p in people
        })

        session = QuizSession(people, scheduler, mode=QuizMode.PRACTICE_ALL, rng=seeded_rng)
        assert len(session.trials) == 3
        assert not session.fell_back_to_full_pool

    def test_options_are_distinct_and_contain_the_answer(self, seeded_rng):
        session = QuizSession(_people(6), SpacedRepetitionScheduler(), rng=seeded_rng)

        for trial in session.trials:
            assert trial.correct_name in trial.options
            assert len(trial.options) == 4
            assert len(set(trial.options)) == len(trial.options)

    def test_small_pool_uses_available_distractors(self, seeded_rng):
        session = QuizSession(_people(2), SpacedRepetitionScheduler(), rng=seeded_rng)

        for trial in session.trials:
            assert len(trial.options) == 2

    def test_single_identity_has_only_the_answer(self, seeded_rng):
        session = QuizSession(_people(1), SpacedRepetitionScheduler(), rng=seeded_rng)
        assert session.current_trial.options == ("Person 0",)

    def test_trial_crop_comes_from_the_identity(self, seeded_rng):
        session = QuizSession(_people(3), SpacedRepetitionScheduler(), rng=seeded_rng)

        for trial in session.trials:
            name = trial.correct_name
            assert trial.face_crop.startswith(f"{name}-crop-")

    def test_answer_records_outcome_and_latency(self, fixed_now, seeded_rng):
        scheduler = SpacedRepetitionScheduler()
        timer = _Timer()
        session = QuizSession(
            _people(4), scheduler, rng=seeded_rng, clock=lambda: fixed_now, timer=timer,
        )
        trial = session.current_trial

        timer.now += 1.25
        completed = session.answer(trial.correct_name)

        assert completed.was_correct is True
        assert completed.response_time_ms == 1250
        assert completed.answered_at == fixed_now
        assert scheduler.state_for(trial.identity_id).correct_attempts == 1
        assert session.stats.total_attempts == 1
        assert session.stats.correct_attempts == 1

    def test_wrong_answer_is_incorrect(self, seeded_rng):
        scheduler = SpacedRepetitionScheduler()
        session = QuizSession(_people(4), scheduler, rng=seeded_rng)
        trial = session.current_trial
        wrong = next(o for o in trial.options if o != trial.correct_name)

        completed = session.answer(wrong)

        assert completed.was_correct is False
        assert scheduler.state_for(trial.identity_id).repetitions == 0

    def test_dont_know_counts_as_incorrect(self, seeded_rng):
        scheduler = SpacedRepetitionScheduler()
        session = QuizSession(_people(4), scheduler, rng=seeded_rng)
        trial = session.current_trial

        completed = session.dont_know()

        assert completed.answered
        assert completed.chosen is None
        assert completed.was_correct is False
        assert scheduler.state_for(trial.identity_id).total_attempts == 1

    def test_skip_does_not_touch_the_scheduler(self, seeded_rng):
        scheduler = SpacedRepetitionScheduler()
        session = QuizSession(_people(4), scheduler, rng=seeded_rng)
        trial = session.current_trial

        skipped = session.skip()

        assert skipped.skipped
        assert scheduler.state_for(trial.identity_id) is None
        assert session.stats.skipped == 1
        assert session.stats.total_attempts == 0

    def test_unknown_choice_is_rejected(self, seeded_rng):
        session = QuizSession(_people(4), SpacedRepetitionScheduler(), rng=seeded_rng)

        with pytest.raises(ValueError):
            session.answer("Somebody Else")

    def test_session_runs_to_completion(self, seeded_rng):
        session = QuizSession(_people(3), SpacedRepetitionScheduler(), rng=seeded_rng)

        while not session.is_finished:
            session.answer(session.current_trial.correct_name)

        summary = session.summary()
        assert summary.total_attempts == 3
        assert summary.accuracy == 1.0
        assert session.remaining == 0

        with pytest.raises(RuntimeError):
            session.answer(None)

    def test_end_stops_early(self, seeded_rng):
        session = QuizSession(_people(3), SpacedRepetitionScheduler(), rng=seeded_rng)
        session.answer(session.current_trial.correct_name)

        stats = session.end()

        assert stats.total_attempts == 1
        assert session.is_finished
        assert session.current_trial is None

    def test_summary_is_read_only(self, seeded_rng):
        session = QuizSession(_people(3), SpacedRepetitionScheduler(), rng=seeded_rng)
        session.dont_know()

        assert session.summary() == session.summary()
        assert session.stats.accuracy == 0.0

    def test_empty_pool_is_finished(self):
        session = QuizSession([], SpacedRepetitionScheduler())
        assert session.is_finished
        assert session.trials == ()
