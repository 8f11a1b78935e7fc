import pytest
from sqlalchemy import select, update

from exam_engine.core.database import transaction
from exam_engine.core.errors import NotFoundError
from exam_engine.models.orm import Attempt, AttemptStatus, Response, UserUsage
from exam_engine.services.scoring import percentage
from tests.factories import make_attempt


def score(db, scoring, attempt_id):
    with transaction(db):
        return scoring.score(db, attempt_id)


def test_null_answer_counts_as_incorrect(db, scoring):
    attempt = make_attempt(db, ["A", "A", "B", "C"], ["A", "B", None, "C"])
    result = score(db, scoring, attempt.id)
    assert result.correct_count == 2
    assert result.score == 2
    assert result.total == 4
    assert result.percentage == 50.0
    assert not result.already_scored
    marks = db.scalars(select(Response.is_correct).where(Response.attempt_id == attempt.id)
                       .order_by(Response.position)).all()
    assert marks == [True, False, False, True]


def test_comparison_is_exact(db, scoring):
    attempt = make_attempt(db, ["A", "B"], ["a", "B "])
    assert score(db, scoring, attempt.id).correct_count == 0


def test_scoring_twice_returns_the_stored_result(db, scoring):
    attempt = make_attempt(db, ["A", "B", "C"], ["A", "B", "D"], passing_marks=2)
    first = score(db, scoring, attempt.id)
    # A late write after completion must not be re-scored.
    db.execute(update(Response).where(Response.attempt_id == attempt.id).values(user_answer="C"))
    db.commit()
    second = score(db, scoring, attempt.id)
    assert second.already_scored
    assert (second.correct_count, second.score, second.is_passed) == (first.correct_count, first.score, first.is_passed)
    marks = db.scalars(select(Response.is_correct).where(Response.attempt_id == attempt.id)
                       .order_by(Response.position)).all()
    assert marks == [True, True, False]


def test_pass_flag_uses_passing_marks(db, scoring):
    passed = make_attempt(db, ["A", "B", "C"], ["A", "B", None], passing_marks=2)
    failed = make_attempt(db, ["A", "B", "C"], ["A", None, None], passing_marks=2)
    unset = make_attempt(db, ["A"], ["A"])
    assert score(db, scoring, passed.id).is_passed is True
    assert score(db, scoring, failed.id).is_passed is False
    assert score(db, scoring, unset.id).is_passed is None


def test_completion_sets_status_and_end_time(db, scoring):
    attempt = make_attempt(db, ["A"], [None])
    score(db, scoring, attempt.id)
    stored = db.get(Attempt, attempt.id, populate_existing=True)
    assert stored.status == AttemptStatus.COMPLETED
    assert stored.end_time is not None and stored.end_time >= stored.start_time


def test_usage_is_recorded_once(db, scoring):
    db.add(UserUsage(user_id="u1", package_purchased=True, tests_completed=0, tests_remaining=2))
    db.commit()
    attempt = make_attempt(db, ["A"], ["A"], user_id="u1")
    score(db, scoring, attempt.id)
    score(db, scoring, attempt.id)
    usage = db.get(UserUsage, "u1", populate_existing=True)
    assert (usage.tests_completed, usage.tests_remaining) == (1, 1)


def test_usage_row_is_created_and_floored(db, scoring):
    attempt = make_attempt(db, ["A"], ["A"], user_id="u2")
    score(db, scoring, attempt.id)
    usage = db.get(UserUsage, "u2", populate_existing=True)
    assert (usage.tests_completed, usage.tests_remaining) == (1, 0)
    again = make_attempt(db, ["A"], ["A"], user_id="u2")
    score(db, scoring, again.id)
    usage = db.get(UserUsage, "u2", populate_existing=True)
    assert (usage.tests_completed, usage.tests_remaining) == (2, 0)


def test_anonymous_attempts_do_not_touch_usage(db, scoring):
    attempt = make_attempt(db, ["A"], ["A"])
    score(db, scoring, attempt.id)
    assert db.scalars(select(UserUsage)).all() == []


def test_unknown_attempt(db, scoring):
    with pytest.raises(NotFoundError):
        score(db, scoring, "missing")


def test_percentage():
    assert percentage(2, 4) == 50.0
    assert percentage(1, 3) == 33.33
    assert percentage(0, 0) == 0.0
