import random
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from exam_engine.core.config import Settings
from exam_engine.core.database import transaction
from exam_engine.core.errors import ConflictError, ForbiddenError, NotFoundError
from exam_engine.models.orm import (
    Attempt, AttemptMode, AttemptStatus, ConfigDataType, Response, SystemConfig, UserUsage, utcnow,
)
from exam_engine.services.attempts import AttemptConfig, AttemptStore, exam_config
from exam_engine.services.selector import StratifiedSelector
from exam_engine.services.usage import UsageLedger
from tests.factories import seed_questions


def start(db, store, user_id, cfg, mode=AttemptMode.PRACTICE, now=None):
    with transaction(db):
        attempt, resumed = store.start_or_resume(db, user_id, mode, cfg, now=now)
    return attempt, resumed


def response_count(db, attempt_id):
    return db.scalar(select(func.count()).select_from(Response).where(Response.attempt_id == attempt_id))


def test_start_twice_resumes_the_same_attempt(db, store, exam_cfg):
    seed_questions(db)
    first, resumed_first = start(db, store, "u1", exam_cfg)
    second, resumed_second = start(db, store, "u1", exam_cfg)
    assert not resumed_first and resumed_second
    assert first.id == second.id
    assert response_count(db, first.id) == 10


def test_resume_keeps_question_order(db, store, exam_cfg):
    seed_questions(db)
    attempt, _ = start(db, store, "u1", exam_cfg)
    before = [q["question_id"] for q in store.load(db, attempt.id, "u1")["questions"]]
    start(db, store, "u1", exam_cfg)
    after = [q["question_id"] for q in store.load(db, attempt.id, "u1")["questions"]]
    assert before == after


def test_modes_and_users_are_independent(db, store, exam_cfg):
    seed_questions(db)
    practice, _ = start(db, store, "u1", exam_cfg)
    real, _ = start(db, store, "u1", exam_cfg, mode=AttemptMode.REAL_EXAM)
    other, _ = start(db, store, "u2", exam_cfg)
    assert len({practice.id, real.id, other.id}) == 3


def test_anonymous_attempts_are_never_deduplicated(db, store, exam_cfg):
    seed_questions(db)
    a, _ = start(db, store, None, exam_cfg)
    b, _ = start(db, store, None, exam_cfg)
    assert a.id != b.id


def test_concurrent_start_resolves_to_the_winner(db, store, exam_cfg, monkeypatch):
    seed_questions(db)
    winner, _ = start(db, store, "u1", exam_cfg)
    real_find = store.find_active
    calls = []

    def stale_find(session, user_id, mode):
        # First lookup misses the row, as if it was committed after our read.
        calls.append(user_id)
        return None if len(calls) == 1 else real_find(session, user_id, mode)

    monkeypatch.setattr(store, "find_active", stale_find)
    attempt, resumed = start(db, store, "u1", exam_cfg)
    assert resumed
    assert attempt.id == winner.id
    active = db.scalar(select(func.count()).select_from(Attempt).where(Attempt.status == AttemptStatus.IN_PROGRESS))
    assert active == 1


def test_in_progress_view_hides_answers(db, store, exam_cfg):
    seed_questions(db)
    attempt, _ = start(db, store, "u1", exam_cfg)
    view = store.load(db, attempt.id, "u1")
    assert view["attempt"]["status"] == "IN_PROGRESS"
    assert view["attempt"]["test_number"] == 1
    assert 0 < view["attempt"]["remaining_seconds"] <= 3600
    assert [q["position"] for q in view["questions"]] == list(range(10))
    for q in view["questions"]:
        assert set(q["options"]) == {"A", "B", "C", "D"}
        assert "correct_answer" not in q and "is_correct" not in q and "explanation" not in q


def test_test_number_follows_completed_count(db, store, exam_cfg):
    seed_questions(db)
    db.add(UserUsage(user_id="u1", tests_completed=2, tests_remaining=3))
    db.commit()
    attempt, _ = start(db, store, "u1", exam_cfg)
    assert store.load(db, attempt.id, "u1")["attempt"]["test_number"] == 3


def test_load_lazily_initializes_responses_once(db, store):
    seed_questions(db)
    attempt = Attempt(user_id="u1", status=AttemptStatus.IN_PROGRESS, mode=AttemptMode.PRACTICE,
                      total_questions=10, duration_minutes=60, start_time=utcnow())
    db.add(attempt)
    db.commit()
    with transaction(db):
        first = store.load(db, attempt.id, "u1")
    with transaction(db):
        second = store.load(db, attempt.id, "u1")
    assert len(first["questions"]) == 10
    assert [q["response_id"] for q in first["questions"]] == [q["response_id"] for q in second["questions"]]
    assert response_count(db, attempt.id) == 10


def test_ownership_and_missing_attempts(db, store, exam_cfg):
    seed_questions(db)
    attempt, _ = start(db, store, "u1", exam_cfg)
    with pytest.raises(ForbiddenError):
        store.load(db, attempt.id, "u2")
    with pytest.raises(ForbiddenError):
        store.load(db, attempt.id, None)
    with pytest.raises(NotFoundError):
        store.load(db, "missing", "u1")


def test_anonymous_attempt_is_readable_by_id(db, store, exam_cfg):
    seed_questions(db)
    attempt, _ = start(db, store, None, exam_cfg)
    assert store.load(db, attempt.id, "anyone")["attempt"]["id"] == attempt.id


def test_result_requires_completion(db, store, exam_cfg):
    seed_questions(db)
    attempt, _ = start(db, store, "u1", exam_cfg)
    with pytest.raises(ConflictError):
        store.result(db, attempt.id, "u1")
    with transaction(db):
        store.complete(db, attempt.id, "u1")
    review = store.result(db, attempt.id, "u1")
    assert review["attempt"]["status"] == "COMPLETED"
    assert all("correct_answer" in q and "is_correct" in q for q in review["questions"])


def test_expired_attempt_is_finalized_before_a_new_start(db, store, exam_cfg):
    seed_questions(db)
    t0 = utcnow() - timedelta(hours=3)
    old, _ = start(db, store, "u1", exam_cfg, now=t0)
    new, resumed = start(db, store, "u1", exam_cfg, now=t0 + timedelta(minutes=63))
    assert not resumed and new.id != old.id
    finalized = db.get(Attempt, old.id, populate_existing=True)
    assert finalized.status == AttemptStatus.COMPLETED
    assert finalized.score == 0


def test_attempt_within_grace_period_is_resumed(db, store, exam_cfg):
    seed_questions(db)
    t0 = utcnow() - timedelta(hours=3)
    old, _ = start(db, store, "u1", exam_cfg, now=t0)
    again, resumed = start(db, store, "u1", exam_cfg, now=t0 + timedelta(minutes=61))
    assert resumed and again.id == old.id


def test_expire_stale_finalizes_only_overdue_attempts(db, store, exam_cfg):
    seed_questions(db)
    t0 = utcnow() - timedelta(hours=3)
    overdue_a, _ = start(db, store, "u1", exam_cfg, now=t0)
    overdue_b, _ = start(db, store, "u2", exam_cfg, now=t0)
    fresh, _ = start(db, store, "u3", exam_cfg)
    finalized = store.expire_stale(db)
    assert set(finalized) == {overdue_a.id, overdue_b.id}
    assert db.get(Attempt, fresh.id, populate_existing=True).status == AttemptStatus.IN_PROGRESS
    assert store.expire_stale(db) == []


def test_entitlement_is_checked_on_new_attempts_only(db, scoring, exam_cfg):
    seed_questions(db)
    store = AttemptStore(StratifiedSelector(random.Random(1)), scoring, UsageLedger(enforce=True))
    with pytest.raises(ForbiddenError):
        start(db, store, "u1", exam_cfg)
    db.add(UserUsage(user_id="u1", package_purchased=True, tests_completed=0, tests_remaining=1))
    db.commit()
    attempt, _ = start(db, store, "u1", exam_cfg)
    db.execute(UserUsage.__table__.update().values(tests_remaining=0))
    db.commit()
    resumed, was_resumed = start(db, store, "u1", exam_cfg)
    assert was_resumed and resumed.id == attempt.id


def test_insufficient_pool_creates_nothing(db, store, exam_cfg):
    seed_questions(db, easy=2, moderate=3, hard=1)
    with pytest.raises(ConflictError):
        start(db, store, "u1", exam_cfg)
    assert db.scalar(select(func.count()).select_from(Attempt)) == 0


def test_exam_config_reads_system_config_with_defaults(db, config_service):
    defaults = exam_config(config_service, Settings())
    assert defaults == AttemptConfig(total_questions=50, duration_minutes=60, passing_marks=20)
    db.add_all([
        SystemConfig(key="exam_total_questions", value="25", data_type=ConfigDataType.NUMBER),
        SystemConfig(key="exam_passing_percentage", value="50", data_type=ConfigDataType.NUMBER),
    ])
    db.commit()
    config_service.clear()
    cfg = exam_config(config_service, Settings())
    assert (cfg.total_questions, cfg.duration_minutes, cfg.passing_marks) == (25, 60, 13)
