"""
Attempt lifecycle: start or resume, load, complete, and expiry.

Store methods run inside the caller's transaction (see
``exam_engine.core.database.transaction``) except ``expire_stale``, which
commits once per expired attempt. Uniqueness races are settled by the storage
layer: the partial unique index on active attempts and the
``(attempt_id, position)`` constraint on responses.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exam_engine.core.config import Settings
from exam_engine.core.database import transaction
from exam_engine.core.errors import ConflictError, ForbiddenError, NotFoundError
from exam_engine.models.orm import Attempt, AttemptMode, AttemptStatus, Question, Response, utcnow
from exam_engine.services.scoring import ScoreResult, ScoringEngine, percentage
from exam_engine.services.selector import Quotas, StratifiedSelector
from exam_engine.services.system_config import (
    ConfigService, EXAM_DURATION_MINUTES, EXAM_PASSING_PERCENTAGE, EXAM_TOTAL_QUESTIONS,
)
from exam_engine.services.usage import UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class AttemptConfig:
    total_questions: int
    duration_minutes: int
    passing_marks: Optional[int] = None
    quotas: Optional[Quotas] = None


def exam_config(config: ConfigService, settings: Settings) -> AttemptConfig:
    total = config.get_or_default(EXAM_TOTAL_QUESTIONS, settings.DEFAULT_TOTAL_QUESTIONS)
    duration = config.get_or_default(EXAM_DURATION_MINUTES, settings.DEFAULT_DURATION_MINUTES)
    pass_pct = config.get_or_default(EXAM_PASSING_PERCENTAGE, settings.DEFAULT_PASSING_PERCENTAGE)
    return AttemptConfig(total_questions=total, duration_minutes=duration, passing_marks=math.ceil(total * pass_pct / 100))


class AttemptStore:
    def __init__(self, selector: StratifiedSelector, scoring: ScoringEngine, usage: UsageLedger,
                 expiry_grace_seconds: int = 120):
        self.selector = selector
        self.scoring = scoring
        self.usage = usage
        self.grace = timedelta(seconds=expiry_grace_seconds)

    # ----- lookups -----

    def get_owned(self, db: Session, attempt_id: str, user_id: Optional[str]) -> Attempt:
        attempt = db.get(Attempt, attempt_id, populate_existing=True)
        if attempt is None:
            raise NotFoundError("Attempt not found")
        if attempt.user_id is not None and attempt.user_id != user_id:
            raise ForbiddenError("Attempt belongs to another user")
        return attempt

    def find_active(self, db: Session, user_id: str, mode: AttemptMode) -> Optional[Attempt]:
        return db.scalar(
            select(Attempt)
            .where(Attempt.user_id == user_id, Attempt.mode == mode, Attempt.status == AttemptStatus.IN_PROGRESS)
            .with_for_update()
        )

    def is_expired(self, attempt: Attempt, now: datetime) -> bool:
        return now > attempt.deadline() + self.grace

    def responses(self, db: Session, attempt_id: str) -> List[Tuple[Response, Question]]:
        return list(db.execute(
            select(Response, Question)
            .join(Question, Question.id == Response.question_id)
            .where(Response.attempt_id == attempt_id)
            .order_by(Response.position)
            .execution_options(populate_existing=True)
        ).tuples())

    # ----- lifecycle -----

    def start_or_resume(self, db: Session, user_id: Optional[str], mode: AttemptMode, config: AttemptConfig,
                        roll_no: Optional[str] = None, check_entitlement: bool = True,
                        now: Optional[datetime] = None) -> Tuple[Attempt, bool]:
        """Return ``(attempt, resumed)``.

        A user's unexpired IN_PROGRESS attempt of the same mode is returned as is,
        without reselecting questions. Anonymous callers always get a new attempt.
        """
        now = now or utcnow()
        if user_id is not None:
            active = self.find_active(db, user_id, mode)
            if active is not None:
                if not self.is_expired(active, now):
                    logger.info(f"Resuming attempt {active.id} for user {user_id}")
                    return active, True
                logger.info(f"Attempt {active.id} passed its deadline, finalizing before a new start")
                self.scoring.score(db, active.id, now=now)
            if check_entitlement and not self.usage.may_start(db, user_id):
                raise ForbiddenError("No tests remaining in your package")

        questions = self.selector.select(db, config.total_questions, config.quotas)
        attempt = Attempt(
            user_id=user_id, roll_no=roll_no, status=AttemptStatus.IN_PROGRESS, mode=mode,
            total_questions=config.total_questions, duration_minutes=config.duration_minutes,
            passing_marks=config.passing_marks, start_time=now,
        )
        db.add(attempt)
        try:
            db.flush()
        except IntegrityError:
            # A concurrent request created the active attempt first; resume it.
            db.rollback()
            winner = self.find_active(db, user_id, mode) if user_id is not None else None
            if winner is None:
                raise
            logger.info(f"Concurrent start for user {user_id}, resuming {winner.id}")
            return winner, True
        self._insert_responses(db, attempt, questions)
        logger.info(f"Started {mode.value} attempt {attempt.id} with {len(questions)} questions")
        return attempt, False

    def _insert_responses(self, db: Session, attempt: Attempt, questions: List[Question]) -> None:
        db.add_all([
            Response(attempt_id=attempt.id, question_id=q.id, position=i)
            for i, q in enumerate(questions)
        ])
        db.flush()

    def _initialize_responses(self, db: Session, attempt: Attempt) -> List[Tuple[Response, Question]]:
        questions = self.selector.select(db, attempt.total_questions)
        attempt_id = attempt.id
        try:
            self._insert_responses(db, attempt, questions)
        except IntegrityError:
            # Another load initialized the same attempt; keep its set.
            db.rollback()
            logger.info(f"Attempt {attempt_id} was initialized concurrently, reusing its questions")
        return self.responses(db, attempt_id)

    def load(self, db: Session, attempt_id: str, user_id: Optional[str], now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        attempt = self.get_owned(db, attempt_id, user_id)
        rows = self.responses(db, attempt.id)
        if attempt.status == AttemptStatus.COMPLETED:
            return review_view(attempt, rows)
        if not rows:
            rows = self._initialize_responses(db, attempt)
            attempt = self.get_owned(db, attempt_id, user_id)
        completed = self.usage.tests_completed(db, attempt.user_id)
        return in_progress_view(attempt, rows, now, test_number=completed + 1)

    def result(self, db: Session, attempt_id: str, user_id: Optional[str]) -> dict:
        attempt = self.get_owned(db, attempt_id, user_id)
        if attempt.status != AttemptStatus.COMPLETED:
            raise ConflictError("Attempt has not been submitted yet")
        return review_view(attempt, self.responses(db, attempt.id))

    def complete(self, db: Session, attempt_id: str, user_id: Optional[str], now: Optional[datetime] = None) -> ScoreResult:
        self.get_owned(db, attempt_id, user_id)
        return self.scoring.score(db, attempt_id, now=now)

    def expire_stale(self, db: Session, now: Optional[datetime] = None) -> List[str]:
        """Finalize every IN_PROGRESS attempt whose deadline plus grace has passed."""
        now = now or utcnow()
        candidates = db.scalars(select(Attempt).where(Attempt.status == AttemptStatus.IN_PROGRESS)).all()
        expired = [a.id for a in candidates if self.is_expired(a, now)]
        finalized: List[str] = []
        for attempt_id in expired:
            try:
                with transaction(db):
                    result = self.scoring.score(db, attempt_id, now=now)
            except Exception:
                logger.exception(f"Failed to finalize expired attempt {attempt_id}")
                continue
            if not result.already_scored:
                finalized.append(attempt_id)
        logger.info(f"Expiry sweep finalized {len(finalized)} of {len(expired)} overdue attempts")
        return finalized


# ----- views -----

def _question_payload(response: Response, question: Question) -> dict:
    return {
        "response_id": response.id,
        "question_id": question.id,
        "position": response.position,
        "text": question.text,
        "options": question.options(),
        "user_answer": response.user_answer,
    }


def in_progress_view(attempt: Attempt, rows: List[Tuple[Response, Question]], now: datetime,
                     test_number: int = 1) -> dict:
    remaining = (attempt.deadline() - now).total_seconds()
    return {
        "attempt": {
            "id": attempt.id,
            "status": attempt.status.value,
            "mode": attempt.mode.value,
            "start_time": attempt.start_time,
            "deadline": attempt.deadline(),
            "remaining_seconds": max(0, int(remaining)),
            "expired": remaining <= 0,
            "duration_minutes": attempt.duration_minutes,
            "total_questions": attempt.total_questions,
            "test_number": test_number,
        },
        "questions": [_question_payload(r, q) for r, q in rows],
    }


def review_view(attempt: Attempt, rows: List[Tuple[Response, Question]]) -> dict:
    score = attempt.score or 0
    questions = []
    for r, q in rows:
        item = _question_payload(r, q)
        item.update(correct_answer=q.correct_answer, explanation=q.explanation, is_correct=bool(r.is_correct))
        questions.append(item)
    return {
        "attempt": {
            "id": attempt.id,
            "status": attempt.status.value,
            "mode": attempt.mode.value,
            "start_time": attempt.start_time,
            "end_time": attempt.end_time,
            "duration_minutes": attempt.duration_minutes,
            "total_questions": attempt.total_questions,
            "correct_answers": attempt.correct_answers or 0,
            "score": score,
            "percentage": percentage(score, attempt.total_questions),
            "passing_marks": attempt.passing_marks,
            "is_passed": attempt.is_passed,
        },
        "questions": questions,
    }
