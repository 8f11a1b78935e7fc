import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from exam_engine.core.errors import NotFoundError
from exam_engine.models.orm import (
    Attempt, AttemptStatus, ApplicationStatus, ExamApplication, Question, Response, utcnow,
)
from exam_engine.services.state_machine import ApplicationStateMachine
from exam_engine.services.usage import UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class ScoreResult:
    attempt_id: str
    correct_count: int
    score: int
    total: int
    percentage: float
    is_passed: Optional[bool]
    already_scored: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


def percentage(score: int, total: int) -> float:
    return round(score * 100.0 / total, 2) if total else 0.0


def stored_result(attempt: Attempt, already_scored: bool = True) -> ScoreResult:
    correct = attempt.correct_answers or 0
    return ScoreResult(
        attempt_id=attempt.id,
        correct_count=correct,
        score=attempt.score or 0,
        total=attempt.total_questions,
        percentage=percentage(attempt.score or 0, attempt.total_questions),
        is_passed=attempt.is_passed,
        already_scored=already_scored,
    )


class ScoringEngine:
    def __init__(self, usage: UsageLedger, state_machine: ApplicationStateMachine):
        self.usage = usage
        self.state_machine = state_machine

    def score(self, db: Session, attempt_id: str, now: Optional[datetime] = None) -> ScoreResult:
        """Score an attempt at most once; must run inside one transaction.

        The status flip is claimed first with a conditional UPDATE. A caller that
        loses the claim returns the stored result and writes nothing.
        """
        now = now or utcnow()
        claimed = db.execute(
            update(Attempt)
            .where(Attempt.id == attempt_id, Attempt.status == AttemptStatus.IN_PROGRESS)
            .values(status=AttemptStatus.COMPLETED, end_time=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        attempt = db.get(Attempt, attempt_id, populate_existing=True)
        if attempt is None:
            raise NotFoundError("Attempt not found")
        if not claimed:
            return stored_result(attempt)

        rows = db.execute(
            select(Response, Question.correct_answer)
            .join(Question, Question.id == Response.question_id)
            .where(Response.attempt_id == attempt_id)
            .order_by(Response.position)
            .execution_options(populate_existing=True)
        ).all()
        correct = 0
        for response, correct_answer in rows:
            response.is_correct = response.user_answer is not None and response.user_answer == correct_answer
            correct += int(response.is_correct)

        attempt.correct_answers = correct
        attempt.score = correct
        attempt.is_passed = correct >= attempt.passing_marks if attempt.passing_marks is not None else None
        self.usage.record_completion(db, attempt.user_id)
        self._advance_application(db, attempt)
        db.flush()
        logger.info(f"Attempt {attempt.id} scored {correct}/{attempt.total_questions}")
        return stored_result(attempt, already_scored=False)

    def _advance_application(self, db: Session, attempt: Attempt) -> None:
        application = db.scalar(select(ExamApplication).where(ExamApplication.test_attempt_id == attempt.id))
        if application is None or application.status != ApplicationStatus.APPEARED:
            return
        event = "pass" if attempt.is_passed else "fail"
        self.state_machine.transition(
            db, application, event, actor="SYSTEM",
            description=f"Scored {attempt.score}/{attempt.total_questions}",
        )
