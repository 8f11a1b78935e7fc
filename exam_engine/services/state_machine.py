"""
Application lifecycle as an explicit transition table.

    DRAFT --submit--> SUBMITTED --admit--> ADMIT_CARD_ISSUED
          --start_attempt--> APPEARED --pass|fail--> PASSED | FAILED

Every transition is a conditional UPDATE keyed on the source status plus one
audit log row, both in the caller's transaction.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from exam_engine.core.errors import ConflictError, ValidationError
from exam_engine.models.orm import ApplicationLog, ApplicationStatus, ExamApplication

logger = logging.getLogger(__name__)

S = ApplicationStatus


@dataclass(frozen=True)
class Transition:
    source: ApplicationStatus
    target: ApplicationStatus
    action: str


TRANSITIONS: Dict[str, Transition] = {
    "submit": Transition(S.DRAFT, S.SUBMITTED, "submitted"),
    "admit": Transition(S.SUBMITTED, S.ADMIT_CARD_ISSUED, "approved"),
    "start_attempt": Transition(S.ADMIT_CARD_ISSUED, S.APPEARED, "exam_started"),
    "pass": Transition(S.APPEARED, S.PASSED, "result_passed"),
    "fail": Transition(S.APPEARED, S.FAILED, "result_failed"),
}


def allowed_events(status: ApplicationStatus) -> List[str]:
    return [event for event, t in TRANSITIONS.items() if t.source == status]


class ApplicationStateMachine:
    def transition(
        self,
        db: Session,
        application: ExamApplication,
        event: str,
        actor: str,
        description: Optional[str] = None,
        action: Optional[str] = None,
        **changes,
    ) -> ExamApplication:
        t = TRANSITIONS.get(event)
        if t is None:
            raise ValidationError(f"Unknown application event: {event}")
        if application.status != t.source:
            raise ConflictError(
                f"Cannot {event} application in status {application.status.value}",
                details=[{"expected": t.source.value, "actual": application.status.value}],
            )
        res = db.execute(
            update(ExamApplication)
            .where(ExamApplication.id == application.id, ExamApplication.status == t.source)
            .values(status=t.target, **changes)
        )
        if res.rowcount == 0:
            # Lost a race with another request that already moved the row on.
            raise ConflictError(f"Application {application.application_number} changed concurrently, cannot {event}")
        db.add(ApplicationLog(
            application_id=application.id,
            action=action or t.action,
            description=description,
            previous_status=t.source,
            new_status=t.target,
            performed_by=actor,
        ))
        db.flush()
        db.refresh(application)
        logger.info(f"Application {application.application_number}: {t.source.value} -> {t.target.value} by {actor}")
        return application
