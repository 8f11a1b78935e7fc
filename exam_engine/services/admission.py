"""
Exam applications: stepwise intake, submission, admission and the linked
real-exam attempt.

Each public ``ApplicationService`` method owns its transaction. Status changes
go through ``ApplicationStateMachine``; what happens right after a submit is
decided by the configured ``AdmissionPolicy``.
"""
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from exam_engine.core.database import transaction
from exam_engine.core.errors import ConflictError, EngineError, ForbiddenError, NotFoundError, ValidationError
from exam_engine.models.orm import (
    ApplicationLog, ApplicationStatus, Attempt, AttemptMode, AttemptStatus, ExamApplication, utcnow,
)
from exam_engine.services.attempts import AttemptConfig, AttemptStore
from exam_engine.services.sequences import ensure_counter, next_value
from exam_engine.services.state_machine import ApplicationStateMachine, allowed_events

logger = logging.getLogger(__name__)

AUTO_APPROVER = "SYSTEM_AUTO_APPROVE"
MAX_STEP = 6
RECENT_LOGS = 10

REQUIRED_FIELDS = [
    ("candidate_name", "Candidate name"),
    ("date_of_birth", "Date of birth"),
    ("gender", "Gender"),
    ("father_name", "Father's name"),
    ("mother_name", "Mother's name"),
    ("email", "Email"),
    ("mobile", "Mobile number"),
    ("pan_number", "PAN number"),
    ("name_on_pan", "Name on PAN"),
    ("training_institute", "Training institute"),
    ("training_cert_no", "Training certificate number"),
    ("corr_address_line1", "Correspondence address"),
    ("corr_district", "District"),
    ("corr_pincode", "Pincode"),
    ("centre_preference1", "Exam centre preference"),
    ("declaration_accepted", "Declaration"),
]

INTAKE_FIELDS = frozenset({
    "candidate_name", "date_of_birth", "gender", "father_name", "mother_name", "email", "mobile",
    "alternate_mobile", "photo_url", "selfie_url",
    "pan_number", "name_on_pan", "post_applied", "training_institute", "training_cert_no",
    "is_pwbd", "pwbd_type", "pwbd_percentage",
    "corr_address_line1", "corr_address_line2", "corr_country", "corr_state", "corr_district", "corr_pincode",
    "same_as_correspondence",
    "perm_address_line1", "perm_address_line2", "perm_country", "perm_state", "perm_district", "perm_pincode",
    "centre_preference1", "centre_preference2", "centre_preference3",
    "signature_url", "pan_card_url", "training_cert_url", "pwbd_cert_url",
    "declaration_accepted",
})

UPPERCASE_FIELDS = ("candidate_name", "pan_number")

ADDRESS_PARTS = ("address_line1", "address_line2", "country", "state", "district", "pincode")


def missing_fields(application: ExamApplication) -> list:
    return [label for field, label in REQUIRED_FIELDS if not getattr(application, field)]


def apply_intake(application: ExamApplication, payload: Dict[str, Any]) -> None:
    """Copy intake fields onto the application; ``None`` leaves a field unchanged."""
    for field, value in payload.items():
        if field not in INTAKE_FIELDS or value is None:
            continue
        if field in UPPERCASE_FIELDS and isinstance(value, str):
            value = value.upper()
        setattr(application, field, value)
    if application.same_as_correspondence:
        for part in ADDRESS_PARTS:
            value = getattr(application, f"corr_{part}")
            if value is not None:
                setattr(application, f"perm_{part}", value)
    if application.declaration_accepted and application.declaration_date is None:
        application.declaration_date = utcnow()


# ----- number counters -----

ROLL_NUMBER_COUNTER = "roll_number"


def application_counter(year: int) -> str:
    return f"application_number:{year}"


def application_number_seed(db: Session, year: int) -> int:
    return db.scalar(
        select(func.count()).select_from(ExamApplication)
        .where(ExamApplication.application_number.like(f"EM{year}%"))
    )


def roll_number_seed(db: Session) -> int:
    return db.scalar(
        select(func.count()).select_from(ExamApplication).where(ExamApplication.roll_number.is_not(None))
    )


def seed_counters(db: Session, year: Optional[int] = None) -> None:
    """Create the roll and application number counters ahead of the first request."""
    year = year or utcnow().year
    ensure_counter(db, ROLL_NUMBER_COUNTER, lambda: roll_number_seed(db))
    ensure_counter(db, application_counter(year), lambda: application_number_seed(db, year))


# ----- admission policies -----

class AdmissionPolicy:
    name = "base"

    def on_submitted(self, service: "ApplicationService", db: Session, application: ExamApplication) -> None:
        raise NotImplementedError


class AutoAdmissionPolicy(AdmissionPolicy):
    """Issue the admit card right after submission."""
    name = "auto"

    def on_submitted(self, service, db, application):
        service.issue_admit_card(db, application, actor=AUTO_APPROVER, action="auto_approved")


class ManualAdmissionPolicy(AdmissionPolicy):
    """Leave the application in SUBMITTED until an admin admits it."""
    name = "manual"

    def on_submitted(self, service, db, application):
        logger.info(f"Application {application.application_number} awaiting manual review")


POLICIES = {p.name: p for p in (AutoAdmissionPolicy, ManualAdmissionPolicy)}


def build_policy(name: str) -> AdmissionPolicy:
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(f"Unknown admission policy: {name}")


# ----- service -----

class ApplicationService:
    def __init__(
        self,
        store: AttemptStore,
        state_machine: ApplicationStateMachine,
        policy: AdmissionPolicy,
        exam_config: Callable[[], AttemptConfig],
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.state_machine = state_machine
        self.policy = policy
        self.exam_config = exam_config
        self.rng = rng or random.SystemRandom()

    def _get(self, db: Session, application_id: str, lock: bool = False) -> ExamApplication:
        application = db.get(ExamApplication, application_id, with_for_update=lock, populate_existing=True)
        if application is None:
            raise NotFoundError("Application not found")
        return application

    def _owned(self, db: Session, user_id: str, application_id: str, lock: bool = False) -> ExamApplication:
        application = self._get(db, application_id, lock=lock)
        if application.user_id != user_id:
            raise ForbiddenError("Application belongs to another user")
        return application

    def get_current_draft(self, db: Session, user_id: str) -> Optional[ExamApplication]:
        return db.scalar(
            select(ExamApplication)
            .where(ExamApplication.user_id == user_id,
                   ExamApplication.status.in_([ApplicationStatus.DRAFT, ApplicationStatus.SUBMITTED]))
            .order_by(ExamApplication.updated_at.desc())
            .limit(1)
        )

    def latest(self, db: Session, user_id: str) -> Optional[ExamApplication]:
        return db.scalar(
            select(ExamApplication)
            .where(ExamApplication.user_id == user_id)
            .order_by(ExamApplication.created_at.desc())
            .limit(1)
        )

    # ----- intake -----

    def save_draft(self, db: Session, user_id: str, payload: Dict[str, Any],
                   application_id: Optional[str] = None, step: Optional[int] = None) -> ExamApplication:
        """Create a draft, or update the caller's existing draft.

        Without ``application_id`` an existing DRAFT of the user is updated
        instead of opening a second one.
        """
        if step is not None and not 1 <= step <= MAX_STEP:
            raise ValidationError(f"Step must be between 1 and {MAX_STEP}")
        with transaction(db):
            if application_id is None:
                application = db.scalar(
                    select(ExamApplication)
                    .where(ExamApplication.user_id == user_id, ExamApplication.status == ApplicationStatus.DRAFT)
                    .with_for_update()
                    .limit(1)
                )
                if application is None:
                    application = self._create(db, user_id, payload, step or 1)
                    return application
            else:
                application = self._owned(db, user_id, application_id, lock=True)
            self._update(db, user_id, application, payload, step)
        return application

    def _create(self, db: Session, user_id: str, payload: Dict[str, Any], step: int) -> ExamApplication:
        number = self._issue_application_number(db)
        application = ExamApplication(user_id=user_id, application_number=number, status=ApplicationStatus.DRAFT,
                                      current_step=step)
        apply_intake(application, payload)
        db.add(application)
        db.flush()
        db.add(ApplicationLog(
            application_id=application.id, action="created", description=f"Application {number} created",
            new_status=ApplicationStatus.DRAFT, step_number=step, performed_by=user_id,
        ))
        db.flush()
        logger.info(f"Application {number} created for user {user_id}")
        return application

    def _update(self, db: Session, user_id: str, application: ExamApplication, payload: Dict[str, Any],
                step: Optional[int]) -> None:
        if application.status != ApplicationStatus.DRAFT:
            raise ConflictError("Cannot modify a submitted application")
        previous_step = application.current_step
        apply_intake(application, payload)
        if step is not None:
            application.current_step = max(step, previous_step)
            if step != previous_step:
                db.add(ApplicationLog(
                    application_id=application.id, action="step_completed",
                    description=f"Completed step {previous_step}, moved to step {step}",
                    step_number=step, performed_by=user_id,
                ))
        db.flush()

    def _issue_application_number(self, db: Session) -> str:
        year = utcnow().year
        number = next_value(db, application_counter(year), lambda: application_number_seed(db, year))
        return f"EM{year}{number:06d}"

    def _issue_roll_number(self, db: Session) -> str:
        return f"MR{utcnow().year}{next_value(db, ROLL_NUMBER_COUNTER, lambda: roll_number_seed(db)):06d}"

    # ----- lifecycle -----

    def submit(self, db: Session, user_id: str, application_id: str) -> ExamApplication:
        with transaction(db):
            application = self._owned(db, user_id, application_id, lock=True)
            if application.status != ApplicationStatus.DRAFT:
                raise ConflictError(f"Application already {application.status.value.lower()}")
            missing = missing_fields(application)
            if missing:
                raise ValidationError("Please complete all required fields", details=missing)
            self.state_machine.transition(
                db, application, "submit", actor=user_id,
                description=f"Application {application.application_number} submitted for review",
                submitted_at=utcnow(), current_step=MAX_STEP,
            )

        try:
            with transaction(db):
                self.policy.on_submitted(self, db, self._get(db, application_id, lock=True))
        except (EngineError, SQLAlchemyError) as e:
            logger.error(f"Admission policy {self.policy.name} failed for application {application_id}: {e}")
        return self._get(db, application_id)

    def issue_admit_card(self, db: Session, application: ExamApplication, actor: str,
                         action: str = "approved") -> ExamApplication:
        """SUBMITTED -> ADMIT_CARD_ISSUED inside the caller's transaction."""
        if application.roll_number is not None:
            raise ConflictError(f"Application {application.application_number} already has a roll number")
        if "admit" not in allowed_events(application.status):
            raise ConflictError(f"Cannot admit application in status {application.status.value}")
        roll_number = self._issue_roll_number(db)
        now = utcnow()
        return self.state_machine.transition(
            db, application, "admit", actor=actor, action=action,
            description=f"Admit card issued with roll number {roll_number}",
            roll_number=roll_number,
            seat_number=f"S{self.rng.randint(1, 100):03d}",
            admit_card_generated=True,
            reviewed_at=now,
            reviewed_by=actor,
        )

    def admit(self, db: Session, application_id: str, actor: str) -> ExamApplication:
        with transaction(db):
            application = self.issue_admit_card(db, self._get(db, application_id, lock=True), actor=actor)
        return application

    def start_attempt(self, db: Session, user_id: str, application_id: str,
                      now: Optional[datetime] = None) -> Tuple[Attempt, bool]:
        """Start the real-exam attempt for an admitted application, or resume it."""
        with transaction(db):
            application = self._owned(db, user_id, application_id, lock=True)
            if application.test_attempt_id is not None:
                linked = db.get(Attempt, application.test_attempt_id, populate_existing=True)
                if linked.status == AttemptStatus.IN_PROGRESS:
                    return linked, True
                raise ConflictError("Exam already completed for this application")
            if application.status != ApplicationStatus.ADMIT_CARD_ISSUED:
                raise ConflictError("Admit card has not been issued for this application")

            attempt, resumed = self.store.start_or_resume(
                db, user_id, AttemptMode.REAL_EXAM, self.exam_config(),
                roll_no=application.roll_number, check_entitlement=False, now=now,
            )
            if resumed:
                owner = db.scalar(select(ExamApplication.id).where(ExamApplication.test_attempt_id == attempt.id))
                if owner is not None and owner != application_id:
                    raise ConflictError("An exam attempt is already in progress for another application")
            application = self._get(db, application_id)
            self.state_machine.transition(
                db, application, "start_attempt", actor=user_id,
                description=f"Exam started with {attempt.total_questions} questions",
                test_attempt_id=attempt.id, exam_attended=True,
            )
        return attempt, resumed

    def status(self, db: Session, user_id: str, application_id: Optional[str] = None) -> Dict[str, Any]:
        if application_id is None:
            application = self.latest(db, user_id)
            if application is None:
                raise NotFoundError("No application found")
        else:
            application = self._owned(db, user_id, application_id)
        logs = db.scalars(
            select(ApplicationLog)
            .where(ApplicationLog.application_id == application.id)
            .order_by(ApplicationLog.created_at.desc(), ApplicationLog.id.desc())
            .limit(RECENT_LOGS)
        ).all()
        attempt = db.get(Attempt, application.test_attempt_id, populate_existing=True) if application.test_attempt_id else None
        return {
            "application": application,
            "logs": list(logs),
            "attempt": attempt,
            "allowed_events": allowed_events(application.status),
        }
