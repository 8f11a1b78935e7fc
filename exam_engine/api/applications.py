from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.orm import Session

from exam_engine.api.deps import get_application_service
from exam_engine.core.auth import TokenData, get_current_user
from exam_engine.core.database import get_db
from exam_engine.models.orm import ApplicationStatus, AttemptStatus
from exam_engine.services.admission import ApplicationService

router = APIRouter()


class ApplicationFields(BaseModel):
    # Step 1: personal details
    candidate_name: Optional[str] = Field(default=None, max_length=255)
    date_of_birth: Optional[date] = None
    gender: Optional[str] = Field(default=None, max_length=16)
    father_name: Optional[str] = Field(default=None, max_length=255)
    mother_name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[EmailStr] = None
    mobile: Optional[str] = Field(default=None, max_length=20)
    alternate_mobile: Optional[str] = Field(default=None, max_length=20)
    photo_url: Optional[str] = None
    selfie_url: Optional[str] = None
    # Step 2: identity
    pan_number: Optional[str] = Field(default=None, max_length=16)
    name_on_pan: Optional[str] = Field(default=None, max_length=255)
    post_applied: Optional[str] = Field(default=None, max_length=255)
    training_institute: Optional[str] = Field(default=None, max_length=255)
    training_cert_no: Optional[str] = Field(default=None, max_length=64)
    is_pwbd: Optional[bool] = None
    pwbd_type: Optional[str] = Field(default=None, max_length=64)
    pwbd_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    # Step 3: address
    corr_address_line1: Optional[str] = None
    corr_address_line2: Optional[str] = None
    corr_country: Optional[str] = Field(default=None, max_length=64)
    corr_state: Optional[str] = Field(default=None, max_length=64)
    corr_district: Optional[str] = Field(default=None, max_length=64)
    corr_pincode: Optional[str] = Field(default=None, max_length=10)
    same_as_correspondence: Optional[bool] = None
    perm_address_line1: Optional[str] = None
    perm_address_line2: Optional[str] = None
    perm_country: Optional[str] = Field(default=None, max_length=64)
    perm_state: Optional[str] = Field(default=None, max_length=64)
    perm_district: Optional[str] = Field(default=None, max_length=64)
    perm_pincode: Optional[str] = Field(default=None, max_length=10)
    # Step 4: exam centre
    centre_preference1: Optional[str] = Field(default=None, max_length=128)
    centre_preference2: Optional[str] = Field(default=None, max_length=128)
    centre_preference3: Optional[str] = Field(default=None, max_length=128)
    # Step 5: documents
    signature_url: Optional[str] = None
    pan_card_url: Optional[str] = None
    training_cert_url: Optional[str] = None
    pwbd_cert_url: Optional[str] = None
    # Step 6: declaration
    declaration_accepted: Optional[bool] = None

class ApplicationDraft(ApplicationFields):
    application_id: Optional[str] = None
    current_step: Optional[int] = Field(default=None, ge=1, le=6)

class ApplicationUpdate(ApplicationDraft):
    application_id: str

class ApplicationOut(ApplicationFields):
    model_config = ConfigDict(from_attributes=True)

    id: str
    application_number: str
    status: ApplicationStatus
    current_step: int
    declaration_date: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    roll_number: Optional[str] = None
    seat_number: Optional[str] = None
    admit_card_generated: bool = False
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    test_attempt_id: Optional[str] = None
    exam_attended: bool = False
    created_at: datetime
    updated_at: datetime

class CurrentApplication(BaseModel):
    application: Optional[ApplicationOut] = None

class DraftSaved(BaseModel):
    application_id: str
    application_number: str
    current_step: int
    message: str

class SubmitApplication(BaseModel):
    application_id: str

class SubmitResult(BaseModel):
    application_id: str
    application_number: str
    status: ApplicationStatus
    roll_number: Optional[str] = None
    seat_number: Optional[str] = None
    message: str

class LogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    description: Optional[str] = None
    previous_status: Optional[ApplicationStatus] = None
    new_status: Optional[ApplicationStatus] = None
    step_number: Optional[int] = None
    performed_by: str
    created_at: datetime

class AttemptSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: AttemptStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    total_questions: int
    correct_answers: Optional[int] = None
    score: Optional[int] = None
    is_passed: Optional[bool] = None

class ApplicationStatusOut(BaseModel):
    application: ApplicationOut
    logs: List[LogOut]
    attempt: Optional[AttemptSummary] = None
    allowed_events: List[str]

class SessionStart(BaseModel):
    application_id: str

class SessionStarted(BaseModel):
    attempt_id: str
    resumed: bool
    roll_number: Optional[str] = None
    total_questions: int
    duration_minutes: int


def _intake(payload: ApplicationDraft) -> dict:
    return payload.model_dump(exclude={"application_id", "current_step"}, exclude_none=True)

def _saved(application, message: str) -> DraftSaved:
    return DraftSaved(application_id=application.id, application_number=application.application_number,
                      current_step=application.current_step, message=message)


@router.get("/apply", response_model=CurrentApplication)
def get_application(user: TokenData = Depends(get_current_user), db: Session = Depends(get_db),
                    service: ApplicationService = Depends(get_application_service)):
    return CurrentApplication(application=service.get_current_draft(db, user.sub))

@router.post("/apply", response_model=DraftSaved)
def create_application(payload: ApplicationDraft, user: TokenData = Depends(get_current_user),
                       db: Session = Depends(get_db), service: ApplicationService = Depends(get_application_service)):
    application = service.save_draft(db, user.sub, _intake(payload), application_id=payload.application_id,
                                     step=payload.current_step)
    return _saved(application, "Application saved successfully")

@router.put("/apply", response_model=DraftSaved)
def update_application(payload: ApplicationUpdate, user: TokenData = Depends(get_current_user),
                       db: Session = Depends(get_db), service: ApplicationService = Depends(get_application_service)):
    application = service.save_draft(db, user.sub, _intake(payload), application_id=payload.application_id,
                                     step=payload.current_step)
    return _saved(application, "Application saved successfully")

@router.post("/apply/submit", response_model=SubmitResult)
def submit_application(payload: SubmitApplication, user: TokenData = Depends(get_current_user),
                       db: Session = Depends(get_db), service: ApplicationService = Depends(get_application_service)):
    application = service.submit(db, user.sub, payload.application_id)
    if application.status == ApplicationStatus.ADMIT_CARD_ISSUED:
        message = "Application approved. Your admit card has been issued."
    else:
        message = "Application submitted for review"
    return SubmitResult(application_id=application.id, application_number=application.application_number,
                        status=application.status, roll_number=application.roll_number,
                        seat_number=application.seat_number, message=message)

@router.get("/status", response_model=ApplicationStatusOut)
def application_status(id: Optional[str] = Query(default=None), user: TokenData = Depends(get_current_user),
                       db: Session = Depends(get_db), service: ApplicationService = Depends(get_application_service)):
    return service.status(db, user.sub, id)

@router.post("/session/start", response_model=SessionStarted)
def start_exam_session(payload: SessionStart, user: TokenData = Depends(get_current_user),
                       db: Session = Depends(get_db), service: ApplicationService = Depends(get_application_service)):
    attempt, resumed = service.start_attempt(db, user.sub, payload.application_id)
    return SessionStarted(attempt_id=attempt.id, resumed=resumed, roll_number=attempt.roll_no,
                          total_questions=attempt.total_questions, duration_minutes=attempt.duration_minutes)
