import enum
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Integer, String, Text, Boolean, Date, DateTime, ForeignKey,
    Index, UniqueConstraint, Enum as SQLEnum, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase): pass


class Difficulty(str, enum.Enum):
    EASY = "EASY"
    MODERATE = "MODERATE"
    HARD = "HARD"


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class AttemptMode(str, enum.Enum):
    PRACTICE = "PRACTICE"
    REAL_EXAM = "REAL_EXAM"


class ApplicationStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    ADMIT_CARD_ISSUED = "ADMIT_CARD_ISSUED"
    APPEARED = "APPEARED"
    PASSED = "PASSED"
    FAILED = "FAILED"


class ConfigDataType(str, enum.Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    JSON = "JSON"


def _enum(cls):
    return SQLEnum(cls, native_enum=False, length=32, validate_strings=True)


# ========== Content ==========

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_difficulty_active", "difficulty", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    difficulty: Mapped[Difficulty] = mapped_column(_enum(Difficulty), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    option_a: Mapped[str] = mapped_column(Text, nullable=False)
    option_b: Mapped[str] = mapped_column(Text, nullable=False)
    option_c: Mapped[str] = mapped_column(Text, nullable=False)
    option_d: Mapped[str] = mapped_column(Text, nullable=False)
    correct_answer: Mapped[str] = mapped_column(String(1), nullable=False)
    explanation: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def options(self) -> dict:
        return {"A": self.option_a, "B": self.option_b, "C": self.option_c, "D": self.option_d}


# ========== Delivery ==========

class Attempt(Base):
    __tablename__ = "test_attempts"
    __table_args__ = (
        Index("idx_attempts_user", "user_id"),
        Index("idx_attempts_status", "status"),
        # At most one IN_PROGRESS attempt per (user, mode). NULL user ids never collide.
        Index(
            "uq_attempts_active_per_user_mode", "user_id", "mode", unique=True,
            postgresql_where=text("status = 'IN_PROGRESS'"),
            sqlite_where=text("status = 'IN_PROGRESS'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(255))
    roll_no: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[AttemptStatus] = mapped_column(_enum(AttemptStatus), nullable=False, default=AttemptStatus.IN_PROGRESS)
    mode: Mapped[AttemptMode] = mapped_column(_enum(AttemptMode), nullable=False, default=AttemptMode.PRACTICE)
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    passing_marks: Mapped[Optional[int]] = mapped_column(Integer)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    correct_answers: Mapped[Optional[int]] = mapped_column(Integer)
    score: Mapped[Optional[int]] = mapped_column(Integer)
    is_passed: Mapped[Optional[bool]] = mapped_column(Boolean)

    responses: Mapped[List["Response"]] = relationship(
        back_populates="attempt", order_by="Response.position", cascade="all, delete-orphan"
    )

    def deadline(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)


class Response(Base):
    __tablename__ = "responses"
    __table_args__ = (
        Index("idx_responses_attempt", "attempt_id"),
        UniqueConstraint("attempt_id", "position", name="uq_response_position"),
        UniqueConstraint("attempt_id", "question_id", name="uq_response_question"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    attempt_id: Mapped[str] = mapped_column(String(36), ForeignKey("test_attempts.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("questions.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    user_answer: Mapped[Optional[str]] = mapped_column(String(8))
    is_correct: Mapped[Optional[bool]] = mapped_column(Boolean)
    answered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    attempt: Mapped["Attempt"] = relationship(back_populates="responses")
    question: Mapped["Question"] = relationship()


# ========== Eligibility ==========

class ExamApplication(Base):
    __tablename__ = "exam_applications"
    __table_args__ = (
        Index("idx_applications_user_status", "user_id", "status"),
        UniqueConstraint("application_number", name="uq_application_number"),
        UniqueConstraint("roll_number", name="uq_application_roll_number"),
        UniqueConstraint("test_attempt_id", name="uq_application_attempt"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    application_number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[ApplicationStatus] = mapped_column(_enum(ApplicationStatus), nullable=False, default=ApplicationStatus.DRAFT)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Step 1: personal details
    candidate_name: Mapped[Optional[str]] = mapped_column(String(255))
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date)
    gender: Mapped[Optional[str]] = mapped_column(String(16))
    father_name: Mapped[Optional[str]] = mapped_column(String(255))
    mother_name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    mobile: Mapped[Optional[str]] = mapped_column(String(20))
    alternate_mobile: Mapped[Optional[str]] = mapped_column(String(20))
    photo_url: Mapped[Optional[str]] = mapped_column(Text)
    selfie_url: Mapped[Optional[str]] = mapped_column(Text)

    # Step 2: identity
    pan_number: Mapped[Optional[str]] = mapped_column(String(16))
    name_on_pan: Mapped[Optional[str]] = mapped_column(String(255))
    post_applied: Mapped[str] = mapped_column(String(255), default="REAL ESTATE AGENT EXAM")
    training_institute: Mapped[Optional[str]] = mapped_column(String(255))
    training_cert_no: Mapped[Optional[str]] = mapped_column(String(64))
    is_pwbd: Mapped[bool] = mapped_column(Boolean, default=False)
    pwbd_type: Mapped[Optional[str]] = mapped_column(String(64))
    pwbd_percentage: Mapped[Optional[int]] = mapped_column(Integer)

    # Step 3: address
    corr_address_line1: Mapped[Optional[str]] = mapped_column(Text)
    corr_address_line2: Mapped[Optional[str]] = mapped_column(Text)
    corr_country: Mapped[str] = mapped_column(String(64), default="India")
    corr_state: Mapped[str] = mapped_column(String(64), default="Maharashtra")
    corr_district: Mapped[Optional[str]] = mapped_column(String(64))
    corr_pincode: Mapped[Optional[str]] = mapped_column(String(10))
    same_as_correspondence: Mapped[bool] = mapped_column(Boolean, default=False)
    perm_address_line1: Mapped[Optional[str]] = mapped_column(Text)
    perm_address_line2: Mapped[Optional[str]] = mapped_column(Text)
    perm_country: Mapped[str] = mapped_column(String(64), default="India")
    perm_state: Mapped[str] = mapped_column(String(64), default="Maharashtra")
    perm_district: Mapped[Optional[str]] = mapped_column(String(64))
    perm_pincode: Mapped[Optional[str]] = mapped_column(String(10))

    # Step 4: exam centre
    centre_preference1: Mapped[Optional[str]] = mapped_column(String(128))
    centre_preference2: Mapped[Optional[str]] = mapped_column(String(128))
    centre_preference3: Mapped[Optional[str]] = mapped_column(String(128))

    # Step 5: document references (stored by the file collaborator)
    signature_url: Mapped[Optional[str]] = mapped_column(Text)
    pan_card_url: Mapped[Optional[str]] = mapped_column(Text)
    training_cert_url: Mapped[Optional[str]] = mapped_column(Text)
    pwbd_cert_url: Mapped[Optional[str]] = mapped_column(Text)

    # Step 6: declaration
    declaration_accepted: Mapped[bool] = mapped_column(Boolean, default=False)
    declaration_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Lifecycle
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    roll_number: Mapped[Optional[str]] = mapped_column(String(32))
    seat_number: Mapped[Optional[str]] = mapped_column(String(8))
    admit_card_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(255))
    test_attempt_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("test_attempts.id"))
    exam_attended: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    test_attempt: Mapped[Optional["Attempt"]] = relationship()


class ApplicationLog(Base):
    """Append-only audit trail; rows are never updated or deleted."""
    __tablename__ = "application_logs"
    __table_args__ = (
        Index("idx_application_logs_application", "application_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    application_id: Mapped[str] = mapped_column(String(36), ForeignKey("exam_applications.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    previous_status: Mapped[Optional[ApplicationStatus]] = mapped_column(_enum(ApplicationStatus))
    new_status: Mapped[Optional[ApplicationStatus]] = mapped_column(_enum(ApplicationStatus))
    step_number: Mapped[Optional[int]] = mapped_column(Integer)
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ========== Governance ==========

class SystemConfig(Base):
    __tablename__ = "system_configs"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    data_type: Mapped[ConfigDataType] = mapped_column(_enum(ConfigDataType), nullable=False, default=ConfigDataType.STRING)
    category: Mapped[Optional[str]] = mapped_column(String(50))
    label: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, default=0)


class UserUsage(Base):
    """Package usage owned by the payment collaborator."""
    __tablename__ = "user_usage"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    package_purchased: Mapped[bool] = mapped_column(Boolean, default=False)
    tests_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tests_remaining: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
