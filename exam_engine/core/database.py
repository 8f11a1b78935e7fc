from contextlib import contextmanager
from typing import Iterator
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from exam_engine.core.config import settings
from exam_engine.core.errors import TransientStorageError

engine = create_engine(settings.DATABASE_URL, future=True, pool_pre_ping=True, echo=settings.DATABASE_ECHO)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any error.

    Connection-level failures surface as TransientStorageError so callers can
    decide whether to retry; everything else propagates unchanged.
    """
    try:
        yield db
        db.commit()
    except OperationalError as e:
        db.rollback()
        raise TransientStorageError(f"Storage unavailable: {e.orig}") from e
    except Exception:
        db.rollback()
        raise


def init_db(bind=None) -> None:
    """Create tables and the number counters used by admission."""
    from exam_engine.models.orm import Base
    from exam_engine.services.admission import seed_counters
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    with Session(bind=bind) as db:
        seed_counters(db)
        db.commit()
