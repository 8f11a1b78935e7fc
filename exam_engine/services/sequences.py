from typing import Callable
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from exam_engine.core.errors import TransientStorageError
from exam_engine.models.orm import SequenceCounter

def next_value(db: Session, name: str, seed: Callable[[], int]) -> int:
    """Increment and return the named counter inside the caller's transaction.

    The increment is a single UPDATE, so concurrent callers serialize on the
    counter row and never observe the same value. On first use the counter is
    seeded from ``seed()`` (the number of values already issued).
    """
    res = db.execute(
        update(SequenceCounter).where(SequenceCounter.name == name).values(value=SequenceCounter.value + 1)
    )
    if res.rowcount == 0:
        db.add(SequenceCounter(name=name, value=seed() + 1))
        try:
            db.flush()
        except IntegrityError as e:
            raise TransientStorageError(f"Counter {name} was initialised concurrently, retry") from e
    return db.scalar(select(SequenceCounter.value).where(SequenceCounter.name == name))


def ensure_counter(db: Session, name: str, seed: Callable[[], int]) -> None:
    """Create the named counter at ``seed()`` unless it already exists."""
    if db.get(SequenceCounter, name) is None:
        db.add(SequenceCounter(name=name, value=seed()))
        db.flush()
