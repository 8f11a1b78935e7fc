from typing import List
from sqlalchemy import select
from sqlalchemy.orm import Session
from exam_engine.models.orm import Question, Difficulty

def fetch_by_difficulty(db: Session, tier: Difficulty) -> List[Question]:
    """All active questions of one tier. Order is not meaningful; an empty list is valid."""
    return list(db.scalars(select(Question).where(Question.difficulty == tier, Question.is_active.is_(True))))