import logging
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from exam_engine.core.database import transaction
from exam_engine.core.errors import ForbiddenError, NotFoundError
from exam_engine.models.orm import Attempt, Response, utcnow

logger = logging.getLogger(__name__)

def normalize_answer(answer: Optional[str]) -> Optional[str]:
    return answer or None

def save_answer(db: Session, response_id: int, answer: Optional[str], user_id: Optional[str]) -> dict:
    """Upsert one answer. Empty or null clears it.

    The attempt status is not checked: edits are accepted until the
    scoring pass reads them. The write is committed before returning so a submit
    that starts after this ack sees it.
    """
    with transaction(db):
        owner = db.execute(
            select(Attempt.user_id).join(Response, Response.attempt_id == Attempt.id).where(Response.id == response_id)
        ).first()
        if owner is None:
            raise NotFoundError("Response not found")
        if owner.user_id is not None and owner.user_id != user_id:
            raise ForbiddenError("Response belongs to another user")
        db.execute(
            update(Response)
            .where(Response.id == response_id)
            .values(user_answer=normalize_answer(answer), answered_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        logger.debug(f"Saved answer for response {response_id}")
    return {"success": True, "response_id": response_id}
