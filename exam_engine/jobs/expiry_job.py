import logging
from typing import Callable, Optional
from rq import get_current_job
from sqlalchemy.orm import Session
from exam_engine.api.deps import get_attempt_store
from exam_engine.core.database import SessionLocal
from exam_engine.services.attempts import AttemptStore

logger = logging.getLogger(__name__)

def expire_attempts_job(session_factory: Optional[Callable[[], Session]] = None, store: Optional[AttemptStore] = None) -> dict:
    """Finalize abandoned attempts. Enqueued by the admin sweep endpoint or a scheduler."""
    store = store or get_attempt_store()
    job = get_current_job()
    if job is not None:
        job.meta.update({"state": "running"}); job.save_meta()
    db = (session_factory or SessionLocal)()
    try:
        finalized = store.expire_stale(db)
    except Exception:
        if job is not None:
            job.meta.update({"state": "failed"}); job.save_meta()
        raise
    finally:
        db.close()
    if job is not None:
        job.meta.update({"state": "done", "finalized": len(finalized)}); job.save_meta()
    logger.info(f"Expiry job finalized {len(finalized)} attempts")
    return {"finalized": finalized, "count": len(finalized)}
