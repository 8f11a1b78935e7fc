from typing import Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
from exam_engine.models.orm import UserUsage

class UsageLedger:
    """Entitlement check and test counters kept by the payment collaborator."""

    def __init__(self, enforce: bool = False):
        self.enforce = enforce

    def may_start(self, db: Session, user_id: Optional[str]) -> bool:
        if not self.enforce or user_id is None:
            return True
        usage = db.get(UserUsage, user_id, populate_existing=True)
        return bool(usage and usage.tests_remaining > 0)

    def tests_completed(self, db: Session, user_id: Optional[str]) -> int:
        if user_id is None:
            return 0
        usage = db.get(UserUsage, user_id, populate_existing=True)
        return usage.tests_completed if usage else 0

    def record_completion(self, db: Session, user_id: Optional[str]) -> None:
        # Runs inside the scoring transaction, so it happens exactly once per attempt.
        if user_id is None:
            return
        res = db.execute(
            update(UserUsage)
            .where(UserUsage.user_id == user_id)
            .values(tests_completed=UserUsage.tests_completed + 1, tests_remaining=UserUsage.tests_remaining - 1)
        )
        if res.rowcount == 0:
            db.add(UserUsage(user_id=user_id, tests_completed=1, tests_remaining=0))
        else:
            db.execute(update(UserUsage).where(UserUsage.user_id == user_id, UserUsage.tests_remaining < 0).values(tests_remaining=0))
