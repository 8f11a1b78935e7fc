"""
Stratified question selection.

Draws a fixed-size question set under a per-difficulty quota, backfills from
the remaining pool when a tier runs short, and shuffles the result so tier
blocks are not visible in presentation order. Every permutation is produced by
attaching an independent random key to each candidate and sorting on it.
"""
import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, TypeVar

from sqlalchemy.orm import Session

from exam_engine.core.errors import ConflictError, ValidationError
from exam_engine.models.orm import Difficulty, Question
from exam_engine.services.question_pool import fetch_by_difficulty

logger = logging.getLogger(__name__)

T = TypeVar("T")

EASY_SHARE = 0.3
HARD_SHARE = 0.2


@dataclass(frozen=True)
class Quotas:
    easy: int
    moderate: int
    hard: int

    @property
    def total(self) -> int:
        return self.easy + self.moderate + self.hard

    def for_tier(self, tier: Difficulty) -> int:
        return {Difficulty.EASY: self.easy, Difficulty.MODERATE: self.moderate, Difficulty.HARD: self.hard}[tier]


def canonical_quotas(total: int) -> Quotas:
    """30% easy, 20% hard, the remainder moderate, so the three always sum to ``total``."""
    if total < 1:
        raise ValidationError("Total questions must be at least 1")
    easy = int(total * EASY_SHARE)
    hard = int(total * HARD_SHARE)
    return Quotas(easy=easy, moderate=total - easy - hard, hard=hard)


def random_key_order(items: Sequence[T], rng: random.Random) -> List[T]:
    keyed = [(rng.random(), i, item) for i, item in enumerate(items)]
    keyed.sort(key=lambda k: (k[0], k[1]))
    return [item for _, _, item in keyed]


def pick_random(items: Sequence[T], count: int, rng: random.Random) -> List[T]:
    return random_key_order(items, rng)[:max(0, count)]


class StratifiedSelector:
    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.SystemRandom()

    def select(self, db: Session, total: int, quotas: Optional[Quotas] = None) -> List[Question]:
        pools = {tier: fetch_by_difficulty(db, tier) for tier in Difficulty}
        return self.select_from_pools(pools, total, quotas)

    def select_from_pools(self, pools: Dict[Difficulty, List[T]], total: int, quotas: Optional[Quotas] = None) -> List[T]:
        quotas = quotas or canonical_quotas(total)
        if quotas.total != total:
            raise ValidationError(f"Quotas sum to {quotas.total}, expected {total}")
        if min(quotas.easy, quotas.moderate, quotas.hard) < 0:
            raise ValidationError("Quotas must be non-negative")

        selected: List[T] = []
        for tier in (Difficulty.EASY, Difficulty.MODERATE, Difficulty.HARD):
            pool = pools.get(tier, [])
            selected.extend(pick_random(pool, min(len(pool), quotas.for_tier(tier)), self.rng))

        if len(selected) < total:
            taken = {q.id for q in selected}
            remaining = [q for tier in Difficulty for q in pools.get(tier, []) if q.id not in taken]
            extra = pick_random(remaining, total - len(selected), self.rng)
            logger.info(f"Backfilled {len(extra)} questions after tier shortfall ({len(selected)}/{total})")
            selected.extend(extra)

        if len(selected) < total:
            raise ConflictError(
                f"Not enough questions available: need {total}, pool has {len(selected)}",
                details=[{"tier": t.value, "available": len(pools.get(t, []))} for t in Difficulty],
            )
        return random_key_order(selected, self.rng)
