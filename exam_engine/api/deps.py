"""
Service providers for the routers.

Each provider builds its service once per process. Tests replace them through
``app.dependency_overrides``.
"""
from functools import lru_cache

from exam_engine.core.cache import build_cache
from exam_engine.core.config import settings
from exam_engine.core.database import SessionLocal
from exam_engine.services.admission import ApplicationService, build_policy
from exam_engine.services.attempts import AttemptConfig, AttemptStore, exam_config
from exam_engine.services.scoring import ScoringEngine
from exam_engine.services.selector import StratifiedSelector
from exam_engine.services.state_machine import ApplicationStateMachine
from exam_engine.services.system_config import ConfigService
from exam_engine.services.usage import UsageLedger


@lru_cache
def get_config_service() -> ConfigService:
    cache = build_cache(settings.CONFIG_CACHE_BACKEND, settings.REDIS_URL)
    return ConfigService(SessionLocal, cache, ttl_seconds=settings.CONFIG_CACHE_TTL)


@lru_cache
def get_usage_ledger() -> UsageLedger:
    return UsageLedger(enforce=settings.ENFORCE_ENTITLEMENT)


@lru_cache
def get_state_machine() -> ApplicationStateMachine:
    return ApplicationStateMachine()


@lru_cache
def get_attempt_store() -> AttemptStore:
    usage = get_usage_ledger()
    return AttemptStore(
        StratifiedSelector(),
        ScoringEngine(usage, get_state_machine()),
        usage,
        expiry_grace_seconds=settings.ATTEMPT_EXPIRY_GRACE_SECONDS,
    )


def get_exam_config() -> AttemptConfig:
    return exam_config(get_config_service(), settings)


@lru_cache
def get_application_service() -> ApplicationService:
    return ApplicationService(
        get_attempt_store(),
        get_state_machine(),
        build_policy(settings.ADMISSION_POLICY),
        exam_config=get_exam_config,
    )
