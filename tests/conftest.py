import random

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from exam_engine.api import deps
from exam_engine.core.cache import MemoryTTLCache
from exam_engine.core.database import get_db
from exam_engine.jobs.queue import get_queue
from exam_engine.main import app
from exam_engine.models.orm import Base
from exam_engine.services.admission import ApplicationService, AutoAdmissionPolicy
from exam_engine.services.attempts import AttemptConfig, AttemptStore
from exam_engine.services.scoring import ScoringEngine
from exam_engine.services.selector import StratifiedSelector
from exam_engine.services.state_machine import ApplicationStateMachine
from exam_engine.services.system_config import ConfigService
from exam_engine.services.usage import UsageLedger
from tests.factories import FakeClock, FakeQueue


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def usage():
    return UsageLedger()


@pytest.fixture
def state_machine():
    return ApplicationStateMachine()


@pytest.fixture
def scoring(usage, state_machine):
    return ScoringEngine(usage, state_machine)


@pytest.fixture
def store(scoring, usage):
    return AttemptStore(StratifiedSelector(random.Random(7)), scoring, usage, expiry_grace_seconds=120)


@pytest.fixture
def exam_cfg():
    return AttemptConfig(total_questions=10, duration_minutes=60, passing_marks=4)


@pytest.fixture
def applications(store, state_machine, exam_cfg):
    return ApplicationService(store, state_machine, AutoAdmissionPolicy(), exam_config=lambda: exam_cfg,
                              rng=random.Random(3))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config_service(session_factory, clock):
    return ConfigService(session_factory, MemoryTTLCache(clock=clock), ttl_seconds=300)


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def client(session_factory, store, applications, exam_cfg, config_service, queue):
    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[deps.get_attempt_store] = lambda: store
    app.dependency_overrides[deps.get_application_service] = lambda: applications
    app.dependency_overrides[deps.get_exam_config] = lambda: exam_cfg
    app.dependency_overrides[deps.get_config_service] = lambda: config_service
    app.dependency_overrides[get_queue] = lambda: queue
    yield TestClient(app)
    app.dependency_overrides.clear()
