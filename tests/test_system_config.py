import json

import pytest
import redis
from sqlalchemy import update

from exam_engine.core.cache import MemoryTTLCache, RedisTTLCache, build_cache
from exam_engine.core.config import settings
from exam_engine.core.errors import NotFoundError, ValidationError
from exam_engine.models.orm import ConfigDataType, SystemConfig
from exam_engine.services.attempts import exam_config
from exam_engine.services.sequences import next_value
from tests.factories import FakeClock


class DictRedis:
    """Just enough of the redis client for RedisTTLCache."""

    def __init__(self, fail: bool = False):
        self.store = {}
        self.expiry = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis down")

    def get(self, key):
        self._check()
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.store[key] = value
        self.expiry[key] = ex

    def delete(self, *keys):
        self._check()
        for key in keys:
            self.store.pop(key, None)

    def scan_iter(self, match=None):
        self._check()
        prefix = match.rstrip("*")
        return [k for k in list(self.store) if k.startswith(prefix)]


@pytest.fixture
def seeded(db):
    db.add_all([
        SystemConfig(key="exam_total_questions", value="50", data_type=ConfigDataType.NUMBER, category="exam"),
        SystemConfig(key="maintenance_mode", value="true", data_type=ConfigDataType.BOOLEAN),
        SystemConfig(key="exam_centres", value='["Pune", "Mumbai"]', data_type=ConfigDataType.JSON),
        SystemConfig(key="support_email", value="help@example.com", data_type=ConfigDataType.STRING),
    ])
    db.commit()
    return db


def test_values_are_parsed_by_type(seeded, config_service):
    assert config_service.get("exam_total_questions") == 50
    assert config_service.get("maintenance_mode") is True
    assert config_service.get("exam_centres") == ["Pune", "Mumbai"]
    assert config_service.get("support_email") == "help@example.com"


def test_missing_key(seeded, config_service):
    with pytest.raises(NotFoundError):
        config_service.get("nope")
    assert config_service.get_or_default("nope", 7) == 7


def test_cached_value_is_served_until_ttl_expires(seeded, config_service, clock):
    assert config_service.get("exam_total_questions") == 50
    seeded.execute(update(SystemConfig).where(SystemConfig.key == "exam_total_questions").values(value="60"))
    seeded.commit()
    clock.advance(299)
    assert config_service.get("exam_total_questions") == 50
    clock.advance(2)
    assert config_service.get("exam_total_questions") == 60


def test_set_invalidates_immediately(seeded, config_service):
    assert config_service.get("exam_total_questions") == 50
    config_service.set("exam_total_questions", 30)
    assert config_service.get("exam_total_questions") == 30
    config_service.set("maintenance_mode", False)
    assert config_service.get("maintenance_mode") is False
    with pytest.raises(NotFoundError):
        config_service.set("unknown_key", 1)


def test_clear_drops_cached_values(seeded, config_service):
    config_service.get("support_email")
    seeded.execute(update(SystemConfig).where(SystemConfig.key == "support_email").values(value="ops@example.com"))
    seeded.commit()
    config_service.clear()
    assert config_service.get("support_email") == "ops@example.com"


def test_get_many(seeded, config_service):
    values = config_service.get_many(["exam_total_questions", "maintenance_mode", "absent"])
    assert values == {"exam_total_questions": 50, "maintenance_mode": True}


def test_memory_cache_expiry():
    clock = FakeClock()
    cache = MemoryTTLCache(clock=clock)
    cache.set("k", {"a": 1}, ttl=10)
    assert cache.get("k") == {"a": 1}
    clock.advance(10)
    assert cache.get("k") is None
    assert cache.get("k", "fallback") == "fallback"


def test_redis_cache_uses_key_expiry():
    client = DictRedis()
    cache = RedisTTLCache(client, prefix="cfg")
    cache.set("exam_total_questions", 50, ttl=300)
    assert client.expiry["cfg:exam_total_questions"] == 300
    assert json.loads(client.store["cfg:exam_total_questions"]) == 50
    assert cache.get("exam_total_questions") == 50
    cache.clear()
    assert cache.get("exam_total_questions") is None


def test_redis_outage_degrades_to_a_miss():
    cache = RedisTTLCache(DictRedis(fail=True))
    cache.set("k", 1, ttl=10)
    assert cache.get("k", "default") == "default"


def test_build_cache_defaults_to_memory():
    assert isinstance(build_cache("memory"), MemoryTTLCache)


def test_counter_is_seeded_then_incremented(db):
    assert next_value(db, "demo", seed=lambda: 41) == 42
    assert next_value(db, "demo", seed=lambda: 0) == 43
    db.commit()


@pytest.mark.parametrize("key, value", [
    ("exam_total_questions", "ten"),
    ("exam_total_questions", True),
    ("maintenance_mode", "maybe"),
    ("exam_centres", "Pune, Mumbai"),
])
def test_set_rejects_values_that_do_not_match_the_data_type(seeded, config_service, key, value):
    before = config_service.get(key)
    with pytest.raises(ValidationError):
        config_service.set(key, value)
    config_service.clear()
    assert config_service.get(key) == before


def test_exam_config_survives_a_rejected_write(seeded, config_service):
    with pytest.raises(ValidationError):
        config_service.set("exam_total_questions", "ten")
    config_service.clear()
    assert exam_config(config_service, settings).total_questions == 50
