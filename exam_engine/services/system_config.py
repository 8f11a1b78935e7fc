"""
Read-through access to the ``system_configs`` table.

Values are parsed according to their declared data type and cached for a
fixed TTL in an injected cache (``MemoryTTLCache`` or ``RedisTTLCache``).
"""
import json
import logging
from typing import Any, Callable, Dict, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from exam_engine.core.errors import NotFoundError, ValidationError
from exam_engine.models.orm import ConfigDataType, SystemConfig

logger = logging.getLogger(__name__)

EXAM_TOTAL_QUESTIONS = "exam_total_questions"
EXAM_DURATION_MINUTES = "exam_duration_minutes"
EXAM_PASSING_PERCENTAGE = "exam_passing_percentage"


def parse_raw(raw: str, data_type: ConfigDataType) -> Any:
    if data_type == ConfigDataType.NUMBER:
        return int(raw)
    if data_type == ConfigDataType.BOOLEAN:
        if raw not in ("true", "false"):
            raise ValueError(f"not a boolean: {raw!r}")
        return raw == "true"
    if data_type == ConfigDataType.JSON:
        return json.loads(raw)
    return raw


def parse_value(row: SystemConfig) -> Any:
    return parse_raw(row.value, row.data_type)


def serialize_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class ConfigService:
    def __init__(self, session_factory: Callable[[], Session], cache, ttl_seconds: int = 300):
        self.session_factory = session_factory
        self.cache = cache
        self.ttl = ttl_seconds

    def get(self, key: str) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        with self.session_factory() as db:
            row = db.get(SystemConfig, key)
            if row is None:
                raise NotFoundError(f"Config not found: {key}")
            value = parse_value(row)
        self.cache.set(key, value, self.ttl)
        return value

    def get_or_default(self, key: str, default: Any) -> Any:
        try:
            return self.get(key)
        except NotFoundError:
            return default

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        with self.session_factory() as db:
            rows = db.scalars(select(SystemConfig).where(SystemConfig.key.in_(list(keys)))).all()
            return {row.key: parse_value(row) for row in rows}

    def set(self, key: str, value: Any) -> None:
        with self.session_factory() as db:
            row = db.get(SystemConfig, key)
            if row is None:
                raise NotFoundError(f"Config not found: {key}")
            raw = serialize_value(value)
            try:
                parse_raw(raw, row.data_type)
            except ValueError:
                raise ValidationError(f"Invalid value for {key}: expected {row.data_type.value.lower()}")
            row.value = raw
            db.commit()
        self.cache.delete(key)
        logger.info(f"Config {key} updated")

    def clear(self) -> None:
        self.cache.clear()
