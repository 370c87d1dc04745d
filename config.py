import os
from dataclasses import dataclass, fields, replace
from typing import Dict, Optional

DB_FILE = os.environ.get("JOBCTL_DB", "jobs.db")

DOCUMENT_PROCESSING = "document-processing"
USER_REQUESTS = "user-requests"
AI_ANALYSIS = "ai-analysis"

QUEUE_NAMES = (DOCUMENT_PROCESSING, USER_REQUESTS, AI_ANALYSIS)

# Keys used by GET /queue/stats
STATS_KEYS = {
    DOCUMENT_PROCESSING: "documentProcessing",
    USER_REQUESTS: "userRequests",
    AI_ANALYSIS: "aiAnalysis",
}


@dataclass(frozen=True)
class QueueSettings:
    concurrency: int = 1
    max_attempts: int = 3
    backoff_base: float = 2.0       # seconds
    backoff_max: float = 300.0
    lease_seconds: float = 30.0
    timeout: float = 300.0
    keep_completed: Optional[int] = None
    keep_failed: Optional[int] = None


DEFAULT_QUEUE_SETTINGS = {
    DOCUMENT_PROCESSING: QueueSettings(
        concurrency=2, max_attempts=3, backoff_base=2.0, keep_completed=100, keep_failed=50,
    ),
    USER_REQUESTS: QueueSettings(
        concurrency=5, max_attempts=2, backoff_base=1.0, keep_completed=200, keep_failed=100,
    ),
    AI_ANALYSIS: QueueSettings(
        concurrency=3, max_attempts=3, backoff_base=3.0, keep_completed=50, keep_failed=25,
    ),
}


@dataclass(frozen=True)
class EngineSettings:
    queues: Dict[str, QueueSettings]
    poll_interval: float = 1.0
    sweep_interval: float = 5.0
    priority_aging: float = 60.0        # seconds of waiting worth one priority level
    failed_ratio_threshold: float = 0.5
    health_min_jobs: int = 10

    def for_queue(self, queue_name: str) -> QueueSettings:
        return self.queues[queue_name]


DEFAULT_SETTINGS = EngineSettings(queues=dict(DEFAULT_QUEUE_SETTINGS))

_QUEUE_FIELDS = {f.name: f.type for f in fields(QueueSettings)}
_ENGINE_FIELDS = {f.name: f.type for f in fields(EngineSettings) if f.name != "queues"}


def config_keys():
    """Every key accepted by the config table."""
    keys = sorted(_ENGINE_FIELDS)
    for queue_name in QUEUE_NAMES:
        keys.extend(f"{queue_name}.{name}" for name in sorted(_QUEUE_FIELDS))
    return keys


def _coerce(name: str, kind, value: str):
    if value is None or value == "" or value.lower() == "none":
        if "Optional" in str(kind):
            return None
        raise ValueError(f"'{name}' requires a value.")
    number = float(value)
    if number < 0:
        raise ValueError(f"'{name}' must not be negative.")
    if kind is int or "int" in str(kind):
        if number != int(number):
            raise ValueError(f"'{name}' must be an integer.")
        return int(number)
    return number


def validate_config(key: str, value: str):
    """Check a config key/value pair and return the parsed value. Raises ValueError."""
    if "." in key:
        queue_name, name = key.split(".", 1)
        if queue_name not in QUEUE_NAMES or name not in _QUEUE_FIELDS:
            raise ValueError(f"Unknown config key '{key}'.")
        parsed = _coerce(key, _QUEUE_FIELDS[name], value)
        if name in ("concurrency", "max_attempts") and parsed < 1:
            raise ValueError(f"'{key}' must be 1 or greater.")
        return parsed
    if key not in _ENGINE_FIELDS:
        raise ValueError(f"Unknown config key '{key}'.")
    return _coerce(key, _ENGINE_FIELDS[key], value)


def settings_from_config(values: Dict[str, str], base: EngineSettings = DEFAULT_SETTINGS) -> EngineSettings:
    """Layer the config table's string values over ``base``."""
    engine_overrides = {}
    queue_overrides = {name: {} for name in QUEUE_NAMES}
    for key, value in values.items():
        parsed = validate_config(key, value)
        if "." in key:
            queue_name, name = key.split(".", 1)
            queue_overrides[queue_name][name] = parsed
        else:
            engine_overrides[key] = parsed

    queues = {
        name: replace(base.queues[name], **queue_overrides[name])
        for name in QUEUE_NAMES
    }
    return replace(base, queues=queues, **engine_overrides)
