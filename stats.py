import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

from config import QUEUE_NAMES, STATS_KEYS, EngineSettings
from db import JobStore
from errors import StoreUnavailable

logger = logging.getLogger(__name__)


def iso_timestamp(ts: float) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123Z'."""
    return datetime.fromtimestamp(ts, timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class StatsAggregator:
    """Per-queue counts and overall health, always read fresh from the store."""

    def __init__(self, store: JobStore, settings: EngineSettings, clock=time.time):
        self.store = store
        self.settings = settings
        self.clock = clock

    def queue_counts(self, queue_name: str) -> Dict[str, int]:
        return self.store.count_by_status(queue_name)

    def queue_stats(self) -> Dict[str, Any]:
        stats = {STATS_KEYS[name]: self.queue_counts(name) for name in QUEUE_NAMES}
        stats["timestamp"] = iso_timestamp(self.clock())
        return stats

    def health(self) -> Dict[str, Any]:
        timestamp = iso_timestamp(self.clock())
        try:
            self.store.ping()
            queues = [dict(name=name, **self.queue_counts(name)) for name in QUEUE_NAMES]
        except StoreUnavailable as e:
            logger.error("Health check failed: %s", e)
            return {"status": "unhealthy", "error": e.message, "timestamp": timestamp}

        for queue in queues:
            total = queue["waiting"] + queue["active"] + queue["completed"] + queue["failed"]
            if total < max(self.settings.health_min_jobs, 1):
                continue
            ratio = queue["failed"] / total
            if ratio > self.settings.failed_ratio_threshold:
                return {
                    "status": "unhealthy",
                    "error": f"Queue '{queue['name']}' failed ratio {ratio:.2f} is above "
                             f"{self.settings.failed_ratio_threshold:.2f}",
                    "queues": queues,
                    "timestamp": timestamp,
                }

        return {"status": "healthy", "queues": queues, "timestamp": timestamp}
