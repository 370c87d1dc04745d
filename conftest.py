import threading
from dataclasses import replace

import pytest

from config import DEFAULT_SETTINGS, QUEUE_NAMES
from db import JobStore
from manager import QueueManager


class FakeClock:
    """A settable stand-in for time.time()."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = JobStore(str(tmp_path / "jobs.db"))
    s.initialize()
    return s


@pytest.fixture
def manager(store, clock):
    return QueueManager(store, DEFAULT_SETTINGS, clock)


@pytest.fixture
def fast_settings():
    """Settings for tests that run real worker threads."""
    queues = {
        name: replace(DEFAULT_SETTINGS.queues[name], backoff_base=0, lease_seconds=5, concurrency=2)
        for name in QUEUE_NAMES
    }
    return replace(DEFAULT_SETTINGS, queues=queues, poll_interval=0.01, sweep_interval=0.05)


@pytest.fixture
def live_manager(store, fast_settings):
    return QueueManager(store, fast_settings)


def document_payload(document_id=42, **extra):
    return dict({"documentId": document_id}, **extra)


def user_request_payload(request_id="r1", priority="medium"):
    return {
        "requestId": request_id,
        "userId": 7,
        "caseId": 3,
        "requestType": "case_analysis",
        "requestData": {"question": "What is the filing deadline?"},
        "priority": priority,
    }


def ai_payload(analysis_id="a1", content="The contract contains an indemnity clause."):
    return {
        "analysisId": analysis_id,
        "documentId": 42,
        "caseId": 3,
        "analysisType": "legal_review",
        "content": content,
    }
