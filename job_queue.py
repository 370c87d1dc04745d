import logging
import time
import uuid
from typing import Any, Dict, Optional

from config import AI_ANALYSIS, DOCUMENT_PROCESSING, QUEUE_NAMES, USER_REQUESTS, EngineSettings
from db import JobStore
from errors import InvalidPayload, NotFound
from models import Job, JobStatus, parse_payload

logger = logging.getLogger(__name__)


def check_queue(queue_name: str):
    if queue_name not in QUEUE_NAMES:
        raise NotFound(f"Unknown queue '{queue_name}'.")


class JobQueue:
    """Creates waiting jobs and tells the dispatcher which one is next."""

    def __init__(self, store: JobStore, settings: EngineSettings, clock=time.time):
        self.store = store
        self.settings = settings
        self.clock = clock

    def enqueue(self, queue_name: str, payload: Dict[str, Any], priority: int = 0,
                max_attempts: Optional[int] = None, delay: float = 0,
                timeout: Optional[float] = None, job_id: Optional[str] = None) -> Job:
        check_queue(queue_name)
        parse_payload(queue_name, payload)
        if max_attempts is not None and max_attempts < 1:
            raise InvalidPayload("'maxAttempts' must be 1 or greater.")
        if delay < 0:
            raise InvalidPayload("'delay' must not be negative.")
        if timeout is not None and timeout <= 0:
            raise InvalidPayload("'timeout' must be positive.")

        queue_settings = self.settings.for_queue(queue_name)
        now = self.clock()
        job = Job(
            id=job_id or uuid.uuid4().hex,
            queue_name=queue_name,
            payload=payload,
            status=JobStatus.WAITING,
            max_attempts=max_attempts or queue_settings.max_attempts,
            priority=int(priority),
            timeout=timeout or queue_settings.timeout,
            created_at=now,
            visible_after=now + delay,
        )
        self.store.create(job)
        logger.info("Enqueued job %s on %s (priority %s)", job.id, queue_name, job.priority)
        return job

    def peek_next(self, queue_name: str) -> Optional[Job]:
        """The job the next claim on this queue would get. Does not change anything."""
        check_queue(queue_name)
        return self.store.next_candidate(queue_name, self.clock(), self.settings.priority_aging)

    # --- Typed submission, one per payload variant ---

    def submit_document_processing(self, payload: Dict[str, Any]) -> Job:
        document = parse_payload(DOCUMENT_PROCESSING, payload)
        return self.enqueue(
            DOCUMENT_PROCESSING,
            payload,
            priority=priority_for_mime_type(document.mime_type or ""),
            job_id=_job_id("doc", document.document_id, self.clock()),
        )

    def submit_user_request(self, payload: Dict[str, Any]) -> Job:
        request = parse_payload(USER_REQUESTS, payload)
        return self.enqueue(
            USER_REQUESTS,
            payload,
            priority=REQUEST_PRIORITY[request.priority],
            job_id=_job_id("req", request.request_id, self.clock()),
        )

    def submit_ai_analysis(self, payload: Dict[str, Any]) -> Job:
        analysis = parse_payload(AI_ANALYSIS, payload)
        return self.enqueue(
            AI_ANALYSIS,
            payload,
            priority=AI_ANALYSIS_PRIORITY,
            job_id=_job_id("ai", analysis.analysis_id, self.clock()),
        )


def _job_id(prefix: str, key, now: float) -> str:
    return f"{prefix}-{key}-{int(now * 1000)}-{uuid.uuid4().hex[:6]}"


# Smaller, faster documents go first
def priority_for_mime_type(mime_type: str) -> int:
    if mime_type.startswith("text/"):
        return 4
    if mime_type == "application/pdf":
        return 3
    if mime_type.startswith("image/"):
        return 2
    if mime_type.startswith("video/"):
        return 1
    return 0


REQUEST_PRIORITY = {"urgent": 3, "high": 2, "medium": 1, "low": 0}

AI_ANALYSIS_PRIORITY = 4
