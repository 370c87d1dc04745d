import json
import logging
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

from config import DEFAULT_SETTINGS, QUEUE_NAMES, EngineSettings, settings_from_config
from db import JobStore
from dispatcher import Dispatcher, require_lease
from errors import InvalidPayload, LeaseExpired, NotFound
from job_queue import JobQueue, check_queue
from models import Job, JobStatus
from retry import RetryController
from stats import StatsAggregator

logger = logging.getLogger(__name__)


class QueueManager:
    """
    The job engine as one object: the record store plus the queue,
    dispatcher, retry and stats layers built over it. An instance is passed
    explicitly to the HTTP app, the worker pools and the CLI.
    """

    def __init__(self, store: JobStore, settings: EngineSettings = None, clock=time.time):
        self.store = store
        self.clock = clock
        self.settings = settings or DEFAULT_SETTINGS
        self.queue = JobQueue(store, self.settings, clock)
        self.dispatcher = Dispatcher(store, self.settings, clock)
        self.retries = RetryController(store, self.settings, clock)
        self.stats_aggregator = StatsAggregator(store, self.settings, clock)

    @classmethod
    def open(cls, db_file: str = None, clock=time.time) -> "QueueManager":
        """Initializes the database if needed and loads settings from its config table."""
        store = JobStore(db_file)
        store.initialize()
        return cls(store, settings_from_config(store.all_config()), clock)

    # --- Job control ---

    def enqueue(self, queue_name: str, payload: Dict[str, Any], **options) -> Job:
        return self.queue.enqueue(queue_name, payload, **options)

    def submit_document(self, payload: Dict[str, Any]) -> Job:
        return self.queue.submit_document_processing(payload)

    def submit_user_request(self, payload: Dict[str, Any]) -> Job:
        return self.queue.submit_user_request(payload)

    def submit_ai_analysis(self, payload: Dict[str, Any]) -> Job:
        return self.queue.submit_ai_analysis(payload)

    def get_job(self, queue_name: str, job_id: str) -> Job:
        check_queue(queue_name)
        return self.store.get(queue_name, job_id)

    def list_jobs(self, queue_name: str, status: Optional[JobStatus] = None) -> List[Job]:
        check_queue(queue_name)
        return self.store.list(queue_name, status)

    def retry_job(self, queue_name: str, job_id: str) -> Job:
        return self.retries.retry_job(queue_name, job_id)

    def remove_job(self, queue_name: str, job_id: str) -> Job:
        """
        Deletes a job in any state. Removing an active job voids its lease:
        the owning worker sees the cancellation on its next progress report
        and its eventual result is discarded.
        """
        check_queue(queue_name)
        job = self.store.delete(queue_name, job_id)
        if job.status == JobStatus.ACTIVE:
            logger.warning("Removed active job %s; worker %s will be cancelled", job_id, job.lease_owner)
        else:
            logger.info("Removed job %s from %s", job_id, queue_name)
        return job

    def stats(self) -> Dict[str, Any]:
        return self.stats_aggregator.queue_stats()

    def health(self) -> Dict[str, Any]:
        return self.stats_aggregator.health()

    def wait_for_job(self, queue_name: str, job_id: str, interval: float = 5.0,
                     timeout: float = None) -> Job:
        """
        Polls a job until it reaches completed or failed, the way the
        document list polls processingStatus. Reads only.
        Raises TimeoutError if ``timeout`` seconds pass first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self.get_job(queue_name, job_id)
            if job.is_terminal:
                return job
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"Job {job_id} is still {job.status.value}.")
            time.sleep(interval)

    # --- Worker side ---

    def claim(self, queue_name: str, worker_id: str, lease_seconds: float = None) -> Optional[Job]:
        return self.dispatcher.claim(queue_name, worker_id, lease_seconds)

    def renew_lease(self, queue_name: str, job_id: str, worker_id: str, lease_token: str = None) -> Job:
        return self.dispatcher.renew_lease(queue_name, job_id, worker_id, lease_token=lease_token)

    def holds_lease(self, queue_name: str, job_id: str, worker_id: str, lease_token: str = None) -> bool:
        try:
            job = self.store.get(queue_name, job_id)
        except NotFound:
            return False
        try:
            require_lease(job, worker_id, lease_token)
        except LeaseExpired:
            return False
        return True

    def report_progress(self, queue_name: str, job_id: str, worker_id: str, percent: int,
                        lease_token: str = None) -> Job:
        """Stores progress (clamped to 0-100, never lowered) and extends the lease."""
        percent = min(max(int(percent), 0), 100)
        expires = self.clock() + self.settings.for_queue(queue_name).lease_seconds

        def advance(job: Job) -> Job:
            require_lease(job, worker_id, lease_token)
            return replace(job, progress=max(job.progress, percent), lease_expires_at=expires)

        return self.store.update(queue_name, job_id, advance)

    def complete_job(self, queue_name: str, job_id: str, worker_id: str, result: Any,
                     lease_token: str = None) -> Job:
        """
        Marks a job completed with ``result``. Raises LeaseExpired (or
        NotFound) if the worker lost the job, and nothing is written.
        """
        try:
            json.dumps(result)
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"Job result is not JSON serializable: {e}") from e
        now = self.clock()

        def finish(job: Job) -> Job:
            require_lease(job, worker_id, lease_token)
            return replace(
                job, status=JobStatus.COMPLETED, progress=100, result=result,
                attempts=job.attempts + 1, failure_reason=None, finished_at=now,
                lease_owner=None, lease_expires_at=None, lease_token=None,
            )

        job = self.store.update(queue_name, job_id, finish)
        logger.info("Job %s on %s completed", job_id, queue_name)
        return job

    def fail_job(self, queue_name: str, job_id: str, worker_id: str, reason: str,
                 lease_token: str = None) -> Job:
        return self.retries.handle_failure(queue_name, job_id, worker_id, reason, lease_token)

    # --- Maintenance ---

    def sweep(self, queue_name: str = None) -> List[Job]:
        return self.dispatcher.sweep_expired(queue_name)

    def prune(self, queue_name: str = None) -> Dict[str, int]:
        """
        Retention sweep: keeps the newest keep_completed/keep_failed finished
        jobs per queue. Queues without a limit are left alone.
        """
        removed = {}
        for name in [queue_name] if queue_name else QUEUE_NAMES:
            check_queue(name)
            queue_settings = self.settings.for_queue(name)
            count = 0
            if queue_settings.keep_completed is not None:
                count += self.store.prune(name, JobStatus.COMPLETED, queue_settings.keep_completed)
            if queue_settings.keep_failed is not None:
                count += self.store.prune(name, JobStatus.FAILED, queue_settings.keep_failed)
            if count:
                logger.info("Pruned %s finished jobs from %s", count, name)
            removed[name] = count
        return removed
