import logging
import time
from dataclasses import replace

from config import EngineSettings
from db import JobStore
from dispatcher import require_lease
from errors import InvalidState
from job_queue import check_queue
from models import Job, JobStatus

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1200


def truncate_reason(reason: str) -> str:
    reason = reason or "Unknown error"
    if len(reason) > MAX_REASON_LENGTH:
        reason = reason[:MAX_REASON_LENGTH] + "…"
    return reason


class RetryController:
    """
    Decides what happens to a job after a failed attempt: back to waiting
    after an exponential backoff, or terminal failed once its attempts run
    out. Terminal jobs only come back through retry_job().
    """

    def __init__(self, store: JobStore, settings: EngineSettings, clock=time.time):
        self.store = store
        self.settings = settings
        self.clock = clock

    def backoff_delay(self, queue_name: str, attempts: int) -> float:
        """Seconds to wait before attempt number ``attempts + 1``."""
        queue_settings = self.settings.for_queue(queue_name)
        delay = queue_settings.backoff_base * (2 ** max(attempts - 1, 0))
        return min(delay, queue_settings.backoff_max)

    def handle_failure(self, queue_name: str, job_id: str, worker_id: str, reason: str,
                       lease_token: str = None) -> Job:
        """
        Records a failed attempt by ``worker_id``. Raises LeaseExpired if the
        worker lost the job in the meantime, in which case nothing is written.
        The reason is only kept once the job is terminally failed.
        """
        reason = truncate_reason(reason)
        now = self.clock()

        def fail(job: Job) -> Job:
            require_lease(job, worker_id, lease_token)
            attempts = job.attempts + 1
            if attempts < job.max_attempts:
                return replace(
                    job, status=JobStatus.WAITING, attempts=attempts, progress=0,
                    failure_reason=None,
                    visible_after=now + self.backoff_delay(queue_name, attempts),
                    lease_owner=None, lease_expires_at=None, lease_token=None,
                )
            return replace(
                job, status=JobStatus.FAILED, attempts=attempts, failure_reason=reason,
                finished_at=now, lease_owner=None, lease_expires_at=None, lease_token=None,
            )

        job = self.store.update(queue_name, job_id, fail)
        if job.status == JobStatus.WAITING:
            logger.warning("Job %s failed (attempt %s of %s), retrying in %.1fs: %s",
                           job_id, job.attempts, job.max_attempts, job.visible_after - now, reason)
        else:
            logger.error("Job %s failed %s times, giving up: %s", job_id, job.attempts, reason)
        return job

    def retry_job(self, queue_name: str, job_id: str) -> Job:
        """Manually requeues a terminally failed job with a fresh attempt budget."""
        check_queue(queue_name)
        now = self.clock()

        def reset(job: Job) -> Job:
            if job.status != JobStatus.FAILED:
                raise InvalidState(
                    f"Only failed jobs can be retried; job {job_id} is {job.status.value}."
                )
            return replace(
                job, status=JobStatus.WAITING, attempts=0, progress=0, result=None,
                failure_reason=None, visible_after=now, leased_at=None, finished_at=None,
                lease_owner=None, lease_expires_at=None, lease_token=None,
            )

        job = self.store.update(queue_name, job_id, reset)
        logger.info("Job %s on %s moved back to waiting", job_id, queue_name)
        return job
