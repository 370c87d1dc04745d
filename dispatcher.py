import logging
import threading
import time
from dataclasses import replace
from typing import List, Optional

from config import EngineSettings
from db import JobStore
from errors import JobEngineError, LeaseExpired
from job_queue import check_queue
from models import Job, JobStatus

logger = logging.getLogger(__name__)


def require_lease(job: Job, worker_id: str, lease_token: str = None) -> Job:
    """
    Raises LeaseExpired unless ``worker_id`` still holds the lease on ``job``.
    With ``lease_token`` the lease must also come from that particular claim.
    """
    stale = lease_token is not None and job.lease_token != lease_token
    if job.status != JobStatus.ACTIVE or job.lease_owner != worker_id or stale:
        raise LeaseExpired(f"Worker {worker_id} no longer holds the lease on job {job.id}.")
    return job


class Dispatcher:
    """Hands waiting jobs to workers under time-bounded leases."""

    def __init__(self, store: JobStore, settings: EngineSettings, clock=time.time):
        self.store = store
        self.settings = settings
        self.clock = clock

    def _lease_seconds(self, queue_name: str, lease_seconds: Optional[float]) -> float:
        if lease_seconds is None:
            return self.settings.for_queue(queue_name).lease_seconds
        return lease_seconds

    def claim(self, queue_name: str, worker_id: str, lease_seconds: float = None) -> Optional[Job]:
        check_queue(queue_name)
        job = self.store.claim(
            queue_name,
            worker_id,
            now=self.clock(),
            lease_seconds=self._lease_seconds(queue_name, lease_seconds),
            aging=self.settings.priority_aging,
        )
        if job:
            logger.info("Worker %s claimed job %s on %s (attempts: %s)",
                        worker_id, job.id, queue_name, job.attempts)
        return job

    def renew_lease(self, queue_name: str, job_id: str, worker_id: str,
                    lease_seconds: float = None, lease_token: str = None) -> Job:
        expires = self.clock() + self._lease_seconds(queue_name, lease_seconds)

        def extend(job: Job) -> Job:
            require_lease(job, worker_id, lease_token)
            return replace(job, lease_expires_at=expires)

        return self.store.update(queue_name, job_id, extend)

    def sweep_expired(self, queue_name: str = None) -> List[Job]:
        """
        Reverts active jobs whose lease ran out to waiting, counting the lost
        attempt. A job that has used up its attempts becomes failed instead.
        """
        now = self.clock()
        reclaimed = []
        for expired in self.store.expired_leases(now, queue_name):

            def reclaim(job: Job) -> Job:
                # Renewed or finished since the scan
                if (job.status != JobStatus.ACTIVE or job.lease_token != expired.lease_token
                        or job.lease_expires_at is None or job.lease_expires_at > now):
                    raise _Skip()
                attempts = job.attempts + 1
                if attempts >= job.max_attempts:
                    return replace(
                        job, status=JobStatus.FAILED, attempts=attempts,
                        failure_reason="LeaseExpired", finished_at=now,
                        lease_owner=None, lease_expires_at=None, lease_token=None,
                    )
                return replace(
                    job, status=JobStatus.WAITING, attempts=attempts, progress=0,
                    visible_after=now, lease_owner=None, lease_expires_at=None, lease_token=None,
                )

            try:
                job = self.store.update(expired.queue_name, expired.id, reclaim)
            except _Skip:
                continue
            except JobEngineError as e:
                # Removed while we were sweeping
                logger.debug("Skipping reclaim of job %s: %s", expired.id, e)
                continue
            logger.warning("Lease of worker %s on job %s expired; job is now %s (attempts: %s)",
                           expired.lease_owner, job.id, job.status.value, job.attempts)
            reclaimed.append(job)
        return reclaimed


class _Skip(Exception):
    pass


class LeaseSweeper(threading.Thread):
    """Background thread that periodically reclaims jobs with expired leases."""

    def __init__(self, dispatcher: Dispatcher, interval: float, queue_name: str = None):
        super().__init__(name=f"lease-sweeper-{queue_name or 'all'}", daemon=True)
        self.dispatcher = dispatcher
        self.interval = interval
        self.queue_name = queue_name
        self._stop_event = threading.Event()

    def stop(self):
        self._stop_event.set()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.dispatcher.sweep_expired(self.queue_name)
            except JobEngineError as e:
                logger.error("Lease sweep failed: %s", e)
