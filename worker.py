import importlib
import logging
import os
import signal
import socket
import threading
import time
from collections import namedtuple
from typing import Callable, Dict

from dispatcher import LeaseSweeper
from errors import (
    HandlerError, InvalidPayload, JobEngineError, LeaseExpired, NotFound, StoreUnavailable, Timeout,
)
from manager import QueueManager
from models import Job, parse_payload

logger = logging.getLogger(__name__)

# What a handler attempt came to; ``error`` is a JobEngineError
JobOutcome = namedtuple("JobOutcome", ["success", "result", "error"])

Handler = Callable[..., object]


class ProgressReporter:
    """
    Passed to handlers as their second argument. Calling it records progress
    and renews the lease of this particular claim; ``cancelled`` turns true
    once the job was removed, reclaimed, or timed out. After that every call
    raises LeaseExpired.
    """

    def __init__(self, manager: QueueManager, job: Job, worker_id: str):
        self.manager = manager
        self.job = job
        self.worker_id = worker_id
        self._lost = threading.Event()
        self._cancelled = threading.Event()

    def __call__(self, percent: int):
        if self._lost.is_set() or self._cancelled.is_set():
            raise LeaseExpired(f"Job {self.job.id} is no longer owned by {self.worker_id}.")
        try:
            self.manager.report_progress(self.job.queue_name, self.job.id, self.worker_id, percent,
                                         lease_token=self.job.lease_token)
        except (LeaseExpired, NotFound) as e:
            self._lost.set()
            raise LeaseExpired(str(e)) from e

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set() or self._lost.is_set():
            return True
        if not self.manager.holds_lease(self.job.queue_name, self.job.id, self.worker_id, self.job.lease_token):
            self._lost.set()
            return True
        return False

    def cancel(self):
        self._cancelled.set()

    def heartbeat(self) -> bool:
        """Renews the lease. Returns False once the lease is gone."""
        try:
            self.manager.renew_lease(self.job.queue_name, self.job.id, self.worker_id, self.job.lease_token)
        except (LeaseExpired, NotFound):
            self._lost.set()
            return False
        except StoreUnavailable as e:
            logger.warning("Could not renew lease on job %s: %s", self.job.id, e)
        return True


def describe_error(error: BaseException) -> str:
    return str(error) or type(error).__name__


def execute_job(handler: Handler, payload, progress: ProgressReporter, timeout: float,
                heartbeat_interval: float) -> JobOutcome:
    """
    Runs ``handler(payload, progress)`` on its own thread, renewing the lease
    every ``heartbeat_interval`` seconds. A handler still running after
    ``timeout`` seconds is told to cancel and abandoned.
    """
    outcome = {}

    def target():
        try:
            outcome["result"] = handler(payload, progress)
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(target=target, name=f"handler-{progress.job.id}", daemon=True)
    started = time.monotonic()
    thread.start()

    while thread.is_alive():
        remaining = timeout - (time.monotonic() - started)
        if remaining <= 0:
            progress.cancel()
            logger.warning("Job %s timed out after %gs", progress.job.id, timeout)
            error = Timeout(f"Timeout: job exceeded {timeout:g}s")
            return JobOutcome(success=False, result=None, error=error)
        thread.join(min(remaining, heartbeat_interval))
        if thread.is_alive() and not progress.heartbeat():
            progress.cancel()
            error = LeaseExpired(f"Lease on job {progress.job.id} was lost.")
            return JobOutcome(success=False, result=None, error=error)

    if "error" in outcome:
        error = HandlerError(describe_error(outcome["error"]))
        return JobOutcome(success=False, result=None, error=error)
    return JobOutcome(success=True, result=outcome.get("result"), error=None)


class Worker:
    """One executor of a queue's pool: claim, run, report, repeat."""

    def __init__(self, manager: QueueManager, queue_name: str, handler: Handler, id: str,
                 poll_interval: float = None):
        self.manager = manager
        self.queue_name = queue_name
        self.handler = handler
        self.id = id
        self.poll_interval = manager.settings.poll_interval if poll_interval is None else poll_interval
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def stop(self):
        """Stops the worker loop after the current job."""
        self._stop_event.set()

    def run(self):
        """The main worker loop."""
        logger.info("Worker %s starting on %s", self.id, self.queue_name)
        while self.running:
            try:
                job = self.manager.claim(self.queue_name, self.id)
            except StoreUnavailable as e:
                logger.error("Worker %s could not claim a job: %s", self.id, e)
                job = None

            if job:
                try:
                    self.process(job)
                except JobEngineError as e:
                    logger.error("Worker %s failed while processing job %s: %s", self.id, job.id, e)
            else:
                self._stop_event.wait(self.poll_interval)
        logger.info("Worker %s shut down", self.id)

    def process(self, job: Job):
        progress = ProgressReporter(self.manager, job, self.id)
        lease_token = job.lease_token
        lease_seconds = self.manager.settings.for_queue(self.queue_name).lease_seconds
        heartbeat_interval = max(lease_seconds / 3.0, 0.05)

        try:
            payload = parse_payload(self.queue_name, job.payload)
        except InvalidPayload as e:
            outcome = JobOutcome(success=False, result=None, error=e)
        else:
            outcome = execute_job(self.handler, payload, progress, job.timeout, heartbeat_interval)

        if progress.lost:
            logger.warning("Worker %s lost job %s; discarding its outcome", self.id, job.id)
            return

        try:
            if outcome.success:
                try:
                    self.manager.complete_job(self.queue_name, job.id, self.id, outcome.result, lease_token)
                except InvalidPayload as e:
                    self.manager.fail_job(self.queue_name, job.id, self.id, e.message, lease_token)
            else:
                self.manager.fail_job(self.queue_name, job.id, self.id, outcome.error.message, lease_token)
        except (LeaseExpired, NotFound) as e:
            logger.warning("Worker %s discarded the outcome of job %s: %s", self.id, job.id, e)
        except StoreUnavailable as e:
            # The lease runs out and the sweep hands the job out again
            logger.error("Worker %s could not record the outcome of job %s: %s", self.id, job.id, e)


def worker_id(queue_name: str, number: int) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{queue_name}:{number}"


class WorkerPool:
    """``concurrency`` worker threads for one queue plus a lease sweeper."""

    def __init__(self, manager: QueueManager, queue_name: str, handler: Handler,
                 concurrency: int = None, poll_interval: float = None, sweep: bool = True):
        self.manager = manager
        self.queue_name = queue_name
        self.concurrency = concurrency or manager.settings.for_queue(queue_name).concurrency
        self.workers = [
            Worker(manager, queue_name, handler, worker_id(queue_name, i + 1), poll_interval)
            for i in range(self.concurrency)
        ]
        self.sweeper = None
        if sweep:
            self.sweeper = LeaseSweeper(manager.dispatcher, manager.settings.sweep_interval, queue_name)
        self._threads = []

    def start(self):
        for w in self.workers:
            t = threading.Thread(target=w.run, name=w.id, daemon=True)
            t.start()
            self._threads.append(t)
        if self.sweeper:
            self.sweeper.start()
        logger.info("Started %s worker(s) on %s", self.concurrency, self.queue_name)

    def stop(self):
        for w in self.workers:
            w.stop()
        if self.sweeper:
            self.sweeper.stop()

    def join(self, timeout: float = None):
        for t in self._threads:
            t.join(timeout)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc_info):
        self.stop()
        self.join()


def load_handlers(reference: str) -> Dict[str, Handler]:
    """Imports a ``module:attribute`` mapping of queue name to handler."""
    module_name, _, attribute = reference.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, attribute or "HANDLERS")


# This is the main function for a single worker process
def run_worker_process(db_file: str, queue_name: str, handlers_ref: str, concurrency: int = None):
    """
    Runs one queue's pool until SIGINT/SIGTERM. Each process opens its own
    database connections.
    """
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(processName)s] %(message)s")
    manager = QueueManager.open(db_file)
    handler = load_handlers(handlers_ref)[queue_name]
    pool = WorkerPool(manager, queue_name, handler, concurrency)
    stopped = threading.Event()

    # Graceful shutdown handler
    def shutdown(sig, frame):
        logger.info("Pool for %s received signal %s, stopping...", queue_name, sig)
        stopped.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    pool.start()
    try:
        while not stopped.wait(0.5):
            pass
    finally:
        pool.stop()
        pool.join()
        logger.info("Pool for %s shut down.", queue_name)
