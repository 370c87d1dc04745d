import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from typing import Callable, Dict, List, Optional

import config
from errors import DuplicateJob, InvalidTransition, NotFound, StoreUnavailable
from models import ALLOWED_TRANSITIONS, Job, JobStatus

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    queue_name TEXT NOT NULL,
    id TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting',
    progress INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    failure_reason TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    priority INTEGER NOT NULL DEFAULT 0,
    timeout REAL NOT NULL DEFAULT 300,
    created_at REAL NOT NULL,
    visible_after REAL NOT NULL,
    leased_at REAL,
    finished_at REAL,
    lease_owner TEXT,
    lease_expires_at REAL,
    lease_token TEXT,
    PRIMARY KEY (queue_name, id)
);

-- Claiming scans waiting jobs of one queue
CREATE INDEX IF NOT EXISTS idx_jobs_queue_status ON jobs (queue_name, status, visible_after);

-- The lease sweep scans active jobs by expiry
CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs (status, lease_expires_at);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

# Highest effective priority first. A job gains one priority level for every
# `aging` seconds it has been waiting, so low priority work is never starved.
NEXT_JOB_SQL = """
SELECT rowid, * FROM jobs
WHERE queue_name = :queue AND status = 'waiting' AND visible_after <= :now
ORDER BY priority + (:now - created_at) / :aging DESC, created_at ASC, rowid ASC
LIMIT 1
"""

_COLUMNS = (
    "queue_name", "id", "payload", "status", "progress", "result", "failure_reason",
    "attempts", "max_attempts", "priority", "timeout", "created_at", "visible_after",
    "leased_at", "finished_at", "lease_owner", "lease_expires_at", "lease_token",
)


def _row_values(job: Job) -> Dict:
    values = asdict(job)
    values["status"] = job.status.value
    values["payload"] = json.dumps(job.payload)
    values["result"] = json.dumps(job.result) if job.result is not None else None
    return values


def check_transition(old: Job, new: Job):
    """
    Validates a job mutation against the state machine and the lease rules.
    Raises InvalidTransition.
    """
    if old.status != new.status and (old.status, new.status) not in ALLOWED_TRANSITIONS:
        raise InvalidTransition(
            f"Job {old.id} cannot move from '{old.status.value}' to '{new.status.value}'."
        )
    if old.status == JobStatus.ACTIVE and new.status == JobStatus.WAITING:
        if new.attempts > new.max_attempts:
            raise InvalidTransition(f"Job {old.id} has no attempts left.")

    lease = (new.lease_owner, new.lease_expires_at, new.lease_token)
    leased = all(v is not None for v in lease)
    unleased = all(v is None for v in lease)
    if new.status == JobStatus.ACTIVE and not leased:
        raise InvalidTransition(f"Active job {old.id} must hold a lease.")
    if new.status != JobStatus.ACTIVE and not unleased:
        raise InvalidTransition(f"Job {old.id} can only hold a lease while active.")

    if old.status == JobStatus.ACTIVE and new.status == JobStatus.ACTIVE and new.progress < old.progress:
        raise InvalidTransition(f"Progress of job {old.id} cannot go backwards.")
    if not 0 <= new.progress <= 100:
        raise InvalidTransition(f"Progress of job {old.id} must be between 0 and 100.")


class JobStore:
    """SQLite-backed durable job records, keyed by (queue name, job id)."""

    def __init__(self, db_file: str = None):
        self.db_file = db_file or config.DB_FILE

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_file, timeout=10.0, isolation_level=None)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Could not open job database: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, write: bool = True):
        """
        Runs a block in one transaction. Write transactions take SQLite's
        RESERVED lock up front so concurrent read-modify-write cycles serialize.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Job database error: {e}") from e
        finally:
            conn.close()

    def initialize(self):
        """Creates the tables and switches the database to WAL mode."""
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(jobs)")}
            if "lease_token" not in columns:
                conn.execute("ALTER TABLE jobs ADD COLUMN lease_token TEXT")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Could not initialize job database: {e}") from e
        finally:
            conn.close()
        logger.debug("Job database initialized at %s", self.db_file)

    def ping(self) -> bool:
        with self._transaction(write=False) as conn:
            conn.execute("SELECT 1 FROM jobs LIMIT 1").fetchall()
        return True

    # --- Job records ---

    def create(self, job: Job) -> str:
        placeholders = ", ".join(f":{c}" for c in _COLUMNS)
        sql = f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})"
        try:
            with self._transaction() as conn:
                conn.execute(sql, _row_values(job))
        except sqlite3.IntegrityError as e:
            raise DuplicateJob(f"Job '{job.id}' already exists in queue '{job.queue_name}'.") from e
        return job.id

    def _fetch(self, conn, queue_name: str, job_id: str) -> Job:
        row = conn.execute(
            "SELECT * FROM jobs WHERE queue_name = ? AND id = ?", [queue_name, job_id]
        ).fetchone()
        if row is None:
            raise NotFound(f"Job '{job_id}' not found in queue '{queue_name}'.")
        return Job.from_row(row)

    def _write(self, conn, job: Job):
        assignments = ", ".join(f"{c} = :{c}" for c in _COLUMNS if c not in ("queue_name", "id"))
        conn.execute(
            f"UPDATE jobs SET {assignments} WHERE queue_name = :queue_name AND id = :id",
            _row_values(job),
        )

    def get(self, queue_name: str, job_id: str) -> Job:
        with self._transaction(write=False) as conn:
            return self._fetch(conn, queue_name, job_id)

    def update(self, queue_name: str, job_id: str, mutation: Callable[[Job], Job]) -> Job:
        """
        Atomic read-modify-write of one job. ``mutation`` receives the current
        record and returns the new one; it may raise to abort the update.
        """
        with self._transaction() as conn:
            old = self._fetch(conn, queue_name, job_id)
            new = mutation(old)
            check_transition(old, new)
            self._write(conn, new)
            return new

    def list(self, queue_name: str, status: Optional[JobStatus] = None) -> List[Job]:
        sql = "SELECT * FROM jobs WHERE queue_name = ?"
        params = [queue_name]
        if status is not None:
            sql += " AND status = ?"
            params.append(JobStatus(status).value)
        sql += " ORDER BY created_at ASC, rowid ASC"
        with self._transaction(write=False) as conn:
            return [Job.from_row(row) for row in conn.execute(sql, params).fetchall()]

    def delete(self, queue_name: str, job_id: str) -> Job:
        """Removes a job and returns the record as it was."""
        with self._transaction() as conn:
            job = self._fetch(conn, queue_name, job_id)
            conn.execute("DELETE FROM jobs WHERE queue_name = ? AND id = ?", [queue_name, job_id])
            return job

    # --- Dispatching ---

    def next_candidate(self, queue_name: str, now: float, aging: float) -> Optional[Job]:
        with self._transaction(write=False) as conn:
            row = conn.execute(NEXT_JOB_SQL, {"queue": queue_name, "now": now, "aging": aging}).fetchone()
            return Job.from_row(row) if row else None

    def claim(self, queue_name: str, worker_id: str, now: float, lease_seconds: float,
              aging: float) -> Optional[Job]:
        """
        Moves the next eligible waiting job to active under a lease for
        ``worker_id``. The select and the conditional update share one
        write transaction, so a job is handed to exactly one claimer. Each
        claim gets a fresh lease token; writes made under an older claim of
        the same job are refused even when the worker id matches.
        """
        with self._transaction() as conn:
            row = conn.execute(NEXT_JOB_SQL, {"queue": queue_name, "now": now, "aging": aging}).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'active', lease_owner = ?, lease_expires_at = ?, leased_at = ?, lease_token = ?
                WHERE queue_name = ? AND id = ? AND status = 'waiting'
                """,
                [worker_id, now + lease_seconds, now, uuid.uuid4().hex, queue_name, row["id"]],
            )
            if cursor.rowcount != 1:
                return None
            return self._fetch(conn, queue_name, row["id"])

    def expired_leases(self, now: float, queue_name: str = None) -> List[Job]:
        sql = "SELECT * FROM jobs WHERE status = 'active' AND lease_expires_at <= ?"
        params = [now]
        if queue_name is not None:
            sql += " AND queue_name = ?"
            params.append(queue_name)
        with self._transaction(write=False) as conn:
            return [Job.from_row(row) for row in conn.execute(sql, params).fetchall()]

    # --- Stats and retention ---

    def count_by_status(self, queue_name: str) -> Dict[str, int]:
        sql = "SELECT status, COUNT(*) AS count FROM jobs WHERE queue_name = ? GROUP BY status"
        with self._transaction(write=False) as conn:
            counts = {row["status"]: row["count"] for row in conn.execute(sql, [queue_name]).fetchall()}
        return {s.value: counts.get(s.value, 0) for s in JobStatus}

    def prune(self, queue_name: str, status: JobStatus, keep: int) -> int:
        """Deletes all but the newest ``keep`` finished jobs of one status."""
        status = JobStatus(status)
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError("Only completed or failed jobs can be pruned.")
        sql = """
        DELETE FROM jobs
        WHERE queue_name = :queue AND status = :status AND id NOT IN (
            SELECT id FROM jobs
            WHERE queue_name = :queue AND status = :status
            ORDER BY finished_at DESC, rowid DESC
            LIMIT :keep
        )
        """
        with self._transaction() as conn:
            cursor = conn.execute(sql, {"queue": queue_name, "status": status.value, "keep": keep})
            return cursor.rowcount

    # --- Config table ---

    def set_config(self, key: str, value: str):
        with self._transaction() as conn:
            conn.execute("INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)", [key, value])

    def get_config(self, key: str, default: str = None) -> Optional[str]:
        with self._transaction(write=False) as conn:
            row = conn.execute("SELECT value FROM config WHERE key = ?", [key]).fetchone()
        return row["value"] if row else default

    def all_config(self) -> Dict[str, str]:
        with self._transaction(write=False) as conn:
            return {row["key"]: row["value"] for row in conn.execute("SELECT key, value FROM config")}
