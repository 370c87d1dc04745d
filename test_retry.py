import pytest

from conftest import document_payload
from errors import InvalidState, LeaseExpired, NotFound
from models import JobStatus


def test_backoff_doubles_and_is_capped(manager):
    retries = manager.retries
    base = manager.settings.for_queue("document-processing").backoff_base
    cap = manager.settings.for_queue("document-processing").backoff_max

    assert retries.backoff_delay("document-processing", 1) == base
    assert retries.backoff_delay("document-processing", 2) == base * 2
    assert retries.backoff_delay("document-processing", 3) == base * 4
    assert retries.backoff_delay("document-processing", 50) == cap


def test_failure_with_attempts_left_waits_for_backoff(manager, clock):
    job = manager.enqueue("document-processing", document_payload())
    manager.claim("document-processing", "w1")

    failed = manager.fail_job("document-processing", job.id, "w1", "OCR backend unavailable")

    assert failed.status == JobStatus.WAITING
    assert failed.attempts == 1
    assert failed.lease_owner is None
    assert failed.failure_reason is None
    assert failed.visible_after == clock() + manager.retries.backoff_delay("document-processing", 1)
    assert manager.claim("document-processing", "w1") is None

    clock.advance(manager.retries.backoff_delay("document-processing", 1))
    assert manager.claim("document-processing", "w1").id == job.id


def test_failing_every_attempt_ends_in_failed(manager, clock):
    job = manager.enqueue("document-processing", document_payload(), max_attempts=3)

    for _ in range(3):
        clock.advance(3600)
        assert manager.claim("document-processing", "w1").id == job.id
        last = manager.fail_job("document-processing", job.id, "w1", "boom")

    assert last.status == JobStatus.FAILED
    assert last.attempts == 3
    assert last.failure_reason == "boom"
    assert last.finished_at == clock()
    clock.advance(3600)
    assert manager.claim("document-processing", "w1") is None


def test_failure_from_a_worker_without_the_lease_is_ignored(manager):
    job = manager.enqueue("document-processing", document_payload())
    manager.claim("document-processing", "w1")

    with pytest.raises(LeaseExpired):
        manager.fail_job("document-processing", job.id, "w2", "boom")
    assert manager.get_job("document-processing", job.id).status == JobStatus.ACTIVE


def test_long_failure_reasons_are_truncated(manager):
    job = manager.enqueue("document-processing", document_payload(), max_attempts=1)
    manager.claim("document-processing", "w1")

    failed = manager.fail_job("document-processing", job.id, "w1", "x" * 5000)

    assert len(failed.failure_reason) < 1300


def test_retry_resets_failed_job(manager, clock):
    job = manager.enqueue("document-processing", document_payload(), max_attempts=1)
    manager.claim("document-processing", "w1")
    manager.fail_job("document-processing", job.id, "w1", "boom")

    retried = manager.retry_job("document-processing", job.id)

    assert retried.status == JobStatus.WAITING
    assert retried.attempts == 0
    assert retried.failure_reason is None
    assert retried.finished_at is None
    assert manager.claim("document-processing", "w1").id == job.id


@pytest.mark.parametrize("setup", ["waiting", "active", "completed"])
def test_retry_of_non_failed_job_is_rejected_and_changes_nothing(manager, setup):
    job = manager.enqueue("document-processing", document_payload())
    if setup in ("active", "completed"):
        manager.claim("document-processing", "w1")
    if setup == "completed":
        manager.complete_job("document-processing", job.id, "w1", {"ok": True})
    before = manager.get_job("document-processing", job.id)

    with pytest.raises(InvalidState):
        manager.retry_job("document-processing", job.id)

    assert manager.get_job("document-processing", job.id) == before


def test_retry_of_unknown_job(manager):
    with pytest.raises(NotFound):
        manager.retry_job("document-processing", "nope")
