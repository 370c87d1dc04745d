"""End-to-end flows through the manager, the worker pool and the HTTP API."""
import pytest

from conftest import document_payload
from dashboard import create_app
from models import JobStatus
from worker import WorkerPool


@pytest.fixture
def client(manager):
    return create_app(manager).test_client()


def test_document_job_reports_progress_and_result(manager, client):
    job = manager.enqueue("document-processing", {"docId": 42})

    claimed = manager.claim("document-processing", "worker-1")
    assert claimed.id == job.id

    manager.report_progress("document-processing", job.id, "worker-1", 50)
    assert client.get(f"/queue/job/document-processing/{job.id}").get_json()["progress"] == 50

    manager.complete_job("document-processing", job.id, "worker-1", {"extractedText": "..."})

    body = client.get(f"/queue/job/document-processing/{job.id}").get_json()
    assert body["status"] == "completed"
    assert body["progress"] == 100
    assert body["result"] == {"extractedText": "..."}
    assert body["processingStatus"] == "PROCESSED"
    assert "finishedOn" in body and "processedOn" in body


def test_job_failing_every_attempt_can_be_retried_by_hand(live_manager):
    client = create_app(live_manager).test_client()

    def handler(payload, progress):
        raise RuntimeError("Text extraction failed")

    job = live_manager.enqueue("document-processing", document_payload(), max_attempts=3)
    with WorkerPool(live_manager, "document-processing", handler):
        done = live_manager.wait_for_job("document-processing", job.id, interval=0.01, timeout=5)

    assert done.status == JobStatus.FAILED
    assert done.attempts == 3
    body = client.get(f"/queue/job/document-processing/{job.id}").get_json()
    assert body["failedReason"] == "Text extraction failed"
    assert body["processingStatus"] == "FAILED"

    response = client.post(f"/queue/job/document-processing/{job.id}/retry")
    assert response.status_code == 200

    retried = live_manager.get_job("document-processing", job.id)
    assert retried.status == JobStatus.WAITING
    assert retried.attempts == 0


def test_job_of_a_crashed_worker_is_reclaimed_and_completed(manager, clock):
    job = manager.enqueue("document-processing", document_payload())
    lease = manager.settings.for_queue("document-processing").lease_seconds

    # The first worker claims the job and dies without reporting back
    crashed = manager.claim("document-processing", "worker-1")
    assert crashed.id == job.id

    clock.advance(lease / 2)
    assert manager.sweep() == []

    clock.advance(lease)
    [reclaimed] = manager.sweep()
    assert reclaimed.status == JobStatus.WAITING
    assert reclaimed.attempts == 1

    pool = WorkerPool(manager, "document-processing",
                      lambda payload, progress: {"documentId": payload.document_id},
                      concurrency=1, poll_interval=0.01, sweep=False)
    with pool:
        done = manager.wait_for_job("document-processing", job.id, interval=0.01, timeout=5)

    assert done.status == JobStatus.COMPLETED
    assert done.attempts == 2
    assert done.lease_owner is None
    assert done.result == {"documentId": 42}
