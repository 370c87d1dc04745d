import pytest

from config import DEFAULT_SETTINGS, config_keys, settings_from_config, validate_config
from conftest import document_payload
from manager import QueueManager
from models import JobStatus


def test_defaults_follow_production_queue_setup():
    doc = DEFAULT_SETTINGS.for_queue("document-processing")
    users = DEFAULT_SETTINGS.for_queue("user-requests")
    ai = DEFAULT_SETTINGS.for_queue("ai-analysis")

    assert (doc.concurrency, doc.max_attempts, doc.backoff_base) == (2, 3, 2.0)
    assert (users.concurrency, users.max_attempts, users.backoff_base) == (5, 2, 1.0)
    assert (ai.concurrency, ai.max_attempts, ai.backoff_base) == (3, 3, 3.0)


def test_settings_from_config_overrides_only_named_fields():
    settings = settings_from_config({
        "user-requests.lease_seconds": "90",
        "document-processing.keep_failed": "none",
        "failed_ratio_threshold": "0.25",
    })

    assert settings.for_queue("user-requests").lease_seconds == 90.0
    assert settings.for_queue("user-requests").max_attempts == 2
    assert settings.for_queue("document-processing").keep_failed is None
    assert settings.failed_ratio_threshold == 0.25
    assert settings.poll_interval == DEFAULT_SETTINGS.poll_interval


@pytest.mark.parametrize("key,value", [
    ("nope", "1"),
    ("email.concurrency", "1"),
    ("ai-analysis.colour", "1"),
    ("ai-analysis.max_attempts", "1.5"),
    ("ai-analysis.max_attempts", "0"),
    ("poll_interval", "-1"),
    ("poll_interval", "fast"),
    ("health_min_jobs", "none"),
])
def test_invalid_config_values(key, value):
    with pytest.raises(ValueError):
        validate_config(key, value)


def test_every_listed_key_is_accepted():
    for key in config_keys():
        validate_config(key, "1")


def test_manager_open_reads_config_table(tmp_path):
    db_file = str(tmp_path / "jobs.db")
    QueueManager.open(db_file).store.set_config("document-processing.max_attempts", "7")

    manager = QueueManager.open(db_file)
    job = manager.enqueue("document-processing", document_payload())

    assert job.max_attempts == 7


def test_prune_uses_retention_limits(store, clock):
    settings = settings_from_config({
        "document-processing.keep_completed": "1",
        "document-processing.keep_failed": "0",
    })
    manager = QueueManager(store, settings, clock)
    for i in range(3):
        job = manager.enqueue("document-processing", document_payload(i), max_attempts=1)
        manager.claim("document-processing", "w1")
        clock.advance(1)
        if i == 2:
            manager.fail_job("document-processing", job.id, "w1", "boom")
        else:
            manager.complete_job("document-processing", job.id, "w1", {"i": i})
    waiting = manager.enqueue("document-processing", document_payload(9))

    assert manager.prune() == {"document-processing": 2, "user-requests": 0, "ai-analysis": 0}

    remaining = manager.list_jobs("document-processing")
    assert {j.id for j in remaining} == {waiting.id, remaining[0].id}
    assert [j.status for j in remaining] == [JobStatus.COMPLETED, JobStatus.WAITING]
    assert remaining[0].result == {"i": 1}
