import json

import pytest
from click.testing import CliRunner

from jobctl import cli
from manager import QueueManager
from models import JobStatus


@pytest.fixture
def db_file(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def run(db_file):
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(cli, ["--db", db_file, *args], obj={})

    return invoke


def test_initdb(run):
    result = run("initdb")
    assert result.exit_code == 0
    assert "initialized" in result.output


def test_enqueue_and_show(run, db_file):
    result = run("enqueue", "document-processing", '{"documentId": 42}', "--id", "doc-42", "--priority", "3")
    assert result.exit_code == 0, result.output
    assert "doc-42" in result.output

    shown = run("show", "document-processing", "doc-42")
    assert shown.exit_code == 0
    assert json.loads(shown.output)["priority"] == 3


def test_enqueue_rejects_bad_input(run):
    assert run("enqueue", "document-processing", "{not json").exit_code != 0
    result = run("enqueue", "ai-analysis", '{"analysisId": "a1"}')
    assert result.exit_code != 0
    assert "missing required field" in result.output
    assert run("enqueue", "email", "{}").exit_code != 0


def test_status_lists_every_queue(run):
    run("enqueue", "user-requests", json.dumps({
        "requestId": "r1", "userId": 1, "caseId": 2, "requestType": "legal_advice",
        "requestData": {}, "priority": "high",
    }))

    result = run("status")

    assert result.exit_code == 0
    assert "user-requests" in result.output
    assert "WAITING: 1" in result.output
    assert "Health: healthy" in result.output


def test_list_retry_and_remove(run, db_file):
    run("enqueue", "document-processing", '{"documentId": 1}', "--id", "doc-1", "--max-attempts", "1")
    manager = QueueManager.open(db_file)
    manager.claim("document-processing", "w1")
    manager.fail_job("document-processing", "doc-1", "w1", "corrupt pdf")

    listed = run("list", "--queue", "document-processing", "--status", "failed")
    assert "doc-1" in listed.output
    assert "corrupt pdf" in listed.output

    assert run("retry", "document-processing", "doc-1").exit_code == 0
    assert manager.get_job("document-processing", "doc-1").status == JobStatus.WAITING
    assert run("retry", "document-processing", "doc-1").exit_code != 0

    assert run("remove", "document-processing", "doc-1").exit_code == 0
    assert run("remove", "document-processing", "doc-1").exit_code != 0


def test_config_set_and_show(run, db_file):
    assert run("config", "set", "ai-analysis.max_attempts", "5").exit_code == 0
    assert run("config", "set", "poll_interval", "0.5").exit_code == 0

    bad = run("config", "set", "retries", "5")
    assert bad.exit_code != 0
    assert "Unknown config key" in bad.output
    assert run("config", "set", "ai-analysis.concurrency", "0").exit_code != 0

    shown = run("config", "show")
    assert "ai-analysis.max_attempts = 5" in shown.output
    assert "poll_interval = 0.5" in shown.output
    assert QueueManager.open(db_file).settings.for_queue("ai-analysis").max_attempts == 5


def test_sweep_and_prune(run):
    assert "Reclaimed 0 job(s)." in run("sweep").output
    result = run("prune")
    assert result.exit_code == 0
    assert "document-processing: 0 removed" in result.output
