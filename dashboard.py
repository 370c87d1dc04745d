import logging
import uuid

from flask import Blueprint, Flask, current_app, jsonify, request

from errors import InvalidPayload, JobEngineError
from manager import QueueManager
from models import JobStatus

logger = logging.getLogger(__name__)

queue_api = Blueprint("queue", __name__, url_prefix="/queue")


def _manager() -> QueueManager:
    return current_app.extensions["queue_manager"]


@queue_api.errorhandler(JobEngineError)
def handle_engine_error(error: JobEngineError):
    if error.status_code >= 500:
        logger.error("Queue API error: %s", error.message)
    return jsonify({"error": type(error).__name__, "message": error.message}), error.status_code


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidPayload("Request body must be a JSON object.")
    return body


def _submission_id(prefix: str) -> str:
    return f"{prefix}-{int(_manager().clock() * 1000)}-{uuid.uuid4().hex[:9]}"


@queue_api.route("/stats")
def queue_stats():
    return jsonify(_manager().stats())


@queue_api.route("/health")
def queue_health():
    return jsonify(_manager().health())


@queue_api.route("/job/<queue_name>/<job_id>")
def get_job(queue_name, job_id):
    return jsonify(_manager().get_job(queue_name, job_id).to_dict())


@queue_api.route("/job/<queue_name>/<job_id>/retry", methods=["POST"])
def retry_job(queue_name, job_id):
    job = _manager().retry_job(queue_name, job_id)
    return jsonify({"success": True, "message": "Job retried successfully", "job": job.to_dict()})


@queue_api.route("/job/<queue_name>/<job_id>", methods=["DELETE"])
def remove_job(queue_name, job_id):
    _manager().remove_job(queue_name, job_id)
    return jsonify({"success": True, "message": "Job removed successfully"})


@queue_api.route("/<queue_name>/enqueue", methods=["POST"])
def enqueue_job(queue_name):
    body = _json_body()
    if "payload" not in body:
        raise InvalidPayload("Request body must be a JSON object with a 'payload' field.")

    try:
        options = {
            "priority": int(body.get("priority", 0)),
            "max_attempts": int(body["maxAttempts"]) if body.get("maxAttempts") is not None else None,
            "delay": float(body.get("delay", 0)),
            "timeout": float(body["timeout"]) if body.get("timeout") is not None else None,
            "job_id": body.get("jobId"),
        }
    except (TypeError, ValueError):
        raise InvalidPayload("'priority', 'maxAttempts', 'delay' and 'timeout' must be numbers.")

    job = _manager().enqueue(queue_name, body["payload"], **options)
    return jsonify(job.to_dict()), 201


@queue_api.route("/document", methods=["POST"])
def submit_document():
    body = _json_body()
    job = _manager().submit_document(body)
    return jsonify({
        "message": "Document processing job submitted successfully",
        "documentId": body.get("documentId", body.get("docId")),
        "jobId": job.id,
    }), 201


@queue_api.route("/user-request", methods=["POST"])
def submit_user_request():
    request_id = _submission_id("req")
    job = _manager().submit_user_request(dict(_json_body(), requestId=request_id))
    return jsonify({
        "message": "User request job submitted successfully",
        "requestId": request_id,
        "jobId": job.id,
    }), 201


@queue_api.route("/ai-analysis", methods=["POST"])
def submit_ai_analysis():
    analysis_id = _submission_id("ai")
    job = _manager().submit_ai_analysis(dict(_json_body(), analysisId=analysis_id))
    return jsonify({
        "message": "AI analysis job submitted successfully",
        "analysisId": analysis_id,
        "jobId": job.id,
    }), 201


@queue_api.route("/<queue_name>/jobs")
def list_jobs(queue_name):
    status = request.args.get("status")
    if status is not None and status not in {s.value for s in JobStatus}:
        raise InvalidPayload(f"Unknown status '{status}'.")
    jobs = _manager().list_jobs(queue_name, JobStatus(status) if status else None)
    return jsonify({"jobs": [job.to_dict() for job in jobs]})


def create_app(manager: QueueManager) -> Flask:
    """Builds the Job Control API around an explicit manager instance."""
    app = Flask(__name__)
    app.extensions["queue_manager"] = manager
    app.register_blueprint(queue_api)
    return app


def run_dashboard(manager: QueueManager, host: str = "127.0.0.1", port: int = 5000, debug: bool = False):
    """Starts the Flask web server."""
    logger.info("Starting job control API at http://%s:%s/queue", host, port)
    create_app(manager).run(debug=debug, host=host, port=port)
