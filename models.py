import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from errors import InvalidPayload


# The four states a job can be in
class JobStatus(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# (from, to) pairs the store accepts. active -> waiting is only used by the
# engine itself (automatic retry and lease reclaim).
ALLOWED_TRANSITIONS = frozenset({
    (JobStatus.WAITING, JobStatus.ACTIVE),
    (JobStatus.ACTIVE, JobStatus.COMPLETED),
    (JobStatus.ACTIVE, JobStatus.FAILED),
    (JobStatus.ACTIVE, JobStatus.WAITING),
    (JobStatus.FAILED, JobStatus.WAITING),
})


@dataclass
class Job:
    id: str
    queue_name: str
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    result: Any = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    timeout: float = 300.0
    created_at: float = 0.0
    visible_after: float = 0.0
    leased_at: Optional[float] = None
    finished_at: Optional[float] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[float] = None
    lease_token: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            status=JobStatus(row["status"]),
            progress=row["progress"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            failure_reason=row["failure_reason"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            priority=row["priority"],
            timeout=row["timeout"],
            created_at=row["created_at"],
            visible_after=row["visible_after"],
            leased_at=row["leased_at"],
            finished_at=row["finished_at"],
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            lease_token=row["lease_token"],
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        The public JSON shape of a job, as served by GET /queue/job/...
        Times are epoch milliseconds.
        """
        data = {
            "id": self.id,
            "queue": self.queue_name,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "priority": self.priority,
            "payload": self.payload,
            "processingStatus": processing_status(self),
            "timestamp": _millis(self.created_at),
        }
        if self.status == JobStatus.COMPLETED:
            data["result"] = self.result
        if self.status == JobStatus.FAILED and self.failure_reason is not None:
            data["failedReason"] = self.failure_reason
        if self.leased_at is not None:
            data["processedOn"] = _millis(self.leased_at)
        if self.finished_at is not None:
            data["finishedOn"] = _millis(self.finished_at)
        return data


def _millis(ts: float) -> int:
    return int(round(ts * 1000))


# Document.processingStatus as seen by the client polling loop
DOCUMENT_STATUS = {
    JobStatus.WAITING: "PENDING",
    JobStatus.ACTIVE: "PROCESSING",
    JobStatus.COMPLETED: "PROCESSED",
    JobStatus.FAILED: "FAILED",
}


def processing_status(job: Job) -> str:
    return DOCUMENT_STATUS[job.status]


# --- Payload variants, one per queue ---

def _require(data: Dict[str, Any], key: str, kind=None):
    if key not in data or data[key] is None:
        raise InvalidPayload(f"Payload is missing required field '{key}'.")
    value = data[key]
    if kind is not None and not isinstance(value, kind):
        raise InvalidPayload(f"Payload field '{key}' has the wrong type.")
    return value


def _choice(data: Dict[str, Any], key: str, choices) -> str:
    value = _require(data, key, str)
    if value not in choices:
        raise InvalidPayload(f"Payload field '{key}' must be one of: {', '.join(sorted(choices))}.")
    return value


@dataclass
class DocumentProcessingPayload:
    document_id: int
    file_path: Optional[str] = None
    mime_type: Optional[str] = None
    user_id: Optional[int] = None
    case_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentProcessingPayload":
        if "documentId" not in data and "docId" in data:
            data = dict(data, documentId=data["docId"])
        return cls(
            document_id=_require(data, "documentId", int),
            file_path=data.get("filePath"),
            mime_type=data.get("mimeType"),
            user_id=data.get("userId"),
            case_id=data.get("caseId"),
        )


REQUEST_TYPES = frozenset({"case_analysis", "document_summary", "legal_advice", "timeline_generation"})
REQUEST_PRIORITIES = frozenset({"low", "medium", "high", "urgent"})


@dataclass
class UserRequestPayload:
    request_id: str
    user_id: int
    case_id: int
    request_type: str
    request_data: Any
    priority: str = "medium"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRequestPayload":
        return cls(
            request_id=_require(data, "requestId", str),
            user_id=_require(data, "userId", int),
            case_id=_require(data, "caseId", int),
            request_type=_choice(data, "requestType", REQUEST_TYPES),
            request_data=_require(data, "requestData"),
            priority=_choice(data, "priority", REQUEST_PRIORITIES) if "priority" in data else "medium",
        )


ANALYSIS_TYPES = frozenset({"legal_review", "risk_assessment", "compliance_check", "evidence_analysis"})


@dataclass
class AIAnalysisPayload:
    analysis_id: str
    document_id: int
    case_id: int
    analysis_type: str
    content: str
    context: Any = field(default=None)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AIAnalysisPayload":
        return cls(
            analysis_id=_require(data, "analysisId", str),
            document_id=_require(data, "documentId", int),
            case_id=_require(data, "caseId", int),
            analysis_type=_choice(data, "analysisType", ANALYSIS_TYPES),
            content=_require(data, "content", str),
            context=data.get("context"),
        )


PAYLOAD_TYPES = {
    "document-processing": DocumentProcessingPayload,
    "user-requests": UserRequestPayload,
    "ai-analysis": AIAnalysisPayload,
}


def parse_payload(queue_name: str, data: Any):
    """Validate a raw payload dict against its queue's payload variant."""
    if not isinstance(data, dict):
        raise InvalidPayload("Payload must be a JSON object.")
    return PAYLOAD_TYPES[queue_name].from_dict(data)
