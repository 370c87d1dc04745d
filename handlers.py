"""
Built-in handlers for the three queues. The application normally supplies
its own through ``jobctl worker start --handlers module:attr``; these keep a
fresh install runnable end to end without an OCR or LLM backend.
"""
import logging
import mimetypes
from collections import Counter

from config import AI_ANALYSIS, DOCUMENT_PROCESSING, USER_REQUESTS
from models import AIAnalysisPayload, DocumentProcessingPayload, UserRequestPayload

logger = logging.getLogger(__name__)

SUMMARY_LENGTH = 200


def process_document(payload: DocumentProcessingPayload, progress):
    if not payload.file_path:
        raise ValueError(f"Document {payload.document_id} has no file to process")

    mime_type = payload.mime_type or mimetypes.guess_type(payload.file_path)[0] or ""
    if not mime_type.startswith("text/"):
        raise ValueError(f"Unsupported file type for text extraction: {mime_type or 'unknown'}")

    logger.info("Extracting text from document %s", payload.document_id)
    with open(payload.file_path, encoding="utf-8", errors="replace") as f:
        text = f.read()
    progress(50)

    summary = " ".join(text.split())[:SUMMARY_LENGTH]
    return {
        "success": True,
        "documentId": payload.document_id,
        "extractedText": text,
        "summary": summary,
    }


def process_user_request(payload: UserRequestPayload, progress):
    progress(10)
    return {
        "success": True,
        "requestId": payload.request_id,
        "result": {
            "requestType": payload.request_type,
            "caseId": payload.case_id,
            "request": payload.request_data,
        },
    }


def perform_ai_analysis(payload: AIAnalysisPayload, progress):
    words = [w.strip(".,;:!?()\"'").lower() for w in payload.content.split()]
    words = [w for w in words if w]
    progress(50)
    if progress.cancelled:
        raise RuntimeError(f"Analysis {payload.analysis_id} was cancelled")

    return {
        "success": True,
        "analysisId": payload.analysis_id,
        "analysisType": payload.analysis_type,
        "wordCount": len(words),
        "topTerms": [term for term, _ in Counter(words).most_common(5)],
    }


HANDLERS = {
    DOCUMENT_PROCESSING: process_document,
    USER_REQUESTS: process_user_request,
    AI_ANALYSIS: perform_ai_analysis,
}
