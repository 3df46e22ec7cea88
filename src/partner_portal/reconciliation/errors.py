"""Reconciliation error taxonomy.

Every error carries a stable machine-readable ``code`` and the HTTP status the
API layer renders it with. Handlers raise these; the FastAPI exception handler
in main.py turns them into ``{"error": code, "message": ...}`` bodies.
"""

from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """Base class for all reconciliation failures."""

    code = "reconciliation_error"
    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class InputValidationError(ReconciliationError):
    """Required payload field missing or unusable. Not retried."""

    code = "invalid_input"
    status_code = 400


class MalformedRecordError(InputValidationError):
    """A CRM record fetched during sync lacks required fields; it is skipped."""

    code = "malformed_record"


class EntityNotFoundError(ReconciliationError):
    code = "not_found"
    status_code = 404


class ConcurrencyConflictError(ReconciliationError):
    """A compare-and-set update found a different row version."""

    code = "concurrency_conflict"
    status_code = 409


class DuplicateRecordError(ReconciliationError):
    code = "duplicate_record"
    status_code = 409


class SyncAlreadyRunningError(ReconciliationError):
    code = "sync_in_progress"
    status_code = 409


class UpstreamError(ReconciliationError):
    """Zoho or storage call failed; the next scheduled run is the retry."""

    code = "upstream_error"
    status_code = 502


class HandlerTimeoutError(ReconciliationError):
    """A webhook handler exceeded WEBHOOK_TIMEOUT_SECONDS."""

    code = "timeout"
    status_code = 504


class WebhookProcessingError(ReconciliationError):
    """Unexpected failure inside a webhook handler; Zoho retries the event."""

    code = "webhook_processing_failed"
    status_code = 500
