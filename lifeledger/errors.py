"""
Exception hierarchy for LifeLedger.

Every error carries a machine-readable `code` and an HTTP-style `status` so
callers (CLI, scheduler, any future HTTP layer) can branch without parsing
English messages. Only a failed raw capture is fatal to an ingestion request;
everything downstream degrades to "raw entry kept, derived data missing".
"""
from __future__ import annotations

from typing import Any

# Raw payloads can be large; keep enough for diagnosis
_RAW_PREVIEW = 2000


class LifeLedgerError(Exception):
    """Base class for all application-level errors."""
    status: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LifeLedgerError):
    """Bad or missing input. Raised before anything is written."""
    status = 400
    code = "VALIDATION_ERROR"


class EntryNotFoundError(LifeLedgerError):
    status = 404
    code = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        super().__init__(
            message=f"No entry found with id: {entry_id}",
            details={"entry_id": entry_id},
        )


class ExternalServiceError(LifeLedgerError):
    """The extraction gateway was unreachable, timed out or errored."""
    status = 502
    code = "EXTERNAL_SERVICE_ERROR"


class MalformedResultError(LifeLedgerError):
    """The gateway answered, but not with something the pipeline can use."""
    status = 502
    code = "MALFORMED_RESULT"

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(
            message=message,
            details={"raw": raw[:_RAW_PREVIEW]} if raw else {},
        )
        self.raw = raw


class PersistenceError(LifeLedgerError):
    """A store write failed. Earlier committed writes are left for the sweeper."""
    status = 500
    code = "PERSISTENCE_ERROR"
