"""
Error taxonomy for the compliance core.

Every error is surfaced to the caller unmodified. `http_status` is only read by
the JSON API layer when it renders a response.
"""
from __future__ import annotations

from typing import Any


class ComplianceError(Exception):
    code = "compliance_error"
    http_status = 500

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        if self.context:
            out["context"] = self.context
        return out


class ValidationError(ComplianceError):
    code = "validation_error"
    http_status = 400


class NotFoundError(ComplianceError):
    code = "not_found"
    http_status = 404


class ConflictError(ComplianceError):
    code = "conflict"
    http_status = 409


class InvalidTransitionError(ComplianceError):
    code = "invalid_transition"
    http_status = 409


class UnauthorizedError(ComplianceError):
    code = "unauthorized"
    http_status = 403


class ConcurrentModificationError(ComplianceError):
    code = "concurrent_modification"
    http_status = 409


class EncodingError(ComplianceError):
    # Canonicalization failure: always a defect, never caused by the user.
    code = "encoding_error"
    http_status = 500


class TransactionTimeoutError(ComplianceError):
    code = "transaction_timeout"
    http_status = 503


class StorageError(ComplianceError):
    code = "storage_error"
    http_status = 500
