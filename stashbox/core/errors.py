"""
Domain error taxonomy.

Every error raised by the lifecycle engine derives from StashboxError and
carries the HTTP status the API layer answers with, a stable machine-readable
code, and whether a client may retry the same request unchanged.
"""
from typing import Any, Dict, Optional


class StashboxError(Exception):
    """Base class for all lifecycle engine errors."""

    status_code: int = 500
    code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": self.message,
            "code": self.code,
            "status_code": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return body


class AuthInvalid(StashboxError):
    """Missing, unknown, inactive or expired API key."""

    status_code = 401
    code = "auth_invalid"


class InvalidUpload(StashboxError):
    """Malformed upload request (no files, bad field, disallowed type)."""

    status_code = 400
    code = "invalid_upload"


class FileNotFound(StashboxError):
    """File id unknown or not owned by the tenant."""

    status_code = 404
    code = "file_not_found"


class PlanLimitExceeded(StashboxError):
    """
    A plan limit was hit.

    limit is one of 'file_size', 'storage' or 'requests'. Request-rate
    rejections answer 429, size and storage rejections answer 413.
    """

    code = "plan_limit_exceeded"

    def __init__(self, message: str, limit: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.limit = limit
        self.status_code = 429 if limit == "requests" else 413
        self.details.setdefault("limit", limit)


class NameConflict(StashboxError):
    """Target name already taken and the caller asked for reject-on-conflict."""

    status_code = 409
    code = "name_conflict"


class BackendUnavailable(StashboxError):
    """Object storage call failed or timed out."""

    status_code = 503
    code = "backend_unavailable"
    retryable = True


class MetadataStoreError(StashboxError):
    """Relational metadata store call failed."""

    status_code = 500
    code = "metadata_store_error"
    retryable = True
