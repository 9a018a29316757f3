"""Exception types surfaced by the NeedleDrop services."""

from __future__ import annotations


class NeedleDropError(Exception):
    """Base error carrying the HTTP status and machine-readable code."""

    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, str]:
        return {"error": self.error, "detail": self.message}


class AuthenticationError(NeedleDropError):
    """No identity could be resolved and no fallback owner is configured."""

    status_code = 401
    error = "unauthorized"


class ValidationError(NeedleDropError):
    """A required request field is missing or unusable."""

    status_code = 400
    error = "invalid_request"


class ExternalServiceError(NeedleDropError):
    """Discogs answered with a non-success status or could not be reached."""

    status_code = 502
    error = "discogs_error"


class MigrationFailure(NeedleDropError):
    """A destructive schema rebuild failed and the store needs attention."""

    error = "migration_failure"
