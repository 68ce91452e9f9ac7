"""Error taxonomy for Conductor.

Every failure the core raises is a ``ConductorError`` subclass carrying the
HTTP status it maps to. The server renders all of them through one exception
handler so every error path produces the same structured body.
"""

from __future__ import annotations

from typing import Any


class ConductorError(Exception):
    """Base class for all errors surfaced to API callers."""

    status_code: int = 500
    error: str = "Internal Server Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "statusCode": self.status_code,
            "error": self.error,
            "message": self.message,
        }


class BadRequestError(ConductorError):
    status_code = 400
    error = "Bad Request"


class UnauthorizedError(ConductorError):
    status_code = 401
    error = "Unauthorized"


class ForbiddenError(ConductorError):
    status_code = 403
    error = "Forbidden"


class NotFoundError(ConductorError):
    status_code = 404
    error = "Not Found"


class InternalError(ConductorError):
    """Unexpected collaborator failure (SCM, persistence)."""


class FanoutError(InternalError):
    """Some items of a best-effort fan-out failed.

    ``failures`` maps an item label (destination pipeline, job name) to the
    error message; ``succeeded`` lists the labels that committed.
    """

    def __init__(self, message: str, failures: dict[str, str], succeeded: list[str] | None = None):
        super().__init__(message)
        self.failures = failures
        self.succeeded = succeeded or []

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["failures"] = self.failures
        body["succeeded"] = self.succeeded
        return body
