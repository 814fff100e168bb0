"""Typed errors raised by the workspace service and mapped to HTTP responses."""

from __future__ import annotations

__all__ = [
    "WorkspaceError",
    "AuthenticationRequired",
    "NotFound",
    "PermissionDenied",
    "ValidationFailed",
    "Conflict",
    "Gone",
    "UsageLimitExceeded",
    "UpstreamFailed",
]


class WorkspaceError(Exception):
    """Base class; ``status_code`` is the HTTP status the API responds with."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthenticationRequired(WorkspaceError):
    status_code = 401


class NotFound(WorkspaceError):
    status_code = 404


class PermissionDenied(WorkspaceError):
    """Resolved role is missing (404) or insufficient (403)."""

    status_code = 403


class ValidationFailed(WorkspaceError):
    status_code = 400


class Conflict(WorkspaceError):
    status_code = 409


class Gone(WorkspaceError):
    """The resource existed but can no longer be used (expired, used up)."""

    status_code = 410


class UsageLimitExceeded(WorkspaceError):
    status_code = 403


class UpstreamFailed(WorkspaceError):
    """An LLM provider call failed."""

    status_code = 502
