"""Domain errors raised by the arena engine.

Every error carries a stable ``code`` and a ``details`` dict so the HTTP layer
and the progress stream can surface the same information. ``to_http_exception``
is the single place where these map onto status codes.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class ArenaError(Exception):
    code: str = "arena_error"
    status_code: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        self.message = str(message)
        self.details = dict(details or {})
        super().__init__(self.message)


class AuthorizationError(ArenaError):
    code = "forbidden"
    status_code = 403


class NotFoundError(ArenaError):
    code = "not_found"
    status_code = 404


class ValidationError(ArenaError):
    code = "invalid_input"
    status_code = 422


class ConflictError(ArenaError):
    """The battle is not in a state that allows the requested transition."""

    code = "conflict"
    status_code = 409


class UpstreamError(ArenaError):
    """A collaborator call (GitHub, AI, email) failed."""

    code = "upstream_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        service: str,
        upstream_status: int | None = None,
        retry_after_sec: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = {"service": service, **(details or {})}
        if upstream_status is not None:
            merged["upstream_status"] = int(upstream_status)
        if retry_after_sec is not None:
            merged["retry_after_sec"] = float(retry_after_sec)
        super().__init__(message, details=merged)
        self.service = service
        self.upstream_status = upstream_status
        self.retry_after_sec = retry_after_sec

    @property
    def rate_limited(self) -> bool:
        return self.upstream_status == 429 or self.retry_after_sec is not None


class PersistenceError(ArenaError):
    code = "persistence_error"
    status_code = 500


class BattleTimeoutError(ArenaError):
    code = "timeout"
    status_code = 504


def to_http_exception(exc: ArenaError) -> HTTPException:
    headers: dict[str, str] | None = None
    if isinstance(exc, UpstreamError) and exc.retry_after_sec is not None:
        headers = {"Retry-After": str(max(1, int(exc.retry_after_sec)))}
    return HTTPException(
        status_code=exc.status_code,
        detail={"error": exc.code, "message": exc.message, "details": exc.details},
        headers=headers,
    )
