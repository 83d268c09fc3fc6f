"""Exception taxonomy surfaced by the session pipeline."""
from __future__ import annotations

from typing import Any

import httpx


SESSION_EXPIRED_REASON = "session-expired"


class PortalError(RuntimeError):
    """Base class for every error raised by the pipeline."""


class NetworkError(PortalError):
    """Raised when a request never produced an HTTP response."""

    def __init__(self, message: str, *, request: httpx.Request | None = None) -> None:
        super().__init__(message)
        self.request = request


class ServerRejectedError(PortalError):
    """The server answered with an error status; carried through verbatim."""

    def __init__(
        self,
        status_code: int,
        detail: str | None = None,
        *,
        payload: Any = None,
        response: httpx.Response | None = None,
    ) -> None:
        super().__init__(detail or f"Request failed with status {status_code}")
        self.status_code = status_code
        self.detail = detail
        self.payload = payload
        self.response = response

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ServerRejectedError":
        payload: Any = None
        detail: str | None = None
        try:
            payload = response.json()
        except ValueError:
            detail = response.text or None
        if isinstance(payload, dict):
            for key in ("detail", "message", "error"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    detail = value
                    break
        return cls(response.status_code, detail, payload=payload, response=response)


class RateLimitedError(ServerRejectedError):
    """HTTP 429 from the server."""


class UnauthorizedError(ServerRejectedError):
    """Authorization failed and the request may not be retried again."""


class SessionExpiredError(PortalError):
    """The session could not be refreshed and has been cleared."""

    def __init__(self, message: str = "Session expired", *, reason: str = SESSION_EXPIRED_REASON) -> None:
        super().__init__(message)
        self.reason = reason


class InvalidStepUpCodeError(PortalError):
    """A secondary-factor code was malformed or rejected by the server."""

    def __init__(self, message: str = "Invalid verification code", *, client_side: bool = False) -> None:
        super().__init__(message)
        self.client_side = client_side


class MissingCredentialsError(PortalError, ValueError):
    """A required email or password was blank; raised before any request is sent."""


class StepUpStateError(PortalError):
    """The requested step-up operation is not valid in the current state."""


def error_for_response(response: httpx.Response) -> ServerRejectedError:
    """Map an error ``response`` onto the matching exception type."""

    error = ServerRejectedError.from_response(response)
    if response.status_code == 401:
        return UnauthorizedError(error.status_code, error.detail, payload=error.payload, response=response)
    if response.status_code == 429:
        return RateLimitedError(error.status_code, error.detail, payload=error.payload, response=response)
    return error


__all__ = [
    "InvalidStepUpCodeError",
    "MissingCredentialsError",
    "NetworkError",
    "PortalError",
    "RateLimitedError",
    "SESSION_EXPIRED_REASON",
    "ServerRejectedError",
    "SessionExpiredError",
    "StepUpStateError",
    "UnauthorizedError",
    "error_for_response",
]
