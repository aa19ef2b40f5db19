"""
Error types shared by the API gateway and the session manager.

The transport layer classifies every failure into an ``ErrorKind`` so
that callers branch on a tagged value rather than on message text.
"""
from __future__ import annotations

import enum
import re
from typing import Any, Optional


class ErrorKind(str, enum.Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SERVER = "server"
    NETWORK = "network"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"


AUTH_ERROR_KINDS = {ErrorKind.UNAUTHORIZED, ErrorKind.FORBIDDEN}

# Only consulted for exceptions that did not come from the gateway
LEGACY_AUTH_ERROR_PATTERN = re.compile(r"401|403|token|unauthorized|authentication", re.IGNORECASE)


class ApiError(Exception):
    """A failed request to the MamaCare backend."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.SERVER,
        *,
        status: Optional[int] = None,
        errors: Optional[list[dict[str, Any]]] = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = ErrorKind(kind)
        self.status = status
        self.errors = errors or []
        self.payload = payload
        # Set once the authentication-failure hook has run for this error
        self.handled = False

    def __repr__(self) -> str:
        return f"ApiError(kind={self.kind.value!r}, status={self.status!r}, message={self.message!r})"

    @property
    def is_authentication_error(self) -> bool:
        return self.kind in AUTH_ERROR_KINDS

    @classmethod
    def from_status(cls, status: int, payload: Any = None) -> "ApiError":
        """Build an error from an HTTP status and the decoded response body."""
        if status == 401:
            kind = ErrorKind.UNAUTHORIZED
        elif status == 403:
            kind = ErrorKind.FORBIDDEN
        elif status in (400, 409, 422):
            kind = ErrorKind.VALIDATION
        elif status == 404:
            kind = ErrorKind.NOT_FOUND
        elif status >= 500:
            kind = ErrorKind.SERVER
        else:
            kind = ErrorKind.INVALID_RESPONSE

        message = None
        errors = None
        if isinstance(payload, dict):
            message = payload.get("message") or payload.get("detail")
            errors = payload.get("errors") if isinstance(payload.get("errors"), list) else None
        if kind in AUTH_ERROR_KINDS:
            message = f"Authentication failed ({status}): {message or 'Unauthorized'}"
        elif not message:
            message = f"HTTP {status}"
        return cls(str(message), kind, status=status, errors=errors, payload=payload)


class NotAuthenticatedError(ApiError):
    """An authenticated call was attempted while no session is held."""

    def __init__(self, message: str = "No authentication token"):
        super().__init__(message, ErrorKind.UNAUTHORIZED)


def is_authentication_error(exc: BaseException) -> bool:
    """Whether ``exc`` means the held credential is no longer accepted."""
    if isinstance(exc, ApiError):
        return exc.is_authentication_error
    return bool(LEGACY_AUTH_ERROR_PATTERN.search(str(exc)))


def api_exception_payload(exc: BaseException) -> dict[str, Any]:
    """Normalize any exception into the ``{'ok': False, 'error': ...}`` shape."""
    if isinstance(exc, ApiError):
        error: dict[str, Any] = {'code': exc.kind.value, 'message': exc.message}
        if exc.status is not None:
            error['status'] = exc.status
        if exc.errors:
            error['errors'] = exc.errors
        return {'ok': False, 'error': error}
    return {'ok': False, 'error': {'code': 'client_error', 'message': str(exc)}}
