"""
Request pipeline exceptions.

Every failure that leaves the pipeline is exactly one of the ApiError
subclasses below, so callers never need to inspect httpx exception types.
"""

import asyncio
from enum import Enum
from typing import Any

import httpx


class ErrorKind(str, Enum):
    """Classification of a terminal pipeline failure."""

    TIMEOUT = "TIMEOUT"
    BAD_RESPONSE = "BAD_RESPONSE"
    CONNECTION_FAILURE = "CONNECTION_FAILURE"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


_STATUS_MESSAGES = {
    400: "Invalid request. Please check your input.",
    401: "Please log in to continue.",
    403: "Access denied.",
    404: "Resource not found.",
    429: "Too many requests. Please wait and try again.",
    500: "Server error. Please try again later.",
    502: "Server error. Please try again later.",
    503: "Server error. Please try again later.",
}


class ApiError(Exception):
    """Base exception for request pipeline errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def user_message(self) -> str:
        """Message suitable for showing to the user."""
        return "Something went wrong. Please try again later."

    @property
    def is_auth_error(self) -> bool:
        """True when the user should be asked to reconnect rather than retry."""
        return False

    @property
    def is_network_error(self) -> bool:
        return self.kind in (ErrorKind.TIMEOUT, ErrorKind.CONNECTION_FAILURE)


class RequestTimeoutError(ApiError):
    """Request timed out."""

    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        message: str = "Connection timeout. Please check your internet connection.",
    ):
        super().__init__(message, status_code=408)

    @property
    def user_message(self) -> str:
        return "Connection timeout. Please check your internet connection."


class BadResponseError(ApiError):
    """Server answered with a non-2xx status."""

    kind = ErrorKind.BAD_RESPONSE

    def __init__(self, status_code: int, message: str = "Unknown error occurred"):
        super().__init__(message, status_code=status_code)

    @property
    def code(self) -> str:
        return f"{self.kind.value}_{self.status_code}"

    @property
    def user_message(self) -> str:
        return _STATUS_MESSAGES.get(
            self.status_code, "Something went wrong. Please try again."
        )

    @property
    def is_auth_error(self) -> bool:
        return self.status_code == 401


class ConnectionFailureError(ApiError):
    """Could not reach the server."""

    kind = ErrorKind.CONNECTION_FAILURE

    def __init__(self, message: str = "Connection failed."):
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return "No internet connection. Please check your network."


class RequestCancelledError(ApiError):
    """Request was cancelled before it completed."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Request cancelled"):
        super().__init__(message, status_code=0)

    @property
    def user_message(self) -> str:
        return "Request was cancelled."


class UnknownApiError(ApiError):
    """Any failure that fits no other kind."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "Network error. Please try again."):
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return "Network error. Please try again."


def error_message_from_body(body: Any) -> str:
    """Pull a server-provided message out of an error response body."""
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return "Unknown error occurred"


def classify_exception(exc: BaseException) -> ApiError:
    """Map any exception onto exactly one ApiError kind."""
    if isinstance(exc, ApiError):
        return exc

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return RequestTimeoutError()

    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        try:
            body = response.json()
        except ValueError:
            body = None
        return BadResponseError(response.status_code, error_message_from_body(body))

    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError, httpx.ProxyError)):
        return ConnectionFailureError(f"Connection failed: {exc}")

    if isinstance(exc, asyncio.CancelledError):
        return RequestCancelledError()

    return UnknownApiError(str(exc) or type(exc).__name__)
