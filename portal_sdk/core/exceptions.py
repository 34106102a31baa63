"""Portal SDK exceptions for error handling."""
from __future__ import annotations
from typing import Any, Optional


class PortalError(Exception):
    """Base exception for all portal SDK operations."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PortalError):
    """Configuration or call options are malformed or incomplete."""
    pass


class NotInitializedError(PortalError):
    """SDK used before ``initialize`` loaded a configuration."""
    pass


class NotReadyError(PortalError):
    """Portal API is not (yet) reachable, or the SDK was not initialized."""
    pass


class AuthError(PortalError):
    """Machine identity or token exchange failed.

    Attributes:
        status_code: HTTP status code from the identity endpoint (None if unreachable)
        message: Error message
        endpoint: Identity endpoint that failed
    """

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: str = ""):
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)

    def __str__(self) -> str:
        if self.status_code is None:
            return f"{self.endpoint}: {self.message}" if self.endpoint else self.message
        return f"[{self.status_code}] {self.endpoint}: {self.message}"


class PollTimeoutError(PortalError, TimeoutError):
    """A URL did not answer with the expected status within the await budget.

    Attributes:
        url: Polled URL
        attempts: Number of requests issued
        last_status_code: Status of the last response (None if no response)
        last_error: Transport error of the last attempt, if any
    """

    def __init__(
        self,
        url: str,
        attempts: int,
        last_status_code: Optional[int] = None,
        last_error: Optional[str] = None,
    ):
        self.url = url
        self.attempts = attempts
        self.last_status_code = last_status_code
        self.last_error = last_error
        last = f"status {last_status_code}" if last_status_code is not None else (last_error or "no response")
        super().__init__(f"{url} not ready after {attempts} attempt(s), last: {last}")


API_ERROR_CAUSES = ("network", "http", "timeout", "validation")


class ApiError(PortalError):
    """Failure of a steady-state call against the portal API.

    Attributes:
        status_code: HTTP status code (None for network/validation failures)
        message: Error message from the response body, or the status text
        cause: One of ``network``, ``http``, ``timeout``, ``validation``
        endpoint: URL that failed
        body: Parsed response body, if any
    """

    def __init__(
        self,
        cause: str,
        message: str,
        status_code: Optional[int] = None,
        endpoint: str = "",
        body: Any = None,
    ):
        if cause not in API_ERROR_CAUSES:
            raise ValueError(f"Unknown ApiError cause: {cause}")
        self.cause = cause
        self.status_code = status_code
        self.endpoint = endpoint
        self.body = body
        super().__init__(message)

    def __str__(self) -> str:
        if self.status_code is None:
            return f"({self.cause}) {self.endpoint}: {self.message}"
        return f"[{self.status_code}] {self.endpoint}: {self.message}"

    def to_dict(self) -> dict:
        return {"statusCode": self.status_code, "message": self.message, "cause": self.cause}
