"""Custom exceptions for the application.

Provider-level exceptions are raised inside adapters only; the pipeline
turns them into ``NormalizedResult.error`` or an ``ErrorEvent`` before they
reach a caller.
"""

from typing import Optional


class FiestaException(Exception):
    """Base class for application exceptions with an HTTP status code."""
    status_code: int = 500

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)


class RequestValidationError(FiestaException):
    """Raised when an inbound chat request fails boundary validation.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400


class ProviderNotFoundError(FiestaException):
    """Raised when a request names a provider that is not registered.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class ProviderCallError(FiestaException):
    """A backend call failed at the transport level or declared an error."""
    status_code = 502

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        provider: Optional[str] = None,
    ):
        self.code = code
        self.provider = provider
        super().__init__(message)


class MissingAPIKeyError(ProviderCallError):
    """Neither the caller nor the server configuration supplied a key."""

    def __init__(self, provider: Optional[str] = None):
        super().__init__("Missing API key", code=401, provider=provider)
