from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_KEY = "INVALID_KEY"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"


class GravProxyError(Exception):
    """Raised by the cache engine for all expected failure conditions.

    Caught by server.py and translated into an HTTP status. Business logic
    never catches this; it propagates to the front door, which decides what
    the client sees.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
                "recoverable": self.recoverable,
            }
        }


class ConfigurationError(RuntimeError):
    """The runtime environment cannot support the service at all. Fatal at startup."""
