from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    LISTING_FETCH_FAILED = "LISTING_FETCH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    LOGIN_FAILED = "LOGIN_FAILED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    MEMBER_FETCH_FAILED = "MEMBER_FETCH_FAILED"
    INVALID_INPUT = "INVALID_INPUT"


class PdsCountError(Exception):
    """Raised for all expected failure conditions.

    The listing client raises it for transport failures; the estimator
    either recovers locally (mid-walk pages, fleet members) or re-raises it
    as ``UPSTREAM_UNAVAILABLE``. server.py maps it onto the HTTP envelope.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str = "",
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
