"""Shared error classes for research orchestration, callbacks and persistence."""

from __future__ import annotations

PARSE_FAILURE_MESSAGE = "Unable to parse research response"


class ResearchError(RuntimeError):
    """Base exception raised by the research services."""

    def __init__(self, message: str, code: str = "RESEARCH_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ResearchValidationError(ResearchError):
    """Raised when an inbound payload is malformed."""

    def __init__(self, message: str, code: str = "400_INVALID_PAYLOAD") -> None:
        super().__init__(message, code=code)


class ResearchNotFoundError(ResearchError):
    """Raised when a referenced campaign or research record does not exist."""

    def __init__(self, message: str, code: str = "404_NOT_FOUND") -> None:
        super().__init__(message, code=code)


class ResearchPersistenceError(ResearchError):
    """Raised when the store fails to save or load research rows."""

    def __init__(self, message: str, code: str = "500_INTERNAL") -> None:
        super().__init__(message, code=code)


class ResearchPreconditionError(ResearchError):
    """Raised when an operation cannot run in the current progress state."""

    def __init__(self, message: str, code: str = "409_PRECONDITION_FAILED") -> None:
        super().__init__(message, code=code)


class ResearchParseError(ResearchError):
    """Raised when AI output is not valid JSON after unwrapping."""

    def __init__(
        self,
        message: str = PARSE_FAILURE_MESSAGE,
        code: str = "RESEARCH_PARSE_ERROR",
        *,
        raw: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.raw = raw


def status_for_code(code: str, default: int = 500) -> int:
    """Extract the HTTP status prefix from an error code such as ``404_NOT_FOUND``."""
    prefix = (code or "").split("_", 1)[0]
    if prefix.isdigit() and len(prefix) == 3:
        return int(prefix)
    return default
