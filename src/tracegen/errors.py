"""Exception taxonomy for tracegen components."""

from __future__ import annotations


class TracegenError(Exception):
    """Base class for tracegen errors."""


class NetworkError(TracegenError):
    """Raised when a remote collaborator (row source, model endpoint) fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ItemTimeoutError(TracegenError):
    """Raised when a single item exceeds its generation deadline."""

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Timed out after {seconds:g} seconds")
        self.seconds = seconds


class AbortedError(TracegenError):
    """Raised when work is cancelled through a :class:`CancellationToken`."""

    def __init__(self, reason: str = "Halted by user") -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationError(TracegenError):
    """Raised when model output or a prompt template fails validation."""


class SummarizationError(TracegenError):
    """Raised when the summarize compaction strategy cannot produce a summary."""
