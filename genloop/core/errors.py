"""
Exception hierarchy for the generation pipeline.

Transport failures, missing artifacts and cancellation all derive from
GenloopError so callers can isolate pipeline failures from programming errors.
"""

from typing import Optional


class GenloopError(Exception):
    """Base class for all pipeline errors."""


class TransportError(GenloopError):
    """An external HTTP call did not produce a usable response."""


class FatalHttp(TransportError):
    """Raised for a non-transient, non-2xx status. Never retried."""

    def __init__(self, status: int, body: str = "", attempts: int = 1):
        message = f"API: {status}"
        if attempts > 1:
            message += f" (after {attempts} tries)"
        super().__init__(message)
        self.status = status
        self.body = body
        self.attempts = attempts


class ExhaustedRetries(TransportError):
    """Raised when every attempt ended with a transient failure."""

    def __init__(self, attempts: int, last_cause: str, status: Optional[int] = None):
        super().__init__(f"API: {last_cause} (after {attempts} tries)")
        self.attempts = attempts
        self.last_cause = last_cause
        self.status = status


class NoArtifactProduced(GenloopError):
    """A 2xx generation response carried no image part."""

    def __init__(self, remark: Optional[str] = None):
        message = "No image returned"
        if remark:
            message += f": {remark[:200]}"
        super().__init__(message)
        self.remark = remark


class OperationCancelled(GenloopError):
    """Raised when a cancellation token is observed between units of work."""
