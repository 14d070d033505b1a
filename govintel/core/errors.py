from __future__ import annotations

from datetime import datetime


class JobError(Exception):
    """Base error raised while executing a leased job."""


class TransientJobError(JobError):
    """Retried through the job retry policy."""


class FatalJobError(JobError):
    """Fails the job immediately and flags the source for operator attention."""


class FetchError(TransientJobError):
    """Raised by source connectors when records cannot be fetched."""

    def __init__(self, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = fatal


class AnalysisError(Exception):
    """Raised by the qualitative analyzer; the score is left unadjusted."""


class RecordValidationError(ValueError):
    """Raised when a single raw record cannot be normalized."""


class RateLimitDeferred(JobError):
    """Raised when a source quota is exhausted; the job is deferred, not failed."""

    def __init__(self, source: str, retry_at: datetime) -> None:
        super().__init__(f"rate limit exhausted for source={source}; retry at {retry_at.isoformat()}")
        self.source = source
        self.retry_at = retry_at


class JobCancelled(JobError):
    """Raised at a checkpoint when the job was cancelled by an administrator."""
