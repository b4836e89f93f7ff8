"""
Error taxonomy for the reconciliation engine.

The job worker is the only place these are caught and turned into
retry-or-terminal decisions. Each error class declares whether another
attempt can help (`retryable`) and which part of a job it belongs to
(`stage`), so terminal failures can say what went wrong.
"""

from typing import Optional


class TrackmuxError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False
    stage: str = "engine"


class BatchValidationError(TrackmuxError):
    """Raised when a batch is empty or malformed. Never retried."""

    retryable = False
    stage = "validation"


class ProviderError(TrackmuxError):
    """Raised when the upstream subscription provider call does not succeed."""

    retryable = True
    stage = "provider"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FilterTooLargeError(ProviderError):
    """Raised when the desired filter exceeds what the provider accepts."""

    retryable = False

    def __init__(self, size: int, limit: Optional[int] = None, status_code: Optional[int] = None):
        if limit is not None:
            message = f"Filter of {size} actors exceeds provider limit of {limit}"
        else:
            message = f"Provider rejected filter of {size} actors as too large"
        super().__init__(message, status_code=status_code)
        self.size = size
        self.limit = limit


class StorageError(TrackmuxError):
    """Raised when a durable read or write fails or times out."""

    retryable = True
    stage = "storage"


class JobNotFoundError(TrackmuxError):
    """Raised when a job id is unknown to the queue."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobNotCancellableError(TrackmuxError):
    """Raised when cancelling a job that is active or already terminal."""

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} cannot be cancelled from status {status}")
        self.job_id = job_id
        self.status = status
