"""Base exception hierarchy for tickercache.

All tickercache exceptions inherit from TickerCacheError, enabling consistent
error handling across the ingestion pipeline.
"""


class TickerCacheError(Exception):
    """Base exception for all tickercache errors."""

    pass


class StoreError(TickerCacheError):
    """Base for key-value store errors."""

    pass


class UpstreamError(TickerCacheError):
    """Base for upstream data provider errors."""

    pass


class JobError(TickerCacheError):
    """Base for batch job errors."""

    pass


class ValidationError(TickerCacheError):
    """Base for request validation errors."""

    pass


# =============================================================================
# Store Exceptions
# =============================================================================


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached or written."""

    pass


class ConcurrentUpdateError(StoreError):
    """Raised when a compare-and-set write loses against another writer."""

    pass


class RecordValidationError(StoreError):
    """Raised when a persisted payload does not match its schema."""

    pass


# =============================================================================
# Upstream Exceptions
# =============================================================================


class UpstreamConfigError(UpstreamError):
    """Raised when the upstream provider is not configured (missing token)."""

    pass


# =============================================================================
# Job Exceptions
# =============================================================================


class JobNotFoundError(JobError):
    """Raised when a batch job id has no stored record (unknown or expired)."""

    pass


class JobStateError(JobError):
    """Raised on a forbidden job status transition."""

    pass


class ChunkError(JobError):
    """Raised when a chunk fails as a whole; the job is marked failed."""

    def __init__(self, message: str, job_id: str, chunk: int):
        super().__init__(message)
        self.job_id = job_id
        self.chunk = chunk


# =============================================================================
# Validation Exceptions
# =============================================================================


class InvalidRequestError(ValidationError):
    """Raised when a job submission is malformed (bad chunk size, no symbols)."""

    pass
