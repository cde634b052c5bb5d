"""Exception hierarchy for the sync core."""

from typing import Optional


class TrackerError(RuntimeError):
    """Base class for all tracker errors."""
    pass


class ConfigurationError(TrackerError):
    """Raised when required configuration is missing. Aborts a run before any write."""
    pass


class FeedError(TrackerError):
    """Raised when an external feed request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FeedIncompleteError(FeedError):
    """Raised when a feed could not be paged through completely."""
    pass


class MalformedRecordError(TrackerError):
    """Raised when a feed entry is missing required fields."""
    pass


class RetryExhaustedError(TrackerError):
    """Raised when a transient failure persists past the retry ceiling."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class ImmutableListingError(TrackerError):
    """Raised when a write would modify a closed listing or a listing's terms."""
    pass
