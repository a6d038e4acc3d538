"""Custom exception types for finmail.

Error messages state what failed, the condition that caused it, and how to
fix it where a fix is known.
"""


class FinmailError(Exception):
    """Base exception for all finmail errors."""

    pass


class ConfigValidationError(FinmailError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(FinmailError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(FinmailError):
    """Raised when a Google OAuth exchange or refresh fails, or no token is stored."""

    pass


class GmailAPIError(FinmailError):
    """Raised when the Gmail REST API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_reason: Error reason from the Google error payload (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_reason: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_reason = error_reason


class RateLimitExceeded(FinmailError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    This is raised when the rate limiter would require an excessive wait time
    (>20 seconds) rather than blocking indefinitely.
    """

    pass


class DatabaseError(FinmailError):
    """Raised when SQLite operations fail."""

    pass


class BatchJobError(FinmailError):
    """Raised when a batch job cannot be created, enumerated or transitioned.

    Attributes:
        job_id: The batch job the error relates to (None before creation)
    """

    def __init__(self, message: str, job_id: int | None = None):
        super().__init__(message)
        self.job_id = job_id


class ExportError(FinmailError):
    """Raised when an export file cannot be produced."""

    pass


class BatchItemError(FinmailError):
    """Raised when one item of a batch job cannot be processed.

    The tracker records the message on the item's operation and moves on
    to the next item.
    """

    pass
