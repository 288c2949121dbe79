# triage_cli/core_api/exceptions.py
from typing import List, Optional


class TriageError(Exception):
    """Base exception for triage application errors."""

    def __init__(self, message, original_exception=None):
        super().__init__(message)
        self.message = message
        self.original_exception = original_exception


class RuleValidationError(TriageError):
    """A rule, condition, action or batch item is malformed. Raised before anything is persisted."""

    def __init__(self, message, errors: Optional[List[str]] = None, original_exception=None):
        super().__init__(message, original_exception=original_exception)
        self.errors = errors or [message]


class InvalidParameterError(TriageError):
    """Indicates an invalid parameter was provided to an API function."""

    pass


class NotFoundError(TriageError):
    """A referenced entity does not exist for this owner."""

    pass


class RuleNotFoundError(NotFoundError):
    """Indicates a rule was not found."""

    pass


class RuleConflictError(TriageError):
    """Another rule of the same owner already uses this name."""

    pass


class RuleStorageError(TriageError):
    """Indicates an error during rule store operations."""

    pass


class ProviderError(TriageError):
    """A transient mail-provider failure. Retryable."""

    pass


class GmailApiError(ProviderError):
    """Indicates an error interacting with the Gmail API."""

    pass


class RateLimitedError(ProviderError):
    """The provider is throttling us. Always retryable; honour retry_after when given."""

    def __init__(self, message, retry_after: Optional[float] = None, original_exception=None):
        super().__init__(message, original_exception=original_exception)
        self.retry_after = retry_after


class FatalExecutionError(TriageError):
    """A permanent failure. Retrying cannot succeed."""

    pass


class EmailNotFoundError(NotFoundError, FatalExecutionError):
    """The message does not exist (or no longer exists) in the mailbox."""

    pass


class InvalidStateTransitionError(TriageError):
    """An outbox row was asked to make a transition its current status does not allow."""

    pass
