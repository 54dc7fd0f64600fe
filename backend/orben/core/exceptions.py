"""Custom exception classes for the application."""

from typing import Optional


class OrbenException(Exception):
    """Base exception for all Orben errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(OrbenException):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} with identifier '{identifier}' not found")


class FetchError(OrbenException):
    """Raised when a source or search provider cannot be fetched.

    Covers network failures, timeouts, HTTP errors and unparseable feeds.
    ``retryable`` is True for timeouts, transport errors, 429 and 5xx.
    """

    def __init__(
        self,
        source: str,
        message: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.source = source
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"Fetch error for {source}: {message}")


class NormalizationError(OrbenException):
    """Raised when a single raw record cannot be mapped to a canonical deal."""


class PersistenceError(OrbenException):
    """Raised when the deal store is unavailable or rejects a write."""


class BudgetExhausted(OrbenException):
    """Signals that a provider has no request budget left in the current window.

    Not a failure: the orchestrator skips the provider and moves on.
    """

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Request budget exhausted for {provider}")


class UserQuotaExceeded(OrbenException):
    """Signals that a user has used up their daily search quota.

    Like BudgetExhausted, the orchestrator reports it per provider and moves on.
    """

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Daily search quota exceeded for user {user_id}")


class CacheUnavailable(OrbenException):
    """Raised when the cache layer cannot be reached."""
