"""Marketplace domain errors."""

from database import StoreUnavailableError


class MarketplaceError(RuntimeError):
    """Base marketplace domain error."""


class NotFoundError(MarketplaceError):
    """Raised when a submission or record doesn't exist."""


class InvalidTransitionError(MarketplaceError):
    """Raised when a submission is no longer in the state the action needs."""


class ValidationError(MarketplaceError):
    """Raised when input or ownership is invalid."""


class AccessDeniedError(MarketplaceError):
    """Raised when the caller cannot act on someone else's submission."""


__all__ = [
    "AccessDeniedError",
    "InvalidTransitionError",
    "MarketplaceError",
    "NotFoundError",
    "StoreUnavailableError",
    "ValidationError",
]
