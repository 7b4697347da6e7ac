"""Marketplace module entrypoints and service factory."""

from marketplace.catalog import CatalogService
from marketplace.errors import (
    AccessDeniedError,
    InvalidTransitionError,
    MarketplaceError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from marketplace.moderation import ModerationService
from marketplace.notifications import build_notifier
from marketplace.services import MarketplaceServices, build_services
from marketplace.sponsorship import SponsorshipService

__all__ = [
    "AccessDeniedError",
    "CatalogService",
    "InvalidTransitionError",
    "MarketplaceError",
    "MarketplaceServices",
    "ModerationService",
    "NotFoundError",
    "SponsorshipService",
    "StoreUnavailableError",
    "ValidationError",
    "build_notifier",
    "build_services",
]
