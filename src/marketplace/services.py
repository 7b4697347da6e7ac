"""Service bundle shared by the API server and scripts."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from database import DocumentStore
from marketplace.catalog import CatalogService
from marketplace.moderation import ModerationService
from marketplace.notifications import ModerationNotifier
from marketplace.repository import MarketplaceRepository
from marketplace.sponsorship import SponsorshipService


@dataclass(slots=True)
class MarketplaceServices:
    store: DocumentStore
    moderation: ModerationService
    sponsorships: SponsorshipService
    catalog: CatalogService


def build_services(
    store: DocumentStore | None = None,
    *,
    notifier: ModerationNotifier | None = None,
    clock: Callable[[], datetime] | None = None,
) -> MarketplaceServices:
    """Wire all services to one store so change listeners see every write."""
    store = store or DocumentStore()
    repository = MarketplaceRepository(store)
    return MarketplaceServices(
        store=store,
        moderation=ModerationService(repository, notifier=notifier, clock=clock),
        sponsorships=SponsorshipService(repository, clock=clock),
        catalog=CatalogService(repository, clock=clock),
    )
