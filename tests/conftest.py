import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from database import DocumentStore
from marketplace import build_services
from marketplace.models import SponsorshipSettings
from marketplace.sponsorship import SponsorshipService

FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.created: list[dict] = []
        self.decided: list[dict] = []

    async def submission_created(self, submission: dict) -> None:
        self.created.append(submission)

    async def submission_decided(self, submission: dict) -> None:
        self.decided.append(submission)


@pytest.fixture
def store(tmp_path):
    store = DocumentStore(str(tmp_path / "marketplace.db"))
    asyncio.run(store.init_db())
    return store


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(store, notifier, clock):
    bundle = build_services(store, notifier=notifier, clock=clock)
    # Independent of SPONSORED_* variables in the developer's environment.
    bundle.sponsorships = SponsorshipService(
        bundle.moderation.repository,
        clock=clock,
        defaults=SponsorshipSettings(),
    )
    return bundle
