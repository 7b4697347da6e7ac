import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from database import StoreUnavailableError
from marketplace.errors import NotFoundError, ValidationError
from marketplace.models import Sponsorship
from marketplace.sponsorship import (
    conversion_rate,
    ctr,
    priority_for_level,
    select_for_display,
    sponsorship_status,
)


FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

WINDOW = {
    "start_date": "2025-05-01T00:00:00+00:00",
    "end_date": "2025-07-01T00:00:00+00:00",
}


def _sponsorship(sid, priority, *, is_active=True, start="2025-05-01", end="2025-07-01", created_at="2025-05-01"):
    return Sponsorship(
        id=sid,
        restaurant_id=f"r-{sid}",
        priority=priority,
        start_date=start,
        end_date=end,
        is_active=is_active,
        created_at=created_at,
    )


async def _restaurants(services, *names):
    ids = []
    for name in names:
        restaurant = await services.catalog.create_restaurant({"name": name})
        ids.append(restaurant["id"])
    return ids


# ---- pure ranking rules ----


def test_status_checks_flag_before_dates():
    expired_but_inactive = _sponsorship("a", 1, is_active=False, end="2025-01-01")
    assert sponsorship_status(expired_but_inactive, FIXED_NOW) == "inactive"
    assert sponsorship_status(_sponsorship("b", 1, start="2025-07-01", end="2025-08-01"), FIXED_NOW) == "scheduled"
    assert sponsorship_status(_sponsorship("c", 1, start="2025-01-01", end="2025-02-01"), FIXED_NOW) == "expired"
    assert sponsorship_status(_sponsorship("d", 1), FIXED_NOW) == "active"


def test_status_window_bounds_are_inclusive():
    item = _sponsorship("a", 1, start=FIXED_NOW.isoformat(), end=FIXED_NOW.isoformat())
    assert sponsorship_status(item, FIXED_NOW) == "active"
    assert sponsorship_status(item, FIXED_NOW + timedelta(seconds=1)) == "expired"
    assert sponsorship_status(item, FIXED_NOW - timedelta(seconds=1)) == "scheduled"


def test_status_accepts_records_and_naive_now():
    record = {"id": "x", "is_active": True, "start_date": "2025-05-01", "end_date": "2025-07-01"}
    assert sponsorship_status(record, datetime(2025, 6, 1)) == "active"


def test_select_for_display_filters_sorts_and_truncates():
    items = [
        _sponsorship("basic", 3),
        _sponsorship("premium", 1),
        _sponsorship("off", 1, is_active=False),
        _sponsorship("late", 2, start="2025-09-01", end="2025-10-01"),
        _sponsorship("standard-new", 2, created_at="2025-05-10"),
        _sponsorship("standard-old", 2, created_at="2025-05-02"),
    ]
    chosen = select_for_display(items, FIXED_NOW, 3)
    assert [s.id for s in chosen] == ["premium", "standard-old", "standard-new"]
    assert select_for_display(items, FIXED_NOW, 0) == []
    assert [s.id for s in select_for_display(items, FIXED_NOW, 10)] == [
        "premium",
        "standard-old",
        "standard-new",
        "basic",
    ]


def test_rates():
    assert ctr(100, 25) == 25.0
    assert ctr(3, 1) == 33.33
    assert ctr(0, 5) == 0
    assert conversion_rate(40, 10) == 25.0
    assert conversion_rate(0, 0) == 0


def test_priority_levels():
    assert priority_for_level("PREMIUM") == 1
    assert priority_for_level("standard") == 2
    assert priority_for_level("BASIC") == 3
    with pytest.raises(ValidationError):
        priority_for_level("GOLD")


# ---- service ----


def test_create_sets_priority_counters_and_status(services):
    async def scenario():
        (restaurant_id,) = await _restaurants(services, "Burger Barn")
        created = await services.sponsorships.create(restaurant_id, "premium", **WINDOW)
        assert created["priority_level"] == "PREMIUM"
        assert created["priority"] == 1
        assert (created["impressions"], created["clicks"], created["conversions"]) == (0, 0, 0)
        assert created["status"] == "active"
        assert created["is_active"] is True

    asyncio.run(scenario())


def test_create_validation(services):
    sponsorships = services.sponsorships

    async def scenario():
        (restaurant_id,) = await _restaurants(services, "Burger Barn")
        with pytest.raises(NotFoundError):
            await sponsorships.create("missing", **WINDOW)
        with pytest.raises(ValidationError):
            await sponsorships.create(restaurant_id, "GOLD", **WINDOW)
        with pytest.raises(ValidationError):
            await sponsorships.create(restaurant_id, start_date="2025-07-01", end_date="2025-05-01")
        with pytest.raises(ValidationError):
            await sponsorships.create(restaurant_id, start_date="soon", end_date="2025-05-01")
        with pytest.raises(ValidationError):
            await sponsorships.create(restaurant_id, is_active="yes", **WINDOW)
        assert await sponsorships.list_all() == []

    asyncio.run(scenario())


def test_one_running_sponsorship_per_restaurant(services):
    sponsorships = services.sponsorships

    async def scenario():
        (restaurant_id,) = await _restaurants(services, "Burger Barn")
        await sponsorships.create(restaurant_id, start_date="2025-01-01", end_date="2025-02-01")
        current = await sponsorships.create(restaurant_id, **WINDOW)
        with pytest.raises(ValidationError):
            await sponsorships.create(restaurant_id, start_date="2025-08-01", end_date="2025-09-01")

        available = await sponsorships.list_available_restaurants()
        assert available == []
        available = await sponsorships.list_available_restaurants(editing_id=current["id"])
        assert [r["id"] for r in available] == [restaurant_id]

    asyncio.run(scenario())


def test_update_and_toggle(services):
    sponsorships = services.sponsorships

    async def scenario():
        first, second = await _restaurants(services, "Burger Barn", "Pizza Place")
        created = await sponsorships.create(first, "BASIC", **WINDOW)
        updated = await sponsorships.update(created["id"], {"priority_level": "premium", "end_date": "2025-06-15"})
        assert updated["priority_level"] == "PREMIUM"
        assert updated["priority"] == 1
        assert updated["end_date"].startswith("2025-06-15")

        toggled = await sponsorships.toggle_active(created["id"], False)
        assert toggled["status"] == "inactive"

        moved = await sponsorships.update(created["id"], {"restaurant_id": second})
        assert moved["restaurant_id"] == second

        with pytest.raises(ValidationError):
            await sponsorships.update(created["id"], {"impressions": 1000})
        with pytest.raises(ValidationError):
            await sponsorships.update(created["id"], {"end_date": "2025-04-01"})
        with pytest.raises(NotFoundError):
            await sponsorships.update("missing", {"is_active": True})

    asyncio.run(scenario())


def test_delete(services):
    sponsorships = services.sponsorships

    async def scenario():
        (restaurant_id,) = await _restaurants(services, "Burger Barn")
        created = await sponsorships.create(restaurant_id, **WINDOW)
        await sponsorships.delete(created["id"])
        assert await sponsorships.list_all() == []
        with pytest.raises(NotFoundError):
            await sponsorships.delete(created["id"])

    asyncio.run(scenario())


def test_reprioritize_swaps_with_rank_holder(services):
    sponsorships = services.sponsorships

    async def scenario():
        r1, r2, r3 = await _restaurants(services, "A", "B", "C")
        s1 = await sponsorships.create(r1, "PREMIUM", **WINDOW)
        s2 = await sponsorships.create(r2, "STANDARD", **WINDOW)
        s3 = await sponsorships.create(r3, "BASIC", **WINDOW)

        moved = await sponsorships.reprioritize(s3["id"], "up")
        assert moved["priority"] == 2
        assert (await sponsorships.get(s2["id"]))["priority"] == 3
        assert (await sponsorships.get(s1["id"]))["priority"] == 1

        await sponsorships.reprioritize(s3["id"], "down")
        priorities = {row["id"]: row["priority"] for row in await sponsorships.list_all()}
        assert priorities == {s1["id"]: 1, s2["id"]: 2, s3["id"]: 3}

        top = await sponsorships.reprioritize(s1["id"], "up")
        assert top["priority"] == 1

        bottom = await sponsorships.reprioritize(s3["id"], "down")
        assert bottom["priority"] == 4
        assert (await sponsorships.get(s2["id"]))["priority"] == 2

        with pytest.raises(ValidationError):
            await sponsorships.reprioritize(s1["id"], "sideways")
        with pytest.raises(NotFoundError):
            await sponsorships.reprioritize("missing", "up")

    asyncio.run(scenario())


def test_up_then_down_restores_order_with_tied_priorities(services, clock):
    sponsorships = services.sponsorships

    async def scenario():
        ry, ra, rx = await _restaurants(services, "Y", "A", "X")
        y = await sponsorships.create(ry, "STANDARD", **WINDOW)
        clock.advance(minutes=1)
        a = await sponsorships.create(ra, "PREMIUM", **WINDOW)
        clock.advance(minutes=1)
        x = await sponsorships.create(rx, "STANDARD", **WINDOW)

        async def display_order():
            return [row["id"] for row in await sponsorships.select_for_display()]

        before = await display_order()
        assert before == [a["id"], y["id"], x["id"]]

        moved = await sponsorships.reprioritize(x["id"], "up")
        assert moved["priority"] == 2
        assert await display_order() == [a["id"], x["id"], y["id"]]

        await sponsorships.reprioritize(x["id"], "down")
        assert await display_order() == before
        priorities = {row["id"]: row["priority"] for row in await sponsorships.list_all()}
        assert priorities == {a["id"]: 1, y["id"]: 2, x["id"]: 3}

    asyncio.run(scenario())


def test_extending_expired_placement_respects_running_one(services):
    sponsorships = services.sponsorships

    async def scenario():
        restaurant_id, other_id = await _restaurants(services, "Burger Barn", "Pizza Place")
        expired = await sponsorships.create(
            restaurant_id, "BASIC", start_date="2025-01-01", end_date="2025-02-01"
        )
        await sponsorships.create(restaurant_id, "PREMIUM", **WINDOW)

        with pytest.raises(ValidationError):
            await sponsorships.update(expired["id"], {"end_date": "2025-12-01"})
        assert (await sponsorships.get(expired["id"]))["status"] == "expired"

        # Still expired after the edit, so no conflict.
        await sponsorships.update(expired["id"], {"end_date": "2025-03-01"})

        lone = await sponsorships.create(
            other_id, "BASIC", start_date="2025-01-01", end_date="2025-02-01"
        )
        extended = await sponsorships.update(lone["id"], {"end_date": "2025-12-01"})
        assert extended["status"] == "active"

    asyncio.run(scenario())


def test_display_selection_uses_settings(services, clock):
    sponsorships = services.sponsorships

    async def scenario():
        r1, r2, r3, r4 = await _restaurants(services, "A", "B", "C", "D")
        await sponsorships.create(r1, "BASIC", **WINDOW)
        await sponsorships.create(r2, "PREMIUM", **WINDOW)
        await sponsorships.create(r3, "STANDARD", **WINDOW)
        await sponsorships.create(r4, "PREMIUM", start_date="2025-08-01", end_date="2025-09-01")

        settings = await sponsorships.get_settings()
        assert settings.max_sponsored_slots == 3
        assert settings.enable_rotation is True
        assert settings.rotation_interval == 24

        shown = await sponsorships.select_for_display()
        assert [row["restaurant_id"] for row in shown] == [r2, r3, r1]

        await sponsorships.update_settings(max_sponsored_slots=2)
        shown = await sponsorships.select_for_display()
        assert [row["restaurant_id"] for row in shown] == [r2, r3]

        clock.now = datetime(2025, 8, 15, tzinfo=timezone.utc)
        shown = await sponsorships.select_for_display()
        assert [row["restaurant_id"] for row in shown] == [r4]

    asyncio.run(scenario())


def test_settings_validation_and_persistence(services):
    sponsorships = services.sponsorships

    async def scenario():
        saved = await sponsorships.update_settings(max_sponsored_slots=5, enable_rotation=False, rotation_interval=12)
        assert saved.updated_at == FIXED_NOW.isoformat()
        loaded = await sponsorships.get_settings()
        assert (loaded.max_sponsored_slots, loaded.enable_rotation, loaded.rotation_interval) == (5, False, 12)

        with pytest.raises(ValidationError):
            await sponsorships.update_settings(max_sponsored_slots=0)
        with pytest.raises(ValidationError):
            await sponsorships.update_settings(max_sponsored_slots=500)
        with pytest.raises(ValidationError):
            await sponsorships.update_settings(enable_rotation="no")

    asyncio.run(scenario())


def test_settings_fall_back_to_defaults_when_store_fails(services, monkeypatch):
    async def broken():
        raise StoreUnavailableError("disk gone")

    monkeypatch.setattr(services.sponsorships.repository, "get_sponsorship_settings", broken)
    settings = asyncio.run(services.sponsorships.get_settings())
    assert settings.max_sponsored_slots == 3


def test_featured_restaurants_skip_missing(services, store):
    sponsorships = services.sponsorships

    async def scenario():
        r1, r2 = await _restaurants(services, "Burger Barn", "Pizza Place")
        s1 = await sponsorships.create(r1, "PREMIUM", **WINDOW)
        await sponsorships.create(r2, "STANDARD", **WINDOW)
        # Deleted behind the catalog's back, so the placement dangles.
        await store.delete("restaurants", r2)

        featured = await sponsorships.featured_restaurants()
        assert [row["name"] for row in featured] == ["Burger Barn"]
        assert featured[0]["sponsorship"]["id"] == s1["id"]

    asyncio.run(scenario())


def test_counters(services, monkeypatch):
    sponsorships = services.sponsorships

    async def scenario():
        (restaurant_id,) = await _restaurants(services, "Burger Barn")
        created = await sponsorships.create(restaurant_id, **WINDOW)
        for _ in range(4):
            assert await sponsorships.record_impression(created["id"])
        assert await sponsorships.record_click(created["id"])
        assert await sponsorships.record_conversion(created["id"])
        assert not await sponsorships.record_click("missing")

        current = await sponsorships.get(created["id"])
        assert (current["impressions"], current["clicks"], current["conversions"]) == (4, 1, 1)

        stats = await sponsorships.dashboard_stats()
        assert stats["total_impressions"] == 4
        assert stats["ctr"] == 25.0
        assert stats["conversion_rate"] == 100.0
        return created["id"]

    sponsorship_id = asyncio.run(scenario())

    async def broken(*_args):
        raise StoreUnavailableError("locked")

    monkeypatch.setattr(sponsorships.repository, "increment_sponsorship_counter", broken)
    assert asyncio.run(sponsorships.record_impression(sponsorship_id)) is False


def test_dashboard_stats_counts_statuses(services):
    sponsorships = services.sponsorships

    async def scenario():
        r1, r2, r3, r4 = await _restaurants(services, "A", "B", "C", "D")
        await sponsorships.create(r1, **WINDOW)
        await sponsorships.create(r2, start_date="2025-08-01", end_date="2025-09-01")
        await sponsorships.create(r3, start_date="2025-01-01", end_date="2025-02-01")
        await sponsorships.create(r4, is_active=False, **WINDOW)
        return await sponsorships.dashboard_stats()

    stats = asyncio.run(scenario())
    assert stats["total"] == 4
    assert (stats["active"], stats["scheduled"], stats["expired"], stats["inactive"]) == (1, 1, 1, 1)
    assert stats["ctr"] == 0


def test_active_subscription(services):
    sponsorships = services.sponsorships

    async def scenario():
        snapshots: list[list[str]] = []
        r1, r2 = await _restaurants(services, "A", "B")
        unsubscribe = await sponsorships.subscribe_active(
            lambda rows: snapshots.append([row["restaurant_id"] for row in rows])
        )
        await sponsorships.create(r1, "BASIC", **WINDOW)
        created = await sponsorships.create(r2, "PREMIUM", **WINDOW)
        await sponsorships.toggle_active(created["id"], False)
        unsubscribe()
        return r1, r2, snapshots

    r1, r2, snapshots = asyncio.run(scenario())
    assert snapshots == [[], [r1], [r2, r1], [r1]]


def test_restaurant_delete_removes_its_sponsorship(services):
    async def scenario():
        (restaurant_id,) = await _restaurants(services, "Burger Barn")
        await services.sponsorships.create(restaurant_id, **WINDOW)
        await services.catalog.delete_restaurant(restaurant_id)
        assert await services.sponsorships.list_all() == []

    asyncio.run(scenario())


def test_moved_up_placement_is_displayed_second(services):
    sponsorships = services.sponsorships

    async def scenario():
        r1, r2, r3 = await _restaurants(services, "A", "B", "C")
        await sponsorships.create(r1, "PREMIUM", **WINDOW)
        await sponsorships.create(r2, "STANDARD", **WINDOW)
        third = await sponsorships.create(r3, "BASIC", **WINDOW)
        await sponsorships.reprioritize(third["id"], "up")
        shown = await sponsorships.select_for_display()
        return [row["restaurant_id"] for row in shown], (r1, r2, r3)

    order, (r1, r2, r3) = asyncio.run(scenario())
    assert order == [r1, r3, r2]
