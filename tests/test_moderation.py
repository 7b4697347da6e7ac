import asyncio

import pytest

from marketplace.errors import (
    AccessDeniedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from marketplace.moderation import ModerationService

SELLER = "seller-1"
OTHER_SELLER = "seller-2"


async def _live_restaurant(services, seller_id=SELLER, name="Burger Barn"):
    restaurant = await services.catalog.create_restaurant({"name": name}, seller_id=seller_id)
    return restaurant["id"]


def test_approve_new_restaurant_publishes_live_record(services, notifier):
    moderation = services.moderation

    async def scenario():
        submission_id = await moderation.submit_new("restaurant", {"name": "Burger", "address": "Main st 1"}, SELLER)
        pending = await moderation.list_pending()
        assert [row["id"] for row in pending] == [submission_id]
        assert pending[0]["status"] == "pending"
        assert pending[0]["payload"] == {"name": "Burger", "address": "Main st 1"}

        approved = await moderation.approve(submission_id, "Looks good", admin_id="admin-1")
        assert approved["status"] == "approved"
        assert approved["admin_feedback"] == "Looks good"
        assert approved["reviewed_by"] == "admin-1"

        live = await moderation.repository.get_live_product("restaurant", approved["live_product_id"])
        assert live["name"] == "Burger"
        assert live["seller_id"] == SELLER
        assert live["is_seller_product"] is True
        assert live["approved_at"] == live["created_at"]
        for moderation_field in ("status", "admin_feedback", "admin_notes", "submitted_at"):
            assert moderation_field not in live

        assert await moderation.list_pending() == []
        assert [row["id"] for row in await moderation.list_all(status="approved")] == [submission_id]

    asyncio.run(scenario())
    assert len(notifier.created) == 1
    assert len(notifier.decided) == 1
    assert notifier.decided[0]["status"] == "approved"


def test_approve_new_menu_item_under_own_restaurant(services):
    moderation = services.moderation

    async def scenario():
        restaurant_id = await _live_restaurant(services)
        submission_id = await moderation.submit_new(
            "menu_item",
            {"name": "Fries", "price": 3.5, "restaurant_id": restaurant_id},
            SELLER,
        )
        approved = await moderation.approve(submission_id)
        items = await services.catalog.list_menu_items(restaurant_id)
        assert [item["id"] for item in items] == [approved["live_product_id"]]
        assert items[0]["price"] == 3.5

    asyncio.run(scenario())


def test_menu_item_for_foreign_restaurant_is_rejected(services):
    async def scenario():
        restaurant_id = await _live_restaurant(services, seller_id=OTHER_SELLER)
        with pytest.raises(ValidationError):
            await services.moderation.submit_new(
                "menu_item",
                {"name": "Fries", "price": 3, "restaurant_id": restaurant_id},
                SELLER,
            )
        assert await services.moderation.list_all() == []

    asyncio.run(scenario())


def test_approve_edit_changes_only_submitted_fields(services, clock):
    moderation = services.moderation

    async def scenario():
        restaurant = await services.catalog.create_restaurant(
            {"name": "Burger Barn", "address": "Main st 1", "phone": "555"},
            seller_id=SELLER,
        )
        clock.advance(hours=1)
        submission_id = await moderation.submit_edit(restaurant["id"], "restaurant", {"phone": "777"}, SELLER)
        await moderation.approve(submission_id)

        live = await services.catalog.get_restaurant(restaurant["id"])
        assert live["phone"] == "777"
        assert live["name"] == "Burger Barn"
        assert live["address"] == "Main st 1"
        assert live["seller_id"] == SELLER
        assert live["updated_at"] > restaurant["updated_at"]
        assert "request_type" not in live
        assert "original_product_id" not in live

    asyncio.run(scenario())


def test_approve_delete_cascades_to_menu_items_and_sponsorships(services):
    moderation = services.moderation

    async def scenario():
        restaurant_id = await _live_restaurant(services)
        await services.catalog.create_menu_item({"name": "Fries", "price": 3, "restaurant_id": restaurant_id})
        await services.sponsorships.create(
            restaurant_id,
            "PREMIUM",
            start_date="2025-05-01T00:00:00+00:00",
            end_date="2025-07-01T00:00:00+00:00",
        )

        submission_id = await moderation.submit_deletion(restaurant_id, "restaurant", SELLER, reason="Closed")
        submission = await moderation.get(submission_id)
        assert submission["deletion_reason"] == "Closed"
        assert submission["payload"] == {}

        await moderation.approve(submission_id)
        assert await services.catalog.list_restaurants() == []
        assert await services.catalog.list_menu_items() == []
        assert await services.sponsorships.list_all() == []

    asyncio.run(scenario())


def test_reject_leaves_live_collections_untouched(services, notifier):
    moderation = services.moderation

    async def scenario():
        restaurant_id = await _live_restaurant(services)
        submission_id = await moderation.submit_deletion(restaurant_id, "restaurant", SELLER)
        rejected = await moderation.reject(submission_id, "Still has open orders")
        assert rejected["status"] == "rejected"
        assert rejected["admin_feedback"] == "Still has open orders"
        assert rejected["rejected_at"]
        assert await services.catalog.get_restaurant(restaurant_id)

    asyncio.run(scenario())
    assert notifier.decided[-1]["status"] == "rejected"


def test_decided_submission_cannot_be_decided_again(services):
    moderation = services.moderation

    async def scenario():
        submission_id = await moderation.submit_new("restaurant", {"name": "Burger"}, SELLER)
        await moderation.approve(submission_id)
        with pytest.raises(InvalidTransitionError):
            await moderation.approve(submission_id)
        with pytest.raises(InvalidTransitionError):
            await moderation.reject(submission_id)
        assert len(await services.catalog.list_restaurants()) == 1

    asyncio.run(scenario())


def test_unknown_submission_is_not_found(services):
    moderation = services.moderation

    async def scenario():
        with pytest.raises(NotFoundError):
            await moderation.approve("missing")
        with pytest.raises(NotFoundError):
            await moderation.reject("missing")
        with pytest.raises(NotFoundError):
            await moderation.cancel("missing")
        with pytest.raises(NotFoundError):
            await moderation.get("missing")

    asyncio.run(scenario())


def test_edit_and_delete_require_ownership(services):
    moderation = services.moderation

    async def scenario():
        restaurant_id = await _live_restaurant(services, seller_id=OTHER_SELLER)
        with pytest.raises(ValidationError):
            await moderation.submit_edit(restaurant_id, "restaurant", {"name": "Mine now"}, SELLER)
        with pytest.raises(ValidationError):
            await moderation.submit_deletion(restaurant_id, "restaurant", SELLER)
        with pytest.raises(NotFoundError):
            await moderation.submit_edit("missing", "restaurant", {"name": "x"}, SELLER)
        assert await moderation.list_all() == []

    asyncio.run(scenario())


def test_approve_fails_when_target_vanished(services):
    moderation = services.moderation

    async def scenario():
        restaurant_id = await _live_restaurant(services)
        submission_id = await moderation.submit_edit(restaurant_id, "restaurant", {"name": "New name"}, SELLER)
        await services.catalog.delete_restaurant(restaurant_id)
        with pytest.raises(NotFoundError):
            await moderation.approve(submission_id)
        assert (await moderation.get(submission_id))["status"] == "pending"

    asyncio.run(scenario())


def _fail_audit_log(monkeypatch, services):
    async def broken_write_audit_log(**kwargs):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(services.moderation.repository, "write_audit_log", broken_write_audit_log)


def test_failed_approve_of_new_product_publishes_nothing(services, monkeypatch):
    moderation = services.moderation

    async def scenario():
        restaurant_id = await _live_restaurant(services)
        restaurant_submission = await moderation.submit_new("restaurant", {"name": "Pizza Place"}, SELLER)
        item_submission = await moderation.submit_new(
            "menu_item",
            {"name": "Fries", "price": 3, "restaurant_id": restaurant_id},
            SELLER,
        )
        _fail_audit_log(monkeypatch, services)
        for submission_id in (restaurant_submission, item_submission):
            with pytest.raises(RuntimeError):
                await moderation.approve(submission_id)
            submission = await moderation.get(submission_id)
            assert submission["status"] == "pending"
            assert "live_product_id" not in submission

        assert [r["id"] for r in await services.catalog.list_restaurants()] == [restaurant_id]
        assert await services.catalog.list_menu_items() == []

    asyncio.run(scenario())


def test_failed_approve_of_deletion_keeps_live_record(services, monkeypatch):
    moderation = services.moderation

    async def scenario():
        restaurant_id = await _live_restaurant(services)
        item = await services.catalog.create_menu_item({"name": "Fries", "price": 3, "restaurant_id": restaurant_id})
        submission_id = await moderation.submit_deletion(restaurant_id, "restaurant", SELLER)
        _fail_audit_log(monkeypatch, services)
        with pytest.raises(RuntimeError):
            await moderation.approve(submission_id)

        assert (await moderation.get(submission_id))["status"] == "pending"
        assert await services.catalog.get_restaurant(restaurant_id)
        assert [row["id"] for row in await services.catalog.list_menu_items()] == [item["id"]]

        monkeypatch.undo()
        approved = await moderation.approve(submission_id)
        assert approved["status"] == "approved"
        assert await services.catalog.list_restaurants() == []

    asyncio.run(scenario())


def test_invalid_payload_creates_nothing(services, notifier):
    async def scenario():
        with pytest.raises(ValidationError):
            await services.moderation.submit_new("restaurant", {"name": "Burger", "status": "approved"}, SELLER)
        with pytest.raises(ValidationError):
            await services.moderation.submit_new("restaurant", {"name": "Burger"}, "  ")
        assert await services.moderation.list_all() == []

    asyncio.run(scenario())
    assert notifier.created == []


def test_cancel_pending_submission(services):
    moderation = services.moderation

    async def scenario():
        submission_id = await moderation.submit_new("restaurant", {"name": "Burger"}, SELLER)
        with pytest.raises(AccessDeniedError):
            await moderation.cancel(submission_id, OTHER_SELLER)
        await moderation.cancel(submission_id, SELLER)
        assert await moderation.list_all() == []

        decided_id = await moderation.submit_new("restaurant", {"name": "Pizza"}, SELLER)
        await moderation.reject(decided_id)
        with pytest.raises(InvalidTransitionError):
            await moderation.cancel(decided_id, SELLER)

    asyncio.run(scenario())


def test_update_pending_replaces_payload(services):
    moderation = services.moderation

    async def scenario():
        submission_id = await moderation.submit_new("restaurant", {"name": "Burgr"}, SELLER)
        updated = await moderation.update_pending(submission_id, SELLER, {"name": "Burger", "phone": "555"})
        assert updated["payload"] == {"name": "Burger", "phone": "555"}
        with pytest.raises(AccessDeniedError):
            await moderation.update_pending(submission_id, OTHER_SELLER, {"name": "Hijack"})
        with pytest.raises(ValidationError):
            await moderation.update_pending(submission_id, SELLER, {"description": "no name"})

        await moderation.approve(submission_id)
        with pytest.raises(InvalidTransitionError):
            await moderation.update_pending(submission_id, SELLER, {"name": "Late"})

    asyncio.run(scenario())


def test_seller_views(services, clock):
    moderation = services.moderation

    async def scenario():
        first = await moderation.submit_new("restaurant", {"name": "Burger"}, SELLER)
        clock.advance(minutes=1)
        second = await moderation.submit_new("restaurant", {"name": "Pizza"}, SELLER)
        clock.advance(minutes=1)
        await moderation.submit_new("restaurant", {"name": "Sushi"}, OTHER_SELLER)
        await moderation.approve(first)

        pending = await moderation.list_pending_by_seller(SELLER)
        assert [row["id"] for row in pending] == [second]
        history = await moderation.list_by_seller(SELLER)
        assert [row["id"] for row in history] == [second, first]

        live = await moderation.list_seller_live_products(SELLER)
        assert [(row["product_type"], row["name"]) for row in live] == [("restaurant", "Burger")]
        assert await moderation.list_seller_live_products(OTHER_SELLER) == []

        with pytest.raises(ValidationError):
            await moderation.list_all(status="archived")

    asyncio.run(scenario())


def test_pending_queue_subscription(services):
    moderation = services.moderation

    async def scenario():
        snapshots: list[list[str]] = []
        unsubscribe = await moderation.subscribe_pending(lambda rows: snapshots.append([r["id"] for r in rows]))
        submission_id = await moderation.submit_new("restaurant", {"name": "Burger"}, SELLER)
        await moderation.approve(submission_id)
        unsubscribe()
        await moderation.submit_new("restaurant", {"name": "Pizza"}, SELLER)
        return submission_id, snapshots

    submission_id, snapshots = asyncio.run(scenario())
    assert snapshots[0] == []
    assert [submission_id] in snapshots
    assert snapshots[-1] == []


def test_audit_log_records_lifecycle(services):
    moderation = services.moderation

    async def scenario():
        submission_id = await moderation.submit_new("restaurant", {"name": "Burger"}, SELLER)
        await moderation.approve(submission_id, admin_id="admin-1")
        return submission_id, await moderation.repository.list_audit_logs(submission_id=submission_id)

    submission_id, logs = asyncio.run(scenario())
    actions = {row["action"]: row for row in logs}
    assert set(actions) == {"submission_new_created", "submission_approved"}
    assert actions["submission_approved"]["actor_id"] == "admin-1"
    assert actions["submission_new_created"]["actor_id"] == SELLER


def test_notifier_failure_does_not_undo_decision(store, clock):
    class BrokenNotifier:
        async def submission_created(self, submission):
            raise RuntimeError("push gateway down")

        async def submission_decided(self, submission):
            raise RuntimeError("push gateway down")

    from marketplace.repository import MarketplaceRepository

    moderation = ModerationService(MarketplaceRepository(store), notifier=BrokenNotifier(), clock=clock)

    async def scenario():
        submission_id = await moderation.submit_new("restaurant", {"name": "Burger"}, SELLER)
        approved = await moderation.approve(submission_id)
        assert approved["status"] == "approved"

    asyncio.run(scenario())


def test_menu_item_burger_scenario(services):
    moderation = services.moderation

    async def scenario():
        restaurant_id = await _live_restaurant(services, seller_id="S1", name="R1")
        submission_id = await moderation.submit_new(
            "menu_item",
            {"name": "Burger", "price": 9.99, "restaurant_id": restaurant_id},
            "S1",
        )
        pending = await moderation.get(submission_id)
        assert (pending["request_type"], pending["product_type"], pending["seller_id"]) == ("new", "menu_item", "S1")

        approved = await moderation.approve(submission_id, "Looks good")
        assert approved["status"] == "approved"
        assert approved["admin_feedback"] == "Looks good"
        item = await services.catalog.get_menu_item(approved["live_product_id"])
        assert (item["name"], item["price"]) == ("Burger", 9.99)

    asyncio.run(scenario())


def test_naive_clock_is_stamped_as_utc(store):
    from datetime import datetime

    from marketplace import build_services

    naive = build_services(store, clock=lambda: datetime(2025, 6, 1, 12, 0))

    async def scenario():
        restaurant = await naive.catalog.create_restaurant({"name": "Burger Barn"}, seller_id=SELLER)
        submission_id = await naive.moderation.submit_new("restaurant", {"name": "Pizza Place"}, SELLER)
        return restaurant, await naive.moderation.get(submission_id)

    restaurant, submission = asyncio.run(scenario())
    assert restaurant["created_at"] == "2025-06-01T12:00:00+00:00"
    assert submission["submitted_at"] == restaurant["created_at"]
