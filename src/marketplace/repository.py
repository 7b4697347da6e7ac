"""Persistence helpers for the marketplace module."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from database import DocumentStore, StoreTransaction, utc_now_iso
from marketplace.constants import (
    COLLECTION_AUDIT_LOG,
    COLLECTION_MENU_ITEMS,
    COLLECTION_PENDING,
    COLLECTION_RESTAURANTS,
    COLLECTION_SETTINGS,
    COLLECTION_SPONSORSHIPS,
    LIVE_COLLECTIONS,
    PRODUCT_RESTAURANT,
    SPONSORSHIP_SETTINGS_ID,
)

logger = logging.getLogger(__name__)

# Either the store itself or an open transaction; both expose the same calls.
Writer = DocumentStore | StoreTransaction


def _newest_first(records: list[dict[str, Any]], key: str) -> list[dict[str, Any]]:
    return sorted(records, key=lambda r: str(r.get(key) or ""), reverse=True)


class MarketplaceRepository:
    """Marketplace persistence and lookup queries."""

    def __init__(self, store: DocumentStore | None = None) -> None:
        self.store = store or DocumentStore()

    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]:
        return self.store.transaction()

    def _io(self, tx: StoreTransaction | None) -> Writer:
        return tx if tx is not None else self.store

    # ---- pending submissions ----

    async def get_submission(self, submission_id: str, *, tx: StoreTransaction | None = None) -> dict[str, Any] | None:
        return await self._io(tx).read(COLLECTION_PENDING, str(submission_id))

    async def list_submissions(
        self,
        *,
        seller_id: str | None = None,
        status: str | None = None,
        product_type: str | None = None,
        request_type: str | None = None,
    ) -> list[dict[str, Any]]:
        where: dict[str, Any] = {}
        if seller_id is not None:
            where["seller_id"] = str(seller_id)
        if status is not None:
            where["status"] = status
        if product_type is not None:
            where["product_type"] = product_type
        if request_type is not None:
            where["request_type"] = request_type
        rows = await self.store.list(COLLECTION_PENDING, where or None)
        return _newest_first(rows, "submitted_at")

    async def create_submission(self, data: dict[str, Any], *, tx: StoreTransaction | None = None) -> str:
        return await self._io(tx).create(COLLECTION_PENDING, data)

    async def update_submission(
        self,
        submission_id: str,
        fields: dict[str, Any],
        *,
        tx: StoreTransaction | None = None,
    ) -> bool:
        return await self._io(tx).update(COLLECTION_PENDING, str(submission_id), fields)

    async def delete_submission(self, submission_id: str, *, tx: StoreTransaction | None = None) -> bool:
        return await self._io(tx).delete(COLLECTION_PENDING, str(submission_id))

    async def subscribe_submissions(self, on_change: Callable[[list[dict[str, Any]]], Any]) -> Callable[[], None]:
        return await self.store.subscribe(COLLECTION_PENDING, on_change)

    # ---- live products ----

    async def get_live_product(
        self,
        product_type: str,
        product_id: str,
        *,
        tx: StoreTransaction | None = None,
    ) -> dict[str, Any] | None:
        return await self._io(tx).read(LIVE_COLLECTIONS[product_type], str(product_id))

    async def list_live_products(
        self,
        product_type: str,
        *,
        seller_id: str | None = None,
        restaurant_id: str | None = None,
        tx: StoreTransaction | None = None,
    ) -> list[dict[str, Any]]:
        where: dict[str, Any] = {}
        if seller_id is not None:
            where["seller_id"] = str(seller_id)
        if restaurant_id is not None:
            where["restaurant_id"] = str(restaurant_id)
        return await self._io(tx).list(LIVE_COLLECTIONS[product_type], where or None)

    async def create_live_product(
        self,
        product_type: str,
        data: dict[str, Any],
        *,
        tx: StoreTransaction | None = None,
    ) -> str:
        return await self._io(tx).create(LIVE_COLLECTIONS[product_type], data)

    async def update_live_product(
        self,
        product_type: str,
        product_id: str,
        fields: dict[str, Any],
        *,
        tx: StoreTransaction | None = None,
    ) -> bool:
        return await self._io(tx).update(LIVE_COLLECTIONS[product_type], str(product_id), fields)

    async def delete_live_product(self, product_type: str, product_id: str, *, tx: StoreTransaction) -> bool:
        """Delete a live record; a restaurant takes its menu items and sponsorships with it.

        Must run inside a transaction so the cascade is all-or-nothing.
        """
        deleted = await tx.delete(LIVE_COLLECTIONS[product_type], str(product_id))
        if not deleted or product_type != PRODUCT_RESTAURANT:
            return deleted

        menu_items = await tx.list(COLLECTION_MENU_ITEMS, {"restaurant_id": str(product_id)})
        for item in menu_items:
            await tx.delete(COLLECTION_MENU_ITEMS, item["id"])
        sponsorships = await tx.list(COLLECTION_SPONSORSHIPS, {"restaurant_id": str(product_id)})
        for sponsorship in sponsorships:
            await tx.delete(COLLECTION_SPONSORSHIPS, sponsorship["id"])
        if menu_items or sponsorships:
            logger.info(
                "Restaurant %s deleted with %s menu items and %s sponsorships",
                product_id,
                len(menu_items),
                len(sponsorships),
            )
        return True

    async def list_restaurants(self) -> list[dict[str, Any]]:
        rows = await self.store.list(COLLECTION_RESTAURANTS)
        return sorted(rows, key=lambda r: str(r.get("name") or "").lower())

    # ---- sponsorships ----

    async def get_sponsorship(self, sponsorship_id: str, *, tx: StoreTransaction | None = None) -> dict[str, Any] | None:
        return await self._io(tx).read(COLLECTION_SPONSORSHIPS, str(sponsorship_id))

    async def list_sponsorships(
        self,
        *,
        restaurant_id: str | None = None,
        tx: StoreTransaction | None = None,
    ) -> list[dict[str, Any]]:
        where = {"restaurant_id": str(restaurant_id)} if restaurant_id is not None else None
        return await self._io(tx).list(COLLECTION_SPONSORSHIPS, where)

    async def create_sponsorship(self, data: dict[str, Any], *, tx: StoreTransaction | None = None) -> str:
        return await self._io(tx).create(COLLECTION_SPONSORSHIPS, data)

    async def update_sponsorship(
        self,
        sponsorship_id: str,
        fields: dict[str, Any],
        *,
        tx: StoreTransaction | None = None,
    ) -> bool:
        return await self._io(tx).update(COLLECTION_SPONSORSHIPS, str(sponsorship_id), fields)

    async def delete_sponsorship(self, sponsorship_id: str, *, tx: StoreTransaction | None = None) -> bool:
        return await self._io(tx).delete(COLLECTION_SPONSORSHIPS, str(sponsorship_id))

    async def increment_sponsorship_counter(self, sponsorship_id: str, counter: str) -> bool:
        return await self.store.increment(COLLECTION_SPONSORSHIPS, str(sponsorship_id), counter)

    async def subscribe_sponsorships(self, on_change: Callable[[list[dict[str, Any]]], Any]) -> Callable[[], None]:
        return await self.store.subscribe(COLLECTION_SPONSORSHIPS, on_change)

    async def get_sponsorship_settings(self) -> dict[str, Any] | None:
        return await self.store.read(COLLECTION_SETTINGS, SPONSORSHIP_SETTINGS_ID)

    async def put_sponsorship_settings(self, data: dict[str, Any]) -> None:
        await self.store.put(COLLECTION_SETTINGS, SPONSORSHIP_SETTINGS_ID, data)

    # ---- audit ----

    async def write_audit_log(
        self,
        *,
        submission_id: str,
        actor_id: str | None,
        action: str,
        payload: dict[str, Any] | None = None,
        tx: StoreTransaction | None = None,
    ) -> None:
        await self._io(tx).create(
            COLLECTION_AUDIT_LOG,
            {
                "submission_id": str(submission_id),
                "actor_id": actor_id,
                "action": action,
                "payload": payload or {},
                "created_at": utc_now_iso(),
            },
        )

    async def list_audit_logs(self, *, submission_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        where = {"submission_id": str(submission_id)} if submission_id is not None else None
        rows = await self.store.list(COLLECTION_AUDIT_LOG, where)
        safe_limit = max(1, min(int(limit), 500))
        return _newest_first(rows, "created_at")[:safe_limit]
