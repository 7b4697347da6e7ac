"""Admin-side CRUD over live restaurants and menu items (no moderation)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from marketplace.constants import PRODUCT_MENU_ITEM, PRODUCT_RESTAURANT, REQUEST_EDIT, REQUEST_NEW
from marketplace.errors import NotFoundError
from marketplace.repository import MarketplaceRepository
from marketplace.validation import validate_payload

logger = logging.getLogger(__name__)


class CatalogService:
    """Trusted admin operations on the live collections."""

    def __init__(
        self,
        repository: MarketplaceRepository | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository or MarketplaceRepository()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _now_iso(self) -> str:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc).isoformat()

    async def _get(self, product_type: str, product_id: str) -> dict[str, Any]:
        record = await self.repository.get_live_product(product_type, product_id)
        if not record:
            raise NotFoundError(f"{product_type} {product_id} not found.")
        return record

    async def _create(self, product_type: str, payload: dict[str, Any], seller_id: str | None) -> dict[str, Any]:
        cleaned = validate_payload(product_type, REQUEST_NEW, payload)
        now = self._now_iso()
        data = {
            **cleaned,
            "seller_id": str(seller_id) if seller_id else None,
            "is_seller_product": False,
            "created_at": now,
            "updated_at": now,
        }
        async with self.repository.transaction() as tx:
            if product_type == PRODUCT_MENU_ITEM:
                restaurant = await self.repository.get_live_product(
                    PRODUCT_RESTAURANT, str(cleaned["restaurant_id"]), tx=tx
                )
                if not restaurant:
                    raise NotFoundError(f"Restaurant {cleaned['restaurant_id']} not found.")
            product_id = await self.repository.create_live_product(product_type, data, tx=tx)
        logger.info("Admin created %s %s", product_type, product_id)
        return await self._get(product_type, product_id)

    async def _update(self, product_type: str, product_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        changes = validate_payload(product_type, REQUEST_EDIT, payload)
        changes["updated_at"] = self._now_iso()
        async with self.repository.transaction() as tx:
            if product_type == PRODUCT_MENU_ITEM and "restaurant_id" in changes:
                restaurant = await self.repository.get_live_product(
                    PRODUCT_RESTAURANT, str(changes["restaurant_id"]), tx=tx
                )
                if not restaurant:
                    raise NotFoundError(f"Restaurant {changes['restaurant_id']} not found.")
            updated = await self.repository.update_live_product(product_type, product_id, changes, tx=tx)
            if not updated:
                raise NotFoundError(f"{product_type} {product_id} not found.")
        return await self._get(product_type, product_id)

    async def _delete(self, product_type: str, product_id: str) -> None:
        async with self.repository.transaction() as tx:
            deleted = await self.repository.delete_live_product(product_type, product_id, tx=tx)
            if not deleted:
                raise NotFoundError(f"{product_type} {product_id} not found.")
        logger.info("Admin deleted %s %s", product_type, product_id)

    async def create_restaurant(self, payload: dict[str, Any], *, seller_id: str | None = None) -> dict[str, Any]:
        return await self._create(PRODUCT_RESTAURANT, payload, seller_id)

    async def update_restaurant(self, restaurant_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._update(PRODUCT_RESTAURANT, restaurant_id, payload)

    async def delete_restaurant(self, restaurant_id: str) -> None:
        """Delete a restaurant together with its menu items and sponsorships."""
        await self._delete(PRODUCT_RESTAURANT, restaurant_id)

    async def get_restaurant(self, restaurant_id: str) -> dict[str, Any]:
        return await self._get(PRODUCT_RESTAURANT, restaurant_id)

    async def list_restaurants(self) -> list[dict[str, Any]]:
        return await self.repository.list_restaurants()

    async def create_menu_item(self, payload: dict[str, Any], *, seller_id: str | None = None) -> dict[str, Any]:
        return await self._create(PRODUCT_MENU_ITEM, payload, seller_id)

    async def update_menu_item(self, item_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._update(PRODUCT_MENU_ITEM, item_id, payload)

    async def delete_menu_item(self, item_id: str) -> None:
        await self._delete(PRODUCT_MENU_ITEM, item_id)

    async def get_menu_item(self, item_id: str) -> dict[str, Any]:
        return await self._get(PRODUCT_MENU_ITEM, item_id)

    async def list_menu_items(self, restaurant_id: str | None = None) -> list[dict[str, Any]]:
        rows = await self.repository.list_live_products(PRODUCT_MENU_ITEM, restaurant_id=restaurant_id)
        return sorted(rows, key=lambda r: (str(r.get("category") or ""), str(r.get("name") or "").lower()))
