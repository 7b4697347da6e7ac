"""Shared vocabulary of the marketplace domain."""

from __future__ import annotations

from typing import Final


PRODUCT_RESTAURANT: Final = "restaurant"
PRODUCT_MENU_ITEM: Final = "menu_item"
PRODUCT_TYPES: Final[set[str]] = {PRODUCT_RESTAURANT, PRODUCT_MENU_ITEM}

REQUEST_NEW: Final = "new"
REQUEST_EDIT: Final = "edit"
REQUEST_DELETE: Final = "delete"
REQUEST_TYPES: Final[set[str]] = {REQUEST_NEW, REQUEST_EDIT, REQUEST_DELETE}

STATUS_PENDING: Final = "pending"
STATUS_APPROVED: Final = "approved"
STATUS_REJECTED: Final = "rejected"
SUBMISSION_STATUSES: Final[set[str]] = {STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED}

COLLECTION_PENDING: Final = "pending_products"
COLLECTION_RESTAURANTS: Final = "restaurants"
COLLECTION_MENU_ITEMS: Final = "menu_items"
COLLECTION_SPONSORSHIPS: Final = "sponsored_restaurants"
COLLECTION_SETTINGS: Final = "settings"
COLLECTION_AUDIT_LOG: Final = "moderation_audit_log"
SPONSORSHIP_SETTINGS_ID: Final = "sponsorship"

LIVE_COLLECTIONS: Final[dict[str, str]] = {
    PRODUCT_RESTAURANT: COLLECTION_RESTAURANTS,
    PRODUCT_MENU_ITEM: COLLECTION_MENU_ITEMS,
}

# Never copied from a submission into a live record.
MODERATION_FIELDS: Final[frozenset[str]] = frozenset(
    {"status", "admin_notes", "admin_feedback", "submitted_at", "updated_at"}
)
ROUTING_FIELDS: Final[frozenset[str]] = frozenset(
    {"request_type", "original_product_id", "product_type", "seller_id"}
)

# Lower number is shown first.
PRIORITY_LEVELS: Final[dict[str, int]] = {
    "PREMIUM": 1,
    "STANDARD": 2,
    "BASIC": 3,
}
DEFAULT_PRIORITY_LEVEL: Final = "STANDARD"

SPONSORSHIP_INACTIVE: Final = "inactive"
SPONSORSHIP_SCHEDULED: Final = "scheduled"
SPONSORSHIP_ACTIVE: Final = "active"
SPONSORSHIP_EXPIRED: Final = "expired"
SPONSORSHIP_COUNTERS: Final[tuple[str, ...]] = ("impressions", "clicks", "conversions")

MAX_SPONSORED_SLOTS_LIMIT: Final = 50
