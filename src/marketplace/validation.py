"""Payload schemas for restaurants and menu items."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from marketplace.constants import (
    PRODUCT_MENU_ITEM,
    PRODUCT_RESTAURANT,
    PRODUCT_TYPES,
    REQUEST_DELETE,
    REQUEST_EDIT,
    REQUEST_NEW,
    REQUEST_TYPES,
)
from marketplace.errors import ValidationError

MAX_TEXT_LENGTH = 1200
MAX_REASON_LENGTH = 500

FIELD_TEXT = "text"
FIELD_NUMBER = "number"
FIELD_BOOL = "bool"

PRODUCT_SCHEMAS: dict[str, dict[str, str]] = {
    PRODUCT_RESTAURANT: {
        "name": FIELD_TEXT,
        "description": FIELD_TEXT,
        "address": FIELD_TEXT,
        "phone": FIELD_TEXT,
        "image": FIELD_TEXT,
        "category": FIELD_TEXT,
        "cuisine": FIELD_TEXT,
        "delivery_time": FIELD_TEXT,
        "delivery_fee": FIELD_NUMBER,
        "min_order": FIELD_NUMBER,
        "rating": FIELD_NUMBER,
        "is_open": FIELD_BOOL,
    },
    PRODUCT_MENU_ITEM: {
        "name": FIELD_TEXT,
        "description": FIELD_TEXT,
        "price": FIELD_NUMBER,
        "image": FIELD_TEXT,
        "restaurant_id": FIELD_TEXT,
        "restaurant_name": FIELD_TEXT,
        "category": FIELD_TEXT,
        "is_available": FIELD_BOOL,
    },
}

REQUIRED_FOR_NEW: dict[str, frozenset[str]] = {
    PRODUCT_RESTAURANT: frozenset({"name"}),
    PRODUCT_MENU_ITEM: frozenset({"name", "price", "restaurant_id"}),
}

_PRODUCT_TYPE_ALIASES = {
    "restaurant": PRODUCT_RESTAURANT,
    "restaurants": PRODUCT_RESTAURANT,
    "menu_item": PRODUCT_MENU_ITEM,
    "menuitem": PRODUCT_MENU_ITEM,
    "menu-item": PRODUCT_MENU_ITEM,
    "menu_items": PRODUCT_MENU_ITEM,
}


def normalize_product_type(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    normalized = _PRODUCT_TYPE_ALIASES.get(value)
    if normalized not in PRODUCT_TYPES:
        raise ValidationError(f"Unknown product type: {raw!r}.")
    return normalized


def normalize_request_type(raw: Any) -> str:
    value = str(raw or REQUEST_NEW).strip().lower()
    if value not in REQUEST_TYPES:
        raise ValidationError(f"Unknown request type: {raw!r}.")
    return value


def require_identity(raw: Any, label: str = "seller_id") -> str:
    value = str(raw or "").strip()
    if not value:
        raise ValidationError(f"{label} is required.")
    return value


def clean_text(value: Any, *, field_name: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"Field '{field_name}' must be a string.")
    clean_value = value.strip()
    if len(clean_value) > max_length:
        raise ValidationError(f"Field '{field_name}' is too long (max {max_length}).")
    return clean_value


def _clean_number(value: Any, *, field_name: str) -> float | int:
    if isinstance(value, bool):
        raise ValidationError(f"Field '{field_name}' must be a number.")
    if isinstance(value, str):
        # HTML forms send numbers as strings.
        try:
            value = float(value.strip())
        except ValueError:
            raise ValidationError(f"Field '{field_name}' must be a number.") from None
    if not isinstance(value, (int, float)) or math.isnan(value) or math.isinf(value):
        raise ValidationError(f"Field '{field_name}' must be a number.")
    if value < 0:
        raise ValidationError(f"Field '{field_name}' cannot be negative.")
    return value


def _clean_value(kind: str, value: Any, *, field_name: str) -> Any:
    if kind == FIELD_NUMBER:
        return _clean_number(value, field_name=field_name)
    if kind == FIELD_BOOL:
        if not isinstance(value, bool):
            raise ValidationError(f"Field '{field_name}' must be true or false.")
        return value
    return clean_text(value, field_name=field_name)


def validate_payload(
    product_type: str,
    request_type: str,
    payload: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Return a cleaned copy of ``payload`` or raise ValidationError.

    New requests must carry the required fields, edits at least one known
    field, and deletions no payload at all.
    """
    if payload is not None and not isinstance(payload, Mapping):
        raise ValidationError("Payload must be an object.")
    data = dict(payload or {})

    if request_type == REQUEST_DELETE:
        if data:
            raise ValidationError("Deletion requests don't carry a payload.")
        return {}

    schema = PRODUCT_SCHEMAS[product_type]
    unknown = sorted(set(data) - set(schema))
    if unknown:
        raise ValidationError(f"Unsupported fields: {', '.join(unknown)}.")

    cleaned: dict[str, Any] = {}
    for name, value in data.items():
        if value is None:
            continue
        cleaned[name] = _clean_value(schema[name], value, field_name=name)

    if request_type == REQUEST_NEW:
        missing = sorted(
            name
            for name in REQUIRED_FOR_NEW[product_type]
            if name not in cleaned or cleaned[name] == ""
        )
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}.")
    elif request_type == REQUEST_EDIT:
        if not cleaned:
            raise ValidationError("Edit request must change at least one field.")
        if cleaned.get("name") == "":
            raise ValidationError("Field 'name' cannot be empty.")
        if product_type == PRODUCT_MENU_ITEM and cleaned.get("restaurant_id") == "":
            raise ValidationError("Field 'restaurant_id' cannot be empty.")

    return cleaned
