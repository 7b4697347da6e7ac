"""Typed views over marketplace records."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from marketplace.constants import (
    DEFAULT_PRIORITY_LEVEL,
    PRIORITY_LEVELS,
    REQUEST_NEW,
    STATUS_PENDING,
)


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class PendingSubmission:
    id: str
    product_type: str
    seller_id: str
    request_type: str = REQUEST_NEW
    status: str = STATUS_PENDING
    payload: dict[str, Any] = field(default_factory=dict)
    original_product_id: str | None = None
    admin_feedback: str = ""
    admin_notes: str = ""
    deletion_reason: str = ""
    submitted_at: str | None = None
    updated_at: str | None = None
    approved_at: str | None = None
    rejected_at: str | None = None
    live_product_id: str | None = None
    reviewed_by: str | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> PendingSubmission:
        return cls(
            id=str(record["id"]),
            product_type=str(record.get("product_type") or ""),
            seller_id=str(record.get("seller_id") or ""),
            request_type=str(record.get("request_type") or REQUEST_NEW),
            status=str(record.get("status") or STATUS_PENDING),
            payload=dict(record.get("payload") or {}),
            original_product_id=record.get("original_product_id"),
            admin_feedback=str(record.get("admin_feedback") or ""),
            admin_notes=str(record.get("admin_notes") or ""),
            deletion_reason=str(record.get("deletion_reason") or ""),
            submitted_at=record.get("submitted_at"),
            updated_at=record.get("updated_at"),
            approved_at=record.get("approved_at"),
            rejected_at=record.get("rejected_at"),
            live_product_id=record.get("live_product_id"),
            reviewed_by=record.get("reviewed_by"),
        )

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING


@dataclass(slots=True)
class Sponsorship:
    id: str
    restaurant_id: str
    priority_level: str = DEFAULT_PRIORITY_LEVEL
    priority: int = PRIORITY_LEVELS[DEFAULT_PRIORITY_LEVEL]
    start_date: str | None = None
    end_date: str | None = None
    is_active: bool = True
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Sponsorship:
        level = str(record.get("priority_level") or DEFAULT_PRIORITY_LEVEL).upper()
        return cls(
            id=str(record.get("id") or ""),
            restaurant_id=str(record.get("restaurant_id") or ""),
            priority_level=level,
            priority=_int(record.get("priority"), PRIORITY_LEVELS.get(level, 0)),
            start_date=record.get("start_date"),
            end_date=record.get("end_date"),
            is_active=bool(record.get("is_active")),
            impressions=_int(record.get("impressions")),
            clicks=_int(record.get("clicks")),
            conversions=_int(record.get("conversions")),
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )

    @classmethod
    def coerce(cls, value: Sponsorship | Mapping[str, Any]) -> Sponsorship:
        if isinstance(value, Sponsorship):
            return value
        return cls.from_record(value)


@dataclass(slots=True)
class SponsorshipSettings:
    max_sponsored_slots: int = 3
    enable_rotation: bool = True
    # Hours. Stored for the admin panel; nothing rotates yet.
    rotation_interval: int = 24
    updated_at: str | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any], defaults: SponsorshipSettings) -> SponsorshipSettings:
        return cls(
            max_sponsored_slots=_int(record.get("max_sponsored_slots"), defaults.max_sponsored_slots),
            enable_rotation=bool(record.get("enable_rotation", defaults.enable_rotation)),
            rotation_interval=_int(record.get("rotation_interval"), defaults.rotation_interval),
            updated_at=record.get("updated_at"),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "max_sponsored_slots": int(self.max_sponsored_slots),
            "enable_rotation": bool(self.enable_rotation),
            "rotation_interval": int(self.rotation_interval),
            "updated_at": self.updated_at,
        }
