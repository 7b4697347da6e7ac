"""Sponsored restaurant placements: lifecycle, ranking and engagement counters."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, TypeVar

from config import CFG
from database import StoreTransaction, StoreUnavailableError
from marketplace.constants import (
    DEFAULT_PRIORITY_LEVEL,
    MAX_SPONSORED_SLOTS_LIMIT,
    PRIORITY_LEVELS,
    PRODUCT_RESTAURANT,
    SPONSORSHIP_ACTIVE,
    SPONSORSHIP_COUNTERS,
    SPONSORSHIP_EXPIRED,
    SPONSORSHIP_INACTIVE,
    SPONSORSHIP_SCHEDULED,
)
from marketplace.errors import NotFoundError, ValidationError
from marketplace.models import Sponsorship, SponsorshipSettings
from marketplace.repository import MarketplaceRepository
from marketplace.validation import require_identity

logger = logging.getLogger(__name__)

T = TypeVar("T")

DIRECTION_UP = "up"
DIRECTION_DOWN = "down"
UPDATABLE_FIELDS = {"restaurant_id", "priority_level", "priority", "start_date", "end_date", "is_active"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_iso_utc(raw_value: Any) -> datetime | None:
    if raw_value is None or raw_value == "":
        return None
    if isinstance(raw_value, datetime):
        return _as_utc(raw_value)
    if isinstance(raw_value, date):
        return datetime(raw_value.year, raw_value.month, raw_value.day, tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(raw_value).strip())
    except ValueError:
        return None
    return _as_utc(parsed)


def priority_for_level(level: str) -> int:
    """PREMIUM → 1, STANDARD → 2, BASIC → 3."""
    normalized = str(level or "").strip().upper()
    if normalized not in PRIORITY_LEVELS:
        raise ValidationError(f"Unknown priority level: {level!r}.")
    return PRIORITY_LEVELS[normalized]


def sponsorship_status(sponsorship: Sponsorship | Mapping[str, Any], now: datetime | None = None) -> str:
    """Derive the lifecycle status; the order of checks matters.

    An inactive placement is ``inactive`` whatever its dates are, and an
    active flag past its end date reads ``expired`` (nothing switches the
    flag off automatically).
    """
    item = Sponsorship.coerce(sponsorship)
    ref_now = _as_utc(now) if now is not None else _utc_now()
    if not item.is_active:
        return SPONSORSHIP_INACTIVE
    start = _parse_iso_utc(item.start_date)
    if start is not None and ref_now < start:
        return SPONSORSHIP_SCHEDULED
    end = _parse_iso_utc(item.end_date)
    if end is not None and ref_now > end:
        return SPONSORSHIP_EXPIRED
    return SPONSORSHIP_ACTIVE


def _rank_key(sponsorship: Sponsorship | Mapping[str, Any]) -> tuple[int, str, str]:
    item = Sponsorship.coerce(sponsorship)
    return (item.priority, str(item.created_at or ""), item.id)


def select_for_display(sponsorships: Sequence[T], now: datetime | None, max_slots: int) -> list[T]:
    """Active placements, lowest priority number first, at most ``max_slots``."""
    active = [s for s in sponsorships if sponsorship_status(s, now) == SPONSORSHIP_ACTIVE]  # type: ignore[arg-type]
    active.sort(key=_rank_key)  # type: ignore[arg-type]
    return active[: max(0, int(max_slots))]


def apply_rotation(sponsorships: list[T], settings: SponsorshipSettings, now: datetime | None = None) -> list[T]:
    """Hook for rotating placements that share a rank.

    ``enable_rotation``/``rotation_interval`` are kept in settings, but no
    rotation policy is defined, so the ranking is returned unchanged.
    """
    return sponsorships


def ctr(impressions: int, clicks: int) -> float:
    """Click-through rate in percent."""
    if not impressions:
        return 0
    return round(clicks / impressions * 100, 2)


def conversion_rate(clicks: int, conversions: int) -> float:
    if not clicks:
        return 0
    return round(conversions / clicks * 100, 2)


def _is_past_window(sponsorship: Mapping[str, Any], now: datetime) -> bool:
    end = _parse_iso_utc(sponsorship.get("end_date"))
    return end is not None and now > end


def _parse_window(start_raw: Any, end_raw: Any) -> tuple[str, str]:
    start = _parse_iso_utc(start_raw)
    end = _parse_iso_utc(end_raw)
    if start is None:
        raise ValidationError("start_date must be an ISO-8601 date.")
    if end is None:
        raise ValidationError("end_date must be an ISO-8601 date.")
    if end < start:
        raise ValidationError("end_date cannot be before start_date.")
    return start.isoformat(), end.isoformat()


def _validate_priority(raw: Any) -> int:
    if isinstance(raw, bool):
        raise ValidationError("priority must be a positive integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("priority must be a positive integer.") from None
    if value < 1:
        raise ValidationError("priority must be a positive integer.")
    return value


def _validate_flag(raw: Any, name: str) -> bool:
    if not isinstance(raw, bool):
        raise ValidationError(f"{name} must be true or false.")
    return raw


class SponsorshipService:
    """Admin and storefront use-cases for sponsored placements."""

    def __init__(
        self,
        repository: MarketplaceRepository | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        defaults: SponsorshipSettings | None = None,
    ) -> None:
        self.repository = repository or MarketplaceRepository()
        self.clock = clock or _utc_now
        self.defaults = defaults or SponsorshipSettings(
            max_sponsored_slots=CFG.sponsored_max_slots,
            enable_rotation=CFG.sponsored_enable_rotation,
            rotation_interval=CFG.sponsored_rotation_interval_hours,
        )

    def _now(self) -> datetime:
        return _as_utc(self.clock())

    def _with_status(self, record: dict[str, Any], now: datetime) -> dict[str, Any]:
        return {**record, "status": sponsorship_status(record, now)}

    async def _require(self, sponsorship_id: str, *, tx: StoreTransaction | None = None) -> dict[str, Any]:
        record = await self.repository.get_sponsorship(sponsorship_id, tx=tx)
        if not record:
            raise NotFoundError(f"Sponsorship {sponsorship_id} not found.")
        return record

    async def _assert_restaurant_available(
        self,
        restaurant_id: str,
        *,
        now: datetime,
        tx: StoreTransaction,
        exclude_id: str | None = None,
    ) -> None:
        """One running or upcoming placement per restaurant."""
        restaurant = await self.repository.get_live_product(PRODUCT_RESTAURANT, restaurant_id, tx=tx)
        if not restaurant:
            raise NotFoundError(f"Restaurant {restaurant_id} not found.")
        for row in await self.repository.list_sponsorships(restaurant_id=restaurant_id, tx=tx):
            if row["id"] == exclude_id or _is_past_window(row, now):
                continue
            raise ValidationError(f"Restaurant {restaurant_id} already has a sponsorship ({row['id']}).")

    # ---- admin CRUD ----

    async def create(
        self,
        restaurant_id: str,
        priority_level: str = DEFAULT_PRIORITY_LEVEL,
        start_date: Any = None,
        end_date: Any = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        """Create a placement; its priority starts from the level's rank."""
        target_id = require_identity(restaurant_id, "restaurant_id")
        level = str(priority_level or DEFAULT_PRIORITY_LEVEL).strip().upper()
        priority = priority_for_level(level)
        start_iso, end_iso = _parse_window(start_date, end_date)
        active_flag = _validate_flag(is_active, "is_active")
        now = self._now()
        data = {
            "restaurant_id": target_id,
            "priority_level": level,
            "priority": priority,
            "start_date": start_iso,
            "end_date": end_iso,
            "is_active": active_flag,
            "impressions": 0,
            "clicks": 0,
            "conversions": 0,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        async with self.repository.transaction() as tx:
            await self._assert_restaurant_available(target_id, now=now, tx=tx)
            sponsorship_id = await self.repository.create_sponsorship(data, tx=tx)
        logger.info("Sponsorship %s created for restaurant %s (%s)", sponsorship_id, target_id, level)
        return await self.get(sponsorship_id)

    async def update(self, sponsorship_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(fields) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unsupported fields: {', '.join(unknown)}.")
        now = self._now()
        async with self.repository.transaction() as tx:
            current = await self._require(sponsorship_id, tx=tx)
            changes: dict[str, Any] = {}
            if "priority_level" in fields:
                level = str(fields["priority_level"] or "").strip().upper()
                changes["priority_level"] = level
                changes["priority"] = priority_for_level(level)
            if "priority" in fields:
                changes["priority"] = _validate_priority(fields["priority"])
            if "start_date" in fields or "end_date" in fields:
                start_iso, end_iso = _parse_window(
                    fields.get("start_date", current.get("start_date")),
                    fields.get("end_date", current.get("end_date")),
                )
                changes["start_date"] = start_iso
                changes["end_date"] = end_iso
            if "is_active" in fields:
                changes["is_active"] = _validate_flag(fields["is_active"], "is_active")
            target_id = current.get("restaurant_id")
            if "restaurant_id" in fields:
                target_id = require_identity(fields["restaurant_id"], "restaurant_id")
                changes["restaurant_id"] = target_id
            moved = target_id != current.get("restaurant_id")
            # A window that has not ended counts as the restaurant's one placement.
            revived = "end_date" in changes and not _is_past_window(changes, now)
            if moved or revived:
                await self._assert_restaurant_available(target_id, now=now, tx=tx, exclude_id=current["id"])
            changes["updated_at"] = now.isoformat()
            await self.repository.update_sponsorship(current["id"], changes, tx=tx)
        return await self.get(sponsorship_id)

    async def delete(self, sponsorship_id: str) -> None:
        deleted = await self.repository.delete_sponsorship(sponsorship_id)
        if not deleted:
            raise NotFoundError(f"Sponsorship {sponsorship_id} not found.")
        logger.info("Sponsorship %s deleted", sponsorship_id)

    async def toggle_active(self, sponsorship_id: str, is_active: bool) -> dict[str, Any]:
        return await self.update(sponsorship_id, {"is_active": is_active})

    async def reprioritize(self, sponsorship_id: str, direction: str) -> dict[str, Any]:
        """Move one rank up or down by swapping with the neighbouring placement.

        Priorities are first relabelled to a gap-free 1..n following the
        display order, so ties never decide who the mover swaps with. Every
        write commits together. Moving above rank 1 is a no-op; moving down
        from the last rank takes the next free value.
        """
        normalized = str(direction or "").strip().lower()
        if normalized not in {DIRECTION_UP, DIRECTION_DOWN}:
            raise ValidationError("direction must be 'up' or 'down'.")
        now_iso = self._now().isoformat()
        async with self.repository.transaction() as tx:
            mover = Sponsorship.from_record(await self._require(sponsorship_id, tx=tx))
            ranked = sorted(await self.repository.list_sponsorships(tx=tx), key=_rank_key)
            order = [row["id"] for row in ranked]
            index = order.index(mover.id)
            target = index - 1 if normalized == DIRECTION_UP else index + 1
            if target < 0:
                logger.debug("Sponsorship %s already at the top", sponsorship_id)
            else:
                if target < len(order):
                    order[index], order[target] = order[target], order[index]
                labels = {row_id: rank for rank, row_id in enumerate(order, start=1)}
                if target >= len(order):
                    labels[mover.id] = len(order) + 1
                for row in ranked:
                    if Sponsorship.from_record(row).priority != labels[row["id"]]:
                        await self.repository.update_sponsorship(
                            row["id"], {"priority": labels[row["id"]], "updated_at": now_iso}, tx=tx
                        )
        return await self.get(sponsorship_id)

    # ---- reads ----

    async def get(self, sponsorship_id: str) -> dict[str, Any]:
        return self._with_status(await self._require(sponsorship_id), self._now())

    async def list_all(self) -> list[dict[str, Any]]:
        now = self._now()
        rows = await self.repository.list_sponsorships()
        rows.sort(key=_rank_key)
        return [self._with_status(row, now) for row in rows]

    async def list_active(self) -> list[dict[str, Any]]:
        now = self._now()
        rows = await self.repository.list_sponsorships()
        return [self._with_status(row, now) for row in select_for_display(rows, now, len(rows))]

    async def select_for_display(self, max_slots: int | None = None) -> list[dict[str, Any]]:
        """Storefront selection capped by ``max_sponsored_slots``."""
        now = self._now()
        settings = await self.get_settings()
        slots = settings.max_sponsored_slots if max_slots is None else int(max_slots)
        rows = await self.repository.list_sponsorships()
        ranked = apply_rotation(select_for_display(rows, now, len(rows)), settings, now)
        return [self._with_status(row, now) for row in ranked[: max(0, slots)]]

    async def featured_restaurants(self) -> list[dict[str, Any]]:
        """Displayed placements joined with their restaurants; dangling ones are skipped."""
        featured: list[dict[str, Any]] = []
        for sponsorship in await self.select_for_display():
            restaurant = await self.repository.get_live_product(PRODUCT_RESTAURANT, sponsorship["restaurant_id"])
            if not restaurant:
                logger.warning(
                    "Sponsorship %s points to missing restaurant %s",
                    sponsorship["id"],
                    sponsorship["restaurant_id"],
                )
                continue
            featured.append({**restaurant, "sponsorship": sponsorship})
        return featured

    async def subscribe_active(self, on_change: Callable[[list[dict[str, Any]]], Any]) -> Callable[[], None]:
        """Listener over active placements sorted by priority."""

        def _select(rows: list[dict[str, Any]]) -> Any:
            now = self._now()
            return on_change([self._with_status(row, now) for row in select_for_display(rows, now, len(rows))])

        return await self.repository.subscribe_sponsorships(_select)

    async def list_available_restaurants(self, editing_id: str | None = None) -> list[dict[str, Any]]:
        """Restaurants that can get a new placement (picker for the admin form)."""
        now = self._now()
        taken = {
            str(row.get("restaurant_id"))
            for row in await self.repository.list_sponsorships()
            if row["id"] != editing_id and not _is_past_window(row, now)
        }
        return [r for r in await self.repository.list_restaurants() if r["id"] not in taken]

    async def dashboard_stats(self) -> dict[str, Any]:
        now = self._now()
        rows = await self.repository.list_sponsorships()
        counts = {
            SPONSORSHIP_ACTIVE: 0,
            SPONSORSHIP_SCHEDULED: 0,
            SPONSORSHIP_EXPIRED: 0,
            SPONSORSHIP_INACTIVE: 0,
        }
        impressions = clicks = conversions = 0
        for row in rows:
            counts[sponsorship_status(row, now)] += 1
            item = Sponsorship.from_record(row)
            impressions += item.impressions
            clicks += item.clicks
            conversions += item.conversions
        return {
            "total": len(rows),
            **counts,
            "total_impressions": impressions,
            "total_clicks": clicks,
            "total_conversions": conversions,
            "ctr": ctr(impressions, clicks),
            "conversion_rate": conversion_rate(clicks, conversions),
        }

    # ---- engagement counters ----

    async def _record(self, sponsorship_id: str, counter: str) -> bool:
        """Analytics only: never breaks the storefront."""
        if counter not in SPONSORSHIP_COUNTERS:
            raise ValueError(f"Unknown sponsorship counter: {counter!r}")
        try:
            recorded = await self.repository.increment_sponsorship_counter(sponsorship_id, counter)
        except Exception:
            logger.exception("Failed to record %s sponsorship_id=%s", counter, sponsorship_id)
            return False
        if not recorded:
            logger.debug("Skip %s for missing sponsorship %s", counter, sponsorship_id)
        return recorded

    async def record_impression(self, sponsorship_id: str) -> bool:
        return await self._record(sponsorship_id, "impressions")

    async def record_click(self, sponsorship_id: str) -> bool:
        return await self._record(sponsorship_id, "clicks")

    async def record_conversion(self, sponsorship_id: str) -> bool:
        return await self._record(sponsorship_id, "conversions")

    # ---- settings ----

    async def get_settings(self) -> SponsorshipSettings:
        try:
            record = await self.repository.get_sponsorship_settings()
        except StoreUnavailableError:
            logger.exception("Failed to load sponsorship settings, using defaults")
            return replace(self.defaults)
        if not record:
            return replace(self.defaults)
        return SponsorshipSettings.from_record(record, self.defaults)

    async def update_settings(
        self,
        *,
        max_sponsored_slots: int | None = None,
        enable_rotation: bool | None = None,
        rotation_interval: int | None = None,
    ) -> SponsorshipSettings:
        settings = await self.get_settings()
        if max_sponsored_slots is not None:
            slots = _validate_priority(max_sponsored_slots)
            if slots > MAX_SPONSORED_SLOTS_LIMIT:
                raise ValidationError(f"max_sponsored_slots cannot exceed {MAX_SPONSORED_SLOTS_LIMIT}.")
            settings.max_sponsored_slots = slots
        if enable_rotation is not None:
            settings.enable_rotation = _validate_flag(enable_rotation, "enable_rotation")
        if rotation_interval is not None:
            settings.rotation_interval = _validate_priority(rotation_interval)
        settings.updated_at = self._now().isoformat()
        await self.repository.put_sponsorship_settings(settings.to_record())
        logger.info(
            "Sponsorship settings updated: slots=%s rotation=%s interval=%sh",
            settings.max_sponsored_slots,
            settings.enable_rotation,
            settings.rotation_interval,
        )
        return settings
