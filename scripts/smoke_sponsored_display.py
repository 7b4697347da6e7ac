#!/usr/bin/env python3
"""
Sponsored placements smoke-check: storefront order follows priority.

What it validates:
- PREMIUM placement is shown before STANDARD and BASIC
- moving a placement up swaps ranks with the holder of that rank
- max_sponsored_slots caps the storefront selection
- impression counter increments

Uses a temporary database, the configured one is never touched.

Run:
  python3 scripts/smoke_sponsored_display.py
"""

from __future__ import annotations

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys


def _setup_import_path() -> None:
    for candidate in (
        Path.cwd() / "src",  # local repo root
        Path("/app/src"),    # container path
    ):
        if candidate.exists():
            sys.path.insert(0, str(candidate))
            return


_setup_import_path()

from database import DocumentStore  # noqa: E402
from marketplace import build_services  # noqa: E402


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


async def main() -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        store = DocumentStore(str(Path(tmp_dir) / "smoke.db"))
        await store.init_db()
        services = build_services(store)
        sponsorships = services.sponsorships

        now = datetime.now(timezone.utc)
        window = {
            "start_date": (now - timedelta(days=1)).isoformat(),
            "end_date": (now + timedelta(days=7)).isoformat(),
        }

        placements: dict[str, str] = {}
        for name, level in (("Basic Bistro", "BASIC"), ("Premium Pizza", "PREMIUM"), ("Standard Sushi", "STANDARD")):
            restaurant = await services.catalog.create_restaurant({"name": name})
            created = await sponsorships.create(restaurant["id"], level, **window)
            placements[name] = created["id"]

        await sponsorships.update_settings(max_sponsored_slots=3)
        names = [row["name"] for row in await sponsorships.featured_restaurants()]
        _assert(names == ["Premium Pizza", "Standard Sushi", "Basic Bistro"], f"unexpected order: {names}")

        await sponsorships.reprioritize(placements["Basic Bistro"], "up")
        names = [row["name"] for row in await sponsorships.featured_restaurants()]
        _assert(names == ["Premium Pizza", "Basic Bistro", "Standard Sushi"], f"unexpected order after move: {names}")

        await sponsorships.update_settings(max_sponsored_slots=1)
        shown = await sponsorships.select_for_display()
        _assert(len(shown) == 1, "max_sponsored_slots must cap the selection")

        _assert(await sponsorships.record_impression(shown[0]["id"]), "impression must be recorded")
        current = await sponsorships.get(shown[0]["id"])
        _assert(current["impressions"] == 1, "impressions counter must be 1")

    print("OK: sponsored display smoke passed.")


if __name__ == "__main__":
    asyncio.run(main())
