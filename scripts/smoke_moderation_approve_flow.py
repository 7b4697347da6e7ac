#!/usr/bin/env python3
"""
Moderation smoke-check: a seller submission goes live only after approve.

What it validates:
- new restaurant submission lands in the pending queue
- approve creates the live restaurant owned by the seller
- the submission becomes approved and cannot be decided twice
- deletion request approved by admin removes the restaurant

Run:
  python3 scripts/smoke_moderation_approve_flow.py
"""

from __future__ import annotations

import asyncio
import time
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
from marketplace import InvalidTransitionError, build_services  # noqa: E402


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


async def main() -> None:
    store = DocumentStore()
    await store.init_db()
    services = build_services(store)
    moderation = services.moderation

    stamp = int(time.time())
    seller_id = f"smoke-seller-{stamp}"
    submission_ids: list[str] = []
    live_id = ""

    try:
        submission_id = await moderation.submit_new(
            "restaurant",
            {"name": f"Smoke Burger {stamp}", "address": "Smoke st 1"},
            seller_id,
        )
        submission_ids.append(submission_id)
        pending = await moderation.list_pending_by_seller(seller_id)
        _assert([row["id"] for row in pending] == [submission_id], "submission must be pending for the seller")

        approved = await moderation.approve(submission_id, "smoke ok", admin_id="smoke-admin")
        _assert(approved.get("status") == "approved", "submission status must become approved")
        live_id = str(approved.get("live_product_id") or "")
        live = await services.catalog.get_restaurant(live_id)
        _assert(live.get("seller_id") == seller_id, "live restaurant must belong to the seller")
        _assert(live.get("is_seller_product") is True, "live restaurant must be marked as seller product")
        _assert("status" not in live, "moderation fields must not leak into live record")

        try:
            await moderation.approve(submission_id)
        except InvalidTransitionError:
            pass
        else:
            raise AssertionError("second approve must fail")

        deletion_id = await moderation.submit_deletion(live_id, "restaurant", seller_id, reason="smoke cleanup")
        submission_ids.append(deletion_id)
        await moderation.approve(deletion_id)
        _assert(
            await services.catalog.repository.get_live_product("restaurant", live_id) is None,
            "approved deletion must remove the restaurant",
        )
        live_id = ""

        print("OK: moderation approve flow smoke passed.")
    finally:
        # Keep DB clean.
        if live_id:
            await services.catalog.delete_restaurant(live_id)
        for submission_id in submission_ids:
            await store.delete("pending_products", submission_id)
            for row in await moderation.repository.list_audit_logs(submission_id=submission_id):
                await store.delete("moderation_audit_log", row["id"])


if __name__ == "__main__":
    asyncio.run(main())
