"""Seller product moderation: submit, review, promote to live collections."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from database import StoreTransaction
from marketplace.constants import (
    MODERATION_FIELDS,
    PRODUCT_MENU_ITEM,
    PRODUCT_RESTAURANT,
    REQUEST_DELETE,
    REQUEST_EDIT,
    REQUEST_NEW,
    ROUTING_FIELDS,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    SUBMISSION_STATUSES,
)
from marketplace.errors import (
    AccessDeniedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from marketplace.models import PendingSubmission
from marketplace.notifications import ModerationNotifier, NoopModerationNotifier
from marketplace.repository import MarketplaceRepository
from marketplace.validation import (
    MAX_REASON_LENGTH,
    MAX_TEXT_LENGTH,
    clean_text,
    normalize_product_type,
    normalize_request_type,
    require_identity,
    validate_payload,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _strip(payload: dict[str, Any], fields: frozenset[str]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in fields and k != "id"}


class ModerationService:
    """Use-cases of the seller → admin review pipeline.

    Every decision (pending check, live-collection write, status write and
    audit entry) commits in one store transaction, so a failed call leaves
    nothing half-applied and can simply be retried.
    """

    def __init__(
        self,
        repository: MarketplaceRepository | None = None,
        *,
        notifier: ModerationNotifier | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository or MarketplaceRepository()
        self.notifier = notifier or NoopModerationNotifier()
        self.clock = clock or _utc_now

    def _now_iso(self) -> str:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc).isoformat()

    # ---- guards ----

    async def _require_owned_live_product(
        self,
        product_type: str,
        product_id: str,
        seller_id: str,
        *,
        tx: StoreTransaction | None = None,
    ) -> dict[str, Any]:
        live = await self.repository.get_live_product(product_type, product_id, tx=tx)
        if not live:
            raise NotFoundError(f"Live {product_type} {product_id} not found.")
        if str(live.get("seller_id") or "") != str(seller_id):
            raise ValidationError(f"Seller {seller_id} does not own {product_type} {product_id}.")
        return live

    async def _check_menu_item_restaurant(
        self,
        payload: dict[str, Any],
        seller_id: str,
        *,
        tx: StoreTransaction | None = None,
    ) -> None:
        restaurant_id = payload.get("restaurant_id")
        if restaurant_id is None:
            return
        await self._require_owned_live_product(PRODUCT_RESTAURANT, str(restaurant_id), seller_id, tx=tx)

    async def _load_pending(self, submission_id: str, *, tx: StoreTransaction) -> PendingSubmission:
        record = await self.repository.get_submission(submission_id, tx=tx)
        if not record:
            raise NotFoundError(f"Submission {submission_id} not found.")
        submission = PendingSubmission.from_record(record)
        if not submission.is_pending:
            raise InvalidTransitionError(f"Submission {submission_id} is already {submission.status}.")
        return submission

    async def _notify(self, kind: str, submission: dict[str, Any] | None) -> None:
        if not submission:
            return
        try:
            if kind == "created":
                await self.notifier.submission_created(submission)
            else:
                await self.notifier.submission_decided(submission)
        except Exception:
            logger.exception("Moderation notifier failed kind=%s submission=%s", kind, submission.get("id"))

    # ---- seller side ----

    async def _create_submission(
        self,
        *,
        product_type: str,
        request_type: str,
        seller_id: str,
        payload: dict[str, Any],
        original_product_id: str | None = None,
        deletion_reason: str = "",
    ) -> str:
        now = self._now_iso()
        data = {
            "product_type": product_type,
            "request_type": request_type,
            "seller_id": seller_id,
            "payload": payload,
            "original_product_id": original_product_id,
            "status": STATUS_PENDING,
            "admin_notes": "",
            "admin_feedback": "",
            "deletion_reason": deletion_reason,
            "submitted_at": now,
            "updated_at": now,
            "approved_at": None,
            "rejected_at": None,
            "live_product_id": None,
            "reviewed_by": None,
        }
        async with self.repository.transaction() as tx:
            if request_type in {REQUEST_EDIT, REQUEST_DELETE}:
                await self._require_owned_live_product(product_type, str(original_product_id), seller_id, tx=tx)
            if product_type == PRODUCT_MENU_ITEM:
                await self._check_menu_item_restaurant(payload, seller_id, tx=tx)
            submission_id = await self.repository.create_submission(data, tx=tx)
            await self.repository.write_audit_log(
                submission_id=submission_id,
                actor_id=seller_id,
                action=f"submission_{request_type}_created",
                payload={"product_type": product_type, "original_product_id": original_product_id},
                tx=tx,
            )

        logger.info(
            "Submission %s created: %s %s by seller %s",
            submission_id,
            request_type,
            product_type,
            seller_id,
        )
        await self._notify("created", await self.repository.get_submission(submission_id))
        return submission_id

    async def submit_new(self, product_type: str, payload: dict[str, Any], seller_id: str) -> str:
        """Propose a new restaurant or menu item. Returns the submission id."""
        normalized_type = normalize_product_type(product_type)
        seller = require_identity(seller_id)
        cleaned = validate_payload(normalized_type, REQUEST_NEW, payload)
        return await self._create_submission(
            product_type=normalized_type,
            request_type=REQUEST_NEW,
            seller_id=seller,
            payload=cleaned,
        )

    async def submit_edit(
        self,
        original_product_id: str,
        product_type: str,
        payload: dict[str, Any],
        seller_id: str,
    ) -> str:
        """Propose changes to a live record the seller owns."""
        normalized_type = normalize_product_type(product_type)
        seller = require_identity(seller_id)
        target_id = require_identity(original_product_id, "original_product_id")
        cleaned = validate_payload(normalized_type, REQUEST_EDIT, payload)
        return await self._create_submission(
            product_type=normalized_type,
            request_type=REQUEST_EDIT,
            seller_id=seller,
            payload=cleaned,
            original_product_id=target_id,
        )

    async def submit_deletion(
        self,
        original_product_id: str,
        product_type: str,
        seller_id: str,
        reason: str = "",
    ) -> str:
        """Ask to take a live record the seller owns off the storefront."""
        normalized_type = normalize_product_type(product_type)
        seller = require_identity(seller_id)
        target_id = require_identity(original_product_id, "original_product_id")
        clean_reason = clean_text(reason or "", field_name="reason", max_length=MAX_REASON_LENGTH)
        return await self._create_submission(
            product_type=normalized_type,
            request_type=REQUEST_DELETE,
            seller_id=seller,
            payload={},
            original_product_id=target_id,
            deletion_reason=clean_reason,
        )

    async def update_pending(self, submission_id: str, seller_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Let the seller revise a submission that is still waiting for review."""
        seller = require_identity(seller_id)
        async with self.repository.transaction() as tx:
            submission = await self._load_pending(submission_id, tx=tx)
            if submission.seller_id != seller:
                raise AccessDeniedError("You can only change your own submissions.")
            cleaned = validate_payload(submission.product_type, submission.request_type, payload)
            if submission.product_type == PRODUCT_MENU_ITEM:
                await self._check_menu_item_restaurant(cleaned, seller, tx=tx)
            await self.repository.update_submission(
                submission.id,
                {"payload": cleaned, "updated_at": self._now_iso()},
                tx=tx,
            )
            await self.repository.write_audit_log(
                submission_id=submission.id,
                actor_id=seller,
                action="submission_updated",
                payload={"fields": sorted(cleaned)},
                tx=tx,
            )
        updated = await self.repository.get_submission(submission.id)
        if not updated:
            raise NotFoundError(f"Submission {submission_id} not found.")
        return updated

    async def cancel(self, submission_id: str, seller_id: str | None = None) -> None:
        """Withdraw a pending submission. Decided submissions stay for history."""
        async with self.repository.transaction() as tx:
            submission = await self._load_pending(submission_id, tx=tx)
            if seller_id is not None and submission.seller_id != str(seller_id):
                raise AccessDeniedError("You can only cancel your own submissions.")
            await self.repository.delete_submission(submission.id, tx=tx)
            await self.repository.write_audit_log(
                submission_id=submission.id,
                actor_id=submission.seller_id,
                action="submission_canceled",
                payload={"request_type": submission.request_type},
                tx=tx,
            )
        logger.info("Submission %s canceled by seller %s", submission_id, submission.seller_id)

    # ---- reads ----

    async def get(self, submission_id: str) -> dict[str, Any]:
        record = await self.repository.get_submission(submission_id)
        if not record:
            raise NotFoundError(f"Submission {submission_id} not found.")
        return record

    async def list_all(
        self,
        *,
        status: str | None = None,
        product_type: str | None = None,
        request_type: str | None = None,
        seller_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """All submissions, newest first, with optional filters."""
        if status is not None and status not in SUBMISSION_STATUSES:
            raise ValidationError(f"Unknown status: {status!r}.")
        return await self.repository.list_submissions(
            seller_id=seller_id,
            status=status,
            product_type=normalize_product_type(product_type) if product_type else None,
            request_type=normalize_request_type(request_type) if request_type else None,
        )

    async def list_pending(
        self,
        *,
        product_type: str | None = None,
        request_type: str | None = None,
    ) -> list[dict[str, Any]]:
        return await self.list_all(status=STATUS_PENDING, product_type=product_type, request_type=request_type)

    async def list_by_seller(self, seller_id: str, *, status: str | None = None) -> list[dict[str, Any]]:
        return await self.list_all(seller_id=require_identity(seller_id), status=status)

    async def list_pending_by_seller(self, seller_id: str) -> list[dict[str, Any]]:
        return await self.list_by_seller(seller_id, status=STATUS_PENDING)

    async def list_seller_live_products(self, seller_id: str) -> list[dict[str, Any]]:
        """Approved restaurants and menu items owned by the seller."""
        seller = require_identity(seller_id)
        products: list[dict[str, Any]] = []
        for product_type in (PRODUCT_RESTAURANT, PRODUCT_MENU_ITEM):
            rows = await self.repository.list_live_products(product_type, seller_id=seller)
            products.extend({**row, "product_type": product_type} for row in rows)
        return products

    async def subscribe_pending(self, on_change: Callable[[list[dict[str, Any]]], Any]) -> Callable[[], None]:
        """Admin queue listener; call the returned handle to stop."""

        def _filter(rows: list[dict[str, Any]]) -> Any:
            pending = [row for row in rows if row.get("status") == STATUS_PENDING]
            pending.sort(key=lambda r: str(r.get("submitted_at") or ""), reverse=True)
            return on_change(pending)

        return await self.repository.subscribe_submissions(_filter)

    async def subscribe_seller(
        self,
        seller_id: str,
        on_change: Callable[[list[dict[str, Any]]], Any],
    ) -> Callable[[], None]:
        seller = require_identity(seller_id)

        def _filter(rows: list[dict[str, Any]]) -> Any:
            own = [row for row in rows if str(row.get("seller_id") or "") == seller]
            own.sort(key=lambda r: str(r.get("submitted_at") or ""), reverse=True)
            return on_change(own)

        return await self.repository.subscribe_submissions(_filter)

    # ---- admin decisions ----

    async def _promote_new(self, submission: PendingSubmission, now: str, *, tx: StoreTransaction) -> str:
        data = _strip(submission.payload, MODERATION_FIELDS)
        if submission.product_type == PRODUCT_MENU_ITEM:
            await self._check_menu_item_restaurant(data, submission.seller_id, tx=tx)
        data.update(
            {
                "seller_id": submission.seller_id,
                "is_seller_product": True,
                "approved_at": now,
                "created_at": now,
                "updated_at": now,
            }
        )
        return await self.repository.create_live_product(submission.product_type, data, tx=tx)

    async def _apply_edit(self, submission: PendingSubmission, now: str, *, tx: StoreTransaction) -> None:
        target_id = str(submission.original_product_id or "")
        await self._require_owned_live_product(submission.product_type, target_id, submission.seller_id, tx=tx)
        changes = _strip(submission.payload, MODERATION_FIELDS | ROUTING_FIELDS)
        if submission.product_type == PRODUCT_MENU_ITEM:
            await self._check_menu_item_restaurant(changes, submission.seller_id, tx=tx)
        changes["updated_at"] = now
        await self.repository.update_live_product(submission.product_type, target_id, changes, tx=tx)

    async def _apply_delete(self, submission: PendingSubmission, *, tx: StoreTransaction) -> None:
        target_id = str(submission.original_product_id or "")
        await self._require_owned_live_product(submission.product_type, target_id, submission.seller_id, tx=tx)
        await self.repository.delete_live_product(submission.product_type, target_id, tx=tx)

    async def approve(self, submission_id: str, feedback: str = "", *, admin_id: str | None = None) -> dict[str, Any]:
        """Apply the submission to the live collections and mark it approved.

        Returns the updated submission; for new products ``live_product_id``
        holds the id of the created record.
        """
        clean_feedback = clean_text(feedback or "", field_name="feedback", max_length=MAX_TEXT_LENGTH)
        live_product_id: str | None = None
        async with self.repository.transaction() as tx:
            submission = await self._load_pending(submission_id, tx=tx)
            now = self._now_iso()
            if submission.request_type == REQUEST_NEW:
                live_product_id = await self._promote_new(submission, now, tx=tx)
            elif submission.request_type == REQUEST_EDIT:
                await self._apply_edit(submission, now, tx=tx)
            elif submission.request_type == REQUEST_DELETE:
                await self._apply_delete(submission, tx=tx)
            else:
                raise ValidationError(f"Unknown request type: {submission.request_type!r}.")

            fields: dict[str, Any] = {
                "status": STATUS_APPROVED,
                "admin_feedback": clean_feedback,
                "approved_at": now,
                "updated_at": now,
                "reviewed_by": admin_id,
            }
            if live_product_id is not None:
                fields["live_product_id"] = live_product_id
            await self.repository.update_submission(submission.id, fields, tx=tx)
            await self.repository.write_audit_log(
                submission_id=submission.id,
                actor_id=admin_id,
                action="submission_approved",
                payload={
                    "request_type": submission.request_type,
                    "product_type": submission.product_type,
                    "original_product_id": submission.original_product_id,
                    "live_product_id": live_product_id,
                },
                tx=tx,
            )

        logger.info(
            "Submission %s approved (%s %s) live_product_id=%s",
            submission_id,
            submission.request_type,
            submission.product_type,
            live_product_id or submission.original_product_id,
        )
        updated = await self.repository.get_submission(submission_id)
        await self._notify("decided", updated)
        return updated or {}

    async def reject(self, submission_id: str, reason: str = "", *, admin_id: str | None = None) -> dict[str, Any]:
        """Mark the submission rejected. Live collections stay untouched."""
        clean_reason = clean_text(reason or "", field_name="reason", max_length=MAX_TEXT_LENGTH)
        async with self.repository.transaction() as tx:
            submission = await self._load_pending(submission_id, tx=tx)
            now = self._now_iso()
            await self.repository.update_submission(
                submission.id,
                {
                    "status": STATUS_REJECTED,
                    "admin_feedback": clean_reason,
                    "rejected_at": now,
                    "updated_at": now,
                    "reviewed_by": admin_id,
                },
                tx=tx,
            )
            await self.repository.write_audit_log(
                submission_id=submission.id,
                actor_id=admin_id,
                action="submission_rejected",
                payload={"reason": clean_reason},
                tx=tx,
            )

        logger.info("Submission %s rejected", submission_id)
        updated = await self.repository.get_submission(submission_id)
        await self._notify("decided", updated)
        return updated or {}
