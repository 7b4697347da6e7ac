"""Moderation notifications sent through the Telegram Bot API."""

from __future__ import annotations

import asyncio
import html
import logging
from collections.abc import Iterable
from typing import Any, Protocol

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from marketplace.constants import PRODUCT_RESTAURANT, REQUEST_NEW, STATUS_APPROVED, STATUS_PENDING

logger = logging.getLogger(__name__)


class ModerationNotifier(Protocol):
    """Contract used by the moderation pipeline after each commit."""

    async def submission_created(self, submission: dict[str, Any]) -> None:
        """A seller submitted something for review."""

    async def submission_decided(self, submission: dict[str, Any]) -> None:
        """An admin approved or rejected a submission."""


class NoopModerationNotifier:
    """Fallback when notifications are disabled."""

    async def submission_created(self, submission: dict[str, Any]) -> None:
        return None

    async def submission_decided(self, submission: dict[str, Any]) -> None:
        return None


def _product_label(submission: dict[str, Any]) -> str:
    return "restaurant" if submission.get("product_type") == PRODUCT_RESTAURANT else "menu item"


def _product_name(submission: dict[str, Any], default: str) -> str:
    payload = submission.get("payload") or {}
    return html.escape(str(payload.get("name") or "").strip() or default)


def format_new_submission_message(submission: dict[str, Any]) -> str:
    request_type = str(submission.get("request_type") or REQUEST_NEW)
    prefix = "New" if request_type == REQUEST_NEW else request_type.capitalize()
    name = _product_name(submission, "Unnamed")
    return (
        "🆕 <b>New product review required</b>\n"
        f"{prefix} {_product_label(submission)}: “{name}”\n"
        f"Submission: <code>{html.escape(str(submission.get('id') or ''))}</code>"
    )


def format_decision_message(submission: dict[str, Any]) -> str:
    name = _product_name(submission, "Your product")
    if submission.get("status") == STATUS_APPROVED:
        return f"✅ <b>Product approved!</b>\n“{name}” has been approved and is now live!"
    feedback = html.escape(str(submission.get("admin_feedback") or "").strip())
    text = f"❌ <b>Product review update</b>\n“{name}” was not approved."
    if feedback:
        text += f"\n{feedback}"
    return text


def seller_chat_id(seller_id: Any) -> int | None:
    """Sellers registered through Telegram use their chat id as identity."""
    raw = str(seller_id or "").strip()
    if not raw.lstrip("-").isdigit():
        return None
    return int(raw)


class TelegramModerationNotifier:
    """Best-effort delivery: failures are logged, never raised."""

    def __init__(self, bot: Bot, admin_chat_ids: Iterable[int]) -> None:
        self.bot = bot
        self.admin_chat_ids = [int(chat_id) for chat_id in admin_chat_ids]

    async def _send(self, chat_id: int, text: str) -> bool:
        try:
            await self.bot.send_message(chat_id, text)
            return True
        except (TelegramAPIError, asyncio.TimeoutError):
            logger.exception("Failed to deliver moderation notification chat_id=%s", chat_id)
            return False

    async def submission_created(self, submission: dict[str, Any]) -> None:
        if not self.admin_chat_ids:
            return
        text = format_new_submission_message(submission)
        for chat_id in self.admin_chat_ids:
            await self._send(chat_id, text)

    async def submission_decided(self, submission: dict[str, Any]) -> None:
        if submission.get("status") == STATUS_PENDING:
            return
        chat_id = seller_chat_id(submission.get("seller_id"))
        if chat_id is None:
            logger.debug("Seller %s has no Telegram chat, skipping notification", submission.get("seller_id"))
            return
        await self._send(chat_id, format_decision_message(submission))


def build_notifier(bot: Bot | None, admin_chat_ids: Iterable[int] = ()) -> ModerationNotifier:
    """Resolve notifier by whether a bot is configured."""
    if bot is None:
        return NoopModerationNotifier()
    return TelegramModerationNotifier(bot, admin_chat_ids)
