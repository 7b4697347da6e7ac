import asyncio
import signal

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from config import CFG, is_notifications_enabled
from logging_setup import configure_logging

configure_logging("marketplace")

import logging

from database import DocumentStore
from marketplace import build_notifier, build_services
from api_server import create_api_app, start_api_server, stop_api_server

logger = logging.getLogger(__name__)


async def main():
    """Application entry point."""
    store = DocumentStore()
    await store.init_db()

    bot: Bot | None = None
    if is_notifications_enabled():
        bot = Bot(
            token=CFG.bot_token,
            default=DefaultBotProperties(parse_mode=ParseMode.HTML),
        )
    else:
        logger.info("Moderation notifications disabled")
    notifier = build_notifier(bot, CFG.admin_ids)

    services = build_services(store, notifier=notifier)
    api_runner = await start_api_server(create_api_app(services))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    try:
        await stop_event.wait()
    finally:
        await stop_api_server(api_runner)
        if bot is not None:
            await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
