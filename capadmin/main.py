from __future__ import annotations

import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from capadmin.bot.handlers import BOT_COMMANDS, init_handlers, router
from capadmin.core.config import get_settings
from capadmin.core.container import build_hub
from capadmin.core.logging import setup_logging
from capadmin.workers.scheduler import WorkerScheduler

logger = logging.getLogger(__name__)


async def run() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)

    bot = Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    hub = build_hub(settings, bot)
    for store in hub.stores.values():
        store.load()
    init_handlers(hub)

    dp = Dispatcher()
    dp.include_router(router)

    scheduler = WorkerScheduler(hub)
    try:
        await bot.set_my_commands(BOT_COMMANDS)
        scheduler.start()
        logger.info(
            "bot_started",
            extra={"event": "bot_started", "count": len(settings.chat_ids_list())},
        )
        await dp.start_polling(bot)
    finally:
        scheduler.stop()
        await hub.http.close()
        await bot.session.close()
        logger.info("bot_stopped", extra={"event": "bot_stopped"})


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
