import asyncio
import logging
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.fsm.storage.memory import MemoryStorage

from modelbot.config import get_settings
from modelbot.db import DatabaseManager
from modelbot.middlewares.database_middleware import DatabaseMiddleware
from modelbot.middlewares.logging_middleware import LoggingMiddleware
from modelbot.scheduler.scheduler_manager import SchedulerManager


async def main():
    """The main function that starts the bot."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level_value,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    logger = logging.getLogger(__name__)

    database = DatabaseManager(settings.db, scheduler=SchedulerManager(settings.scheduler.timezone))
    await database.initialize()
    database.set_debug_mode(settings.debug)

    bot = Bot(
        token=settings.bot.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher(storage=MemoryStorage())

    dp.update.outer_middleware(LoggingMiddleware())
    dp.update.outer_middleware(DatabaseMiddleware(database))
    dp["database"] = database

    try:
        logger.info("Starting bot...")
        await bot.delete_webhook(drop_pending_updates=True)
        await dp.start_polling(bot)
    finally:
        await database.close()
        await bot.session.close()
        logger.info("Bot stopped.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Bot stopped.")
