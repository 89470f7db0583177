import logging

from aiogram import Bot, Dispatcher

from pubwifi.bot.handlers.vpn import router as vpn_router
from pubwifi.bot.middlewares import CorrelationIdMiddleware, RateLimitMiddleware
from pubwifi.core.config import Settings
from pubwifi.services.vpn.service import SessionManager

log = logging.getLogger(__name__)


async def run_bot(settings: Settings, vpn: SessionManager) -> None:
    bot = Bot(token=settings.bot_token)
    # workflow data: handlers receive these as keyword arguments
    dp = Dispatcher(vpn=vpn, settings=settings)
    dp.message.middleware(CorrelationIdMiddleware())
    dp.callback_query.middleware(CorrelationIdMiddleware())
    dp.callback_query.middleware(RateLimitMiddleware(min_interval_sec=0.4))

    dp.include_router(vpn_router)

    log.info("bot_start")
    try:
        await dp.start_polling(bot)
    finally:
        await bot.session.close()
