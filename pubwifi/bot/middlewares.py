from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Update

from pubwifi.core.logging import corr_id_var

log = logging.getLogger(__name__)


class CorrelationIdMiddleware(BaseMiddleware):
    """Tags every log record emitted while handling an update with corr_id."""

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        update: Update | None = data.get("event_update")
        if not update:
            return await handler(event, data)

        corr_id = f"u{update.update_id}"
        data["corr_id"] = corr_id
        token = corr_id_var.set(corr_id)
        try:
            return await handler(event, data)
        finally:
            corr_id_var.reset(token)


class RateLimitMiddleware(BaseMiddleware):
    def __init__(self, min_interval_sec: float = 0.4):
        self.min_interval_sec = min_interval_sec
        self._last: dict[tuple[int, str], float] = {}

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        # only for callback queries
        cb = getattr(event, "data", None)
        from_user = getattr(event, "from_user", None)
        if cb and from_user:
            key = (from_user.id, cb)
            now = time.monotonic()
            last = self._last.get(key)
            if last and (now - last) < self.min_interval_sec:
                log.debug("callback_dropped user_id=%s data=%s", from_user.id, cb)
                return None
            self._last[key] = now
            if len(self._last) > 10_000:
                cutoff = now - self.min_interval_sec
                self._last = {k: t for k, t in self._last.items() if t >= cutoff}
        return await handler(event, data)
