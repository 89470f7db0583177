from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

corr_id_var: ContextVar[str | None] = ContextVar("corr_id", default=None)

CONTEXT_FIELDS = (
    "corr_id",
    "update_id",
    "event",
    "user_id",
    "session_id",
    "client_ip",
    "remote_addr",
    "bytes_sent",
    "bytes_received",
)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        corr_id = corr_id_var.get()
        if corr_id is not None and not hasattr(record, "corr_id"):
            record.corr_id = corr_id
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # optional context fields
        for k in CONTEXT_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging() -> None:
    """Structured JSON logs to stdout."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(CorrelationIdFilter())
    root.handlers.clear()
    root.addHandler(handler)
    # per-update polling chatter
    logging.getLogger("aiogram.event").setLevel(logging.WARNING)
