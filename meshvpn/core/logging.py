import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

# per-request fields (corr_id, wallet, auth) copied onto every record logged inside the request
_request_ctx: ContextVar[dict[str, Any]] = ContextVar("meshvpn_request_ctx", default={})

CONTEXT_FIELDS = ("corr_id", "wallet", "auth", "method", "path", "status")


def bind_request(**fields: Any) -> None:
    """Add fields to the current request's log context. None values are ignored."""
    ctx = dict(_request_ctx.get())
    ctx.update({k: v for k, v in fields.items() if v is not None})
    _request_ctx.set(ctx)


def clear_request() -> None:
    _request_ctx.set({})


def request_context() -> dict[str, Any]:
    return dict(_request_ctx.get())


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for k, v in _request_ctx.get().items():
            # explicit extra= wins over the bound value
            if not hasattr(record, k):
                setattr(record, k, v)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "service": "meshvpn",
        }
        for k in CONTEXT_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging() -> None:
    """Structured JSON logs to stdout, tagged with the request context."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())
    root.handlers.clear()
    root.addHandler(handler)
    # sqlalchemy echoes every statement at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
