"""Structured logging for the tracker.

Two context variables travel with the running task: the correlation id of
the poll cycle or transaction being handled and the mint currently being
worked on. Both are stamped on every record by a handler filter, so log
lines from the gateway, classifier and lifecycle can be joined per
signature and per token without passing ids around.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..config.settings import MonitoringConfig, get_app_config

_LOGGER_CACHE: Dict[str, logging.Logger] = {}
_CORRELATION_ID: ContextVar[str] = ContextVar("correlation_id", default="-")
_TOKEN: ContextVar[Optional[str]] = ContextVar("token", default=None)
_LOGGING_CONFIGURED = False

_STANDARD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())
_CONTEXT_ATTRS = {"correlation_id", "token"}
_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(correlation_id)s] %(token_label)s%(message)s"


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _CORRELATION_ID.get()
        token = getattr(record, "token", None) or _TOKEN.get()
        record.token = token
        record.token_label = f"{token} " if token else ""
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter that emits one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        token = getattr(record, "token", None)
        if token:
            payload["token"] = token
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
            and key not in _CONTEXT_ATTRS
            and key != "token_label"
            and not key.startswith("_")
        }
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(config: Optional[MonitoringConfig] = None, *, force: bool = False) -> None:
    """Install the root handler once; ``force`` reinstalls it with a new config."""

    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED and not force:
        return
    cfg = config or get_app_config().monitoring
    handler = logging.StreamHandler(sys.stdout)
    if cfg.log_format == "text":
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    else:
        handler.setFormatter(StructuredFormatter())
    handler.addFilter(_ContextFilter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))
    # HTTP client libraries log every request at INFO.
    for name in cfg.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.captureWarnings(True)
    _LOGGING_CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    if not _LOGGING_CONFIGURED:
        configure_logging()
    if name not in _LOGGER_CACHE:
        _LOGGER_CACHE[name] = logging.getLogger(name)
    return _LOGGER_CACHE[name]


def current_correlation_id() -> str:
    return _CORRELATION_ID.get()


def current_token() -> Optional[str]:
    return _TOKEN.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str]):
    token = _CORRELATION_ID.set(correlation_id or "-")
    try:
        yield
    finally:
        _CORRELATION_ID.reset(token)


@contextmanager
def token_scope(mint: Optional[str]):
    """Tag records logged inside the block with ``mint``."""

    reset = _TOKEN.set(mint)
    try:
        yield
    finally:
        _TOKEN.reset(reset)


__all__ = [
    "get_logger",
    "configure_logging",
    "correlation_scope",
    "current_correlation_id",
    "current_token",
    "token_scope",
    "StructuredFormatter",
]
