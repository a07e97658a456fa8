"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..config.settings import AppConfig, Environment, get_app_config
from ..datalake.storage import SQLiteStorage
from .alerts import AlertManager
from .event_bus import EventBus
from .logger import configure_logging
from .metrics import METRICS


def bootstrap_observability(
    storage: Optional[SQLiteStorage],
    event_bus: EventBus,
    *,
    config: Optional[AppConfig] = None,
) -> AlertManager:
    """Configure logging, event bus persistence, and alert routing."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)
    manager = AlertManager(app_config.monitoring)
    event_bus.attach_metrics(METRICS)
    event_bus.attach_alert_manager(manager)
    event_bus.attach_storage(storage)
    return manager


def describe_failure(exc: BaseException, config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Generic failure body for API consumers; detail is withheld in production."""

    app_config = config or get_app_config()
    body: Dict[str, Any] = {"error": "internal_error", "message": "The request could not be completed."}
    if app_config.environment != Environment.PRODUCTION:
        body["detail"] = {"type": type(exc).__name__, "message": str(exc)}
    return body


__all__ = ["bootstrap_observability", "describe_failure", "EventBus", "METRICS"]
