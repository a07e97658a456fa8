"""Operational alerting to Slack and generic webhooks."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config.settings import MonitoringConfig, get_app_config
from .logger import current_correlation_id, get_logger


class AlertSeverity(str, Enum):
    """Common severity levels recognised by the alert manager."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_SLACK_PREFIX = {
    AlertSeverity.INFO: ":information_source:",
    AlertSeverity.WARNING: ":warning:",
    AlertSeverity.ERROR: ":x:",
    AlertSeverity.CRITICAL: ":rotating_light:",
}


class AlertManager:
    """Posts operator-facing alerts (connectivity loss, rolled back writes).

    Alerts sharing a key are throttled so a flapping endpoint does not flood
    the channel. Delivery is best effort; a failing endpoint is logged and the
    remaining endpoints are still tried.
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_app_config().monitoring
        self._session = session or requests.Session()
        self._clock = clock
        self._logger = get_logger(__name__)
        self._last_sent: Dict[str, float] = {}

    @property
    def endpoints(self) -> List[str]:
        urls = [str(url) for url in self._config.webhook_urls]
        if self._config.slack_webhook_url:
            urls.insert(0, str(self._config.slack_webhook_url))
        return urls

    def _throttled(self, key: str) -> bool:
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < max(self._config.alert_throttle_seconds, 0):
            return True
        self._last_sent[key] = now
        return False

    def send(
        self,
        message: str,
        *,
        severity: AlertSeverity = AlertSeverity.INFO,
        key: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an alert; returns ``False`` when the key is inside its throttle window."""

        if self._throttled(key or message):
            self._logger.debug("Throttled alert %s", key or message)
            return False
        details = dict(extra or {})
        correlation_id = current_correlation_id()
        if correlation_id != "-":
            details.setdefault("correlation_id", correlation_id)
        self._logger.log(_LOG_LEVELS[severity], "Operational alert: %s", message)
        if self._config.slack_webhook_url:
            text = f"{_SLACK_PREFIX[severity]} [{severity.value.upper()}] {message}"
            self._post(str(self._config.slack_webhook_url), {"text": text})
        payload = {"message": message, "severity": severity.value, "extra": details}
        for url in self._config.webhook_urls:
            self._post(str(url), payload)
        return True

    def _post(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            response = self._session.post(url, json=payload, timeout=5)
            response.raise_for_status()
        except requests.RequestException as exc:  # pragma: no cover - network failures
            self._logger.warning("Failed to send alert to %s: %s", url, exc)


_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


__all__ = ["AlertManager", "AlertSeverity"]
