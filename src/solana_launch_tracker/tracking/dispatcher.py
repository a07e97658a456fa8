"""Delivery of token alerts to notification sinks."""

from __future__ import annotations

import asyncio
import json
import queue
from typing import List, Optional, Protocol, Sequence

import requests

from ..config.settings import NotificationConfig, get_app_config
from ..datalake.schemas import AlertPayload
from ..monitoring.event_bus import Event, EventBus, EventSeverity, EventType
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from .lifecycle import StateChange, TokenLifecycle

HIGH_SCORE_ALERT = "high_score"
GRADUATION_ALERT = "graduation"


class NotificationSink(Protocol):
    """One-way destination for alert payloads."""

    name: str

    def send(self, payload: AlertPayload) -> None:
        ...


class LogSink:
    """Writes alerts to the structured log."""

    name = "log"

    def __init__(self) -> None:
        self._logger = get_logger("solana_launch_tracker.alerts")

    def send(self, payload: AlertPayload) -> None:
        self._logger.info("Token alert %s", json.dumps(payload.to_dict()))


class WebhookSink:
    """POSTs the alert JSON to a single webhook URL."""

    def __init__(self, url: str, *, timeout: float = 5.0, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.name = f"webhook:{url}"
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, payload: AlertPayload) -> None:
        response = self._session.post(self.url, json=payload.to_dict(), timeout=self._timeout)
        response.raise_for_status()


def build_sinks(config: NotificationConfig, *, session: Optional[requests.Session] = None) -> List[NotificationSink]:
    sinks: List[NotificationSink] = []
    if config.log_alerts:
        sinks.append(LogSink())
    for url in config.webhook_urls:
        sinks.append(WebhookSink(str(url), timeout=config.http_timeout, session=session))
    return sinks


class AlertDispatcher:
    """Turns committed lifecycle changes into alert notifications.

    The lifecycle marks ``alert_sent`` in the same durable write that makes a
    token cross the alert threshold, so a change carrying the alert flag is
    delivered exactly once. A sink that fails is reported on the event bus
    and is never retried for that alert.
    """

    def __init__(
        self,
        sinks: Optional[Sequence[NotificationSink]] = None,
        *,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
        config: Optional[NotificationConfig] = None,
    ) -> None:
        if sinks is None:
            sinks = build_sinks(config or get_app_config().notifications)
        self._sinks = list(sinks)
        self._event_bus = event_bus
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)
        self._dispatched: List[AlertPayload] = []

    @property
    def dispatched(self) -> List[AlertPayload]:
        return list(self._dispatched)

    def attach(self, lifecycle: TokenLifecycle) -> None:
        lifecycle.subscribe(self.handle_change)

    def create_listener(self) -> "queue.SimpleQueue[Event]":
        """Queue receiving every alert as it is dispatched, for push consumers."""

        if self._event_bus is None:
            raise RuntimeError("AlertDispatcher has no event bus to fan out alerts")
        return self._event_bus.create_listener()

    async def handle_change(self, change: StateChange) -> None:
        token = change.token
        payloads: List[AlertPayload] = []
        if change.alert_triggered:
            payloads.append(
                AlertPayload(HIGH_SCORE_ALERT, token.address, token.symbol, token.potential_score, change.at)
            )
        if change.graduated:
            payloads.append(
                AlertPayload(GRADUATION_ALERT, token.address, token.symbol, token.potential_score, change.at)
            )
        for payload in payloads:
            await self.dispatch(payload)

    async def dispatch(self, payload: AlertPayload) -> int:
        """Deliver to every sink; returns the number of sinks that accepted it."""

        self._dispatched.append(payload)
        self._metrics.increment(f"alerts.{payload.type}")
        if self._event_bus is not None:
            self._event_bus.publish(EventType.TOKEN_ALERT, payload.to_dict())
        delivered = 0
        for sink in self._sinks:
            try:
                await asyncio.to_thread(sink.send, payload)
            except Exception as exc:  # noqa: BLE001 - sinks are external collaborators
                self._report_failure(sink, payload, exc)
            else:
                delivered += 1
        return delivered

    def _report_failure(self, sink: NotificationSink, payload: AlertPayload, exc: Exception) -> None:
        self._metrics.increment("alerts.delivery_failures")
        self._logger.warning(
            "Alert %s for %s not delivered to %s: %s", payload.type, payload.token_address, sink.name, exc
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                EventType.DELIVERY_FAILURE,
                {
                    "message": f"{payload.type} alert for {payload.token_address} not delivered",
                    "sink": sink.name,
                    "alert": payload.to_dict(),
                    "error": str(exc),
                    "reason": sink.name,
                },
                severity=EventSeverity.WARNING,
            )


__all__ = [
    "AlertDispatcher",
    "GRADUATION_ALERT",
    "HIGH_SCORE_ALERT",
    "LogSink",
    "NotificationSink",
    "WebhookSink",
    "build_sinks",
]
