from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest
import requests

from solana_launch_tracker.config.settings import LifecycleConfig, NotificationConfig
from solana_launch_tracker.datalake.schemas import AlertPayload, MetricSnapshot, TokenLaunch
from solana_launch_tracker.datalake.storage import SQLiteStorage
from solana_launch_tracker.monitoring.event_bus import EventBus, EventSeverity, EventType
from solana_launch_tracker.monitoring.metrics import MetricsRegistry
from solana_launch_tracker.tracking.dispatcher import (
    GRADUATION_ALERT,
    HIGH_SCORE_ALERT,
    AlertDispatcher,
    LogSink,
    WebhookSink,
    build_sinks,
)
from solana_launch_tracker.tracking.lifecycle import TokenLifecycle

from factories import SleepRecorder, address, signature

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordingSink:
    def __init__(self, name: str = "recording", fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.received: List[AlertPayload] = []

    def send(self, payload: AlertPayload) -> None:
        self.received.append(payload)
        if self.fail:
            raise ConnectionError("sink offline")


class FakeResponse:
    def __init__(self, status: int) -> None:
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.posts: List[tuple] = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        return FakeResponse(self.status)


def _payload(kind: str = HIGH_SCORE_ALERT) -> AlertPayload:
    return AlertPayload(kind, address(), "MCAT", 85, T0)


def test_dispatch_reaches_every_sink_and_the_bus() -> None:
    bus = EventBus(history_size=20)
    first, second = RecordingSink("a"), RecordingSink("b")
    dispatcher = AlertDispatcher([first, second], event_bus=bus, metrics=MetricsRegistry())
    listener = dispatcher.create_listener()
    payload = _payload()

    try:
        delivered = asyncio.run(dispatcher.dispatch(payload))
        bus.flush()
    finally:
        bus.close()

    assert delivered == 2
    assert first.received == [payload] and second.received == [payload]
    event = listener.get_nowait()
    assert event.type == EventType.TOKEN_ALERT
    assert event.payload["tokenAddress"] == payload.token_address
    assert event.payload["type"] == HIGH_SCORE_ALERT


def test_failed_sink_is_reported_and_not_retried() -> None:
    bus = EventBus(history_size=20)
    metrics = MetricsRegistry()
    broken, healthy = RecordingSink("broken", fail=True), RecordingSink("healthy")
    dispatcher = AlertDispatcher([broken, healthy], event_bus=bus, metrics=metrics)
    payload = _payload()

    try:
        delivered = asyncio.run(dispatcher.dispatch(payload))
        bus.flush()
        failures = bus.history(event_type=EventType.DELIVERY_FAILURE)
    finally:
        bus.close()

    assert delivered == 1
    assert len(broken.received) == 1
    assert healthy.received == [payload]
    assert metrics.get("alerts.delivery_failures") == 1
    assert len(failures) == 1
    assert failures[0].severity == EventSeverity.WARNING
    assert failures[0].payload["sink"] == "broken"
    assert failures[0].payload["alert"]["tokenAddress"] == payload.token_address
    assert "sink offline" in failures[0].payload["error"]


def test_create_listener_requires_a_bus() -> None:
    dispatcher = AlertDispatcher([], metrics=MetricsRegistry())

    with pytest.raises(RuntimeError):
        dispatcher.create_listener()


def test_webhook_sink_posts_json_and_raises_on_http_errors() -> None:
    ok, failing = FakeSession(), FakeSession(status=503)
    payload = _payload(GRADUATION_ALERT)

    WebhookSink("https://hooks.example/a", timeout=3.0, session=ok).send(payload)

    assert ok.posts == [("https://hooks.example/a", payload.to_dict(), 3.0)]
    with pytest.raises(requests.HTTPError):
        WebhookSink("https://hooks.example/b", session=failing).send(payload)


def test_build_sinks_follows_notification_config() -> None:
    config = NotificationConfig(log_alerts=True, webhook_urls=["https://hooks.example/a"])

    sinks = build_sinks(config, session=FakeSession())

    assert isinstance(sinks[0], LogSink)
    assert [sink.name for sink in sinks[1:]] == ["webhook:https://hooks.example/a"]


def test_lifecycle_alert_is_dispatched_exactly_once(tmp_path: Path) -> None:
    now = {"value": T0}
    lifecycle = TokenLifecycle(
        SQLiteStorage(tmp_path / "state.sqlite3"),
        LifecycleConfig(alert_score_threshold=30),
        metrics=MetricsRegistry(),
        clock=lambda: now["value"],
        sleep=SleepRecorder(),
    )
    sink = RecordingSink()
    dispatcher = AlertDispatcher([sink], metrics=MetricsRegistry())
    dispatcher.attach(lifecycle)
    launch = TokenLaunch(mint=address(), signature=signature(), created_at=T0, symbol="MCAT")

    async def scenario():
        await lifecycle.register_launch(launch)
        for step in range(3):
            now["value"] = T0 + timedelta(minutes=5 * (step + 1))
            await lifecycle.apply_metric_snapshot(
                launch.mint, MetricSnapshot(volume=20_000 + step, holder_count=120, price=0.01)
            )

    asyncio.run(scenario())

    assert [payload.type for payload in sink.received] == [HIGH_SCORE_ALERT]
    assert sink.received[0].token_address == launch.mint
    assert dispatcher.dispatched == sink.received
