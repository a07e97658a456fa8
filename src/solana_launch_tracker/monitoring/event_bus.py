"""Internal event bus fanning lifecycle and pipeline events out to consumers."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Union

from ..datalake.schemas import EventLogRecord
from .alerts import AlertManager, AlertSeverity
from .logger import current_correlation_id
from .metrics import MetricsRegistry

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..datalake.storage import SQLiteStorage


class EventType(str, Enum):
    """Event categories emitted by the tracker."""

    TOKEN_DISCOVERED = "token_discovered"
    TOKEN_TRACKED = "token_tracked"
    SCORE_UPDATED = "score_updated"
    TOKEN_ALERT = "token_alert"
    TOKEN_GRADUATED = "token_graduated"
    TOKEN_STALE = "token_stale"
    DELIVERY_FAILURE = "delivery_failure"
    RPC_HEALTH = "rpc_health"
    PIPELINE = "pipeline"
    PERSISTENCE = "persistence"


class EventSeverity(str, Enum):
    """Severity levels associated with events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_ALERTING_SEVERITIES = {EventSeverity.WARNING, EventSeverity.ERROR, EventSeverity.CRITICAL}


@dataclass(slots=True)
class Event:
    """Normalized representation of a bus event."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: EventSeverity = EventSeverity.INFO
    correlation_id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "correlation_id": self.correlation_id,
            "labels": self.labels,
        }


Subscriber = Callable[[Event], None]

_STOP = object()


class EventBus:
    """Threaded event bus.

    Events are queued by ``publish`` and dispatched on a single worker thread, so
    subscribers observe events in publication order. Queue listeners created with
    ``create_listener`` receive every event and are the push interface for any
    streaming consumer.
    """

    def __init__(self, history_size: int = 500) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._subscribers: Dict[Optional[EventType], List[Subscriber]] = defaultdict(list)
        self._listeners: List["queue.SimpleQueue[Event]"] = []
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._lock = threading.RLock()
        self._logger = logging.getLogger(__name__)
        self._metrics: Optional[MetricsRegistry] = None
        self._alerts: Optional[AlertManager] = None
        self._storage: Optional["SQLiteStorage"] = None
        self._worker = threading.Thread(target=self._run, name="event-bus", daemon=True)
        self._worker.start()

    def attach_metrics(self, registry: Optional[MetricsRegistry]) -> None:
        self._metrics = registry

    def attach_alert_manager(self, manager: Optional[AlertManager]) -> None:
        self._alerts = manager

    def attach_storage(self, storage: Optional["SQLiteStorage"]) -> None:
        self._storage = storage

    def subscribe(self, event_type: Optional[EventType], handler: Subscriber) -> None:
        """Register a subscriber for one event type, or for every event with ``None``."""

        with self._lock:
            self._subscribers[event_type].append(handler)

    def create_listener(self) -> "queue.SimpleQueue[Event]":
        listener: "queue.SimpleQueue[Event]" = queue.SimpleQueue()
        with self._lock:
            self._listeners.append(listener)
        return listener

    def remove_listener(self, listener: "queue.SimpleQueue[Event]") -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        correlation_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Event:
        if isinstance(event_type, str) and not isinstance(event_type, EventType):
            try:
                event_type = EventType(event_type)
            except ValueError as exc:
                raise ValueError(f"Unsupported event type: {event_type}") from exc
        if correlation_id is None and current_correlation_id() != "-":
            correlation_id = current_correlation_id()
        event = Event(
            type=event_type,
            payload=dict(payload or {}),
            severity=severity,
            correlation_id=correlation_id,
            labels=dict(labels or {}),
        )
        self._queue.put(event)
        return event

    def history(self, limit: int = 100, event_type: Optional[EventType] = None) -> List[Event]:
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [event for event in events if event.type == event_type]
        return events[-limit:]

    def flush(self, timeout: float = 1.0) -> bool:
        """Best-effort wait for the queue to drain."""

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self._queue.unfinished_tasks == 0:
                return True
            time.sleep(0.01)
        return self._queue.unfinished_tasks == 0

    def close(self, timeout: float = 1.0) -> None:
        """Drain pending events and stop the worker thread."""

        self.flush(timeout)
        self._queue.put(_STOP)
        self._worker.join(timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._dispatch(item)  # type: ignore[arg-type]
            except Exception:  # pragma: no cover - dispatch must never kill the worker
                self._logger.exception("Failed to dispatch event")
            finally:
                self._queue.task_done()

    def _dispatch(self, event: Event) -> None:
        with self._lock:
            self._history.append(event)
            handlers = list(self._subscribers.get(event.type, [])) + list(
                self._subscribers.get(None, [])
            )
            listeners = list(self._listeners)
        self._update_metrics(event)
        self._persist_event(event)
        self._trigger_alerts(event)
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # pragma: no cover - subscriber failures should never break dispatch
                self._logger.exception(
                    "Event handler %s failed for %s", getattr(handler, "__name__", handler), event.type.value
                )
        for listener in listeners:
            listener.put_nowait(event)

    def _update_metrics(self, event: Event) -> None:
        if not self._metrics:
            return
        self._metrics.increment(f"events.{event.type.value}", 1.0)
        if event.type == EventType.SCORE_UPDATED and "score" in event.payload:
            try:
                self._metrics.observe("token_score", float(event.payload["score"]))
            except (TypeError, ValueError):
                pass
        if event.type == EventType.DELIVERY_FAILURE:
            sink = event.payload.get("sink")
            if isinstance(sink, str):
                self._metrics.increment(f"delivery_failure.{sink}", 1.0)

    def _persist_event(self, event: Event) -> None:
        if not self._storage:
            return
        record = EventLogRecord(
            timestamp=event.timestamp,
            event_type=event.type.value,
            severity=event.severity.value,
            payload=event.payload,
            correlation_id=event.correlation_id,
            labels=event.labels,
        )
        try:
            self._storage.record_event_log(record)
        except Exception:  # pragma: no cover - event log persistence is best effort
            self._logger.exception("Failed to persist event log for %s", event.type.value)

    def _trigger_alerts(self, event: Event) -> None:
        if not self._alerts or event.severity not in _ALERTING_SEVERITIES:
            return
        summary = event.payload.get("message") or event.payload
        message = f"{event.type.value.upper()}: {summary}"
        key = f"{event.type.value}:{event.payload.get('reason', '')}"
        self._alerts.send(
            message,
            severity=AlertSeverity(event.severity.value),
            key=key,
            extra=event.payload,
        )


__all__ = [
    "EventBus",
    "Event",
    "EventType",
    "EventSeverity",
]
