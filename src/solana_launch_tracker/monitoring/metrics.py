"""Thread-safe metrics registry for the tracking pipeline.

Metrics are addressed by a dotted name plus optional labels, so one counter
such as ``classifier.events`` can be split by event type and one gauge such
as ``lifecycle.tokens`` by lifecycle state. The Prometheus export renders
labels in the usual ``name{key="value"}`` form.
"""

from __future__ import annotations

import math
import re
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from statistics import mean
from typing import Deque, Dict, Iterable, Iterator, Mapping, MutableMapping, Optional, Tuple

_METRIC_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_:]")

Labels = Optional[Mapping[str, str]]
_Key = Tuple[str, Tuple[Tuple[str, str], ...]]

# Help text for the series the tracker emits; unknown names are exported without HELP.
DESCRIPTIONS: Dict[str, str] = {
    "rpc.calls": "RPC requests issued",
    "rpc.errors": "RPC requests that raised",
    "rpc.retries": "RPC retry attempts",
    "rpc.failovers": "Switches to a fallback endpoint",
    "rpc.latency_seconds": "RPC request latency",
    "classifier.events": "Classified events by type",
    "lifecycle.tokens": "Tokens held in memory by lifecycle state",
    "lifecycle.evicted": "Stale tokens dropped from memory",
    "pipeline.cycles": "Completed poll cycles",
    "pipeline.last_slot": "Slot seen by the last poll cycle",
    "token_score": "Potential scores published on the event bus",
}


def _sanitize_metric_name(name: str) -> str:
    """Return a Prometheus-safe metric name."""

    sanitized = _METRIC_SANITIZE_RE.sub("_", name)
    if not sanitized:
        return "_"
    if sanitized[0].isdigit():
        sanitized = f"_{sanitized}"
    return sanitized


def _key(name: str, labels: Labels) -> _Key:
    return name, tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def _render_labels(labels: Iterable[Tuple[str, str]], extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = list(labels)
    if extra is not None:
        pairs.append(extra)
    if not pairs:
        return ""
    body = ",".join(f'{_sanitize_metric_name(k)}="{v}"' for k, v in pairs)
    return "{" + body + "}"


def _display(key: _Key) -> str:
    name, labels = key
    return name + _render_labels(labels)


class MetricsRegistry:
    """In-memory counters, gauges and histograms, optionally labelled."""

    def __init__(self, *, max_hist_samples: int = 1024) -> None:
        self._lock = threading.RLock()
        self._counters: MutableMapping[_Key, float] = defaultdict(float)
        self._gauges: MutableMapping[_Key, float] = {}
        self._histograms: MutableMapping[_Key, Deque[float]] = defaultdict(
            lambda: deque(maxlen=max_hist_samples)
        )

    def increment(self, name: str, amount: float = 1.0, *, labels: Labels = None) -> None:
        with self._lock:
            self._counters[_key(name, labels)] += amount

    def get(self, name: str, *, labels: Labels = None) -> float:
        with self._lock:
            return self._counters.get(_key(name, labels), 0.0)

    def gauge(self, name: str, value: float, *, labels: Labels = None) -> None:
        with self._lock:
            self._gauges[_key(name, labels)] = float(value)

    def get_gauge(self, name: str, *, labels: Labels = None) -> float:
        with self._lock:
            return self._gauges.get(_key(name, labels), 0.0)

    def observe(self, name: str, value: float, *, labels: Labels = None) -> None:
        with self._lock:
            self._histograms[_key(name, labels)].append(float(value))

    @contextmanager
    def timer(self, name: str, *, labels: Labels = None) -> Iterator[None]:
        """Observe the wall time of the ``with`` block under ``name``."""

        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - started, labels=labels)

    def set_distribution(self, name: str, label: str, counts: Mapping[str, float]) -> None:
        """Replace every ``name{label=...}`` gauge with ``counts``; missing keys drop to zero."""

        with self._lock:
            for key in [key for key in self._gauges if key[0] == name]:
                self._gauges[key] = 0.0
            for value, count in counts.items():
                self._gauges[_key(name, {label: value})] = float(count)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            counters = {_display(key): value for key, value in self._counters.items()}
            gauges = {_display(key): value for key, value in self._gauges.items()}
            histograms = {_display(key): self._histogram_stats(values) for key, values in self._histograms.items()}
        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
        }

    def export_prometheus(self) -> str:
        with self._lock:
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            histograms = sorted((key, self._histogram_stats(values)) for key, values in self._histograms.items())
        lines = []
        declared = set()

        def declare(name: str, kind: str) -> str:
            sanitized = _sanitize_metric_name(name)
            if sanitized not in declared:
                declared.add(sanitized)
                if name in DESCRIPTIONS:
                    lines.append(f"# HELP {sanitized} {DESCRIPTIONS[name]}")
                lines.append(f"# TYPE {sanitized} {kind}")
            return sanitized

        for (name, labels), value in counters:
            lines.append(f"{declare(name, 'counter')}{_render_labels(labels)} {value}")
        for (name, labels), value in gauges:
            lines.append(f"{declare(name, 'gauge')}{_render_labels(labels)} {value}")
        for (name, labels), stats in histograms:
            if not stats:
                continue
            base = declare(name, "summary")
            for quantile in ("p50", "p90", "p99"):
                lines.append(f"{base}{_render_labels(labels, ('quantile', quantile))} {stats[quantile]}")
            lines.append(f"{base}_count{_render_labels(labels)} {stats['count']}")
            lines.append(f"{base}_avg{_render_labels(labels)} {stats['avg']}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def _histogram_stats(self, values: Iterable[float]) -> Dict[str, float]:
        data = sorted(values)
        if not data:
            return {}
        return {
            "count": float(len(data)),
            "avg": mean(data),
            "p50": self._percentile(data, 0.5),
            "p90": self._percentile(data, 0.9),
            "p99": self._percentile(data, 0.99),
        }

    def _percentile(self, data: Iterable[float], percentile: float) -> float:
        items = list(data)
        if not items:
            return 0.0
        index = max(int(math.ceil(percentile * len(items))) - 1, 0)
        return float(items[min(index, len(items) - 1)])


METRICS = MetricsRegistry()


__all__ = ["DESCRIPTIONS", "METRICS", "MetricsRegistry"]
