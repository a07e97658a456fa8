"""Polling pipeline: poll signatures, fetch, classify and apply to the lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..analysis.classifier import TransactionClassifier
from ..analysis.programs import ProgramRegistry
from ..analysis.transactions import ParsedTransaction, TransactionFormatError, parse_transaction
from ..config.settings import AppConfig, get_app_config
from ..monitoring.event_bus import EventBus, EventSeverity, EventType
from ..monitoring.logger import correlation_scope, get_logger, token_scope
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..tracking.lifecycle import TokenLifecycle
from ..utils.constants import utc_now
from .launch_detector import LaunchDetector
from .metrics_collector import MetricsCollector
from .rpc_gateway import ConnectionUnavailable, RetryExhausted, RpcGateway, RpcMethodDisabled, RpcResponseError
from .signature_poller import PollBatch, SignatureInfo, SignaturePoller


@dataclass(slots=True)
class CycleReport:
    """Outcome of one poll cycle."""

    slot: int
    changed: bool
    fetched: int = 0
    skipped: int = 0
    launches: int = 0
    events: int = 0


class LaunchMonitor:
    """Drives the single polling pipeline for one monitored program.

    Transactions of a batch are fetched concurrently (bounded by
    ``rpc.request_concurrency``) and applied strictly in chronological
    order. A batch is applied completely before the poller commits it, and
    :meth:`stop` lets the running cycle finish before the loop exits.
    """

    def __init__(
        self,
        gateway: RpcGateway,
        lifecycle: TokenLifecycle,
        *,
        config: Optional[AppConfig] = None,
        poller: Optional[SignaturePoller] = None,
        classifier: Optional[TransactionClassifier] = None,
        detector: Optional[LaunchDetector] = None,
        collector: Optional[MetricsCollector] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._config = config or get_app_config()
        self._gateway = gateway
        self._lifecycle = lifecycle
        self._poller = poller or SignaturePoller(gateway, self._config.monitor, metrics=metrics)
        self._classifier = classifier or TransactionClassifier(
            ProgramRegistry.from_config(self._config.programs), metrics=metrics
        )
        self._detector = detector or LaunchDetector(self._poller.program_id)
        self._collector = collector
        self._event_bus = event_bus
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)
        self._stop = asyncio.Event()
        self._running = False
        self._cycles = 0
        self._consecutive_failures = 0
        self._last_report: Optional[CycleReport] = None
        self._last_cycle_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

    # Single transaction ----------------------------------------------------------

    async def handle_transaction(self, transaction: ParsedTransaction, report: Optional[CycleReport] = None) -> None:
        """Register a launch and apply classified events for every tracked mint it touches."""

        launch = self._detector.detect(transaction)
        if launch is not None:
            change = await self._lifecycle.register_launch(launch)
            if change is not None and report is not None:
                report.launches += 1
        tracked = self._lifecycle.active_addresses()
        for mint in sorted(transaction.mints() & tracked):
            with token_scope(mint):
                event = self._classifier.classify(transaction, mint)
                change = await self._lifecycle.apply_event(event)
            if change is not None and report is not None:
                report.events += 1

    # Batches ---------------------------------------------------------------------

    async def _fetch(self, info: SignatureInfo, semaphore: asyncio.Semaphore) -> Optional[ParsedTransaction]:
        async with semaphore:
            try:
                payload = await self._gateway.get_transaction(info.signature)
            except (RetryExhausted, RpcMethodDisabled, RpcResponseError) as exc:
                self._metrics.increment("pipeline.fetch_failures")
                self._logger.warning("Skipping %s: %s", info.signature, exc)
                return None
        if payload is None:
            self._metrics.increment("pipeline.missing_transactions")
            return None
        try:
            return parse_transaction(payload, info.signature)
        except TransactionFormatError as exc:
            self._metrics.increment("pipeline.malformed_transactions")
            self._logger.warning("Malformed transaction %s: %s", info.signature, exc)
            return None

    async def process_batch(self, batch: PollBatch, report: Optional[CycleReport] = None) -> None:
        semaphore = asyncio.Semaphore(self._config.rpc.request_concurrency)
        results = await asyncio.gather(*(self._fetch(info, semaphore) for info in batch.signatures))
        ordered: List[Tuple[Tuple[int, float, int], ParsedTransaction]] = []
        for index, (info, parsed) in enumerate(zip(batch.signatures, results)):
            if parsed is None:
                if report is not None:
                    report.skipped += 1
                continue
            block_time = parsed.block_time.timestamp() if parsed.block_time else float(info.block_time or 0)
            ordered.append(((parsed.slot or info.slot, block_time, index), parsed))
        ordered.sort(key=lambda item: item[0])
        for _, parsed in ordered:
            with correlation_scope(parsed.signature):
                await self.handle_transaction(parsed, report)
            if report is not None:
                report.fetched += 1

    async def run_once(self) -> CycleReport:
        """Run one poll cycle; the poller commits only after the whole batch applied."""

        self._cycles += 1
        report = CycleReport(slot=0, changed=False)
        with correlation_scope(f"cycle-{self._cycles}"):

            async def handler(batch: PollBatch) -> None:
                await self.process_batch(batch, report)

            batch = await self._poller.run_cycle(handler)
        report.slot = batch.slot
        report.changed = batch.changed
        self._last_report = report
        self._last_cycle_at = utc_now()
        self._metrics.increment("pipeline.cycles")
        self._metrics.gauge("pipeline.last_slot", float(batch.slot))
        if batch.changed and self._event_bus is not None:
            self._event_bus.publish(
                EventType.PIPELINE,
                {
                    "slot": report.slot,
                    "signatures": len(batch),
                    "fetched": report.fetched,
                    "skipped": report.skipped,
                    "launches": report.launches,
                    "events": report.events,
                },
            )
        return report

    # Metric snapshots -------------------------------------------------------------

    async def refresh_metrics(self) -> int:
        """Retire idle tokens, then snapshot the active ones; returns snapshots applied.

        Sweeping first keeps idle tokens from costing another round of RPC
        calls before they are retired.
        """

        stale = await self._lifecycle.sweep_stale()
        if stale:
            self._logger.info("Marked %s tokens stale", len(stale))
        applied = 0
        if self._collector is not None:
            tokens = [token for token in self._lifecycle.tokens() if token.is_active]
            snapshots = await self._collector.collect_many(tokens)
            for address, snapshot in snapshots.items():
                with token_scope(address):
                    try:
                        if await self._lifecycle.apply_metric_snapshot(address, snapshot) is not None:
                            applied += 1
                    except RuntimeError as exc:
                        self._logger.error("Metric snapshot not applied: %s", exc)
        self._metrics.set_distribution("lifecycle.tokens", "state", self._lifecycle.state_counts())
        return applied

    # Loops ------------------------------------------------------------------------

    def _backoff_delay(self) -> float:
        interval = self._config.monitor.poll_interval_seconds
        if self._consecutive_failures == 0:
            return interval
        return min(interval * (2**self._consecutive_failures), self._config.monitor.max_error_backoff_seconds)

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _poll_loop(self, max_cycles: Optional[int]) -> None:
        cycles = 0
        while not self._stop.is_set():
            try:
                await self.run_once()
                self._consecutive_failures = 0
                self._last_error = None
            except ConnectionUnavailable as exc:
                self._last_error = str(exc)
                self._consecutive_failures += 1
                if self._config.monitor.stop_on_connection_loss:
                    self._logger.critical("Stopping: %s", exc)
                    self._publish_failure(exc, EventSeverity.CRITICAL, "connection_lost")
                    raise
                self._logger.error("All endpoints unavailable, backing off: %s", exc)
                await self._reconnect()
            except Exception as exc:  # noqa: BLE001 - a failed cycle is retried after backoff
                self._last_error = f"{type(exc).__name__}: {exc}"
                self._consecutive_failures += 1
                self._metrics.increment("pipeline.cycle_failures")
                self._logger.exception("Poll cycle failed (%s consecutive)", self._consecutive_failures)
                self._publish_failure(exc, EventSeverity.WARNING, "cycle_failed")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await self._wait(self._backoff_delay())

    async def _reconnect(self) -> None:
        try:
            await self._gateway.initialize()
        except ConnectionUnavailable:
            pass

    async def _refresh_loop(self) -> None:
        interval = self._config.monitor.metrics_refresh_interval_seconds
        while not self._stop.is_set():
            await self._wait(interval)
            if self._stop.is_set():
                break
            try:
                await self.refresh_metrics()
            except ConnectionUnavailable as exc:
                self._logger.error("Metric refresh skipped: %s", exc)
            except Exception:  # noqa: BLE001 - refresh failures must not stop polling
                self._logger.exception("Metric refresh failed")

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """Poll until :meth:`stop` is called, ``max_cycles`` ran or connectivity is lost."""

        self._stop.clear()
        self._running = True
        refresher = asyncio.create_task(self._refresh_loop())
        try:
            await self._poll_loop(max_cycles)
        finally:
            self._stop.set()
            await refresher
            self._running = False
            self._logger.info("Launch monitor stopped after %s cycles", self._cycles)

    def stop(self) -> None:
        """Request shutdown; the in-flight cycle completes first."""

        self._stop.set()

    def _publish_failure(self, exc: BaseException, severity: EventSeverity, reason: str) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            EventType.PIPELINE,
            {"message": f"poll cycle failed: {exc}", "error": type(exc).__name__, "reason": reason},
            severity=severity,
        )

    def status(self) -> Dict[str, Any]:
        report = self._last_report
        return {
            "running": self._running,
            "program_id": self._poller.program_id,
            "cycles": self._cycles,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
            "last_cycle_at": self._last_cycle_at.isoformat() if self._last_cycle_at else None,
            "last_slot": self._poller.last_slot,
            "last_signature": self._poller.last_signature,
            "last_cycle": {
                "slot": report.slot,
                "changed": report.changed,
                "fetched": report.fetched,
                "skipped": report.skipped,
                "launches": report.launches,
                "events": report.events,
            }
            if report
            else None,
            "tracked_tokens": len(self._lifecycle.active_addresses()),
            "gateway": self._gateway.get_status().to_dict(),
        }


__all__ = ["CycleReport", "LaunchMonitor"]
