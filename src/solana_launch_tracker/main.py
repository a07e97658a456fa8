"""Entrypoint for the Solana launch tracker."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
from typing import Optional

from .analysis.programs import ProgramRegistry
from .analysis.classifier import TransactionClassifier
from .config.settings import AppConfig, get_app_config
from .datalake.storage import SQLiteStorage
from .ingestion.metrics_collector import MetricsCollector
from .ingestion.pipeline import LaunchMonitor
from .ingestion.pricing import PriceFeed
from .ingestion.rpc_gateway import ConnectionUnavailable, RpcGateway
from .monitoring import bootstrap_observability
from .monitoring.event_bus import EventBus
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS
from .tracking.dispatcher import AlertDispatcher
from .tracking.lifecycle import TokenLifecycle

logger = get_logger(__name__)


async def run_async(config: Optional[AppConfig] = None, *, once: bool = False, max_cycles: Optional[int] = None) -> int:
    config = config or get_app_config()
    storage = SQLiteStorage(config.storage.database_path)
    event_bus = EventBus(history_size=config.monitoring.event_history_size)
    bootstrap_observability(storage, event_bus, config=config)

    gateway = RpcGateway(config.rpc, event_bus=event_bus)
    lifecycle = TokenLifecycle(storage, config.lifecycle, event_bus=event_bus)
    dispatcher = AlertDispatcher(event_bus=event_bus, config=config.notifications)
    dispatcher.attach(lifecycle)
    monitor = LaunchMonitor(
        gateway,
        lifecycle,
        config=config,
        classifier=TransactionClassifier(ProgramRegistry.from_config(config.programs)),
        collector=MetricsCollector(gateway, PriceFeed(config.pricing)),
        event_bus=event_bus,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, monitor.stop)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            pass

    exit_code = 0
    try:
        await gateway.initialize()
        loaded = await lifecycle.load()
        logger.info("Monitoring %s with %s tracked tokens", config.monitor.program_id, loaded)
        if once:
            report = await monitor.run_once()
            await monitor.refresh_metrics()
            logger.info("Single cycle finished at slot %s", report.slot)
        else:
            await monitor.run(max_cycles=max_cycles)
    except ConnectionUnavailable as exc:
        logger.critical("No RPC endpoint available: %s", exc)
        exit_code = 2
    finally:
        await gateway.close()
        logger.info("Final status: %s", json.dumps(monitor.status(), default=str))
        logger.debug("Metrics: %s", json.dumps(METRICS.snapshot(), default=str))
        event_bus.close(timeout=2.0)
    return exit_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Track new Solana token launches and score their potential")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit.")
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Optional limit to the number of poll cycles to execute.",
    )
    args = parser.parse_args()
    raise SystemExit(asyncio.run(run_async(once=args.once, max_cycles=args.max_cycles)))


if __name__ == "__main__":
    main()
