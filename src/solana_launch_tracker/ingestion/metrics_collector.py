"""Builds metric snapshots for tracked tokens from on-chain and price data."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from ..datalake.schemas import HolderBalance, MetricSnapshot, Token, ValidationFailure
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..utils.constants import utc_now
from .pricing import PriceFeed
from .rpc_gateway import RetryExhausted, RpcGateway


def _balance(entry: Dict[str, Any]) -> float:
    ui_amount = entry.get("uiAmount")
    if ui_amount is not None:
        return float(ui_amount)
    ui_string = entry.get("uiAmountString")
    if ui_string:
        return float(ui_string)
    decimals = int(entry.get("decimals") or 0)
    return int(entry.get("amount") or 0) / (10**decimals)


def holder_distribution(accounts: Iterable[Dict[str, Any]]) -> List[HolderBalance]:
    """Non-empty largest token accounts as holder balances, largest first."""

    holders: List[HolderBalance] = []
    for entry in accounts:
        if not isinstance(entry, dict) or not entry.get("address"):
            continue
        try:
            balance = _balance(entry)
            if balance > 0:
                holders.append(HolderBalance(str(entry["address"]), balance))
        except (TypeError, ValueError, ValidationFailure):
            continue
    holders.sort(key=lambda holder: holder.balance, reverse=True)
    return holders


class MetricsCollector:
    """Samples holders, distribution and price for a token."""

    def __init__(
        self,
        gateway: RpcGateway,
        price_feed: Optional[PriceFeed] = None,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._gateway = gateway
        self._price_feed = price_feed
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)

    async def prices(self, mints: List[str]) -> Dict[str, float]:
        if self._price_feed is None or not self._price_feed.enabled or not mints:
            return {}
        return await asyncio.to_thread(self._price_feed.get_prices, mints)

    async def collect(self, token: Token, price: Optional[float] = None) -> Optional[MetricSnapshot]:
        """Snapshot one token; ``None`` when the node could not be reached."""

        try:
            accounts = await self._gateway.get_token_largest_accounts(token.address)
            distribution = holder_distribution(accounts)
            holder_count = await self._gateway.count_token_holders(token.address)
        except RetryExhausted as exc:
            self._metrics.increment("collector.failures")
            self._logger.warning("Skipping metrics for %s: %s", token.address, exc)
            return None
        if holder_count is None:
            holder_count = len(distribution)
        if price is None:
            price = token.price
        volume = token.trade_volume * price if price else token.volume
        # Pooled tokens are valued like volume; without a price the lifecycle keeps its own figure.
        liquidity = token.pooled_amount * price if price else None
        self._metrics.increment("collector.snapshots")
        return MetricSnapshot(
            volume=volume,
            holder_count=holder_count,
            price=price or 0.0,
            timestamp=utc_now(),
            liquidity=liquidity,
            holder_distribution=distribution,
        )

    async def collect_many(self, tokens: List[Token]) -> Dict[str, MetricSnapshot]:
        prices = await self.prices([token.address for token in tokens])
        snapshots: Dict[str, MetricSnapshot] = {}
        for token in tokens:
            snapshot = await self.collect(token, prices.get(token.address))
            if snapshot is not None:
                snapshots[token.address] = snapshot
        return snapshots


__all__ = ["MetricsCollector", "holder_distribution"]
