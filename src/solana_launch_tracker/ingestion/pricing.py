"""Token price lookups against the Jupiter price API."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

import requests
from cachetools import TTLCache

from ..config.settings import PricingConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

_MAX_IDS_PER_REQUEST = 50


def _extract_price(entry: Any) -> Optional[float]:
    if isinstance(entry, (int, float)):
        return float(entry)
    if not isinstance(entry, dict):
        return None
    for key in ("usdPrice", "price"):
        value = entry.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    return None


class PriceFeed:
    """HTTP price feed with a short TTL cache."""

    def __init__(
        self,
        config: Optional[PricingConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().pricing
        self._session = session or requests.Session()
        self._cache: TTLCache[str, float] = TTLCache(maxsize=1024, ttl=max(self._config.cache_ttl_seconds, 1))
        self._logger = get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def _request(self, mints: list[str]) -> Dict[str, float]:
        try:
            response = self._session.get(
                str(self._config.price_url),
                params={"ids": ",".join(mints)},
                headers={"Accept": "application/json"},
                timeout=self._config.http_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            METRICS.increment("pricing.errors")
            self._logger.warning("Price request failed for %s mints: %s", len(mints), exc)
            return {}
        # v2 nests prices under "data"; v3 keys the payload by mint directly.
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        prices: Dict[str, float] = {}
        if isinstance(payload, dict):
            for mint in mints:
                price = _extract_price(payload.get(mint))
                if price is not None:
                    prices[mint] = price
        return prices

    def get_prices(self, mints: Iterable[str]) -> Dict[str, float]:
        if not self._config.enabled:
            return {}
        ordered = list(dict.fromkeys(mints))
        missing = [mint for mint in ordered if mint not in self._cache]
        for start in range(0, len(missing), _MAX_IDS_PER_REQUEST):
            for mint, price in self._request(missing[start : start + _MAX_IDS_PER_REQUEST]).items():
                self._cache[mint] = price
        return {mint: self._cache[mint] for mint in ordered if mint in self._cache}

    def get_price(self, mint: str) -> Optional[float]:
        return self.get_prices([mint]).get(mint)


__all__ = ["PriceFeed"]
