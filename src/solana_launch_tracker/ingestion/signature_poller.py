"""High-water-mark polling of program signatures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cachetools import TTLCache

from ..config.settings import MonitorConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from .rpc_gateway import RpcGateway


@dataclass(frozen=True, slots=True)
class SignatureInfo:
    signature: str
    slot: int
    block_time: Optional[int] = None


@dataclass(slots=True)
class PollBatch:
    """Unseen signatures from one poll, oldest first."""

    slot: int
    signatures: List[SignatureInfo] = field(default_factory=list)
    skipped_failed: int = 0
    changed: bool = True
    head_signature: Optional[str] = None

    @property
    def newest(self) -> Optional[SignatureInfo]:
        return self.signatures[-1] if self.signatures else None

    def __len__(self) -> int:
        return len(self.signatures)


BatchHandler = Callable[[PollBatch], Awaitable[Any]]


class SignaturePoller:
    """Tracks which program signatures have been handed downstream.

    The high-water mark (last slot and newest signature) and the recency set
    are only advanced by :meth:`commit`, so a cycle that fails after polling
    leaves the poller where it was and the same signatures are offered again.
    """

    def __init__(
        self,
        gateway: RpcGateway,
        config: Optional[MonitorConfig] = None,
        *,
        program_id: Optional[str] = None,
        metrics: Optional[MetricsRegistry] = None,
        timer: Optional[Callable[[], float]] = None,
    ) -> None:
        self._gateway = gateway
        self._config = config or get_app_config().monitor
        self._program_id = program_id or self._config.program_id
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)
        cache_kwargs: Dict[str, Any] = {
            "maxsize": self._config.dedup_max_entries,
            "ttl": self._config.dedup_retention_seconds,
        }
        if timer is not None:
            cache_kwargs["timer"] = timer
        self._seen: TTLCache[str, int] = TTLCache(**cache_kwargs)
        self._last_slot: Optional[int] = None
        self._last_signature: Optional[str] = None

    @property
    def program_id(self) -> str:
        return self._program_id

    @property
    def last_slot(self) -> Optional[int]:
        return self._last_slot

    @property
    def last_signature(self) -> Optional[str]:
        return self._last_signature

    def has_seen(self, signature: str) -> bool:
        return signature in self._seen

    async def poll(self) -> PollBatch:
        """Fetch unseen, successful signatures without advancing any state."""

        slot = await self._gateway.get_slot()
        if self._last_slot is not None and slot <= self._last_slot:
            self._metrics.increment("poller.idle")
            return PollBatch(slot=slot, changed=False)

        collected: List[Dict[str, Any]] = []
        before: Optional[str] = None
        for _ in range(self._config.max_signature_pages):
            page = await self._gateway.get_signatures_for_address(
                self._program_id,
                before=before,
                until=self._last_signature,
                limit=self._config.signature_page_limit,
            )
            collected.extend(page)
            if len(page) < self._config.signature_page_limit or not page:
                break
            before = page[-1].get("signature")

        batch = PollBatch(slot=slot, head_signature=collected[0].get("signature") if collected else None)
        ordered: List[SignatureInfo] = []
        queued = set()
        # Nodes return newest first; hand signatures downstream oldest first.
        for entry in reversed(collected):
            signature = entry.get("signature")
            if not signature or signature in self._seen or signature in queued:
                continue
            if entry.get("err") is not None:
                batch.skipped_failed += 1
                continue
            queued.add(signature)
            ordered.append(SignatureInfo(signature, int(entry.get("slot") or 0), entry.get("blockTime")))
        ordered.sort(key=lambda info: info.slot)
        batch.signatures = ordered
        self._metrics.increment("poller.cycles")
        self._metrics.observe("poller.batch_size", len(ordered))
        return batch

    def commit(self, batch: PollBatch) -> None:
        """Advance the high-water mark past ``batch``."""

        if not batch.changed:
            return
        for info in batch.signatures:
            self._seen[info.signature] = info.slot
        if batch.head_signature is not None:
            self._last_signature = batch.head_signature
        self._last_slot = batch.slot

    async def run_cycle(self, handler: BatchHandler) -> PollBatch:
        """Poll, hand the batch to ``handler`` and commit only if it succeeded."""

        batch = await self.poll()
        if not batch.changed:
            return batch
        if batch.signatures:
            self._logger.debug("Polled %s new signatures at slot %s", len(batch), batch.slot)
            await handler(batch)
        self.commit(batch)
        return batch


__all__ = ["BatchHandler", "PollBatch", "SignatureInfo", "SignaturePoller"]
