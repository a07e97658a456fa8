"""Token lifecycle state machine: new -> tracked -> graduated | stale."""

from __future__ import annotations

import asyncio
import inspect
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, List, Optional, Set, Tuple, Union

from tenacity import AsyncRetrying, RetryError, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from ..analysis.patterns import detect_patterns, growth_rate
from ..analysis.scoring import ScoreEngine
from ..config.settings import GraduationRule, LifecycleConfig, get_app_config
from ..datalake.schemas import (
    ClassifiedEvent,
    MetricSnapshot,
    TimePoint,
    Token,
    TokenLaunch,
    TokenState,
    TradeEventType,
)
from ..datalake.storage import PersistenceConflict, TokenStore
from ..monitoring.event_bus import EventBus, EventSeverity, EventType
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..utils.constants import utc_now


class PersistenceFailure(RuntimeError):
    """A token update could not be made durable; in-memory state was rolled back."""

    def __init__(self, address: str, cause: Optional[BaseException]) -> None:
        super().__init__(f"failed to persist token {address}: {cause}")
        self.address = address
        self.cause = cause


class ChangeKind(str, Enum):
    DISCOVERED = "discovered"
    TRACKED = "tracked"
    EVENT_APPLIED = "event_applied"
    METRICS_UPDATED = "metrics_updated"
    SCORE_UPDATED = "score_updated"
    ALERT = "alert"
    GRADUATED = "graduated"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class StateChange:
    """Committed change to one token, delivered to lifecycle subscribers."""

    token: Token
    previous_state: Optional[TokenState]
    previous_score: int
    kinds: FrozenSet[ChangeKind]
    at: datetime

    @property
    def alert_triggered(self) -> bool:
        return ChangeKind.ALERT in self.kinds

    @property
    def graduated(self) -> bool:
        return ChangeKind.GRADUATED in self.kinds


ChangeListener = Callable[[StateChange], Union[None, Awaitable[None]]]


class GraduationPolicy:
    """Configured rule deciding when a tracked token graduates."""

    def __init__(self, config: LifecycleConfig) -> None:
        self._config = config

    def volume_reached(self, volume: float) -> bool:
        # Volume that jumps past the band between snapshots still counts as reaching it.
        return volume >= self._config.graduation_volume_lower

    def score_reached(self, score: int) -> bool:
        return score >= self._config.graduation_score_threshold

    def should_graduate(self, token: Token) -> bool:
        rule = self._config.graduation_rule
        if rule == GraduationRule.VOLUME_BAND:
            return self.volume_reached(token.volume)
        if rule == GraduationRule.SCORE:
            return self.score_reached(token.potential_score)
        return self.volume_reached(token.volume) or self.score_reached(token.potential_score)

    def progress(self, volume: float) -> float:
        upper = self._config.graduation_volume_upper
        if upper <= 0:
            return 1.0
        return max(0.0, min(volume / upper, 1.0))


@dataclass(slots=True)
class _Mutation:
    kinds: Set[ChangeKind] = field(default_factory=set)
    history: Dict[str, List[TimePoint]] = field(default_factory=dict)
    recent: Optional[List[datetime]] = None


class _SignatureMemory:
    """Bounded memory of processed signatures for one token."""

    __slots__ = ("_order", "_members")

    def __init__(self, limit: int) -> None:
        self._order: Deque[str] = deque(maxlen=limit)
        self._members: Set[str] = set()

    def __contains__(self, signature: str) -> bool:
        return signature in self._members

    def add(self, signature: str) -> None:
        if signature in self._members:
            return
        if len(self._order) == self._order.maxlen:
            self._members.discard(self._order[0])
        self._order.append(signature)
        self._members.add(signature)


class TokenLifecycle:
    """Sole writer of token records.

    Each update is computed on a copy of the last durably committed record,
    persisted with an optimistic revision check and only then published in
    memory and to subscribers. Updates to one token are serialized by a
    per-token lock; different tokens proceed concurrently.
    """

    def __init__(
        self,
        store: TokenStore,
        config: Optional[LifecycleConfig] = None,
        *,
        score_engine: Optional[ScoreEngine] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = config or get_app_config().lifecycle
        self._engine = score_engine or ScoreEngine()
        self._policy = GraduationPolicy(self._config)
        self._event_bus = event_bus
        self._metrics = metrics or METRICS
        self._clock = clock
        self._sleep = sleep
        self._logger = get_logger(__name__)
        self._tokens: Dict[str, Token] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._signatures: Dict[str, _SignatureMemory] = {}
        self._recent: Dict[str, List[datetime]] = {}
        self._listeners: List[ChangeListener] = []

    @property
    def policy(self) -> GraduationPolicy:
        return self._policy

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    # Queries --------------------------------------------------------------------

    def get(self, address: str) -> Optional[Token]:
        token = self._tokens.get(address)
        return token.clone() if token else None

    def tokens(self) -> List[Token]:
        return [token.clone() for token in self._tokens.values()]

    def active_addresses(self) -> Set[str]:
        return {address for address, token in self._tokens.items() if token.state != TokenState.STALE}

    def state_counts(self) -> Dict[str, int]:
        """Number of tokens held in memory per lifecycle state."""

        return dict(Counter(token.state.value for token in self._tokens.values()))

    def should_alert(self, token: Token) -> bool:
        return token.potential_score >= self._config.alert_score_threshold and not token.alert_sent

    def near_graduation(self) -> List[Token]:
        """Active, not yet graduated tokens scoring at or above the alert threshold."""

        candidates = [
            token.clone()
            for token in self._tokens.values()
            if token.is_active
            and not token.is_graduated
            and token.potential_score >= self._config.alert_score_threshold
        ]
        return sorted(candidates, key=lambda token: token.potential_score, reverse=True)

    def top_potential(self, limit: int = 10) -> List[Token]:
        active = [token for token in self._tokens.values() if token.is_active]
        active.sort(key=lambda token: (token.potential_score, token.volume), reverse=True)
        return [token.clone() for token in active[:limit]]

    # Loading and registration ---------------------------------------------------

    async def load(self) -> int:
        """Populate memory from the store, seeding signature memory from the audit log."""

        tokens = await asyncio.to_thread(
            self._store.list_tokens, active_only=True, history_limit=self._config.history_points
        )
        window_start = self._clock() - timedelta(hours=self._config.recent_event_window_hours)
        for token in tokens:
            if token.state == TokenState.STALE:
                continue
            self._tokens[token.address] = token
            memory = self._memory(token.address)
            recent: List[datetime] = []
            events = await asyncio.to_thread(
                self._store.list_classified_events, token.address, self._config.signature_memory
            )
            for payload in events:
                memory.add(str(payload.get("signature")))
                block_time = payload.get("block_time")
                if block_time and payload.get("event_type") != TradeEventType.UNKNOWN.value:
                    moment = datetime.fromisoformat(str(block_time))
                    if moment >= window_start:
                        recent.append(moment)
            self._recent[token.address] = recent
        self._logger.info("Loaded %s active tokens", len(tokens))
        return len(tokens)

    async def register_launch(self, launch: TokenLaunch) -> Optional[StateChange]:
        """Start tracking a newly launched token; ``None`` when it is already known."""

        token = Token(
            address=launch.mint,
            symbol=launch.symbol,
            name=launch.name,
            creator=launch.creator,
            created_at=launch.created_at or self._clock(),
            decimals=launch.decimals,
            launch_signature=launch.signature,
        )
        return await self.register_token(token)

    async def register_token(self, token: Token) -> Optional[StateChange]:
        async with self._lock(token.address):
            if token.address in self._tokens:
                return None
            now = self._clock()
            candidate = token.clone()
            candidate.state = TokenState.NEW
            candidate.last_updated = now
            candidate.last_activity_at = now
            history = {
                "volume": [TimePoint(now, candidate.volume)],
                "price": [TimePoint(now, candidate.price)],
                "holders": [TimePoint(now, float(candidate.holder_count))],
            }
            candidate.volume_history.extend(history["volume"])
            candidate.price_history.extend(history["price"])
            candidate.holder_history.extend(history["holders"])
            self._trim_history(candidate)
            try:
                revision = await self._persist(candidate, 0, history)
            except PersistenceConflict:
                stored = await asyncio.to_thread(
                    self._store.get_token, token.address, history_limit=self._config.history_points
                )
                # A retired mint stays retired and is not brought back into memory.
                if stored is not None and stored.state != TokenState.STALE:
                    self._tokens[token.address] = stored
                return None
            candidate.revision = revision
            self._tokens[token.address] = candidate
            self._recent.setdefault(token.address, [])
            self._metrics.increment("lifecycle.discovered")
            change = StateChange(candidate.clone(), None, 0, frozenset({ChangeKind.DISCOVERED}), now)
        self._logger.info("Tracking new token %s (%s)", candidate.address, candidate.symbol)
        await self._notify(change)
        return change

    # Updates --------------------------------------------------------------------

    async def apply_event(self, event: ClassifiedEvent) -> Optional[StateChange]:
        """Fold a classified event into the token's running aggregates.

        Returns ``None`` when the token is unknown or stale, or when the
        signature was already applied.
        """

        address = event.token_address
        if address not in self._tokens:
            self._logger.debug("Ignoring event %s for untracked token %s", event.signature, address)
            return None
        async with self._lock(address):
            current = self._tokens.get(address)
            if current is None or current.state == TokenState.STALE:
                return None
            memory = self._memory(address)
            if event.signature in memory:
                self._metrics.increment("lifecycle.duplicate_events")
                return None
            now = self._clock()

            def mutate(token: Token) -> _Mutation:
                mutation = _Mutation(kinds={ChangeKind.EVENT_APPLIED})
                moment = event.block_time or now
                token.event_count += 1
                if event.event_type == TradeEventType.BUY:
                    token.buy_count += 1
                    token.trade_volume += event.amount
                    token.last_trade_at = moment
                elif event.event_type == TradeEventType.SELL:
                    token.sell_count += 1
                    token.trade_volume += event.amount
                    token.last_trade_at = moment
                elif event.event_type == TradeEventType.TRANSFER:
                    token.transfer_count += 1
                elif event.is_liquidity:
                    # liquidity_change is the wallet side, so the pool moves the other way.
                    token.pooled_amount = max(0.0, token.pooled_amount - event.liquidity_change)
                    token.liquidity = token.pooled_amount * token.price if token.price else token.pooled_amount
                token.last_updated = now
                token.last_activity_at = now
                recent = list(self._recent.get(address, []))
                if event.event_type != TradeEventType.UNKNOWN:
                    recent.append(moment)
                mutation.recent = self._prune_recent(recent, now)
                self._rescore(token, mutation, now)
                return mutation

            change = await self._update(address, mutate, now)
            memory.add(event.signature)
        if change is not None:
            await self._record_event(event)
            await self._notify(change)
        return change

    async def apply_metric_snapshot(self, address: str, snapshot: MetricSnapshot) -> Optional[StateChange]:
        """Record a metric observation, recompute the score and evaluate graduation."""

        if address not in self._tokens:
            self._logger.debug("Ignoring snapshot for untracked token %s", address)
            return None
        async with self._lock(address):
            current = self._tokens.get(address)
            if current is None or current.state == TokenState.STALE:
                return None
            now = self._clock()

            def mutate(token: Token) -> _Mutation:
                mutation = _Mutation(kinds={ChangeKind.METRICS_UPDATED})
                # Price drifts without trades; only a change in holders counts as activity.
                if snapshot.holder_count != token.holder_count:
                    token.last_activity_at = now
                token.volume = snapshot.volume
                token.holder_count = snapshot.holder_count
                token.price = snapshot.price
                if snapshot.liquidity is not None:
                    token.liquidity = snapshot.liquidity
                if snapshot.holder_distribution is not None:
                    token.holder_distribution = list(snapshot.holder_distribution)
                points = {
                    "volume": TimePoint(snapshot.timestamp, snapshot.volume),
                    "price": TimePoint(snapshot.timestamp, snapshot.price),
                    "holders": TimePoint(snapshot.timestamp, float(snapshot.holder_count)),
                }
                token.volume_history.append(points["volume"])
                token.price_history.append(points["price"])
                token.holder_history.append(points["holders"])
                mutation.history = {metric: [point] for metric, point in points.items()}
                token.volume_growth_rate = growth_rate(token.volume_history)
                for tag in detect_patterns(token.volume_history, token.holder_history):
                    if tag not in token.detected_patterns:
                        token.detected_patterns.append(tag)
                token.graduation_progress = self._policy.progress(token.volume)
                token.last_updated = now
                if token.state == TokenState.NEW:
                    token.state = TokenState.TRACKED
                    mutation.kinds.add(ChangeKind.TRACKED)
                mutation.recent = self._prune_recent(list(self._recent.get(address, [])), now)
                self._rescore(token, mutation, now)
                return mutation

            change = await self._update(address, mutate, now)
        if change is not None:
            await self._notify(change)
        return change

    async def sweep_stale(self, now: Optional[datetime] = None) -> List[StateChange]:
        """Retire tokens that saw no activity within the staleness window.

        Activity is a registration, an applied event or a change in holder
        count; metric snapshots alone keep nothing alive. Retired tokens are
        evicted from memory once the stale state is durable.
        """

        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._config.stale_after_seconds)
        changes: List[StateChange] = []
        for address in list(self._tokens):
            token = self._tokens.get(address)
            if token is None or not self._idle(token, cutoff):
                continue
            async with self._lock(address):
                current = self._tokens.get(address)
                if current is None or not self._idle(current, cutoff):
                    continue

                def mutate(candidate: Token) -> _Mutation:
                    candidate.state = TokenState.STALE
                    candidate.is_active = False
                    return _Mutation(kinds={ChangeKind.STALE})

                try:
                    change = await self._update(address, mutate, now)
                except PersistenceFailure:
                    continue
                if change is not None:
                    self._evict(address)
            if change is not None:
                changes.append(change)
                await self._notify(change)
        return changes

    # Internals ------------------------------------------------------------------

    @staticmethod
    def _idle(token: Token, cutoff: datetime) -> bool:
        return token.state in (TokenState.NEW, TokenState.TRACKED) and token.last_activity < cutoff

    def _evict(self, address: str) -> None:
        self._tokens.pop(address, None)
        self._signatures.pop(address, None)
        self._recent.pop(address, None)
        # The lock object stays valid for holders already waiting on it.
        self._locks.pop(address, None)
        self._metrics.increment("lifecycle.evicted")

    def _trim_history(self, token: Token) -> None:
        limit = self._config.history_points
        for series in (token.volume_history, token.price_history, token.holder_history):
            if len(series) > limit:
                del series[: len(series) - limit]

    def _lock(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = self._locks[address] = asyncio.Lock()
        return lock

    def _memory(self, address: str) -> _SignatureMemory:
        memory = self._signatures.get(address)
        if memory is None:
            memory = self._signatures[address] = _SignatureMemory(self._config.signature_memory)
        return memory

    def _prune_recent(self, timestamps: List[datetime], now: datetime) -> List[datetime]:
        window_start = now - timedelta(hours=self._config.recent_event_window_hours)
        return [moment for moment in timestamps if moment >= window_start]

    def _rescore(self, token: Token, mutation: _Mutation, now: datetime) -> None:
        if token.state == TokenState.STALE:
            return
        previous = token.potential_score
        result = self._engine.score(token, mutation.recent or [], now=now)
        token.potential_score = result.score
        token.score_components = dict(result.components)
        token.concentration_risk = result.concentration_risk
        if result.score != previous:
            mutation.kinds.add(ChangeKind.SCORE_UPDATED)
        if token.state == TokenState.TRACKED and not token.is_graduated and self._policy.should_graduate(token):
            token.is_graduated = True
            token.graduated_at = now
            token.state = TokenState.GRADUATED
            mutation.kinds.add(ChangeKind.GRADUATED)
        if token.is_active and self.should_alert(token):
            token.alert_sent = True
            token.alert_sent_at = now
            mutation.kinds.add(ChangeKind.ALERT)

    async def _update(
        self, address: str, mutate: Callable[[Token], _Mutation], now: datetime
    ) -> Optional[StateChange]:
        base = self._tokens[address]
        candidate = base.clone()
        mutation = mutate(candidate)
        self._trim_history(candidate)
        try:
            revision = await self._persist(candidate, base.revision, mutation.history)
        except PersistenceConflict as conflict:
            self._logger.info("Revision conflict on %s, retrying with a fresh read", address)
            self._metrics.increment("lifecycle.persistence_conflicts")
            try:
                fresh = await asyncio.to_thread(
                    self._store.get_token, address, history_limit=self._config.history_points
                )
                if fresh is None:
                    raise conflict
                if fresh.state == TokenState.STALE:
                    self._evict(address)
                    return None
                candidate = fresh.clone()
                mutation = mutate(candidate)
                self._trim_history(candidate)
                revision = await self._persist(candidate, fresh.revision, mutation.history)
            except (PersistenceConflict, PersistenceFailure) as exc:
                raise self._report_failure(address, exc) from exc
        except PersistenceFailure as exc:
            raise self._report_failure(address, exc.cause) from exc
        candidate.revision = revision
        self._tokens[address] = candidate
        if mutation.recent is not None:
            self._recent[address] = mutation.recent
        for kind in mutation.kinds:
            self._metrics.increment(f"lifecycle.{kind.value}")
        return StateChange(candidate.clone(), base.state, base.potential_score, frozenset(mutation.kinds), now)

    async def _persist(
        self, token: Token, expected_revision: int, history: Dict[str, List[TimePoint]]
    ) -> int:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.persistence_max_retries),
            wait=wait_exponential(multiplier=self._config.persistence_retry_base_delay_seconds, exp_base=2),
            retry=retry_if_not_exception_type(PersistenceConflict),
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await asyncio.wait_for(
                        asyncio.to_thread(self._store.save_token, token, expected_revision, history),
                        timeout=self._config.persistence_timeout_seconds,
                    )
        except RetryError as exc:
            raise PersistenceFailure(token.address, exc.last_attempt.exception()) from exc
        raise PersistenceFailure(token.address, None)  # pragma: no cover - loop always returns or raises

    def _report_failure(self, address: str, cause: Optional[BaseException]) -> PersistenceFailure:
        self._metrics.increment("lifecycle.persistence_failures")
        self._logger.error("Rolled back update for %s after persistence failure: %s", address, cause)
        if self._event_bus is not None:
            self._event_bus.publish(
                EventType.PERSISTENCE,
                {"message": f"token {address} update rolled back", "address": address, "error": str(cause), "reason": "rollback"},
                severity=EventSeverity.ERROR,
            )
        return PersistenceFailure(address, cause)

    async def _record_event(self, event: ClassifiedEvent) -> None:
        try:
            await asyncio.to_thread(self._store.record_classified_event, event)
        except Exception as exc:  # noqa: BLE001 - audit trail is best effort
            self._logger.warning("Failed to record classified event %s: %s", event.signature, exc)

    async def _notify(self, change: StateChange) -> None:
        self._publish(change)
        for listener in list(self._listeners):
            try:
                result = listener(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - a listener must not break the state machine
                self._logger.exception("Lifecycle listener %s failed", getattr(listener, "__name__", listener))

    def _publish(self, change: StateChange) -> None:
        if self._event_bus is None:
            return
        token = change.token
        payload: Dict[str, Any] = {
            "address": token.address,
            "symbol": token.symbol,
            "state": token.state.value,
            "score": token.potential_score,
        }
        mapping: Tuple[Tuple[ChangeKind, EventType], ...] = (
            (ChangeKind.DISCOVERED, EventType.TOKEN_DISCOVERED),
            (ChangeKind.TRACKED, EventType.TOKEN_TRACKED),
            (ChangeKind.SCORE_UPDATED, EventType.SCORE_UPDATED),
            (ChangeKind.GRADUATED, EventType.TOKEN_GRADUATED),
            (ChangeKind.STALE, EventType.TOKEN_STALE),
        )
        for kind, event_type in mapping:
            if kind in change.kinds:
                self._event_bus.publish(event_type, payload)


__all__ = [
    "ChangeKind",
    "ChangeListener",
    "GraduationPolicy",
    "PersistenceFailure",
    "StateChange",
    "TokenLifecycle",
]
