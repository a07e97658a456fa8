"""Data models shared by ingestion, analysis, tracking and storage layers."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from solders.pubkey import Pubkey

from ..utils.constants import utc_now


class ValidationFailure(ValueError):
    """Raised when token or event data is malformed at an ingest boundary."""


def validate_address(value: Any, field_name: str = "address") -> str:
    """Return ``value`` as a base58 public key string or raise ``ValidationFailure``."""

    if not isinstance(value, str) or not value:
        raise ValidationFailure(f"{field_name} must be a non-empty string")
    try:
        Pubkey.from_string(value)
    except ValueError as exc:
        raise ValidationFailure(f"{field_name} is not a valid public key: {value!r}") from exc
    return value


def _require_non_negative(name: str, value: float) -> None:
    if value is None or value < 0:
        raise ValidationFailure(f"{name} must be non-negative, got {value!r}")


class TradeEventType(str, Enum):
    """Kinds of token activity recognised in a transaction."""

    BUY = "buy"
    SELL = "sell"
    TRANSFER = "transfer"
    LIQUIDITY_ADD = "liquidity_add"
    LIQUIDITY_REMOVE = "liquidity_remove"
    MINT = "mint"
    BURN = "burn"
    UNKNOWN = "unknown"

    @property
    def is_trade(self) -> bool:
        return self in (TradeEventType.BUY, TradeEventType.SELL)

    @property
    def is_liquidity(self) -> bool:
        return self in (TradeEventType.LIQUIDITY_ADD, TradeEventType.LIQUIDITY_REMOVE)


class TokenState(str, Enum):
    """Lifecycle states of a tracked token."""

    NEW = "new"
    TRACKED = "tracked"
    GRADUATED = "graduated"
    STALE = "stale"


class ConcentrationRisk(str, Enum):
    """Holder concentration labels, from healthiest to most concentrated."""

    LOW = "low"
    MODERATE = "moderate"
    ELEVATED = "elevated"
    HIGH = "high"
    MANIPULATED = "manipulated"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class HolderBalance:
    """One entry of a token's holder distribution."""

    address: str
    balance: float

    def __post_init__(self) -> None:
        if not self.address:
            raise ValidationFailure("holder address must not be empty")
        _require_non_negative("holder balance", self.balance)


@dataclass(slots=True)
class TimePoint:
    """A single observation in a metric time series."""

    timestamp: datetime
    value: float


@dataclass(frozen=True, slots=True)
class ClassifiedEvent:
    """Structured trading event derived from one parsed transaction.

    ``amount`` is the magnitude of the dominant balance delta. ``liquidity_change``
    carries the signed net delta for liquidity events and is ``0`` otherwise.
    """

    signature: str
    token_address: str
    event_type: TradeEventType
    amount: float = 0.0
    from_wallet: Optional[str] = None
    to_wallet: Optional[str] = None
    liquidity_change: float = 0.0
    net_delta: float = 0.0
    involved_wallets: FrozenSet[str] = frozenset()
    block_time: Optional[datetime] = None
    slot: Optional[int] = None
    program_ids: FrozenSet[str] = frozenset()
    note: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.signature:
            raise ValidationFailure("classified event requires a signature")
        if not self.token_address:
            raise ValidationFailure("classified event requires a token address")
        _require_non_negative("amount", self.amount)

    @property
    def is_liquidity(self) -> bool:
        return self.event_type.is_liquidity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "token_address": self.token_address,
            "event_type": self.event_type.value,
            "amount": self.amount,
            "from_wallet": self.from_wallet,
            "to_wallet": self.to_wallet,
            "liquidity_change": self.liquidity_change,
            "net_delta": self.net_delta,
            "involved_wallets": sorted(self.involved_wallets),
            "block_time": self.block_time.isoformat() if self.block_time else None,
            "slot": self.slot,
            "note": self.note,
        }


@dataclass(slots=True)
class MetricSnapshot:
    """Periodic metric observation for one token."""

    volume: float
    holder_count: int
    price: float
    timestamp: datetime = field(default_factory=utc_now)
    liquidity: Optional[float] = None
    holder_distribution: Optional[List[HolderBalance]] = None

    def __post_init__(self) -> None:
        _require_non_negative("volume", self.volume)
        _require_non_negative("holder_count", self.holder_count)
        _require_non_negative("price", self.price)
        if self.liquidity is not None:
            _require_non_negative("liquidity", self.liquidity)


@dataclass(slots=True)
class TokenLaunch:
    """A token creation observed on the monitored launch program."""

    mint: str
    signature: str
    creator: Optional[str] = None
    created_at: Optional[datetime] = None
    name: str = "Unknown Token"
    symbol: str = "UNKNOWN"
    decimals: Optional[int] = None
    source: str = "initialize_mint"

    def __post_init__(self) -> None:
        validate_address(self.mint, "mint")


@dataclass(slots=True)
class ScoreResult:
    """Composite potential score and its parts."""

    score: int
    components: Dict[str, float]
    concentration_risk: ConcentrationRisk
    concentration_pct: float = 0.0
    velocity: float = 0.0
    acceleration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "components": dict(self.components),
            "concentration_risk": self.concentration_risk.value,
            "concentration_pct": self.concentration_pct,
            "velocity": self.velocity,
            "acceleration": self.acceleration,
        }


@dataclass(slots=True)
class Token:
    """Canonical token record owned by the lifecycle."""

    address: str
    symbol: str = "UNKNOWN"
    name: str = "Unknown Token"
    creator: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    decimals: Optional[int] = None
    launch_signature: Optional[str] = None
    price: float = 0.0
    volume: float = 0.0
    trade_volume: float = 0.0
    holder_count: int = 0
    liquidity: float = 0.0
    pooled_amount: float = 0.0
    holder_distribution: List[HolderBalance] = field(default_factory=list)
    potential_score: int = 0
    score_components: Dict[str, float] = field(default_factory=dict)
    concentration_risk: ConcentrationRisk = ConcentrationRisk.UNKNOWN
    volume_growth_rate: float = 0.0
    detected_patterns: List[str] = field(default_factory=list)
    state: TokenState = TokenState.NEW
    is_graduated: bool = False
    graduated_at: Optional[datetime] = None
    graduation_progress: float = 0.0
    alert_sent: bool = False
    alert_sent_at: Optional[datetime] = None
    is_active: bool = True
    last_updated: datetime = field(default_factory=utc_now)
    last_trade_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    buy_count: int = 0
    sell_count: int = 0
    transfer_count: int = 0
    event_count: int = 0
    volume_history: List[TimePoint] = field(default_factory=list)
    price_history: List[TimePoint] = field(default_factory=list)
    holder_history: List[TimePoint] = field(default_factory=list)
    revision: int = 0

    def __post_init__(self) -> None:
        validate_address(self.address, "token address")
        for name in ("price", "volume", "trade_volume", "holder_count", "liquidity", "pooled_amount"):
            _require_non_negative(name, getattr(self, name))

    @property
    def is_terminal(self) -> bool:
        return self.state in (TokenState.GRADUATED, TokenState.STALE)

    @property
    def last_activity(self) -> datetime:
        """When the token last showed on-chain activity; creation time before any."""

        return self.last_activity_at or self.created_at

    def clone(self) -> "Token":
        """Return an independent deep copy of the record."""

        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "creator": self.creator,
            "created_at": self.created_at.isoformat(),
            "price": self.price,
            "volume": self.volume,
            "holder_count": self.holder_count,
            "liquidity": self.liquidity,
            "potential_score": self.potential_score,
            "score_components": dict(self.score_components),
            "concentration_risk": self.concentration_risk.value,
            "volume_growth_rate": self.volume_growth_rate,
            "detected_patterns": list(self.detected_patterns),
            "state": self.state.value,
            "is_graduated": self.is_graduated,
            "graduated_at": self.graduated_at.isoformat() if self.graduated_at else None,
            "graduation_progress": self.graduation_progress,
            "alert_sent": self.alert_sent,
            "is_active": self.is_active,
            "last_updated": self.last_updated.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


@dataclass(slots=True)
class AlertPayload:
    """Notification emitted for a token alert."""

    type: str
    token_address: str
    token_symbol: str
    score: int
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "tokenAddress": self.token_address,
            "tokenSymbol": self.token_symbol,
            "score": self.score,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class EventLogRecord:
    """Structured event emitted by the internal event bus."""

    timestamp: datetime
    event_type: str
    severity: str
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


__all__ = [
    "AlertPayload",
    "ClassifiedEvent",
    "ConcentrationRisk",
    "EventLogRecord",
    "HolderBalance",
    "MetricSnapshot",
    "ScoreResult",
    "TimePoint",
    "Token",
    "TokenLaunch",
    "TokenState",
    "TradeEventType",
    "ValidationFailure",
    "validate_address",
]
