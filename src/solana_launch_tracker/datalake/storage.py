"""SQLite persistence for token records, metric history and audit logs."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Protocol, Sequence

from .schemas import (
    ClassifiedEvent,
    ConcentrationRisk,
    EventLogRecord,
    HolderBalance,
    TimePoint,
    Token,
    TokenState,
)


class PersistenceConflict(RuntimeError):
    """Raised when a token row changed since it was read."""

    def __init__(self, address: str, expected_revision: int, actual_revision: Optional[int]) -> None:
        super().__init__(
            f"token {address} revision mismatch: expected {expected_revision}, found {actual_revision}"
        )
        self.address = address
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


class TokenStore(Protocol):
    """Persistence operations the lifecycle depends on."""

    def get_token(self, address: str, *, history_limit: Optional[int] = None) -> Optional[Token]:
        ...

    def list_tokens(self, *, active_only: bool = False, history_limit: Optional[int] = None) -> List[Token]:
        ...

    def save_token(
        self,
        token: Token,
        expected_revision: int,
        history: Optional[Mapping[str, Sequence[TimePoint]]] = None,
    ) -> int:
        ...

    def record_classified_event(self, event: ClassifiedEvent) -> None:
        ...

    def list_classified_events(self, token_address: str, limit: int = 200) -> List[Dict[str, object]]:
        ...


SCHEMA_VERSION = 4

HISTORY_METRICS = ("volume", "price", "holders")

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER NOT NULL
);
"""

CREATE_TOKEN_TABLE = """
CREATE TABLE IF NOT EXISTS tokens (
    address TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    name TEXT NOT NULL,
    creator TEXT,
    created_at TEXT NOT NULL,
    decimals INTEGER,
    launch_signature TEXT,
    price REAL NOT NULL DEFAULT 0,
    volume REAL NOT NULL DEFAULT 0,
    trade_volume REAL NOT NULL DEFAULT 0,
    holder_count INTEGER NOT NULL DEFAULT 0,
    liquidity REAL NOT NULL DEFAULT 0,
    holder_distribution TEXT NOT NULL DEFAULT '[]',
    potential_score INTEGER NOT NULL DEFAULT 0,
    score_components TEXT NOT NULL DEFAULT '{}',
    concentration_risk TEXT NOT NULL DEFAULT 'unknown',
    volume_growth_rate REAL NOT NULL DEFAULT 0,
    detected_patterns TEXT NOT NULL DEFAULT '[]',
    state TEXT NOT NULL DEFAULT 'new',
    is_graduated INTEGER NOT NULL DEFAULT 0,
    graduated_at TEXT,
    graduation_progress REAL NOT NULL DEFAULT 0,
    alert_sent INTEGER NOT NULL DEFAULT 0,
    alert_sent_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_updated TEXT NOT NULL,
    last_trade_at TEXT,
    buy_count INTEGER NOT NULL DEFAULT 0,
    sell_count INTEGER NOT NULL DEFAULT 0,
    transfer_count INTEGER NOT NULL DEFAULT 0,
    event_count INTEGER NOT NULL DEFAULT 0,
    revision INTEGER NOT NULL DEFAULT 1
);
"""

CREATE_TOKEN_HISTORY_TABLE = """
CREATE TABLE IF NOT EXISTS token_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    address TEXT NOT NULL,
    metric TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    value REAL NOT NULL
);
"""

CREATE_TOKEN_HISTORY_INDEX = """
CREATE INDEX IF NOT EXISTS idx_token_history_address_metric
ON token_history (address, metric, id);
"""

CREATE_CLASSIFIED_EVENT_TABLE = """
CREATE TABLE IF NOT EXISTS classified_events (
    signature TEXT NOT NULL,
    token_address TEXT NOT NULL,
    event_type TEXT NOT NULL,
    amount REAL NOT NULL,
    from_wallet TEXT,
    to_wallet TEXT,
    liquidity_change REAL NOT NULL,
    block_time TEXT,
    slot INTEGER,
    note TEXT,
    payload TEXT NOT NULL,
    PRIMARY KEY (signature, token_address)
);
"""

CREATE_EVENT_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS event_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    payload TEXT NOT NULL,
    correlation_id TEXT,
    labels TEXT
);
"""

ADD_TOKEN_ACTIVITY_COLUMNS = (
    "ALTER TABLE tokens ADD COLUMN pooled_amount REAL NOT NULL DEFAULT 0",
    "ALTER TABLE tokens ADD COLUMN last_activity_at TEXT",
    "UPDATE tokens SET last_activity_at = last_updated",
)

_TOKEN_COLUMNS = (
    "address",
    "symbol",
    "name",
    "creator",
    "created_at",
    "decimals",
    "launch_signature",
    "price",
    "volume",
    "trade_volume",
    "holder_count",
    "liquidity",
    "holder_distribution",
    "potential_score",
    "score_components",
    "concentration_risk",
    "volume_growth_rate",
    "detected_patterns",
    "state",
    "is_graduated",
    "graduated_at",
    "graduation_progress",
    "alert_sent",
    "alert_sent_at",
    "is_active",
    "last_updated",
    "last_trade_at",
    "buy_count",
    "sell_count",
    "transfer_count",
    "event_count",
    "pooled_amount",
    "last_activity_at",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStorage:
    """SQLite-backed token store with optimistic per-token revisions."""

    def __init__(self, database_path: Path) -> None:
        self._database_path = Path(database_path)
        self._initialize()

    @property
    def database_path(self) -> Path:
        return self._database_path

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_SCHEMA_VERSION_TABLE)
            self._apply_migrations(con)
            con.commit()

    def _apply_migrations(self, con: sqlite3.Connection) -> None:
        current = start = self._get_schema_version(con)
        if current < 1:
            con.execute(CREATE_TOKEN_TABLE)
            current = 1
        if current < 2:
            con.execute(CREATE_TOKEN_HISTORY_TABLE)
            con.execute(CREATE_TOKEN_HISTORY_INDEX)
            con.execute(CREATE_CLASSIFIED_EVENT_TABLE)
            current = 2
        if current < 3:
            con.execute(CREATE_EVENT_LOG_TABLE)
            current = 3
        if current < 4:
            for statement in ADD_TOKEN_ACTIVITY_COLUMNS:
                con.execute(statement)
            current = 4
        if current != start:
            self._set_schema_version(con, SCHEMA_VERSION)

    def _get_schema_version(self, con: sqlite3.Connection) -> int:
        row = con.execute("SELECT version FROM schema_migrations ORDER BY ROWID DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        try:
            return int(row[0])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, con: sqlite3.Connection, version: int) -> None:
        con.execute("DELETE FROM schema_migrations")
        con.execute("INSERT INTO schema_migrations (version) VALUES (?)", (version,))

    def schema_version(self) -> int:
        with self._connect() as con:
            return self._get_schema_version(con)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path, timeout=30)
        try:
            yield con
        finally:
            con.close()

    # Tokens -----------------------------------------------------------------

    def save_token(
        self,
        token: Token,
        expected_revision: int,
        history: Optional[Mapping[str, Sequence[TimePoint]]] = None,
    ) -> int:
        """Write ``token`` if the stored revision still equals ``expected_revision``.

        ``expected_revision`` of ``0`` means the token must not exist yet. History
        points are appended in the same transaction. Returns the new revision.
        """

        values = self._token_values(token)
        with self._connect() as con:
            try:
                if expected_revision == 0:
                    placeholders = ", ".join("?" for _ in _TOKEN_COLUMNS)
                    try:
                        con.execute(
                            f"INSERT INTO tokens ({', '.join(_TOKEN_COLUMNS)}, revision) VALUES ({placeholders}, 1)",
                            values,
                        )
                    except sqlite3.IntegrityError as exc:
                        actual = self._current_revision(con, token.address)
                        raise PersistenceConflict(token.address, expected_revision, actual) from exc
                    new_revision = 1
                else:
                    assignments = ", ".join(f"{column} = ?" for column in _TOKEN_COLUMNS[1:])
                    cur = con.execute(
                        f"UPDATE tokens SET {assignments}, revision = revision + 1 "
                        "WHERE address = ? AND revision = ?",
                        (*values[1:], token.address, expected_revision),
                    )
                    if cur.rowcount != 1:
                        actual = self._current_revision(con, token.address)
                        raise PersistenceConflict(token.address, expected_revision, actual)
                    new_revision = expected_revision + 1
                for metric, points in (history or {}).items():
                    con.executemany(
                        "INSERT INTO token_history (address, metric, timestamp, value) VALUES (?, ?, ?, ?)",
                        [(token.address, metric, point.timestamp.isoformat(), point.value) for point in points],
                    )
                con.commit()
            except Exception:
                con.rollback()
                raise
        return new_revision

    def _current_revision(self, con: sqlite3.Connection, address: str) -> Optional[int]:
        row = con.execute("SELECT revision FROM tokens WHERE address = ?", (address,)).fetchone()
        return int(row[0]) if row else None

    def get_token(self, address: str, *, history_limit: Optional[int] = None) -> Optional[Token]:
        with self._connect() as con:
            row = con.execute(
                f"SELECT {', '.join(_TOKEN_COLUMNS)}, revision FROM tokens WHERE address = ?",
                (address,),
            ).fetchone()
            if row is None:
                return None
            history = self._load_history(con, address, history_limit)
        return self._row_to_token(row, history)

    def list_tokens(self, *, active_only: bool = False, history_limit: Optional[int] = None) -> List[Token]:
        query = f"SELECT {', '.join(_TOKEN_COLUMNS)}, revision FROM tokens"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at ASC"
        with self._connect() as con:
            rows = con.execute(query).fetchall()
            return [self._row_to_token(row, self._load_history(con, row[0], history_limit)) for row in rows]

    def get_history(self, address: str, metric: str) -> List[TimePoint]:
        with self._connect() as con:
            return self._load_history(con, address).get(metric, [])

    def _load_history(
        self, con: sqlite3.Connection, address: str, limit: Optional[int] = None
    ) -> Dict[str, List[TimePoint]]:
        """Metric series for ``address``, oldest first; ``limit`` keeps the newest points per metric."""

        history: Dict[str, List[TimePoint]] = {metric: [] for metric in HISTORY_METRICS}
        if limit is None:
            cur = con.execute(
                "SELECT metric, timestamp, value FROM token_history WHERE address = ? ORDER BY id ASC",
                (address,),
            )
        else:
            cur = con.execute(
                """
                SELECT metric, timestamp, value FROM (
                    SELECT id, metric, timestamp, value,
                           ROW_NUMBER() OVER (PARTITION BY metric ORDER BY id DESC) AS position
                    FROM token_history WHERE address = ?
                ) WHERE position <= ? ORDER BY id ASC
                """,
                (address, limit),
            )
        for metric, timestamp, value in cur.fetchall():
            history.setdefault(metric, []).append(TimePoint(datetime.fromisoformat(timestamp), float(value)))
        return history

    def _token_values(self, token: Token) -> tuple:
        return (
            token.address,
            token.symbol,
            token.name,
            token.creator,
            token.created_at.isoformat(),
            token.decimals,
            token.launch_signature,
            token.price,
            token.volume,
            token.trade_volume,
            token.holder_count,
            token.liquidity,
            json.dumps([{"address": h.address, "balance": h.balance} for h in token.holder_distribution]),
            token.potential_score,
            json.dumps(token.score_components, sort_keys=True),
            token.concentration_risk.value,
            token.volume_growth_rate,
            json.dumps(token.detected_patterns),
            token.state.value,
            int(token.is_graduated),
            _iso(token.graduated_at),
            token.graduation_progress,
            int(token.alert_sent),
            _iso(token.alert_sent_at),
            int(token.is_active),
            token.last_updated.isoformat(),
            _iso(token.last_trade_at),
            token.buy_count,
            token.sell_count,
            token.transfer_count,
            token.event_count,
            token.pooled_amount,
            _iso(token.last_activity_at),
        )

    def _row_to_token(self, row: Sequence, history: Dict[str, List[TimePoint]]) -> Token:
        data = dict(zip((*_TOKEN_COLUMNS, "revision"), row))
        return Token(
            address=data["address"],
            symbol=data["symbol"],
            name=data["name"],
            creator=data["creator"],
            created_at=datetime.fromisoformat(data["created_at"]),
            decimals=data["decimals"],
            launch_signature=data["launch_signature"],
            price=float(data["price"]),
            volume=float(data["volume"]),
            trade_volume=float(data["trade_volume"]),
            holder_count=int(data["holder_count"]),
            liquidity=float(data["liquidity"]),
            holder_distribution=[
                HolderBalance(item["address"], float(item["balance"]))
                for item in json.loads(data["holder_distribution"] or "[]")
            ],
            potential_score=int(data["potential_score"]),
            score_components=json.loads(data["score_components"] or "{}"),
            concentration_risk=ConcentrationRisk(data["concentration_risk"]),
            volume_growth_rate=float(data["volume_growth_rate"]),
            detected_patterns=list(json.loads(data["detected_patterns"] or "[]")),
            state=TokenState(data["state"]),
            is_graduated=bool(data["is_graduated"]),
            graduated_at=_parse_dt(data["graduated_at"]),
            graduation_progress=float(data["graduation_progress"]),
            alert_sent=bool(data["alert_sent"]),
            alert_sent_at=_parse_dt(data["alert_sent_at"]),
            is_active=bool(data["is_active"]),
            last_updated=datetime.fromisoformat(data["last_updated"]),
            last_trade_at=_parse_dt(data["last_trade_at"]),
            buy_count=int(data["buy_count"]),
            sell_count=int(data["sell_count"]),
            transfer_count=int(data["transfer_count"]),
            event_count=int(data["event_count"]),
            pooled_amount=float(data["pooled_amount"]),
            last_activity_at=_parse_dt(data["last_activity_at"]),
            volume_history=history.get("volume", []),
            price_history=history.get("price", []),
            holder_history=history.get("holders", []),
            revision=int(data["revision"]),
        )

    # Classified events --------------------------------------------------------

    def record_classified_event(self, event: ClassifiedEvent) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT OR IGNORE INTO classified_events (
                    signature,
                    token_address,
                    event_type,
                    amount,
                    from_wallet,
                    to_wallet,
                    liquidity_change,
                    block_time,
                    slot,
                    note,
                    payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.signature,
                    event.token_address,
                    event.event_type.value,
                    event.amount,
                    event.from_wallet,
                    event.to_wallet,
                    event.liquidity_change,
                    _iso(event.block_time),
                    event.slot,
                    event.note,
                    json.dumps(event.to_dict(), separators=(",", ":")),
                ),
            )
            con.commit()

    def list_classified_events(self, token_address: str, limit: int = 200) -> List[Dict[str, object]]:
        """Most recent ``limit`` events for a token, oldest first."""

        with self._connect() as con:
            cur = con.execute(
                "SELECT payload FROM classified_events WHERE token_address = ? "
                "ORDER BY block_time DESC, ROWID DESC LIMIT ?",
                (token_address, limit),
            )
            rows = cur.fetchall()
        return [json.loads(row[0]) for row in reversed(rows)]

    # Event logs ---------------------------------------------------------------

    def record_event_log(self, event: EventLogRecord) -> None:
        payload = json.dumps(event.payload, separators=(",", ":"), default=str)
        labels = json.dumps(event.labels, separators=(",", ":")) if event.labels else None
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO event_logs (
                    timestamp,
                    event_type,
                    severity,
                    payload,
                    correlation_id,
                    labels
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.timestamp.isoformat(),
                    event.event_type,
                    event.severity,
                    payload,
                    event.correlation_id,
                    labels,
                ),
            )
            con.commit()

    def list_event_logs(self, limit: int = 200, event_type: Optional[str] = None) -> List[EventLogRecord]:
        query = "SELECT timestamp, event_type, severity, payload, correlation_id, labels FROM event_logs"
        params: List[object] = []
        if event_type:
            query += " WHERE event_type = ?"
            params.append(event_type)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            EventLogRecord(
                timestamp=datetime.fromisoformat(row[0]),
                event_type=row[1],
                severity=row[2],
                payload=json.loads(row[3]) if row[3] else {},
                correlation_id=row[4],
                labels=json.loads(row[5]) if row[5] else {},
            )
            for row in rows
        ]


__all__ = ["PersistenceConflict", "SQLiteStorage", "TokenStore", "SCHEMA_VERSION", "HISTORY_METRICS"]
