"""Resilient access to Solana RPC endpoints.

The gateway owns one active connection chosen from an ordered endpoint list
(primary first, then fallbacks). Every call goes through :meth:`RpcGateway.with_retry`,
which applies bounded exponential backoff (``base * 2 ** (attempt - 1)``) with
tenacity. When an operation exhausts its retries and the endpoint no longer
answers a liveness check, the gateway fails over to the next endpoint; when no
endpoint answers, :class:`ConnectionUnavailable` is raised.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

from cachetools import LRUCache
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import DataSliceOpts, MemcmpOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from tenacity import AsyncRetrying, RetryError, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import RPCConfig, get_app_config
from ..monitoring.event_bus import EventBus, EventSeverity, EventType
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..utils.constants import SYSTEM_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

_METHOD_NOT_FOUND = -32601
_GONE = 410
# Explicit refusals only, never bare digits such as slot numbers.
_DISABLED_PHRASE = re.compile(
    r"\bmethod\b[^.;:]*?\b(?:is\s+)?(?:disabled|not\s+supported|unsupported|not\s+found)\b"
    r"|\b(?:disabled|not\s+supported)\s+(?:rpc\s+)?method\b"
    r"|\bgetProgramAccounts\b[^.;:]*?\b(?:is\s+)?(?:disabled|not\s+supported)\b"
    r"|\b410\s+Gone\b",
    re.IGNORECASE,
)
_TOKEN_ACCOUNT_SIZE = 165


class ConnectionUnavailable(RuntimeError):
    """Every configured endpoint failed its liveness check."""

    def __init__(self, errors: Dict[str, str]) -> None:
        detail = "; ".join(f"{endpoint}: {error}" for endpoint, error in errors.items()) or "no endpoints configured"
        super().__init__(f"all RPC endpoints unavailable ({detail})")
        self.errors = dict(errors)


class RetryExhausted(RuntimeError):
    """An RPC operation kept failing after its bounded retries."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class RpcMethodDisabled(RuntimeError):
    """The endpoint explicitly refuses a method; retrying cannot help."""

    def __init__(self, method: str, detail: str) -> None:
        super().__init__(f"{method} is disabled on this endpoint: {detail}")
        self.method = method


class RpcResponseError(RuntimeError):
    """The endpoint answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(f"{code}: {message}" if code is not None else message)
        self.code = code


@dataclass(slots=True)
class ConnectionState:
    endpoints: List[str]
    max_retries: int
    public_hosts: frozenset = field(default_factory=frozenset)
    current_index: int = 0
    connected: bool = False
    failovers: int = 0
    supports_bulk_scan: Optional[bool] = None
    last_error: Optional[str] = None
    # Retry attempt of every call in flight, keyed by call id.
    retries_in_flight: Dict[int, int] = field(default_factory=dict)

    @property
    def retry_count(self) -> int:
        """Highest retry attempt among calls currently in flight."""

        return max(self.retries_in_flight.values(), default=0)

    @property
    def current_endpoint(self) -> Optional[str]:
        return self.endpoints[self.current_index] if self.endpoints else None

    @property
    def fallback_endpoints(self) -> List[str]:
        return [endpoint for index, endpoint in enumerate(self.endpoints) if index != self.current_index]

    @property
    def is_public(self) -> bool:
        endpoint = self.current_endpoint
        if not endpoint:
            return False
        host = urlparse(endpoint).hostname or ""
        return host in self.public_hosts


@dataclass(frozen=True, slots=True)
class GatewayStatus:
    """Read-only snapshot of the gateway's connection state."""

    endpoint: Optional[str]
    fallbacks: tuple
    connected: bool
    is_public: bool
    retry_count: int
    max_retries: int
    failovers: int
    supports_bulk_scan: Optional[bool]
    last_error: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "fallbacks": list(self.fallbacks),
            "connected": self.connected,
            "is_public": self.is_public,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "failovers": self.failovers,
            "supports_bulk_scan": self.supports_bulk_scan,
            "last_error": self.last_error,
        }


ClientFactory = Callable[[str], Any]
RpcCall = Callable[[Any], Awaitable[Any]]


def _normalize(response: Any) -> Any:
    """Turn a solders response object or raw dict into plain JSON data."""

    payload = response
    if not isinstance(payload, dict) and hasattr(payload, "to_json"):
        payload = payload.to_json()
    if isinstance(payload, str):
        payload = json.loads(payload)
    if isinstance(payload, dict):
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise RpcResponseError(str(message), int(code) if isinstance(code, int) else None)
        if "result" in payload:
            return payload["result"]
    return payload


def _unwrap_value(result: Any) -> Any:
    if isinstance(result, dict) and "value" in result and "context" in result:
        return result["value"]
    return result


def _http_status(error: BaseException) -> Optional[int]:
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _is_disabled(error: BaseException) -> bool:
    """Whether ``error`` is an explicit refusal of the method by the endpoint."""

    if isinstance(error, RpcResponseError) and error.code == _METHOD_NOT_FOUND:
        return True
    if _http_status(error) == _GONE:
        return True
    return _DISABLED_PHRASE.search(str(error)) is not None


class RpcGateway:
    """Single owner of an RPC connection with fallback, retry and capability probing."""

    def __init__(
        self,
        config: Optional[RPCConfig] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[MetricsRegistry] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._config = config or get_app_config().rpc
        endpoints = [str(self._config.primary_url), *map(str, self._config.fallback_urls)]
        self._state = ConnectionState(
            endpoints=list(dict.fromkeys(endpoints)),
            max_retries=self._config.max_retries,
            public_hosts=frozenset(self._config.public_endpoint_hosts),
        )
        self._client_factory = client_factory or self._default_client
        self._sleep = sleep
        self._metrics = metrics or METRICS
        self._event_bus = event_bus
        self._logger = get_logger(__name__)
        self._client: Any = None
        self._lock = asyncio.Lock()
        self._capability_lock = asyncio.Lock()
        self._call_ids = itertools.count(1)
        # Owning token program per mint; a mint never changes program.
        self._mint_programs: LRUCache = LRUCache(maxsize=4096)

    def _default_client(self, endpoint: str) -> AsyncClient:
        return AsyncClient(
            endpoint,
            commitment=Commitment(self._config.commitment),
            timeout=self._config.request_timeout,
        )

    # Connection management ----------------------------------------------------

    async def initialize(self) -> GatewayStatus:
        """Connect to the first endpoint that answers a version request."""

        async with self._lock:
            await self._connect_from(0)
        return self.get_status()

    async def _connect_from(self, start_index: int) -> None:
        errors: Dict[str, str] = {}
        total = len(self._state.endpoints)
        for offset in range(total):
            index = (start_index + offset) % total
            endpoint = self._state.endpoints[index]
            for attempt in range(1, self._config.probe_attempts + 1):
                client = self._client_factory(endpoint)
                try:
                    await self._call(client, "get_version", lambda c: c.get_version())
                except Exception as exc:  # noqa: BLE001
                    errors[endpoint] = str(exc)
                    self._logger.warning(
                        "RPC version check %s/%s failed on %s: %s", attempt, self._config.probe_attempts, endpoint, exc
                    )
                    await self._close_client(client)
                    if attempt < self._config.probe_attempts:
                        await self._sleep(self._config.retry_base_delay_seconds)
                    continue
                previous = self._client
                self._client = client
                if self._state.connected and index != self._state.current_index:
                    self._state.failovers += 1
                    self._metrics.increment("rpc.failovers")
                if index != self._state.current_index:
                    self._state.supports_bulk_scan = None
                self._state.current_index = index
                self._state.connected = True
                self._state.last_error = None
                if previous is not None and previous is not client:
                    await self._close_client(previous)
                self._logger.info("Connected to RPC endpoint %s", endpoint)
                self._publish_health(f"connected to {endpoint}", EventSeverity.INFO)
                return
        self._state.connected = False
        self._state.last_error = "all endpoints unavailable"
        self._metrics.increment("rpc.unavailable")
        self._publish_health("all RPC endpoints unavailable", EventSeverity.CRITICAL, reason="unavailable")
        raise ConnectionUnavailable(errors)

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                await self._close_client(self._client)
            self._client = None
            self._state.connected = False

    async def _close_client(self, client: Any) -> None:
        closer = getattr(client, "close", None)
        if closer is None:
            return
        try:
            result = closer()
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Failed to close RPC client: %s", exc)

    def get_status(self) -> GatewayStatus:
        state = self._state
        return GatewayStatus(
            endpoint=state.current_endpoint,
            fallbacks=tuple(state.fallback_endpoints),
            connected=state.connected,
            is_public=state.is_public,
            retry_count=state.retry_count,
            max_retries=state.max_retries,
            failovers=state.failovers,
            supports_bulk_scan=state.supports_bulk_scan,
            last_error=state.last_error,
        )

    def _publish_health(self, message: str, severity: EventSeverity, reason: str = "") -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            EventType.RPC_HEALTH,
            {"message": message, "reason": reason, **self.get_status().to_dict()},
            severity=severity,
        )

    # Calls ----------------------------------------------------------------------

    async def _call(self, client: Any, operation: str, call: RpcCall) -> Any:
        labels = {"method": operation}
        self._metrics.increment("rpc.calls", labels=labels)
        with self._metrics.timer("rpc.latency_seconds", labels=labels):
            try:
                response = await asyncio.wait_for(call(client), timeout=self._config.request_timeout)
                return _normalize(response)
            except RpcMethodDisabled:
                raise
            except Exception as exc:
                self._metrics.increment("rpc.errors", labels=labels)
                if _is_disabled(exc):
                    raise RpcMethodDisabled(operation, str(exc)) from exc
                raise

    async def _retrying(self, client: Any, operation: str, call: RpcCall) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_exponential(multiplier=self._config.retry_base_delay_seconds, exp_base=2),
            retry=retry_if_not_exception_type(RpcMethodDisabled),
            sleep=self._sleep,
        )
        call_id = next(self._call_ids)
        in_flight = self._state.retries_in_flight
        try:
            async for attempt in retrying:
                with attempt:
                    retry = attempt.retry_state.attempt_number - 1
                    in_flight[call_id] = retry
                    if retry:
                        self._metrics.increment("rpc.retries", labels={"method": operation})
                    return await self._call(client, operation, call)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            self._state.last_error = str(last_error)
            raise RetryExhausted(operation, self._config.max_retries, last_error) from last_error
        finally:
            in_flight.pop(call_id, None)

    async def with_retry(self, operation: str, call: RpcCall) -> Any:
        """Run ``call(client)`` with retries, failing over once when the endpoint died."""

        if not self._state.connected:
            await self.initialize()
        client = self._client
        try:
            return await self._retrying(client, operation, call)
        except RetryExhausted as exhausted:
            if not await self._fail_over_if_dead(client):
                self._logger.warning("RPC %s exhausted retries: %s", operation, exhausted.last_error)
                raise
        return await self._retrying(self._client, operation, call)

    async def _fail_over_if_dead(self, client: Any) -> bool:
        """Return ``True`` when the gateway moved to a different endpoint."""

        async with self._lock:
            if client is not self._client:
                return True
            try:
                await self._call(client, "get_version", lambda c: c.get_version())
                return False
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("RPC endpoint %s failed liveness check: %s", self._state.current_endpoint, exc)
            total = len(self._state.endpoints)
            await self._connect_from((self._state.current_index + 1) % total)
            return True

    # Capabilities ---------------------------------------------------------------

    async def supports_bulk_scan(self) -> bool:
        """Whether ``getProgramAccounts`` is served; checked once per endpoint."""

        if self._state.supports_bulk_scan is not None:
            return self._state.supports_bulk_scan
        async with self._capability_lock:
            if self._state.supports_bulk_scan is not None:
                return self._state.supports_bulk_scan
            if not self._state.connected:
                await self.initialize()
            try:
                await self._call(
                    self._client,
                    "get_program_accounts",
                    lambda c: c.get_program_accounts(
                        TOKEN_PROGRAM_ID,
                        encoding="base64",
                        data_slice=DataSliceOpts(offset=0, length=0),
                        filters=[_TOKEN_ACCOUNT_SIZE, MemcmpOpts(offset=0, bytes=SYSTEM_PROGRAM_ID)],
                    ),
                )
                supported = True
            except RpcMethodDisabled as exc:
                self._logger.info("Bulk account scans unavailable: %s", exc)
                supported = False
            except Exception as exc:  # noqa: BLE001
                self._logger.debug("Bulk scan check failed, assuming support: %s", exc)
                supported = True
            self._state.supports_bulk_scan = supported
            return supported

    # RPC operations ------------------------------------------------------------

    async def get_version(self) -> Dict[str, Any]:
        return await self.with_retry("get_version", lambda c: c.get_version())

    async def get_slot(self) -> int:
        result = await self.with_retry(
            "get_slot", lambda c: c.get_slot(commitment=Commitment(self._config.commitment))
        )
        return int(result)

    async def get_signatures_for_address(
        self,
        address: str,
        *,
        before: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        pubkey = Pubkey.from_string(address)
        before_sig = Signature.from_string(before) if before else None
        until_sig = Signature.from_string(until) if until else None
        result = await self.with_retry(
            "get_signatures_for_address",
            lambda c: c.get_signatures_for_address(
                pubkey,
                before=before_sig,
                until=until_sig,
                limit=limit,
                commitment=Commitment(self._config.commitment),
            ),
        )
        return list(result or [])

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        sig = Signature.from_string(signature)
        result = await self.with_retry(
            "get_transaction",
            lambda c: c.get_transaction(
                sig,
                encoding="jsonParsed",
                commitment=Commitment(self._config.commitment),
                max_supported_transaction_version=0,
            ),
        )
        return result or None

    async def get_token_largest_accounts(self, mint: str) -> List[Dict[str, Any]]:
        pubkey = Pubkey.from_string(mint)
        result = await self.with_retry(
            "get_token_largest_accounts",
            lambda c: c.get_token_largest_accounts(pubkey, commitment=Commitment(self._config.commitment)),
        )
        return list(_unwrap_value(result) or [])

    async def get_token_supply(self, mint: str) -> Dict[str, Any]:
        pubkey = Pubkey.from_string(mint)
        result = await self.with_retry(
            "get_token_supply",
            lambda c: c.get_token_supply(pubkey, commitment=Commitment(self._config.commitment)),
        )
        return dict(_unwrap_value(result) or {})

    async def token_program(self, mint: str) -> Optional[str]:
        """Owner program of ``mint``, or ``None`` when the account does not exist."""

        cached = self._mint_programs.get(mint)
        if cached is not None:
            return cached
        pubkey = Pubkey.from_string(mint)
        result = await self.with_retry(
            "get_account_info",
            lambda c: c.get_account_info(pubkey, commitment=Commitment(self._config.commitment), encoding="base64"),
        )
        account = _unwrap_value(result)
        owner = account.get("owner") if isinstance(account, dict) else None
        if owner:
            self._mint_programs[mint] = str(owner)
        return str(owner) if owner else None

    async def count_token_holders(self, mint: str) -> Optional[int]:
        """Count token accounts with a non-zero balance, or ``None`` when scans are unavailable.

        Classic SPL token accounts are exactly 165 bytes and are filtered by size.
        Token-2022 accounts carry extensions past that size, so only the mint
        filter applies. Mints owned by any other program are not counted.
        """

        if not await self.supports_bulk_scan():
            return None
        program = await self.token_program(mint)
        if program == str(TOKEN_PROGRAM_ID):
            filters: List[Any] = [_TOKEN_ACCOUNT_SIZE, MemcmpOpts(offset=0, bytes=mint)]
        elif program == str(TOKEN_2022_PROGRAM_ID):
            filters = [MemcmpOpts(offset=0, bytes=mint)]
        else:
            self._logger.debug("Mint %s is owned by %s; holder scan skipped", mint, program)
            return None
        owner_program = Pubkey.from_string(program)
        try:
            result = await self.with_retry(
                "get_program_accounts",
                lambda c: c.get_program_accounts(owner_program, encoding="jsonParsed", filters=filters),
            )
        except RpcMethodDisabled:
            self._state.supports_bulk_scan = False
            return None
        holders = 0
        for account in _unwrap_value(result) or []:
            info = (
                account.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
                if isinstance(account, dict)
                else {}
            )
            amount = info.get("tokenAmount", {}).get("amount", "0")
            if str(amount) != "0":
                holders += 1
        return holders


__all__ = [
    "ConnectionState",
    "ConnectionUnavailable",
    "GatewayStatus",
    "RetryExhausted",
    "RpcGateway",
    "RpcMethodDisabled",
    "RpcResponseError",
]
