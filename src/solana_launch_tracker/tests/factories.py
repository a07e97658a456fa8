"""Builders for RPC payloads and in-memory RPC clients used across the tests."""

from __future__ import annotations

import hashlib
import struct
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import base58
from solders.pubkey import Pubkey
from solders.signature import Signature

from solana_launch_tracker.utils.constants import PUMP_FUN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

RAYDIUM_AMM = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
METEORA_DLMM = "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo"
SPL_TOKEN = str(TOKEN_PROGRAM_ID)
SPL_TOKEN_2022 = str(TOKEN_2022_PROGRAM_ID)


def address() -> str:
    return str(Pubkey.new_unique())


def signature() -> str:
    return str(Signature.new_unique())


def balance(account_index: int, mint: str, owner: Optional[str], amount: int, decimals: int = 0) -> Dict[str, Any]:
    return {
        "accountIndex": account_index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": decimals},
    }


def program_call(program_id: str, accounts: Iterable[str] = (), data: str = "") -> Dict[str, Any]:
    return {"programId": program_id, "accounts": list(accounts), "data": data}


def token_instruction(ix_type: str, **info: Any) -> Dict[str, Any]:
    return {"programId": SPL_TOKEN, "program": "spl-token", "parsed": {"type": ix_type, "info": info}}


def transaction(
    sig: Optional[str] = None,
    *,
    account_keys: Iterable[str] = (),
    instructions: Iterable[Dict[str, Any]] = (),
    inner: Optional[Dict[int, List[Dict[str, Any]]]] = None,
    pre: Iterable[Dict[str, Any]] = (),
    post: Iterable[Dict[str, Any]] = (),
    slot: int = 100,
    block_time: Optional[int] = 1_700_000_000,
    err: Any = None,
) -> Dict[str, Any]:
    """A ``getTransaction`` result in ``jsonParsed`` encoding."""

    return {
        "slot": slot,
        "blockTime": block_time,
        "transaction": {
            "signatures": [sig or signature()],
            "message": {
                "accountKeys": [{"pubkey": key, "signer": index == 0} for index, key in enumerate(account_keys)],
                "instructions": list(instructions),
            },
        },
        "meta": {
            "err": err,
            "innerInstructions": [
                {"index": index, "instructions": list(items)} for index, items in (inner or {}).items()
            ],
            "preTokenBalances": list(pre),
            "postTokenBalances": list(post),
            "logMessages": [],
        },
    }


def borsh_string(value: str) -> bytes:
    encoded = value.encode("utf-8")
    return struct.pack("<I", len(encoded)) + encoded


def launch_create_data(name: str, symbol: str, uri: str) -> str:
    discriminator = hashlib.sha256(b"global:create").digest()[:8]
    raw = discriminator + borsh_string(name) + borsh_string(symbol) + borsh_string(uri)
    return base58.b58encode(raw).decode("ascii")


def launch_transaction(mint: str, creator: str, *, name: str = "Moon Cat", symbol: str = "MCAT", **kwargs: Any) -> Dict[str, Any]:
    accounts = [mint, address(), address(), address(), address(), address(), address(), creator]
    return transaction(
        account_keys=[creator, mint],
        instructions=[program_call(PUMP_FUN_PROGRAM_ID, accounts, launch_create_data(name, symbol, "ipfs://x"))],
        **kwargs,
    )


def rpc_ok(result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "result": result}


class FakeRpcClient:
    """Stand-in for ``AsyncClient`` answering from per-method handlers.

    A handler is either a value, an exception instance (raised) or a callable
    receiving the call arguments. Every call is recorded in ``calls``.
    """

    def __init__(self, endpoint: str, handlers: Optional[Dict[str, Any]] = None) -> None:
        self.endpoint = endpoint
        self.handlers: Dict[str, Any] = {"get_version": {"solana-core": "1.18.0"}}
        self.handlers.update(handlers or {})
        self.calls: List[str] = []
        self.closed = False

    async def _dispatch(self, method: str, *args: Any, **kwargs: Any) -> Any:
        self.calls.append(method)
        handler = self.handlers.get(method)
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            handler = handler(*args, **kwargs)
            if isinstance(handler, BaseException):
                raise handler
        return rpc_ok(handler)

    async def get_version(self) -> Any:
        return await self._dispatch("get_version")

    async def get_slot(self, commitment: Any = None) -> Any:
        return await self._dispatch("get_slot")

    async def get_signatures_for_address(self, account: Any, **kwargs: Any) -> Any:
        return await self._dispatch("get_signatures_for_address", account, **kwargs)

    async def get_transaction(self, sig: Any, **kwargs: Any) -> Any:
        return await self._dispatch("get_transaction", sig, **kwargs)

    async def get_token_largest_accounts(self, mint: Any, commitment: Any = None) -> Any:
        return await self._dispatch("get_token_largest_accounts", mint)

    async def get_program_accounts(self, program: Any, **kwargs: Any) -> Any:
        return await self._dispatch("get_program_accounts", program, **kwargs)

    async def get_account_info(self, pubkey: Any, **kwargs: Any) -> Any:
        return await self._dispatch("get_account_info", pubkey, **kwargs)

    async def close(self) -> None:
        self.closed = True


class FakeRpcNetwork:
    """Client factory handing out one shared fake client per endpoint."""

    def __init__(self, handlers_by_endpoint: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._handlers = handlers_by_endpoint or {}
        self.clients: Dict[str, FakeRpcClient] = {}
        self.created: List[str] = []

    def __call__(self, endpoint: str) -> FakeRpcClient:
        self.created.append(endpoint)
        client = self.clients.get(endpoint)
        if client is None:
            client = self.clients[endpoint] = FakeRpcClient(endpoint, self._handlers.get(endpoint))
        client.closed = False
        return client


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class Clock:
    """Settable clock for code that takes a ``clock`` callable."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def sequence(*results: Any) -> Callable[..., Any]:
    """Handler returning ``results`` one by one, repeating the last one."""

    remaining = list(results)

    def handler(*_args: Any, **_kwargs: Any) -> Any:
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    return handler
