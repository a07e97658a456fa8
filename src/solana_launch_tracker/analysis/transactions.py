"""Typed view over ``jsonParsed`` transactions returned by Solana RPC nodes.

Instructions are decoded into a closed set of variants (token transfers, mints,
burns, mint initialisation, launchpad token creation) with an ``Unrecognized``
catch-all, so downstream code switches on :attr:`kind` instead of probing loose
dictionaries. Inner instructions are flattened after their parent, in the order
the node emitted them, and keep a reference to the parent's position.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union

import base58

from ..utils.constants import PUMP_FUN_PROGRAM_ID, SPL_TOKEN_PROGRAM_IDS


class TransactionFormatError(ValueError):
    """Raised when an RPC payload does not look like a parsed transaction."""


class InstructionKind(str, Enum):
    TRANSFER = "transfer"
    MINT_TO = "mint_to"
    BURN = "burn"
    INITIALIZE_MINT = "initialize_mint"
    LAUNCH_CREATE = "launch_create"
    PARSED_OTHER = "parsed_other"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True, slots=True)
class TokenTransfer:
    program_id: str
    position: int
    parent_index: Optional[int]
    source: Optional[str]
    destination: Optional[str]
    authority: Optional[str]
    raw_amount: Optional[int]
    ui_amount: Optional[float] = None
    mint: Optional[str] = None
    decimals: Optional[int] = None
    kind: InstructionKind = field(default=InstructionKind.TRANSFER, init=False)


@dataclass(frozen=True, slots=True)
class MintTo:
    program_id: str
    position: int
    parent_index: Optional[int]
    mint: Optional[str]
    account: Optional[str]
    raw_amount: Optional[int]
    ui_amount: Optional[float] = None
    kind: InstructionKind = field(default=InstructionKind.MINT_TO, init=False)


@dataclass(frozen=True, slots=True)
class Burn:
    program_id: str
    position: int
    parent_index: Optional[int]
    mint: Optional[str]
    account: Optional[str]
    authority: Optional[str]
    raw_amount: Optional[int]
    ui_amount: Optional[float] = None
    kind: InstructionKind = field(default=InstructionKind.BURN, init=False)


@dataclass(frozen=True, slots=True)
class InitializeMint:
    program_id: str
    position: int
    parent_index: Optional[int]
    mint: str
    decimals: Optional[int] = None
    mint_authority: Optional[str] = None
    kind: InstructionKind = field(default=InstructionKind.INITIALIZE_MINT, init=False)


@dataclass(frozen=True, slots=True)
class LaunchCreate:
    program_id: str
    position: int
    parent_index: Optional[int]
    mint: str
    name: Optional[str] = None
    symbol: Optional[str] = None
    uri: Optional[str] = None
    creator: Optional[str] = None
    kind: InstructionKind = field(default=InstructionKind.LAUNCH_CREATE, init=False)


@dataclass(frozen=True, slots=True)
class ParsedOther:
    program_id: str
    position: int
    parent_index: Optional[int]
    program: Optional[str]
    instruction_type: Optional[str]
    kind: InstructionKind = field(default=InstructionKind.PARSED_OTHER, init=False)


@dataclass(frozen=True, slots=True)
class Unrecognized:
    program_id: str
    position: int
    parent_index: Optional[int]
    accounts: Tuple[str, ...] = ()
    data: Optional[str] = None
    kind: InstructionKind = field(default=InstructionKind.UNRECOGNIZED, init=False)


Instruction = Union[TokenTransfer, MintTo, Burn, InitializeMint, LaunchCreate, ParsedOther, Unrecognized]


@dataclass(frozen=True, slots=True)
class TokenBalance:
    """Pre or post token balance of one account."""

    account_index: int
    mint: str
    owner: Optional[str]
    raw_amount: int
    decimals: int

    @property
    def ui_amount(self) -> float:
        return self.raw_amount / (10 ** self.decimals) if self.decimals else float(self.raw_amount)


@dataclass(frozen=True, slots=True)
class ParsedTransaction:
    signature: str
    slot: Optional[int]
    block_time: Optional[datetime]
    error: Any
    account_keys: Tuple[str, ...]
    instructions: Tuple[Instruction, ...]
    pre_token_balances: Tuple[TokenBalance, ...]
    post_token_balances: Tuple[TokenBalance, ...]
    log_messages: Tuple[str, ...] = ()

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def fee_payer(self) -> Optional[str]:
        return self.account_keys[0] if self.account_keys else None

    @property
    def program_ids(self) -> FrozenSet[str]:
        return frozenset(ix.program_id for ix in self.instructions)

    def account_owner(self, token_account: Optional[str]) -> Optional[str]:
        """Map a token account address to its owner using the balance records."""

        if not token_account:
            return None
        for balance in (*self.post_token_balances, *self.pre_token_balances):
            if balance.account_index < len(self.account_keys) and self.account_keys[balance.account_index] == token_account:
                return balance.owner or token_account
        return token_account

    def account_mint(self, token_account: Optional[str]) -> Optional[str]:
        if not token_account:
            return None
        for balance in (*self.post_token_balances, *self.pre_token_balances):
            if balance.account_index < len(self.account_keys) and self.account_keys[balance.account_index] == token_account:
                return balance.mint
        return None

    def balances_for(self, mint: str) -> Tuple[List[TokenBalance], List[TokenBalance]]:
        pre = [balance for balance in self.pre_token_balances if balance.mint == mint]
        post = [balance for balance in self.post_token_balances if balance.mint == mint]
        return pre, post

    def mints(self) -> FrozenSet[str]:
        return frozenset(balance.mint for balance in (*self.pre_token_balances, *self.post_token_balances))


_LAUNCH_CREATE_DISCRIMINATOR = hashlib.sha256(b"global:create").digest()[:8]
_LAUNCH_CREATE_TYPES = {"create", "createtoken", "create_token"}
_INITIALIZE_MINT_TYPES = {"initializeMint", "initializeMint2"}
_TRANSFER_TYPES = {"transfer", "transferChecked"}
_MINT_TO_TYPES = {"mintTo", "mintToChecked"}
_BURN_TYPES = {"burn", "burnChecked"}


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _amounts(info: Mapping[str, Any]) -> Tuple[Optional[int], Optional[float], Optional[int]]:
    token_amount = info.get("tokenAmount")
    if isinstance(token_amount, Mapping):
        decimals = _as_int(token_amount.get("decimals"))
        raw = _as_int(token_amount.get("amount"))
        ui = token_amount.get("uiAmount")
        if ui is None and token_amount.get("uiAmountString") is not None:
            ui = float(token_amount["uiAmountString"])
        return raw, float(ui) if ui is not None else None, decimals
    return _as_int(info.get("amount")), None, _as_int(info.get("decimals"))


def _read_borsh_string(data: bytes, offset: int) -> Tuple[str, int]:
    (length,) = struct.unpack_from("<I", data, offset)
    start = offset + 4
    end = start + length
    if end > len(data):
        raise TransactionFormatError("string field runs past instruction data")
    return data[start:end].decode("utf-8", errors="replace"), end


def _decode_launch_create(
    program_id: str, position: int, parent: Optional[int], accounts: Sequence[str], data: Optional[str]
) -> Optional[LaunchCreate]:
    """Decode a launchpad ``create`` instruction from its raw Anchor payload."""

    if not data or not accounts:
        return None
    try:
        raw = base58.b58decode(data)
    except ValueError:
        return None
    if raw[:8] != _LAUNCH_CREATE_DISCRIMINATOR:
        return None
    try:
        name, offset = _read_borsh_string(raw, 8)
        symbol, offset = _read_borsh_string(raw, offset)
        uri, offset = _read_borsh_string(raw, offset)
    except (struct.error, TransactionFormatError):
        name = symbol = uri = None
    # Account layout: mint, mint authority, bonding curve, ..., user at index 7.
    creator = accounts[7] if len(accounts) > 7 else None
    return LaunchCreate(program_id, position, parent, accounts[0], name, symbol, uri, creator)


def parse_instruction(raw: Mapping[str, Any], position: int, parent_index: Optional[int] = None) -> Instruction:
    """Decode one instruction dictionary into its typed variant."""

    if not isinstance(raw, Mapping):
        raise TransactionFormatError(f"instruction {position} is not an object")
    program_id = raw.get("programId")
    if not isinstance(program_id, str):
        raise TransactionFormatError(f"instruction {position} is missing programId")
    parsed = raw.get("parsed")
    if isinstance(parsed, Mapping):
        ix_type = parsed.get("type")
        info = parsed.get("info") if isinstance(parsed.get("info"), Mapping) else {}
        is_token_program = program_id in SPL_TOKEN_PROGRAM_IDS or raw.get("program") in {"spl-token", "spl-token-2022"}
        if is_token_program and ix_type in _TRANSFER_TYPES:
            amount, ui_amount, decimals = _amounts(info)
            return TokenTransfer(
                program_id,
                position,
                parent_index,
                source=info.get("source"),
                destination=info.get("destination"),
                authority=info.get("authority") or info.get("multisigAuthority"),
                raw_amount=amount,
                ui_amount=ui_amount,
                mint=info.get("mint"),
                decimals=decimals,
            )
        if is_token_program and ix_type in _MINT_TO_TYPES:
            amount, ui_amount, _ = _amounts(info)
            return MintTo(program_id, position, parent_index, info.get("mint"), info.get("account"), amount, ui_amount)
        if is_token_program and ix_type in _BURN_TYPES:
            amount, ui_amount, _ = _amounts(info)
            return Burn(
                program_id,
                position,
                parent_index,
                info.get("mint"),
                info.get("account"),
                info.get("authority") or info.get("multisigAuthority"),
                amount,
                ui_amount,
            )
        if is_token_program and ix_type in _INITIALIZE_MINT_TYPES and info.get("mint"):
            return InitializeMint(
                program_id,
                position,
                parent_index,
                info["mint"],
                _as_int(info.get("decimals")),
                info.get("mintAuthority"),
            )
        if isinstance(ix_type, str) and ix_type.lower() in _LAUNCH_CREATE_TYPES and info.get("mint"):
            return LaunchCreate(
                program_id,
                position,
                parent_index,
                info["mint"],
                info.get("name"),
                info.get("symbol"),
                info.get("uri"),
                info.get("creator") or info.get("user"),
            )
        return ParsedOther(program_id, position, parent_index, raw.get("program"), ix_type)
    accounts = tuple(str(account) for account in raw.get("accounts") or ())
    data = raw.get("data") if isinstance(raw.get("data"), str) else None
    if program_id == PUMP_FUN_PROGRAM_ID:
        create = _decode_launch_create(program_id, position, parent_index, accounts, data)
        if create is not None:
            return create
    return Unrecognized(program_id, position, parent_index, accounts, data)


def _account_keys(message: Mapping[str, Any]) -> Tuple[str, ...]:
    keys: List[str] = []
    for entry in message.get("accountKeys") or ():
        if isinstance(entry, Mapping):
            keys.append(str(entry.get("pubkey")))
        else:
            keys.append(str(entry))
    return tuple(keys)


def _token_balances(entries: Any) -> Tuple[TokenBalance, ...]:
    balances: List[TokenBalance] = []
    for entry in entries or ():
        if not isinstance(entry, Mapping):
            raise TransactionFormatError("token balance entry is not an object")
        amount = entry.get("uiTokenAmount") or {}
        raw_amount = _as_int(amount.get("amount"))
        decimals = _as_int(amount.get("decimals")) or 0
        if raw_amount is None:
            ui = amount.get("uiAmountString", amount.get("uiAmount"))
            raw_amount = int(round(float(ui or 0) * (10 ** decimals)))
        balances.append(
            TokenBalance(
                account_index=int(entry["accountIndex"]),
                mint=str(entry["mint"]),
                owner=entry.get("owner"),
                raw_amount=raw_amount,
                decimals=decimals,
            )
        )
    return tuple(balances)


def _flatten_instructions(message: Mapping[str, Any], meta: Mapping[str, Any]) -> Tuple[Instruction, ...]:
    inner_by_parent: Dict[int, List[Mapping[str, Any]]] = {}
    for group in meta.get("innerInstructions") or ():
        inner_by_parent.setdefault(int(group.get("index", 0)), []).extend(group.get("instructions") or ())
    flattened: List[Instruction] = []
    for top_index, raw in enumerate(message.get("instructions") or ()):
        flattened.append(parse_instruction(raw, len(flattened)))
        for inner in inner_by_parent.get(top_index, ()):
            flattened.append(parse_instruction(inner, len(flattened), top_index))
    return tuple(flattened)


def parse_transaction(payload: Mapping[str, Any], signature: Optional[str] = None) -> ParsedTransaction:
    """Build a :class:`ParsedTransaction` from a ``getTransaction`` result."""

    if not isinstance(payload, Mapping):
        raise TransactionFormatError("transaction payload is not an object")
    transaction = payload.get("transaction")
    meta = payload.get("meta") or {}
    if not isinstance(transaction, Mapping) or not isinstance(meta, Mapping):
        raise TransactionFormatError("transaction payload lacks transaction/meta sections")
    message = transaction.get("message")
    if not isinstance(message, Mapping):
        raise TransactionFormatError("transaction payload lacks a message")
    signatures = transaction.get("signatures") or []
    resolved_signature = signature or (signatures[0] if signatures else None)
    if not resolved_signature:
        raise TransactionFormatError("transaction payload has no signature")
    block_time = payload.get("blockTime")
    return ParsedTransaction(
        signature=str(resolved_signature),
        slot=_as_int(payload.get("slot")),
        block_time=datetime.fromtimestamp(int(block_time), timezone.utc) if block_time is not None else None,
        error=meta.get("err"),
        account_keys=_account_keys(message),
        instructions=_flatten_instructions(message, meta),
        pre_token_balances=_token_balances(meta.get("preTokenBalances")),
        post_token_balances=_token_balances(meta.get("postTokenBalances")),
        log_messages=tuple(meta.get("logMessages") or ()),
    )


__all__ = [
    "Burn",
    "InitializeMint",
    "Instruction",
    "InstructionKind",
    "LaunchCreate",
    "MintTo",
    "ParsedOther",
    "ParsedTransaction",
    "TokenBalance",
    "TokenTransfer",
    "TransactionFormatError",
    "Unrecognized",
    "parse_instruction",
    "parse_transaction",
]
