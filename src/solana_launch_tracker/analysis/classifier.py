"""Balance-diff based classification of token transactions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from ..datalake.schemas import ClassifiedEvent, TradeEventType
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from .programs import ProgramRegistry, ProgramRole
from .transactions import InstructionKind, ParsedTransaction, parse_transaction


class ClassificationAmbiguous(ValueError):
    """No classification rule matched the transaction."""


@dataclass(frozen=True, slots=True)
class BalanceDelta:
    """Net change of one owner's holdings of the token under analysis."""

    owner: str
    delta: float
    account_index: int


def compute_balance_deltas(transaction: ParsedTransaction, mint: str) -> List[BalanceDelta]:
    """Per-owner signed deltas for ``mint``, ordered by first account index.

    Owners whose holdings did not change are dropped. Deltas are summed in raw
    integer units before conversion so rounding never creates a phantom change.
    """

    pre, post = transaction.balances_for(mint)
    raw: Dict[str, int] = {}
    first_index: Dict[str, int] = {}
    decimals = 0
    for sign, balances in ((-1, pre), (1, post)):
        for balance in balances:
            owner = balance.owner
            if not owner and balance.account_index < len(transaction.account_keys):
                owner = transaction.account_keys[balance.account_index]
            owner = owner or f"account:{balance.account_index}"
            raw[owner] = raw.get(owner, 0) + sign * balance.raw_amount
            first_index[owner] = min(first_index.get(owner, balance.account_index), balance.account_index)
            decimals = balance.decimals or decimals
    scale = 10 ** decimals
    deltas = [
        BalanceDelta(owner, amount / scale, first_index[owner])
        for owner, amount in raw.items()
        if amount != 0
    ]
    deltas.sort(key=lambda item: item.account_index)
    return deltas


def _dominant(deltas: List[BalanceDelta]) -> Optional[BalanceDelta]:
    # Largest magnitude wins; ties go to the earliest account.
    best: Optional[BalanceDelta] = None
    for item in deltas:
        if best is None or abs(item.delta) > abs(best.delta):
            best = item
    return best


class TransactionClassifier:
    """Turns a parsed transaction into a :class:`ClassifiedEvent` for one token.

    Rules, first match wins:

    1. a liquidity pool program is present: net outflow is ``liquidity_add``,
       net inflow ``liquidity_remove``;
    2. a DEX or aggregator program is present: net inflow is ``buy``, net
       outflow ``sell``;
    3. exactly one owner gained and another lost the token: ``transfer``;
    4. a token transfer, mint or burn instruction for the token exists but the
       balances are inconclusive: read wallets and amount from the instruction;
    5. otherwise ``unknown``.

    When the net change across all owners is zero (a swap where the pool vault
    is also listed) the fee payer's own change is used as the direction. The
    classifier never raises on malformed input.
    """

    def __init__(
        self,
        registry: Optional[ProgramRegistry] = None,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._registry = registry or ProgramRegistry()
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)

    def classify(
        self,
        transaction: Union[ParsedTransaction, Mapping[str, Any]],
        token_address: str,
        *,
        signature: Optional[str] = None,
    ) -> ClassifiedEvent:
        fallback_signature = signature or _payload_signature(transaction) or "unknown"
        try:
            parsed = (
                transaction
                if isinstance(transaction, ParsedTransaction)
                else parse_transaction(transaction, signature)
            )
            event = self._classify(parsed, token_address)
        except ClassificationAmbiguous as exc:
            event = self._unknown(transaction, fallback_signature, token_address, str(exc))
        except Exception as exc:  # noqa: BLE001 - malformed input becomes an unknown event
            self._logger.debug("Classification of %s failed: %s", fallback_signature, exc)
            event = self._unknown(transaction, fallback_signature, token_address, f"{type(exc).__name__}: {exc}")
        self._metrics.increment("classifier.events", labels={"type": event.event_type.value})
        return event

    def _classify(self, tx: ParsedTransaction, mint: str) -> ClassifiedEvent:
        if tx.failed:
            raise ClassificationAmbiguous(f"transaction failed on chain: {tx.error}")
        program_ids = tx.program_ids
        deltas = compute_balance_deltas(tx, mint)
        increasers = [item for item in deltas if item.delta > 0]
        decreasers = [item for item in deltas if item.delta < 0]
        net = round(sum(item.delta for item in deltas), 12)
        effective = net
        if effective == 0 and tx.fee_payer:
            effective = next((item.delta for item in deltas if item.owner == tx.fee_payer), 0.0)

        has_pool = self._registry.has_role(program_ids, ProgramRole.LIQUIDITY_POOL)
        has_dex = self._registry.has_role(program_ids, ProgramRole.DEX)
        dominant = _dominant(deltas)
        amount = abs(dominant.delta) if dominant else 0.0
        from_wallet = _dominant(decreasers).owner if decreasers else None
        to_wallet = _dominant(increasers).owner if increasers else None

        if has_pool and effective != 0:
            event_type = TradeEventType.LIQUIDITY_ADD if effective < 0 else TradeEventType.LIQUIDITY_REMOVE
            return self._event(tx, mint, event_type, amount, from_wallet, to_wallet, net, deltas, liquidity_change=effective)
        if has_dex and effective != 0:
            event_type = TradeEventType.BUY if effective > 0 else TradeEventType.SELL
            return self._event(tx, mint, event_type, amount, from_wallet, to_wallet, net, deltas)
        if (
            not has_pool
            and not has_dex
            and len(increasers) == 1
            and len(decreasers) == 1
            and increasers[0].owner != decreasers[0].owner
        ):
            return self._event(tx, mint, TradeEventType.TRANSFER, amount, from_wallet, to_wallet, net, deltas)
        instruction_event = self._from_instructions(tx, mint, net, deltas)
        if instruction_event is not None:
            return instruction_event
        raise ClassificationAmbiguous(
            f"no rule matched ({len(deltas)} balance deltas, dex={has_dex}, pool={has_pool})"
        )

    def _from_instructions(
        self, tx: ParsedTransaction, mint: str, net: float, deltas: List[BalanceDelta]
    ) -> Optional[ClassifiedEvent]:
        decimals = _mint_decimals(tx, mint)
        for ix in tx.instructions:
            if ix.kind == InstructionKind.TRANSFER:
                ix_mint = ix.mint or tx.account_mint(ix.source) or tx.account_mint(ix.destination)
                if ix_mint != mint:
                    continue
                return self._event(
                    tx,
                    mint,
                    TradeEventType.TRANSFER,
                    _instruction_amount(ix.ui_amount, ix.raw_amount, ix.decimals if ix.decimals is not None else decimals),
                    ix.authority or tx.account_owner(ix.source),
                    tx.account_owner(ix.destination),
                    net,
                    deltas,
                )
            if ix.kind == InstructionKind.MINT_TO:
                if ix.mint != mint:
                    continue
                return self._event(
                    tx,
                    mint,
                    TradeEventType.MINT,
                    _instruction_amount(ix.ui_amount, ix.raw_amount, decimals),
                    None,
                    tx.account_owner(ix.account),
                    net,
                    deltas,
                )
            if ix.kind == InstructionKind.BURN:
                if ix.mint != mint:
                    continue
                return self._event(
                    tx,
                    mint,
                    TradeEventType.BURN,
                    _instruction_amount(ix.ui_amount, ix.raw_amount, decimals),
                    ix.authority or tx.account_owner(ix.account),
                    None,
                    net,
                    deltas,
                )
        return None

    def _event(
        self,
        tx: ParsedTransaction,
        mint: str,
        event_type: TradeEventType,
        amount: float,
        from_wallet: Optional[str],
        to_wallet: Optional[str],
        net: float,
        deltas: List[BalanceDelta],
        *,
        liquidity_change: float = 0.0,
    ) -> ClassifiedEvent:
        wallets = {item.owner for item in deltas}
        wallets.update(wallet for wallet in (from_wallet, to_wallet) if wallet)
        return ClassifiedEvent(
            signature=tx.signature,
            token_address=mint,
            event_type=event_type,
            amount=amount,
            from_wallet=from_wallet,
            to_wallet=to_wallet,
            liquidity_change=liquidity_change,
            net_delta=net,
            involved_wallets=frozenset(wallets),
            block_time=tx.block_time,
            slot=tx.slot,
            program_ids=tx.program_ids,
        )

    def _unknown(
        self,
        transaction: Union[ParsedTransaction, Mapping[str, Any]],
        signature: str,
        mint: str,
        note: str,
    ) -> ClassifiedEvent:
        block_time = transaction.block_time if isinstance(transaction, ParsedTransaction) else None
        slot = transaction.slot if isinstance(transaction, ParsedTransaction) else None
        return ClassifiedEvent(
            signature=signature,
            token_address=mint,
            event_type=TradeEventType.UNKNOWN,
            block_time=block_time,
            slot=slot,
            note=note,
        )


def _payload_signature(transaction: Any) -> Optional[str]:
    if isinstance(transaction, ParsedTransaction):
        return transaction.signature
    if isinstance(transaction, Mapping):
        inner = transaction.get("transaction")
        if isinstance(inner, Mapping):
            signatures = inner.get("signatures")
            if isinstance(signatures, list) and signatures and isinstance(signatures[0], str):
                return signatures[0]
    return None


def _mint_decimals(tx: ParsedTransaction, mint: str) -> int:
    for balance in (*tx.post_token_balances, *tx.pre_token_balances):
        if balance.mint == mint:
            return balance.decimals
    return 0


def _instruction_amount(ui_amount: Optional[float], raw_amount: Optional[int], decimals: int) -> float:
    if ui_amount is not None:
        return abs(ui_amount)
    if raw_amount is None:
        return 0.0
    return abs(raw_amount) / (10 ** decimals)


__all__ = [
    "BalanceDelta",
    "ClassificationAmbiguous",
    "TransactionClassifier",
    "compute_balance_deltas",
]
