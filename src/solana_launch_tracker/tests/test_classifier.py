from __future__ import annotations

from solana_launch_tracker.analysis.classifier import TransactionClassifier, compute_balance_deltas
from solana_launch_tracker.analysis.programs import ProgramRegistry, ProgramRole
from solana_launch_tracker.analysis.transactions import parse_transaction
from solana_launch_tracker.datalake.schemas import TradeEventType
from solana_launch_tracker.monitoring.metrics import MetricsRegistry

from factories import (
    METEORA_DLMM,
    RAYDIUM_AMM,
    address,
    balance,
    program_call,
    signature,
    token_instruction,
    transaction,
)


def _classifier() -> TransactionClassifier:
    return TransactionClassifier(ProgramRegistry(), metrics=MetricsRegistry())


def test_raydium_sell_from_single_owner() -> None:
    mint, owner = address(), address()
    payload = transaction(
        account_keys=[owner, address()],
        instructions=[program_call(RAYDIUM_AMM)],
        pre=[balance(1, mint, owner, 1_500)],
        post=[balance(1, mint, owner, 1_000)],
    )

    event = _classifier().classify(payload, mint)

    assert event.event_type == TradeEventType.SELL
    assert event.amount == 500
    assert event.from_wallet == owner
    assert event.to_wallet is None


def test_dex_buy_with_pool_vault_uses_fee_payer_direction() -> None:
    mint, trader, vault = address(), address(), address()
    payload = transaction(
        account_keys=[trader, address(), address()],
        instructions=[program_call(RAYDIUM_AMM)],
        pre=[balance(1, mint, trader, 0, 6), balance(2, mint, vault, 5_000_000_000, 6)],
        post=[balance(1, mint, trader, 250_000_000, 6), balance(2, mint, vault, 4_750_000_000, 6)],
    )

    event = _classifier().classify(payload, mint)

    assert event.event_type == TradeEventType.BUY
    assert event.amount == 250.0
    assert event.to_wallet == trader
    assert event.from_wallet == vault
    assert event.net_delta == 0


def test_wallet_to_wallet_transfer() -> None:
    mint, sender, receiver = address(), address(), address()
    payload = transaction(
        account_keys=[sender, address(), address()],
        instructions=[token_instruction("transfer", source="a", destination="b", authority=sender, amount="40")],
        pre=[balance(1, mint, sender, 100), balance(2, mint, receiver, 0)],
        post=[balance(1, mint, sender, 60), balance(2, mint, receiver, 40)],
    )

    event = _classifier().classify(payload, mint)

    assert event.event_type == TradeEventType.TRANSFER
    assert event.amount == 40
    assert (event.from_wallet, event.to_wallet) == (sender, receiver)
    assert event.involved_wallets == frozenset({sender, receiver})


def test_liquidity_pool_deposit_and_withdrawal() -> None:
    mint, provider = address(), address()
    deposit = transaction(
        account_keys=[provider, address()],
        instructions=[program_call(METEORA_DLMM)],
        pre=[balance(1, mint, provider, 900)],
        post=[balance(1, mint, provider, 400)],
    )
    withdrawal = transaction(
        account_keys=[provider, address()],
        instructions=[program_call(METEORA_DLMM)],
        pre=[balance(1, mint, provider, 400)],
        post=[balance(1, mint, provider, 700)],
    )

    added = _classifier().classify(deposit, mint)
    removed = _classifier().classify(withdrawal, mint)

    assert added.event_type == TradeEventType.LIQUIDITY_ADD
    assert added.liquidity_change == -500
    assert removed.event_type == TradeEventType.LIQUIDITY_REMOVE
    assert removed.liquidity_change == 300


def test_runtime_registered_program_is_recognised() -> None:
    venue, mint, owner = address(), address(), address()
    registry = ProgramRegistry()
    registry.register(venue, ProgramRole.DEX, label="new-venue")
    payload = transaction(
        account_keys=[owner, address()],
        instructions=[program_call(venue)],
        pre=[balance(1, mint, owner, 0)],
        post=[balance(1, mint, owner, 10)],
    )

    event = TransactionClassifier(registry, metrics=MetricsRegistry()).classify(payload, mint)

    assert event.event_type == TradeEventType.BUY


def test_mint_instruction_used_when_balances_are_inconclusive() -> None:
    mint, holder = address(), address()
    payload = transaction(
        account_keys=[holder, address()],
        instructions=[token_instruction("mintTo", mint=mint, account=address(), amount="1000")],
    )

    event = _classifier().classify(payload, mint)

    assert event.event_type == TradeEventType.MINT
    assert event.amount == 1000


def test_failed_and_malformed_transactions_are_unknown() -> None:
    mint = address()
    metrics = MetricsRegistry()
    classifier = TransactionClassifier(ProgramRegistry(), metrics=metrics)
    failed = transaction(
        account_keys=[address()],
        instructions=[program_call(RAYDIUM_AMM)],
        err={"InstructionError": [0, "Custom"]},
    )
    sig = signature()

    failed_event = classifier.classify(failed, mint)
    malformed_event = classifier.classify({"transaction": "garbage"}, mint, signature=sig)
    empty_event = classifier.classify(transaction(account_keys=[address()]), mint)

    assert failed_event.event_type == TradeEventType.UNKNOWN
    assert "failed" in failed_event.note
    assert malformed_event.event_type == TradeEventType.UNKNOWN
    assert malformed_event.signature == sig
    assert empty_event.event_type == TradeEventType.UNKNOWN
    assert metrics.get("classifier.events", labels={"type": "unknown"}) == 3


def test_classification_is_deterministic() -> None:
    mint, a, b, c = address(), address(), address(), address()
    payload = transaction(
        account_keys=[a, address(), address(), address()],
        instructions=[program_call(RAYDIUM_AMM)],
        pre=[balance(1, mint, a, 100), balance(2, mint, b, 100), balance(3, mint, c, 0)],
        post=[balance(1, mint, a, 0), balance(2, mint, b, 0), balance(3, mint, c, 150)],
    )
    parsed = parse_transaction(payload)
    classifier = _classifier()

    results = {classifier.classify(parsed, mint).event_type for _ in range(5)}
    events = [classifier.classify(parsed, mint) for _ in range(2)]

    assert results == {TradeEventType.SELL}
    assert events[0] == events[1]
    assert events[0].from_wallet == a


def test_balance_deltas_merge_accounts_of_the_same_owner() -> None:
    mint, owner = address(), address()
    payload = transaction(
        account_keys=[owner, address(), address()],
        pre=[balance(1, mint, owner, 10), balance(2, mint, owner, 5)],
        post=[balance(1, mint, owner, 3), balance(2, mint, owner, 20)],
    )

    deltas = compute_balance_deltas(parse_transaction(payload), mint)

    assert len(deltas) == 1
    assert deltas[0].owner == owner
    assert deltas[0].delta == 8
