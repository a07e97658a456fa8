from __future__ import annotations

import asyncio

import pytest

from solana_launch_tracker.config.settings import RPCConfig
from solana_launch_tracker.ingestion.rpc_gateway import (
    ConnectionUnavailable,
    RetryExhausted,
    RpcGateway,
    RpcMethodDisabled,
    RpcResponseError,
    _is_disabled,
)
from solana_launch_tracker.monitoring.metrics import MetricsRegistry

from factories import SPL_TOKEN, SPL_TOKEN_2022, FakeRpcNetwork, SleepRecorder, address, rpc_ok, sequence

PRIMARY = "https://primary.example.com/"
FALLBACK = "https://fallback.example.com/"
MINT = "So11111111111111111111111111111111111111112"


def _config(**overrides) -> RPCConfig:
    values = {
        "primary_url": PRIMARY,
        "fallback_urls": [FALLBACK],
        "max_retries": 3,
        "retry_base_delay_seconds": 0.5,
        "probe_attempts": 2,
        "public_endpoint_hosts": ["fallback.example.com"],
    }
    values.update(overrides)
    return RPCConfig(**values)


def _gateway(network: FakeRpcNetwork, sleep: SleepRecorder, **overrides) -> RpcGateway:
    return RpcGateway(_config(**overrides), client_factory=network, sleep=sleep, metrics=MetricsRegistry())


def test_initialize_uses_first_responsive_endpoint() -> None:
    network = FakeRpcNetwork({PRIMARY: {"get_version": ConnectionError("refused")}})
    sleep = SleepRecorder()
    gateway = _gateway(network, sleep)

    status = asyncio.run(gateway.initialize())

    assert status.endpoint == FALLBACK
    assert status.connected is True
    assert status.is_public is True
    assert status.fallbacks == (PRIMARY,)
    # Primary tried twice with one base delay in between.
    assert network.clients[PRIMARY].calls == ["get_version", "get_version"]
    assert sleep.delays == [0.5]


def test_initialize_raises_when_every_endpoint_fails() -> None:
    network = FakeRpcNetwork(
        {
            PRIMARY: {"get_version": ConnectionError("refused")},
            FALLBACK: {"get_version": TimeoutError("timed out")},
        }
    )
    gateway = _gateway(network, SleepRecorder())

    with pytest.raises(ConnectionUnavailable) as excinfo:
        asyncio.run(gateway.initialize())

    assert set(excinfo.value.errors) == {PRIMARY, FALLBACK}
    assert gateway.get_status().connected is False


def test_transient_errors_are_retried_with_exponential_backoff() -> None:
    network = FakeRpcNetwork(
        {PRIMARY: {"get_slot": sequence(ConnectionError("reset"), ConnectionError("reset"), 1234)}}
    )
    sleep = SleepRecorder()
    gateway = _gateway(network, sleep)

    slot = asyncio.run(gateway.get_slot())

    assert slot == 1234
    assert sleep.delays == [0.5, 1.0]
    assert gateway.get_status().retry_count == 0


def test_retry_exhausted_on_live_endpoint_is_raised() -> None:
    network = FakeRpcNetwork({PRIMARY: {"get_slot": ConnectionError("reset")}})
    sleep = SleepRecorder()
    gateway = _gateway(network, sleep)

    with pytest.raises(RetryExhausted) as excinfo:
        asyncio.run(gateway.get_slot())

    assert excinfo.value.operation == "get_slot"
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, ConnectionError)
    assert gateway.get_status().endpoint == PRIMARY
    assert network.clients[PRIMARY].calls.count("get_slot") == 3


def test_dead_endpoint_fails_over_and_retries_once() -> None:
    primary_version = sequence({"solana-core": "1.18"}, ConnectionError("gone"))
    network = FakeRpcNetwork(
        {
            PRIMARY: {"get_version": primary_version, "get_slot": ConnectionError("reset")},
            FALLBACK: {"get_slot": 777},
        }
    )
    gateway = _gateway(network, SleepRecorder())

    async def scenario() -> int:
        await gateway.initialize()
        return await gateway.get_slot()

    assert asyncio.run(scenario()) == 777
    status = gateway.get_status()
    assert status.endpoint == FALLBACK
    assert status.failovers == 1


def test_disabled_method_is_not_retried() -> None:
    network = FakeRpcNetwork(
        {PRIMARY: {"get_program_accounts": RuntimeError("410 Gone: method disabled")}}
    )
    sleep = SleepRecorder()
    gateway = _gateway(network, sleep)

    async def scenario():
        first = await gateway.supports_bulk_scan()
        second = await gateway.supports_bulk_scan()
        holders = await gateway.count_token_holders("So11111111111111111111111111111111111111112")
        return first, second, holders

    first, second, holders = asyncio.run(scenario())

    assert first is False and second is False
    assert holders is None
    assert network.clients[PRIMARY].calls.count("get_program_accounts") == 1
    assert sleep.delays == []


def test_bulk_scan_check_assumes_support_on_other_errors() -> None:
    network = FakeRpcNetwork({PRIMARY: {"get_program_accounts": TimeoutError("slow")}})
    gateway = _gateway(network, SleepRecorder())

    assert asyncio.run(gateway.supports_bulk_scan()) is True
    assert gateway.get_status().supports_bulk_scan is True


def test_json_rpc_error_payload_is_raised_as_disabled() -> None:
    network = FakeRpcNetwork()
    gateway = _gateway(network, SleepRecorder())

    async def erroring(_client):
        return {"jsonrpc": "2.0", "error": {"code": -32601, "message": "Method not found"}}

    with pytest.raises(RpcMethodDisabled):
        asyncio.run(gateway.with_retry("custom", erroring))


def _holder_accounts():
    return [
        {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": "10"}}}}}},
        {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": "0"}}}}}},
        {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": "3"}}}}}},
    ]


def _mint_account(owner: str):
    return {"context": {"slot": 1}, "value": {"owner": owner, "lamports": 1_461_600, "data": ["", "base64"]}}


def test_count_token_holders_counts_non_zero_accounts() -> None:
    scans = []

    def program_accounts(program, **kwargs):
        scans.append((str(program), kwargs.get("filters")))
        return _holder_accounts()

    network = FakeRpcNetwork(
        {PRIMARY: {"get_program_accounts": program_accounts, "get_account_info": _mint_account(SPL_TOKEN)}}
    )
    gateway = _gateway(network, SleepRecorder())

    assert asyncio.run(gateway.count_token_holders(MINT)) == 2
    program, filters = scans[-1]
    assert program == SPL_TOKEN
    assert filters[0] == 165


def test_token_2022_mints_are_scanned_without_the_size_filter() -> None:
    scans = []

    def program_accounts(program, **kwargs):
        scans.append((str(program), kwargs.get("filters")))
        return _holder_accounts()

    network = FakeRpcNetwork(
        {PRIMARY: {"get_program_accounts": program_accounts, "get_account_info": _mint_account(SPL_TOKEN_2022)}}
    )
    gateway = _gateway(network, SleepRecorder())

    async def scenario():
        return await gateway.count_token_holders(MINT), await gateway.count_token_holders(MINT)

    first, second = asyncio.run(scenario())

    assert first == second == 2
    program, filters = scans[-1]
    assert program == SPL_TOKEN_2022
    assert 165 not in filters
    assert len(filters) == 1
    # The owning program is looked up once per mint.
    assert network.clients[PRIMARY].calls.count("get_account_info") == 1


def test_mints_of_unknown_programs_are_not_counted() -> None:
    network = FakeRpcNetwork(
        {PRIMARY: {"get_program_accounts": _holder_accounts(), "get_account_info": _mint_account(address())}}
    )
    gateway = _gateway(network, SleepRecorder())

    assert asyncio.run(gateway.count_token_holders(MINT)) is None
    # Only the capability check touched the scan endpoint.
    assert network.clients[PRIMARY].calls.count("get_program_accounts") == 1


def test_error_text_containing_slot_digits_is_retried() -> None:
    skipped = ConnectionError("Slot 284101234 was skipped, or missing due to ledger jump to recent snapshot")
    network = FakeRpcNetwork({PRIMARY: {"get_slot": sequence(skipped, 1234)}})
    sleep = SleepRecorder()
    gateway = _gateway(network, sleep)

    assert asyncio.run(gateway.get_slot()) == 1234
    assert network.clients[PRIMARY].calls.count("get_slot") == 2
    assert sleep.delays == [0.5]


@pytest.mark.parametrize(
    "error, disabled",
    [
        (RpcResponseError("Method not found", -32601), True),
        (RuntimeError("getProgramAccounts is disabled for this endpoint"), True),
        (RuntimeError("410 Gone"), True),
        (RuntimeError("the method getProgramAccounts is not supported"), True),
        (RpcResponseError("Slot 284101234 was skipped, or missing due to ledger jump", -32007), False),
        (RpcResponseError("Block not available for slot 41000", -32004), False),
        (ConnectionError("account 4103 disabled flag unset"), False),
        (TimeoutError("timed out after 4.10s"), False),
    ],
)
def test_only_explicit_refusals_count_as_disabled(error, disabled) -> None:
    assert _is_disabled(error) is disabled


def test_http_410_status_counts_as_disabled() -> None:
    class Gone(Exception):
        response = type("Response", (), {"status_code": 410})()

    class Busy(Exception):
        response = type("Response", (), {"status_code": 429})()

    assert _is_disabled(Gone("request failed")) is True
    assert _is_disabled(Busy("request failed")) is False


def test_retry_count_reflects_every_call_in_flight() -> None:
    network = FakeRpcNetwork()
    gateway = _gateway(network, SleepRecorder())
    seen = {}

    async def scenario():
        await gateway.initialize()
        resumed, finished = asyncio.Event(), asyncio.Event()
        attempts = []

        async def slow(_client):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("reset")
            seen["slow"] = gateway.get_status().retry_count
            resumed.set()
            await finished.wait()
            return rpc_ok("slow")

        async def fast(_client):
            await resumed.wait()
            seen["fast"] = gateway.get_status().retry_count
            finished.set()
            return rpc_ok("fast")

        return await asyncio.gather(gateway.with_retry("slow", slow), gateway.with_retry("fast", fast))

    results = asyncio.run(scenario())

    assert results == ["slow", "fast"]
    # A first-attempt call starting later does not hide the retry still in flight.
    assert seen == {"slow": 1, "fast": 1}
    assert gateway.get_status().retry_count == 0
