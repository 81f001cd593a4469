import asyncio

import pytest

from chaintrace.core.amounts import to_decimal
from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.transfer import Direction
from chaintrace.core.exceptions import UnsupportedChain, ValidationError
from chaintrace.infrastructure.persistence.memory_repo import InMemoryRepo

from conftest import (
    EVM_WALLET,
    OTHER_EVM,
    SOL_WALLET,
    OTHER_SOL,
    USDC_ETH,
    USDC_SOL,
    WEI,
    ScriptedProvider,
    erc20_log,
    evm_record,
    make_ingestion,
    solana_record,
    token_balance,
)


def _native_receipts(count: int):
    return [
        evm_record(f"0x{i:064x}", OTHER_EVM, EVM_WALLET, value=WEI, block=19000000 + count - i,
                   timestamp=1705000000 + count - i)
        for i in range(1, count + 1)
    ]


async def test_three_transaction_scenario(eth_provider, store):
    service = make_ingestion({Chain.ETHEREUM: eth_provider}, store)

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    assert result.success
    assert not result.cached
    assert result.error is None
    assert result.total_records == 3
    events = {(e.asset_id, e.amount, e.direction) for e in result.events}
    assert events == {("native", "1.0", Direction.RECEIVE), (USDC_ETH, "-5.0", Direction.SEND)}

    summaries = {s.asset_id: s for s in await store.get_summaries(EVM_WALLET, Chain.ETHEREUM)}
    native = summaries["native"]
    assert (native.total_received, native.total_sent, native.current_balance) == ("1.0", "0", "1.0")
    usdc = summaries[USDC_ETH]
    assert (usdc.total_received, usdc.total_sent, usdc.current_balance) == ("0", "5.0", "-5.0")
    assert usdc.asset_symbol == "USDC"


async def test_events_are_enriched_and_newest_first(eth_provider):
    service = make_ingestion({Chain.ETHEREUM: eth_provider})

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    assert [e.observed_at for e in result.events] == [1705000300000, 1705000200000]
    usdc = result.events[0]
    assert (usdc.asset_symbol, usdc.asset_name, usdc.asset_decimals) == ("USDC", "USD Coin", 6)


async def test_cache_hit_skips_provider(eth_provider):
    service = make_ingestion({Chain.ETHEREUM: eth_provider})
    first = await service.ingest(EVM_WALLET, Chain.ETHEREUM)
    calls = eth_provider.calls

    second = await service.ingest(EVM_WALLET, "ethereum")

    assert second.cached
    assert second.success
    assert eth_provider.calls == calls
    assert [e.key for e in second.events] == [e.key for e in first.events]


async def test_explicit_limit_bypasses_cache(eth_provider):
    service = make_ingestion({Chain.ETHEREUM: eth_provider})
    await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM, limit=1)

    assert not result.cached
    assert result.total_records == 1
    assert result.count == 1


async def test_force_refresh_is_idempotent(eth_provider, store):
    service = make_ingestion({Chain.ETHEREUM: eth_provider}, store)

    first = await service.ingest(EVM_WALLET, Chain.ETHEREUM, force_refresh=True)
    first_summaries = await store.get_summaries(EVM_WALLET, Chain.ETHEREUM)
    second = await service.ingest(EVM_WALLET, Chain.ETHEREUM, force_refresh=True)
    second_summaries = await store.get_summaries(EVM_WALLET, Chain.ETHEREUM)

    assert not second.cached
    assert [e.model_dump() for e in second.events] == [e.model_dump() for e in first.events]
    assert [s.model_dump() for s in second_summaries] == [s.model_dump() for s in first_summaries]
    keys = [(e.transaction_id, e.asset_id) for e in second.events]
    assert len(keys) == len(set(keys))


async def test_native_amounts_are_conserved(store):
    records = _native_receipts(3) + [
        evm_record("0x" + "f" * 64, EVM_WALLET, OTHER_EVM, value=WEI // 4, block=18000000, timestamp=1704000000),
    ]
    service = make_ingestion({Chain.ETHEREUM: ScriptedProvider(Chain.ETHEREUM, records)}, store)

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    received = sum(to_decimal(e.amount) for e in result.events if e.direction == Direction.RECEIVE)
    sent = sum(-to_decimal(e.amount) for e in result.events if e.direction == Direction.SEND)
    summary = (await store.get_summaries(EVM_WALLET, Chain.ETHEREUM))[0]
    assert received - sent == to_decimal(summary.current_balance)
    assert summary.current_balance == "2.75"
    assert summary.transaction_count == 4


async def test_limit_truncation():
    provider = ScriptedProvider(Chain.ETHEREUM, _native_receipts(40))
    service = make_ingestion({Chain.ETHEREUM: provider}, page_size=10)

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM, limit=25)

    assert provider.page_sizes == [10, 10, 5]
    assert len(provider.detail_calls) == 25
    assert result.stored == 25
    assert result.count == 25


async def test_clear_then_reingest(eth_provider, store):
    service = make_ingestion({Chain.ETHEREUM: eth_provider}, store)
    first = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    removed = await service.clear(EVM_WALLET, Chain.ETHEREUM)

    assert removed == 2
    assert await store.query_events(EVM_WALLET, Chain.ETHEREUM) == []
    assert await store.get_summaries(EVM_WALLET, Chain.ETHEREUM) == []
    again = await service.ingest(EVM_WALLET, Chain.ETHEREUM)
    assert not again.cached
    assert [e.model_dump() for e in again.events] == [e.model_dump() for e in first.events]


async def test_failed_detail_is_skipped(store):
    records = _native_receipts(3)
    failing = records[1]["tx"]["hash"]
    provider = ScriptedProvider(Chain.ETHEREUM, records, failing_details={failing})
    service = make_ingestion({Chain.ETHEREUM: provider}, store)

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    assert result.success
    assert result.skipped == 1
    assert result.count == 2
    assert "1 of 3 transactions skipped" in result.error


async def test_undecodable_record_is_skipped():
    records = _native_receipts(2)
    records[0]["tx"]["hash"] = None
    records[0]["receipt"]["transactionHash"] = None
    provider = ScriptedProvider(Chain.ETHEREUM, records, ids=["0x" + "e" * 64, records[1]["tx"]["hash"]])
    service = make_ingestion({Chain.ETHEREUM: provider})

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    assert result.success
    assert result.skipped == 1
    assert result.count == 1


async def test_provider_down_fails_the_run():
    provider = ScriptedProvider(Chain.ETHEREUM, _native_receipts(2), failing_pages={0})
    service = make_ingestion({Chain.ETHEREUM: provider})

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    assert not result.success
    assert result.count == 0
    assert "page 0 unavailable" in result.error


async def test_every_detail_failing_fails_the_run():
    records = _native_receipts(2)
    provider = ScriptedProvider(Chain.ETHEREUM, records, failing_details={r["tx"]["hash"] for r in records})
    service = make_ingestion({Chain.ETHEREUM: provider})

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    assert not result.success
    assert result.skipped == 2


async def test_later_page_failure_keeps_partial_result():
    provider = ScriptedProvider(Chain.ETHEREUM, _native_receipts(4), failing_pages={1})
    service = make_ingestion({Chain.ETHEREUM: provider}, page_size=2)

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    assert result.success
    assert result.count == 2
    assert "Pagination stopped" in result.error


async def test_no_activity_is_clean_and_empty():
    service = make_ingestion({Chain.ETHEREUM: ScriptedProvider(Chain.ETHEREUM)})

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    assert result.success
    assert result.count == 0
    assert result.error is None


async def test_cancellation_between_groups():
    cancel = asyncio.Event()

    class CancellingProvider(ScriptedProvider):
        async def get_transaction_detail(self, transaction_id):
            cancel.set()
            return await super().get_transaction_detail(transaction_id)

    provider = CancellingProvider(Chain.ETHEREUM, _native_receipts(6))
    service = make_ingestion({Chain.ETHEREUM: provider}, group_size=2)

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM, cancel_event=cancel)

    assert len(provider.detail_calls) == 2
    assert result.count == 2
    assert result.success
    assert "cancelled" in result.error


async def test_concurrent_runs_share_one_fetch(eth_provider):
    service = make_ingestion({Chain.ETHEREUM: eth_provider})

    first, second = await asyncio.gather(
        service.ingest(EVM_WALLET, Chain.ETHEREUM, force_refresh=True),
        service.ingest(EVM_WALLET, Chain.ETHEREUM, force_refresh=True),
    )

    assert len(eth_provider.page_calls) == 2
    assert len(eth_provider.detail_calls) == 3
    assert first.events == second.events
    assert service._inflight == {}


async def test_shared_run_outlives_one_caller_leaving():
    left = asyncio.Event()

    class LeavingProvider(ScriptedProvider):
        async def get_transaction_detail(self, transaction_id):
            left.set()
            return await super().get_transaction_detail(transaction_id)

    provider = LeavingProvider(Chain.ETHEREUM, _native_receipts(6))
    service = make_ingestion({Chain.ETHEREUM: provider}, group_size=2)

    first, second = await asyncio.gather(
        service.ingest(EVM_WALLET, Chain.ETHEREUM, cancel_event=left),
        service.ingest(EVM_WALLET, Chain.ETHEREUM),
    )

    assert len(provider.detail_calls) == 6
    assert second.count == 6
    assert second.error is None
    assert first.events == second.events
    assert service._waiters == {}


async def test_shared_run_stops_once_every_caller_left():
    events = [asyncio.Event(), asyncio.Event()]

    class LeavingProvider(ScriptedProvider):
        async def get_transaction_detail(self, transaction_id):
            for event in events:
                event.set()
            return await super().get_transaction_detail(transaction_id)

    provider = LeavingProvider(Chain.ETHEREUM, _native_receipts(6))
    service = make_ingestion({Chain.ETHEREUM: provider}, group_size=2)

    first, second = await asyncio.gather(
        *(service.ingest(EVM_WALLET, Chain.ETHEREUM, cancel_event=event) for event in events)
    )

    assert len(provider.detail_calls) == 2
    assert "cancelled" in first.error
    assert first.events == second.events


async def test_unknown_token_gets_placeholder():
    contract = "0x9999999999999999999999999999999999999999"
    record = evm_record("0x" + "d" * 64, OTHER_EVM, contract, logs=[erc20_log(contract, OTHER_EVM, EVM_WALLET, 3 * WEI)])
    service = make_ingestion({Chain.ETHEREUM: ScriptedProvider(Chain.ETHEREUM, [record])})

    result = await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    event = result.events[0]
    assert event.asset_symbol == "TOKEN-0x999999"
    assert event.asset_name == "Token (0x999999)"
    assert event.amount == "3.0"


async def test_wallet_address_is_normalized(eth_provider, store):
    service = make_ingestion({Chain.ETHEREUM: eth_provider}, store)

    result = await service.ingest("0x31CA8395CF837DE08B24DA3F660E77761DFB974B", Chain.ETHEREUM)

    assert result.wallet == EVM_WALLET
    assert await store.has_events(EVM_WALLET, Chain.ETHEREUM)


async def test_solana_ingestion(store):
    signature = "4" * 88
    record = solana_record(
        signature, [SOL_WALLET, "3emsAVdmGKERbHjmGfQ6oZ1e35dkf5iYcS6U4CPKFVaa", OTHER_SOL],
        [10 ** 9, 0, 0], [10 ** 9 - 5000, 0, 0],
        pre_token=[token_balance(1, USDC_SOL, SOL_WALLET, 0, 6)],
        post_token=[token_balance(1, USDC_SOL, SOL_WALLET, 12000000, 6)],
    )
    service = make_ingestion({Chain.SOLANA: ScriptedProvider(Chain.SOLANA, [record])}, store)

    result = await service.ingest(SOL_WALLET, "solana-mainnet")

    events = {e.asset_id: e for e in result.events}
    assert events["native"].amount == "-0.000005"
    assert events[USDC_SOL].amount == "12.0"
    assert events[USDC_SOL].asset_symbol == "USDC"


async def test_token_queries(eth_provider):
    service = make_ingestion({Chain.ETHEREUM: eth_provider})
    await service.ingest(EVM_WALLET, Chain.ETHEREUM)

    by_token = await service.get_token_events(EVM_WALLET, Chain.ETHEREUM, USDC_ETH.upper().replace("0X", "0x"))
    found = await service.search(EVM_WALLET, Chain.ETHEREUM, "usd coin")
    native = await service.get_token_events(EVM_WALLET, Chain.ETHEREUM, "native")

    assert [e.asset_id for e in by_token] == [USDC_ETH]
    assert [e.asset_id for e in found] == [USDC_ETH]
    assert [e.amount for e in native] == ["1.0"]


async def test_validation_happens_before_any_work(eth_provider):
    service = make_ingestion({Chain.ETHEREUM: eth_provider})

    with pytest.raises(ValidationError):
        await service.ingest("  ", Chain.ETHEREUM)
    with pytest.raises(UnsupportedChain):
        await service.ingest(EVM_WALLET, "polygon")
    with pytest.raises(ValidationError):
        await service.ingest(EVM_WALLET, Chain.ETHEREUM, limit=0)
    with pytest.raises(UnsupportedChain):
        await service.ingest(SOL_WALLET, Chain.SOLANA)
    assert eth_provider.calls == 0


async def test_clear_every_chain_drops_snapshot():
    store = InMemoryRepo()
    provider = ScriptedProvider(Chain.ETHEREUM, _native_receipts(1))
    service = make_ingestion({Chain.ETHEREUM: provider}, store)
    await service.ingest(EVM_WALLET, Chain.ETHEREUM)
    store._snapshots[EVM_WALLET] = {"schema_version": 1}

    removed = await service.clear(EVM_WALLET.upper().replace("0X", "0x"))

    assert removed == 1
    assert await store.load_snapshot(EVM_WALLET) is None
