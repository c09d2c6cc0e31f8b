"""
区块扫描器测试：处理顺序、序号分配、回执延后与截止时间
"""

import asyncio
from decimal import Decimal

import pytest

from contract_metrics_monitor.core.block_scanner import BlockScanner, SubscriptionHandle
from contract_metrics_monitor.managers.confirmation_estimator import ConfirmationEstimator
from contract_metrics_monitor.managers.pending_tracker import PendingTracker
from contract_metrics_monitor.managers.sequence_ledger import SequenceLedger
from contract_metrics_monitor.processors.transaction_processor import TransactionProcessor
from contract_metrics_monitor.services.record_emitter import RecordEmitter
from contract_metrics_monitor.services.sinks.base import RecordSink

from conftest import (
    BLOCK_TIMESTAMP,
    OTHER_ADDRESS,
    make_block,
    make_price_log,
    make_receipt,
    make_round_log,
    make_tx,
    tx_hash,
)


class LedgerCheckingSink(RecordSink):
    """推送时记录账本状态，用于比对记录中的累计计数"""

    name = "ledger_check"

    def __init__(self, ledger: SequenceLedger):
        self.ledger = ledger
        self.records = []
        self.snapshots = []

    async def push(self, record) -> None:
        self.records.append(record)
        self.snapshots.append(self.ledger.snapshot())


def build_scanner(config, fake_rpc, descriptor, clock, stop_time_ms=None, on_deadline=None):
    ledger = SequenceLedger()
    tracker = PendingTracker(clock=clock)
    sink = LedgerCheckingSink(ledger)
    scanner = BlockScanner(
        config=config,
        rpc_manager=fake_rpc,
        processor=TransactionProcessor([descriptor]),
        ledger=ledger,
        pending_tracker=tracker,
        estimator=ConfirmationEstimator(tracker, clock=clock),
        emitter=RecordEmitter([sink], push_timeout=1),
        conversion_rate=Decimal("3000"),
        stop_time_ms=stop_time_ms if stop_time_ms is not None else clock() + 3_600_000,
        clock=clock,
        on_deadline=on_deadline,
    )
    scanner.next_block = 100
    scanner.latest_notified = 99
    return scanner, sink


class TestBlockOrdering:

    @pytest.mark.asyncio
    async def test_out_of_order_notifications(self, config, fake_rpc, descriptor, clock):
        for n in (100, 101, 102):
            fake_rpc.add_block(make_block(n, [make_tx(tx_hash(n))]))
            fake_rpc.receipts[tx_hash(n)] = make_receipt(n)
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        for n in (102, 100, 101, 102, 100):
            scanner.notify(n)
        await scanner.wait_idle()

        assert fake_rpc.block_calls == [100, 101, 102]
        assert [r.block_number for r in sink.records] == [100, 101, 102]
        assert [r.sequence_number for r in sink.records] == [1, 2, 3]
        assert scanner.next_block == 103
        assert scanner.stats.blocks_processed == 3

    @pytest.mark.asyncio
    async def test_missing_block_retried_on_next_notification(self, config, fake_rpc, descriptor, clock):
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(100)
        assert scanner.next_block == 100

        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1))]))
        fake_rpc.receipts[tx_hash(1)] = make_receipt(100)
        await scanner.on_block(100)

        assert scanner.next_block == 101
        assert len(sink.records) == 1

    @pytest.mark.asyncio
    async def test_unwatched_transactions_ignored(self, config, fake_rpc, descriptor, clock):
        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1), to=OTHER_ADDRESS)]))
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(100)

        assert sink.records == []
        assert scanner.ledger.transaction_count == 0


class TestSequencing:

    @pytest.mark.asyncio
    async def test_block_order_decides_sequence(self, config, fake_rpc, descriptor, clock):
        # A 在区块中排在前面，但回执返回得更慢
        a, b = tx_hash(0xBB), tx_hash(0xAA)
        fake_rpc.add_block(make_block(100, [make_tx(a), make_tx(b)]))
        fake_rpc.receipts[a] = make_receipt(100)
        fake_rpc.receipts[b] = make_receipt(100)
        fake_rpc.receipt_delays[a] = 0.05
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(100)

        assert [(r.transaction_hash, r.sequence_number) for r in sink.records] == [(a, 1), (b, 2)]

    @pytest.mark.asyncio
    async def test_receipt_unavailable_then_admitted_once(self, config, fake_rpc, descriptor, clock):
        d = tx_hash(0xD)
        fake_rpc.add_block(make_block(100, [make_tx(d)]))
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(100)
        assert not scanner.ledger.has_transaction(d)
        assert [c.hash for c in scanner.deferred] == [d]
        assert sink.records == []

        fake_rpc.receipts[d] = make_receipt(100)
        fake_rpc.add_block(make_block(101, []))
        await scanner.on_block(101)

        assert [r.sequence_number for r in sink.records] == [1]
        assert sink.records[0].block_number == 100
        assert scanner.deferred == []
        assert scanner.ledger.transaction_count == 1

    @pytest.mark.asyncio
    async def test_deferred_transaction_dropped_after_limit(self, config, fake_rpc, descriptor, clock):
        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1))]))
        for n in range(101, 101 + config.max_deferred_blocks):
            fake_rpc.add_block(make_block(n, []))
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(fake_rpc.head)

        assert scanner.deferred == []
        assert scanner.stats.transactions_dropped == 1
        assert sink.records == []

    @pytest.mark.asyncio
    async def test_zero_limit_retries_until_receipt(self, config, fake_rpc, descriptor, clock):
        config.max_deferred_blocks = 0
        d = tx_hash(0xD)
        fake_rpc.add_block(make_block(100, [make_tx(d)]))
        for n in range(101, 111):
            fake_rpc.add_block(make_block(n, []))
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(110)
        assert [c.hash for c in scanner.deferred] == [d]
        assert scanner.stats.transactions_dropped == 0

        fake_rpc.receipts[d] = make_receipt(100)
        fake_rpc.add_block(make_block(111, []))
        await scanner.on_block(111)

        assert [(r.transaction_hash, r.sequence_number) for r in sink.records] == [(d, 1)]
        assert scanner.deferred == []


class TestFinalizeErrors:

    @pytest.mark.asyncio
    async def test_failing_transaction_does_not_strand_block_mates(self, config, fake_rpc, descriptor, clock):
        hashes = [tx_hash(i) for i in (1, 2, 3)]
        fake_rpc.add_block(make_block(100, [make_tx(h) for h in hashes]))
        fake_rpc.add_block(make_block(101, []))
        for h in hashes:
            fake_rpc.receipts[h] = make_receipt(100)
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        estimate = scanner.estimator.estimate
        calls = []

        def failing_once(tx_hash_, block_timestamp_ms):
            calls.append(tx_hash_)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return estimate(tx_hash_, block_timestamp_ms)

        scanner.estimator.estimate = failing_once

        await scanner.on_block(100)
        await scanner.on_block(101)

        assert [(r.transaction_hash, r.sequence_number) for r in sink.records] == [
            (hashes[1], 2),
            (hashes[2], 3),
        ]
        assert scanner.stats.finalize_errors == 1
        assert scanner.ledger.transaction_count == 3
        assert scanner.next_block == 102

    @pytest.mark.asyncio
    async def test_cumulative_counts_match_ledger_at_push(self, config, fake_rpc, descriptor, clock):
        hashes = [tx_hash(i) for i in range(1, 5)]
        fake_rpc.add_block(make_block(100, [make_tx(h) for h in hashes[:2]]))
        fake_rpc.add_block(make_block(101, [make_tx(h) for h in hashes[2:]]))
        fake_rpc.receipts[hashes[0]] = make_receipt(100, logs=[make_price_log(1)])
        fake_rpc.receipts[hashes[1]] = make_receipt(100)
        fake_rpc.receipts[hashes[2]] = make_receipt(101, logs=[make_price_log(2), make_round_log(3, log_index=1)])
        fake_rpc.receipts[hashes[3]] = make_receipt(101)
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(101)

        totals = [r.cumulative_transaction_count for r in sink.records]
        # 同一区块的交易先全部登记再逐笔发送
        assert totals == sorted(totals) == [2, 2, 4, 4]
        for record, snapshot in zip(sink.records, sink.snapshots):
            assert record.cumulative_transaction_count == snapshot.transactions
            assert record.cumulative_event_count == snapshot.events
        assert [r.cumulative_event_count for r in sink.records] == [1, 1, 3, 3]

    @pytest.mark.asyncio
    async def test_record_contents(self, config, fake_rpc, descriptor, clock):
        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1), gas_price=2 * 10**10)]))
        fake_rpc.receipts[tx_hash(1)] = make_receipt(100, gas_used=10**15, logs=[make_price_log(4200)])
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(100)

        record = sink.records[0]
        assert record.event_name == "PriceUpdated"
        assert record.event_args["price"] == 4200
        assert record.gas.gas_used_usd == Decimal("3")
        assert record.contract_name == "PriceOracle"
        assert record.confirmation_time_ms == clock() - BLOCK_TIMESTAMP * 1000
        assert record.block_timestamp.endswith("Z")

    @pytest.mark.asyncio
    async def test_missing_gas_price_uses_effective_price(self, config, fake_rpc, descriptor, clock):
        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1), gas_price=None)]))
        fake_rpc.receipts[tx_hash(1)] = make_receipt(100, effective_gas_price=5)
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(100)

        assert sink.records[0].gas.gas_price_wei == 5

    @pytest.mark.asyncio
    async def test_invalid_metric_discards_record(self, config, fake_rpc, descriptor, clock):
        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1)), make_tx(tx_hash(2))]))
        fake_rpc.receipts[tx_hash(1)] = make_receipt(100, gas_used=None)
        fake_rpc.receipts[tx_hash(2)] = make_receipt(100)
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(100)

        assert [r.transaction_hash for r in sink.records] == [tx_hash(2)]
        assert scanner.stats.invalid_metrics == 1

    @pytest.mark.asyncio
    async def test_confirmation_time_never_negative(self, config, fake_rpc, descriptor, clock):
        future = int(clock() / 1000) + 60
        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1))], timestamp=future))
        fake_rpc.receipts[tx_hash(1)] = make_receipt(100)
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        await scanner.on_block(100)

        assert sink.records[0].confirmation_time_ms == 0


class TestDeadlineAndSubscription:

    @pytest.mark.asyncio
    async def test_deadline_stops_processing(self, config, fake_rpc, descriptor, clock):
        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1))]))
        fake_rpc.receipts[tx_hash(1)] = make_receipt(100)
        reached = []
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock,
                                      stop_time_ms=clock() - 1, on_deadline=lambda: reached.append(True))

        await scanner.on_block(100)
        await scanner.on_block(100)

        assert reached == [True]
        assert scanner.is_stopped
        assert sink.records == []
        assert fake_rpc.block_calls == []

    @pytest.mark.asyncio
    async def test_start_polls_and_handle_releases(self, config, fake_rpc, descriptor, clock):
        config.track_pending = True
        scanner, sink = build_scanner(config, fake_rpc, descriptor, clock)

        handle = scanner.start(100)
        fake_rpc.add_block(make_block(100, [make_tx(tx_hash(1))]))
        fake_rpc.receipts[tx_hash(1)] = make_receipt(100)
        for _ in range(100):
            if sink.records:
                break
            await asyncio.sleep(0.01)

        await handle.close()
        await handle.close()

        assert isinstance(handle, SubscriptionHandle)
        assert handle.closed
        assert len(sink.records) == 1
        assert fake_rpc.filters_uninstalled == 1
