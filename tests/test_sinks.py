import json
from decimal import Decimal

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from contract_metrics_monitor.core.sink_initializer import build_sinks
from contract_metrics_monitor.models.data_types import CounterSnapshot, ScanCandidate
from contract_metrics_monitor.models.errors import SinkUnavailable
from contract_metrics_monitor.processors.metrics_normalizer import normalize
from contract_metrics_monitor.services.record_emitter import RecordEmitter
from contract_metrics_monitor.services.sinks.influx_sink import (
    InfluxMetricsSink,
    build_counter_init_points,
    build_record_points,
)
from contract_metrics_monitor.services.sinks.rabbitmq_sink import RabbitMQRecordSink
from contract_metrics_monitor.services.sinks.record_log_sink import RecordLogSink

from conftest import BLOCK_TIMESTAMP, make_tx, tx_hash


def make_record(descriptor, sequence_number=1, event_name=None):
    candidate = ScanCandidate(tx_hash(sequence_number), make_tx(tx_hash(sequence_number)),
                              descriptor, 100, BLOCK_TIMESTAMP * 1000)
    return RecordEmitter.assemble(
        candidate=candidate,
        sequence_number=sequence_number,
        block_number=100,
        block_timestamp_ms=BLOCK_TIMESTAMP * 1000,
        gas=normalize(10**15, 2 * 10**10, 3000),
        conversion_rate=Decimal("3000"),
        confirmation_time_ms=1500,
        counters=CounterSnapshot(transactions=sequence_number, events=2),
        event_name=event_name,
        event_args={"price": 1} if event_name else None,
    )


class TestInfluxPoints:

    def test_record_points(self, descriptor):
        points = build_record_points(make_record(descriptor, event_name="PriceUpdated"))

        assert len(points) == 3
        metrics, transactions, events = [p.to_line_protocol() for p in points]
        assert metrics.startswith("oracle_performance_metrics,")
        assert f"contract={descriptor.address}" in metrics
        assert f"txHash={tx_hash(1)}" in metrics
        assert "eventName=PriceUpdated" in metrics
        assert "gasUsedInUSD=3" in metrics
        assert "Block\\ Number=100i" in metrics
        assert "confirmationTime=1500i" in metrics
        assert metrics.endswith(f" {BLOCK_TIMESTAMP * 1000}")
        assert transactions == f"transaction_counter,type=cumulative value=1i {BLOCK_TIMESTAMP * 1000}"
        assert events == f"event_counter,type=cumulative value=2i {BLOCK_TIMESTAMP * 1000}"

    def test_transaction_only_tag(self, descriptor):
        metrics = build_record_points(make_record(descriptor))[0].to_line_protocol()
        assert "eventName=TransactionOnly" in metrics

    def test_counter_init_points(self):
        assert [p.to_line_protocol() for p in build_counter_init_points(5)] == [
            "transaction_counter,status=initialized,type=cumulative value=0i 5",
            "event_counter,status=initialized,type=cumulative value=0i 5",
        ]


class TestRecordLogSink:

    @pytest.mark.asyncio
    async def test_appends_json_lines(self, tmp_path, descriptor):
        path = tmp_path / "out" / "records.jsonl"
        sink = RecordLogSink(str(path))

        await sink.open()
        await sink.push(make_record(descriptor, 1))
        await sink.push(make_record(descriptor, 2))
        await sink.close()

        rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert [row["sequenceNumber"] for row in rows] == [1, 2]
        assert rows[0]["gasUsedInUSD"] == "3.000"
        assert sink.records_written == 2

    @pytest.mark.asyncio
    async def test_existing_file_is_not_truncated(self, tmp_path, descriptor):
        path = tmp_path / "records.jsonl"
        path.write_text('{"sequenceNumber": 0}\n', encoding="utf-8")
        sink = RecordLogSink(str(path))

        await sink.open()
        await sink.push(make_record(descriptor))

        assert len(path.read_text(encoding="utf-8").splitlines()) == 2


class TestInfluxMetricsSink:

    @staticmethod
    async def start_server(status=204, with_ping=True):
        received = []

        async def write_handler(request: web.Request) -> web.Response:
            received.append({
                "query": dict(request.query),
                "auth": request.headers.get("Authorization"),
                "body": await request.text(),
            })
            return web.Response(status=status)

        async def ping_handler(request: web.Request) -> web.Response:
            return web.Response(status=204)

        app = web.Application()
        app.router.add_post("/api/v2/write", write_handler)
        if with_ping:
            app.router.add_get("/ping", ping_handler)
        server = TestServer(app)
        await server.start_server()
        return server, received

    @pytest.mark.asyncio
    async def test_writes_init_counters_and_records(self, descriptor):
        server, received = await self.start_server()
        sink = InfluxMetricsSink(str(server.make_url("/")), token="secret", org="org", bucket="metrics")
        try:
            await sink.open()
            await sink.push(make_record(descriptor))
        finally:
            await sink.close()
            await server.close()

        assert sink.healthy is True
        assert len(received) == 2
        assert received[0]["query"]["bucket"] == "metrics"
        assert received[0]["query"]["org"] == "org"
        assert received[0]["query"]["precision"] == "ms"
        assert received[0]["auth"] == "Token secret"
        assert "status=initialized" in received[0]["body"]
        assert len(received[1]["body"].splitlines()) == 3
        assert sink.points_written == 5

    @pytest.mark.asyncio
    async def test_failed_health_check_keeps_sink_usable(self, descriptor):
        server, received = await self.start_server(with_ping=False)
        sink = InfluxMetricsSink(str(server.make_url("/")), token="t", org="o", bucket="b",
                                 initialize_counters=False)
        try:
            await sink.open()
            await sink.push(make_record(descriptor))
        finally:
            await sink.close()
            await server.close()

        assert sink.healthy is False
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_error_status_raises_sink_unavailable(self, descriptor):
        server, _ = await self.start_server(status=500)
        sink = InfluxMetricsSink(str(server.make_url("/")), token="t", org="o", bucket="b")
        try:
            await sink.open()
            with pytest.raises(SinkUnavailable):
                await sink.push(make_record(descriptor))
        finally:
            await sink.close()
            await server.close()

        assert sink.write_failures == 2

    @pytest.mark.asyncio
    async def test_push_without_open(self, descriptor):
        with pytest.raises(SinkUnavailable):
            await InfluxMetricsSink("http://localhost:1", "t", "o", "b").push(make_record(descriptor))


class TestRabbitMQRecordSink:

    @pytest.mark.asyncio
    async def test_push_without_connection(self, descriptor):
        with pytest.raises(SinkUnavailable):
            await RabbitMQRecordSink().push(make_record(descriptor))


class TestBuildSinks:

    def test_only_enabled_sinks(self, tmp_path):
        sinks = build_sinks(
            record_log_config={"enabled": True, "path": str(tmp_path / "r.jsonl")},
            influx_config={"enabled": True, "url": "http://influx:8086", "token": "t", "org": "o", "bucket": "b"},
            rabbitmq_config={"enabled": False},
        )
        assert [s.name for s in sinks] == ["record_log", "influxdb"]

    def test_rabbitmq_exchange_per_chain(self):
        sinks = build_sinks(
            record_log_config={"enabled": False},
            influx_config={"enabled": False},
            rabbitmq_config={"enabled": True, "exchange_name": "metrics"},
            chain_name="sepolia",
        )
        assert sinks[0].exchange_name == "metrics_sepolia"
