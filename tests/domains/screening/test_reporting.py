"""Tests for regulatory report submission, delivery and redelivery."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import fast_config, make_txn, session_factory_for
from txnguard.domains.screening.models import ComplianceResult, RiskLevel
from txnguard.domains.screening.reporting import (
    InMemoryReportOutbox,
    KafkaReportSink,
    LoggingReportSink,
    ReportingTrigger,
    ReportReason,
    ReportStatus,
    SqlReportOutbox,
    build_report,
    report_reason,
)


class _FlakySink:
    """Fails the first ``failures`` deliveries, then succeeds."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.delivered = []
        self.closed = False

    async def deliver(self, report):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("broker unavailable")
        self.delivered.append(report.transaction_id)

    async def aclose(self):
        self.closed = True


def _blocked_result(transaction_id: str = "tx-001", flags=("SANCTIONS_MATCH",)) -> ComplianceResult:
    return ComplianceResult.from_level(transaction_id, RiskLevel.BLOCKED, flags=flags)


class TestReportReason:
    @pytest.mark.parametrize(
        "flags, reason",
        [
            ({"SANCTIONS_MATCH", "STRUCTURING"}, ReportReason.SANCTIONS_MATCH),
            ({"STRUCTURING", "ROUND_NUMBER"}, ReportReason.STRUCTURING),
            ({"LAYERING"}, ReportReason.LAYERING),
            ({"RISK_SCORE_BLOCKED"}, ReportReason.BLOCKED),
        ],
    )
    def test_reason_from_flags(self, flags, reason):
        assert report_reason(_blocked_result(flags=flags)) is reason

    def test_report_payload(self):
        txn = make_txn()
        report = build_report(txn, _blocked_result())
        assert report.payload["transaction"]["transaction_id"] == "tx-001"
        assert report.payload["result"]["decision"] == "block"
        assert report.status == ReportStatus.PENDING


class TestReportingTrigger:
    @pytest.mark.asyncio
    async def test_submit_writes_then_delivers(self):
        sink = _FlakySink()
        trigger = ReportingTrigger(InMemoryReportOutbox(), sink, fast_config())

        report = await trigger.submit(make_txn(), _blocked_result())
        stored = await trigger.outbox.get("tx-001")
        assert stored is report

        await trigger.drain()
        assert sink.delivered == ["tx-001"]
        assert stored.status == ReportStatus.DELIVERED
        assert stored.attempts == 1
        assert stored.delivered_at is not None

    @pytest.mark.asyncio
    async def test_retries_until_delivered(self):
        sink = _FlakySink(failures=2)
        trigger = ReportingTrigger(InMemoryReportOutbox(), sink, fast_config())

        await trigger.submit(make_txn(), _blocked_result())
        await trigger.drain()

        stored = await trigger.outbox.get("tx-001")
        assert stored.status == ReportStatus.DELIVERED
        assert stored.attempts == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_stay_pending(self):
        sink = _FlakySink(failures=10)
        trigger = ReportingTrigger(InMemoryReportOutbox(), sink, fast_config())

        await trigger.submit(make_txn(), _blocked_result())
        await trigger.drain()

        stored = await trigger.outbox.get("tx-001")
        assert stored.status == ReportStatus.PENDING
        assert stored.attempts == 3
        assert "broker unavailable" in stored.last_error

    @pytest.mark.asyncio
    async def test_redeliver_pending_after_outage(self):
        outbox = InMemoryReportOutbox()
        failing = ReportingTrigger(outbox, _FlakySink(failures=10), fast_config())
        await failing.submit(make_txn(), _blocked_result())
        await failing.drain()

        healthy_sink = _FlakySink()
        restarted = ReportingTrigger(outbox, healthy_sink, fast_config())
        assert await restarted.redeliver_pending() == 1
        await restarted.drain()

        stored = await outbox.get("tx-001")
        assert stored.status == ReportStatus.DELIVERED
        assert stored.attempts == 4
        assert healthy_sink.delivered == ["tx-001"]

    @pytest.mark.asyncio
    async def test_submit_is_idempotent(self):
        sink = _FlakySink()
        trigger = ReportingTrigger(InMemoryReportOutbox(), sink, fast_config())

        first = await trigger.submit(make_txn(), _blocked_result())
        await trigger.drain()
        second = await trigger.submit(make_txn(), _blocked_result())
        await trigger.drain()

        assert first.report_id == second.report_id
        assert sink.delivered == ["tx-001"]
        assert len(await trigger.outbox.list()) == 1

    @pytest.mark.asyncio
    async def test_periodic_sweep_delivers_exhausted_report(self):
        sink = _FlakySink(failures=3)
        trigger = ReportingTrigger(InMemoryReportOutbox(), sink, fast_config())

        await trigger.submit(make_txn(), _blocked_result())
        await trigger.drain()
        stored = await trigger.outbox.get("tx-001")
        assert stored.status == ReportStatus.PENDING

        trigger.start_redelivery(0.01)
        for _ in range(200):
            if stored.status == ReportStatus.DELIVERED:
                break
            await asyncio.sleep(0.01)
        await trigger.aclose()

        assert stored.status == ReportStatus.DELIVERED
        assert stored.attempts == 4
        assert sink.delivered == ["tx-001"]

    @pytest.mark.asyncio
    async def test_aclose_stops_sweep_and_closes_sink(self):
        sink = _FlakySink()
        trigger = ReportingTrigger(InMemoryReportOutbox(), sink, fast_config())
        trigger.start_redelivery(0.01)
        sweeper = trigger._sweeper

        await trigger.aclose()

        assert sweeper.done()
        assert trigger._sweeper is None
        assert sink.closed is True

    @pytest.mark.asyncio
    async def test_unavailable_broker_leaves_report_pending(self):
        sink = KafkaReportSink(connect=AsyncMock(side_effect=ConnectionError("broker down")))
        trigger = ReportingTrigger(InMemoryReportOutbox(), sink, fast_config())

        await trigger.submit(make_txn(), _blocked_result())
        await trigger.drain()

        stored = await trigger.outbox.get("tx-001")
        assert stored.status == ReportStatus.PENDING
        assert stored.delivered_at is None
        assert "broker down" in stored.last_error


class TestSinks:
    @pytest.mark.asyncio
    async def test_kafka_sink_publishes_json(self, mock_kafka_producer):
        sink = KafkaReportSink(mock_kafka_producer, topic="compliance.regulatory-reports")
        report = build_report(make_txn(), _blocked_result())
        await sink.deliver(report)

        args, kwargs = mock_kafka_producer.send_and_wait.call_args
        assert args[0] == "compliance.regulatory-reports"
        assert kwargs["key"] == b"tx-001"
        body = json.loads(kwargs["value"].decode("utf-8"))
        assert body["reason"] == "sanctions_match"
        assert body["risk_level"] == "blocked"

    @pytest.mark.asyncio
    async def test_kafka_sink_without_producer_fails(self):
        sink = KafkaReportSink(topic="compliance.regulatory-reports")
        with pytest.raises(ConnectionError):
            await sink.deliver(build_report(make_txn(), _blocked_result()))

    @pytest.mark.asyncio
    async def test_kafka_sink_connects_on_delivery(self, mock_kafka_producer):
        connect = AsyncMock(return_value=mock_kafka_producer)
        sink = KafkaReportSink(topic="compliance.regulatory-reports", connect=connect)

        await sink.deliver(build_report(make_txn(transaction_id="tx-1"), _blocked_result("tx-1")))
        await sink.deliver(build_report(make_txn(transaction_id="tx-2"), _blocked_result("tx-2")))
        connect.assert_awaited_once()
        assert mock_kafka_producer.send_and_wait.await_count == 2

        await sink.aclose()
        mock_kafka_producer.stop.assert_awaited_once()
        assert sink.producer is None

    @pytest.mark.asyncio
    async def test_kafka_sink_leaves_injected_producer_running(self, mock_kafka_producer):
        sink = KafkaReportSink(mock_kafka_producer)
        await sink.aclose()
        mock_kafka_producer.stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_logging_sink(self):
        await LoggingReportSink().deliver(build_report(make_txn(), _blocked_result()))


class TestSqlReportOutbox:
    @pytest.mark.asyncio
    async def test_add_if_absent_inserts(self, mock_db_session):
        result = MagicMock()
        result.scalar_one_or_none.return_value = "report-id"
        mock_db_session.execute.return_value = result

        outbox = SqlReportOutbox(session_factory_for(mock_db_session))
        report = build_report(make_txn(), _blocked_result())
        stored, created = await outbox.add_if_absent(report)

        assert created is True
        assert stored is report
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, mock_db_session):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        mock_db_session.execute.return_value = result

        outbox = SqlReportOutbox(session_factory_for(mock_db_session))
        assert await outbox.get("tx-404") is None
