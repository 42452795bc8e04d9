"""Regulatory report submission: write to the outbox, then deliver.

``submit`` never waits for delivery. It persists the report first, so a crash
between the decision and delivery leaves a pending row that
``redeliver_pending`` picks up on the next start. While the service runs, a
periodic sweep retries reports that exhausted their delivery attempts. Writes
are idempotent on transaction id, and sinks must tolerate the occasional
duplicate delivery (at-least-once).
"""

import asyncio
import contextlib
import json
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from txnguard.db.models import RegulatoryReportDB
from txnguard.shared.kafka_utils import close_producer

from .config import ScreeningConfig, default_config
from .models import ComplianceResult, Flag, RiskLevel, Transaction

logger = structlog.get_logger()


class ReportStatus(StrEnum):
    PENDING = "pending"
    DELIVERED = "delivered"


class ReportReason(StrEnum):
    SANCTIONS_MATCH = "sanctions_match"
    STRUCTURING = "structuring"
    LAYERING = "layering"
    BLOCKED = "blocked"


class RegulatoryReport:
    """One report per transaction; mutable delivery bookkeeping."""

    def __init__(
        self,
        report_id: str,
        transaction_id: str,
        user_id: str,
        reason: ReportReason,
        risk_level: RiskLevel,
        flags: list[str],
        payload: dict[str, Any],
        created_at: datetime,
        status: ReportStatus = ReportStatus.PENDING,
        attempts: int = 0,
        last_error: str | None = None,
        delivered_at: datetime | None = None,
    ) -> None:
        self.report_id = report_id
        self.transaction_id = transaction_id
        self.user_id = user_id
        self.reason = reason
        self.risk_level = risk_level
        self.flags = flags
        self.payload = payload
        self.created_at = created_at
        self.status = status
        self.attempts = attempts
        self.last_error = last_error
        self.delivered_at = delivered_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "reason": self.reason.value,
            "risk_level": self.risk_level.value,
            "flags": list(self.flags),
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }


def report_reason(result: ComplianceResult) -> ReportReason:
    if Flag.SANCTIONS_MATCH.value in result.flags:
        return ReportReason.SANCTIONS_MATCH
    if Flag.STRUCTURING.value in result.flags:
        return ReportReason.STRUCTURING
    if Flag.LAYERING.value in result.flags:
        return ReportReason.LAYERING
    return ReportReason.BLOCKED


def build_report(transaction: Transaction, result: ComplianceResult) -> RegulatoryReport:
    return RegulatoryReport(
        report_id=str(uuid.uuid4()),
        transaction_id=transaction.transaction_id,
        user_id=transaction.user_id,
        reason=report_reason(result),
        risk_level=result.risk_level,
        flags=sorted(result.flags),
        payload={
            "transaction": transaction.model_dump(mode="json"),
            "result": result.model_dump(mode="json"),
        },
        created_at=datetime.now(UTC),
    )


# ---------------------------------------------------------------------------
# Outbox backends
# ---------------------------------------------------------------------------


class ReportOutbox(Protocol):
    async def add_if_absent(self, report: RegulatoryReport) -> tuple[RegulatoryReport, bool]: ...

    async def get(self, transaction_id: str) -> RegulatoryReport | None: ...

    async def list(self, status: ReportStatus | None = None) -> list[RegulatoryReport]: ...

    async def mark_delivered(self, transaction_id: str, attempts: int) -> None: ...

    async def mark_failed(self, transaction_id: str, attempts: int, error: str) -> None: ...


class InMemoryReportOutbox:
    def __init__(self) -> None:
        self._reports: dict[str, RegulatoryReport] = {}
        self._lock = asyncio.Lock()

    async def add_if_absent(self, report: RegulatoryReport) -> tuple[RegulatoryReport, bool]:
        async with self._lock:
            existing = self._reports.get(report.transaction_id)
            if existing is not None:
                return existing, False
            self._reports[report.transaction_id] = report
            return report, True

    async def get(self, transaction_id: str) -> RegulatoryReport | None:
        async with self._lock:
            return self._reports.get(transaction_id)

    async def list(self, status: ReportStatus | None = None) -> list[RegulatoryReport]:
        async with self._lock:
            reports = list(self._reports.values())
        if status is not None:
            reports = [r for r in reports if r.status == status]
        return sorted(reports, key=lambda r: r.created_at)

    async def mark_delivered(self, transaction_id: str, attempts: int) -> None:
        async with self._lock:
            report = self._reports[transaction_id]
            report.status = ReportStatus.DELIVERED
            report.attempts = attempts
            report.last_error = None
            report.delivered_at = datetime.now(UTC)

    async def mark_failed(self, transaction_id: str, attempts: int, error: str) -> None:
        async with self._lock:
            report = self._reports[transaction_id]
            report.attempts = attempts
            report.last_error = error


class SqlReportOutbox:
    """Outbox rows in the ``regulatory_reports`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add_if_absent(self, report: RegulatoryReport) -> tuple[RegulatoryReport, bool]:
        stmt = (
            pg_insert(RegulatoryReportDB)
            .values(
                report_id=report.report_id,
                transaction_id=report.transaction_id,
                user_id=report.user_id,
                reason=report.reason.value,
                risk_level=report.risk_level.value,
                flags=list(report.flags),
                payload=report.payload,
                status=report.status.value,
                attempts=report.attempts,
                created_at=report.created_at,
            )
            .on_conflict_do_nothing(index_elements=["transaction_id"])
            .returning(RegulatoryReportDB.report_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            inserted = result.scalar_one_or_none()
            await session.commit()

        if inserted is not None:
            return report, True
        existing = await self.get(report.transaction_id)
        if existing is None:
            raise LookupError(f"Report for {report.transaction_id} vanished after conflict")
        return existing, False

    async def get(self, transaction_id: str) -> RegulatoryReport | None:
        stmt = select(RegulatoryReportDB).where(RegulatoryReportDB.transaction_id == transaction_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
        return _row_to_report(row) if row is not None else None

    async def list(self, status: ReportStatus | None = None) -> list[RegulatoryReport]:
        stmt = select(RegulatoryReportDB).order_by(RegulatoryReportDB.created_at)
        if status is not None:
            stmt = stmt.where(RegulatoryReportDB.status == status.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_row_to_report(row) for row in rows]

    async def mark_delivered(self, transaction_id: str, attempts: int) -> None:
        stmt = (
            update(RegulatoryReportDB)
            .where(RegulatoryReportDB.transaction_id == transaction_id)
            .values(
                status=ReportStatus.DELIVERED.value,
                attempts=attempts,
                last_error=None,
                delivered_at=datetime.now(UTC),
            )
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def mark_failed(self, transaction_id: str, attempts: int, error: str) -> None:
        stmt = (
            update(RegulatoryReportDB)
            .where(RegulatoryReportDB.transaction_id == transaction_id)
            .values(attempts=attempts, last_error=error[:1000])
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()


def _row_to_report(row: RegulatoryReportDB) -> RegulatoryReport:
    return RegulatoryReport(
        report_id=row.report_id,
        transaction_id=row.transaction_id,
        user_id=row.user_id,
        reason=ReportReason(row.reason),
        risk_level=RiskLevel(row.risk_level),
        flags=list(row.flags or []),
        payload=dict(row.payload or {}),
        created_at=row.created_at,
        status=ReportStatus(row.status),
        attempts=row.attempts,
        last_error=row.last_error,
        delivered_at=row.delivered_at,
    )


# ---------------------------------------------------------------------------
# Delivery sinks
# ---------------------------------------------------------------------------


class ReportSink(Protocol):
    async def deliver(self, report: RegulatoryReport) -> None: ...

    async def aclose(self) -> None: ...


class LoggingReportSink:
    """Used when no message broker is configured."""

    async def deliver(self, report: RegulatoryReport) -> None:
        logger.warning(
            "regulatory_report_filed",
            report_id=report.report_id,
            transaction_id=report.transaction_id,
            user_id=report.user_id,
            reason=report.reason.value,
            risk_level=report.risk_level.value,
        )

    async def aclose(self) -> None:
        return None


class KafkaReportSink:
    """Publishes reports to Kafka for the filing service.

    Without a producer every delivery fails, leaving the report pending in the
    outbox. When ``connect`` is given the sink tries to start a producer on the
    next delivery and owns it from then on.

    Args:
        producer: A started aiokafka AIOKafkaProducer, or None if Kafka was
            unreachable at startup.
        topic: Destination topic.
        connect: Coroutine factory returning a started producer.
    """

    def __init__(
        self,
        producer=None,
        topic: str = "compliance.regulatory-reports",
        connect: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self.producer = producer
        self.topic = topic
        self._connect = connect
        self._connect_lock = asyncio.Lock()
        self._owns_producer = False

    async def _ensure_producer(self):
        async with self._connect_lock:
            if self.producer is None:
                if self._connect is None:
                    raise ConnectionError("Kafka producer unavailable")
                self.producer = await self._connect()
                self._owns_producer = True
                logger.info("report_sink_connected", topic=self.topic)
            return self.producer

    async def deliver(self, report: RegulatoryReport) -> None:
        producer = self.producer or await self._ensure_producer()

        await producer.send_and_wait(
            self.topic,
            value=json.dumps(report.to_dict(), default=str).encode("utf-8"),
            key=report.transaction_id.encode("utf-8"),
        )
        logger.info(
            "report_published_to_kafka",
            report_id=report.report_id,
            transaction_id=report.transaction_id,
            topic=self.topic,
        )

    async def aclose(self) -> None:
        """Stop the producer if this sink started it."""
        if self._owns_producer:
            await close_producer(self.producer)
        self.producer = None
        self._owns_producer = False


# ---------------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------------


class ReportingTrigger:
    def __init__(
        self,
        outbox: ReportOutbox,
        sink: ReportSink,
        config: ScreeningConfig | None = None,
    ) -> None:
        self.outbox = outbox
        self.sink = sink
        self.config = config or default_config
        self._inflight: dict[str, asyncio.Task] = {}
        self._sweeper: asyncio.Task | None = None

    async def submit(self, transaction: Transaction, result: ComplianceResult) -> RegulatoryReport:
        """Persist the report and schedule its delivery in the background."""
        report, created = await self.outbox.add_if_absent(build_report(transaction, result))
        if created:
            logger.info(
                "regulatory_report_queued",
                report_id=report.report_id,
                transaction_id=report.transaction_id,
                reason=report.reason.value,
            )
        if report.status == ReportStatus.PENDING:
            self._schedule(report)
        return report

    async def redeliver_pending(self) -> int:
        """Schedule delivery for every report still pending in the outbox."""
        pending = await self.outbox.list(ReportStatus.PENDING)
        for report in pending:
            self._schedule(report)
        if pending:
            logger.info("pending_reports_rescheduled", count=len(pending))
        return len(pending)

    def start_redelivery(self, interval_seconds: float | None = None) -> None:
        """Sweep pending reports every ``interval_seconds`` until ``aclose``."""
        if self._sweeper is not None:
            return
        interval = interval_seconds or self.config.reporting.redelivery_interval_seconds
        self._sweeper = asyncio.create_task(self._redelivery_loop(interval))

    async def drain(self) -> None:
        """Wait for all in-flight deliveries to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop the sweep, finish in-flight deliveries, and close the sink."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self.drain()
        await self.sink.aclose()

    async def _redelivery_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.redeliver_pending()
            except Exception:
                logger.exception("pending_report_sweep_failed")

    def _schedule(self, report: RegulatoryReport) -> None:
        if report.transaction_id in self._inflight:
            return
        task = asyncio.create_task(self._deliver(report))
        self._inflight[report.transaction_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(report.transaction_id, None))

    async def _deliver(self, report: RegulatoryReport) -> None:
        rc = self.config.reporting
        last_error = ""
        for attempt in range(1, rc.max_attempts + 1):
            attempts = report.attempts + attempt
            try:
                await self.sink.deliver(report)
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.exception(
                    "report_delivery_failed",
                    report_id=report.report_id,
                    transaction_id=report.transaction_id,
                    attempt=attempt,
                )
                if attempt < rc.max_attempts:
                    delay = min(
                        rc.backoff_base_seconds * 2 ** (attempt - 1), rc.backoff_max_seconds
                    )
                    await asyncio.sleep(delay)
                continue

            await self.outbox.mark_delivered(report.transaction_id, attempts)
            logger.info(
                "report_delivered",
                report_id=report.report_id,
                transaction_id=report.transaction_id,
                attempts=attempts,
            )
            return

        await self.outbox.mark_failed(
            report.transaction_id, report.attempts + rc.max_attempts, last_error
        )
        logger.error(
            "report_delivery_exhausted",
            report_id=report.report_id,
            transaction_id=report.transaction_id,
            attempts=report.attempts + rc.max_attempts,
            error=last_error,
        )
