"""Engine assembly: wires stores, checks and side-effect handlers together."""

from dataclasses import dataclass
from functools import partial

import httpx
import structlog

from txnguard.config import Settings
from txnguard.config import settings as default_settings
from txnguard.shared.kafka_utils import create_producer

from .aml import AMLPatternDetector
from .config import ScreeningConfig, default_config
from .limits import InMemoryUserLimitsProvider, LimitEnforcer
from .orchestrator import ScreeningOrchestrator
from .reporting import (
    InMemoryReportOutbox,
    KafkaReportSink,
    LoggingReportSink,
    ReportingTrigger,
    ReportOutbox,
    ReportSink,
    SqlReportOutbox,
)
from .review_queue import InMemoryReviewStore, ManualReviewQueue, ReviewStore, SqlReviewStore
from .risk_scoring import CounterpartyHistory, RiskScorer
from .sanctions import SanctionsScreener, build_default_providers
from .window import InMemoryTransactionWindowStore, SqlTransactionWindowStore, TransactionWindowStore

logger = structlog.get_logger()


@dataclass
class ScreeningEngine:
    orchestrator: ScreeningOrchestrator
    window_store: TransactionWindowStore
    limits_provider: InMemoryUserLimitsProvider
    counterparty_history: CounterpartyHistory
    reporting: ReportingTrigger
    review_queue: ManualReviewQueue
    http_client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        await self.reporting.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_engine(
    app_settings: Settings | None = None,
    config: ScreeningConfig | None = None,
    kafka_producer=None,
) -> ScreeningEngine:
    """Assemble a screening engine.

    With the database enabled, transaction history, the report outbox and the
    review queue (which also backs counterparty history) are stored in
    PostgreSQL. User profiles always live in process memory and are lost on
    restart; they must be re-sent through ``PUT /api/v1/users/{id}/profile``.

    With Kafka enabled, reports go to Kafka. If ``kafka_producer`` is None the
    sink connects on a later delivery and reports stay pending until it does.
    With Kafka disabled, reports are written to the log.
    """
    app_settings = app_settings or default_settings
    config = config or default_config

    window_store: TransactionWindowStore
    outbox: ReportOutbox
    review_store: ReviewStore
    if app_settings.database_enabled:
        from txnguard.db.database import async_session_factory

        window_store = SqlTransactionWindowStore(async_session_factory)
        outbox = SqlReportOutbox(async_session_factory)
        review_store = SqlReviewStore(async_session_factory)
    else:
        window_store = InMemoryTransactionWindowStore()
        outbox = InMemoryReportOutbox()
        review_store = InMemoryReviewStore()

    sink: ReportSink
    if app_settings.kafka_enabled or kafka_producer is not None:
        sink = KafkaReportSink(
            kafka_producer,
            topic=app_settings.reports_topic,
            connect=partial(create_producer, app_settings.kafka_bootstrap_servers),
        )
    else:
        sink = LoggingReportSink()

    http_client = None
    if config.sanctions.http_provider_url:
        http_client = httpx.AsyncClient(timeout=config.sanctions.http_timeout_seconds)

    limits_provider = InMemoryUserLimitsProvider(config)
    counterparty_history = CounterpartyHistory(review_store)
    reporting = ReportingTrigger(outbox, sink, config)
    review_queue = ManualReviewQueue(review_store)

    orchestrator = ScreeningOrchestrator(
        aml=AMLPatternDetector(config),
        sanctions=SanctionsScreener(build_default_providers(config, http_client), config),
        limits=LimitEnforcer(),
        risk=RiskScorer(config),
        window_store=window_store,
        limits_provider=limits_provider,
        counterparty_history=counterparty_history,
        reporting=reporting,
        review_queue=review_queue,
        config=config,
    )

    logger.info(
        "screening_engine_built",
        database_enabled=app_settings.database_enabled,
        report_sink=type(sink).__name__,
        sanctions_providers=[p.name for p in orchestrator.sanctions.providers],
    )
    return ScreeningEngine(
        orchestrator=orchestrator,
        window_store=window_store,
        limits_provider=limits_provider,
        counterparty_history=counterparty_history,
        reporting=reporting,
        review_queue=review_queue,
        http_client=http_client,
    )


# Module-level singleton, replaced at startup once Kafka and the database are up
_engine: ScreeningEngine | None = None


def get_engine() -> ScreeningEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: ScreeningEngine | None) -> None:
    global _engine
    _engine = engine
