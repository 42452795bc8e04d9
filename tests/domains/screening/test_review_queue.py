"""Tests for the manual review queue."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from tests.conftest import make_txn, session_factory_for
from txnguard.db.models import ReviewItemDB
from txnguard.domains.screening.errors import ReviewStateError
from txnguard.domains.screening.models import ComplianceResult, RiskLevel
from txnguard.domains.screening.review_queue import (
    Disposition,
    InMemoryReviewStore,
    ManualReviewQueue,
    ReviewStatus,
    SqlReviewStore,
    counterparty_key,
)


def _high_result(transaction_id: str = "tx-001") -> ComplianceResult:
    return ComplianceResult.from_level(
        transaction_id, RiskLevel.HIGH, flags={"ROUND_NUMBER", "UNUSUAL_TIME"}
    )


@pytest.fixture()
def queue():
    return ManualReviewQueue(InMemoryReviewStore())


class TestManualReviewQueue:
    @pytest.mark.asyncio
    async def test_enqueue(self, queue):
        item = await queue.enqueue(make_txn(), _high_result())
        assert item.status == ReviewStatus.PENDING
        assert item.flags == ["ROUND_NUMBER", "UNUSUAL_TIME"]
        assert item.transaction["amount"] == "123.45"

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent(self, queue):
        first = await queue.enqueue(make_txn(), _high_result())
        second = await queue.enqueue(make_txn(), _high_result())
        assert first.enqueued_at == second.enqueued_at
        assert len(await queue.list()) == 1

    @pytest.mark.asyncio
    async def test_list_by_status(self, queue):
        await queue.enqueue(make_txn(transaction_id="tx-1"), _high_result("tx-1"))
        await queue.enqueue(make_txn(transaction_id="tx-2"), _high_result("tx-2"))
        await queue.resolve("tx-1", Disposition.APPROVED, reviewer="analyst-7")

        pending = await queue.list(ReviewStatus.PENDING)
        approved = await queue.list(ReviewStatus.APPROVED)
        assert [i.transaction_id for i in pending] == ["tx-2"]
        assert [i.transaction_id for i in approved] == ["tx-1"]

    @pytest.mark.asyncio
    async def test_resolve(self, queue):
        await queue.enqueue(make_txn(), _high_result())
        item = await queue.resolve(
            "tx-001", Disposition.REJECTED, reviewer="analyst-7", notes="Known mule account"
        )
        assert item.status == ReviewStatus.REJECTED
        assert item.reviewed_by == "analyst-7"
        assert item.notes == "Known mule account"
        assert item.resolved_at is not None

    @pytest.mark.asyncio
    async def test_resolve_twice_rejected(self, queue):
        await queue.enqueue(make_txn(), _high_result())
        await queue.resolve("tx-001", Disposition.APPROVED, reviewer="analyst-7")
        with pytest.raises(ReviewStateError):
            await queue.resolve("tx-001", Disposition.REJECTED, reviewer="analyst-9")

    @pytest.mark.asyncio
    async def test_missing_item(self, queue):
        with pytest.raises(KeyError):
            await queue.get("tx-404")
        with pytest.raises(KeyError):
            await queue.resolve("tx-404", Disposition.APPROVED, reviewer="analyst-7")

    @pytest.mark.asyncio
    async def test_count_rejected_by_beneficiary(self, queue):
        for tx_id, beneficiary in [("tx-1", "Acme Hardware"), ("tx-2", "ACME  hardware")]:
            await queue.enqueue(
                make_txn(transaction_id=tx_id, beneficiary=beneficiary), _high_result(tx_id)
            )
            await queue.resolve(tx_id, Disposition.REJECTED, reviewer="analyst-7")
        await queue.enqueue(make_txn(transaction_id="tx-3"), _high_result("tx-3"))

        key = counterparty_key("Acme Hardware")
        assert await queue.store.count_rejected(key, exclude_transaction_id="tx-9") == 2
        assert await queue.store.count_rejected(key, exclude_transaction_id="tx-2") == 1


class TestSqlReviewStore:
    @pytest.mark.asyncio
    async def test_resolve_pending_maps_returned_row(self, mock_db_session):
        row = ReviewItemDB(
            transaction_id="tx-001",
            user_id="user-001",
            risk_level="high",
            flags=["ROUND_NUMBER"],
            transaction={"transaction_id": "tx-001"},
            status="approved",
            reviewed_by="analyst-7",
            notes=None,
            enqueued_at=datetime(2026, 3, 10, 12, 0, tzinfo=UTC),
            resolved_at=datetime(2026, 3, 10, 13, 0, tzinfo=UTC),
        )
        result = MagicMock()
        result.scalar_one_or_none.return_value = row
        mock_db_session.execute.return_value = result

        store = SqlReviewStore(session_factory_for(mock_db_session))
        item = await store.resolve_pending(
            "tx-001", ReviewStatus.APPROVED, reviewer="analyst-7", notes=None
        )

        assert item.status == ReviewStatus.APPROVED
        assert item.risk_level is RiskLevel.HIGH
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resolve_pending_already_resolved(self, mock_db_session):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        mock_db_session.execute.return_value = result

        store = SqlReviewStore(session_factory_for(mock_db_session))
        assert (
            await store.resolve_pending("tx-001", ReviewStatus.APPROVED, "analyst-7", None) is None
        )

    @pytest.mark.asyncio
    async def test_add_if_absent_stores_beneficiary_key(self, mock_db_session):
        result = MagicMock()
        result.scalar_one_or_none.return_value = 1
        mock_db_session.execute.return_value = result

        queue = ManualReviewQueue(SqlReviewStore(session_factory_for(mock_db_session)))
        await queue.enqueue(make_txn(beneficiary="  Acme   HARDWARE "), _high_result())

        stmt = mock_db_session.execute.call_args.args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["beneficiary_key"] == "acme hardware"

    @pytest.mark.asyncio
    async def test_count_rejected(self, mock_db_session):
        result = MagicMock()
        result.scalar_one.return_value = 2
        mock_db_session.execute.return_value = result

        store = SqlReviewStore(session_factory_for(mock_db_session))
        assert await store.count_rejected("acme hardware", exclude_transaction_id="tx-9") == 2
        mock_db_session.execute.assert_awaited_once()
