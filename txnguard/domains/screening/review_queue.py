"""Manual review queue for HIGH-risk transactions.

Rejected items double as the counterparty record: a beneficiary's prior flags
are the transactions to it that a reviewer rejected.
"""

import asyncio
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from txnguard.db.models import ReviewItemDB

from .errors import ReviewStateError
from .models import ComplianceResult, RiskLevel, Transaction

logger = structlog.get_logger()


def counterparty_key(beneficiary: str) -> str:
    return " ".join(beneficiary.lower().split())


class ReviewStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Disposition(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewItem(BaseModel):
    transaction_id: str
    user_id: str
    risk_level: RiskLevel
    flags: list[str] = Field(default_factory=list)
    transaction: dict[str, Any] = Field(default_factory=dict)
    status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: str | None = None
    notes: str | None = None
    enqueued_at: datetime
    resolved_at: datetime | None = None


class ReviewStore(Protocol):
    async def add_if_absent(self, item: ReviewItem) -> tuple[ReviewItem, bool]: ...

    async def get(self, transaction_id: str) -> ReviewItem | None: ...

    async def list(self, status: ReviewStatus | None = None) -> list[ReviewItem]: ...

    async def resolve_pending(
        self,
        transaction_id: str,
        status: ReviewStatus,
        reviewer: str,
        notes: str | None,
    ) -> ReviewItem | None: ...

    async def count_rejected(self, beneficiary_key: str, exclude_transaction_id: str) -> int: ...


class InMemoryReviewStore:
    def __init__(self) -> None:
        self._items: dict[str, ReviewItem] = {}
        self._lock = asyncio.Lock()

    async def add_if_absent(self, item: ReviewItem) -> tuple[ReviewItem, bool]:
        async with self._lock:
            existing = self._items.get(item.transaction_id)
            if existing is not None:
                return existing, False
            self._items[item.transaction_id] = item
            return item, True

    async def get(self, transaction_id: str) -> ReviewItem | None:
        async with self._lock:
            return self._items.get(transaction_id)

    async def list(self, status: ReviewStatus | None = None) -> list[ReviewItem]:
        async with self._lock:
            items = list(self._items.values())
        if status is not None:
            items = [i for i in items if i.status == status]
        return sorted(items, key=lambda i: i.enqueued_at)

    async def resolve_pending(
        self,
        transaction_id: str,
        status: ReviewStatus,
        reviewer: str,
        notes: str | None,
    ) -> ReviewItem | None:
        """Resolve the item if it is still pending; None otherwise."""
        async with self._lock:
            item = self._items.get(transaction_id)
            if item is None or item.status != ReviewStatus.PENDING:
                return None
            resolved = item.model_copy(
                update={
                    "status": status,
                    "reviewed_by": reviewer,
                    "notes": notes,
                    "resolved_at": datetime.now(UTC),
                }
            )
            self._items[transaction_id] = resolved
            return resolved

    async def count_rejected(self, beneficiary_key: str, exclude_transaction_id: str) -> int:
        async with self._lock:
            return sum(
                1
                for item in self._items.values()
                if item.status == ReviewStatus.REJECTED
                and item.transaction_id != exclude_transaction_id
                and counterparty_key(item.transaction.get("beneficiary", "")) == beneficiary_key
            )


class SqlReviewStore:
    """Review items in the ``review_items`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add_if_absent(self, item: ReviewItem) -> tuple[ReviewItem, bool]:
        stmt = (
            pg_insert(ReviewItemDB)
            .values(
                transaction_id=item.transaction_id,
                user_id=item.user_id,
                risk_level=item.risk_level.value,
                flags=list(item.flags),
                transaction=item.transaction,
                beneficiary_key=counterparty_key(item.transaction.get("beneficiary", "")),
                status=item.status.value,
                enqueued_at=item.enqueued_at,
            )
            .on_conflict_do_nothing(index_elements=["transaction_id"])
            .returning(ReviewItemDB.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            inserted = result.scalar_one_or_none()
            await session.commit()

        if inserted is not None:
            return item, True
        existing = await self.get(item.transaction_id)
        if existing is None:
            raise LookupError(f"Review item for {item.transaction_id} vanished after conflict")
        return existing, False

    async def get(self, transaction_id: str) -> ReviewItem | None:
        stmt = select(ReviewItemDB).where(ReviewItemDB.transaction_id == transaction_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
        return _row_to_item(row) if row is not None else None

    async def list(self, status: ReviewStatus | None = None) -> list[ReviewItem]:
        stmt = select(ReviewItemDB).order_by(ReviewItemDB.enqueued_at)
        if status is not None:
            stmt = stmt.where(ReviewItemDB.status == status.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_row_to_item(row) for row in rows]

    async def resolve_pending(
        self,
        transaction_id: str,
        status: ReviewStatus,
        reviewer: str,
        notes: str | None,
    ) -> ReviewItem | None:
        # Conditional update so two reviewers cannot both resolve the same item
        stmt = (
            update(ReviewItemDB)
            .where(
                ReviewItemDB.transaction_id == transaction_id,
                ReviewItemDB.status == ReviewStatus.PENDING.value,
            )
            .values(
                status=status.value,
                reviewed_by=reviewer,
                notes=notes,
                resolved_at=datetime.now(UTC),
            )
            .returning(ReviewItemDB)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            await session.commit()
        return _row_to_item(row) if row is not None else None

    async def count_rejected(self, beneficiary_key: str, exclude_transaction_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(ReviewItemDB)
            .where(
                ReviewItemDB.beneficiary_key == beneficiary_key,
                ReviewItemDB.status == ReviewStatus.REJECTED.value,
                ReviewItemDB.transaction_id != exclude_transaction_id,
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())


def _row_to_item(row: ReviewItemDB) -> ReviewItem:
    return ReviewItem(
        transaction_id=row.transaction_id,
        user_id=row.user_id,
        risk_level=RiskLevel(row.risk_level),
        flags=list(row.flags or []),
        transaction=dict(row.transaction or {}),
        status=ReviewStatus(row.status),
        reviewed_by=row.reviewed_by,
        notes=row.notes,
        enqueued_at=row.enqueued_at,
        resolved_at=row.resolved_at,
    )


class ManualReviewQueue:
    def __init__(self, store: ReviewStore) -> None:
        self.store = store

    async def enqueue(self, transaction: Transaction, result: ComplianceResult) -> ReviewItem:
        """Queue a transaction for review. Re-enqueueing returns the existing item."""
        item, created = await self.store.add_if_absent(
            ReviewItem(
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                risk_level=result.risk_level,
                flags=sorted(result.flags),
                transaction=transaction.model_dump(mode="json"),
                enqueued_at=datetime.now(UTC),
            )
        )
        if created:
            logger.info(
                "review_enqueued",
                transaction_id=item.transaction_id,
                user_id=item.user_id,
                flags=item.flags,
            )
        return item

    async def get(self, transaction_id: str) -> ReviewItem:
        item = await self.store.get(transaction_id)
        if item is None:
            raise KeyError(f"No review item for transaction {transaction_id}")
        return item

    async def list(self, status: ReviewStatus | None = None) -> list[ReviewItem]:
        return await self.store.list(status)

    async def resolve(
        self,
        transaction_id: str,
        disposition: Disposition,
        reviewer: str,
        notes: str | None = None,
    ) -> ReviewItem:
        resolved = await self.store.resolve_pending(
            transaction_id, ReviewStatus(disposition.value), reviewer, notes
        )
        if resolved is None:
            existing = await self.get(transaction_id)
            raise ReviewStateError(
                f"Review for transaction {transaction_id} already resolved as "
                f"{existing.status.value}"
            )
        logger.info(
            "review_resolved",
            transaction_id=transaction_id,
            disposition=disposition.value,
            reviewer=reviewer,
        )
        return resolved
