"""Per-user transaction history exposed as point-in-time rolling windows.

A window is rebuilt for every screening call and never shared between
screenings: stores hand out immutable tuples, so a detector and the limit
enforcer looking at the same snapshot always agree, even if new transactions
are recorded while screening is in flight.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from txnguard.db.models import TransactionHistory

from .models import Transaction

logger = structlog.get_logger()

DAY = timedelta(hours=24)
MONTH = timedelta(days=30)


@dataclass(frozen=True)
class TransactionWindow:
    user_id: str
    as_of: datetime
    last_24h: tuple[Transaction, ...] = ()
    last_30d: tuple[Transaction, ...] = ()

    @property
    def count_24h(self) -> int:
        return len(self.last_24h)

    @property
    def sum_24h(self) -> Decimal:
        return sum((tx.amount for tx in self.last_24h), Decimal("0"))

    @property
    def sum_30d(self) -> Decimal:
        return sum((tx.amount for tx in self.last_30d), Decimal("0"))

    @property
    def amounts_30d(self) -> list[Decimal]:
        return [tx.amount for tx in self.last_30d]

    @property
    def countries_30d(self) -> frozenset[str]:
        return frozenset(tx.country for tx in self.last_30d)

    @property
    def beneficiaries_30d(self) -> frozenset[str]:
        return frozenset(tx.beneficiary for tx in self.last_30d)

    @classmethod
    def build(
        cls,
        user_id: str,
        as_of: datetime,
        history: list[Transaction],
        exclude_transaction_id: str | None = None,
    ) -> "TransactionWindow":
        """Project a user's history onto the 24h and 30d windows ending at as_of."""
        relevant = sorted(
            (
                tx
                for tx in history
                if tx.transaction_id != exclude_transaction_id
                and as_of - MONTH <= tx.timestamp <= as_of
            ),
            key=lambda tx: (tx.timestamp, tx.transaction_id),
        )
        last_24h = tuple(tx for tx in relevant if tx.timestamp >= as_of - DAY)
        return cls(user_id=user_id, as_of=as_of, last_24h=last_24h, last_30d=tuple(relevant))


class TransactionWindowStore(Protocol):
    async def snapshot(
        self, user_id: str, as_of: datetime, exclude_transaction_id: str | None = None
    ) -> TransactionWindow: ...

    async def record(self, transaction: Transaction) -> None: ...


class InMemoryTransactionWindowStore:
    """Transaction history held in process memory, keyed by user."""

    def __init__(self) -> None:
        self._by_user: dict[str, dict[str, Transaction]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def record(self, transaction: Transaction) -> None:
        async with self._lock:
            self._by_user[transaction.user_id][transaction.transaction_id] = transaction
        logger.debug(
            "transaction_recorded",
            transaction_id=transaction.transaction_id,
            user_id=transaction.user_id,
        )

    async def snapshot(
        self, user_id: str, as_of: datetime, exclude_transaction_id: str | None = None
    ) -> TransactionWindow:
        async with self._lock:
            history = list(self._by_user.get(user_id, {}).values())
        return TransactionWindow.build(user_id, as_of, history, exclude_transaction_id)


class SqlTransactionWindowStore:
    """Transaction history in the ``transaction_history`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, transaction: Transaction) -> None:
        stmt = (
            pg_insert(TransactionHistory)
            .values(
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                amount=transaction.amount,
                currency=transaction.currency,
                occurred_at=transaction.timestamp,
                beneficiary=transaction.beneficiary,
                purpose=transaction.purpose,
                country=transaction.country,
                payer_name=transaction.payer_name,
            )
            .on_conflict_do_nothing(index_elements=["transaction_id"])
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug(
            "transaction_recorded",
            transaction_id=transaction.transaction_id,
            user_id=transaction.user_id,
        )

    async def snapshot(
        self, user_id: str, as_of: datetime, exclude_transaction_id: str | None = None
    ) -> TransactionWindow:
        stmt = select(TransactionHistory).where(
            TransactionHistory.user_id == user_id,
            TransactionHistory.occurred_at >= as_of - MONTH,
            TransactionHistory.occurred_at <= as_of,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        history = [_row_to_transaction(row) for row in rows]
        return TransactionWindow.build(user_id, as_of, history, exclude_transaction_id)


def _row_to_transaction(row: TransactionHistory) -> Transaction:
    return Transaction(
        transaction_id=row.transaction_id,
        user_id=row.user_id,
        amount=row.amount,
        currency=row.currency,
        timestamp=row.occurred_at,
        beneficiary=row.beneficiary,
        purpose=row.purpose or "",
        country=row.country,
        payer_name=row.payer_name,
    )
