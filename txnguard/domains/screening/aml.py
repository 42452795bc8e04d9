"""AML pattern detection for a single transaction against its 24h window.

Four independent boolean detectors:

  1. Round number      amount is an exact multiple of 1,000 or 500
  2. Rapid succession  more than 10 transactions in the trailing 24h
  3. Unusual time      outside business hours in the business timezone
  4. Structuring       the 24h total crosses the $10,000 CTR threshold while
                       every individual amount stays below it (31 USC § 5324)

The union of flags, not their count, drives severity: any flag is HIGH.
Structuring and layering also oblige a regulatory report.
"""

from datetime import UTC, tzinfo
from decimal import Decimal
from zoneinfo import ZoneInfo

import structlog

from .config import ScreeningConfig, default_config
from .models import AMLResult, Flag, RiskLevel, Transaction
from .window import TransactionWindow

logger = structlog.get_logger()

# Flags that oblige a regulatory report on their own
REPORTABLE_FLAGS = frozenset({Flag.STRUCTURING.value, Flag.LAYERING.value})


def is_round_number(amount: Decimal, divisors: tuple[int, ...] = (1000, 500)) -> bool:
    if amount <= 0:
        return False
    return any(amount % divisor == 0 for divisor in divisors)


def is_unusual_time(
    transaction: Transaction,
    business_tz: tzinfo,
    start_hour: int = 6,
    end_hour: int = 23,
) -> bool:
    hour = transaction.timestamp.astimezone(business_tz).hour
    return hour < start_hour or hour >= end_hour


def is_rapid_succession(window: TransactionWindow, max_count: int = 10) -> bool:
    # The current transaction is not in the window yet
    return window.count_24h + 1 > max_count


def is_structuring(
    transaction: Transaction,
    window: TransactionWindow,
    threshold: Decimal = Decimal("10000"),
) -> bool:
    """Sub-threshold pieces whose 24h total strictly exceeds the threshold."""
    total = window.sum_24h + transaction.amount
    if total <= threshold:
        return False
    if transaction.amount >= threshold:
        return False
    return all(tx.amount < threshold for tx in window.last_24h)


def _business_timezone(name: str) -> tzinfo:
    if name.upper() in ("UTC", "ETC/UTC"):
        return UTC
    return ZoneInfo(name)


class AMLPatternDetector:
    def __init__(self, config: ScreeningConfig | None = None) -> None:
        self.config = config or default_config
        self._business_tz = _business_timezone(self.config.aml.business_timezone)

    async def detect(self, transaction: Transaction, window: TransactionWindow) -> AMLResult:
        ac = self.config.aml
        flags: set[str] = set()

        if is_round_number(transaction.amount, ac.round_number_divisors):
            flags.add(Flag.ROUND_NUMBER.value)

        if is_rapid_succession(window, ac.rapid_succession_max_count):
            flags.add(Flag.RAPID_SUCCESSION.value)

        if is_unusual_time(
            transaction,
            self._business_tz,
            ac.business_day_start_hour,
            ac.business_day_end_hour,
        ):
            flags.add(Flag.UNUSUAL_TIME.value)

        if is_structuring(transaction, window, ac.structuring_threshold):
            flags.add(Flag.STRUCTURING.value)
            logger.info(
                "structuring_detected",
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                window_total=str(window.sum_24h + transaction.amount),
                window_count=window.count_24h + 1,
            )

        risk_level = RiskLevel.HIGH if flags else RiskLevel.LOW
        requires_reporting = bool(flags & REPORTABLE_FLAGS)

        if flags:
            logger.info(
                "aml_patterns_flagged",
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                flags=sorted(flags),
                requires_reporting=requires_reporting,
            )

        return AMLResult(
            risk_level=risk_level,
            flags=frozenset(flags),
            requires_reporting=requires_reporting,
        )
