"""Screening orchestrator: one snapshot, four concurrent checks, one decision.

Every check runs against the same read-only snapshot (window, user limits,
counterparty flags) taken once at the start of the call. Checks that fail or
overrun their deadline are recorded as unavailable and contribute HIGH, so an
unverifiable transaction is held for review instead of approved.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import structlog

from .aml import AMLPatternDetector
from .config import ScreeningConfig, default_config
from .errors import InvalidTransactionError
from .limits import LimitEnforcer, UserLimitsProvider
from .models import (
    CheckName,
    CheckOutcome,
    ComplianceResult,
    Flag,
    RiskLevel,
    RiskScoreResult,
    SanctionsResult,
    Transaction,
    UserLimits,
)
from .reporting import ReportingTrigger
from .review_queue import ManualReviewQueue
from .risk_scoring import CounterpartyHistory, RiskScorer
from .sanctions import SanctionsScreener
from .window import TransactionWindow, TransactionWindowStore

logger = structlog.get_logger()


def validate_transaction(transaction: Transaction) -> None:
    """Raise InvalidTransactionError if the transaction cannot be screened."""
    problems: list[str] = []
    if not transaction.transaction_id or not transaction.transaction_id.strip():
        problems.append("transaction_id is blank")
    if not transaction.user_id or not transaction.user_id.strip():
        problems.append("user_id is blank")
    try:
        if transaction.amount is None or not transaction.amount.is_finite():
            problems.append("amount is missing or not a finite number")
        elif transaction.amount < Decimal("0"):
            problems.append("amount is negative")
    except (InvalidOperation, AttributeError):
        problems.append("amount is not a decimal")
    currency = transaction.currency or ""
    if not currency:
        problems.append("currency is blank")
    elif len(currency) != 3 or not currency.isalpha():
        problems.append(f"currency {currency!r} is not an ISO-4217 code")
    if problems:
        raise InvalidTransactionError(transaction.transaction_id, problems)


@dataclass(frozen=True)
class _Snapshot:
    window: TransactionWindow | None
    user_limits: UserLimits | None
    prior_counterparty_flags: int | None


class ScreeningOrchestrator:
    def __init__(
        self,
        aml: AMLPatternDetector,
        sanctions: SanctionsScreener,
        limits: LimitEnforcer,
        risk: RiskScorer,
        window_store: TransactionWindowStore,
        limits_provider: UserLimitsProvider,
        counterparty_history: CounterpartyHistory,
        reporting: ReportingTrigger | None = None,
        review_queue: ManualReviewQueue | None = None,
        config: ScreeningConfig | None = None,
    ) -> None:
        self.aml = aml
        self.sanctions = sanctions
        self.limits = limits
        self.risk = risk
        self.window_store = window_store
        self.limits_provider = limits_provider
        self.counterparty_history = counterparty_history
        self.reporting = reporting
        self.review_queue = review_queue
        self.config = config or default_config

    async def screen(self, transaction: Transaction) -> ComplianceResult:
        """Screen a transaction and fire any side effects its outcome requires.

        Raises:
            InvalidTransactionError: the transaction is structurally invalid.
                Sub-check failures never raise.
        """
        validate_transaction(transaction)
        oc = self.config.orchestration

        try:
            outcomes = await asyncio.wait_for(
                self._run_checks(transaction), timeout=oc.overall_timeout_seconds
            )
        except TimeoutError:
            logger.warning(
                "screening_timeout",
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                timeout_seconds=oc.overall_timeout_seconds,
            )
            result = ComplianceResult.from_level(
                transaction.transaction_id,
                RiskLevel.HIGH,
                flags={Flag.SCREENING_TIMEOUT.value},
            )
        else:
            result = merge_outcomes(transaction.transaction_id, outcomes)

        await self._apply_side_effects(transaction, result)

        logger.info(
            "transaction_screened",
            transaction_id=transaction.transaction_id,
            user_id=transaction.user_id,
            risk_level=result.risk_level.value,
            decision=result.decision.value,
            flags=sorted(result.flags),
            requires_reporting=result.requires_reporting,
        )
        return result

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _run_checks(self, transaction: Transaction) -> list[CheckOutcome]:
        snapshot = await self._take_snapshot(transaction)
        window = snapshot.window
        user_limits = snapshot.user_limits
        prior_flags = snapshot.prior_counterparty_flags

        # A check whose snapshot inputs could not be read has no runner
        runners: dict[CheckName, Callable[[], Awaitable] | None] = {
            CheckName.AML: None,
            CheckName.SANCTIONS: lambda: self.sanctions.check(transaction),
            CheckName.LIMITS: None,
            CheckName.RISK: None,
        }
        if window is not None:
            runners[CheckName.AML] = lambda: self.aml.detect(transaction, window)
            if user_limits is not None:
                runners[CheckName.LIMITS] = lambda: self.limits.check_limits(
                    transaction, window, user_limits
                )
            if prior_flags is not None:
                runners[CheckName.RISK] = lambda: self.risk.evaluate(
                    transaction, window, prior_flags
                )

        return list(
            await asyncio.gather(
                *(self._run_check(check, transaction, run) for check, run in runners.items())
            )
        )

    async def _take_snapshot(self, transaction: Transaction) -> _Snapshot:
        timeout = self.config.orchestration.snapshot_timeout_seconds
        window, user_limits, prior_flags = await asyncio.gather(
            self._read_snapshot_part(
                "window",
                transaction,
                lambda: self.window_store.snapshot(
                    transaction.user_id,
                    transaction.timestamp,
                    exclude_transaction_id=transaction.transaction_id,
                ),
                timeout,
            ),
            self._read_snapshot_part(
                "user_limits",
                transaction,
                lambda: self.limits_provider.get_limits(transaction.user_id),
                timeout,
            ),
            self._read_snapshot_part(
                "counterparty_history",
                transaction,
                lambda: self.counterparty_history.prior_flag_count(
                    transaction.beneficiary, transaction.transaction_id
                ),
                timeout,
            ),
        )
        return _Snapshot(window=window, user_limits=user_limits, prior_counterparty_flags=prior_flags)

    @staticmethod
    async def _read_snapshot_part(
        part: str,
        transaction: Transaction,
        read: Callable[[], Awaitable],
        timeout: float,
    ):
        try:
            return await asyncio.wait_for(read(), timeout=timeout)
        except Exception:
            logger.warning(
                "screening_snapshot_unavailable",
                part=part,
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                exc_info=True,
            )
            return None

    async def _run_check(
        self,
        check: CheckName,
        transaction: Transaction,
        run: Callable[[], Awaitable] | None,
    ) -> CheckOutcome:
        if run is None:
            logger.warning(
                "screening_check_unavailable",
                check=check.value,
                transaction_id=transaction.transaction_id,
                reason="snapshot_unavailable",
            )
            return CheckOutcome.unavailable(check)

        timeout = self.config.orchestration.check_timeout_seconds
        try:
            result = await asyncio.wait_for(run(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "screening_check_unavailable",
                check=check.value,
                transaction_id=transaction.transaction_id,
                reason="timeout",
                timeout_seconds=timeout,
            )
            return CheckOutcome.unavailable(check)
        except Exception as exc:
            logger.warning(
                "screening_check_unavailable",
                check=check.value,
                transaction_id=transaction.transaction_id,
                reason="error",
                error=f"{type(exc).__name__}: {exc}",
            )
            return CheckOutcome.unavailable(check)
        return CheckOutcome.from_result(check, result)

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _apply_side_effects(self, transaction: Transaction, result: ComplianceResult) -> None:
        if result.requires_reporting and self.reporting is not None:
            try:
                await self.reporting.submit(transaction, result)
            except Exception:
                logger.exception(
                    "report_submission_failed",
                    transaction_id=transaction.transaction_id,
                )

        if result.requires_manual_review and self.review_queue is not None:
            try:
                await self.review_queue.enqueue(transaction, result)
            except Exception:
                logger.exception(
                    "review_enqueue_failed",
                    transaction_id=transaction.transaction_id,
                )


def merge_outcomes(transaction_id: str, outcomes: list[CheckOutcome]) -> ComplianceResult:
    """Combine sub-check outcomes: max level, union of flags, any() reporting."""
    risk_level = RiskLevel.highest(o.risk_level for o in outcomes)
    flags: set[str] = set()
    for outcome in outcomes:
        flags |= outcome.flags

    risk_score = None
    sanctions_matches = []
    for outcome in outcomes:
        if isinstance(outcome.detail, RiskScoreResult):
            risk_score = outcome.detail.assessment.score
        elif isinstance(outcome.detail, SanctionsResult):
            sanctions_matches = list(outcome.detail.matches)

    return ComplianceResult.from_level(
        transaction_id,
        risk_level,
        flags=flags,
        requires_reporting=any(o.requires_reporting for o in outcomes),
        risk_score=risk_score,
        sanctions_matches=sanctions_matches,
    )
