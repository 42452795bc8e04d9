"""Composite transaction risk scoring.

Computes a risk score (0.0-1.0) from four independent factors:
  1. Velocity      (30%) 24h frequency and volume against saturation points
  2. Geographic    (25%) FATF high-risk and elevated-risk jurisdictions
  3. Behavioral    (25%) amount against the user's 30-day profile
  4. Counterparty  (20%) prior flags against the beneficiary

Risk levels (breakpoints configurable, strictly increasing):
  low      (0.00-0.30)
  medium   (0.30-0.60)
  high     (0.60-0.85)
  blocked  (0.85-1.00)
"""

import statistics

import structlog

from .config import ScreeningConfig, default_config
from .models import RiskAssessment, RiskFactor, RiskLevel, RiskScoreResult, Transaction
from .review_queue import ReviewStore, counterparty_key
from .window import TransactionWindow

logger = structlog.get_logger()


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


# ---------------------------------------------------------------------------
# Counterparty history
# ---------------------------------------------------------------------------


class CounterpartyHistory:
    """Reviewer-confirmed flags per beneficiary, across all users.

    Backed by rejected review items. Screening only reads it, and counts
    exclude the transaction being screened.
    """

    def __init__(self, store: ReviewStore) -> None:
        self.store = store

    async def prior_flag_count(self, beneficiary: str, exclude_transaction_id: str) -> int:
        return await self.store.count_rejected(
            counterparty_key(beneficiary), exclude_transaction_id
        )


# ---------------------------------------------------------------------------
# Individual factor scoring functions
# ---------------------------------------------------------------------------


def _score_velocity(
    transaction: Transaction, window: TransactionWindow, config: ScreeningConfig
) -> RiskFactor:
    rc = config.risk_scoring
    count = window.count_24h + 1
    volume = window.sum_24h + transaction.amount
    frequency_score = _clamp(count / rc.velocity_saturation_count)
    volume_score = _clamp(float(volume / rc.daily_volume_reference))
    return RiskFactor(
        name="velocity",
        score=max(frequency_score, volume_score),
        description=f"{count} transaction(s) totaling {volume:,.2f} in the trailing 24h.",
    )


def _score_geographic(
    transaction: Transaction, window: TransactionWindow, config: ScreeningConfig
) -> RiskFactor:
    rc = config.risk_scoring
    country = transaction.country
    if country in rc.high_risk_countries:
        score = rc.high_risk_country_score
        description = f"{country} is a high-risk jurisdiction."
    elif country in rc.elevated_risk_countries:
        score = rc.elevated_risk_country_score
        description = f"{country} is an elevated-risk jurisdiction."
    else:
        score = rc.default_country_score
        description = f"{country} carries baseline geographic risk."

    history = window.countries_30d
    if history and country not in history and score < rc.new_country_score:
        score = rc.new_country_score
        description = f"{country} is new for this user in the past 30 days."

    return RiskFactor(name="geographic", score=_clamp(score), description=description)


def _score_behavioral(
    transaction: Transaction, window: TransactionWindow, config: ScreeningConfig
) -> RiskFactor:
    rc = config.risk_scoring
    amounts = [float(a) for a in window.amounts_30d]
    if len(amounts) < rc.min_baseline_transactions:
        return RiskFactor(
            name="behavioral",
            score=rc.sparse_baseline_score,
            description=(
                f"Only {len(amounts)} transaction(s) in the past 30 days; "
                f"baseline not yet established."
            ),
        )

    mean = statistics.fmean(amounts)
    # Floor the spread so a perfectly regular history does not make every
    # small deviation look extreme
    spread = max(statistics.pstdev(amounts), mean * 0.10, 1.0)
    zscore = (float(transaction.amount) - mean) / spread
    return RiskFactor(
        name="behavioral",
        score=_clamp((zscore - 1.0) / 4.0),
        description=f"Amount is {zscore:.1f} standard deviations from the 30-day mean of {mean:,.2f}.",
    )


def _score_counterparty(
    transaction: Transaction,
    window: TransactionWindow,
    prior_flags: int,
    config: ScreeningConfig,
) -> RiskFactor:
    rc = config.risk_scoring
    if prior_flags > 0:
        return RiskFactor(
            name="counterparty",
            score=_clamp(prior_flags * rc.counterparty_flag_step),
            description=f"Beneficiary appears on {prior_flags} previously flagged transaction(s).",
        )
    if transaction.beneficiary not in window.beneficiaries_30d:
        return RiskFactor(
            name="counterparty",
            score=rc.new_counterparty_score,
            description="Beneficiary is new for this user.",
        )
    return RiskFactor(name="counterparty", score=0.0, description="Known beneficiary, no prior flags.")


# ---------------------------------------------------------------------------
# Composite scoring
# ---------------------------------------------------------------------------


def level_for_score(score: float, config: ScreeningConfig = default_config) -> RiskLevel:
    rc = config.risk_scoring
    if score < rc.low_max:
        return RiskLevel.LOW
    if score < rc.medium_max:
        return RiskLevel.MEDIUM
    if score < rc.high_max:
        return RiskLevel.HIGH
    return RiskLevel.BLOCKED


class RiskScorer:
    def __init__(self, config: ScreeningConfig | None = None) -> None:
        self.config = config or default_config

    def score(
        self,
        transaction: Transaction,
        window: TransactionWindow,
        prior_counterparty_flags: int = 0,
    ) -> RiskAssessment:
        """Weighted sum of the four factors, mapped onto a RiskLevel."""
        rc = self.config.risk_scoring
        factors = {
            f.name: f
            for f in (
                _score_velocity(transaction, window, self.config),
                _score_geographic(transaction, window, self.config),
                _score_behavioral(transaction, window, self.config),
                _score_counterparty(transaction, window, prior_counterparty_flags, self.config),
            )
        }
        composite = (
            rc.velocity_weight * factors["velocity"].score
            + rc.geographic_weight * factors["geographic"].score
            + rc.behavioral_weight * factors["behavioral"].score
            + rc.counterparty_weight * factors["counterparty"].score
        )
        composite = round(_clamp(composite), 6)
        return RiskAssessment(
            score=composite,
            level=level_for_score(composite, self.config),
            factors=factors,
        )

    async def evaluate(
        self,
        transaction: Transaction,
        window: TransactionWindow,
        prior_counterparty_flags: int = 0,
    ) -> RiskScoreResult:
        assessment = self.score(transaction, window, prior_counterparty_flags)
        flags: frozenset[str] = frozenset()
        if assessment.level >= RiskLevel.MEDIUM:
            flags = frozenset({f"RISK_SCORE_{assessment.level.name}"})
            logger.info(
                "elevated_risk_score",
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                score=assessment.score,
                level=assessment.level.value,
                factors={name: f.score for name, f in assessment.factors.items()},
            )
        return RiskScoreResult(assessment=assessment, risk_level=assessment.level, flags=flags)
