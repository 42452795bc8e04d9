"""Screening engine configuration.

Every threshold, window and weight used by the screening checks lives here.
Defaults carry the regulatory or policy basis for their value where one exists.

References:
- 31 CFR § 1010.311: Currency transaction reports above $10,000
- 31 USC § 5324: Structuring transactions to evade reporting requirements
- FATF Recommendation 19: Higher-risk countries
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal

from .models import CustomerTier, UserLimits


@dataclass
class AMLPatternConfig:
    """Pattern detectors for individual and aggregate behavior."""

    # Round-number divisors, in major currency units
    round_number_divisors: tuple[int, ...] = (1000, 500)

    # Transactions in the trailing 24h, current one included, above which
    # the user is flagged for rapid succession
    rapid_succession_max_count: int = 10

    # Business hours in the configured timezone: flag before 06:00 and from 23:00
    business_timezone: str = "UTC"
    business_day_start_hour: int = 6
    business_day_end_hour: int = 23

    # 31 CFR § 1010.311 reporting threshold. Structuring fires when the 24h
    # total strictly exceeds it while every single amount stays below it.
    structuring_threshold: Decimal = Decimal("10000")


@dataclass
class SanctionsConfig:
    """Denylist providers and match acceptance."""

    # Only matches strictly above this confidence count
    acceptance_threshold: float = 0.85

    # Per-provider deadline; an overrunning provider counts as failed. Capped
    # below the orchestrator's per-check deadline.
    provider_timeout_seconds: float = 0.15

    ofac_names: list[str] = field(default_factory=list)
    un_names: list[str] = field(default_factory=list)
    eu_names: list[str] = field(default_factory=list)

    # Comprehensively sanctioned jurisdictions (ISO 3166-1 alpha-2)
    sanctioned_countries: list[str] = field(
        default_factory=lambda: [
            "IR",  # Iran
            "KP",  # North Korea
            "SY",  # Syria
            "CU",  # Cuba
        ]
    )

    # Optional external list service; disabled when empty
    http_provider_url: str = ""
    http_provider_name: str = "EXTERNAL"
    http_timeout_seconds: float = 0.2


def _default_tier_limits() -> dict[str, UserLimits]:
    return {
        CustomerTier.FREE.value: UserLimits(
            single_transaction_limit=Decimal("5000"),
            daily_limit=Decimal("10000"),
            monthly_limit=Decimal("50000"),
        ),
        CustomerTier.PLUS.value: UserLimits(
            single_transaction_limit=Decimal("10000"),
            daily_limit=Decimal("25000"),
            monthly_limit=Decimal("100000"),
        ),
        CustomerTier.PRO.value: UserLimits(
            single_transaction_limit=Decimal("25000"),
            daily_limit=Decimal("50000"),
            monthly_limit=Decimal("250000"),
        ),
    }


@dataclass
class LimitsConfig:
    """Per-tier volume limits.

    Users without verified identity are held to the restricted set whatever
    their tier.
    """

    tier_limits: dict[str, UserLimits] = field(default_factory=_default_tier_limits)
    unverified_limits: UserLimits = field(
        default_factory=lambda: UserLimits(
            single_transaction_limit=Decimal("1000"),
            daily_limit=Decimal("2000"),
            monthly_limit=Decimal("5000"),
        )
    )


@dataclass
class RiskScoringConfig:
    """Composite risk score weights and level breakpoints."""

    # Factor weights (must sum to 1.0)
    velocity_weight: float = 0.30
    geographic_weight: float = 0.25
    behavioral_weight: float = 0.25
    counterparty_weight: float = 0.20

    # Level breakpoints on the 0.0-1.0 scale; above high_max is BLOCKED
    low_max: float = 0.30
    medium_max: float = 0.60
    high_max: float = 0.85

    # Velocity: 24h transaction count at which the factor saturates, and the
    # 24h volume treated as a full day of activity
    velocity_saturation_count: int = 20
    daily_volume_reference: Decimal = Decimal("10000")

    # Geographic tiers. FATF call-for-action and increased-monitoring lists
    # must be reviewed whenever FATF publishes an update.
    high_risk_countries: list[str] = field(
        default_factory=lambda: ["AF", "IR", "KP", "SY", "MM", "YE"]
    )
    elevated_risk_countries: list[str] = field(default_factory=lambda: ["RU", "VE", "CN"])
    high_risk_country_score: float = 1.0
    elevated_risk_country_score: float = 0.6
    default_country_score: float = 0.2
    new_country_score: float = 0.4

    # Behavioral baseline
    min_baseline_transactions: int = 5
    sparse_baseline_score: float = 0.2

    # Counterparty
    counterparty_flag_step: float = 0.25
    new_counterparty_score: float = 0.1

    def __post_init__(self) -> None:
        total = (
            self.velocity_weight
            + self.geographic_weight
            + self.behavioral_weight
            + self.counterparty_weight
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"risk factor weights must sum to 1.0, got {total:.3f}")
        if not 0.0 < self.low_max < self.medium_max < self.high_max <= 1.0:
            raise ValueError(
                "risk level breakpoints must be strictly increasing within (0, 1]: "
                f"{self.low_max}, {self.medium_max}, {self.high_max}"
            )


@dataclass
class OrchestrationConfig:
    """Latency budget for the payment path."""

    check_timeout_seconds: float = 0.25
    overall_timeout_seconds: float = 1.0
    snapshot_timeout_seconds: float = 0.25


@dataclass
class ReportingConfig:
    """Regulatory report delivery retries."""

    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0

    # Pending reports, including ones that exhausted their attempts, are
    # swept again on this interval
    redelivery_interval_seconds: float = 60.0


@dataclass
class ScreeningConfig:
    """Top-level screening configuration."""

    aml: AMLPatternConfig = field(default_factory=AMLPatternConfig)
    sanctions: SanctionsConfig = field(default_factory=SanctionsConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    risk_scoring: RiskScoringConfig = field(default_factory=RiskScoringConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    reporting: ReportingConfig = field(default_factory=ReportingConfig)

    @classmethod
    def from_env(cls) -> "ScreeningConfig":
        """Load config with env var overrides (SCREENING_ prefix)."""
        config = cls()

        # AML overrides
        if v := os.getenv("SCREENING_BUSINESS_TIMEZONE"):
            config.aml.business_timezone = v
        if v := os.getenv("SCREENING_RAPID_SUCCESSION_MAX"):
            config.aml.rapid_succession_max_count = int(v)
        if v := os.getenv("SCREENING_STRUCTURING_THRESHOLD"):
            config.aml.structuring_threshold = Decimal(v)

        # Sanctions overrides
        if v := os.getenv("SCREENING_SANCTIONS_ACCEPTANCE"):
            config.sanctions.acceptance_threshold = float(v)
        if v := os.getenv("SCREENING_SANCTIONED_COUNTRIES"):
            config.sanctions.sanctioned_countries = _split_codes(v)
        if v := os.getenv("SCREENING_SANCTIONS_HTTP_URL"):
            config.sanctions.http_provider_url = v
        if v := os.getenv("SCREENING_SANCTIONS_PROVIDER_TIMEOUT"):
            config.sanctions.provider_timeout_seconds = float(v)

        # Risk scoring overrides; breakpoints are re-validated below
        if v := os.getenv("SCREENING_RISK_LOW_MAX"):
            config.risk_scoring.low_max = float(v)
        if v := os.getenv("SCREENING_RISK_MEDIUM_MAX"):
            config.risk_scoring.medium_max = float(v)
        if v := os.getenv("SCREENING_RISK_HIGH_MAX"):
            config.risk_scoring.high_max = float(v)
        if v := os.getenv("SCREENING_HIGH_RISK_COUNTRIES"):
            config.risk_scoring.high_risk_countries = _split_codes(v)
        config.risk_scoring.__post_init__()

        # Orchestration overrides
        if v := os.getenv("SCREENING_CHECK_TIMEOUT"):
            config.orchestration.check_timeout_seconds = float(v)
        if v := os.getenv("SCREENING_OVERALL_TIMEOUT"):
            config.orchestration.overall_timeout_seconds = float(v)

        # Reporting overrides
        if v := os.getenv("SCREENING_REPORT_MAX_ATTEMPTS"):
            config.reporting.max_attempts = int(v)
        if v := os.getenv("SCREENING_REPORT_REDELIVERY_INTERVAL"):
            config.reporting.redelivery_interval_seconds = float(v)

        return config


def _split_codes(raw: str) -> list[str]:
    return [code.strip().upper() for code in raw.split(",") if code.strip()]


# Module-level default instance
default_config = ScreeningConfig()
