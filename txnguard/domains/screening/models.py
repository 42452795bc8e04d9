"""Pydantic models for the screening domain."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_serializer,
    field_validator,
)


class RiskLevel(StrEnum):
    """Closed, totally ordered risk scale: LOW < MEDIUM < HIGH < BLOCKED.

    Members compare by rank rather than by their string value, so the
    builtin ``max()`` is the one combination rule for levels.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BLOCKED = "blocked"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def highest(cls, levels: Iterable["RiskLevel"]) -> "RiskLevel":
        return max(levels, default=cls.LOW)


_LEVEL_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.BLOCKED: 3,
}


class Decision(StrEnum):
    APPROVE = "approve"
    REVIEW = "review"
    BLOCK = "block"


class CheckName(StrEnum):
    AML = "AML"
    SANCTIONS = "SANCTIONS"
    LIMITS = "LIMITS"
    RISK = "RISK"

    @property
    def unavailable_flag(self) -> str:
        return f"{self.value}_UNAVAILABLE"


class Flag(StrEnum):
    ROUND_NUMBER = "ROUND_NUMBER"
    RAPID_SUCCESSION = "RAPID_SUCCESSION"
    UNUSUAL_TIME = "UNUSUAL_TIME"
    STRUCTURING = "STRUCTURING"
    # Reserved for chained-transfer detection; always triggers reporting
    LAYERING = "LAYERING"
    SANCTIONS_MATCH = "SANCTIONS_MATCH"
    SANCTIONED_COUNTRY = "SANCTIONED_COUNTRY"
    SINGLE_TRANSACTION_LIMIT_EXCEEDED = "SINGLE_TRANSACTION_LIMIT_EXCEEDED"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    MONTHLY_LIMIT_EXCEEDED = "MONTHLY_LIMIT_EXCEEDED"
    SCREENING_TIMEOUT = "SCREENING_TIMEOUT"


class CustomerTier(StrEnum):
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"


class Transaction(BaseModel):
    """A transaction submitted for screening. Never mutated by the engine."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    user_id: str
    amount: Decimal = Field(ge=0)
    currency: str
    timestamp: datetime
    beneficiary: str
    purpose: str = ""
    country: str
    payer_name: str | None = None

    @field_validator("currency", "country")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class UserLimits(BaseModel):
    single_transaction_limit: Decimal = Field(ge=0)
    daily_limit: Decimal = Field(ge=0)
    monthly_limit: Decimal = Field(ge=0)


class UserProfile(BaseModel):
    user_id: str
    identity_verified: bool = False
    tier: CustomerTier = CustomerTier.FREE


class RiskFactor(BaseModel):
    name: str
    score: float = Field(ge=0.0, le=1.0)
    description: str = ""


class RiskAssessment(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    level: RiskLevel
    factors: dict[str, RiskFactor] = Field(default_factory=dict)


class SanctionsMatch(BaseModel):
    list_name: str
    matched_name: str
    party: str = ""
    confidence: float = Field(ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Sub-check results
# ---------------------------------------------------------------------------


class AMLResult(BaseModel):
    risk_level: RiskLevel = RiskLevel.LOW
    flags: frozenset[str] = frozenset()
    requires_reporting: bool = False


class SanctionsResult(BaseModel):
    risk_level: RiskLevel = RiskLevel.LOW
    flags: frozenset[str] = frozenset()
    matches: list[SanctionsMatch] = Field(default_factory=list)
    requires_reporting: bool = False


class LimitCheckResult(BaseModel):
    within_single: bool = True
    within_daily: bool = True
    within_monthly: bool = True
    risk_level: RiskLevel = RiskLevel.LOW
    flags: frozenset[str] = frozenset()
    requires_reporting: bool = False


class RiskScoreResult(BaseModel):
    assessment: RiskAssessment
    risk_level: RiskLevel = RiskLevel.LOW
    flags: frozenset[str] = frozenset()
    requires_reporting: bool = False


@dataclass(frozen=True)
class CheckOutcome:
    """One sub-check's contribution to the merged result."""

    check: CheckName
    risk_level: RiskLevel
    flags: frozenset[str]
    requires_reporting: bool
    detail: AMLResult | SanctionsResult | LimitCheckResult | RiskScoreResult | None = None

    @classmethod
    def from_result(
        cls,
        check: CheckName,
        result: AMLResult | SanctionsResult | LimitCheckResult | RiskScoreResult,
    ) -> "CheckOutcome":
        return cls(
            check=check,
            risk_level=result.risk_level,
            flags=frozenset(result.flags),
            requires_reporting=result.requires_reporting,
            detail=result,
        )

    @classmethod
    def unavailable(cls, check: CheckName) -> "CheckOutcome":
        return cls(
            check=check,
            risk_level=RiskLevel.HIGH,
            flags=frozenset({check.unavailable_flag}),
            requires_reporting=False,
        )


# ---------------------------------------------------------------------------
# Engine output
# ---------------------------------------------------------------------------


class ComplianceResult(BaseModel):
    """The engine's only output, used by the payment collaborator to gate settlement.

    ``approved`` is true for LOW and MEDIUM only. Reading it as "not BLOCKED"
    would approve HIGH, but HIGH covers both transactions held for manual
    review and fail-closed outcomes (unavailable checks, ``SCREENING_TIMEOUT``),
    and neither may proceed without a reviewer.
    """

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    approved: bool
    risk_level: RiskLevel
    flags: frozenset[str] = frozenset()
    requires_manual_review: bool = False
    requires_reporting: bool = False
    risk_score: float | None = None
    sanctions_matches: tuple[SanctionsMatch, ...] = ()

    @classmethod
    def from_level(
        cls,
        transaction_id: str,
        risk_level: RiskLevel,
        flags: Iterable[str] = (),
        requires_reporting: bool = False,
        risk_score: float | None = None,
        sanctions_matches: Iterable[SanctionsMatch] = (),
    ) -> "ComplianceResult":
        return cls(
            transaction_id=transaction_id,
            approved=risk_level < RiskLevel.HIGH,
            risk_level=risk_level,
            flags=frozenset(flags),
            requires_manual_review=risk_level == RiskLevel.HIGH,
            requires_reporting=requires_reporting or risk_level == RiskLevel.BLOCKED,
            risk_score=risk_score,
            sanctions_matches=tuple(sanctions_matches),
        )

    @computed_field
    @property
    def decision(self) -> Decision:
        if self.risk_level == RiskLevel.BLOCKED:
            return Decision.BLOCK
        if self.requires_manual_review:
            return Decision.REVIEW
        return Decision.APPROVE

    @field_serializer("flags")
    def _sorted_flags(self, flags: frozenset[str]) -> list[str]:
        return sorted(flags)
