"""Transaction compliance screening domain."""

from .aml import AMLPatternDetector
from .errors import InvalidTransactionError, ReviewStateError, SanctionsProviderError
from .limits import InMemoryUserLimitsProvider, LimitEnforcer
from .models import (
    ComplianceResult,
    Decision,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    SanctionsMatch,
    Transaction,
    UserLimits,
    UserProfile,
)
from .orchestrator import ScreeningOrchestrator
from .reporting import ReportingTrigger
from .review_queue import ManualReviewQueue
from .risk_scoring import CounterpartyHistory, RiskScorer
from .sanctions import SanctionsScreener
from .window import TransactionWindow

__all__ = [
    "AMLPatternDetector",
    "ComplianceResult",
    "CounterpartyHistory",
    "Decision",
    "InMemoryUserLimitsProvider",
    "InvalidTransactionError",
    "LimitEnforcer",
    "ManualReviewQueue",
    "ReportingTrigger",
    "ReviewStateError",
    "RiskAssessment",
    "RiskFactor",
    "RiskLevel",
    "RiskScorer",
    "SanctionsMatch",
    "SanctionsProviderError",
    "SanctionsScreener",
    "ScreeningOrchestrator",
    "Transaction",
    "TransactionWindow",
    "UserLimits",
    "UserProfile",
]
