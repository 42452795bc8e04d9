"""Tests for composite risk scoring."""

from datetime import timedelta
from decimal import Decimal

import pytest

from tests.conftest import NOON, make_history, make_txn
from txnguard.domains.screening.config import ScreeningConfig
from txnguard.domains.screening.models import ComplianceResult, RiskLevel
from txnguard.domains.screening.review_queue import (
    Disposition,
    InMemoryReviewStore,
    ManualReviewQueue,
)
from txnguard.domains.screening.risk_scoring import (
    CounterpartyHistory,
    RiskScorer,
    level_for_score,
)
from txnguard.domains.screening.window import TransactionWindow


def _window(history) -> TransactionWindow:
    return TransactionWindow.build("user-001", NOON, history)


class TestLevelForScore:
    @pytest.mark.parametrize(
        "score, level",
        [
            (0.0, RiskLevel.LOW),
            (0.2999, RiskLevel.LOW),
            (0.30, RiskLevel.MEDIUM),
            (0.60, RiskLevel.HIGH),
            (0.85, RiskLevel.BLOCKED),
            (1.0, RiskLevel.BLOCKED),
        ],
    )
    def test_breakpoints(self, score, level):
        assert level_for_score(score) is level


class TestRiskScorer:
    @pytest.fixture()
    def scorer(self):
        return RiskScorer()

    def test_new_user_baseline(self, scorer):
        assessment = scorer.score(make_txn(), _window([]))
        # 0.30*0.05 + 0.25*0.2 + 0.25*0.2 + 0.20*0.1
        assert assessment.score == pytest.approx(0.135)
        assert assessment.level is RiskLevel.LOW
        assert set(assessment.factors) == {"velocity", "geographic", "behavioral", "counterparty"}

    def test_high_risk_country(self, scorer):
        assessment = scorer.score(make_txn(country="AF"), _window([]))
        assert assessment.factors["geographic"].score == 1.0

    def test_elevated_risk_country(self, scorer):
        assessment = scorer.score(make_txn(country="VE"), _window([]))
        assert assessment.factors["geographic"].score == 0.6

    def test_new_country_for_established_user(self, scorer):
        history = make_history(["100"] * 3, country="HT")
        assessment = scorer.score(make_txn(country="US"), _window(history))
        assert assessment.factors["geographic"].score == 0.4

    def test_velocity_saturates_on_volume(self, scorer):
        history = make_history(["4100", "4200"])
        assessment = scorer.score(make_txn(amount=Decimal("2100")), _window(history))
        assert assessment.factors["velocity"].score == 1.0

    def test_behavioral_outlier(self, scorer):
        history = make_history(
            ["100", "110", "95", "105", "98", "102"],
            start=NOON - timedelta(days=20),
            step=timedelta(days=2),
        )
        typical = scorer.score(make_txn(amount=Decimal("101")), _window(history))
        outlier = scorer.score(make_txn(amount=Decimal("900")), _window(history))
        assert typical.factors["behavioral"].score == 0.0
        assert outlier.factors["behavioral"].score == 1.0

    def test_sparse_baseline(self, scorer):
        assessment = scorer.score(make_txn(), _window(make_history(["100"] * 4)))
        assert assessment.factors["behavioral"].score == 0.2

    def test_counterparty_prior_flags(self, scorer):
        assessment = scorer.score(make_txn(), _window([]), prior_counterparty_flags=2)
        assert assessment.factors["counterparty"].score == 0.5

    def test_known_counterparty(self, scorer):
        history = make_history(["100"])
        assessment = scorer.score(make_txn(), _window(history))
        assert assessment.factors["counterparty"].score == 0.0

    def test_score_is_bounded(self, scorer):
        history = make_history(["9000"] * 25, step=timedelta(minutes=5))
        assessment = scorer.score(
            make_txn(amount=Decimal("900000"), country="KP", beneficiary="Unknown"),
            _window(history),
            prior_counterparty_flags=10,
        )
        assert 0.0 <= assessment.score <= 1.0
        assert assessment.level is RiskLevel.BLOCKED

    def test_custom_weights(self):
        config = ScreeningConfig()
        config.risk_scoring.velocity_weight = 0.0
        config.risk_scoring.geographic_weight = 1.0
        config.risk_scoring.behavioral_weight = 0.0
        config.risk_scoring.counterparty_weight = 0.0
        assessment = RiskScorer(config).score(make_txn(country="IR"), _window([]))
        assert assessment.score == 1.0

    @pytest.mark.asyncio
    async def test_evaluate_flags_elevated_level(self, scorer):
        result = await scorer.evaluate(
            make_txn(country="AF"), _window([]), prior_counterparty_flags=4
        )
        # 0.015 + 0.25 + 0.05 + 0.20 = 0.515
        assert result.risk_level is RiskLevel.MEDIUM
        assert result.flags == frozenset({"RISK_SCORE_MEDIUM"})
        assert result.requires_reporting is False

    @pytest.mark.asyncio
    async def test_evaluate_low_has_no_flags(self, scorer):
        result = await scorer.evaluate(make_txn(), _window([]))
        assert result.flags == frozenset()


class TestCounterpartyHistory:
    @pytest.mark.asyncio
    async def test_counts_rejected_reviews_for_beneficiary(self):
        store = InMemoryReviewStore()
        queue = ManualReviewQueue(store)
        beneficiaries = {
            "tx-1": "Acme  Hardware",
            "tx-2": "acme hardware",
            "tx-3": "Acme Hardware",
            "tx-4": "Other Shop",
            "tx-5": "Acme Hardware",
        }
        for tx_id, beneficiary in beneficiaries.items():
            await queue.enqueue(
                make_txn(transaction_id=tx_id, beneficiary=beneficiary),
                ComplianceResult.from_level(tx_id, RiskLevel.HIGH),
            )
        await queue.resolve("tx-1", Disposition.REJECTED, reviewer="analyst-7")
        await queue.resolve("tx-2", Disposition.REJECTED, reviewer="analyst-7")
        await queue.resolve("tx-3", Disposition.APPROVED, reviewer="analyst-7")
        await queue.resolve("tx-4", Disposition.REJECTED, reviewer="analyst-7")
        # tx-5 stays pending

        history = CounterpartyHistory(store)
        assert await history.prior_flag_count("ACME HARDWARE", "tx-9") == 2
        assert await history.prior_flag_count("Acme Hardware", "tx-1") == 1
        assert await history.prior_flag_count("Nobody", "tx-9") == 0
