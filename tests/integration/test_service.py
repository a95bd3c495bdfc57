"""
Integration tests for PromotionService against a file-backed SQLite database.
"""

import asyncio

import pytest

from promotion_engine.core.data_types import AuditAction, PromotionAction, Recommendation, TriggerType
from promotion_engine.core.exceptions import ExperimentNotFoundError
from promotion_engine.core.locks import ExperimentLockRegistry
from promotion_engine.promotion.service import PromotionService


@pytest.fixture
def service(settings, db_manager, dispatcher):
    """Service wired to the test database and a recording dispatcher."""
    return PromotionService(
        settings=settings,
        db_manager=db_manager,
        dispatcher=dispatcher,
        lock_registry=ExperimentLockRegistry(),
    )


@pytest.mark.integration
class TestEvaluation:
    """Tests for evaluation through the service."""

    def test_winner_is_promotable(self, service, seed, winning_variants):
        """A clear winner with enough data is recommended for promotion."""
        seed("checkout_flow", winning_variants)
        eligibility = asyncio.run(service.check_eligibility("checkout_flow"))
        assert eligibility.recommendation == Recommendation.PROMOTE
        assert eligibility.eligible is True
        assert eligibility.winning_variant == "treatment"
        assert eligibility.control_variant == "control"
        assert eligibility.confidence_level >= 99.0

    def test_evaluate_returns_metrics_and_alerts(self, service, seed, winning_variants):
        """Evaluation exposes the metrics and threshold alerts it used."""
        seed("checkout_flow", winning_variants)
        outcome = asyncio.run(service.evaluate("checkout_flow"))
        assert outcome.rules.name == "aggressive"
        assert sorted(m.variant_name for m in outcome.metrics) == ["control", "treatment"]
        assert sum(m.total_requests for m in outcome.metrics) == 3000
        assert [a.variant_name for a in outcome.alerts] == ["control"]

    def test_overrides_tighten_rules(self, service, seed, winning_variants):
        """Per-call overrides are applied on top of the preset."""
        seed("checkout_flow", winning_variants)
        eligibility = asyncio.run(service.check_eligibility("checkout_flow", overrides={"min_sample_size": 5000}))
        assert eligibility.recommendation != Recommendation.PROMOTE
        assert eligibility.eligible is False

    def test_unknown_experiment(self, service):
        """Unknown experiments raise ExperimentNotFoundError."""
        with pytest.raises(ExperimentNotFoundError):
            asyncio.run(service.check_eligibility("missing"))


@pytest.mark.integration
class TestOperations:
    """Tests for promotion, history and assignment through the service."""

    def test_manual_promote_records_operator(self, service, seed, winning_variants):
        """Operator promotions are audited as manual with the operator id."""
        seed("checkout_flow", winning_variants)
        result = asyncio.run(service.promote("checkout_flow", operator_id="alice"))
        assert result.action == PromotionAction.PROMOTED
        assert result.audit_record.triggered_by == TriggerType.MANUAL
        assert result.audit_record.operator_id == "alice"
        assert result.audit_record.reason.startswith("Promoted by operator alice")

    def test_history_newest_first(self, service, seed, winning_variants):
        """History lists the rollback before the promotion it reverted."""
        seed("checkout_flow", winning_variants)
        asyncio.run(service.promote("checkout_flow", operator_id="alice"))
        asyncio.run(service.rollback("checkout_flow", "conversion dropped", operator_id="bob"))

        history = asyncio.run(service.get_promotion_history("checkout_flow"))
        assert [r.action for r in history] == [AuditAction.ROLLED_BACK, AuditAction.PROMOTED]
        assert history[1].rolled_back_at is not None
        assert history[0].reverts_audit_id == history[1].audit_id

    def test_history_limit(self, service, seed, winning_variants):
        """History honours the limit."""
        seed("checkout_flow", winning_variants)
        asyncio.run(service.promote("checkout_flow"))
        asyncio.run(service.rollback("checkout_flow", "regression"))
        assert len(asyncio.run(service.get_promotion_history("checkout_flow", limit=1))) == 1

    def test_assignment_follows_promotion(self, service, seed, winning_variants):
        """Promotion invalidates cached variants so every user gets the winner."""
        seed("checkout_flow", winning_variants)
        before = {asyncio.run(service.assign_variant(f"user-{i}", "checkout_flow")).name for i in range(50)}
        assert before == {"control", "treatment"}

        asyncio.run(service.promote("checkout_flow"))
        after = {asyncio.run(service.assign_variant(f"user-{i}", "checkout_flow")).name for i in range(50)}
        assert after == {"treatment"}

    def test_assignment_stable(self, service, seed, winning_variants):
        """The same user always gets the same variant."""
        seed("checkout_flow", winning_variants)
        first = asyncio.run(service.assign_variant("user-7", "checkout_flow"))
        second = asyncio.run(service.assign_variant("user-7", "checkout_flow"))
        assert first.name == second.name

    def test_assignment_inactive(self, service, seed):
        """Stopped or unknown experiments assign nobody."""
        seed("stopped", {"control": (100.0, 0, 0, 0.0)}, is_active=False)
        assert asyncio.run(service.assign_variant("user-1", "stopped")) is None
        assert asyncio.run(service.assign_variant("user-1", "missing")) is None

    def test_count_recent_promotions(self, service, seed, winning_variants):
        """Promotions count toward the window until rolled back."""
        seed("checkout_flow", winning_variants)
        asyncio.run(service.promote("checkout_flow"))
        assert asyncio.run(service.count_recent_promotions(60)) == 1
        asyncio.run(service.rollback("checkout_flow", "regression"))
        assert asyncio.run(service.count_recent_promotions(60)) == 0


@pytest.mark.integration
class TestMonitoring:
    """Tests for candidate listing and monitoring read models."""

    def test_candidates_skip_promoted_and_inactive(self, service, seed):
        """Fully promoted and stopped experiments are not candidates."""
        seed("running", {"control": (50.0, 0, 0, 0.0), "treatment": (50.0, 0, 0, 0.0)}, started_hours_ago=5)
        seed("done", {"control": (0.0, 0, 0, 0.0), "treatment": (100.0, 0, 0, 0.0)}, started_hours_ago=10)
        seed("stopped", {"control": (100.0, 0, 0, 0.0)}, is_active=False)
        names = [e.name for e in asyncio.run(service.list_candidate_experiments())]
        assert names == ["running"]

    def test_candidates_oldest_first(self, service, seed):
        """Candidates are ordered by start date."""
        seed("new", {"control": (50.0, 0, 0, 0.0), "treatment": (50.0, 0, 0, 0.0)}, started_hours_ago=1)
        seed("old", {"control": (50.0, 0, 0, 0.0), "treatment": (50.0, 0, 0, 0.0)}, started_hours_ago=30)
        names = [e.name for e in asyncio.run(service.list_candidate_experiments())]
        assert names == ["old", "new"]

    def test_compare_experiment(self, service, seed, winning_variants):
        """Comparison carries metrics, significance and alerts."""
        seed("checkout_flow", winning_variants)
        comparison = asyncio.run(service.compare_experiment("checkout_flow"))
        assert comparison.total_requests == 3000
        assert comparison.significance.has_significance is True
        assert comparison.significance.winner == "treatment"
        assert comparison.critical_alerts == []

    def test_monitoring_summary(self, service, seed, winning_variants):
        """Summary covers every running experiment."""
        seed("checkout_flow", winning_variants)
        seed("pricing_v2", {"control": (50.0, 200, 0, 80.0), "treatment": (50.0, 200, 0, 90.0)})
        summary = asyncio.run(service.get_monitoring_summary())
        assert sorted(c.experiment_name for c in summary.active_experiments) == ["checkout_flow", "pricing_v2"]
        assert summary.total_requests_24h == 3400
        assert summary.critical_alerts == []
