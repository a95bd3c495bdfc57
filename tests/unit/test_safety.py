"""
Unit tests for analysis/safety.py
"""

import logging

import pytest

from promotion_engine.analysis.safety import (
    SafetyCheckContext,
    SafetyCheckEngine,
    relative_improvement,
)
from promotion_engine.config.promotion_rules import AGGRESSIVE_RULES, PromotionRules
from promotion_engine.core.data_types import SafetyCheckName, Severity
from promotion_engine.monitoring.logger import TRACE


def _context(metrics_factory, rules=AGGRESSIVE_RULES, winner=None, control=None, **kwargs):
    defaults = {
        "experiment_name": "checkout_flow",
        "winner": winner or metrics_factory("treatment", requests=1500, errors=15),
        "control": control or metrics_factory("control", requests=1500, errors=75),
        "confidence_level": 99.9,
        "duration_hours": 48.0,
        "rules": rules,
    }
    defaults.update(kwargs)
    return SafetyCheckContext(**defaults)


def _by_name(results):
    return {r.name: r for r in results}


class TestRelativeImprovement:
    """Tests for relative improvement."""

    def test_improvement(self):
        """Improvement is relative to control."""
        assert relative_improvement(0.99, 0.95) == pytest.approx(0.0421, abs=1e-4)

    def test_zero_control(self):
        """A control that never succeeded yields 0."""
        assert relative_improvement(0.5, 0.0) == 0.0


class TestSafetyCheckEngine:
    """Tests for the ordered safety checks."""

    def test_all_checks_in_order(self, metrics_factory):
        """Every check runs, in the fixed order."""
        results = SafetyCheckEngine().check_all(_context(metrics_factory))
        assert [r.name for r in results] == list(SafetyCheckName)

    def test_healthy_winner_passes(self, metrics_factory):
        """A healthy winner passes every check with info severity."""
        results = SafetyCheckEngine().check_all(_context(metrics_factory))
        assert all(r.passed for r in results)
        assert {r.severity for r in results} == {Severity.INFO}

    def test_disabled_checks_skipped(self, metrics_factory):
        """Disabled checks are left out."""
        rules = AGGRESSIVE_RULES.with_overrides(
            {"disabled_checks": {SafetyCheckName.TRAFFIC_BALANCE, SafetyCheckName.RECENT_ALERTS}}
        )
        names = [r.name for r in SafetyCheckEngine().check_all(_context(metrics_factory, rules=rules))]
        assert SafetyCheckName.TRAFFIC_BALANCE not in names
        assert len(names) == len(SafetyCheckName) - 2

    def test_per_check_trace(self, metrics_factory, caplog):
        """Each check outcome is logged at TRACE."""
        rules = AGGRESSIVE_RULES.with_overrides({"disabled_checks": {SafetyCheckName.TRAFFIC_BALANCE}})
        with caplog.at_level(TRACE, logger="safety"):
            SafetyCheckEngine().check_all(_context(metrics_factory, rules=rules))
        messages = [r.getMessage() for r in caplog.records if r.levelno == TRACE]
        assert len(messages) == len(SafetyCheckName)
        assert "checkout_flow: traffic_balance disabled" in messages
        assert any(m.startswith("checkout_flow: winner_error_rate passed") for m in messages)

    def test_trace_silent_at_debug(self, metrics_factory, caplog):
        """Nothing is logged per check at DEBUG."""
        with caplog.at_level(logging.DEBUG, logger="safety"):
            SafetyCheckEngine().check_all(_context(metrics_factory))
        assert not [r for r in caplog.records if r.name == "safety"]

    def test_winner_sample_size_critical(self, metrics_factory):
        """A winner sample below the minimum fails critical."""
        rules = AGGRESSIVE_RULES.with_overrides({"min_sample_size": 1000})
        winner = metrics_factory("treatment", requests=100, errors=0)
        result = _by_name(SafetyCheckEngine().check_all(_context(metrics_factory, rules=rules, winner=winner)))[
            SafetyCheckName.WINNER_SAMPLE_SIZE
        ]
        assert not result.passed
        assert result.severity == Severity.CRITICAL
        assert result.value == 100
        assert result.threshold == 1000

    def test_excluded_experiment(self, metrics_factory):
        """Excluded experiments fail critical."""
        rules = AGGRESSIVE_RULES.with_overrides({"excluded_experiments": {"checkout_flow"}})
        result = _by_name(SafetyCheckEngine().check_all(_context(metrics_factory, rules=rules)))[
            SafetyCheckName.EXCLUSION_LIST
        ]
        assert not result.passed
        assert result.severity == Severity.CRITICAL

    def test_improvement_below_threshold_warns(self, metrics_factory):
        """Too little improvement is a warning."""
        rules = AGGRESSIVE_RULES.with_overrides({"min_improvement": 0.10})
        result = _by_name(SafetyCheckEngine().check_all(_context(metrics_factory, rules=rules)))[
            SafetyCheckName.IMPROVEMENT_THRESHOLD
        ]
        assert not result.passed
        assert result.severity == Severity.WARNING

    def test_error_rate_comparison(self, metrics_factory):
        """The winner may not exceed control's error rate by more than 10%."""
        winner = metrics_factory("treatment", requests=1000, errors=56)
        control = metrics_factory("control", requests=1000, errors=50)
        result = _by_name(
            SafetyCheckEngine().check_all(_context(metrics_factory, winner=winner, control=control))
        )[SafetyCheckName.ERROR_RATE_COMPARISON]
        assert not result.passed
        assert result.threshold == pytest.approx(0.055)

    def test_latency_comparison(self, metrics_factory):
        """The winner's p95 may exceed control's by at most 20%."""
        winner = metrics_factory("treatment", requests=1500, errors=15, p95=121.0)
        results = _by_name(SafetyCheckEngine().check_all(_context(metrics_factory, winner=winner)))
        assert not results[SafetyCheckName.LATENCY_COMPARISON].passed
        assert results[SafetyCheckName.LATENCY_COMPARISON].severity == Severity.WARNING
        assert results[SafetyCheckName.WINNER_LATENCY].passed

    def test_duration_bounds(self, metrics_factory):
        """Too short is critical, too long is a warning."""
        engine = SafetyCheckEngine()
        short = _by_name(engine.check_all(_context(metrics_factory, duration_hours=0.5)))
        long = _by_name(engine.check_all(_context(metrics_factory, duration_hours=100.0)))
        assert short[SafetyCheckName.MIN_TEST_DURATION].severity == Severity.CRITICAL
        assert long[SafetyCheckName.MAX_TEST_DURATION].severity == Severity.WARNING
        assert long[SafetyCheckName.MIN_TEST_DURATION].passed

    def test_traffic_balance(self, metrics_factory):
        """A 50% deviation from the configured share fails."""
        winner = metrics_factory("treatment", requests=1500, errors=15, traffic=50.0, share=0.25)
        result = _by_name(SafetyCheckEngine().check_all(_context(metrics_factory, winner=winner)))[
            SafetyCheckName.TRAFFIC_BALANCE
        ]
        assert not result.passed
        assert result.value == pytest.approx(0.5)

    def test_traffic_balance_zero_configured(self, metrics_factory):
        """With no configured traffic, any observed traffic fails."""
        engine = SafetyCheckEngine()
        idle = metrics_factory("treatment", requests=1500, errors=15, traffic=0.0, share=0.0)
        busy = metrics_factory("treatment", requests=1500, errors=15, traffic=0.0, share=0.1)
        assert _by_name(engine.check_all(_context(metrics_factory, winner=idle)))[SafetyCheckName.TRAFFIC_BALANCE].passed
        assert not _by_name(engine.check_all(_context(metrics_factory, winner=busy)))[
            SafetyCheckName.TRAFFIC_BALANCE
        ].passed

    def test_recent_alerts(self, metrics_factory):
        """Recent critical alerts beyond the limit fail critical."""
        result = _by_name(SafetyCheckEngine().check_all(_context(metrics_factory, recent_critical_alerts=1)))[
            SafetyCheckName.RECENT_ALERTS
        ]
        assert not result.passed
        assert result.severity == Severity.CRITICAL

    def test_manual_approval(self, metrics_factory):
        """Required manual approval fails with info severity."""
        rules = PromotionRules(require_manual_approval=True)
        result = _by_name(SafetyCheckEngine().check_all(_context(metrics_factory, rules=rules)))[
            SafetyCheckName.MANUAL_APPROVAL_REQUIRED
        ]
        assert not result.passed
        assert result.severity == Severity.INFO
