"""
Unit tests for promotion/assignment.py
"""

from promotion_engine.core.data_types import Variant
from promotion_engine.promotion.assignment import bucket_for, choose_variant


def _variants(*split):
    names = ["control", "treatment", "treatment_b"]
    return [
        Variant(variant_id=f"v{i}", experiment_id="exp-1", name=names[i], traffic_percentage=pct)
        for i, pct in enumerate(split)
    ]


class TestBucketFor:
    """Tests for deterministic bucketing."""

    def test_deterministic(self):
        """The same user and experiment always map to the same bucket."""
        assert bucket_for("user-1", "checkout_flow") == bucket_for("user-1", "checkout_flow")

    def test_range(self):
        """Buckets are in 0..99."""
        buckets = {bucket_for(f"user-{i}", "checkout_flow") for i in range(1000)}
        assert min(buckets) >= 0
        assert max(buckets) <= 99
        assert len(buckets) > 90

    def test_experiment_salt(self):
        """Buckets differ across experiments for most users."""
        differing = sum(bucket_for(f"user-{i}", "a") != bucket_for(f"user-{i}", "b") for i in range(100))
        assert differing > 50


class TestChooseVariant:
    """Tests for cumulative traffic assignment."""

    def test_cumulative_walk(self):
        """Buckets below each cumulative boundary go to that variant."""
        variants = _variants(30.0, 70.0)
        assert choose_variant(variants, 0).name == "control"
        assert choose_variant(variants, 29).name == "control"
        assert choose_variant(variants, 30).name == "treatment"
        assert choose_variant(variants, 99).name == "treatment"

    def test_promoted_variant_receives_everyone(self):
        """After promotion every bucket lands on the winner."""
        variants = _variants(0.0, 100.0)
        assert {choose_variant(variants, b).name for b in range(100)} == {"treatment"}

    def test_fallback_to_last(self):
        """Percentages below 100 fall back to the last variant."""
        variants = _variants(20.0, 20.0, 20.0)
        assert choose_variant(variants, 95).name == "treatment_b"

    def test_empty(self):
        """No variants, no assignment."""
        assert choose_variant([], 10) is None
