"""
Integration tests for promotion/rollback.py
"""

import asyncio

import pytest

from promotion_engine.core.data_types import AuditAction, TriggerType
from promotion_engine.core.exceptions import (
    ExperimentNotFoundError,
    InvalidTrafficSplitError,
    NoActivePromotionError,
    ValidationError,
)
from promotion_engine.core.locks import ExperimentLockRegistry
from promotion_engine.database.repository import VariantRepository
from promotion_engine.promotion.rollback import equal_split, validate_traffic_values
from promotion_engine.promotion.service import PromotionService


@pytest.fixture
def service(settings, db_manager, dispatcher):
    return PromotionService(
        settings=settings,
        db_manager=db_manager,
        dispatcher=dispatcher,
        lock_registry=ExperimentLockRegistry(),
    )


@pytest.fixture
def promoted(service, seed, winning_variants):
    """Experiment id of checkout_flow after treatment was promoted."""
    experiment_id = seed("checkout_flow", winning_variants)
    asyncio.run(service.promote("checkout_flow", operator_id="alice"))
    return experiment_id


def _traffic(db_manager, experiment_id):
    with db_manager.session() as session:
        return {v.name: v.traffic_percentage for v in VariantRepository().list_for_experiment(session, experiment_id)}


class TestTrafficValidation:
    """Tests for split validation helpers."""

    def test_valid_split(self):
        """A split summing to 100 within tolerance is accepted."""
        validate_traffic_values({"control": 33.33, "treatment": 66.67})
        validate_traffic_values({"control": 50.005, "treatment": 50.0})

    def test_collects_every_violation(self):
        """Each bad value and the total are reported together."""
        with pytest.raises(InvalidTrafficSplitError) as exc_info:
            validate_traffic_values({"control": -5.0, "treatment": 150.0})
        violations = exc_info.value.violations
        assert len(violations) == 3
        assert violations[-1].startswith("total:")

    def test_empty_split(self):
        """An empty split is rejected."""
        with pytest.raises(InvalidTrafficSplitError):
            validate_traffic_values({})

    def test_equal_split(self):
        """Equal split divides 100 evenly."""
        assert equal_split(["a", "b", "c", "d"]) == {"a": 25.0, "b": 25.0, "c": 25.0, "d": 25.0}


@pytest.mark.integration
class TestRollbackManager:
    """Tests for RollbackManager."""

    def test_default_rollback_restores_equal_split(self, service, db_manager, promoted, gateway):
        """Without a split every variant gets an equal share."""
        result = asyncio.run(service.rollback("checkout_flow", "conversion dropped", operator_id="bob"))

        assert result.restored_traffic == {"control": 50.0, "treatment": 50.0}
        assert result.rolled_back_variant == "treatment"
        assert _traffic(db_manager, promoted) == {"control": 50.0, "treatment": 50.0}

        record = result.audit_record
        assert record.action == AuditAction.ROLLED_BACK
        assert record.triggered_by == TriggerType.MANUAL
        assert record.operator_id == "bob"
        assert record.reverts_audit_id == result.reverted_record.audit_id
        assert record.promoted_variant_name == "control"
        assert record.previous_variant_name == "treatment"

        assert any("ROLLBACK" in p.title for p in gateway.payloads)

    def test_reverted_record_is_stamped(self, service, promoted):
        """The reverted promotion keeps its fields and gains rollback stamps."""
        result = asyncio.run(service.rollback("checkout_flow", "conversion dropped"))
        history = asyncio.run(service.get_promotion_history("checkout_flow"))
        original = [r for r in history if r.action == AuditAction.PROMOTED][0]

        assert original.audit_id == result.reverted_record.audit_id
        assert original.rollback_reason == "conversion dropped"
        assert original.rolled_back_at is not None
        assert original.promoted_variant_name == "treatment"
        assert original.operator_id == "alice"

    def test_custom_split(self, service, db_manager, promoted):
        """Operator splits are applied; unlisted variants get zero."""
        result = asyncio.run(service.rollback("checkout_flow", "partial revert", traffic={"control": 100.0}))
        assert result.restored_traffic == {"control": 100.0, "treatment": 0.0}
        assert _traffic(db_manager, promoted) == {"control": 100.0, "treatment": 0.0}

    def test_invalid_split_changes_nothing(self, service, db_manager, promoted):
        """An invalid split is rejected before any write."""
        with pytest.raises(InvalidTrafficSplitError):
            asyncio.run(service.rollback("checkout_flow", "bad split", traffic={"control": 99.0, "treatment": 101.0}))
        assert _traffic(db_manager, promoted) == {"control": 0.0, "treatment": 100.0}
        assert len(asyncio.run(service.get_promotion_history("checkout_flow"))) == 1

    @pytest.mark.parametrize("control", [49.0, 51.0])
    def test_split_off_by_one_rejected(self, service, db_manager, promoted, control):
        """Splits summing to 99 or 101 fail validation."""
        with pytest.raises(InvalidTrafficSplitError) as exc_info:
            asyncio.run(service.rollback("checkout_flow", "bad sum", traffic={"control": control, "treatment": 50.0}))
        assert exc_info.value.violations == [f"total: percentages sum to {control + 50.0:g}, expected 100"]
        assert _traffic(db_manager, promoted) == {"control": 0.0, "treatment": 100.0}

    def test_unknown_variant_rejected(self, service, db_manager, promoted):
        """Splits naming variants outside the experiment are rejected."""
        with pytest.raises(InvalidTrafficSplitError) as exc_info:
            asyncio.run(service.rollback("checkout_flow", "typo", traffic={"control": 50.0, "treatmnet": 50.0}))
        assert exc_info.value.violations == ["treatmnet: not a variant of checkout_flow"]
        assert _traffic(db_manager, promoted) == {"control": 0.0, "treatment": 100.0}

    def test_second_rollback_has_nothing_to_revert(self, service, promoted):
        """Only the latest active promotion can be rolled back."""
        asyncio.run(service.rollback("checkout_flow", "first"))
        with pytest.raises(NoActivePromotionError) as exc_info:
            asyncio.run(service.rollback("checkout_flow", "second"))
        assert exc_info.value.message == "no active promotion for experiment checkout_flow"

    def test_never_promoted(self, service, seed, winning_variants):
        """Rolling back an experiment without promotions fails."""
        seed("checkout_flow", winning_variants)
        with pytest.raises(NoActivePromotionError):
            asyncio.run(service.rollback("checkout_flow", "nothing"))

    def test_reason_required(self, service, promoted):
        """A blank reason is rejected."""
        with pytest.raises(ValidationError):
            asyncio.run(service.rollback("checkout_flow", "   "))

    def test_unknown_experiment(self, service):
        """Unknown experiments raise ExperimentNotFoundError."""
        with pytest.raises(ExperimentNotFoundError):
            asyncio.run(service.rollback("missing", "nothing"))

    def test_promote_again_after_rollback(self, service, promoted):
        """A rolled back experiment can be promoted again."""
        asyncio.run(service.rollback("checkout_flow", "retry"))
        result = asyncio.run(service.promote("checkout_flow", operator_id="alice"))
        assert result.audit_record is not None
        history = asyncio.run(service.get_promotion_history("checkout_flow"))
        assert [r.action for r in history] == [AuditAction.PROMOTED, AuditAction.ROLLED_BACK, AuditAction.PROMOTED]
