"""
Deterministic variant assignment.

A user always lands in the same variant of an experiment for a given
traffic split: the user/experiment pair is hashed to a bucket in 0..99 and
matched against cumulative traffic percentages, variants ordered by name.
After a promotion the winner holds 100% and receives every user.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence

from promotion_engine.core.cache import TTLCache, variants_cache_key
from promotion_engine.core.data_types import Variant, utc_now
from promotion_engine.database.connection import DatabaseManager
from promotion_engine.database.repository import (
    ExperimentRepository,
    VariantRepository,
    experiment_to_domain,
    variant_to_domain,
)

logger = logging.getLogger(__name__)


def bucket_for(user_id: str, experiment_name: str) -> int:
    """Stable bucket in 0..99 for a user within an experiment."""
    digest = hashlib.md5(f"{user_id}:{experiment_name}".encode()).hexdigest()
    return int(digest[:8], 16) % 100


def choose_variant(variants: Sequence[Variant], bucket: int) -> Variant | None:
    """Walk cumulative traffic until the bucket is covered.

    When the percentages sum to less than the bucket, the last variant is
    used.
    """
    if not variants:
        return None
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic_percentage
        if bucket < cumulative:
            return variant
    fallback = variants[-1]
    logger.warning(
        f"Fallback assignment to variant '{fallback.name}' (bucket {bucket}, total traffic {cumulative:g}%)"
    )
    return fallback


class VariantAssigner:
    """Assigns users to variants, reading variants through the injected cache."""

    def __init__(self, db_manager: DatabaseManager, cache: TTLCache[list[Variant]]) -> None:
        self._db = db_manager
        self._cache = cache
        self._experiments = ExperimentRepository()
        self._variants = VariantRepository()

    def _load_variants(self, experiment_name: str) -> list[Variant]:
        with self._db.session() as session:
            row = self._experiments.get_by_name(session, experiment_name)
            if row is None or not experiment_to_domain(row).is_running(utc_now()):
                return []
            rows = self._variants.list_for_experiment(session, row.experiment_id)
            return [variant_to_domain(v) for v in rows]

    def get_variants(self, experiment_name: str) -> list[Variant]:
        """Variants of a running experiment ordered by name; empty if none."""
        return self._cache.get_or_load(
            variants_cache_key(experiment_name),
            lambda: self._load_variants(experiment_name),
        )

    def assign(self, user_id: str, experiment_name: str) -> Variant | None:
        """Variant for a user, or None when the experiment is not running."""
        variants = self.get_variants(experiment_name)
        if not variants:
            logger.debug(f"No active experiment found: {experiment_name}")
            return None
        bucket = bucket_for(user_id, experiment_name)
        variant = choose_variant(variants, bucket)
        logger.debug(f"Assigned user {user_id} to variant '{variant.name}' in {experiment_name} (bucket {bucket})")
        return variant
