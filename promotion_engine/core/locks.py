"""
Per-experiment exclusive locks.

Promotion and rollback for the same experiment must never overlap. Both
paths acquire the experiment's lock from a shared registry before touching
variant traffic, and give up with a retryable PromotionConflictError when
the lock is not released in time.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .exceptions import PromotionConflictError


class ExperimentLockRegistry:
    """Lazily created lock per experiment.

    THREAD-SAFE: The registry map is guarded by its own lock.
    """

    def __init__(self, default_timeout: float = 5.0) -> None:
        self.default_timeout = default_timeout
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _get_lock(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def acquire(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the experiment's lock for the duration of the block.

        Args:
            key: Experiment name.
            timeout: Seconds to wait. Uses the registry default if omitted.

        Raises:
            PromotionConflictError: The lock could not be acquired in time.
        """
        wait = self.default_timeout if timeout is None else timeout
        lock = self._get_lock(key)
        if not lock.acquire(timeout=wait):
            raise PromotionConflictError(key, timeout_seconds=wait)
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, key: str) -> bool:
        return self._get_lock(key).locked()


_lock_registry: ExperimentLockRegistry | None = None


def get_lock_registry() -> ExperimentLockRegistry:
    """Get the process-wide lock registry shared by promotion and rollback."""
    global _lock_registry
    if _lock_registry is None:
        _lock_registry = ExperimentLockRegistry()
    return _lock_registry
