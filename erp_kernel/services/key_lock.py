"""
KeyLockManager -- per-key exclusive locks for the posting critical section.

Responsibility:
    Serializes confirmations that touch the same (item, location) stock key
    or the same account, while letting confirmations on disjoint keys run in
    parallel.  A confirmation acquires every key it will touch, in one fixed
    global order, before it opens its write transaction, and holds them
    until commit or rollback.

Architecture position:
    Kernel > Services -- in-process concurrency primitive.  Used by
    erp_services.document_lifecycle.DocumentService.  Row locks
    (SELECT ... FOR UPDATE) on balance rows cover other processes.

Invariants enforced:
    - Keys are acquired in sorted order, so two confirmations sharing two
      or more keys can never deadlock on each other.
    - Every acquired lock is released on exit, including on exceptions.

Failure modes:
    - ConcurrencyConflictError when a key is not acquired within the
      timeout; locks already taken by that call are released first.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from uuid import UUID

from erp_kernel.exceptions import ConcurrencyConflictError
from erp_kernel.logging_config import get_logger

logger = get_logger("services.key_lock")


def stock_key(item_id: UUID, location_id: UUID) -> str:
    return f"stock:{item_id}:{location_id}"


def account_key(account_id: UUID) -> str:
    return f"account:{account_id}"


class KeyLockManager:
    """
    Registry of named locks with ordered, timed acquisition.

    Contract:
        ``acquire(keys)`` is a context manager.  Duplicate keys are
        collapsed.  The registry grows with the key space and never shrinks.

    Non-goals:
        - Re-entrancy: a thread must not acquire a key it already holds.
        - Cross-process exclusion.
    """

    def __init__(self, timeout_seconds: float = 10.0):
        self._timeout = timeout_seconds
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def acquire(self, keys: Iterable[str]) -> Iterator[tuple[str, ...]]:
        ordered = tuple(sorted(set(keys)))
        held: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self._timeout):
                    logger.warning(
                        "key_lock_timeout",
                        extra={
                            "key": key,
                            "timeout_seconds": self._timeout,
                            "keys_held": len(held),
                        },
                    )
                    raise ConcurrencyConflictError(
                        resource=key,
                        reason=f"lock not acquired within {self._timeout}s",
                    )
                held.append(lock)
            logger.debug("key_locks_acquired", extra={"key_count": len(ordered)})
            yield ordered
        finally:
            for lock in reversed(held):
                lock.release()
