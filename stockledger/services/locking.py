"""
Per-(ingredient, location) locking and contention retry.

Every stock mutation holds the locks of all keys it touches for the length
of its database transaction. Keys are always acquired in one global order
(location id, then ingredient id, compared as strings), so two transfers
running in opposite directions between the same locations cannot deadlock.
Waiting is bounded: a timeout releases whatever was already held and raises
Contention, which callers retry with backoff.
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple, TypeVar
from uuid import UUID

from stockledger.core.errors import Contention

logger = logging.getLogger(__name__)

StockKey = Tuple[UUID, UUID]  # (ingredient_id, location_id)

T = TypeVar("T")


def lock_order(key: StockKey) -> Tuple[str, str]:
    ingredient_id, location_id = key
    return str(location_id), str(ingredient_id)


class KeyedLockManager:
    """In-process registry of one lock per stock key."""

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: Dict[StockKey, threading.Lock] = {}

    def _lock_for(self, key: StockKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[StockKey], timeout: float) -> Iterator[List[StockKey]]:
        """
        Acquire every key in global order, waiting at most ``timeout`` seconds in total.

        Raises:
            Contention: if any key could not be acquired in time
        """
        ordered = sorted(set(keys), key=lock_order)
        deadline = time.monotonic() + timeout
        held: List[threading.Lock] = []
        try:
            for key in ordered:
                remaining = max(0.0, deadline - time.monotonic())
                lock = self._lock_for(key)
                if not lock.acquire(timeout=remaining):
                    logger.warning(f"Lock timeout on stock key {key} after {timeout}s")
                    raise Contention(ordered)
                held.append(lock)
            yield ordered
        finally:
            for lock in reversed(held):
                lock.release()


# Shared by every StockMutationService in the process
default_lock_manager = KeyedLockManager()


def retry_on_contention(
    operation: Callable[[], T],
    max_retries: int = 3,
    backoff_seconds: float = 0.2,
    on_retry: Optional[Callable[[int, Contention], None]] = None,
) -> T:
    """
    Run ``operation``, retrying Contention with exponential backoff.

    Args:
        operation: Zero-argument callable performing one unit of work
        max_retries: Retries after the first attempt before giving up
        backoff_seconds: Base delay; attempt n waits backoff × 2^(n-1)
        on_retry: Optional callback(attempt, error) before each sleep

    Returns:
        The operation's result

    Raises:
        Contention: when every attempt timed out
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Contention as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(f"Giving up after {attempt} attempts: {e}")
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.info(f"Contention (attempt {attempt}/{max_retries}), retrying in {delay:.2f}s")
            if on_retry:
                on_retry(attempt, e)
            time.sleep(delay)
