"""
Lock providers for scheduled maintenance jobs.

Every lock carries a TTL so a crashed holder cannot block future runs. The in-memory provider
only excludes callers within one process.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Optional

from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import Clock, utc_now

logger = get_logger(__name__)


class LockProvider(ABC):
    """Named mutual-exclusion lock with expiry."""

    @abstractmethod
    def acquire(self, key: str, ttl_seconds: int) -> bool:
        """Take the lock. Returns False if someone else holds it."""
        ...

    @abstractmethod
    def release(self, key: str) -> None:
        ...


class InMemoryLockProvider(LockProvider):
    """Single-process lock table honouring TTL against the injected clock."""

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self._lock = threading.Lock()
        self._held: Dict[str, datetime] = {}

    def acquire(self, key: str, ttl_seconds: int) -> bool:
        now = self.clock()
        with self._lock:
            expires_at = self._held.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._held[key] = now + timedelta(seconds=ttl_seconds)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._held.pop(key, None)

    def is_held(self, key: str) -> bool:
        with self._lock:
            expires_at = self._held.get(key)
            return expires_at is not None and expires_at > self.clock()


class OpenSearchLockProvider(LockProvider):
    """Cross-instance lock stored as documents in the lock index.

    When the store cannot be reached the provider degrades to an in-process lock, which
    only protects against concurrent runs inside this instance.
    """

    def __init__(self, store, clock: Clock = utc_now, fallback: Optional[InMemoryLockProvider] = None):
        """
        Initialize the provider.

        Args:
            store: OpenSearchClient exposing acquire_lock/release_lock
            clock: Time source for lock expiry
            fallback: Lock used while the store is unavailable
        """
        self.store = store
        self.clock = clock
        self.fallback = fallback or InMemoryLockProvider(clock)
        self._tokens: Dict[str, str] = {}
        self._degraded: Dict[str, bool] = {}

    def acquire(self, key: str, ttl_seconds: int) -> bool:
        token = uuid.uuid4().hex
        try:
            acquired = self.store.acquire_lock(key, token, ttl_seconds, self.clock())
        except OpenSearchError as e:
            logger.warning(f'Distributed lock unavailable for {key}, using in-process lock: {e}')
            acquired = self.fallback.acquire(key, ttl_seconds)
            if acquired:
                self._degraded[key] = True
            return acquired

        if acquired:
            self._tokens[key] = token
        return acquired

    def release(self, key: str) -> None:
        if self._degraded.pop(key, False):
            self.fallback.release(key)
            return

        token = self._tokens.pop(key, None)
        if token is None:
            return
        try:
            if not self.store.release_lock(key, token):
                logger.warning(f'Lock {key} was no longer held by this instance')
        except OpenSearchError as e:
            # The TTL frees the lock eventually
            logger.error(f'Failed to release lock {key}: {e}')
