# payouts/locks.py

"""
Short-lived distributed locks on Redis.

acquire() either returns a held lock or raises LockNotAcquired after a
bounded number of attempts. Callers treat LockNotAcquired as the normal
"someone else is already doing it" answer, not as a fault.
"""

from __future__ import annotations

import logging
import random
import time

import redis
from redis.exceptions import LockError

logger = logging.getLogger(__name__)


class LockNotAcquired(Exception):
    pass


class RedisLockService:
    def __init__(
        self,
        url: str,
        *,
        retry_count: int = 3,
        retry_delay: float = 0.2,
        retry_jitter: float = 0.2,
        drift_factor: float = 0.01,
    ):
        self.url = url
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self.retry_jitter = retry_jitter
        self.drift_factor = drift_factor
        self._client = None

    def connect(self):
        if self._client is None:
            self._client = redis.Redis.from_url(self.url)
        return self

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self.connect()
        return self._client

    def acquire(self, key: str, ttl: float, *, retry_count: int | None = None):
        """
        Try to take `key` for `ttl` seconds.

        A lock whose remaining validity (ttl minus time spent acquiring minus
        clock drift) is not positive counts as not acquired.
        """
        retries = self.retry_count if retry_count is None else retry_count
        drift = ttl * self.drift_factor + 0.002
        for attempt in range(retries + 1):
            lock = self.client.lock(key, timeout=ttl, blocking=False)
            started = time.monotonic()
            if lock.acquire(blocking=False):
                validity = ttl - (time.monotonic() - started) - drift
                if validity > 0:
                    return lock
                self.release(lock)

            if attempt < retries:
                time.sleep(self.retry_delay + random.uniform(0, self.retry_jitter))

        raise LockNotAcquired(f"Could not acquire lock {key} after {retries + 1} attempts")

    def release(self, lock) -> None:
        try:
            lock.release()
        except LockError as e:
            # already expired or taken over; nothing left to release
            logger.warning(f"Lock release skipped: {e}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
