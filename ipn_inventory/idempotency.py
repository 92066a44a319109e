"""IPN idempotency ledger: records which notifications already produced adjustments.

Contract:
- Keys are namespaced: txn:{txn_id} and track:{ipn_track_id}
- Value is the epoch timestamp at which the notification was recorded
- Entries never expire unless a retention window is configured
- Store errors propagate (no fail-open: a duplicate here is a double deduction)
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

import redis

logger = logging.getLogger(__name__)

_KEY_PREFIX = "ipn:seen:"


def transaction_key(txn_id: str) -> str:
    return f"txn:{txn_id}"


def tracking_key(track_id: str) -> str:
    return f"track:{track_id}"


@runtime_checkable
class IdempotencyStore(Protocol):
    """Durable key/timestamp ledger."""

    def has(self, key: str) -> bool:
        ...

    def set(self, key: str, timestamp: float) -> None:
        ...

    def reserve(self, key: str, timestamp: float) -> bool:
        """Insert key only if absent. Returns True if this caller won."""
        ...

    def release(self, key: str) -> None:
        ...


class RedisIdempotencyStore:
    """Redis-backed ledger.

    Uses SET NX for reservation so two concurrent deliveries of the same
    transaction cannot both win.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = _KEY_PREFIX,
        retention_seconds: int | None = None,
    ):
        self._redis = client
        self._prefix = prefix
        self._ttl = retention_seconds or None

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> RedisIdempotencyStore:
        return cls(redis.from_url(redis_url, decode_responses=True), **kwargs)

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def has(self, key: str) -> bool:
        return bool(self._redis.exists(self._full_key(key)))

    def set(self, key: str, timestamp: float) -> None:
        self._redis.set(self._full_key(key), str(int(timestamp)), ex=self._ttl)
        logger.debug("Idempotency key recorded: %s", key)

    def reserve(self, key: str, timestamp: float) -> bool:
        was_set = self._redis.set(
            self._full_key(key), str(int(timestamp)), nx=True, ex=self._ttl
        )
        if not was_set:
            logger.info("Idempotency reservation lost for %s", key)
        return bool(was_set)

    def release(self, key: str) -> None:
        self._redis.delete(self._full_key(key))
        logger.debug("Idempotency reservation released: %s", key)


class MemoryIdempotencyStore:
    """In-process ledger for single-worker deployments and local runs.

    Retention is not supported; entries live as long as the process.
    """

    def __init__(self) -> None:
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def set(self, key: str, timestamp: float) -> None:
        with self._lock:
            self._entries[key] = timestamp

    def reserve(self, key: str, timestamp: float) -> bool:
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = timestamp
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def get(self, key: str) -> float | None:
        with self._lock:
            return self._entries.get(key)


def create_idempotency_store(
    redis_url: str, retention_seconds: int = 0
) -> IdempotencyStore:
    """Build the ledger for a URL. ``memory://`` selects the in-process store."""
    if redis_url.startswith("memory://"):
        if retention_seconds:
            logger.warning("Retention window ignored by the in-process idempotency store")
        return MemoryIdempotencyStore()
    return RedisIdempotencyStore.from_url(
        redis_url, retention_seconds=retention_seconds or None
    )
