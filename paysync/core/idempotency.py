"""Idempotency cache for gateway callbacks and staff overrides.

The store is constructed once per process (see ``create_application``) and
passed to the transaction manager. Entries are short-lived: losing them on
restart is safe because the payment attempts index and the transition
validator reject re-application of an outcome.
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any
from uuid import UUID

from redis import asyncio as aioredis

from paysync.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "paysync:idem:"


class IdempotencyStore(ABC):
    """Correlation id → cached result, with TTL expiry."""

    def __init__(self, ttl_seconds: int | None = None) -> None:
        self.ttl_seconds = ttl_seconds or settings.idempotency_ttl_seconds

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Cached result for ``key``, or None if absent or expired."""

    @abstractmethod
    async def set(self, key: str, result: dict[str, Any]) -> None:
        """Store ``result`` under ``key`` for ``ttl_seconds``."""

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def sweep(self) -> int:
        """Evict expired entries. Returns the number evicted."""
        return 0

    async def close(self) -> None:
        return None


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local store. Safe for concurrent use from threads and tasks."""

    def __init__(self, ttl_seconds: int | None = None, clock=time.monotonic) -> None:
        super().__init__(ttl_seconds)
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, result = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return result

    async def set(self, key: str, result: dict[str, Any]) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, result)

    async def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug(f"Idempotency sweep evicted {len(expired)} entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisIdempotencyStore(IdempotencyStore):
    """Shared store for multi-worker deployments. Redis enforces the TTL."""

    def __init__(self, redis_url: str | None = None, ttl_seconds: int | None = None) -> None:
        super().__init__(ttl_seconds)
        self._redis = aioredis.from_url(redis_url or settings.redis_url, decode_responses=True)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._redis.get(KEY_PREFIX + key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, result: dict[str, Any]) -> None:
        await self._redis.set(KEY_PREFIX + key, json.dumps(result, sort_keys=True), ex=self.ttl_seconds)

    async def close(self) -> None:
        await self._redis.aclose()


def build_idempotency_store(backend: str | None = None) -> IdempotencyStore:
    """Construct the configured store."""
    backend = backend or settings.idempotency_backend
    if backend == "redis":
        logger.info("Using Redis idempotency store")
        return RedisIdempotencyStore()
    return InMemoryIdempotencyStore()


def generate_idempotency_key(
    operation: str,
    entity_id: UUID | str,
    params: dict[str, Any] | None = None,
) -> str:
    """Generate a deterministic idempotency key.

    Args:
        operation: Operation name (e.g., "payment_refund", "booking_cancel")
        entity_id: Primary entity ID
        params: Additional parameters to include in key (e.g. the client's
            ``Idempotency-Key`` header)

    Returns:
        SHA256 hash of operation + entity + params
    """
    key_data = {
        "operation": operation,
        "entity_id": str(entity_id),
        "params": params or {},
    }
    key_str = json.dumps(key_data, sort_keys=True)
    return hashlib.sha256(key_str.encode()).hexdigest()
