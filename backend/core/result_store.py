"""
Result Store: TTL'd key/value persistence for task and workflow state.

Used for:
- Task and workflow records (JSON, one key per record)
- Intermediate step results passed between workflow stages
- Rate limit and quota counters (atomic increments)
- Per-tenant task indexes (capped lists)

Two backends share the same contract:
- InMemoryResultStore: single process, lazy expiry (tests, local runs)
- RedisResultStore: redis.asyncio, shared across processes

There are no multi-key transactions. Every mutation is a single-key
set, increment or list push, so readers must tolerate a freshly
written key not being visible yet.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import structlog

from app.config import Settings, get_settings

logger = structlog.get_logger(__name__)


# ─── Key layout ───────────────────────────────────────────────

def task_key(task_id: str) -> str:
    return f"task:{task_id}"


def workflow_key(workflow_id: str) -> str:
    return f"workflow:{workflow_id}"


def result_key(task_id: str, kind: str) -> str:
    return f"result:{task_id}:{kind}"


def tenant_tasks_key(tenant_id: str) -> str:
    return f"org:{tenant_id}:tasks"


def tenant_tier_key(tenant_id: str) -> str:
    return f"org:{tenant_id}:tier"


def rate_limit_key(tenant_id: str) -> str:
    return f"ratelimit:{tenant_id}"


def usage_key(tenant_id: str, task_type: str, period: str) -> str:
    return f"usage:{tenant_id}:{task_type}:{period}"


# ─── Contract ─────────────────────────────────────────────────

class ResultStore(ABC):
    """Namespaced key/value store with per-entry expiry."""

    def __init__(self, namespace: str = ""):
        self.namespace = namespace

    def _k(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    @abstractmethod
    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Store a value, replacing any previous one. ``ttl`` is in seconds."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None if missing or expired."""

    @abstractmethod
    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        """Atomically increment a counter.

        The expiry is only applied when the counter is created, so a
        fixed window is not extended by later increments.
        """

    @abstractmethod
    async def decr(self, key: str) -> int:
        """Atomically decrement a counter."""

    @abstractmethod
    async def push(
        self,
        key: str,
        value: str,
        max_length: Optional[int] = None,
        ttl: Optional[int] = None,
    ) -> None:
        """Prepend a value to a list, keeping at most ``max_length`` items."""

    @abstractmethod
    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        """Return list items between ``start`` and ``stop`` (inclusive)."""

    async def close(self) -> None:
        """Release backend resources."""

    # JSON helpers

    async def put_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.put(key, json.dumps(value, default=str), ttl)

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        return json.loads(raw) if raw is not None else None


# ─── In-memory backend ────────────────────────────────────────

class InMemoryResultStore(ResultStore):
    """Dict-backed store for a single process.

    Operations never await, so each one is atomic with respect to
    other coroutines on the same event loop.
    """

    def __init__(self, namespace: str = "", clock: Callable[[], float] = time.monotonic):
        super().__init__(namespace)
        self._clock = clock
        self._values: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._values

    def _set_ttl(self, key: str, ttl: Optional[int]) -> None:
        if ttl:
            self._expires[key] = self._clock() + ttl
        else:
            self._expires.pop(key, None)

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        k = self._k(key)
        self._values[k] = value
        self._set_ttl(k, ttl)

    async def get(self, key: str) -> Optional[str]:
        k = self._k(key)
        if not self._alive(k):
            return None
        value = self._values[k]
        return value if isinstance(value, str) else str(value)

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        k = self._k(key)
        if not self._alive(k):
            self._values[k] = 0
            self._set_ttl(k, ttl)
        self._values[k] = int(self._values[k]) + 1
        return self._values[k]

    async def decr(self, key: str) -> int:
        k = self._k(key)
        if not self._alive(k):
            self._values[k] = 0
        self._values[k] = int(self._values[k]) - 1
        return self._values[k]

    async def push(
        self,
        key: str,
        value: str,
        max_length: Optional[int] = None,
        ttl: Optional[int] = None,
    ) -> None:
        k = self._k(key)
        if not self._alive(k):
            self._values[k] = []
        items = self._values[k]
        items.insert(0, value)
        if max_length is not None:
            del items[max_length:]
        if ttl:
            self._set_ttl(k, ttl)

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        k = self._k(key)
        if not self._alive(k):
            return []
        items = self._values[k]
        end = None if stop == -1 else stop + 1
        return list(items[start:end])

    async def close(self) -> None:
        self._values.clear()
        self._expires.clear()


# ─── Redis backend ────────────────────────────────────────────

class RedisResultStore(ResultStore):
    """Redis-backed store using ``redis.asyncio``."""

    def __init__(self, client, namespace: str = ""):
        super().__init__(namespace)
        self._redis = client

    @classmethod
    def from_url(cls, url: str, namespace: str = "") -> "RedisResultStore":
        import redis.asyncio as aioredis

        client = aioredis.from_url(url, decode_responses=True)
        return cls(client, namespace)

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            await self._redis.setex(self._k(key), ttl, value)
        else:
            await self._redis.set(self._k(key), value)

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(self._k(key))

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        k = self._k(key)
        current = await self._redis.incr(k)
        if current == 1 and ttl:
            await self._redis.expire(k, ttl)
        return int(current)

    async def decr(self, key: str) -> int:
        return int(await self._redis.decr(self._k(key)))

    async def push(
        self,
        key: str,
        value: str,
        max_length: Optional[int] = None,
        ttl: Optional[int] = None,
    ) -> None:
        k = self._k(key)
        await self._redis.lpush(k, value)
        if max_length is not None:
            await self._redis.ltrim(k, 0, max_length - 1)
        if ttl:
            await self._redis.expire(k, ttl)

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        return list(await self._redis.lrange(self._k(key), start, stop))

    async def close(self) -> None:
        try:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.error("Error closing Redis connection", error=str(e))


def create_result_store(settings: Optional[Settings] = None) -> ResultStore:
    """Build the store configured by ``RESULT_STORE_BACKEND``."""
    settings = settings or get_settings()
    backend = settings.RESULT_STORE_BACKEND.lower()

    if backend == "redis":
        logger.info("Using Redis result store", url=settings.REDIS_URL)
        return RedisResultStore.from_url(settings.REDIS_URL, namespace=settings.KEY_PREFIX)
    if backend == "memory":
        return InMemoryResultStore(namespace=settings.KEY_PREFIX)

    raise ValueError(f"Unknown result store backend: {settings.RESULT_STORE_BACKEND}")
