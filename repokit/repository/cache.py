"""Query Result Caching.

Provides the process-wide cache for repository reads:
- Compute-on-miss lookups keyed by canonical query text
- Absolute and sliding expiration
- Entity-scoped invalidation through the live-key registry
- Hit/miss metrics

Values are kept by reference in an aiocache ``SimpleMemoryCache``. Expiry is
tracked on the stored entry itself so a hit never returns a stale value, even
when the store's own timers belong to another event loop.
"""

import inspect
import time
from collections.abc import Awaitable, Callable

from aiocache.backends.memory import SimpleMemoryCache
from aiocache.serializers import NullSerializer
from dataclasses import dataclass
from pydantic import Field
from typing import Any

from repokit.cleanup import CleanupMixin
from repokit.config import Settings
from repokit.depends import depends
from repokit.logger import get_logger

from .keys import CacheKeyGenerator, LiveKeyRegistry, qualified_name

logger = get_logger(__name__)


class ResultCacheSettings(Settings):
    """Result cache configuration settings."""

    absolute_expiration: float = Field(
        default=300.0,
        gt=0,
        description="Seconds an entry may live after it was stored",
    )
    sliding_expiration: float = Field(
        default=120.0,
        gt=0,
        description="Seconds an entry may stay idle between hits",
    )
    namespace: str = Field(default="repokit:", description="Cache key namespace")


@dataclass(frozen=True)
class ExpirationPolicy:
    """Absolute and sliding lifetimes; whichever elapses first evicts."""

    absolute: float = 300.0
    sliding: float = 120.0

    @classmethod
    def from_settings(cls, settings: ResultCacheSettings) -> "ExpirationPolicy":
        return cls(
            absolute=settings.absolute_expiration,
            sliding=settings.sliding_expiration,
        )


@dataclass
class CacheMetrics:
    """Cache performance metrics."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def total_operations(self) -> int:
        """Get total cache operations."""
        return self.hits + self.misses + self.writes


@dataclass
class _Entry:
    value: Any
    token: object
    absolute_deadline: float
    sliding_deadline: float
    sliding: float

    def expired(self, now: float) -> bool:
        return now >= self.absolute_deadline or now >= self.sliding_deadline

    def remaining(self, now: float) -> float:
        return min(self.absolute_deadline, self.sliding_deadline) - now


class ResultCache(CleanupMixin):
    """Shared cache of terminal query results.

    ``get_or_compute`` never holds a lock while ``compute`` runs. A computed
    value is stored only if its key was not invalidated in the meantime; it is
    returned to the caller either way.
    """

    def __init__(
        self,
        settings: ResultCacheSettings | None = None,
        registry: LiveKeyRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self.settings = settings or depends.get_sync(ResultCacheSettings)
        self.registry = registry or LiveKeyRegistry()
        self.default_policy = ExpirationPolicy.from_settings(self.settings)
        self.metrics = CacheMetrics()
        self._clock = clock
        self._store = SimpleMemoryCache(
            serializer=NullSerializer(),
            namespace=self.settings.namespace,
        )
        self._store.timeout = 0.0
        self.register_resource(self._store)

    @property
    def key_generator(self) -> CacheKeyGenerator:
        return CacheKeyGenerator(self.registry)

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any | Awaitable[Any]],
        policy: ExpirationPolicy | None = None,
    ) -> Any:
        """Return the cached value for ``key``, computing and storing it on a miss."""
        policy = policy or self.default_policy
        token = self.registry.register(key)

        found, value = await self._lookup(key, token)
        if found:
            self.metrics.hits += 1
            logger.debug(f"Cache hit: {key}")
            return value

        self.metrics.misses += 1
        logger.debug(f"Cache miss: {key}")
        value = compute()
        if inspect.isawaitable(value):
            value = await value

        if not self.registry.is_current(key, token):
            logger.debug(f"Key invalidated while computing, not stored: {key}")
            return value

        now = self._clock()
        entry = _Entry(
            value=value,
            token=token,
            absolute_deadline=now + policy.absolute,
            sliding_deadline=now + policy.sliding,
            sliding=policy.sliding,
        )
        await self._store.set(key, entry, ttl=entry.remaining(now))
        if self.registry.is_current(key, token):
            self.metrics.writes += 1
        else:
            await self._store.delete(key)
        return value

    async def contains(self, key: str) -> bool:
        """Whether ``key`` holds a live, unexpired entry (no metrics, no sliding)."""
        token = self.registry.token(key)
        if token is None:
            return False
        entry = await self._store.get(key)
        return (
            entry is not None
            and entry.token is token
            and not entry.expired(self._clock())
        )

    async def invalidate(self, *entity_types: Any) -> int:
        """Evict every key whose value depends on any of ``entity_types``.

        Returns:
            Number of evicted keys
        """
        names = [qualified_name(tp) for tp in entity_types]
        keys = self.registry.pop_tagged(*names)
        for key in keys:
            await self._store.delete(key)
        self.metrics.invalidations += len(keys)
        if keys:
            logger.debug(f"Invalidated {len(keys)} cache keys for {', '.join(names)}")
        return len(keys)

    async def clear(self) -> int:
        """Drop every entry and registration."""
        keys = self.registry.clear()
        await self._store.clear()
        self.metrics.invalidations += len(keys)
        return len(keys)

    def __len__(self) -> int:
        return len(self.registry)

    async def _lookup(self, key: str, token: object) -> tuple[bool, Any]:
        entry = await self._store.get(key)
        if entry is None or entry.token is not token:
            return False, None

        now = self._clock()
        if entry.expired(now):
            await self._store.delete(key)
            return False, None

        entry.sliding_deadline = now + entry.sliding
        await self._store.expire(key, entry.remaining(now))
        return True, entry.value

    async def _cleanup_resources(self) -> None:
        self.registry.clear()
        await self._store.clear()


depends.set(ResultCacheSettings)
depends.set(ResultCache)
