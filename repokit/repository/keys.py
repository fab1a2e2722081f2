"""Cache key generation and the live-key registry.

A cache key is the SHA-256 of a query's canonical text, the entity type's
qualified name and the result type's qualified name, suffixed with the entity
name so keys stay readable in logs::

    3f1c...e9a0-app.models.Order

Every generated key is recorded in a ``LiveKeyRegistry`` together with the
entity types its value depends on. Invalidation works off the registry, since
the underlying cache only removes exact keys.
"""

import hashlib
import threading
from collections.abc import Iterable

import typing as t


def qualified_name(tp: t.Any) -> str:
    """Fully-qualified ``module.QualName`` of a type (or a type name as given)."""
    if isinstance(tp, str):
        return tp
    qualname = getattr(tp, "__qualname__", None) or getattr(tp, "__name__", None)
    if qualname is None:
        return repr(tp)
    module = getattr(tp, "__module__", None)
    return f"{module}.{qualname}" if module else qualname


def build_cache_key(query_text: str, entity_name: str, result_name: str) -> str:
    """Deterministic key for one query, entity type and result type."""
    combined = f"{query_text}{entity_name}{result_name}"
    digest = hashlib.sha256(combined.encode("utf-8")).hexdigest()
    return f"{digest}-{entity_name}"


class LiveKeyRegistry:
    """Thread-safe set of cached keys, tagged by the entity types they depend on.

    Each registration carries a token. A value computed for a key may only be
    stored while the key still holds the token it had when the computation
    started; an invalidation in between drops the registration and with it the
    right to store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[object, frozenset[str]]] = {}

    def register(self, key: str, tags: Iterable[str] = ()) -> object:
        """Register ``key`` (idempotent) and return its current token."""
        tags = frozenset(tags)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                token = object()
                self._entries[key] = (token, tags)
                return token
            token, known = entry
            if not tags <= known:
                self._entries[key] = (token, known | tags)
            return token

    def token(self, key: str) -> object | None:
        with self._lock:
            entry = self._entries.get(key)
            return entry[0] if entry else None

    def is_current(self, key: str, token: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry[0] is token

    def pop_tagged(self, *tags: str) -> list[str]:
        """Remove and return every key tagged with any of ``tags``.

        A key whose ``-<entity name>`` suffix is one of ``tags`` matches even
        when it was registered without tags.
        """
        wanted = frozenset(tags)
        with self._lock:
            matched = [
                key
                for key, (_, key_tags) in self._entries.items()
                if key_tags & wanted or key.partition("-")[2] in wanted
            ]
            for key in matched:
                del self._entries[key]
        return matched

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> list[str]:
        with self._lock:
            keys = list(self._entries)
            self._entries.clear()
        return keys

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def tags(self, key: str) -> frozenset[str]:
        with self._lock:
            entry = self._entries.get(key)
            return entry[1] if entry else frozenset()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CacheKeyGenerator:
    """Builds cache keys and registers them for later invalidation."""

    def __init__(self, registry: LiveKeyRegistry, enabled: bool = True) -> None:
        self.registry = registry
        self.enabled = enabled

    def generate(
        self,
        query_text: str,
        entity_type: t.Any,
        result_type: t.Any,
        depends_on: Iterable[t.Any] = (),
    ) -> str:
        entity_name = qualified_name(entity_type)
        key = build_cache_key(query_text, entity_name, qualified_name(result_type))
        if self.enabled:
            tags = {entity_name, *(qualified_name(tp) for tp in depends_on)}
            self.registry.register(key, tags)
        return key
