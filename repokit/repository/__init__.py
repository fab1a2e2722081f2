"""Repository layer for repokit.

This module provides a caching-aware repository pattern implementation with:
- Generic repository per entity type over an async SQLAlchemy session
- Unit of Work pattern for atomic commits
- Fluent query builder lowered to SQLAlchemy statements
- Process-wide query result cache with scoped invalidation
"""

from ._base import (
    EntityNotAttachedError,
    InvalidArgumentError,
    InvalidOperationError,
    OrderSpec,
    RepositoryError,
    RepositoryProtocol,
    RepositorySettings,
    SortDirection,
    UnitOfWorkError,
)
from .cache import CacheMetrics, ExpirationPolicy, ResultCache, ResultCacheSettings
from .generic import GenericRepository
from .keys import CacheKeyGenerator, LiveKeyRegistry, build_cache_key, qualified_name
from .query_builder import EagerLoad, LoadStrategy, QueryBuilder, QueryType
from .unit_of_work import (
    UnitOfWork,
    UnitOfWorkManager,
    UnitOfWorkMetrics,
    UnitOfWorkState,
)

__all__ = [
    "CacheKeyGenerator",
    "CacheMetrics",
    "EagerLoad",
    "EntityNotAttachedError",
    "ExpirationPolicy",
    "GenericRepository",
    "InvalidArgumentError",
    "InvalidOperationError",
    "LiveKeyRegistry",
    "LoadStrategy",
    "OrderSpec",
    "QueryBuilder",
    "QueryType",
    "RepositoryError",
    "RepositoryProtocol",
    "RepositorySettings",
    "ResultCache",
    "ResultCacheSettings",
    "SortDirection",
    "UnitOfWork",
    "UnitOfWorkError",
    "UnitOfWorkManager",
    "UnitOfWorkMetrics",
    "UnitOfWorkState",
    "build_cache_key",
    "qualified_name",
]
