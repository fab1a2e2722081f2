"""Repository base types.

Errors, settings and shared enums used across the repository package, plus
the protocol the generic repository implements.
"""

from enum import Enum

import typing as t
from dataclasses import dataclass
from pydantic import Field
from typing import Any, TypeVar

from repokit.config import Settings
from repokit.depends import depends

EntityType = TypeVar("EntityType")


class RepositoryError(Exception):
    """Base exception for repository operations."""

    def __init__(
        self,
        message: str,
        entity_type: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.operation = operation
        super().__init__(message)


class InvalidArgumentError(RepositoryError, ValueError):
    """A required argument is missing or does not fit the entity type."""


class InvalidOperationError(RepositoryError):
    """The operation is not valid in the current state."""


class EntityNotAttachedError(InvalidOperationError):
    """Raised when a navigation load targets an entity outside the session."""

    def __init__(self, entity_type: str, operation: str) -> None:
        super().__init__(
            f"{entity_type} instance must be attached to the session",
            entity_type=entity_type,
            operation=operation,
        )


class UnitOfWorkError(RepositoryError):
    """Raised when a unit of work is used after it was disposed."""

    def __init__(self, message: str, transaction_id: str | None = None) -> None:
        super().__init__(message, operation="unit_of_work")
        self.transaction_id = transaction_id


class SortDirection(Enum):
    """Sort direction enumeration."""

    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class OrderSpec:
    """Ordering key and direction of a composed query."""

    key: Any
    direction: SortDirection = SortDirection.ASC

    @property
    def descending(self) -> bool:
        return self.direction is SortDirection.DESC


class RepositorySettings(Settings):
    """Repository configuration settings."""

    cache_enabled: bool = Field(
        default=True,
        description="Route reads through the result cache",
    )


@t.runtime_checkable
class RepositoryProtocol(t.Protocol[EntityType]):
    """Operations every repository exposes for one entity type."""

    async def add(self, entity: EntityType) -> None: ...

    async def update(self, entity: EntityType) -> EntityType: ...

    async def delete(self, entity: EntityType) -> bool: ...

    async def delete_by_id(self, entity_id: Any) -> bool: ...

    async def exists(self, predicate: Any) -> bool: ...

    async def total_count(
        self,
        predicate: Any | None = None,
        group_by: Any | None = None,
    ) -> int: ...

    async def get(self, predicate: Any | None = None, **kwargs: Any) -> Any: ...

    async def remove_cache_keys(self) -> int: ...


depends.set(RepositorySettings)
