"""Generic Repository Implementation.

One repository per entity type over an ``AsyncSession``:
- Cached terminal reads (first, count, exists)
- Staged writes that invalidate the entity's cached results
- Explicit loading of relationships on attached entities
"""

from collections.abc import Iterable

import anyio.from_thread
from sqlalchemy import Select, inspect, select
from sqlalchemy.orm import Mapper, RelationshipProperty, make_transient_to_detached
from sqlalchemy.orm.attributes import flag_modified, set_committed_value
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any

from repokit.depends import depends
from repokit.logger import get_logger

from ._base import (
    EntityNotAttachedError,
    InvalidArgumentError,
    RepositorySettings,
)
from .cache import ResultCache
from .query_builder import QueryBuilder, QueryType

logger = get_logger(__name__)


def detached_copy(entity: Any, copies: dict[int, Any] | None = None) -> Any:
    """Session-free copy of a loaded entity and of its loaded relationships.

    Only attributes already present on ``entity`` are copied; the copy is
    detached with the same identity key, so any session can merge it without
    a query.
    """
    copies = {} if copies is None else copies
    if id(entity) in copies:
        return copies[id(entity)]
    state = inspect(entity)
    mapper = state.mapper
    copy = mapper.class_manager.new_instance()
    copies[id(entity)] = copy
    for attribute in mapper.column_attrs:
        if attribute.key in state.dict:
            set_committed_value(copy, attribute.key, state.dict[attribute.key])
    for relationship in mapper.relationships:
        if relationship.key not in state.dict:
            continue
        value = state.dict[relationship.key]
        if relationship.uselist:
            value = [detached_copy(item, copies) for item in value]
        elif value is not None:
            value = detached_copy(value, copies)
        set_committed_value(copy, relationship.key, value)
    make_transient_to_detached(copy)
    return copy


class GenericRepository[EntityT]:
    """Caching-aware repository for one mapped entity type.

    Reads go through the shared ``ResultCache`` unless ``include_caching`` is
    off. Writes only stage changes in the session; the owning unit of work
    commits them. Every write invalidates cached results for the entity type,
    whether or not this instance caches.
    """

    def __init__(
        self,
        session: AsyncSession,
        entity_type: type[EntityT],
        cache: ResultCache | None = None,
        include_caching: bool | None = None,
        settings: RepositorySettings | None = None,
    ) -> None:
        mapper = inspect(entity_type, raiseerr=False)
        if not isinstance(mapper, Mapper):
            msg = f"{entity_type!r} is not a mapped entity type"
            raise InvalidArgumentError(msg, operation="init")
        if len(mapper.primary_key) != 1:
            msg = f"{entity_type.__name__} must have exactly one primary key column"
            raise InvalidArgumentError(
                msg,
                entity_type=entity_type.__name__,
                operation="init",
            )

        self.session = session
        self.entity_type = entity_type
        self.settings = settings or depends.get_sync(RepositorySettings)
        self.cache = cache or depends.get_sync(ResultCache)
        self.include_caching = (
            self.settings.cache_enabled if include_caching is None else include_caching
        )
        self._mapper = mapper

    @property
    def entity_name(self) -> str:
        return self.entity_type.__name__

    def queryable(self) -> Select[Any]:
        """Raw, uncached statement over the entity type for custom queries."""
        return select(self.entity_type)

    def query(self) -> QueryBuilder:
        return QueryBuilder(self.entity_type)

    # Writes

    async def add(self, entity: EntityT) -> None:
        self._check_entity(entity, "add")
        await self._invalidate()
        self.session.add(entity)

    async def add_range(self, entities: Iterable[EntityT]) -> None:
        entities = self._check_entities(entities, "add_range")
        await self._invalidate()
        self.session.add_all(entities)

    async def update(self, entity: EntityT) -> EntityT:
        """Stage an update and return the instance the session tracks.

        Transient instances are merged (inserted or updated by primary key);
        others are attached and every loaded column is marked modified.
        """
        self._check_entity(entity, "update")
        await self._invalidate()
        return await self._stage_update(entity)

    async def update_range(self, entities: Iterable[EntityT]) -> list[EntityT]:
        entities = self._check_entities(entities, "update_range")
        await self._invalidate()
        return [await self._stage_update(entity) for entity in entities]

    async def delete(self, entity: EntityT) -> bool:
        self._check_entity(entity, "delete")
        await self._invalidate()
        await self._stage_delete(entity)
        return True

    async def delete_range(self, entities: Iterable[EntityT]) -> None:
        entities = self._check_entities(entities, "delete_range")
        await self._invalidate()
        for entity in entities:
            await self._stage_delete(entity)

    async def delete_by_id(self, entity_id: Any) -> bool:
        """Stage removal of the entity with ``entity_id``.

        Returns:
            False, leaving session and cache untouched, if no such entity exists
        """
        if entity_id is None:
            msg = "Entity id must not be None"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation="delete_by_id",
            )
        entity = await self.session.get(self.entity_type, entity_id)
        if entity is None:
            logger.debug(f"{self.entity_name} {entity_id} not found, nothing to delete")
            return False
        return await self.delete(entity)

    def detach(self, entity: EntityT) -> None:
        self._check_entity(entity, "detach")
        if entity in self.session:
            self.session.expunge(entity)

    def detach_range(self, entities: Iterable[EntityT]) -> None:
        for entity in self._check_entities(entities, "detach_range"):
            if entity in self.session:
                self.session.expunge(entity)

    async def remove_cache_keys(self) -> int:
        """Evict every cached result that depends on this entity type."""
        return await self._invalidate()

    # Reads

    async def exists(self, predicate: Any) -> bool:
        if predicate is None:
            msg = "Predicate must not be None"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation="exists",
            )
        builder = self.query().where(predicate)

        async def execute() -> bool:
            result = await self.session.execute(builder.exists_statement())
            return bool(result.scalar())

        return await self._cached(builder, QueryType.EXISTS, execute)

    async def total_count(
        self,
        predicate: Any | None = None,
        group_by: Any | None = None,
    ) -> int:
        """Number of matching rows, or of distinct ``group_by`` groups among them.

        Grouped counts are not cached.
        """
        builder = self.query()
        if predicate is not None:
            builder.where(predicate)

        if group_by is not None:
            stmt = builder.group_count_statement(group_by)
            return (await self.session.execute(stmt)).scalar_one()

        async def execute() -> int:
            result = await self.session.execute(builder.count_statement())
            return result.scalar_one()

        return await self._cached(builder, QueryType.COUNT, execute)

    def total_count_sync(self, predicate: Any | None = None) -> int:
        """Blocking ``total_count`` for code running in an anyio worker thread.

        Call from a thread started with ``anyio.to_thread.run_sync``; the
        query itself runs on the event loop that owns the session.

        Raises:
            RuntimeError: when called from the event loop thread or from a
                thread anyio did not start
        """
        return anyio.from_thread.run(self.total_count, predicate)

    async def get(
        self,
        predicate: Any | None = None,
        include: Any | None = None,
        order_by: Any | None = None,
        descending: bool = False,
        select: Any | None = None,
        result_type: Any | None = None,
    ) -> Any:
        """First matching entity, or projected value, or None.

        Args:
            predicate: optional filter clause
            include: relationship, nested path tuple or ``EagerLoad``, or a
                list of them
            order_by: optional ordering key
            descending: sort ``order_by`` descending
            select: column, or tuple/list of columns, to project onto; one
                column yields a scalar, several yield a row
            result_type: overrides the result type used in the cache key
        """
        builder = self.query()
        if predicate is not None:
            builder.where(predicate)
        if include is not None:
            builder.include(*(include if isinstance(include, list) else [include]))
        if order_by is not None:
            builder.order_by(order_by, descending=descending)
        if select is not None:
            builder.select(*(select if isinstance(select, list | tuple) else [select]))
        return await self.first(builder, result_type=result_type)

    async def first(self, builder: QueryBuilder, result_type: Any | None = None) -> Any:
        """Execute a composed query's FIRST terminal operation, cached.

        Entities are cached as detached copies; the caller always gets the
        instance tracked by this repository's session.
        """
        if builder.entity_type is not self.entity_type:
            msg = f"Query targets {builder.entity_type.__name__}"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation="first",
            )

        async def execute() -> Any:
            result = await self.session.execute(builder.first_statement())
            if builder.has_joined_include:
                result = result.unique()
            if len(builder.projection) > 1:
                return result.first()
            value = result.scalars().first()
            if builder.projection or value is None:
                return value
            return detached_copy(value)

        value = await self._cached(builder, QueryType.FIRST, execute, result_type)
        if builder.projection:
            return value
        return await self._attach(value)

    # Navigation

    async def load_reference(self, entity: EntityT, navigation: Any) -> Any:
        """Load a many-to-one relationship of an attached entity."""
        key = self._navigation(navigation, "load_reference", collection=False)
        return await self._load(entity, key, "load_reference")

    async def load_collection(self, entity: EntityT, navigation: Any) -> Any:
        """Load a one-to-many relationship of an attached entity."""
        key = self._navigation(navigation, "load_collection", collection=True)
        return await self._load(entity, key, "load_collection")

    # Internals

    async def _cached(
        self,
        builder: QueryBuilder,
        query_type: QueryType,
        execute: Any,
        result_type: Any | None = None,
    ) -> Any:
        if not self.include_caching:
            return await execute()
        key = self.cache.key_generator.generate(
            builder.canonical_text(query_type),
            self.entity_type,
            result_type or builder.result_type(query_type),
            depends_on=builder.depends_on() if query_type is QueryType.FIRST else (),
        )
        return await self.cache.get_or_compute(key, execute)

    async def _attach(self, snapshot: Any) -> Any:
        """Instance for ``snapshot`` tracked by this repository's session."""
        if snapshot is None:
            return None
        tracked = self.session.identity_map.get(inspect(snapshot).key)
        if tracked is not None:
            return tracked
        return await self.session.merge(snapshot, load=False)

    async def _invalidate(self) -> int:
        return await self.cache.invalidate(self.entity_type)

    async def _stage_update(self, entity: EntityT) -> EntityT:
        state = inspect(entity)
        if state.transient:
            return await self.session.merge(entity)
        self.session.add(entity)
        primary_keys = {column.key for column in self._mapper.primary_key}
        for attribute in self._mapper.column_attrs:
            if attribute.key in primary_keys or attribute.key not in state.dict:
                continue
            flag_modified(entity, attribute.key)
        return entity

    async def _stage_delete(self, entity: EntityT) -> None:
        state = inspect(entity)
        if state.transient:
            entity = await self.session.merge(entity)
            state = inspect(entity)
        if state.pending:
            self.session.expunge(entity)
            return
        await self.session.delete(entity)

    async def _load(self, entity: EntityT, key: str, operation: str) -> Any:
        self._check_entity(entity, operation)
        if entity not in self.session:
            raise EntityNotAttachedError(self.entity_name, operation)
        await self.session.refresh(entity, attribute_names=[key])
        return getattr(entity, key)

    def _navigation(self, navigation: Any, operation: str, collection: bool) -> str:
        if navigation is None:
            msg = "Navigation must not be None"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation=operation,
            )
        if isinstance(navigation, str):
            key = navigation
        else:
            key = getattr(navigation, "key", None)
        relationships = self._mapper.relationships
        relationship = relationships[key] if key in relationships else None
        if not isinstance(relationship, RelationshipProperty) or (
            not isinstance(navigation, str)
            and getattr(navigation, "property", None) is not relationship
        ):
            msg = f"{navigation!r} is not a relationship of {self.entity_name}"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation=operation,
            )
        if relationship.uselist != collection:
            kind = "collection" if relationship.uselist else "reference"
            msg = f"{self.entity_name}.{key} is a {kind} navigation"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation=operation,
            )
        return key

    def _check_entity(self, entity: Any, operation: str) -> None:
        if entity is None:
            msg = "Entity must not be None"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation=operation,
            )
        if not isinstance(entity, self.entity_type):
            msg = f"Expected {self.entity_name}, got {type(entity).__name__}"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation=operation,
            )

    def _check_entities(
        self,
        entities: Iterable[EntityT],
        operation: str,
    ) -> list[EntityT]:
        if entities is None:
            msg = "Entities must not be None"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_name,
                operation=operation,
            )
        entities = list(entities)
        for entity in entities:
            self._check_entity(entity, operation)
        return entities
