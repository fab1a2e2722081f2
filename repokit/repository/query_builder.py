"""Query Builder Implementation.

Provides a fluent, side-effect free description of a query over one entity
type:
- Filtering with SQLAlchemy boolean clauses
- Eager loading of relationships (selectin, joined, subquery)
- Ordering and projection
- Terminal statements and their canonical text for cache keys

Nothing here executes; ``build()`` lowers the description to an unexecuted
SQLAlchemy ``Select`` in the fixed order filter, eager-load, order, project.
"""

from enum import Enum

from dataclasses import dataclass
from sqlalchemy import ColumnElement, Select, func, select
from sqlalchemy.engine import Row
from sqlalchemy.orm import (
    QueryableAttribute,
    RelationshipProperty,
    joinedload,
    selectinload,
    subqueryload,
)
from typing import Any

from ._base import InvalidArgumentError, OrderSpec, SortDirection


class QueryType(Enum):
    """Terminal operation of a query."""

    FIRST = "first"
    COUNT = "count"
    EXISTS = "exists"
    GROUP_COUNT = "group_count"


class LoadStrategy(Enum):
    """Relationship loading strategy."""

    SELECTIN = "selectin"
    JOINED = "joined"
    SUBQUERY = "subquery"


_LOADERS = {
    LoadStrategy.SELECTIN: selectinload,
    LoadStrategy.JOINED: joinedload,
    LoadStrategy.SUBQUERY: subqueryload,
}


def _relationship(attribute: Any) -> RelationshipProperty[Any]:
    prop = getattr(attribute, "property", None)
    if not isinstance(prop, RelationshipProperty):
        msg = f"{attribute!r} is not a relationship attribute"
        raise InvalidArgumentError(msg, operation="include")
    return prop


@dataclass(frozen=True)
class EagerLoad:
    """Eager-load directive: a relationship path and how to load it."""

    path: tuple[Any, ...]
    strategy: LoadStrategy = LoadStrategy.SELECTIN

    def __post_init__(self) -> None:
        if not self.path:
            msg = "Eager-load path must name at least one relationship"
            raise InvalidArgumentError(msg, operation="include")
        for attribute in self.path:
            _relationship(attribute)

    @property
    def target_types(self) -> tuple[type, ...]:
        """Entity types reached along the path."""
        return tuple(_relationship(attr).mapper.class_ for attr in self.path)

    def option(self) -> Any:
        """SQLAlchemy loader option for the path."""
        option = _LOADERS[self.strategy](self.path[0])
        for attribute in self.path[1:]:
            option = getattr(option, f"{self.strategy.value}load")(attribute)
        return option

    def describe(self) -> str:
        steps = ".".join(f"{attr.class_.__name__}.{attr.key}" for attr in self.path)
        return f"{steps}:{self.strategy.value}"


class QueryBuilder:
    """Fluent query builder for one entity type.

    Every composing call mutates the builder and returns it for chaining; use
    ``clone()`` to branch a query. Attribute names given as strings resolve
    against the entity type.
    """

    def __init__(self, entity_type: type) -> None:
        self.entity_type = entity_type
        self._predicates: list[Any] = []
        self._includes: list[EagerLoad] = []
        self._ordering: list[OrderSpec] = []
        self._projection: list[Any] = []

    def where(self, predicate: Any) -> "QueryBuilder":
        """Add a filter; several filters are AND-ed.

        Args:
            predicate: SQLAlchemy boolean clause

        Returns:
            Query builder for chaining
        """
        if predicate is None:
            msg = "Predicate must not be None"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_type.__name__,
                operation="where",
            )
        self._predicates.append(predicate)
        return self

    def include(self, *loads: Any) -> "QueryBuilder":
        """Eager-load relationships.

        Args:
            loads: relationship attributes or names, tuples of them for a
                nested path, or ``EagerLoad`` values

        Returns:
            Query builder for chaining
        """
        for load in loads:
            self._includes.append(self._eager_load(load))
        return self

    def order_by(
        self,
        key: Any,
        direction: SortDirection = SortDirection.ASC,
        *,
        descending: bool | None = None,
    ) -> "QueryBuilder":
        """Add an ordering key; later calls order within earlier ones.

        Args:
            key: column, SQL expression or attribute name
            direction: sort direction
            descending: shorthand overriding ``direction`` when given

        Returns:
            Query builder for chaining
        """
        if descending is not None:
            direction = SortDirection.DESC if descending else SortDirection.ASC
        self._ordering.append(OrderSpec(self._column(key, "order_by"), direction))
        return self

    def select(self, *columns: Any) -> "QueryBuilder":
        """Project onto columns instead of returning entities."""
        if not columns:
            msg = "Projection needs at least one column"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_type.__name__,
                operation="select",
            )
        self._projection = [self._column(column, "select") for column in columns]
        return self

    @property
    def includes(self) -> tuple[EagerLoad, ...]:
        return tuple(self._includes)

    @property
    def projection(self) -> tuple[Any, ...]:
        return tuple(self._projection)

    @property
    def has_joined_include(self) -> bool:
        return not self._projection and any(
            load.strategy is LoadStrategy.JOINED for load in self._includes
        )

    def depends_on(self) -> tuple[type, ...]:
        """Entity types, besides the queried one, whose rows feed the result."""
        if self._projection:
            return ()
        types: list[type] = []
        for load in self._includes:
            types.extend(tp for tp in load.target_types if tp not in types)
        return tuple(types)

    def result_type(self, query_type: QueryType = QueryType.FIRST) -> Any:
        """Type of the value a terminal operation produces."""
        if query_type in (QueryType.COUNT, QueryType.GROUP_COUNT):
            return int
        if query_type is QueryType.EXISTS:
            return bool
        if not self._projection:
            return self.entity_type
        if len(self._projection) > 1:
            return Row
        column_type = getattr(self._projection[0], "type", None)
        try:
            return column_type.python_type if column_type is not None else Any
        except NotImplementedError:
            return Any

    def build(self) -> Select[Any]:
        """Lower to an unexecuted statement: filter, eager-load, order, project."""
        stmt = self._filtered()
        if not self._projection:
            stmt = stmt.options(*(load.option() for load in self._includes))
        for ordering in self._ordering:
            stmt = stmt.order_by(
                ordering.key.desc() if ordering.descending else ordering.key.asc()
            )
        if self._projection:
            stmt = stmt.with_only_columns(*self._projection)
        return stmt

    def first_statement(self) -> Select[Any]:
        return self.build().limit(1)

    def count_statement(self) -> Select[Any]:
        return select(func.count()).select_from(self._filtered().subquery())

    def exists_statement(self) -> Select[Any]:
        return select(self._filtered().exists())

    def group_count_statement(self, key: Any) -> Select[Any]:
        """Count of distinct groups of ``key`` among the filtered rows."""
        column = self._column(key, "group_by")
        groups = select(column).where(*self._predicates).group_by(column)
        return select(func.count()).select_from(groups.subquery())

    def terminal_statement(
        self,
        query_type: QueryType,
        group_by: Any | None = None,
    ) -> Select[Any]:
        if query_type is QueryType.FIRST:
            return self.first_statement()
        if query_type is QueryType.COUNT:
            return self.count_statement()
        if query_type is QueryType.EXISTS:
            return self.exists_statement()
        if group_by is None:
            msg = "Grouped count needs a grouping key"
            raise InvalidArgumentError(
                msg,
                entity_type=self.entity_type.__name__,
                operation="group_count",
            )
        return self.group_count_statement(group_by)

    def canonical_text(
        self,
        query_type: QueryType = QueryType.FIRST,
        group_by: Any | None = None,
    ) -> str:
        """Deterministic text of a terminal statement.

        Compiled SQL, then the bound parameters sorted by name, then the
        eager-load directives. Equal text means equal results.
        """
        stmt = self.terminal_statement(query_type, group_by)
        compiled = stmt.compile(compile_kwargs={"render_postcompile": True})
        params = sorted(compiled.params.items(), key=lambda item: item[0])
        parts = [str(compiled), ";".join(f"{name}={value!r}" for name, value in params)]
        if query_type is QueryType.FIRST and not self._projection:
            parts.extend(load.describe() for load in self._includes)
        return "|".join(parts)

    def clone(self) -> "QueryBuilder":
        """Create a copy of this query builder.

        Returns:
            New query builder with same configuration
        """
        new_builder = QueryBuilder(self.entity_type)
        new_builder._predicates = self._predicates.copy()
        new_builder._includes = self._includes.copy()
        new_builder._ordering = self._ordering.copy()
        new_builder._projection = self._projection.copy()
        return new_builder

    def reset(self) -> "QueryBuilder":
        """Reset query builder to initial state.

        Returns:
            Query builder for chaining
        """
        self._predicates.clear()
        self._includes.clear()
        self._ordering.clear()
        self._projection.clear()
        return self

    def _filtered(self) -> Select[Any]:
        stmt = select(self.entity_type)
        if self._predicates:
            stmt = stmt.where(*self._predicates)
        return stmt

    def _column(self, key: Any, operation: str) -> Any:
        if isinstance(key, str):
            attribute = getattr(self.entity_type, key, None)
            if not isinstance(attribute, QueryableAttribute):
                msg = f"{self.entity_type.__name__} has no mapped attribute {key!r}"
                raise InvalidArgumentError(
                    msg,
                    entity_type=self.entity_type.__name__,
                    operation=operation,
                )
            return attribute
        if isinstance(key, QueryableAttribute | ColumnElement):
            return key
        msg = f"{key!r} is not a column or SQL expression"
        raise InvalidArgumentError(
            msg,
            entity_type=self.entity_type.__name__,
            operation=operation,
        )

    def _eager_load(self, load: Any) -> EagerLoad:
        if isinstance(load, EagerLoad):
            return load
        steps = load if isinstance(load, tuple) else (load,)
        owner = self.entity_type
        path = []
        for step in steps:
            attribute = getattr(owner, step, None) if isinstance(step, str) else step
            if attribute is None:
                msg = f"{owner.__name__} has no relationship {step!r}"
                raise InvalidArgumentError(
                    msg,
                    entity_type=self.entity_type.__name__,
                    operation="include",
                )
            owner = _relationship(attribute).mapper.class_
            path.append(attribute)
        return EagerLoad(tuple(path))
