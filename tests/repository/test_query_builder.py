"""Tests for the fluent query builder."""

import pytest
from sqlalchemy.engine import Row

from repokit.repository import (
    EagerLoad,
    InvalidArgumentError,
    LoadStrategy,
    QueryBuilder,
    QueryType,
    SortDirection,
)

from .models import Customer, Order, OrderLine


@pytest.fixture
def builder():
    return QueryBuilder(Order)


class TestComposition:
    """Composing a query never executes it."""

    def test_chaining_returns_builder(self, builder):
        """Each composing call returns the same builder."""
        result = (
            builder.where(Order.total > 10)
            .include(Order.lines)
            .order_by(Order.total)
            .select(Order.number)
        )
        assert result is builder

    def test_where_none_rejected(self, builder):
        with pytest.raises(InvalidArgumentError):
            builder.where(None)

    def test_predicates_are_anded(self, builder):
        stmt = builder.where(Order.total > 10).where(Order.status == "open").build()
        sql = str(stmt)
        assert "orders.total >" in sql
        assert "AND orders.status =" in sql

    def test_order_by_descending_shorthand(self, builder):
        sql = str(builder.order_by(Order.total, descending=True).build())
        assert "ORDER BY orders.total DESC" in sql

    def test_order_by_direction(self, builder):
        sql = str(builder.order_by(Order.number, SortDirection.ASC).build())
        assert "ORDER BY orders.number ASC" in sql

    def test_attribute_names_resolve(self, builder):
        by_name = QueryBuilder(Order).order_by("total").build()
        by_attribute = builder.order_by(Order.total).build()
        assert str(by_name) == str(by_attribute)

    def test_unknown_attribute_name_rejected(self, builder):
        with pytest.raises(InvalidArgumentError):
            builder.order_by("does_not_exist")

    def test_non_column_key_rejected(self, builder):
        with pytest.raises(InvalidArgumentError):
            builder.order_by(42)

    def test_empty_projection_rejected(self, builder):
        with pytest.raises(InvalidArgumentError):
            builder.select()

    def test_projection_replaces_columns(self, builder):
        sql = str(builder.where(Order.total > 10).select(Order.number).build())
        assert sql.startswith("SELECT orders.number \nFROM orders")
        assert "WHERE orders.total >" in sql


class TestEagerLoading:
    """Relationship includes."""

    def test_include_relationship(self, builder):
        builder.include(Order.lines)
        assert builder.includes == (EagerLoad((Order.lines,)),)
        assert builder.depends_on() == (OrderLine,)

    def test_include_by_name(self, builder):
        builder.include("customer")
        assert builder.includes[0].path == (Order.customer,)

    def test_nested_path(self):
        builder = QueryBuilder(Customer).include((Customer.orders, Order.lines))
        assert builder.depends_on() == (Order, OrderLine)
        assert builder.includes[0].describe() == (
            "Customer.orders.Order.lines:selectin"
        )

    def test_column_is_not_a_relationship(self, builder):
        with pytest.raises(InvalidArgumentError):
            builder.include(Order.total)

    def test_unknown_relationship_name(self, builder):
        with pytest.raises(InvalidArgumentError):
            builder.include("nothing")

    def test_projection_drops_eager_loads(self, builder):
        stmt = builder.include(Order.lines).select(Order.number).build()
        assert stmt._with_options == ()
        assert builder.depends_on() == ()

    def test_joined_include_detected(self, builder):
        builder.include(EagerLoad((Order.lines,), LoadStrategy.JOINED))
        assert builder.has_joined_include
        assert "LEFT OUTER JOIN orderline" in str(builder.build())


class TestTerminalStatements:
    """Terminal operations and their canonical text."""

    def test_first_limits_to_one_row(self, builder):
        assert "LIMIT" in str(builder.first_statement())

    def test_count_wraps_filtered_query(self, builder):
        sql = str(builder.where(Order.total > 10).count_statement())
        assert sql.startswith("SELECT count(*) AS count_1")
        assert "WHERE orders.total >" in sql

    def test_exists_statement(self, builder):
        sql = str(builder.where(Order.status == "open").exists_statement())
        assert sql.startswith("SELECT EXISTS")

    def test_group_count_groups(self, builder):
        sql = str(builder.group_count_statement(Order.status))
        assert "GROUP BY orders.status" in sql

    def test_grouped_count_needs_key(self, builder):
        with pytest.raises(InvalidArgumentError):
            builder.terminal_statement(QueryType.GROUP_COUNT)

    def test_canonical_text_is_deterministic(self):
        first = QueryBuilder(Order).where(Order.total > 10).order_by("total")
        second = QueryBuilder(Order).where(Order.total > 10).order_by(Order.total)
        assert first.canonical_text() == second.canonical_text()

    def test_canonical_text_includes_parameters(self):
        low = QueryBuilder(Order).where(Order.total > 10).canonical_text()
        high = QueryBuilder(Order).where(Order.total > 20).canonical_text()
        assert low != high
        assert "10" in low

    def test_canonical_text_differs_per_terminal(self, builder):
        builder.where(Order.total > 10)
        texts = {
            builder.canonical_text(QueryType.FIRST),
            builder.canonical_text(QueryType.COUNT),
            builder.canonical_text(QueryType.EXISTS),
            builder.canonical_text(QueryType.GROUP_COUNT, Order.status),
        }
        assert len(texts) == 4

    def test_canonical_text_includes_eager_loads(self):
        plain = QueryBuilder(Order).canonical_text()
        selectin = QueryBuilder(Order).include(Order.lines).canonical_text()
        subquery = (
            QueryBuilder(Order)
            .include(EagerLoad((Order.lines,), LoadStrategy.SUBQUERY))
            .canonical_text()
        )
        assert len({plain, selectin, subquery}) == 3

    def test_in_clause_is_rendered(self):
        builder = QueryBuilder(Order).where(Order.status.in_(["open", "closed"]))
        text = builder.canonical_text()
        assert "'open'" in text
        assert "'closed'" in text


class TestResultTypes:
    def test_entity(self, builder):
        assert builder.result_type() is Order

    def test_single_column(self, builder):
        assert builder.select(Order.total).result_type() is float

    def test_several_columns(self, builder):
        assert builder.select(Order.number, Order.total).result_type() is Row

    def test_aggregates(self, builder):
        assert builder.result_type(QueryType.COUNT) is int
        assert builder.result_type(QueryType.GROUP_COUNT) is int
        assert builder.result_type(QueryType.EXISTS) is bool


class TestCloneAndReset:
    def test_clone_is_independent(self, builder):
        builder.where(Order.total > 10)
        copy = builder.clone().order_by(Order.total)
        assert copy.canonical_text() != builder.canonical_text()
        assert "ORDER BY" not in str(builder.build())

    def test_reset(self, builder):
        builder.where(Order.total > 10).include(Order.lines).select(Order.number)
        assert builder.reset() is builder
        assert str(builder.build()) == str(QueryBuilder(Order).build())
        assert builder.includes == ()
        assert builder.projection == ()
