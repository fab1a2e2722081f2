"""Fixtures for repository tests: a SQLite database per test and a fresh cache."""

import pytest
from sqlalchemy import event

from repokit.repository import ResultCache, ResultCacheSettings, UnitOfWork
from repokit.sql import Sql, SqlSettings

from .models import Customer, Order, OrderLine


class StatementCounter:
    """Counts statements sent to the database."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def __call__(self, conn, cursor, statement, parameters, context, executemany):
        self.statements.append(statement)

    @property
    def selects(self) -> int:
        return sum(
            1 for stmt in self.statements if stmt.lstrip().upper().startswith("SELECT")
        )

    def reset(self) -> None:
        self.statements.clear()


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
async def sql(tmp_path):
    """SQL adapter over a fresh SQLite file with all tables created."""
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'repokit.db'}"
    settings = SqlSettings(database_url=database_url)
    sql = Sql(settings)
    await sql.init()
    yield sql
    await sql.cleanup()


@pytest.fixture
def statements(sql):
    counter = StatementCounter()
    event.listen(sql.engine.sync_engine, "before_cursor_execute", counter)
    yield counter
    event.remove(sql.engine.sync_engine, "before_cursor_execute", counter)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def cache(clock):
    cache = ResultCache(ResultCacheSettings(), clock=clock)
    yield cache
    await cache.cleanup()


@pytest.fixture
async def uow(sql, cache):
    uow = UnitOfWork(sql.session_factory(), cache=cache)
    yield uow
    await uow.dispose()


@pytest.fixture
async def make_uow(sql, cache):
    """Factory for extra units of work sharing the database and the cache."""
    created: list[UnitOfWork] = []

    def factory(include_caching=None):
        uow = UnitOfWork(
            sql.session_factory(),
            cache=cache,
            include_caching=include_caching,
        )
        created.append(uow)
        return uow

    yield factory
    for uow in created:
        await uow.dispose()


@pytest.fixture
async def customer(sql):
    customer = Customer(name="Ada", email="ada@example.com")
    async with sql.get_session() as session:
        session.add(customer)
        await session.commit()
    return customer


@pytest.fixture
async def orders(sql, customer):
    """Ten persisted orders for ``customer``, the first one with two lines."""
    orders = [
        Order(
            number=f"SO-{i:03d}",
            total=float(i * 10),
            status="open" if i % 2 else "closed",
            customer_id=customer.id,
        )
        for i in range(1, 11)
    ]
    async with sql.get_session() as session:
        session.add_all(orders)
        await session.flush()
        lines = [
            OrderLine(product="widget", quantity=2, order_id=orders[0].id),
            OrderLine(product="gadget", quantity=1, order_id=orders[0].id),
        ]
        session.add_all(lines)
        await session.commit()
    return orders
