"""Async SQL engine and session factory.

``Sql`` owns one ``AsyncEngine`` built lazily from ``SqlSettings`` and hands
out sessions that unit-of-work instances take over. Sessions keep attribute
values after commit, so cached entities stay readable once their session is
gone.
"""

import typing as t
from contextlib import asynccontextmanager
from pydantic import Field
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from .cleanup import CleanupMixin
from .config import Settings
from .depends import depends
from .logger import get_logger

logger = get_logger(__name__)


class SqlSettings(Settings):
    """SQL connection settings (``settings/sql.yaml``)."""

    database_url: str = Field(
        default="sqlite+aiosqlite:///repokit.db",
        description="Async SQLAlchemy database URL",
    )
    echo: bool = False
    create_all: bool = Field(
        default=True,
        description="Create missing tables from SQLModel metadata on init()",
    )
    foreign_keys: bool = Field(
        default=True,
        description="Enforce foreign keys on SQLite connections",
    )
    engine_kwargs: dict[str, t.Any] = {}

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


class Sql(CleanupMixin):
    def __init__(self, settings: SqlSettings | None = None) -> None:
        super().__init__()
        self.settings = settings or depends.get_sync(SqlSettings)
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_factory

    def _create_engine(self) -> AsyncEngine:
        logger.debug(f"Creating engine for {self.settings.database_url}")
        engine = create_async_engine(
            self.settings.database_url,
            echo=self.settings.echo,
            **self.settings.engine_kwargs,
        )
        if self.settings.is_sqlite and self.settings.foreign_keys:
            event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.register_resource(engine)
        return engine

    @asynccontextmanager
    async def get_session(self) -> t.AsyncGenerator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def get_conn(self) -> t.AsyncGenerator[AsyncConnection]:
        async with self.engine.begin() as conn:
            yield conn

    async def init(self) -> None:
        if not self.settings.create_all:
            return
        async with self.get_conn() as conn:
            try:
                await conn.run_sync(SQLModel.metadata.create_all)
            except Exception as e:
                logger.exception(f"Table creation failed: {e}")
                raise

    async def _cleanup_resources(self) -> None:
        self._session_factory = None
        self._engine = None


def _enable_sqlite_foreign_keys(
    dbapi_connection: t.Any,
    connection_record: t.Any,
) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


depends.set(SqlSettings)
