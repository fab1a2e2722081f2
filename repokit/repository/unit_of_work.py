"""Unit of Work Pattern Implementation.

Provides transaction management over one ``AsyncSession``:
- Memoized repositories per entity type
- Single atomic commit of the accumulated change set
- Change set preserved when a commit fails, so it can be fixed and retried
- Manager with transaction context and bounded history
"""

import threading
import uuid
from collections import deque
from enum import Enum

import typing as t
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from typing import Any

from repokit.cleanup import CleanupMixin
from repokit.depends import depends
from repokit.logger import get_logger

from ._base import RepositorySettings, UnitOfWorkError
from .cache import ResultCache
from .generic import GenericRepository

logger = get_logger(__name__)


class UnitOfWorkState(Enum):
    """Unit of Work state enumeration."""

    ACTIVE = "active"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"
    DISPOSED = "disposed"


@dataclass
class UnitOfWorkMetrics:
    """Metrics for Unit of Work operations."""

    transaction_id: str
    start_time: datetime
    end_time: datetime | None = None
    state: UnitOfWorkState = UnitOfWorkState.ACTIVE
    commits: int = 0
    entities_saved: int = 0
    repositories_used: set[str] = field(default_factory=set)
    error_message: str | None = None

    @property
    def duration(self) -> float | None:
        """Get transaction duration in seconds."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


class _ChangeSet:
    """Inserted, modified and deleted instances seen since the last commit.

    Flushes move instances out of the session's pending collections, so the
    set is fed from every flush as well as from what is still pending.
    """

    def __init__(self) -> None:
        self.new: dict[int, Any] = {}
        self.modified: dict[int, tuple[Any, dict[str, Any]]] = {}
        self.deleted: dict[int, Any] = {}

    def record(self, session: Session) -> None:
        for instance in session.new:
            self.new[id(instance)] = instance
        for instance in session.dirty:
            if not session.is_modified(instance):
                continue
            _, values = self.modified.get(id(instance), (instance, {}))
            values.update(_changed_columns(instance))
            self.modified[id(instance)] = (instance, values)
        for instance in session.deleted:
            self.deleted[id(instance)] = instance

    async def restage(self, session: AsyncSession) -> None:
        """Stage the recorded changes again after a rollback."""
        for instance in self.new.values():
            session.add(instance)
        for key, (instance, values) in self.modified.items():
            if key in self.new or key in self.deleted:
                continue
            session.add(instance)
            for name, value in values.items():
                setattr(instance, name, value)
        for instance in self.deleted.values():
            if inspect(instance).persistent:
                await session.delete(instance)

    def __len__(self) -> int:
        return len(self.new.keys() | self.modified.keys() | self.deleted.keys())


def _changed_columns(instance: Any) -> dict[str, Any]:
    state = inspect(instance)
    columns = state.mapper.column_attrs
    return {
        attr.key: attr.loaded_value
        for attr in state.attrs
        if attr.key in columns and attr.history.has_changes()
    }


class UnitOfWork(CleanupMixin):
    """Unit of Work over one session.

    Repositories obtained here share the session, so their staged writes
    commit together in ``save_changes()``. Confined to one task; only the
    repository table is guarded for access from other threads.
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: ResultCache | None = None,
        include_caching: bool | None = None,
    ) -> None:
        super().__init__()
        self.session = session
        self.cache = cache or depends.get_sync(ResultCache)
        self.settings = depends.get_sync(RepositorySettings)
        self.include_caching = include_caching
        self._state = UnitOfWorkState.ACTIVE
        self._repositories: dict[type, GenericRepository[Any]] = {}
        self._repositories_lock = threading.Lock()
        self._changes = _ChangeSet()
        self._metrics = UnitOfWorkMetrics(
            transaction_id=str(uuid.uuid4()),
            start_time=datetime.now(UTC),
        )
        event.listen(session.sync_session, "after_flush", self._record_flush)

    @property
    def state(self) -> UnitOfWorkState:
        """Get current Unit of Work state."""
        return UnitOfWorkState.DISPOSED if self.cleaned_up else self._state

    @property
    def transaction_id(self) -> str:
        """Get transaction ID."""
        return self._metrics.transaction_id

    @property
    def has_changes(self) -> bool:
        """Whether anything is staged or flushed but not yet committed."""
        self._ensure_active("has_changes")
        session = self.session
        return bool(
            self._changes
            or session.new
            or session.deleted
            or any(session.is_modified(instance) for instance in session.dirty)
        )

    def repository[EntityT](
        self,
        entity_type: type[EntityT],
    ) -> GenericRepository[EntityT]:
        """Repository for ``entity_type``, created once per unit of work."""
        self._ensure_active("repository")
        with self._repositories_lock:
            repository = self._repositories.get(entity_type)
            if repository is None:
                repository = GenericRepository(
                    self.session,
                    entity_type,
                    cache=self.cache,
                    include_caching=self.include_caching,
                    settings=self.settings,
                )
                self._repositories[entity_type] = repository
                self._metrics.repositories_used.add(entity_type.__name__)
            return repository

    async def save_changes(self) -> int:
        """Commit every staged change in one transaction.

        Returns:
            Number of inserted, updated and deleted entities

        On failure the transaction is rolled back, the change set is staged
        again and the store error is re-raised.
        """
        self._ensure_active("save_changes")
        changes = self._changes
        changes.record(self.session.sync_session)
        count = len(changes)

        self._state = UnitOfWorkState.COMMITTING
        try:
            await self.session.commit()
        except Exception as e:
            logger.exception(f"Commit failed for unit of work {self.transaction_id}")
            self._state = UnitOfWorkState.FAILED
            self._metrics.error_message = str(e)
            self._changes = _ChangeSet()
            await self.session.rollback()
            await changes.restage(self.session)
            raise

        self._changes = _ChangeSet()
        self._state = UnitOfWorkState.COMMITTED
        self._metrics.error_message = None
        self._metrics.commits += 1
        self._metrics.entities_saved += count
        logger.info(f"Unit of work {self.transaction_id} saved {count} entities")
        return count

    async def dispose(self) -> None:
        """Close the session and drop the repositories; safe to call again."""
        await self.cleanup()

    async def get_metrics(self) -> UnitOfWorkMetrics:
        """Get Unit of Work metrics.

        Returns:
            Metrics object with transaction information
        """
        self._metrics.state = self.state
        return self._metrics

    def _record_flush(self, session: Session, flush_context: Any) -> None:
        self._changes.record(session)

    def _ensure_active(self, operation: str) -> None:
        if self.cleaned_up:
            msg = f"Unit of work {self.transaction_id} is disposed ({operation})"
            raise UnitOfWorkError(msg, self.transaction_id)

    async def _cleanup_resources(self) -> None:
        """Clean up Unit of Work resources."""
        sync_session = self.session.sync_session
        if event.contains(sync_session, "after_flush", self._record_flush):
            event.remove(sync_session, "after_flush", self._record_flush)
        with self._repositories_lock:
            self._repositories.clear()
        self._changes = _ChangeSet()
        self._metrics.end_time = datetime.now(UTC)
        await self.session.close()


class UnitOfWorkManager(CleanupMixin):
    """Manager for Unit of Work instances.

    Provides factory methods and tracking for Unit of Work instances,
    with automatic cleanup and monitoring capabilities.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        cache: ResultCache | None = None,
        max_history: int = 1000,
    ) -> None:
        super().__init__()
        self.session_factory = session_factory
        self.cache = cache or depends.get_sync(ResultCache)
        self._active: dict[str, UnitOfWork] = {}
        self._history: deque[UnitOfWorkMetrics] = deque(maxlen=max_history)

    async def create_unit_of_work(
        self,
        include_caching: bool | None = None,
    ) -> UnitOfWork:
        """Create a new Unit of Work over a fresh session."""
        uow = UnitOfWork(
            self.session_factory(),
            cache=self.cache,
            include_caching=include_caching,
        )
        self._active[uow.transaction_id] = uow
        return uow

    @asynccontextmanager
    async def transaction(
        self,
        include_caching: bool | None = None,
    ) -> t.AsyncGenerator[UnitOfWork]:
        """Unit of Work that saves on success and is always disposed.

        Yields:
            Unit of Work instance
        """
        uow = await self.create_unit_of_work(include_caching)
        try:
            yield uow
            await uow.save_changes()
        except Exception as e:
            metrics = await uow.get_metrics()
            metrics.error_message = metrics.error_message or str(e)
            raise
        finally:
            await self._complete_transaction(uow)

    async def get_active_transactions(self) -> list[UnitOfWorkMetrics]:
        """Get metrics for all active transactions."""
        return [await uow.get_metrics() for uow in self._active.values()]

    async def get_transaction_history(
        self,
        limit: int = 100,
    ) -> list[UnitOfWorkMetrics]:
        """Most recent completed transactions, oldest first."""
        return list(self._history)[-limit:]

    async def get_transaction_stats(self) -> dict[str, Any]:
        """Counts over the retained history; a failure is any recorded error."""
        completed = len(self._history)
        failed = sum(
            1 for metrics in self._history if metrics.error_message is not None
        )
        return {
            "active_transactions": len(self._active),
            "completed_transactions": completed,
            "failed_transactions": failed,
            "entities_saved": sum(metrics.entities_saved for metrics in self._history),
            "success_rate": (completed - failed) / completed if completed else 0.0,
            "max_history_size": self._history.maxlen,
        }

    async def _complete_transaction(self, uow: UnitOfWork) -> None:
        self._active.pop(uow.transaction_id, None)
        await uow.dispose()
        self._history.append(await uow.get_metrics())

    async def _cleanup_resources(self) -> None:
        """Dispose every active Unit of Work."""
        for uow in list(self._active.values()):
            await uow.dispose()
        self._active.clear()
        self._history.clear()
