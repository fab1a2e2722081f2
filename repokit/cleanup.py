"""Resource cleanup patterns for repokit components.

Sessions, engines and cache stores all need an explicit, once-only release.
``CleanupMixin`` gives them a shared ``cleanup()`` entry point that is safe to
call repeatedly and doubles as an async context manager.
"""

import asyncio
import inspect
import typing as t

from .logger import get_logger

logger = get_logger(__name__)

_CLOSE_METHODS = ("close", "aclose", "dispose", "clear")


class CleanupMixin:
    """Idempotent cleanup of owned resources."""

    def __init__(self) -> None:
        self._resources: list[t.Any] = []
        self._cleaned_up = False
        self._cleanup_lock: asyncio.Lock | None = None

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up

    def register_resource(self, resource: t.Any) -> None:
        """Register a resource to be released by ``cleanup()``."""
        if resource not in self._resources:
            self._resources.append(resource)

    async def cleanup_resource(self, resource: t.Any) -> None:
        """Release a single resource using the first close-like method it has."""
        if resource is None:
            return

        for method_name in _CLOSE_METHODS:
            method = getattr(resource, method_name, None)
            if method is None:
                continue
            result = method()
            if inspect.isawaitable(result):
                await result
            logger.debug(
                f"Released {type(resource).__name__} using {method_name}()",
            )
            return

    async def _cleanup_resources(self) -> None:
        """Hook for subclasses; runs before registered resources are released."""

    async def cleanup(self) -> None:
        """Release everything this component owns, at most once."""
        if self._cleanup_lock is None:
            self._cleanup_lock = asyncio.Lock()

        async with self._cleanup_lock:
            if self._cleaned_up:
                return
            self._cleaned_up = True

            errors: list[str] = []
            try:
                await self._cleanup_resources()
            finally:
                for resource in self._resources.copy():
                    try:
                        await self.cleanup_resource(resource)
                    except Exception as e:
                        errors.append(f"{type(resource).__name__}: {e}")
                self._resources.clear()

            if errors:
                logger.warning(f"Resource cleanup errors: {'; '.join(errors)}")

    async def __aenter__(self) -> t.Self:
        return self

    async def __aexit__(self, exc_type: t.Any, exc_val: t.Any, exc_tb: t.Any) -> None:
        await self.cleanup()
