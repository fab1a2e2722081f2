import typing as t
from bevy import get_container


class Depends:
    """Dependency container facade for repokit.

    Components take explicit collaborators first and fall back to whatever is
    registered here, so process-wide defaults (the shared result cache,
    settings) can be swapped in one place.
    """

    @staticmethod
    def set(class_: t.Any, instance: t.Any = None) -> t.Any:
        """Register an instance for ``class_``; builds ``class_()`` when omitted.

        Returns the registered instance.
        """
        if instance is None:
            instance = class_()
        get_container().add(class_, instance)
        return instance

    @staticmethod
    def get_sync(category: t.Any) -> t.Any:
        """Get the registered instance for ``category``."""
        result = get_container().get(category)
        if isinstance(result, tuple):
            if len(result) != 1:
                msg = f"Dependency '{category}' is not registered as a single instance"
                raise RuntimeError(msg)
            return result[0]
        return result

    async def get(self, category: t.Any) -> t.Any:
        """Async alias of ``get_sync`` for call sites that are already async."""
        return self.get_sync(category)


depends = Depends()

__all__ = ["Depends", "depends"]
