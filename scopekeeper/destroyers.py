"""
Destroyers - the capability that tears down an orphaned resource.

The engine never calls cloud APIs itself. Each resource type is mapped to
a Destroyable in a DestroyerRegistry, and the Finalizer dispatches each
orphan to the destroyer registered for its record's ``type``.

Destroyers can be registered in code or published by other packages
through the ``scopekeeper.destroyers`` entry-point group:

    [project.entry-points."scopekeeper.destroyers"]
    "aws:s3:bucket" = "mypkg.destroyers:destroy_bucket"
"""

import logging
from abc import ABC, abstractmethod
from importlib.metadata import entry_points
from typing import Any, Callable, Optional

from .errors import PermanentError
from .schemas import ResourceRecord

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "scopekeeper.destroyers"
WILDCARD = "*"


class Destroyable(ABC):
    """Tears down one resource."""

    @abstractmethod
    def destroy(self, key: str, record: ResourceRecord) -> None:
        """
        Destroy the resource described by record.

        Args:
            key: Logical key of the resource within its scope
            record: The recorded resource

        Raises:
            PermanentError: For failures that retrying cannot fix
            Exception: Any other failure (retried by the Finalizer)
        """
        pass


class FunctionDestroyer(Destroyable):
    """Adapts a plain ``func(key, record)`` callable."""

    def __init__(self, func: Callable[[str, ResourceRecord], Any]):
        self.func = func

    def destroy(self, key: str, record: ResourceRecord) -> None:
        self.func(key, record)

    def __repr__(self) -> str:
        return f"FunctionDestroyer({getattr(self.func, '__name__', self.func)!r})"


class NoOpDestroyer(Destroyable):
    """
    Destroyer that does nothing but remember what it was asked to destroy.

    Useful for testing and for scopes whose resources are torn down elsewhere.
    """

    def __init__(self) -> None:
        self.destroyed: list[str] = []

    def destroy(self, key: str, record: ResourceRecord) -> None:
        logger.debug(f"NoOp destroy of {key} ({record.type}:{record.id})")
        self.destroyed.append(key)


def as_destroyer(obj: Any) -> Destroyable:
    """Coerce a Destroyable, Destroyable subclass, or callable into a Destroyable."""
    if isinstance(obj, Destroyable):
        return obj
    if isinstance(obj, type) and issubclass(obj, Destroyable):
        return obj()
    if callable(obj):
        return FunctionDestroyer(obj)
    raise TypeError(f"Cannot use {obj!r} as a destroyer")


class DestroyerRegistry:
    """
    Registry mapping resource types to destroyers.

    A destroyer registered under ``"*"`` handles any type without its own.

    Usage:
        registry = DestroyerRegistry()
        registry.register("aws:s3:bucket", delete_bucket)
        registry.get("aws:s3:bucket").destroy(key, record)
    """

    def __init__(self) -> None:
        self._destroyers: dict[str, Destroyable] = {}

    def register(self, resource_type: str, destroyer: Any) -> None:
        """
        Register a destroyer for a resource type.

        Args:
            resource_type: Resource type string (or "*" for the fallback)
            destroyer: Destroyable instance, subclass, or ``func(key, record)``
        """
        self._destroyers[resource_type] = as_destroyer(destroyer)

    def get(self, resource_type: str) -> Destroyable:
        """
        Get the destroyer for a resource type.

        Raises:
            PermanentError: If neither the type nor "*" is registered
        """
        destroyer = self._destroyers.get(resource_type) or self._destroyers.get(WILDCARD)
        if destroyer is None:
            registered = self.list_types()
            raise PermanentError(
                f"No destroyer registered for resource type: {resource_type}. "
                f"Registered: {registered}"
            )
        return destroyer

    def has(self, resource_type: str) -> bool:
        return resource_type in self._destroyers or WILDCARD in self._destroyers

    def list_types(self) -> list[str]:
        return sorted(self._destroyers)

    def destroy(self, key: str, record: ResourceRecord) -> None:
        """Dispatch a record to its type's destroyer."""
        self.get(record.type).destroy(key, record)

    def discover(self, group: str = ENTRY_POINT_GROUP) -> int:
        """
        Register destroyers published through entry points.

        Returns:
            Number of destroyers registered
        """
        count = 0
        eps = entry_points()
        for ep in eps.select(group=group):
            try:
                self.register(ep.name, ep.load())
            except (ImportError, AttributeError, TypeError) as e:
                logger.warning(f"Skipping destroyer entry point {ep.name} ({ep.value}): {e}")
                continue
            count += 1
        if count:
            logger.debug(f"Discovered {count} destroyer(s) from '{group}'")
        return count

    @classmethod
    def create_noop(cls) -> "DestroyerRegistry":
        """
        Registry whose fallback destroyer does nothing.

        Useful for testing and for reconciling state after manual cleanup.
        """
        registry = cls()
        registry.register(WILDCARD, NoOpDestroyer())
        return registry

    @classmethod
    def create_default(cls, discover: bool = True) -> "DestroyerRegistry":
        """Registry populated from installed entry points."""
        registry = cls()
        if discover:
            registry.discover()
        return registry

    def __contains__(self, resource_type: Optional[str]) -> bool:
        return resource_type in self._destroyers
