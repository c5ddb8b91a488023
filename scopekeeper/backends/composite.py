"""
CompositeBackend - a primary backend mirrored to a secondary.

Writes and deletes go to both; only the primary's outcome decides the
result and secondary failures are logged. Reads and lists go to the
primary and fall back to the secondary when the primary is unavailable.
A NotFoundError from the primary is authoritative and is never masked
by the secondary.
"""

import logging

from ..errors import BackendUnavailableError, NotFoundError, PermanentError, ScopekeeperError
from .base import Backend

logger = logging.getLogger(__name__)

_FALLBACK_ON = (BackendUnavailableError, PermanentError)


class CompositeBackend(Backend):
    """Primary backend with a best-effort secondary mirror."""

    name = "composite"

    def __init__(self, primary: Backend, secondary: Backend):
        self.primary = primary
        self.secondary = secondary

    def describe(self) -> str:
        return f"composite({self.primary.describe()} -> {self.secondary.describe()})"

    def _mirror(self, operation: str, key: str, func) -> None:
        try:
            func()
        except ScopekeeperError as e:
            logger.warning(f"Secondary {operation} of {key} failed (primary succeeded): {e}")

    def read(self, key: str) -> bytes:
        try:
            return self.primary.read(key)
        except NotFoundError:
            raise
        except _FALLBACK_ON as e:
            logger.warning(f"Primary read of {key} failed, reading secondary: {e}")
            return self.secondary.read(key)

    def write(self, key: str, data: bytes) -> None:
        self.primary.write(key, data)
        self._mirror("write", key, lambda: self.secondary.write(key, data))

    def create(self, key: str, data: bytes) -> bool:
        created = self.primary.create(key, data)
        if created:
            self._mirror("write", key, lambda: self.secondary.write(key, data))
        return created

    def delete(self, key: str) -> None:
        self.primary.delete(key)
        self._mirror("delete", key, lambda: self.secondary.delete(key))

    def list(self, prefix: str = "") -> list[str]:
        try:
            return self.primary.list(prefix)
        except _FALLBACK_ON as e:
            logger.warning(f"Primary list of '{prefix}' failed, listing secondary: {e}")
            return self.secondary.list(prefix)
