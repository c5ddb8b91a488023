"""
Backend - durable key/value storage for scope documents.

Keys are relative, slash-separated paths such as
``myapp/prod/network/state.json``. Values are opaque bytes.

The contract every backend honors:
- read() raises NotFoundError when no document exists
- write() replaces the whole document atomically (readers never see a torn write)
- create() writes only if nothing exists and reports whether it did
  (this is the lock primitive)
- delete() of a missing key is not an error
- list() returns every key under a prefix, sorted

Storage backends:
- In-memory (for testing)
- Local filesystem (LocalBackend)
- Google Cloud Storage (GCSBackend)
- Primary + secondary mirror (CompositeBackend)
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional, TypeVar

from ..errors import BackendUnavailableError, NotFoundError, TransientError
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def normalize_key(key: str) -> str:
    """Validate a backend key and strip redundant slashes."""
    if not isinstance(key, str) or not key.strip("/"):
        raise ValueError(f"Invalid backend key: {key!r}")
    parts = [p for p in key.split("/") if p]
    if any(p in (".", "..") for p in parts):
        raise ValueError(f"Backend key may not contain '.' or '..' segments: {key!r}")
    return "/".join(parts)


class Backend(ABC):
    """Abstract base class for scope document storage."""

    name = "backend"

    @abstractmethod
    def read(self, key: str) -> bytes:
        """
        Read a document.

        Raises:
            NotFoundError: If no document exists at key
            BackendUnavailableError: If the backend kept failing
        """
        pass

    @abstractmethod
    def write(self, key: str, data: bytes) -> None:
        """Atomically create or replace a document."""
        pass

    @abstractmethod
    def create(self, key: str, data: bytes) -> bool:
        """
        Write a document only if none exists.

        Returns:
            True if this call created the document, False if one already existed
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a document. Missing documents are ignored."""
        pass

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """Return all keys starting with prefix, sorted."""
        pass

    def exists(self, key: str) -> bool:
        """Check whether a document exists."""
        try:
            self.read(key)
        except NotFoundError:
            return False
        return True

    def describe(self) -> str:
        """Human-readable location, for CLI output."""
        return self.name


class RetryingBackend(Backend):
    """
    Backend that retries transient I/O failures.

    Subclasses implement the underscore methods and raise TransientError
    for failures worth retrying. Once the RetryPolicy is exhausted the
    public method raises BackendUnavailableError.
    """

    def __init__(self, retry: Optional[RetryPolicy] = None):
        self.retry = retry or RetryPolicy()

    def _call(self, operation: str, key: str, func: Callable[[], T]) -> T:
        try:
            return self.retry.run(
                func,
                retry_on=(TransientError,),
                description=f"{self.name} {operation} {key}",
            )
        except TransientError as e:
            raise BackendUnavailableError(operation, key, e) from e

    def read(self, key: str) -> bytes:
        key = normalize_key(key)
        return self._call("read", key, lambda: self._read(key))

    def write(self, key: str, data: bytes) -> None:
        key = normalize_key(key)
        self._call("write", key, lambda: self._write(key, data))

    def create(self, key: str, data: bytes) -> bool:
        key = normalize_key(key)
        return self._call("create", key, lambda: self._create(key, data))

    def delete(self, key: str) -> None:
        key = normalize_key(key)
        self._call("delete", key, lambda: self._delete(key))

    def list(self, prefix: str = "") -> list[str]:
        prefix = prefix.lstrip("/")
        return sorted(self._call("list", prefix or "/", lambda: self._list(prefix)))

    @abstractmethod
    def _read(self, key: str) -> bytes:
        pass

    @abstractmethod
    def _write(self, key: str, data: bytes) -> None:
        pass

    @abstractmethod
    def _create(self, key: str, data: bytes) -> bool:
        pass

    @abstractmethod
    def _delete(self, key: str) -> None:
        pass

    @abstractmethod
    def _list(self, prefix: str) -> "list[str]":
        pass


class InMemoryBackend(RetryingBackend):
    """
    In-memory backend for testing.

    All data is lost when the process exits.
    """

    name = "memory"

    def __init__(self, retry: Optional[RetryPolicy] = None):
        super().__init__(retry or RetryPolicy.single_attempt())
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def _read(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise NotFoundError(key) from None

    def _write(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(data)

    def _create(self, key: str, data: bytes) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = bytes(data)
            return True

    def _delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def _list(self, prefix: str) -> list[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def clear(self) -> None:
        """Clear all stored documents."""
        with self._lock:
            self._data.clear()
