"""
LockManager - lease-based mutual exclusion over scope paths.

A lease is a JSON marker at ``<scope>/.lock`` created with the backend's
conditional create, so at most one holder can create it. A marker whose
TTL has passed (or that cannot be parsed) is reclaimed: the next acquirer
deletes it and retries the create. There is no renewal; the TTL is the
only protection against a crashed holder.
"""

import logging
import os
import socket
import time
from typing import Callable, Optional

from .backends import Backend
from .errors import LockBusyError, LockNotHeldError, NotFoundError
from .paths import ScopePath
from .schemas import Lease, new_holder_id
from .utils import Clock, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 10 * 60 * 1000
POLL_INTERVAL_SECONDS = 0.5


class LockManager:
    """
    Acquires, verifies and releases leases on scope paths.

    Example:
        locks = LockManager(backend)
        lease = locks.acquire(ScopePath.of("myapp", "prod"))
        try:
            ...
        finally:
            locks.release(lease)
    """

    def __init__(
        self,
        backend: Backend,
        holder_id: Optional[str] = None,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        clock: Clock = now_ms,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        if default_ttl_ms <= 0:
            raise ValueError("default_ttl_ms must be positive")
        self.backend = backend
        self.holder_id = holder_id or new_holder_id()
        self.default_ttl_ms = default_ttl_ms
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = poll_interval

    def _new_lease(self, path: ScopePath, ttl_ms: int) -> Lease:
        return Lease(
            scope_path=str(path),
            holder_id=self.holder_id,
            acquired_at=self.clock(),
            ttl_ms=ttl_ms,
            hostname=socket.gethostname(),
            pid=os.getpid(),
        )

    def _read_marker(self, path: ScopePath) -> tuple[Optional[Lease], Optional[bytes]]:
        """Return (lease, raw bytes); lease is None if the marker is unparsable."""
        try:
            raw = self.backend.read(path.lock_key)
        except NotFoundError:
            return None, None
        try:
            return Lease.from_json(raw), raw
        except ValueError as e:
            logger.warning(f"Unparsable lock marker at {path.lock_key}: {e}")
            return None, raw

    def _reclaim(self, path: ScopePath, raw: bytes) -> None:
        """Delete a stale marker, unless it changed since we read it."""
        try:
            current = self.backend.read(path.lock_key)
        except NotFoundError:
            return
        if current == raw:
            self.backend.delete(path.lock_key)

    def acquire(self, path: ScopePath, ttl_ms: Optional[int] = None, wait: float = 0.0) -> Lease:
        """
        Acquire the lease on a scope path.

        Args:
            path: Scope path to lock
            ttl_ms: Lease lifetime (defaults to default_ttl_ms)
            wait: Seconds to keep polling while the lease is held by someone else

        Returns:
            The acquired Lease

        Raises:
            LockBusyError: If an unexpired lease is held after waiting
            BackendUnavailableError: If the backend kept failing
        """
        ttl_ms = ttl_ms or self.default_ttl_ms
        deadline = time.monotonic() + max(0.0, wait)

        while True:
            lease = self._new_lease(path, ttl_ms)
            if self.backend.create(path.lock_key, lease.to_json()):
                logger.info(
                    f"Acquired lock on {path} (holder={self.holder_id}, ttl={ttl_ms}ms)",
                    extra={"scope_path": str(path), "event": "lock_acquired"},
                )
                return lease

            existing, raw = self._read_marker(path)
            if raw is None:
                # Released between our create and read
                continue
            if existing is None:
                self._reclaim(path, raw)
                continue
            if existing.is_expired(self.clock()):
                logger.info(
                    f"Reclaiming expired lock on {path} from {existing.holder_id}",
                    extra={"scope_path": str(path), "event": "lock_reclaimed"},
                )
                self._reclaim(path, raw)
                continue

            if time.monotonic() >= deadline:
                raise LockBusyError(str(path), existing)
            logger.debug(f"Lock on {path} held by {existing.holder_id}, waiting...")
            self.sleep(self.poll_interval)

    def inspect(self, path: ScopePath) -> Optional[Lease]:
        """Return the current marker's lease (expired or not), without mutating it."""
        lease, _ = self._read_marker(path)
        return lease

    def is_locked(self, path: ScopePath) -> bool:
        """True if an unexpired lease exists on the path."""
        lease = self.inspect(path)
        return lease is not None and not lease.is_expired(self.clock())

    def ensure_held(self, lease: Lease) -> None:
        """
        Verify a lease is still current.

        Raises:
            LockNotHeldError: If the marker is gone, belongs to another holder,
                or the lease has expired
        """
        current, raw = self._read_marker(ScopePath.parse(lease.scope_path))
        if raw is None:
            raise LockNotHeldError(lease.scope_path, "lock marker is missing")
        if current is None or current.holder_id != lease.holder_id or current.acquired_at != lease.acquired_at:
            holder = current.holder_id if current else "<unparsable>"
            raise LockNotHeldError(lease.scope_path, f"lock is held by {holder}")
        if current.is_expired(self.clock()):
            raise LockNotHeldError(lease.scope_path, "lease has expired")

    def release(self, lease: Lease) -> None:
        """
        Release a lease held by this caller.

        A missing marker is tolerated (the lease expired and was reclaimed
        and released by someone else).

        Raises:
            LockNotHeldError: If the marker now belongs to a different holder
        """
        path = ScopePath.parse(lease.scope_path)
        current, raw = self._read_marker(path)
        if raw is None:
            logger.warning(f"Lock on {path} already gone at release (holder={lease.holder_id})")
            return
        if current is not None and current.holder_id != lease.holder_id:
            raise LockNotHeldError(lease.scope_path, f"lock is now held by {current.holder_id}")
        self.backend.delete(path.lock_key)
        logger.info(
            f"Released lock on {path}",
            extra={"scope_path": str(path), "event": "lock_released"},
        )

    def force_release(self, path: ScopePath) -> Optional[Lease]:
        """
        Remove a lock marker regardless of holder.

        Returns:
            The lease that was removed, or None if there was none (or it was unparsable)
        """
        previous, raw = self._read_marker(path)
        if raw is None:
            return None
        self.backend.delete(path.lock_key)
        holder = previous.holder_id if previous else "<unparsable>"
        logger.warning(
            f"Force-released lock on {path} previously held by {holder}",
            extra={"scope_path": str(path), "event": "lock_force_released"},
        )
        return previous
