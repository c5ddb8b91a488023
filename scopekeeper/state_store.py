"""
StateStore - load, save, snapshot and restore scope state documents.

Document layout (backend-relative):
- ``<scope>/state.json``                 current state
- ``<scope>/.backups/<updatedAt>.json``  snapshots, oldest pruned first

When versioning is enabled, save() writes the snapshot of the new state
before the state itself, so the latest snapshot always equals the last
committed document. A corrupted state.json can therefore be recovered
with ``restore()`` without losing the last good write.
"""

import logging
from typing import Optional

from .backends import Backend
from .errors import CorruptedStateError, NotFoundError
from .lock import LockManager
from .paths import ScopePath
from .schemas import Lease, ScopeState
from .utils import Clock, now_ms

logger = logging.getLogger(__name__)

SNAPSHOT_ID_WIDTH = 13


def snapshot_id_for(state: ScopeState) -> str:
    """Snapshot ids are zero-padded updatedAt values so they sort lexically."""
    return str(state.updated_at).zfill(SNAPSHOT_ID_WIDTH)


class StateStore:
    """Persists ScopeState documents through a Backend."""

    def __init__(
        self,
        backend: Backend,
        lock_manager: LockManager,
        versioning_enabled: bool = True,
        max_backup_versions: int = 10,
        clock: Clock = now_ms,
    ):
        if max_backup_versions < 1:
            raise ValueError("max_backup_versions must be >= 1")
        self.backend = backend
        self.locks = lock_manager
        self.versioning_enabled = versioning_enabled
        self.max_backup_versions = max_backup_versions
        self.clock = clock

    def _parse(self, key: str, path: ScopePath, payload: bytes) -> ScopeState:
        try:
            return ScopeState.from_json(payload, scope_path=str(path))
        except ValueError as e:
            raise CorruptedStateError(key, str(e)) from e

    def load(self, path: ScopePath) -> Optional[ScopeState]:
        """
        Load a scope's state.

        Returns:
            The ScopeState, or None if no document exists

        Raises:
            CorruptedStateError: If the document cannot be parsed
            BackendUnavailableError: If the backend kept failing
        """
        try:
            payload = self.backend.read(path.state_key)
        except NotFoundError:
            return None
        return self._parse(path.state_key, path, payload)

    def save(self, path: ScopePath, state: ScopeState, lease: Lease) -> ScopeState:
        """
        Persist a scope's state under a held lease.

        updatedAt is advanced to be strictly greater than both the in-memory
        value and whatever is currently persisted.

        Returns:
            The state as written (with its new updatedAt)

        Raises:
            LockNotHeldError: If the lease is no longer held
        """
        self.locks.ensure_held(lease)

        floor = state.updated_at
        try:
            persisted = self.load(path)
        except CorruptedStateError:
            persisted = None
        if persisted is not None:
            floor = max(floor, persisted.updated_at)

        saved = state.copy()
        saved.scope_path = str(path)
        saved.updated_at = max(self.clock(), floor + 1)
        if not saved.created_at:
            saved.created_at = saved.updated_at

        if self.versioning_enabled:
            self.snapshot(path, saved)
        self.backend.write(path.state_key, saved.to_json())
        logger.debug(
            f"Saved state for {path} ({len(saved.resources)} resources, updatedAt={saved.updated_at})",
            extra={"scope_path": str(path), "event": "state_saved"},
        )
        return saved

    def snapshot(self, path: ScopePath, state: ScopeState) -> str:
        """
        Write a snapshot of ``state`` and prune old ones.

        Returns:
            The snapshot id
        """
        snapshot_id = snapshot_id_for(state)
        self.backend.write(path.backup_key(snapshot_id), state.to_json())

        snapshots = self.list_snapshots(path)
        excess = len(snapshots) - self.max_backup_versions
        for old_id in snapshots[:max(0, excess)]:
            self.backend.delete(path.backup_key(old_id))
            logger.debug(f"Pruned snapshot {old_id} of {path}")
        return snapshot_id

    def list_snapshots(self, path: ScopePath) -> list[str]:
        """Snapshot ids for a scope, oldest first."""
        prefix = path.backups_prefix
        ids = []
        for key in self.backend.list(prefix):
            name = key[len(prefix):]
            if "/" in name or not name.endswith(".json"):
                continue
            ids.append(name[: -len(".json")])
        return sorted(ids)

    def latest_snapshot(self, path: ScopePath) -> Optional[str]:
        snapshots = self.list_snapshots(path)
        return snapshots[-1] if snapshots else None

    def restore(self, path: ScopePath, snapshot_id: Optional[str] = None) -> ScopeState:
        """
        Read a snapshot. Nothing is written; callers save the result under a lease.

        Args:
            path: Scope path
            snapshot_id: Snapshot to read (defaults to the newest)

        Raises:
            NotFoundError: If the snapshot does not exist
            CorruptedStateError: If the snapshot cannot be parsed
        """
        if snapshot_id is None:
            snapshot_id = self.latest_snapshot(path)
            if snapshot_id is None:
                raise NotFoundError(path.backups_prefix, f"No snapshots for {path}")
        key = path.backup_key(snapshot_id)
        payload = self.backend.read(key)
        return self._parse(key, path, payload)

    def delete(self, path: ScopePath, lease: Lease) -> None:
        """Remove a scope's state document and all of its snapshots."""
        self.locks.ensure_held(lease)
        for snapshot_id in self.list_snapshots(path):
            self.backend.delete(path.backup_key(snapshot_id))
        self.backend.delete(path.state_key)
        logger.info(
            f"Deleted state for {path}",
            extra={"scope_path": str(path), "event": "state_deleted"},
        )
