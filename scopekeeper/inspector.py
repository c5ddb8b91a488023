"""
ScopeInspector - read-only traversal of persisted scopes.

Lists every scope under a backend, summarizes and validates them, and
aggregates statistics. Nothing here acquires a lease or writes.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .backends import Backend
from .errors import CorruptedStateError, NotFoundError
from .lock import LockManager
from .paths import LOCK_FILE, ScopePath
from .schemas import Lease, ScopeState
from .state_store import StateStore
from .utils import Clock, ms_to_datetime, now_ms

logger = logging.getLogger(__name__)

_STAGE_NAMES = {"prod", "production", "dev", "development", "staging", "stage", "qa", "test"}
_STAGE_PATTERN = re.compile(r"^(pr|branch|feature)-|^\d+$")


def infer_scope_type(path: ScopePath) -> str:
    """Classify a scope path as application, stage, nested or test."""
    if any(s == "test" or s.startswith("test-") for s in path.segments):
        return "test"
    if path.depth > 2:
        return "nested"
    if path.stage in _STAGE_NAMES or _STAGE_PATTERN.search(path.stage):
        return "stage"
    return "application"


@dataclass
class ScopeSummary:
    """One row of ``scopes list``."""
    path: str
    type: str
    created_at: int = 0
    updated_at: int = 0
    resource_count: int = 0
    nested_scopes: list[str] = field(default_factory=list)
    locked: bool = False
    stale_lock: bool = False
    corrupted: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "type": self.type,
            "created_at": ms_to_datetime(self.created_at).isoformat() if self.created_at else None,
            "updated_at": ms_to_datetime(self.updated_at).isoformat() if self.updated_at else None,
            "resource_count": self.resource_count,
            "nested_scopes": list(self.nested_scopes),
            "locked": self.locked,
            "stale_lock": self.stale_lock,
            "corrupted": self.corrupted,
            "error": self.error,
        }


@dataclass
class ScopeDetails:
    """Everything known about one scope."""
    summary: ScopeSummary
    state: ScopeState
    lease: Optional[Lease]
    backups: list[str]
    state_size: int

    def to_dict(self) -> dict[str, Any]:
        data = self.summary.to_dict()
        data.update({
            "schema_version": self.state.schema_version,
            "resources": {key: record.to_dict() for key, record in sorted(self.state.resources.items())},
            "lease": self.lease.to_dict() if self.lease else None,
            "backups": list(self.backups),
            "state_size": self.state_size,
        })
        return data


@dataclass
class ScopeValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


@dataclass
class ScopeStatistics:
    total_scopes: int = 0
    scopes_by_type: dict[str, int] = field(default_factory=dict)
    total_resources: int = 0
    locked_scopes: int = 0
    stale_locked_scopes: int = 0
    corrupted_scopes: int = 0
    oldest_scope: Optional[ScopeSummary] = None
    newest_scope: Optional[ScopeSummary] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_scopes": self.total_scopes,
            "scopes_by_type": dict(self.scopes_by_type),
            "total_resources": self.total_resources,
            "locked_scopes": self.locked_scopes,
            "stale_locked_scopes": self.stale_locked_scopes,
            "corrupted_scopes": self.corrupted_scopes,
            "oldest_scope": self.oldest_scope.path if self.oldest_scope else None,
            "newest_scope": self.newest_scope.path if self.newest_scope else None,
        }


def _segment_prefix(prefix: str) -> str:
    """Key prefix matching whole path segments ('myapp' does not match 'myapp2/...')."""
    prefix = prefix.strip("/")
    return f"{prefix}/" if prefix else ""


class ScopeInspector:
    """Read-only views over all scopes in a backend."""

    def __init__(self, backend: Backend, store: StateStore, locks: LockManager, clock: Clock = now_ms):
        self.backend = backend
        self.store = store
        self.locks = locks
        self.clock = clock

    def _lock_status(self, path: ScopePath) -> tuple[Optional[Lease], bool, bool]:
        """(lease, locked, stale) for a scope path."""
        try:
            raw = self.backend.read(path.lock_key)
        except NotFoundError:
            return None, False, False
        try:
            lease = Lease.from_json(raw)
        except ValueError:
            # A marker nobody can parse will be reclaimed by the next acquirer
            return None, True, True
        stale = lease.is_expired(self.clock())
        return lease, True, stale

    def summarize(self, path: ScopePath) -> Optional[ScopeSummary]:
        """Summary for one scope, or None if it has no state document."""
        summary = ScopeSummary(path=str(path), type=infer_scope_type(path))
        _, summary.locked, summary.stale_lock = self._lock_status(path)
        try:
            state = self.store.load(path)
        except CorruptedStateError as e:
            summary.corrupted = True
            summary.error = e.reason
            return summary
        if state is None:
            return None
        summary.created_at = state.created_at
        summary.updated_at = state.updated_at
        summary.resource_count = len(state.resources)
        summary.nested_scopes = sorted(state.nested_scopes)
        return summary

    def list_scopes(self, prefix: str = "") -> list[ScopeSummary]:
        """All scopes with a state document, sorted by path."""
        summaries = []
        for key in self.backend.list(_segment_prefix(prefix)):
            path = ScopePath.from_state_key(key)
            if path is None:
                continue
            summary = self.summarize(path)
            if summary is not None:
                summaries.append(summary)
        return sorted(summaries, key=lambda s: s.path)

    def list_lock_markers(self, prefix: str = "") -> list[ScopePath]:
        """Scope paths that currently have a lock marker (with or without state)."""
        paths = []
        for key in self.backend.list(_segment_prefix(prefix)):
            parts = key.split("/")
            if parts[-1] != LOCK_FILE or len(parts) < 3:
                continue
            try:
                paths.append(ScopePath(tuple(parts[:-1])))
            except ValueError:
                continue
        return paths

    def inspect_scope(self, path: ScopePath) -> Optional[ScopeDetails]:
        """
        Full details for one scope.

        Raises:
            CorruptedStateError: If the state document cannot be parsed
        """
        try:
            raw = self.backend.read(path.state_key)
        except NotFoundError:
            return None
        state = self.store.load(path)
        if state is None:
            return None
        lease, locked, stale = self._lock_status(path)
        summary = ScopeSummary(
            path=str(path),
            type=infer_scope_type(path),
            created_at=state.created_at,
            updated_at=state.updated_at,
            resource_count=len(state.resources),
            nested_scopes=sorted(state.nested_scopes),
            locked=locked,
            stale_lock=stale,
        )
        return ScopeDetails(
            summary=summary,
            state=state,
            lease=lease,
            backups=self.store.list_snapshots(path),
            state_size=len(raw),
        )

    def get_state_contents(self, path: ScopePath) -> Optional[str]:
        """The raw state document, exactly as stored."""
        try:
            return self.backend.read(path.state_key).decode("utf-8", errors="replace")
        except NotFoundError:
            return None

    def validate_scope(self, path: ScopePath) -> ScopeValidation:
        """Check a state document's structure and report errors and warnings."""
        result = ScopeValidation(valid=False)
        try:
            raw = self.backend.read(path.state_key)
        except NotFoundError:
            result.errors.append("State file not found")
            return result

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            result.errors.append(f"State file is not valid JSON: {e}")
            return result
        if not isinstance(data, dict):
            result.errors.append("State document is not an object")
            return result

        if "schemaVersion" not in data:
            result.errors.append("Missing schemaVersion field")
        if "updatedAt" not in data:
            result.errors.append("Missing updatedAt field")
        if "scopePath" not in data:
            result.warnings.append("Missing scopePath field")
        elif data["scopePath"] != str(path):
            result.warnings.append(f"scopePath '{data['scopePath']}' does not match location '{path}'")

        try:
            state = ScopeState.from_dict(data, scope_path=str(path))
        except ValueError as e:
            result.errors.append(f"Invalid state document: {e}")
        else:
            ids: dict[str, str] = {}
            for key, record in state.resources.items():
                if record.id in ids:
                    result.errors.append(f"Resource id '{record.id}' is recorded under both '{ids[record.id]}' and '{key}'")
                ids[record.id] = key
                if record.created_at > record.updated_at:
                    result.warnings.append(f"Resource {key} was updated before it was created")
            for name in state.nested_scopes:
                try:
                    self.backend.read(path.child(name).state_key)
                except NotFoundError:
                    result.warnings.append(f"Nested scope '{name}' has no state document")
                except ValueError:
                    result.errors.append(f"Nested scope name '{name}' is not a valid path segment")

        _, locked, stale = self._lock_status(path)
        if stale:
            result.warnings.append("Scope has a stale lock (lease expired but marker present)")
        elif locked:
            result.warnings.append("Scope is currently locked")

        result.valid = not result.errors
        return result

    def get_statistics(self, prefix: str = "") -> ScopeStatistics:
        """Aggregate counts across all scopes."""
        stats = ScopeStatistics()
        for scope in self.list_scopes(prefix):
            stats.total_scopes += 1
            stats.scopes_by_type[scope.type] = stats.scopes_by_type.get(scope.type, 0) + 1
            stats.total_resources += scope.resource_count
            if scope.locked:
                stats.locked_scopes += 1
            if scope.stale_lock:
                stats.stale_locked_scopes += 1
            if scope.corrupted:
                stats.corrupted_scopes += 1
                continue
            if stats.oldest_scope is None or scope.created_at < stats.oldest_scope.created_at:
                stats.oldest_scope = scope
            if stats.newest_scope is None or scope.created_at > stats.newest_scope.created_at:
                stats.newest_scope = scope
        return stats
