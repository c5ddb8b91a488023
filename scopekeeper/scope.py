"""
Scope - a hierarchical container of tracked resources.

A deployment run opens a Scope (application/stage[/nested...]),
initializes it (acquiring its lease and loading its recorded state),
declares the resources and nested scopes it still wants, then finalizes
it to destroy whatever was recorded but not re-declared.

    runtime = ScopeRuntime.from_config(config, destroyers=registry)
    scope = Scope("myapp", "pr-123", runtime)
    scope.initialize()
    scope.add_resource("api", ResourceRecord.create("w-1", "worker", now=now_ms()))
    report = scope.finalize()

Lifecycle: UNINITIALIZED -> INITIALIZING -> READY -> FINALIZING -> RELEASED.
Parents record nested scopes by name only; a process-wide ScopeIndex maps
paths to live handles so the Finalizer can find them.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Union

from .backends import Backend, InMemoryBackend, build_backend
from .config import ScopekeeperConfig
from .destroyers import DestroyerRegistry
from .errors import DestroyFailedError, InvalidStateError
from .finalizer import FinalizeOptions, Finalizer, find_orphans
from .lock import LockManager
from .paths import ScopePath, validate_segment
from .retry import RetryPolicy
from .schemas import (
    DestroyStrategy,
    FinalizationReport,
    FinalizeStrategy,
    Lease,
    ResourceRecord,
    ScopeState,
)
from .state_store import StateStore
from .utils import Clock, now_ms

logger = logging.getLogger(__name__)


class ScopeStatus(str, Enum):
    """Lifecycle of a Scope handle."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FINALIZING = "finalizing"
    RELEASED = "released"


class ScopeIndex:
    """Live Scope handles in this process, keyed by path."""

    def __init__(self) -> None:
        self._scopes: dict[str, "Scope"] = {}
        self._lock = threading.Lock()

    def register(self, scope: "Scope") -> None:
        with self._lock:
            self._scopes[str(scope.path)] = scope

    def get(self, path: Union[ScopePath, str]) -> Optional["Scope"]:
        with self._lock:
            return self._scopes.get(str(path))

    def unregister(self, path: Union[ScopePath, str], scope: Optional["Scope"] = None) -> None:
        """Drop the handle at ``path``; with ``scope``, only if it is that handle."""
        with self._lock:
            if scope is None or self._scopes.get(str(path)) is scope:
                self._scopes.pop(str(path), None)

    def __contains__(self, path: Union[ScopePath, str]) -> bool:
        return self.get(path) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._scopes)


@dataclass
class ScopeRuntime:
    """
    Everything a Scope needs, passed explicitly rather than read from globals.

    Attributes:
        backend: Storage for state documents and lock markers
        locks: Lease manager
        store: State document persistence
        destroyers: Resource type -> Destroyable registry
        retry: Retry policy for destroy calls
        index: Live scope handles in this process
        defaults: Default FinalizeOptions
        lock_wait: Seconds initialize() waits for a busy lease
        clock: Epoch-millisecond clock
    """
    backend: Backend
    locks: LockManager
    store: StateStore
    destroyers: DestroyerRegistry
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    index: ScopeIndex = field(default_factory=ScopeIndex)
    defaults: FinalizeOptions = field(default_factory=FinalizeOptions)
    lock_wait: float = 0.0
    clock: Clock = now_ms

    @property
    def finalizer(self) -> Finalizer:
        return Finalizer(self.destroyers, self.retry)

    @classmethod
    def from_config(
        cls,
        config: ScopekeeperConfig,
        destroyers: Optional[DestroyerRegistry] = None,
        backend: Optional[Backend] = None,
        clock: Clock = now_ms,
    ) -> "ScopeRuntime":
        """Build a runtime from a loaded configuration."""
        retry = config.retry.to_policy()
        backend = backend or build_backend(config.backend, retry)
        locks = LockManager(backend, default_ttl_ms=config.lock.ttl_ms, clock=clock)
        store = StateStore(
            backend,
            locks,
            versioning_enabled=config.versioning.enabled,
            max_backup_versions=config.versioning.max_backup_versions,
            clock=clock,
        )
        defaults = FinalizeOptions(
            strategy=config.finalize.strategy,
            destroy_strategy=config.finalize.destroy_strategy,
            retry_attempts=config.finalize.retry_attempts,
            concurrency=config.finalize.concurrency,
            destroy_timeout=config.finalize.destroy_timeout,
        )
        return cls(
            backend=backend,
            locks=locks,
            store=store,
            destroyers=destroyers if destroyers is not None else DestroyerRegistry.create_default(),
            retry=retry,
            defaults=defaults,
            lock_wait=config.lock.wait_seconds,
            clock=clock,
        )

    @classmethod
    def in_memory(
        cls,
        destroyers: Optional[DestroyerRegistry] = None,
        retry: Optional[RetryPolicy] = None,
        clock: Clock = now_ms,
        **store_options: Any,
    ) -> "ScopeRuntime":
        """Runtime over an InMemoryBackend. Useful for testing."""
        backend = InMemoryBackend()
        locks = LockManager(backend, clock=clock)
        store = StateStore(backend, locks, clock=clock, **store_options)
        return cls(
            backend=backend,
            locks=locks,
            store=store,
            destroyers=destroyers if destroyers is not None else DestroyerRegistry.create_noop(),
            retry=retry or RetryPolicy.no_wait(),
            clock=clock,
        )


class Scope:
    """
    Handle on one scope path.

    Attributes:
        path: The scope's ScopePath
        status: Lifecycle status
        state: Working state (recorded + this run's declarations)
        recorded: State as loaded at initialize(); not mutated by add_resource
        declared: Resources declared during this run, by key
        declared_nested: Nested scope names registered during this run
        lease: The held lease while initialized
    """

    def __init__(
        self,
        name: str,
        stage: str,
        runtime: ScopeRuntime,
        *nested: str,
        destroy_strategy: Union[DestroyStrategy, str, None] = None,
        register: bool = True,
    ):
        self.path = ScopePath.of(name, stage, *nested)
        self.runtime = runtime
        self.destroy_strategy = DestroyStrategy(
            destroy_strategy or runtime.defaults.destroy_strategy or DestroyStrategy.SEQUENTIAL
        )
        self.status = ScopeStatus.UNINITIALIZED
        self.lease: Optional[Lease] = None
        self.state: Optional[ScopeState] = None
        self.recorded: Optional[ScopeState] = None
        self.declared: dict[str, ResourceRecord] = {}
        self.declared_nested: set[str] = set()
        self._indexed = register
        if register:
            runtime.index.register(self)

    @classmethod
    def at(cls, path: Union[ScopePath, str], runtime: ScopeRuntime, **kwargs: Any) -> "Scope":
        """Open a scope by path (``app/stage[/nested...]``)."""
        if isinstance(path, str):
            path = ScopePath.parse(path)
        return cls(path.application, path.stage, runtime, *path.nested, **kwargs)

    @property
    def name(self) -> str:
        return self.path.application

    @property
    def stage(self) -> str:
        return self.path.stage

    @property
    def is_ready(self) -> bool:
        return self.status == ScopeStatus.READY

    def _require(self, operation: str, *allowed: ScopeStatus) -> None:
        if self.status not in allowed:
            raise InvalidStateError(operation, self.status, allowed[0] if len(allowed) == 1 else list(allowed))

    def initialize(self) -> "Scope":
        """
        Acquire the lease and load (or create) the scope's state.

        Calling initialize() on a ready scope is a no-op.

        Raises:
            LockBusyError: If another holder has the lease
            CorruptedStateError: If the state document cannot be parsed (the
                lease is released; recover with StateStore.restore)
        """
        if self.status == ScopeStatus.READY:
            return self
        self._require("initialize", ScopeStatus.UNINITIALIZED, ScopeStatus.RELEASED)
        if self._indexed and self.path not in self.runtime.index:
            self.runtime.index.register(self)

        self.status = ScopeStatus.INITIALIZING
        try:
            self.lease = self.runtime.locks.acquire(self.path, wait=self.runtime.lock_wait)
        except Exception:
            self.status = ScopeStatus.UNINITIALIZED
            raise

        try:
            state = self.runtime.store.load(self.path)
        except Exception:
            logger.error(f"Could not load state for {self.path}; releasing lock")
            self._release_lease()
            self.status = ScopeStatus.UNINITIALIZED
            raise

        if state is None:
            state = ScopeState.empty(str(self.path), now=self.runtime.clock())
            logger.info(f"Created new scope {self.path}", extra={"scope_path": str(self.path), "event": "scope_created"})
        self.recorded = state
        self.state = state.copy()
        self.declared = {}
        self.declared_nested = set()
        self.status = ScopeStatus.READY
        return self

    def add_resource(self, key: str, record: ResourceRecord) -> None:
        """
        Declare (upsert) a resource for this run. Nothing is written until finalize().

        Declaring a recorded resource's id under a new key re-keys it: the old
        key leaves the working state and finalize() will not destroy it.
        """
        self._require("add_resource", ScopeStatus.READY)
        if not key:
            raise ValueError("resource key is required")
        for other_key, other in list(self.state.resources.items()):
            if other.id != record.id or other_key == key:
                continue
            if other_key in self.declared:
                raise ValueError(f"Resource id '{record.id}' is already declared under key '{other_key}'")
            logger.info(f"Resource {record.id} re-keyed from '{other_key}' to '{key}' in {self.path}")
            del self.state.resources[other_key]
        self.state.resources[key] = record
        self.declared[key] = record

    def remove_resource(self, key: str) -> Optional[ResourceRecord]:
        """Withdraw a declaration made during this run."""
        self._require("remove_resource", ScopeStatus.READY)
        record = self.declared.pop(key, None)
        if record is None:
            return None
        if key in self.recorded.resources:
            self.state.resources[key] = self.recorded.resources[key]
        else:
            self.state.resources.pop(key, None)
        # Undo any re-keying this declaration caused
        for other_key, other in self.recorded.resources.items():
            if other.id == record.id and other_key != key and other_key not in self.declared:
                self.state.resources[other_key] = other
        return record

    def get_resource(self, key: str) -> Optional[ResourceRecord]:
        self._require("get_resource", ScopeStatus.READY)
        return self.state.resources.get(key)

    def get_resources(self) -> dict[str, ResourceRecord]:
        """All resources in the working state (recorded plus declared)."""
        self._require("get_resources", ScopeStatus.READY)
        return dict(self.state.resources)

    def get_stats(self) -> dict[str, Any]:
        """Counts over the in-memory state."""
        self._require("get_stats", ScopeStatus.READY)
        by_type: dict[str, int] = {}
        for record in self.state.resources.values():
            by_type[record.type] = by_type.get(record.type, 0) + 1
        return {
            "scope_path": str(self.path),
            "resources": len(self.state.resources),
            "declared": len(self.declared),
            "recorded": len(self.recorded.resources),
            "orphans": len(find_orphans(self.recorded.resources, self.declared)),
            "nested_scopes": len(self.state.nested_scopes),
            "by_type": by_type,
            "updated_at": self.state.updated_at,
        }

    def register_nested_scope(self, name: str) -> None:
        """Record a nested scope name (set semantics)."""
        self._require("register_nested_scope", ScopeStatus.READY)
        validate_segment(name)
        self.state.nested_scopes.add(name)
        self.declared_nested.add(name)

    def open_nested(self, name: str, register: bool = True) -> "Scope":
        """A handle on a nested scope sharing this scope's runtime (not initialized)."""
        return Scope(
            self.path.application,
            self.path.stage,
            self.runtime,
            *self.path.nested,
            name,
            destroy_strategy=self.destroy_strategy,
            register=register,
        )

    def nested(self, name: str) -> "Scope":
        """Register a nested scope and return its handle."""
        self.register_nested_scope(name)
        existing = self.runtime.index.get(self.path.child(name))
        if existing is not None:
            return existing
        return self.open_nested(name)

    def finalize(self, options: Optional[FinalizeOptions] = None, **overrides: Any) -> FinalizationReport:
        """
        Destroy orphans, persist the new state, and release the lease.

        Args:
            options: FinalizeOptions (defaults from the runtime)
            **overrides: Field overrides applied to options

        Returns:
            The FinalizationReport

        Raises:
            InvalidStateError: If the scope is not ready
            DestroyFailedError: Under the conservative strategy when an orphan
                could not be destroyed; state is saved and the report attached
        """
        self._require("finalize", ScopeStatus.READY)
        options = replace(options or self.runtime.defaults, **overrides)
        self.status = ScopeStatus.FINALIZING

        try:
            outcome = self.runtime.finalizer.finalize(self, options)
            if not options.dry_run:
                self.state = self.runtime.store.save(self.path, outcome.state, self.lease)
        except Exception:
            self.status = ScopeStatus.READY
            raise

        if options.keep_lock:
            if not options.dry_run:
                self.recorded = self.state.copy()
                if options.force:
                    self.declared = {}
            self.status = ScopeStatus.READY
        else:
            self.release()

        if outcome.halted_on is not None:
            halted = outcome.halted_on
            raise DestroyFailedError(halted.key, halted.cause, report=outcome.report)
        return outcome.report

    def force_cleanup(self, options: Optional[FinalizeOptions] = None, **overrides: Any) -> FinalizationReport:
        """Destroy every resource in the scope and its nested scopes, and clear its state."""
        overrides.setdefault("strategy", FinalizeStrategy.AGGRESSIVE)
        return self.finalize(options, force=True, **overrides)

    def discard(self) -> None:
        """Delete this scope's persisted state and release its lease."""
        self._require("discard", ScopeStatus.READY)
        self.runtime.store.delete(self.path, self.lease)
        self.release()

    def release(self) -> None:
        """Release the lease without finalizing."""
        self._require("release", ScopeStatus.READY, ScopeStatus.FINALIZING)
        self._release_lease()
        self.status = ScopeStatus.RELEASED
        self.runtime.index.unregister(self.path, self)

    def _release_lease(self) -> None:
        if self.lease is not None:
            self.runtime.locks.release(self.lease)
            self.lease = None

    def __enter__(self) -> "Scope":
        return self.initialize()

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.status in (ScopeStatus.READY, ScopeStatus.FINALIZING):
            self.release()

    def __repr__(self) -> str:
        return f"Scope({self.path}, status={self.status.value})"


__all__ = [
    "Scope",
    "ScopeIndex",
    "ScopeRuntime",
    "ScopeStatus",
]
