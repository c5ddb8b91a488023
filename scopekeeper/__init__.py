"""
scopekeeper - Scope state tracking, locking and orphan finalization.

A deployment run opens a Scope, declares the resources it still wants,
and finalizes it: anything recorded by an earlier run but not declared
by this one is an orphan and is destroyed through a registered
Destroyable.
"""

__version__ = "0.1.0"

from scopekeeper.destroyers import Destroyable, DestroyerRegistry, FunctionDestroyer, NoOpDestroyer
from scopekeeper.errors import (
    BackendUnavailableError,
    ConfigError,
    CorruptedStateError,
    DestroyFailedError,
    InvalidStateError,
    LockBusyError,
    LockNotHeldError,
    NotFoundError,
    PermanentError,
    ScopekeeperError,
    TransientError,
)
from scopekeeper.finalizer import FinalizeOptions, Finalizer
from scopekeeper.paths import ScopePath
from scopekeeper.schemas import (
    DestroyStrategy,
    FinalizationReport,
    FinalizeStrategy,
    Lease,
    ResourceRecord,
    ScopeState,
)
from scopekeeper.scope import Scope, ScopeRuntime, ScopeStatus

__all__ = [
    "__version__",
    "Scope",
    "ScopeRuntime",
    "ScopeStatus",
    "ScopePath",
    "ResourceRecord",
    "ScopeState",
    "Lease",
    "FinalizeOptions",
    "Finalizer",
    "FinalizationReport",
    "FinalizeStrategy",
    "DestroyStrategy",
    "Destroyable",
    "DestroyerRegistry",
    "FunctionDestroyer",
    "NoOpDestroyer",
    "ScopekeeperError",
    "ConfigError",
    "TransientError",
    "PermanentError",
    "NotFoundError",
    "CorruptedStateError",
    "LockBusyError",
    "LockNotHeldError",
    "InvalidStateError",
    "DestroyFailedError",
    "BackendUnavailableError",
]
