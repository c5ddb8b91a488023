"""
scopekeeper.schemas - Data structures persisted or reported by the engine.

ResourceRecord -> ScopeState (state.json) ; Lease (.lock) ; FinalizationReport

Persisted documents use camelCase keys on the wire and snake_case
attributes in Python.
"""

from .resource import ResourceRecord
from .state import ScopeState, SCHEMA_VERSION
from .lease import Lease, new_holder_id
from .report import (
    DestroyStrategy,
    ErrorReason,
    FinalizationError,
    FinalizationReport,
    FinalizeStrategy,
)

__all__ = [
    "ResourceRecord",
    "ScopeState",
    "SCHEMA_VERSION",
    "Lease",
    "new_holder_id",
    "DestroyStrategy",
    "ErrorReason",
    "FinalizationError",
    "FinalizationReport",
    "FinalizeStrategy",
]
