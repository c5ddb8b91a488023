"""
Finalization report schemas.

A FinalizationReport is the ephemeral result of one finalize() call. It is
never persisted by the engine; callers may log it or hand it to
notification collaborators via ``to_dict()``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FinalizeStrategy(str, Enum):
    """How failures affect the rest of the run."""
    CONSERVATIVE = "conservative"
    AGGRESSIVE = "aggressive"


class DestroyStrategy(str, Enum):
    """How orphans are scheduled under the aggressive strategy."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ErrorReason(str, Enum):
    """Why an orphan (or nested scope) was not cleaned up."""
    DESTROY_FAILED = "destroy_failed"
    CANCELLED = "cancelled"
    NESTED_FAILED = "nested_failed"


@dataclass(frozen=True)
class FinalizationError:
    """
    One failure entry in a report.

    Attributes:
        scope_path: Scope the failing resource belongs to
        key: Logical resource key (or nested scope name for NESTED_FAILED)
        reason: Failure classification
        message: Human-readable cause
        attempts: Destroy attempts made (0 when never started)
    """
    scope_path: str
    key: str
    reason: ErrorReason
    message: str
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_path": self.scope_path,
            "key": self.key,
            "reason": self.reason.value,
            "message": self.message,
            "attempts": self.attempts,
        }


@dataclass
class FinalizationReport:
    """
    Result of finalizing one scope (and, folded in, its nested scopes).

    ``resources_deleted`` and ``nested_scopes_processed`` count what a real
    run deletes; a dry run reports the same counts without destroying
    anything.
    """
    scope_path: str
    dry_run: bool
    strategy: FinalizeStrategy
    destroy_strategy: DestroyStrategy
    resources_deleted: int = 0
    nested_scopes_processed: int = 0
    errors: list[FinalizationError] = field(default_factory=list)
    duration_ms: int = 0
    orphans: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    rekeyed: list[str] = field(default_factory=list)
    nested_reports: list["FinalizationReport"] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def cancelled(self) -> bool:
        return any(e.reason == ErrorReason.CANCELLED for e in self.errors)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "scope_path": self.scope_path,
            "dry_run": self.dry_run,
            "strategy": self.strategy.value,
            "destroy_strategy": self.destroy_strategy.value,
            "resources_deleted": self.resources_deleted,
            "nested_scopes_processed": self.nested_scopes_processed,
            "errors": [e.to_dict() for e in self.errors],
            "duration_ms": self.duration_ms,
            "orphans": list(self.orphans),
            "deleted": list(self.deleted),
            "retained": list(self.retained),
            "rekeyed": list(self.rekeyed),
            "nested": [r.to_dict() for r in self.nested_reports],
            "success": self.success,
        }
