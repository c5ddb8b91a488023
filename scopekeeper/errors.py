"""
Error classes for scopekeeper.

Backend errors are classified at the I/O boundary:
- TransientError: Safe to retry (timeouts, 5xx, connection resets)
- PermanentError: Do not retry (permission denied, invalid request)

Backends retry TransientError with the configured RetryPolicy and only
surface BackendUnavailableError once retries are exhausted.

Everything above the backend layer raises the typed errors below:
- NotFoundError: no document at a path (not an error for load, an error for restore)
- CorruptedStateError: document present but unparsable
- LockBusyError: lease held by another holder
- LockNotHeldError: caller's lease is gone, expired, or owned by someone else
- InvalidStateError: Scope operation called in the wrong lifecycle state
- DestroyFailedError: an orphan's destroy capability raised
"""

from typing import Any, Optional


class ScopekeeperError(Exception):
    """Base exception for scopekeeper."""
    pass


class ConfigError(ScopekeeperError):
    """Configuration validation error."""
    pass


class TransientError(ScopekeeperError):
    """
    Transient error - safe to retry.

    Examples:
    - Network timeout
    - Service temporarily unavailable (5xx)
    - Rate limit exceeded
    """
    pass


class PermanentError(ScopekeeperError):
    """
    Permanent error - do not retry.

    Examples:
    - Authorization failed (403)
    - Invalid bucket or key
    - No destroyer registered for a resource type
    """
    pass


class NotFoundError(ScopekeeperError):
    """No document exists at the requested path."""

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path
        super().__init__(message or f"Not found: {path}")


class CorruptedStateError(ScopekeeperError):
    """A state document exists but cannot be parsed or validated."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupted state at {path}: {reason}")


class LockBusyError(ScopekeeperError):
    """The scope's lease is held by another, unexpired holder."""

    def __init__(self, scope_path: str, lease: Any = None):
        self.scope_path = scope_path
        self.lease = lease
        holder = f" by {lease.holder_id}" if lease is not None else ""
        super().__init__(f"Scope {scope_path} is locked{holder}")


class LockNotHeldError(ScopekeeperError):
    """The caller presented a lease it no longer holds."""

    def __init__(self, scope_path: str, message: str):
        self.scope_path = scope_path
        super().__init__(f"Lock for {scope_path} not held: {message}")


class InvalidStateError(ScopekeeperError):
    """A Scope operation was called outside its required lifecycle state."""

    def __init__(self, operation: str, current: Any, required: Any):
        self.operation = operation
        self.current = current
        self.required = required
        super().__init__(
            f"Cannot {operation}: scope is {getattr(current, 'value', current)}, "
            f"requires {getattr(required, 'value', required)}"
        )


class DestroyFailedError(ScopekeeperError):
    """
    Destroying an orphaned resource failed.

    Attributes:
        key: Logical key of the resource within its scope
        cause: The underlying exception raised by the destroyer
        report: FinalizationReport of the halted run, when raised by finalize()
    """

    def __init__(self, key: str, cause: BaseException, report: Any = None):
        self.key = key
        self.cause = cause
        self.report = report
        super().__init__(f"Failed to destroy '{key}': {cause}")


class BackendUnavailableError(ScopekeeperError):
    """Backend I/O kept failing after all retries were exhausted."""

    def __init__(self, operation: str, path: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.path = path
        self.cause = cause
        super().__init__(f"Backend unavailable during {operation} of {path}: {cause}")
