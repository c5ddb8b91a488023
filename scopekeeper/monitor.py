"""
ScopeMonitor - periodic health checks over all persisted scopes.

Each check walks the backend through a ScopeInspector and emits Alerts
for conditions an operator should look at:
- stale locks (lease expired, marker still present)
- state documents not updated within ``max_age_days``
- corrupted state documents
- total scope or resource counts over their thresholds

Alerts go to AlertSinks. The monitor never mutates anything.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .config import MonitorConfig
from .inspector import ScopeInspector
from .utils import Clock, now_ms

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertKind(str, Enum):
    STALE_LOCK = "stale_lock"
    OLD_STATE = "old_state"
    CORRUPTED_STATE = "corrupted_state"
    TOO_MANY_SCOPES = "too_many_scopes"
    TOO_MANY_RESOURCES = "too_many_resources"


@dataclass(frozen=True)
class HealthThresholds:
    max_scopes: int = 50
    max_resources: int = 100
    max_age_days: float = 30.0

    @classmethod
    def from_config(cls, config: MonitorConfig) -> "HealthThresholds":
        return cls(
            max_scopes=config.max_scopes,
            max_resources=config.max_resources,
            max_age_days=config.max_age_days,
        )


@dataclass(frozen=True)
class Alert:
    """One health finding."""
    severity: AlertSeverity
    kind: AlertKind
    message: str
    scope_path: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "kind": self.kind.value,
            "message": self.message,
            "scope_path": self.scope_path,
            "details": dict(self.details),
        }


class AlertSink(ABC):
    """Receives the alerts of one check."""

    @abstractmethod
    def emit(self, alerts: list[Alert]) -> None:
        pass


class LoggingAlertSink(AlertSink):
    """Writes each alert to the scopekeeper logger."""

    _LEVELS = {
        AlertSeverity.INFO: logging.INFO,
        AlertSeverity.WARNING: logging.WARNING,
        AlertSeverity.CRITICAL: logging.ERROR,
    }

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def emit(self, alerts: list[Alert]) -> None:
        for alert in alerts:
            self.log.log(
                self._LEVELS[alert.severity],
                f"ALERT [{alert.kind.value}] {alert.message}",
                extra={"scope_path": alert.scope_path, "event": "alert", "metadata": alert.to_dict()},
            )


class CallbackAlertSink(AlertSink):
    """Hands alerts to a callable (webhook poster, chat notifier, ...)."""

    def __init__(self, callback: Callable[[list[Alert]], Any]):
        self.callback = callback

    def emit(self, alerts: list[Alert]) -> None:
        if alerts:
            self.callback(alerts)


class ScopeMonitor:
    """Runs health checks and forwards alerts to sinks."""

    def __init__(
        self,
        inspector: ScopeInspector,
        thresholds: Optional[HealthThresholds] = None,
        sinks: Optional[list[AlertSink]] = None,
        clock: Clock = now_ms,
    ):
        self.inspector = inspector
        self.thresholds = thresholds or HealthThresholds()
        self.sinks = sinks if sinks is not None else [LoggingAlertSink()]
        self.clock = clock

    def check(self) -> list[Alert]:
        """Run one health check and return its alerts (without emitting them)."""
        alerts: list[Alert] = []
        now = self.clock()
        max_age_ms = int(self.thresholds.max_age_days * DAY_MS)
        scopes = self.inspector.list_scopes()

        total_resources = 0
        for scope in scopes:
            total_resources += scope.resource_count
            if scope.corrupted:
                alerts.append(Alert(
                    AlertSeverity.CRITICAL,
                    AlertKind.CORRUPTED_STATE,
                    f"State for {scope.path} is corrupted: {scope.error}",
                    scope_path=scope.path,
                ))
            if scope.stale_lock:
                alerts.append(Alert(
                    AlertSeverity.WARNING,
                    AlertKind.STALE_LOCK,
                    f"Stale lock on {scope.path} (lease expired, marker not cleaned up)",
                    scope_path=scope.path,
                ))
            if scope.updated_at and now - scope.updated_at > max_age_ms:
                age_days = (now - scope.updated_at) / DAY_MS
                alerts.append(Alert(
                    AlertSeverity.WARNING,
                    AlertKind.OLD_STATE,
                    f"{scope.path} not updated for {age_days:.1f} days (threshold: {self.thresholds.max_age_days})",
                    scope_path=scope.path,
                    details={"age_days": round(age_days, 1)},
                ))

        # Lock markers left behind by scopes that never wrote state
        listed = {s.path for s in scopes}
        for path in self.inspector.list_lock_markers():
            if str(path) in listed:
                continue
            lease = self.inspector.locks.inspect(path)
            if lease is None or lease.is_expired(now):
                alerts.append(Alert(
                    AlertSeverity.WARNING,
                    AlertKind.STALE_LOCK,
                    f"Stale lock on {path} (no state document)",
                    scope_path=str(path),
                ))

        if len(scopes) > self.thresholds.max_scopes:
            alerts.append(Alert(
                AlertSeverity.WARNING,
                AlertKind.TOO_MANY_SCOPES,
                f"Too many scopes: {len(scopes)} (threshold: {self.thresholds.max_scopes})",
                details={"count": len(scopes)},
            ))
        if total_resources > self.thresholds.max_resources:
            alerts.append(Alert(
                AlertSeverity.WARNING,
                AlertKind.TOO_MANY_RESOURCES,
                f"Too many resources: {total_resources} (threshold: {self.thresholds.max_resources})",
                details={"count": total_resources},
            ))
        return alerts

    def check_and_emit(self) -> list[Alert]:
        """Run one check and send its alerts to every sink."""
        alerts = self.check()
        if not alerts:
            logger.info("Health check passed: no issues")
        for sink in self.sinks:
            sink.emit(alerts)
        return alerts

    def run(
        self,
        interval: float,
        iterations: Optional[int] = None,
        stop: Optional[threading.Event] = None,
    ) -> int:
        """
        Check repeatedly every ``interval`` seconds.

        Args:
            interval: Seconds between checks
            iterations: Stop after this many checks (None runs until stopped)
            stop: Event that ends the loop when set

        Returns:
            Number of checks performed
        """
        stop = stop or threading.Event()
        count = 0
        while not stop.is_set():
            self.check_and_emit()
            count += 1
            if iterations is not None and count >= iterations:
                break
            stop.wait(interval)
        return count
