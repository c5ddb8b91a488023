"""
Finalizer - diff declared against recorded resources and destroy orphans.

Given a Scope that has been initialized and had its current run's
resources declared, the Finalizer:

1. Finalizes nested scopes first (depth-first)
2. Computes orphans = recorded - declared (by key; a recorded resource
   whose id is declared under a new key is re-keyed, not orphaned)
3. Destroys each orphan through the DestroyerRegistry, retrying each call
4. Returns a FinalizationReport plus the new ScopeState to persist

Strategies:
- conservative: sequential, stop at the first failure
- aggressive: sequential or parallel, collect every failure

Dry runs compute the same diff and counts without calling any destroyer.
The Finalizer never writes state itself; Scope.finalize() persists the
returned state and releases the lease.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Optional, Union

from .destroyers import DestroyerRegistry
from .errors import DestroyFailedError, PermanentError, ScopekeeperError, TransientError
from .retry import RetryPolicy
from .schemas import (
    DestroyStrategy,
    ErrorReason,
    FinalizationError,
    FinalizationReport,
    FinalizeStrategy,
    ResourceRecord,
    ScopeState,
)

if TYPE_CHECKING:
    from .scope import Scope

logger = logging.getLogger(__name__)


def find_rekeyed(recorded: dict[str, ResourceRecord], declared: dict[str, ResourceRecord]) -> list[str]:
    """Recorded keys whose resource id is declared under a different key this run."""
    declared_ids = {record.id for record in declared.values()}
    return [key for key, record in recorded.items() if key not in declared and record.id in declared_ids]


def find_orphans(
    recorded: dict[str, ResourceRecord],
    declared: dict[str, ResourceRecord],
) -> dict[str, ResourceRecord]:
    """Recorded resources that this run no longer declares, by key or by id."""
    rekeyed = set(find_rekeyed(recorded, declared))
    return {key: record for key, record in recorded.items() if key not in declared and key not in rekeyed}


@dataclass
class FinalizeOptions:
    """
    Options for one finalize() call.

    Attributes:
        dry_run: Compute the diff and report without destroying or saving
        strategy: conservative (halt on first failure) or aggressive
        destroy_strategy: sequential or parallel (aggressive only)
        retry_attempts: Attempts per orphan destroy call
        concurrency: Worker count for parallel destroys
        keep_lock: Keep the lease after finalize for chained operations
        cancel: Event that abandons remaining orphans once set
        nested_failure_blocks_parent: Skip the parent's own orphans if a
            nested scope reported errors
        force: Destroy every resource (declared or not) and clear state
        destroy_timeout: Seconds allowed per destroy attempt (None waits forever)
    """
    dry_run: bool = False
    strategy: Union[FinalizeStrategy, str] = FinalizeStrategy.CONSERVATIVE
    destroy_strategy: Optional[Union[DestroyStrategy, str]] = None
    retry_attempts: int = 3
    concurrency: int = 5
    keep_lock: bool = False
    cancel: Optional[threading.Event] = field(default=None, compare=False)
    nested_failure_blocks_parent: bool = False
    force: bool = False
    destroy_timeout: Optional[float] = None

    def __post_init__(self):
        self.strategy = FinalizeStrategy(self.strategy)
        if self.destroy_strategy is not None:
            self.destroy_strategy = DestroyStrategy(self.destroy_strategy)
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.destroy_timeout is not None and self.destroy_timeout <= 0:
            raise ValueError("destroy_timeout must be > 0")

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


@dataclass
class FinalizeOutcome:
    """What the Finalizer hands back to Scope.finalize()."""
    report: FinalizationReport
    state: ScopeState
    halted_on: Optional[DestroyFailedError] = None


@dataclass
class _DestroyResult:
    key: str
    ok: bool
    attempts: int = 0
    error: Optional[BaseException] = None
    cancelled: bool = False


class Finalizer:
    """Runs the finalize algorithm for one scope."""

    def __init__(self, destroyers: DestroyerRegistry, retry: Optional[RetryPolicy] = None):
        self.destroyers = destroyers
        self.retry = retry or RetryPolicy()

    # ------------------------------------------------------------------
    # Orphan destruction
    # ------------------------------------------------------------------

    def destroy_one(
        self,
        scope_path: str,
        key: str,
        record: ResourceRecord,
        options: FinalizeOptions,
    ) -> _DestroyResult:
        """Destroy one orphan with retries. Never raises."""
        if options.cancelled:
            return _DestroyResult(key, ok=False, cancelled=True)

        attempts = 0

        def _attempt() -> None:
            nonlocal attempts
            attempts += 1
            if options.destroy_timeout is None:
                self.destroyers.destroy(key, record)
                return
            # A hung call keeps its worker thread; the attempt is abandoned, not killed
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scopekeeper-destroy")
            try:
                future = executor.submit(self.destroyers.destroy, key, record)
                try:
                    future.result(timeout=options.destroy_timeout)
                except FutureTimeoutError:
                    raise TransientError(
                        f"destroy of {key} timed out after {options.destroy_timeout}s"
                    ) from None
            finally:
                executor.shutdown(wait=False)

        policy = self.retry.with_attempts(options.retry_attempts)
        try:
            policy.run(
                _attempt,
                retry_on=(Exception,),
                give_up_on=(PermanentError,),
                description=f"destroy {scope_path}:{key}",
                cancel=options.cancel,
            )
        except Exception as e:
            if options.cancelled and attempts < options.retry_attempts and not isinstance(e, PermanentError):
                logger.warning(
                    f"Finalize cancelled while destroying {key} in {scope_path} "
                    f"after {attempts} attempt(s): {e}",
                    extra={"scope_path": scope_path, "event": "destroy_cancelled"},
                )
                return _DestroyResult(key, ok=False, attempts=attempts, error=e, cancelled=True)
            logger.error(
                f"Failed to destroy {key} ({record.type}:{record.id}) in {scope_path} "
                f"after {attempts} attempt(s): {e}",
                extra={"scope_path": scope_path, "event": "destroy_failed"},
            )
            return _DestroyResult(key, ok=False, attempts=attempts, error=e)

        logger.info(
            f"Destroyed {key} ({record.type}:{record.id}) in {scope_path}",
            extra={"scope_path": scope_path, "event": "resource_destroyed"},
        )
        return _DestroyResult(key, ok=True, attempts=attempts)

    def _destroy_sequential(
        self,
        scope_path: str,
        orphans: dict[str, ResourceRecord],
        options: FinalizeOptions,
        stop_on_failure: bool,
    ) -> list[_DestroyResult]:
        results = []
        for key, record in orphans.items():
            result = self.destroy_one(scope_path, key, record, options)
            results.append(result)
            if stop_on_failure and not result.ok and not result.cancelled:
                break
        return results

    def _destroy_parallel(
        self,
        scope_path: str,
        orphans: dict[str, ResourceRecord],
        options: FinalizeOptions,
    ) -> list[_DestroyResult]:
        with ThreadPoolExecutor(max_workers=options.concurrency) as executor:
            futures = [
                executor.submit(self.destroy_one, scope_path, key, record, options)
                for key, record in orphans.items()
            ]
            return [f.result() for f in futures]

    # ------------------------------------------------------------------
    # Nested scopes
    # ------------------------------------------------------------------

    def _finalize_nested(
        self,
        scope: "Scope",
        options: FinalizeOptions,
        report: FinalizationReport,
    ) -> set[str]:
        """
        Finalize nested scopes depth-first.

        Returns:
            The nested scope names that remain recorded afterwards
        """
        recorded = scope.recorded.nested_scopes
        declared = scope.declared_nested
        keep: set[str] = set()

        for name in sorted(recorded | declared):
            live = scope.runtime.index.get(scope.path.child(name))

            if live is not None and live.is_ready:
                if options.force:
                    if not self._teardown(live, options, report):
                        keep.add(name)
                else:
                    self._finalize_child(live, options, report)
                    keep.add(name)
                continue

            if name in declared and not options.force:
                # Declared this run but never opened: nothing to reconcile
                keep.add(name)
                continue

            child = scope.open_nested(name, register=False)
            try:
                child.initialize()
            except ScopekeeperError as e:
                report.errors.append(
                    FinalizationError(str(child.path), name, ErrorReason.NESTED_FAILED, str(e))
                )
                keep.add(name)
                continue
            if not self._teardown(child, options, report):
                keep.add(name)

        return keep

    def _finalize_child(
        self,
        child: "Scope",
        options: FinalizeOptions,
        report: FinalizationReport,
    ) -> Optional[FinalizationReport]:
        """Finalize a ready child scope and fold its report into ``report``."""
        try:
            child_report = child.finalize(options)
        except DestroyFailedError as e:
            child_report = e.report
        except ScopekeeperError as e:
            report.errors.append(
                FinalizationError(str(child.path), child.path.name, ErrorReason.NESTED_FAILED, str(e))
            )
            return None

        if child_report is not None:
            self._fold(report, child_report)
        return child_report

    def _teardown(self, child: "Scope", options: FinalizeOptions, report: FinalizationReport) -> bool:
        """
        Finalize a nested scope with nothing declared and delete its state.

        Used for nested scopes this run did not re-declare (and for every
        nested scope under force). The child must already be ready.

        Returns:
            True if the nested scope is fully gone (its name can be dropped)
        """
        child_report = self._finalize_child(child, replace(options, keep_lock=True), report)
        if child_report is None or not child_report.success or options.dry_run:
            if child.is_ready:
                child.release()
            return False
        child.discard()
        return True

    @staticmethod
    def _fold(report: FinalizationReport, child_report: FinalizationReport) -> None:
        report.nested_reports.append(child_report)
        report.nested_scopes_processed += 1 + child_report.nested_scopes_processed
        report.resources_deleted += child_report.resources_deleted
        report.errors.extend(child_report.errors)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def finalize(self, scope: "Scope", options: FinalizeOptions) -> FinalizeOutcome:
        """
        Finalize a ready scope.

        Args:
            scope: The scope (in FINALIZING state) whose declared and
                recorded sets are diffed
            options: Finalize options

        Returns:
            FinalizeOutcome with the report and the state to persist
        """
        started = time.monotonic()
        scope_path = str(scope.path)
        destroy_strategy = DestroyStrategy(options.destroy_strategy or scope.destroy_strategy)
        report = FinalizationReport(
            scope_path=scope_path,
            dry_run=options.dry_run,
            strategy=options.strategy,
            destroy_strategy=destroy_strategy,
        )

        keep_nested = self._finalize_nested(scope, options, report)
        nested_blocked = options.nested_failure_blocks_parent and not report.success

        recorded = scope.recorded.resources
        declared = scope.declared
        rekeyed = find_rekeyed(recorded, declared)
        if options.force:
            # A re-keyed resource is destroyed once, under its declared key
            orphans = {k: r for k, r in recorded.items() if k not in rekeyed}
            orphans.update(declared)
        else:
            orphans = find_orphans(recorded, declared)
        report.orphans = list(orphans)
        report.rekeyed = rekeyed
        for key in rekeyed:
            logger.info(f"Resource {recorded[key].id} moved from key '{key}' in {scope_path}; not destroying it")

        halted_on = None
        if nested_blocked:
            logger.warning(f"Nested scope failures block cleanup of {scope_path}; keeping {len(orphans)} orphan(s)")
            results = []
        elif options.dry_run:
            results = [_DestroyResult(key, ok=True) for key in orphans]
            for key, record in orphans.items():
                logger.info(f"[dry-run] Would destroy {key} ({record.type}:{record.id}) in {scope_path}")
        elif options.strategy == FinalizeStrategy.CONSERVATIVE:
            results = self._destroy_sequential(scope_path, orphans, options, stop_on_failure=True)
        elif destroy_strategy == DestroyStrategy.PARALLEL:
            results = self._destroy_parallel(scope_path, orphans, options)
        else:
            results = self._destroy_sequential(scope_path, orphans, options, stop_on_failure=False)

        finished = {r.key: r for r in results}
        for key, record in orphans.items():
            result = finished.get(key)
            if result is None:
                report.retained.append(key)
            elif result.ok:
                report.deleted.append(key)
            elif result.cancelled:
                report.retained.append(key)
                message = (
                    f"finalize cancelled after {result.attempts} failed attempt(s): {result.error}"
                    if result.attempts
                    else "finalize cancelled before destroy"
                )
                report.errors.append(
                    FinalizationError(scope_path, key, ErrorReason.CANCELLED, message, result.attempts)
                )
            else:
                report.retained.append(key)
                report.errors.append(
                    FinalizationError(
                        scope_path, key, ErrorReason.DESTROY_FAILED, str(result.error), result.attempts
                    )
                )
                if halted_on is None and options.strategy == FinalizeStrategy.CONSERVATIVE:
                    halted_on = DestroyFailedError(key, result.error)
        report.resources_deleted += len(report.deleted)

        new_state = scope.state.copy()
        if options.force:
            new_state.resources = {}
        else:
            new_state.resources = dict(declared)
            for key in report.retained:
                new_state.resources[key] = recorded[key]
        new_state.nested_scopes = keep_nested

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Finalized {scope_path}{' (dry run)' if options.dry_run else ''}: "
            f"{report.resources_deleted} deleted, {report.nested_scopes_processed} nested, "
            f"{len(report.errors)} error(s)",
            extra={"scope_path": scope_path, "event": "finalized", "metadata": report.to_dict()},
        )
        return FinalizeOutcome(report=report, state=new_state, halted_on=halted_on)
