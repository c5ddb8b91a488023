"""
CLI interface for scopekeeper.

Provides commands to list and inspect persisted scopes, finalize a scope
against a declared resource file, manage locks and backups, and run the
health monitor.

Scope paths are written ``application/stage[/nested...]``.
"""

import json
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.table import Table

from scopekeeper import __version__
from scopekeeper.errors import (
    ConfigError,
    DestroyFailedError,
    LockBusyError,
    NotFoundError,
    ScopekeeperError,
)
from scopekeeper.paths import validate_segment
from scopekeeper.utils import console, format_bytes, format_duration, ms_to_datetime, now_ms, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="scopekeeper")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.pass_context
def main(ctx, config_path: Optional[Path]):
    """
    scopekeeper - Scope state tracking and orphan cleanup.

    Inspect persisted scopes, finalize them, and monitor their health.
    """
    from scopekeeper.config import load_config

    ctx.ensure_object(dict)
    if "runtime" in ctx.obj:
        return
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        # init does not need a config; other commands check ctx.obj themselves
        ctx.obj["config_error"] = str(e)
        setup_logging(log_level="WARNING", log_format="pretty")
        return

    ctx.obj["config"] = config
    setup_logging(
        log_file=config.logging.file_path,
        log_level=config.logging.level,
        log_format=config.logging.format,
        console_output=config.logging.console,
    )


def _runtime(ctx):
    """Build (once) the ScopeRuntime for this invocation, or exit if config is missing."""
    from scopekeeper.scope import ScopeRuntime

    if "runtime" not in ctx.obj:
        if "config" not in ctx.obj:
            click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
            click.echo("Run 'scopekeeper init' to create a configuration file.", err=True)
            raise SystemExit(1)
        ctx.obj["runtime"] = ScopeRuntime.from_config(ctx.obj["config"])
    return ctx.obj["runtime"]


def _inspector(ctx):
    from scopekeeper.inspector import ScopeInspector

    runtime = _runtime(ctx)
    return ScopeInspector(runtime.backend, runtime.store, runtime.locks, clock=runtime.clock)


def _parse_path(value: str):
    from scopekeeper.paths import ScopePath

    try:
        return ScopePath.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="PATH")


def _timestamp(value: int) -> str:
    return ms_to_datetime(value).strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize scopekeeper configuration."""
    from scopekeeper.config import ScopekeeperConfig, get_scopekeeper_home

    home = get_scopekeeper_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(ScopekeeperConfig().to_dict(), sort_keys=False))
    click.echo(f"Initialized scopekeeper config at {cfg_path}")


# =============================================================================
# Scopes - read-only inspection
# =============================================================================

@main.group("scopes")
def scopes_group():
    """List and inspect persisted scopes."""
    pass


@scopes_group.command("list")
@click.option("--prefix", default="", help="Only scopes under this path prefix")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def list_scopes(ctx, prefix: str, as_json: bool):
    """List all scopes with a state document."""
    scopes = _inspector(ctx).list_scopes(prefix)

    if as_json:
        click.echo(json.dumps([s.to_dict() for s in scopes], indent=2))
        return
    if not scopes:
        click.echo("No scopes found.")
        return

    table = Table(title=f"Scopes ({len(scopes)})")
    table.add_column("Path")
    table.add_column("Type")
    table.add_column("Resources", justify="right")
    table.add_column("Nested", justify="right")
    table.add_column("Updated")
    table.add_column("Lock")
    for scope in scopes:
        if scope.corrupted:
            lock = "corrupted"
        elif scope.stale_lock:
            lock = "stale"
        else:
            lock = "locked" if scope.locked else ""
        table.add_row(
            scope.path,
            scope.type,
            str(scope.resource_count),
            str(len(scope.nested_scopes)),
            _timestamp(scope.updated_at),
            lock,
        )
    console.print(table)


@scopes_group.command("inspect")
@click.argument("path")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def inspect_scope(ctx, path: str, as_json: bool):
    """Show details of one scope."""
    scope_path = _parse_path(path)
    try:
        details = _inspector(ctx).inspect_scope(scope_path)
    except ScopekeeperError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    if details is None:
        click.echo(f"✗ Scope not found: {scope_path}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(details.to_dict(), indent=2, default=str))
        return

    summary = details.summary
    click.echo(f"Scope: {summary.path}")
    click.echo(f"Type: {summary.type}")
    click.echo(f"Schema version: {details.state.schema_version}")
    click.echo(f"Created: {_timestamp(summary.created_at)}")
    click.echo(f"Updated: {_timestamp(summary.updated_at)}")
    click.echo(f"Size: {format_bytes(details.state_size)}")
    if details.lease:
        status = "stale" if summary.stale_lock else "held"
        click.echo(f"Lock: {status} by {details.lease.holder_id}")
    else:
        click.echo(f"Lock: {'unparsable marker' if summary.locked else 'none'}")
    click.echo(f"Backups: {len(details.backups)}")
    click.echo()
    click.echo(f"Resources ({len(details.state.resources)}):")
    for key, record in sorted(details.state.resources.items()):
        click.echo(f"  {key}: {record.type} {record.id} ({record.name})")
    if summary.nested_scopes:
        click.echo(f"Nested scopes ({len(summary.nested_scopes)}):")
        for name in summary.nested_scopes:
            click.echo(f"  {name}")


@scopes_group.command("state")
@click.argument("path")
@click.pass_context
def show_state(ctx, path: str):
    """Print a scope's raw state document."""
    scope_path = _parse_path(path)
    contents = _inspector(ctx).get_state_contents(scope_path)
    if contents is None:
        click.echo(f"✗ Scope not found: {scope_path}", err=True)
        raise SystemExit(1)
    click.echo(contents)


@scopes_group.command("validate")
@click.argument("path")
@click.pass_context
def validate_scope(ctx, path: str):
    """Validate a scope's state document."""
    scope_path = _parse_path(path)
    result = _inspector(ctx).validate_scope(scope_path)
    for error in result.errors:
        click.echo(f"✗ {error}")
    for warning in result.warnings:
        click.echo(f"! {warning}")
    if result.valid:
        click.echo(f"✓ {scope_path} is valid")
    else:
        raise SystemExit(1)


@scopes_group.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def scope_stats(ctx, as_json: bool):
    """Show aggregate statistics across all scopes."""
    stats = _inspector(ctx).get_statistics()
    if as_json:
        click.echo(json.dumps(stats.to_dict(), indent=2))
        return

    click.echo(f"Total scopes: {stats.total_scopes}")
    click.echo(f"Total resources: {stats.total_resources}")
    click.echo(f"Locked scopes: {stats.locked_scopes} ({stats.stale_locked_scopes} stale)")
    if stats.corrupted_scopes:
        click.echo(f"Corrupted scopes: {stats.corrupted_scopes}")
    if stats.scopes_by_type:
        click.echo("By type:")
        for scope_type, count in sorted(stats.scopes_by_type.items()):
            click.echo(f"  {scope_type}: {count}")
    if stats.oldest_scope:
        click.echo(f"Oldest: {stats.oldest_scope.path} ({_timestamp(stats.oldest_scope.created_at)})")
    if stats.newest_scope:
        click.echo(f"Newest: {stats.newest_scope.path} ({_timestamp(stats.newest_scope.created_at)})")


# =============================================================================
# Finalize
# =============================================================================

def _load_declared(path: Path) -> tuple[dict, list[str]]:
    """
    Read a declared-resources file (YAML or JSON).

    Format:
        resources:
          <key>: {id: ..., type: ..., name: ..., metadata: ...}
        nestedScopes: [<name>, ...]
    """
    from scopekeeper.schemas import ResourceRecord

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise click.BadParameter(f"{path}: {e}", param_hint="--declared")
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path}: expected a mapping", param_hint="--declared")

    now = now_ms()
    resources = {}
    for key, raw in (data.get("resources") or {}).items():
        if not isinstance(raw, dict):
            raise click.BadParameter(f"{path}: resource '{key}' must be a mapping", param_hint="--declared")
        raw = {"createdAt": now, "updatedAt": now, **raw}
        try:
            resources[str(key)] = ResourceRecord.from_dict(raw)
        except (KeyError, ValueError) as e:
            raise click.BadParameter(f"{path}: resource '{key}': {e}", param_hint="--declared")
    nested = [str(n) for n in (data.get("nestedScopes") or [])]
    for name in nested:
        try:
            validate_segment(name)
        except ValueError as e:
            raise click.BadParameter(f"{path}: nested scope '{name}': {e}", param_hint="--declared")
    return resources, nested


def _print_report(report, indent: str = "") -> None:
    mode = " (dry run)" if report.dry_run else ""
    click.echo(f"{indent}{report.scope_path}{mode}: {report.strategy.value}/{report.destroy_strategy.value}")
    verb = "would delete" if report.dry_run else "deleted"
    for key in report.deleted:
        click.echo(f"{indent}  - {verb} {key}")
    for key in report.retained:
        click.echo(f"{indent}  ! kept {key}")
    for child in report.nested_reports:
        _print_report(child, indent + "  ")


@main.command("finalize")
@click.argument("path")
@click.option("--declared", "declared_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="YAML/JSON file of resources this run still wants")
@click.option("--dry-run", is_flag=True, help="Show what would be destroyed without destroying")
@click.option("--force", is_flag=True, help="Destroy every recorded resource (no --declared)")
@click.option("--strategy", type=click.Choice(["conservative", "aggressive"]), help="Failure strategy")
@click.option("--destroy-strategy", type=click.Choice(["sequential", "parallel"]), help="Destroy scheduling")
@click.option("--retry-attempts", type=click.IntRange(min=1), help="Attempts per destroy call")
@click.option("--json", "as_json", is_flag=True, help="Output the report as JSON")
@click.pass_context
def finalize(ctx, path: str, declared_file: Optional[Path], dry_run: bool, force: bool,
             strategy: Optional[str], destroy_strategy: Optional[str],
             retry_attempts: Optional[int], as_json: bool):
    """Destroy resources recorded in PATH but not declared."""
    from scopekeeper.scope import Scope

    scope_path = _parse_path(path)
    if force and declared_file:
        raise click.UsageError("--force destroys everything and cannot be combined with --declared")
    if not declared_file and not force and not dry_run:
        raise click.UsageError(
            "No --declared file given: every recorded resource would be destroyed. "
            "Pass --force to do that, or --dry-run to preview."
        )

    declared, nested = _load_declared(declared_file) if declared_file else ({}, [])
    runtime = _runtime(ctx)

    overrides = {"dry_run": dry_run}
    if strategy:
        overrides["strategy"] = strategy
    if destroy_strategy:
        overrides["destroy_strategy"] = destroy_strategy
    if retry_attempts:
        overrides["retry_attempts"] = retry_attempts

    scope = Scope.at(scope_path, runtime)
    try:
        scope.initialize()
    except LockBusyError as e:
        click.echo(f"✗ {e}", err=True)
        click.echo("Use 'scopekeeper lock show' to inspect the holder.", err=True)
        raise SystemExit(1)
    except ScopekeeperError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    try:
        for key, record in declared.items():
            scope.add_resource(key, record)
        for name in nested:
            scope.register_nested_scope(name)
    except ValueError as e:
        scope.release()
        raise click.BadParameter(f"{declared_file}: {e}", param_hint="--declared")

    if dry_run:
        click.echo("=" * 50)
        click.echo("=== DRY RUN MODE === (nothing destroyed or saved)")
        click.echo("=" * 50)

    try:
        if force:
            report = scope.force_cleanup(**overrides)
        else:
            report = scope.finalize(**overrides)
    except DestroyFailedError as e:
        report = e.report
        click.echo(f"✗ {e}", err=True)
        if report is None:
            raise SystemExit(1)
    except ScopekeeperError as e:
        click.echo(f"✗ {e}", err=True)
        if scope.is_ready:
            scope.release()
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)
        click.echo()
        verb = "Would delete" if report.dry_run else "Deleted"
        click.echo(
            f"{verb} {report.resources_deleted} resource(s), "
            f"{report.nested_scopes_processed} nested scope(s) in {format_duration(report.duration_ms)}"
        )
        for error in report.errors:
            click.echo(f"✗ {error.scope_path}:{error.key} [{error.reason.value}] {error.message}", err=True)

    if report.errors:
        raise SystemExit(1)


# =============================================================================
# Locks
# =============================================================================

@main.group("lock")
def lock_group():
    """Inspect and override scope locks."""
    pass


@lock_group.command("show")
@click.argument("path")
@click.pass_context
def lock_show(ctx, path: str):
    """Show who holds the lock on PATH."""
    scope_path = _parse_path(path)
    runtime = _runtime(ctx)
    lease = runtime.locks.inspect(scope_path)
    if lease is None:
        if runtime.backend.exists(scope_path.lock_key):
            click.echo(f"{scope_path}: lock marker present but unparsable")
        else:
            click.echo(f"{scope_path}: not locked")
        return

    now = runtime.clock()
    status = "EXPIRED (stale)" if lease.is_expired(now) else f"held, {format_duration(lease.remaining_ms(now))} left"
    click.echo(f"{scope_path}: {status}")
    click.echo(f"  Holder: {lease.holder_id}")
    click.echo(f"  Host: {lease.hostname} (pid {lease.pid})")
    click.echo(f"  Acquired: {_timestamp(lease.acquired_at)}")
    click.echo(f"  TTL: {format_duration(lease.ttl_ms)}")


@lock_group.command("release")
@click.argument("path")
@click.option("--force", is_flag=True, help="Required: remove the lock regardless of holder")
@click.pass_context
def lock_release(ctx, path: str, force: bool):
    """Force-release the lock on PATH (for holders that crashed)."""
    scope_path = _parse_path(path)
    if not force:
        raise click.UsageError("Releasing another holder's lock requires --force")
    runtime = _runtime(ctx)
    previous = runtime.locks.force_release(scope_path)
    if previous is None:
        click.echo(f"No parsable lock on {scope_path} (any marker was removed)")
    else:
        click.echo(f"Released lock on {scope_path} held by {previous.holder_id}")


# =============================================================================
# Backups
# =============================================================================

@main.group("backups")
def backups_group():
    """List and restore state snapshots."""
    pass


@backups_group.command("list")
@click.argument("path")
@click.pass_context
def backups_list(ctx, path: str):
    """List snapshots of PATH, oldest first."""
    scope_path = _parse_path(path)
    snapshots = _runtime(ctx).store.list_snapshots(scope_path)
    if not snapshots:
        click.echo(f"No backups for {scope_path}.")
        return
    for snapshot_id in snapshots:
        click.echo(f"{snapshot_id}  {_timestamp(int(snapshot_id)) if snapshot_id.isdigit() else ''}")


@backups_group.command("restore")
@click.argument("path")
@click.argument("snapshot", required=False)
@click.pass_context
def backups_restore(ctx, path: str, snapshot: Optional[str]):
    """Restore PATH's state from SNAPSHOT (default: the newest)."""
    scope_path = _parse_path(path)
    runtime = _runtime(ctx)

    try:
        state = runtime.store.restore(scope_path, snapshot)
    except NotFoundError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    except ScopekeeperError as e:
        click.echo(f"✗ Snapshot unusable: {e}", err=True)
        raise SystemExit(1)

    try:
        lease = runtime.locks.acquire(scope_path)
    except LockBusyError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    try:
        saved = runtime.store.save(scope_path, state, lease)
    finally:
        runtime.locks.release(lease)
    click.echo(
        f"Restored {scope_path} from snapshot {snapshot or 'latest'} "
        f"({len(saved.resources)} resources, {len(saved.nested_scopes)} nested scopes)"
    )


# =============================================================================
# Monitor
# =============================================================================

@main.command("monitor")
@click.option("--interval", type=int, help="Seconds between checks (default from config)")
@click.option("--once", is_flag=True, help="Run a single check and exit")
@click.pass_context
def monitor(ctx, interval: Optional[int], once: bool):
    """Periodically check scope health and emit alerts."""
    from scopekeeper.config import MonitorConfig
    from scopekeeper.monitor import HealthThresholds, ScopeMonitor

    inspector = _inspector(ctx)
    config = ctx.obj.get("config")
    monitor_config = config.monitor if config else MonitorConfig()
    scope_monitor = ScopeMonitor(
        inspector,
        thresholds=HealthThresholds.from_config(monitor_config),
        clock=inspector.clock,
    )

    if once:
        alerts = scope_monitor.check_and_emit()
        for alert in alerts:
            click.echo(f"[{alert.severity.value}] {alert.message}")
        if not alerts:
            click.echo("✓ No issues found")
        raise SystemExit(1 if alerts else 0)

    interval = interval if interval is not None else monitor_config.interval_seconds
    click.echo(f"Monitoring every {interval}s (Ctrl+C to stop)")
    try:
        scope_monitor.run(interval)
    except KeyboardInterrupt:
        click.echo("Stopped.", err=True)
        sys.exit(0)


if __name__ == "__main__":
    main()
