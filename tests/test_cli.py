import json

import pytest
import yaml
from click.testing import CliRunner

from scopekeeper.cli import main
from scopekeeper.paths import ScopePath
from scopekeeper.scope import Scope


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, runtime):
    """Invoke the CLI against the in-memory runtime."""
    def _invoke(*args):
        return runner.invoke(main, list(args), obj={"runtime": runtime})
    return _invoke


@pytest.fixture
def seeded(runtime, make_record):
    """myapp/prod recording resources a and b."""
    scope = Scope("myapp", "prod", runtime).initialize()
    scope.add_resource("a", make_record("id-a"))
    scope.add_resource("b", make_record("id-b"))
    scope.finalize()
    return scope.path


@pytest.fixture
def declared_file(tmp_path):
    path = tmp_path / "declared.yaml"
    path.write_text(yaml.safe_dump({"resources": {"b": {"id": "id-b", "type": "worker"}}}))
    return path


def recorded(runtime, path="myapp/prod"):
    return set(runtime.store.load(ScopePath.parse(path)).resources)


# =============================================================================
# init / config
# =============================================================================

def test_init_command_creates_config(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("SCOPEKEEPER_HOME", str(home))

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "Initialized scopekeeper config" in result.output

    cfg = yaml.safe_load((home / "config.yaml").read_text())
    assert cfg["backend"]["type"] == "local"
    assert cfg["finalize"]["strategy"] == "conservative"


def test_init_does_not_overwrite_without_force(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("SCOPEKEEPER_HOME", str(home))
    home.mkdir(parents=True)
    (home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 1
    assert "Config already exists" in result.output
    assert (home / "config.yaml").read_text() == "existing: true"


def test_init_force_overwrites(runner, tmp_path, monkeypatch):
    home = tmp_path / "custom_home"
    monkeypatch.setenv("SCOPEKEEPER_HOME", str(home))
    home.mkdir(parents=True)
    (home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init", "--force"])
    assert result.exit_code == 0
    assert "backend" in yaml.safe_load((home / "config.yaml").read_text())


def test_commands_require_config(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("SCOPEKEEPER_HOME", str(tmp_path / "empty"))

    result = runner.invoke(main, ["scopes", "list"])
    assert result.exit_code == 1
    assert "Config not loaded" in result.output
    assert "scopekeeper init" in result.output


def test_local_backend_from_config(runner, tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    (home / "config.yaml").write_text(yaml.safe_dump({
        "backend": {"type": "local", "root": str(tmp_path / "state")},
    }))
    monkeypatch.setenv("SCOPEKEEPER_HOME", str(home))

    result = runner.invoke(main, ["scopes", "list"])
    assert result.exit_code == 0
    assert "No scopes found." in result.output


def test_explicit_config_path(runner, tmp_path):
    config = tmp_path / "elsewhere.yaml"
    config.write_text(yaml.safe_dump({"backend": {"type": "memory"}}))

    result = runner.invoke(main, ["--config", str(config), "scopes", "stats", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["total_scopes"] == 0


# =============================================================================
# scopes
# =============================================================================

class TestScopesCommands:
    def test_list_json(self, invoke, seeded):
        result = invoke("scopes", "list", "--json")
        assert result.exit_code == 0
        [scope] = json.loads(result.stdout)
        assert scope["path"] == "myapp/prod"
        assert scope["resource_count"] == 2

    def test_list_table(self, invoke, seeded):
        result = invoke("scopes", "list")
        assert result.exit_code == 0
        assert "myapp/prod" in result.output

    def test_list_empty(self, invoke):
        result = invoke("scopes", "list")
        assert "No scopes found." in result.output

    def test_inspect(self, invoke, seeded):
        result = invoke("scopes", "inspect", "myapp/prod")
        assert result.exit_code == 0
        assert "Scope: myapp/prod" in result.output
        assert "Resources (2):" in result.output
        assert "Lock: none" in result.output

    def test_inspect_missing(self, invoke):
        result = invoke("scopes", "inspect", "myapp/prod")
        assert result.exit_code == 1
        assert "Scope not found" in result.output

    def test_invalid_path(self, invoke):
        result = invoke("scopes", "inspect", "justone")
        assert result.exit_code == 2

    def test_state_prints_raw_document(self, invoke, seeded):
        result = invoke("scopes", "state", "myapp/prod")
        assert json.loads(result.stdout)["scopePath"] == "myapp/prod"

    def test_validate(self, invoke, seeded):
        result = invoke("scopes", "validate", "myapp/prod")
        assert result.exit_code == 0
        assert "✓ myapp/prod is valid" in result.output

    def test_validate_corrupted(self, invoke, runtime):
        runtime.backend.write(ScopePath.parse("myapp/prod").state_key, b"garbage")
        result = invoke("scopes", "validate", "myapp/prod")
        assert result.exit_code == 1
        assert "not valid JSON" in result.output

    def test_stats(self, invoke, seeded):
        result = invoke("scopes", "stats")
        assert result.exit_code == 0
        assert "Total scopes: 1" in result.output
        assert "Total resources: 2" in result.output


# =============================================================================
# finalize
# =============================================================================

class TestFinalizeCommand:
    def test_destroys_undeclared(self, invoke, runtime, destroyer, seeded, declared_file):
        result = invoke("finalize", "myapp/prod", "--declared", str(declared_file))

        assert result.exit_code == 0
        assert "Deleted 1 resource(s), 0 nested scope(s)" in result.output
        assert destroyer.destroyed == ["a"]
        assert recorded(runtime) == {"b"}

    def test_dry_run_changes_nothing(self, invoke, runtime, destroyer, seeded):
        result = invoke("finalize", "myapp/prod", "--dry-run")

        assert result.exit_code == 0
        assert "DRY RUN MODE" in result.output
        assert "Would delete 2 resource(s)" in result.output
        assert destroyer.calls == []
        assert recorded(runtime) == {"a", "b"}

    def test_requires_declared_or_force(self, invoke, destroyer, seeded):
        result = invoke("finalize", "myapp/prod")
        assert result.exit_code == 2
        assert "No --declared file given" in result.output
        assert destroyer.calls == []

    def test_force_excludes_declared(self, invoke, seeded, declared_file):
        result = invoke("finalize", "myapp/prod", "--force", "--declared", str(declared_file))
        assert result.exit_code == 2

    def test_force_destroys_everything(self, invoke, runtime, destroyer, seeded):
        result = invoke("finalize", "myapp/prod", "--force")
        assert result.exit_code == 0
        assert sorted(destroyer.destroyed) == ["a", "b"]
        assert recorded(runtime) == set()

    def test_failure_exits_nonzero(self, invoke, runtime, destroyer, seeded, declared_file):
        destroyer.fail("a")
        result = invoke("finalize", "myapp/prod", "--declared", str(declared_file), "--retry-attempts", "1")

        assert result.exit_code == 1
        assert "destroy_failed" in result.output
        assert recorded(runtime) == {"a", "b"}

    def test_json_report(self, invoke, seeded, declared_file):
        result = invoke("finalize", "myapp/prod", "--declared", str(declared_file), "--json")
        report = json.loads(result.stdout)
        assert report["deleted"] == ["a"]
        assert report["success"] is True

    def test_busy_lock(self, invoke, runtime, seeded, declared_file):
        Scope.at("myapp/prod", runtime).initialize()
        result = invoke("finalize", "myapp/prod", "--declared", str(declared_file))
        assert result.exit_code == 1
        assert "lock show" in result.output

    def test_bad_declared_file(self, invoke, seeded, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text(yaml.safe_dump({"resources": {"b": {"type": "worker"}}}))
        result = invoke("finalize", "myapp/prod", "--declared", str(bad))
        assert result.exit_code == 2

    def test_json_report_survives_configured_logging(self, runner, invoke, tmp_path, seeded, declared_file):
        config = tmp_path / "logging.yaml"
        config.write_text(yaml.safe_dump({"backend": {"type": "memory"}, "logging": {"format": "pretty"}}))
        assert runner.invoke(main, ["--config", str(config), "scopes", "list"]).exit_code == 0

        result = invoke("finalize", "myapp/prod", "--declared", str(declared_file), "--json")
        assert json.loads(result.stdout)["deleted"] == ["a"]

    def test_invalid_nested_name_rejected_before_locking(self, invoke, runtime, seeded, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text(yaml.safe_dump({"nestedScopes": ["bad/name"]}))
        result = invoke("finalize", "myapp/prod", "--declared", str(bad))
        assert result.exit_code == 2
        assert not runtime.locks.is_locked(ScopePath.parse("myapp/prod"))

    def test_rejected_declaration_releases_lock(self, invoke, runtime, destroyer, seeded, tmp_path):
        dup = tmp_path / "dup.yaml"
        dup.write_text(yaml.safe_dump({"resources": {
            "x": {"id": "same", "type": "worker"},
            "y": {"id": "same", "type": "worker"},
        }}))
        result = invoke("finalize", "myapp/prod", "--declared", str(dup))

        assert result.exit_code == 2
        assert "already declared" in result.output
        assert destroyer.calls == []
        assert not runtime.locks.is_locked(ScopePath.parse("myapp/prod"))
        assert recorded(runtime) == {"a", "b"}


# =============================================================================
# lock / backups / monitor
# =============================================================================

class TestLockCommands:
    def test_show_unlocked(self, invoke):
        result = invoke("lock", "show", "myapp/prod")
        assert "myapp/prod: not locked" in result.output

    def test_show_held(self, invoke, runtime):
        Scope.at("myapp/prod", runtime).initialize()
        result = invoke("lock", "show", "myapp/prod")
        assert "held" in result.output
        assert runtime.locks.holder_id in result.output

    def test_show_stale(self, invoke, runtime, clock):
        Scope.at("myapp/prod", runtime).initialize()
        clock.advance(runtime.locks.default_ttl_ms + 1)
        result = invoke("lock", "show", "myapp/prod")
        assert "EXPIRED (stale)" in result.output

    def test_release_requires_force(self, invoke, runtime):
        Scope.at("myapp/prod", runtime).initialize()
        result = invoke("lock", "release", "myapp/prod")
        assert result.exit_code == 2
        assert runtime.locks.is_locked(ScopePath.parse("myapp/prod"))

    def test_force_release(self, invoke, runtime):
        Scope.at("myapp/prod", runtime).initialize()
        result = invoke("lock", "release", "myapp/prod", "--force")
        assert result.exit_code == 0
        assert f"held by {runtime.locks.holder_id}" in result.output
        assert not runtime.locks.is_locked(ScopePath.parse("myapp/prod"))


class TestBackupsCommands:
    def test_list_empty(self, invoke):
        result = invoke("backups", "list", "myapp/prod")
        assert "No backups for myapp/prod." in result.output

    def test_restore_snapshot(self, invoke, runtime, seeded, declared_file):
        first = runtime.store.list_snapshots(seeded)[0]
        invoke("finalize", "myapp/prod", "--declared", str(declared_file))
        assert recorded(runtime) == {"b"}

        listed = invoke("backups", "list", "myapp/prod")
        assert first in listed.output

        result = invoke("backups", "restore", "myapp/prod", first)

        assert result.exit_code == 0
        assert f"Restored myapp/prod from snapshot {first}" in result.output
        assert recorded(runtime) == {"a", "b"}
        assert not runtime.locks.is_locked(seeded)

    def test_restore_missing(self, invoke):
        result = invoke("backups", "restore", "myapp/prod")
        assert result.exit_code == 1


class TestMonitorCommand:
    def test_once_healthy(self, invoke, seeded):
        result = invoke("monitor", "--once")
        assert result.exit_code == 0
        assert "✓ No issues found" in result.output

    def test_once_with_alerts(self, invoke, runtime):
        runtime.backend.write(ScopePath.parse("myapp/prod").state_key, b"garbage")
        result = invoke("monitor", "--once")
        assert result.exit_code == 1
        assert "[critical]" in result.output
