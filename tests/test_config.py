"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from scopekeeper.config import (
    BackendConfig,
    ScopekeeperConfig,
    get_scopekeeper_home,
    load_config,
)
from scopekeeper.errors import ConfigError
from scopekeeper.retry import RetryPolicy
from scopekeeper.scope import ScopeRuntime


def write_config(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestHome:
    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SCOPEKEEPER_HOME", str(tmp_path / "sk"))
        assert get_scopekeeper_home() == tmp_path / "sk"

    def test_default(self, monkeypatch):
        monkeypatch.delenv("SCOPEKEEPER_HOME", raising=False)
        assert get_scopekeeper_home() == Path("~/.config/scopekeeper").expanduser()


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="config.yaml not found"):
            load_config(tmp_path / "config.yaml")

    def test_default_location(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SCOPEKEEPER_HOME", str(tmp_path))
        write_config(tmp_path / "config.yaml", {"lock": {"ttl_seconds": 30}})
        config = load_config()
        assert config.lock.ttl_ms == 30_000
        assert config.config_path == tmp_path / "config.yaml"

    def test_empty_file(self, tmp_path):
        (tmp_path / "config.yaml").write_text("")
        with pytest.raises(ConfigError, match="empty"):
            load_config(tmp_path / "config.yaml")

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "config.yaml").write_text("backend: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(tmp_path / "config.yaml")

    def test_sections_default_when_omitted(self, tmp_path):
        config = load_config(write_config(tmp_path / "c.yaml", {"backend": {"type": "memory"}}))
        assert config.backend.type == "memory"
        assert config.versioning.enabled is True
        assert config.versioning.max_backup_versions == 10
        assert config.finalize.strategy == "conservative"


class TestValidation:
    def test_unknown_section(self):
        with pytest.raises(ConfigError, match="Unknown configuration section"):
            ScopekeeperConfig.from_dict({"backends": {}})

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown key"):
            ScopekeeperConfig.from_dict({"lock": {"ttl": 5}})

    def test_bad_backend_type(self):
        with pytest.raises(ConfigError, match="backend.type"):
            ScopekeeperConfig.from_dict({"backend": {"type": "s3"}})

    def test_gcs_requires_bucket(self):
        with pytest.raises(ConfigError, match="bucket"):
            ScopekeeperConfig.from_dict({"backend": {"type": "gcs"}})

    def test_composite_requires_secondary(self):
        with pytest.raises(ConfigError, match="secondary"):
            ScopekeeperConfig.from_dict({"backend": {"type": "composite", "root": "/tmp/x"}})

    def test_composite_parses_secondary(self):
        config = ScopekeeperConfig.from_dict({
            "backend": {
                "type": "composite",
                "bucket": "states",
                "secondary": {"type": "local", "root": "/tmp/mirror"},
            }
        })
        assert isinstance(config.backend.secondary, BackendConfig)
        assert config.backend.primary().type == "gcs"
        assert config.backend.secondary.root == "/tmp/mirror"

    @pytest.mark.parametrize("section,values", [
        ("lock", {"ttl_seconds": 0}),
        ("versioning", {"max_backup_versions": 0}),
        ("retry", {"max_attempts": 0}),
        ("finalize", {"strategy": "yolo"}),
        ("finalize", {"concurrency": 0}),
        ("finalize", {"destroy_timeout": 0}),
        ("finalize", {"destroy_timeout": "soon"}),
        ("logging", {"format": "xml"}),
        ("logging", {"level": "LOUD"}),
    ])
    def test_invalid_values(self, section, values):
        with pytest.raises(ConfigError):
            ScopekeeperConfig.from_dict({section: values})


class TestConversions:
    def test_retry_policy(self):
        config = ScopekeeperConfig.from_dict({"retry": {"max_attempts": 5, "backoff_seconds": 0.5}})
        policy = config.retry.to_policy()
        assert isinstance(policy, RetryPolicy)
        assert policy.max_attempts == 5
        assert policy.backoff_seconds == 0.5

    def test_destroy_timeout_reaches_finalize_defaults(self):
        config = ScopekeeperConfig.from_dict({"backend": {"type": "memory"}, "finalize": {"destroy_timeout": 30}})
        runtime = ScopeRuntime.from_config(config)
        assert runtime.defaults.destroy_timeout == 30

    def test_to_dict_round_trips(self):
        data = ScopekeeperConfig().to_dict()
        assert "secondary" not in data["backend"]
        assert ScopekeeperConfig.from_dict(data).to_dict() == data
