"""Tests for the destroyer registry and entry point discovery."""

from unittest.mock import MagicMock, patch

import pytest

from scopekeeper.destroyers import (
    ENTRY_POINT_GROUP,
    Destroyable,
    DestroyerRegistry,
    FunctionDestroyer,
    NoOpDestroyer,
    as_destroyer,
)
from scopekeeper.errors import PermanentError
from scopekeeper.schemas import ResourceRecord


class BucketDestroyer(Destroyable):
    def __init__(self):
        self.destroyed = []

    def destroy(self, key, record):
        self.destroyed.append((key, record.id))


def _record(type="aws:s3:bucket"):
    return ResourceRecord.create("bucket-1", type, now=1)


def _entry_point(name, loaded):
    ep = MagicMock()
    ep.name = name
    ep.value = f"plugins.destroyers:{name}"
    ep.load.return_value = loaded
    return ep


class TestAsDestroyer:
    def test_instance_is_returned_unchanged(self):
        destroyer = BucketDestroyer()
        assert as_destroyer(destroyer) is destroyer

    def test_subclass_is_instantiated(self):
        assert isinstance(as_destroyer(BucketDestroyer), BucketDestroyer)

    def test_callable_is_wrapped(self):
        calls = []
        destroyer = as_destroyer(lambda key, record: calls.append(key))
        assert isinstance(destroyer, FunctionDestroyer)
        destroyer.destroy("assets", _record())
        assert calls == ["assets"]

    def test_rejects_non_callables(self):
        with pytest.raises(TypeError):
            as_destroyer(42)


class TestDestroyerRegistry:
    def test_dispatches_by_record_type(self):
        registry = DestroyerRegistry()
        buckets = BucketDestroyer()
        registry.register("aws:s3:bucket", buckets)

        registry.destroy("assets", _record())

        assert buckets.destroyed == [("assets", "bucket-1")]

    def test_wildcard_handles_unregistered_types(self):
        registry = DestroyerRegistry()
        fallback = NoOpDestroyer()
        registry.register("*", fallback)

        registry.destroy("api", _record(type="cloudflare:worker"))

        assert fallback.destroyed == ["api"]
        assert registry.has("cloudflare:worker")
        assert "cloudflare:worker" not in registry

    def test_exact_type_wins_over_wildcard(self):
        registry = DestroyerRegistry.create_noop()
        buckets = BucketDestroyer()
        registry.register("aws:s3:bucket", buckets)
        assert registry.get("aws:s3:bucket") is buckets

    def test_missing_type_is_permanent(self):
        registry = DestroyerRegistry()
        registry.register("aws:s3:bucket", BucketDestroyer())

        with pytest.raises(PermanentError, match="No destroyer registered for resource type: queue"):
            registry.get("queue")
        assert not registry.has("queue")

    def test_list_types_sorted(self):
        registry = DestroyerRegistry()
        registry.register("b", NoOpDestroyer())
        registry.register("a", NoOpDestroyer())
        assert registry.list_types() == ["a", "b"]


class TestDiscover:
    def test_registers_entry_points(self):
        """Destroyers published under the entry point group are registered by name."""
        with patch("scopekeeper.destroyers.entry_points") as mock_eps:
            mock_group = MagicMock()
            mock_group.select.return_value = [
                _entry_point("aws:s3:bucket", BucketDestroyer),
                _entry_point("cloudflare:worker", lambda key, record: None),
            ]
            mock_eps.return_value = mock_group

            registry = DestroyerRegistry.create_default()

            mock_group.select.assert_called_once_with(group=ENTRY_POINT_GROUP)
            assert registry.list_types() == ["aws:s3:bucket", "cloudflare:worker"]
            assert isinstance(registry.get("aws:s3:bucket"), BucketDestroyer)

    def test_skips_broken_entry_points(self):
        """A plugin that fails to load does not prevent the others."""
        broken = _entry_point("broken", None)
        broken.load.side_effect = ImportError("no module named plugins")

        with patch("scopekeeper.destroyers.entry_points") as mock_eps:
            mock_group = MagicMock()
            mock_group.select.return_value = [
                broken,
                _entry_point("not-callable", 42),
                _entry_point("queue", NoOpDestroyer()),
            ]
            mock_eps.return_value = mock_group

            registry = DestroyerRegistry()
            count = registry.discover()

            assert count == 1
            assert registry.list_types() == ["queue"]

    def test_create_default_without_discovery(self):
        with patch("scopekeeper.destroyers.entry_points") as mock_eps:
            registry = DestroyerRegistry.create_default(discover=False)
            mock_eps.assert_not_called()
            assert registry.list_types() == []
