"""Tests for StateStore: load/save, snapshots, restore and corruption handling."""

import pytest

from scopekeeper.backends import InMemoryBackend
from scopekeeper.errors import CorruptedStateError, LockNotHeldError, NotFoundError
from scopekeeper.lock import LockManager
from scopekeeper.paths import ScopePath
from scopekeeper.schemas import ResourceRecord, ScopeState
from scopekeeper.state_store import StateStore, snapshot_id_for

PATH = ScopePath.of("myapp", "prod")


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def locks(backend, clock):
    return LockManager(backend, holder_id="me", clock=clock)


@pytest.fixture
def store(backend, locks, clock):
    return StateStore(backend, locks, max_backup_versions=3, clock=clock)


@pytest.fixture
def lease(locks):
    return locks.acquire(PATH)


def state_with(*keys, now=1):
    return ScopeState(
        scope_path=str(PATH),
        resources={k: ResourceRecord.create(f"id-{k}", "worker", now=now) for k in keys},
    )


class TestLoadSave:
    def test_load_missing_returns_none(self, store):
        assert store.load(PATH) is None

    def test_round_trip_with_strictly_larger_updated_at(self, store, lease):
        original = state_with("a", "b")
        original.nested_scopes.add("net")
        saved = store.save(PATH, original, lease)
        loaded = store.load(PATH)
        assert loaded.resources == original.resources
        assert loaded.nested_scopes == {"net"}
        assert loaded.updated_at > original.updated_at
        assert loaded == saved

    def test_updated_at_increases_even_if_clock_stalls(self, store, lease, clock):
        first = store.save(PATH, state_with("a"), lease)
        second = store.save(PATH, first, lease)
        third = store.save(PATH, state_with("a"), lease)
        assert first.updated_at < second.updated_at < third.updated_at

    def test_created_at_is_kept(self, store, lease, clock):
        first = store.save(PATH, state_with("a"), lease)
        clock.advance(10)
        second = store.save(PATH, first, lease)
        assert second.created_at == first.created_at

    def test_save_requires_held_lease(self, store, lease, locks):
        locks.release(lease)
        with pytest.raises(LockNotHeldError):
            store.save(PATH, state_with("a"), lease)
        assert store.load(PATH) is None

    def test_corrupted_document_raises(self, store, backend):
        backend.write(PATH.state_key, b"{ not json")
        with pytest.raises(CorruptedStateError) as exc_info:
            store.load(PATH)
        assert exc_info.value.path == PATH.state_key

    @pytest.mark.parametrize("updated_at", ["Infinity", "-Infinity", "NaN"])
    def test_non_finite_timestamp_is_corruption(self, store, backend, updated_at):
        backend.write(PATH.state_key, b'{"schemaVersion": 1, "updatedAt": ' + updated_at.encode() + b"}")
        with pytest.raises(CorruptedStateError):
            store.load(PATH)


class TestSnapshots:
    def test_save_snapshots_the_committed_state(self, store, lease):
        saved = store.save(PATH, state_with("a"), lease)
        assert store.list_snapshots(PATH) == [snapshot_id_for(saved)]
        assert store.restore(PATH) == saved

    def test_snapshot_ids_sort_by_time(self, store, lease, clock):
        ids = []
        for _ in range(3):
            ids.append(snapshot_id_for(store.save(PATH, state_with("a"), lease)))
            clock.advance(1)
        assert store.list_snapshots(PATH) == sorted(ids)
        assert store.latest_snapshot(PATH) == ids[-1]

    def test_prunes_oldest_first(self, store, lease, clock):
        saved = []
        for _ in range(5):
            saved.append(store.save(PATH, state_with("a"), lease))
            clock.advance(1)
        assert store.list_snapshots(PATH) == [snapshot_id_for(s) for s in saved[-3:]]

    def test_versioning_disabled(self, backend, locks, lease):
        store = StateStore(backend, locks, versioning_enabled=False)
        store.save(PATH, state_with("a"), lease)
        assert store.list_snapshots(PATH) == []

    def test_restore_specific_snapshot(self, store, lease, clock):
        first = store.save(PATH, state_with("a"), lease)
        clock.advance(1)
        store.save(PATH, state_with("a", "b"), lease)
        restored = store.restore(PATH, snapshot_id_for(first))
        assert set(restored.resources) == {"a"}

    def test_restore_does_not_write(self, store, lease, clock):
        first = store.save(PATH, state_with("a"), lease)
        clock.advance(1)
        store.save(PATH, state_with("a", "b"), lease)
        store.restore(PATH, snapshot_id_for(first))
        assert set(store.load(PATH).resources) == {"a", "b"}

    def test_restore_missing_snapshot(self, store):
        with pytest.raises(NotFoundError):
            store.restore(PATH)
        with pytest.raises(NotFoundError):
            store.restore(PATH, "0000000000001")


class TestCorruptionRecovery:
    def test_restore_latest_returns_state_before_corruption(self, store, backend, lease, clock):
        store.save(PATH, state_with("a"), lease)
        clock.advance(1)
        good = store.save(PATH, state_with("a", "b"), lease)
        backend.write(PATH.state_key, b"\x00garbage")

        with pytest.raises(CorruptedStateError):
            store.load(PATH)

        restored = store.restore(PATH)
        assert restored == good

        recovered = store.save(PATH, restored, lease)
        assert store.load(PATH).resources == good.resources
        assert recovered.updated_at > good.updated_at


class TestDelete:
    def test_delete_removes_state_and_backups(self, store, backend, lease):
        store.save(PATH, state_with("a"), lease)
        store.delete(PATH, lease)
        assert store.load(PATH) is None
        assert store.list_snapshots(PATH) == []
        assert backend.list("myapp/prod/") == ["myapp/prod/.lock"]
