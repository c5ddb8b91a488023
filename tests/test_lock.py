"""Tests for LockManager."""

import logging

import pytest

from scopekeeper.backends import InMemoryBackend
from scopekeeper.errors import LockBusyError, LockNotHeldError
from scopekeeper.lock import LockManager
from scopekeeper.paths import ScopePath

PATH = ScopePath.of("myapp", "prod")


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def locks(backend, clock):
    return LockManager(backend, holder_id="me", default_ttl_ms=1000, clock=clock)


@pytest.fixture
def other(backend, clock):
    return LockManager(backend, holder_id="them", default_ttl_ms=1000, clock=clock, sleep=lambda s: None)


class TestAcquire:
    def test_acquire_writes_marker(self, locks, backend, clock):
        lease = locks.acquire(PATH)
        assert lease.holder_id == "me"
        assert lease.acquired_at == clock()
        assert lease.ttl_ms == 1000
        assert backend.exists("myapp/prod/.lock")

    def test_second_acquire_on_unexpired_lease_is_busy(self, locks, other):
        locks.acquire(PATH)
        with pytest.raises(LockBusyError) as exc_info:
            other.acquire(PATH)
        assert exc_info.value.lease.holder_id == "me"

    def test_same_holder_cannot_acquire_twice(self, locks):
        locks.acquire(PATH)
        with pytest.raises(LockBusyError):
            locks.acquire(PATH)

    def test_expired_lease_is_reclaimed(self, locks, other, clock):
        locks.acquire(PATH)
        clock.advance(1001)
        lease = other.acquire(PATH)
        assert lease.holder_id == "them"
        assert other.inspect(PATH).holder_id == "them"

    def test_lease_at_exact_ttl_is_still_valid(self, locks, other, clock):
        locks.acquire(PATH)
        clock.advance(1000)
        with pytest.raises(LockBusyError):
            other.acquire(PATH)

    def test_unparsable_marker_is_reclaimed(self, locks, backend):
        backend.write("myapp/prod/.lock", b"garbage")
        assert locks.acquire(PATH).holder_id == "me"

    def test_custom_ttl(self, locks):
        assert locks.acquire(PATH, ttl_ms=50).ttl_ms == 50

    def test_wait_polls_until_free(self, backend, clock):
        holder = LockManager(backend, holder_id="holder", default_ttl_ms=1000, clock=clock)
        holder.acquire(PATH)
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            clock.advance(600)

        waiter = LockManager(backend, holder_id="waiter", clock=clock, sleep=sleep, poll_interval=0.0)
        lease = waiter.acquire(PATH, wait=60)
        assert lease.holder_id == "waiter"
        assert len(sleeps) == 2

    def test_paths_are_independent(self, locks, other):
        locks.acquire(PATH)
        assert other.acquire(PATH.child("network")).holder_id == "them"


class TestRelease:
    def test_release_removes_marker(self, locks, backend):
        lease = locks.acquire(PATH)
        locks.release(lease)
        assert not backend.exists("myapp/prod/.lock")
        assert not locks.is_locked(PATH)

    def test_release_after_takeover_raises(self, locks, other, clock):
        lease = locks.acquire(PATH)
        clock.advance(2000)
        other.acquire(PATH)
        with pytest.raises(LockNotHeldError):
            locks.release(lease)
        assert other.inspect(PATH).holder_id == "them"

    def test_release_of_missing_marker_is_tolerated(self, locks, backend, caplog):
        lease = locks.acquire(PATH)
        backend.delete("myapp/prod/.lock")
        with caplog.at_level(logging.WARNING, logger="scopekeeper"):
            locks.release(lease)
        assert "already gone" in caplog.text

    def test_force_release_is_logged(self, locks, other, caplog):
        locks.acquire(PATH)
        with caplog.at_level(logging.WARNING, logger="scopekeeper"):
            previous = other.force_release(PATH)
        assert previous.holder_id == "me"
        assert "Force-released" in caplog.text
        assert not other.is_locked(PATH)

    def test_force_release_without_lock(self, locks):
        assert locks.force_release(PATH) is None


class TestEnsureHeld:
    def test_current_lease_passes(self, locks):
        locks.ensure_held(locks.acquire(PATH))

    def test_expired_lease_fails(self, locks, clock):
        lease = locks.acquire(PATH)
        clock.advance(5000)
        with pytest.raises(LockNotHeldError, match="expired"):
            locks.ensure_held(lease)

    def test_missing_marker_fails(self, locks, backend):
        lease = locks.acquire(PATH)
        backend.delete("myapp/prod/.lock")
        with pytest.raises(LockNotHeldError, match="missing"):
            locks.ensure_held(lease)

    def test_other_holder_fails(self, locks, other, clock):
        lease = locks.acquire(PATH)
        clock.advance(5000)
        other.acquire(PATH)
        with pytest.raises(LockNotHeldError, match="them"):
            locks.ensure_held(lease)


class TestInspect:
    def test_is_locked_false_for_expired(self, locks, clock):
        locks.acquire(PATH)
        assert locks.is_locked(PATH)
        clock.advance(1001)
        assert not locks.is_locked(PATH)
        assert locks.inspect(PATH) is not None
