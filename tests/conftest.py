import logging

import pytest

from scopekeeper.destroyers import Destroyable, DestroyerRegistry
from scopekeeper.schemas import ResourceRecord
from scopekeeper.scope import ScopeRuntime

START_MS = 1_700_000_000_000


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingDestroyer(Destroyable):
    """Records destroy calls; keys in ``failures`` raise that many times (-1 = always)."""

    def __init__(self):
        self.calls: list[str] = []
        self.destroyed: list[str] = []
        self.failures: dict[str, int] = {}
        self.error_type = RuntimeError

    def fail(self, key: str, times: int = -1) -> None:
        self.failures[key] = times

    def destroy(self, key, record):
        self.calls.append(key)
        remaining = self.failures.get(key, 0)
        if remaining:
            if remaining > 0:
                self.failures[key] = remaining - 1
            raise self.error_type(f"cannot destroy {key}")
        self.destroyed.append(key)


@pytest.fixture(autouse=True)
def isolated_logging():
    """Undo handlers a CLI invocation installs on the scopekeeper logger."""
    logger = logging.getLogger("scopekeeper")
    handlers, level = list(logger.handlers), logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def destroyer():
    return RecordingDestroyer()


@pytest.fixture
def registry(destroyer):
    registry = DestroyerRegistry()
    registry.register("*", destroyer)
    return registry


@pytest.fixture
def runtime(registry, clock):
    return ScopeRuntime.in_memory(destroyers=registry, clock=clock)


@pytest.fixture
def make_record(clock):
    def _make(id: str, type: str = "worker", **kwargs) -> ResourceRecord:
        return ResourceRecord.create(id, type, now=clock(), **kwargs)
    return _make
