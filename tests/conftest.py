from typing import Callable, List

import pytest

from backend.roomhub.config import Settings
from backend.roomhub.coordinator import RoomLifecycleCoordinator
from backend.roomhub.grace import GracePeriodScheduler
from backend.roomhub.repository import InMemoryRoomRepository


class FakeHandle:
    def __init__(self, when: float, fn: Callable, args: tuple):
        self.when = when
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeTimers:
    """Stand-in for loop.call_later driven by advance()."""

    def __init__(self):
        self.now = 0.0
        self._handles: List[FakeHandle] = []

    def call_later(self, delay, fn, *args):
        handle = FakeHandle(self.now + delay, fn, args)
        self._handles.append(handle)
        return handle

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self._handles.remove(handle)
            self.now = handle.when
            handle.fn(*handle.args)
        self.now = target
        self._handles = [h for h in self._handles if not h.cancelled]

    @property
    def armed(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)


class CodeQueue:
    """Hands out predefined room codes in order."""

    def __init__(self, *codes: str):
        self.codes = list(codes)

    def push(self, *codes: str) -> None:
        self.codes.extend(codes)

    def __call__(self) -> str:
        return self.codes.pop(0)


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def scheduler(timers):
    return GracePeriodScheduler(duration=60.0, call_later=timers.call_later)


@pytest.fixture
def repo():
    return InMemoryRoomRepository()


@pytest.fixture
def codes():
    return CodeQueue()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def coordinator(repo, scheduler, settings, codes):
    return RoomLifecycleCoordinator(repo, scheduler, settings, code_factory=codes)
