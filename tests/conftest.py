"""Shared fakes for the notesync test suite."""

from __future__ import annotations

from typing import Callable, Optional

import pytest

from notesync.errors import StorageError


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Collects scheduled callbacks so tests decide when time passes."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def active(self, delay: Optional[float] = None) -> list[FakeTimer]:
        return [
            t
            for t in self.timers
            if not t.cancelled and not t.fired and (delay is None or t.delay == delay)
        ]

    def fire(self, delay: Optional[float] = None) -> int:
        """Run every live timer (optionally only those with ``delay``)."""
        due = self.active(delay)
        for timer in due:
            timer.fired = True
            timer.callback()
        return len(due)


class MemoryCache:
    """In-memory KeyValueCache; can be told to fail."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.closed = False

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise StorageError("read failed")
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise StorageError("write failed")
        self.data[key] = value

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture()
def memory_cache() -> MemoryCache:
    return MemoryCache()
