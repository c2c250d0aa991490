"""Shared test helpers — virtual time for the runner and watchers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

T0 = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)  # a Monday


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class ManualHandle:
    def __init__(self, interval_s, callback, name):
        self.interval_s = interval_s
        self.callback = callback
        self.name = name
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    async def tick(self) -> None:
        if not self.cancelled:
            await self.callback()


class ManualTicker:
    """Ticker factory whose ticks only happen when a test fires them."""

    def __init__(self):
        self.handles: list[ManualHandle] = []

    def __call__(self, interval_s, callback, name="ticker") -> ManualHandle:
        handle = ManualHandle(interval_s, callback, name)
        self.handles.append(handle)
        return handle

    def get(self, name: str) -> ManualHandle:
        live = [h for h in self.handles if h.name == name and not h.cancelled]
        assert live, f"no live ticker named {name}"
        return live[-1]

    async def fire(self, name: str) -> None:
        await self.get(name).tick()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ticker():
    return ManualTicker()
