"""Ticker — periodic async callback with a cancellation handle, plus clocks.

The runner and the threshold watchers never call ``asyncio.sleep`` directly;
they receive a ticker factory and a clock so tests can drive time by hand.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, tzinfo
from typing import Awaitable, Callable, Protocol
from zoneinfo import ZoneInfo

from loguru import logger

TickCallback = Callable[[], Awaitable[None]]


class TickHandle(Protocol):
    """Anything with a ``cancel()`` — returned by a ticker factory."""

    def cancel(self) -> None: ...


TickerFactory = Callable[[float, TickCallback, str], TickHandle]


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock. Always returns timezone-aware datetimes.

    Parameters
    ----------
    timezone : str, optional
        IANA zone name (e.g. "Europe/Istanbul"). None uses the host zone.
    """

    def __init__(self, timezone: str | None = None):
        self.tz: tzinfo | None = ZoneInfo(timezone) if timezone else None

    def now(self) -> datetime:
        if self.tz is None:
            return datetime.now().astimezone()
        return datetime.now(self.tz)


class Ticker:
    """Call ``callback`` every ``interval_s`` seconds until cancelled.

    The first call happens one interval after ``start()``. Exceptions from
    the callback are logged and do not stop the ticker.
    """

    def __init__(self, interval_s: float, callback: TickCallback, name: str = "ticker"):
        self.interval_s = interval_s
        self.callback = callback
        self.name = name
        self._task: asyncio.Task | None = None

    def start(self) -> Ticker:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name=self.name)
        return self

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.callback()
            except Exception as e:
                logger.error(f"Ticker {self.name} callback error: {e}")


def start_ticker(interval_s: float, callback: TickCallback, name: str = "ticker") -> Ticker:
    """Default ticker factory — an asyncio task on the running loop."""
    return Ticker(interval_s, callback, name).start()
