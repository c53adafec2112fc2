"""Coalesce bursts of answer updates into at most one commit per tick.

Token streams can deliver far more events than a view can usefully redraw.
`RenderScheduler.request()` marks a commit as pending and asks the tick source
for a single callback; later requests before that tick fires are folded into
the same flush, which reads the latest value when it runs.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Protocol


class TickHandle(Protocol):
    def cancel(self) -> None: ...


class TickSource(Protocol):
    def call_on_next_tick(self, callback: Callable[[], None]) -> TickHandle: ...


class LoopTickSource:
    """Ticks driven by the running asyncio loop at a fixed refresh interval."""

    def __init__(self, interval: float):
        self.interval = interval

    def call_on_next_tick(self, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(self.interval, callback)


@dataclass(slots=True)
class _ManualHandle:
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTickSource:
    """Ticks fired explicitly by calling `tick()`."""

    def __init__(self) -> None:
        self._scheduled: list[_ManualHandle] = []

    @property
    def scheduled(self) -> int:
        return sum(1 for handle in self._scheduled if not handle.cancelled)

    def call_on_next_tick(self, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle(callback)
        self._scheduled.append(handle)
        return handle

    def tick(self) -> int:
        due, self._scheduled = self._scheduled, []
        fired = 0
        for handle in due:
            if handle.cancelled:
                continue
            handle.callback()
            fired += 1
        return fired


class RenderScheduler:
    def __init__(self, flush: Callable[[], None], tick_source: TickSource):
        self._flush = flush
        self._tick_source = tick_source
        self._handle: TickHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def request(self) -> None:
        if self._handle is None:
            self._handle = self._tick_source.call_on_next_tick(self._on_tick)

    def flush_now(self) -> None:
        self.cancel()
        self._flush()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _on_tick(self) -> None:
        self._handle = None
        self._flush()
