"""
Timer scheduling seam.

Controllers never sleep; they schedule callbacks. The default scheduler uses
the running asyncio loop, tests substitute a manual clock.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Protocol


class Timer(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> Timer: ...


class LoopScheduler:
    """Schedules timers on an asyncio event loop (the running one by default)."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> Timer:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)
