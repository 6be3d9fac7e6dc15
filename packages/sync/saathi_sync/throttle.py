"""
Leading-edge throttle with trailing coalescing.

The first trigger with no open window fires immediately and opens a window.
Triggers inside the window only mark a pending notification; when the window
expires a pending mark yields exactly one trailing fire and the window is not
reopened.
"""

from __future__ import annotations

from typing import Callable

from .timers import Scheduler, Timer


class Throttle:
    def __init__(
        self,
        interval: float,
        scheduler: Scheduler,
        fire: Callable[[], None],
    ):
        self._interval = interval
        self._scheduler = scheduler
        self._fire = fire
        self._window: Timer | None = None
        self._pending = False

    @property
    def window_open(self) -> bool:
        return self._window is not None

    @property
    def pending(self) -> bool:
        return self._pending

    def trigger(self) -> bool:
        """Handle one event. Returns True if it fired, False if coalesced."""
        if self._window is not None:
            self._pending = True
            return False
        self._open_window()
        self._fire()
        return True

    def force(self) -> None:
        """Fire now regardless of window state, starting a fresh window."""
        self.cancel()
        self._open_window()
        self._fire()

    def cancel(self) -> None:
        """Drop the open window and any pending notification."""
        if self._window is not None:
            self._window.cancel()
            self._window = None
        self._pending = False

    def _open_window(self) -> None:
        self._window = self._scheduler.call_later(self._interval, self._expire)

    def _expire(self) -> None:
        self._window = None
        if self._pending:
            self._pending = False
            self._fire()
