"""
Host visibility signal.

The dashboard host (a browser tab, a kiosk screen, the headless watcher)
pushes hidden/visible transitions; controllers subscribe to transitions only.
"""

from __future__ import annotations

from typing import Callable, Protocol

import structlog

log = structlog.get_logger()

VisibilityListener = Callable[[bool], None]  # receives the new "hidden" flag


class VisibilitySource(Protocol):
    def subscribe(self, listener: VisibilityListener) -> Callable[[], None]: ...


class VisibilitySignal:
    """In-process visibility source; listeners fire only on actual transitions."""

    def __init__(self, hidden: bool = False) -> None:
        self._hidden = hidden
        self._listeners: list[VisibilityListener] = []

    @property
    def hidden(self) -> bool:
        return self._hidden

    def set_hidden(self, hidden: bool) -> None:
        if hidden == self._hidden:
            return
        self._hidden = hidden
        log.debug("visibility.changed", hidden=hidden, listeners=len(self._listeners))
        for listener in list(self._listeners):
            listener(hidden)

    def subscribe(self, listener: VisibilityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
