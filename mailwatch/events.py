"""In-process event channel with multiple subscribers per named event."""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog

from .models import WatcherEvent

logger = structlog.get_logger()

Listener = Callable[..., Any]


def _event_name(event: str | WatcherEvent) -> str:
    return event.value if isinstance(event, WatcherEvent) else event


class EventChannel:
    """Broadcast point owned by a single watcher.

    Listeners may be plain callables or coroutine functions.  They are
    invoked in registration order; coroutines are awaited before the
    next listener runs, so one emitter sees its events delivered in the
    order it emitted them.  A failing listener is logged and skipped.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[Listener, bool]]] = defaultdict(list)

    def on(self, event: str | WatcherEvent, listener: Listener) -> Listener:
        self._listeners[_event_name(event)].append((listener, False))
        return listener

    def once(self, event: str | WatcherEvent, listener: Listener) -> Listener:
        self._listeners[_event_name(event)].append((listener, True))
        return listener

    def off(self, event: str | WatcherEvent, listener: Listener) -> None:
        """Remove the first registration of *listener* for *event*."""
        entries = self._listeners.get(_event_name(event), [])
        for i, (registered, _) in enumerate(entries):
            if registered == listener:
                del entries[i]
                return

    def listeners(self, event: str | WatcherEvent) -> list[Listener]:
        return [fn for fn, _ in self._listeners.get(_event_name(event), [])]

    def remove_all_listeners(self, event: str | WatcherEvent | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(_event_name(event), None)

    async def emit(self, event: str | WatcherEvent, *args: Any) -> bool:
        """Deliver *args* to every listener of *event*.

        Returns ``True`` if at least one listener was registered.
        """
        name = _event_name(event)
        entries = list(self._listeners.get(name, []))

        if not entries:
            if name == WatcherEvent.ERROR.value:
                error = args[0] if args else None
                logger.error(
                    "unhandled_watcher_error",
                    error=str(error),
                    error_type=type(error).__name__,
                )
            return False

        # Drop once-listeners before calling them so re-entrant emits skip them
        remaining = self._listeners[name]
        for entry in entries:
            if entry[1] and entry in remaining:
                remaining.remove(entry)

        for listener, _ in entries:
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("event_listener_failed", watcher_event=name)
        return True
