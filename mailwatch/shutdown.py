"""Graceful shutdown handling via SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable

import structlog

logger = structlog.get_logger()

_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(shutdown_event: asyncio.Event) -> Callable[[], None]:
    """Set *shutdown_event* on SIGTERM or SIGINT.

    Must be called from the running event loop.  Returns a callable that
    removes the handlers again, so a stopped runner leaves the loop's
    default signal behaviour in place.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in _SIGNALS:
        loop.add_signal_handler(sig, _handle, sig)

    def _remove() -> None:
        for sig in _SIGNALS:
            loop.remove_signal_handler(sig)

    return _remove
