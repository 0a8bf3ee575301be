"""WatcherRunner: process-level supervision around a MailWatcher.

Adds what the watcher deliberately leaves to its caller: logging setup,
signal handling, reconnect with backoff, and a health server.
"""

from __future__ import annotations

import asyncio
import time

import structlog
import uvicorn

from .config import WatcherConfig
from .errors import MailConnectionError
from .health import create_health_app
from .logging import bind_watcher_context, setup_logging
from .models import DecodedMessage, MailboxInfo, SessionState, WatcherEvent
from .retry import reconnect_policy
from .shutdown import install_signal_handlers
from .watcher import MailWatcher

logger = structlog.get_logger()


class WatcherRunner:
    """Run one watcher until SIGTERM / SIGINT.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the connection supervisor (start, wait for disconnect, reconnect)
    * a FastAPI health server
    """

    def __init__(self, config: WatcherConfig, watcher: MailWatcher | None = None) -> None:
        self.config = config
        self.watcher = watcher or MailWatcher(config)
        self.start_time: float = time.monotonic()
        self.reconnects: int = 0

        self._shutdown_event = asyncio.Event()
        self._disconnected = asyncio.Event()

        self.watcher.on(WatcherEvent.SERVER_DISCONNECTED, self._disconnected.set)
        self.watcher.on(WatcherEvent.MAILBOX, self._log_mailbox)
        self.watcher.on(WatcherEvent.MAIL, self._log_mail)

    # ------------------------------------------------------------------
    # Event logging
    # ------------------------------------------------------------------

    def _log_mailbox(self, info: MailboxInfo) -> None:
        logger.info(
            "mailbox_opened",
            mailbox=info.name,
            exists=info.exists,
            uid_validity=info.uid_validity,
        )

    def _log_mail(
        self,
        message: DecodedMessage,
        attachment_refs: list[str] | None,
        seqno: int,
    ) -> None:
        logger.info(
            "mail_received",
            seqno=seqno,
            message_id=message.message_id,
            subject=message.subject,
            attachments=len(attachment_refs or []),
        )

    # ------------------------------------------------------------------
    # Connection supervision
    # ------------------------------------------------------------------

    async def _connect_once(self) -> None:
        await self.watcher.start()
        if self.watcher.state is not SessionState.WATCHING:
            state = self.watcher.state
            await self.watcher.stop()
            raise MailConnectionError(f"watcher did not start (state {state.value})")

    async def _supervise(self) -> None:
        """Keep the watcher connected until shutdown is requested."""
        while not self._shutdown_event.is_set():
            try:
                async for attempt in reconnect_policy(self.config.retry):
                    with attempt:
                        await self._connect_once()
            except MailConnectionError:
                logger.error(
                    "watcher_connect_failed_permanently",
                    attempts=self.config.retry.max_attempts,
                )
                self._shutdown_event.set()
                return

            self._disconnected.clear()
            await _wait_any(self._disconnected, self._shutdown_event)
            if self._shutdown_event.is_set():
                return

            self.reconnects += 1
            logger.warning("watcher_connection_lost", reconnects=self.reconnects)

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        """Serve the health app until the shutdown event fires."""
        config = uvicorn.Config(
            create_health_app(self),
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and run until shutdown::

            asyncio.run(WatcherRunner(WatcherConfig()).run())
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        bind_watcher_context(host=self.config.imap.host, mailbox=self.config.mailbox)
        remove_handlers = install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()

        logger.info("mailwatch_starting", search_filter=self.config.search_filter)

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._supervise())
                tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("mailwatch_task_group_error")
        finally:
            await self.watcher.stop()
            remove_handlers()
            logger.info("mailwatch_stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()


async def _wait_any(*events: asyncio.Event) -> None:
    """Return as soon as one of *events* is set."""
    waiters = [asyncio.create_task(event.wait()) for event in events]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
