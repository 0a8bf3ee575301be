"""MailWatcher owns the IMAP session lifecycle and the discovery cycle.

Lifecycle::

    disconnected --start()--> connecting --authenticated--> ready
    ready --mailbox opened--> watching --connection lost / stop()--> disconnected
    connecting --connect failed--> faulted

While watching, every activity notification (new mail or a flag update)
runs one discovery cycle: search → concurrent per-message fetch, decode,
attachment persistence → ``mail`` / ``headers`` / ``body`` events.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime

import structlog

from .config import WatcherConfig
from .errors import MailConnectionError, MailWatchError
from .events import EventChannel, Listener
from .imap_client import AsyncImapClient
from .models import (
    Activity,
    AttachmentReference,
    CycleResult,
    DecodedMessage,
    MailboxInfo,
    MessageOutcome,
    SessionState,
    WatcherEvent,
)
from .parser import MimeParser
from .storage import AttachmentStore

logger = structlog.get_logger()


class MailWatcher:
    """Watch one mailbox and publish decoded messages as events.

    Each watcher owns its own :class:`EventChannel`; subscribe with
    :meth:`on` / :meth:`once` before calling :meth:`start`.

    Discovery cycles are serialized: a notification that arrives while a
    cycle is running waits for it and then searches again, so one cycle
    never races another over the same unread set.
    """

    def __init__(
        self,
        config: WatcherConfig,
        *,
        client: AsyncImapClient | None = None,
        parser: MimeParser | None = None,
        store: AttachmentStore | None = None,
    ) -> None:
        self.config = config
        self.events = EventChannel()
        self.state: SessionState = SessionState.DISCONNECTED
        self.mailbox_info: MailboxInfo | None = None

        self._client = client or AsyncImapClient(config.imap)
        self._parser = parser or MimeParser(config.decoder)
        self._store = store or AttachmentStore(config.attachment_options.directory)

        self._cycle_lock = asyncio.Lock()
        self._semaphore = (
            asyncio.Semaphore(config.max_concurrent_messages)
            if config.max_concurrent_messages
            else None
        )
        self._watch_task: asyncio.Task[None] | None = None
        self._cycle_tasks: set[asyncio.Task[CycleResult | None]] = set()

        self.cycles_run: int = 0
        self.messages_emitted: int = 0
        self.errors_emitted: int = 0
        self.last_cycle_at: datetime | None = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on(self, event: str | WatcherEvent, listener: Listener) -> Listener:
        return self.events.on(event, listener)

    def once(self, event: str | WatcherEvent, listener: Listener) -> Listener:
        return self.events.once(event, listener)

    def off(self, event: str | WatcherEvent, listener: Listener) -> None:
        self.events.off(event, listener)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, open the mailbox and begin watching.

        Failures are reported on the ``error`` event; nothing is retried.
        """
        if self.state not in (SessionState.DISCONNECTED, SessionState.FAULTED):
            logger.warning("watcher_already_started", state=self.state.value)
            return

        self.state = SessionState.CONNECTING
        logger.info(
            "watcher_starting",
            host=self.config.imap.host,
            mailbox=self.config.mailbox,
        )
        try:
            await self._client.connect()
        except MailConnectionError as exc:
            self.state = SessionState.FAULTED
            await self._emit_error(exc)
            return

        self.state = SessionState.READY
        await self._on_ready()

    async def stop(self) -> None:
        """Disconnect from the server.

        Stops the activity watch loop; discovery cycles already running
        are left to finish on their own, and a cycle that raises is logged.
        """
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self.state is SessionState.FAULTED:
            self.state = SessionState.DISCONNECTED
            return
        await self._on_close()

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    async def _on_ready(self) -> None:
        try:
            info = await self._client.open_mailbox(self.config.mailbox, read_only=False)
        except MailConnectionError as exc:
            await self._emit_error(exc)
            return

        self.mailbox_info = info
        self.state = SessionState.WATCHING
        await self.events.emit(WatcherEvent.SERVER_CONNECTED)
        await self.events.emit(WatcherEvent.MAILBOX, info)

        if self.config.fetch_unread_on_start:
            await self.run_discovery_cycle(trigger="start")

        self._watch_task = asyncio.create_task(self._watch_loop())

    async def _on_close(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        await self._client.disconnect()
        logger.info("watcher_disconnected", mailbox=self.config.mailbox)
        await self.events.emit(WatcherEvent.SERVER_DISCONNECTED)

    async def _watch_loop(self) -> None:
        interval = self.config.imap.poll_interval_seconds
        while self.state is SessionState.WATCHING:
            await asyncio.sleep(interval)
            try:
                activity = await self._client.poll_activity()
            except MailConnectionError as exc:
                await self._emit_error(exc)
                self._watch_task = None
                await self._on_close()
                return

            for kind in activity:
                task = asyncio.create_task(self.handle_activity(kind))
                self._cycle_tasks.add(task)
                task.add_done_callback(self._on_cycle_done)

    def _on_cycle_done(self, task: asyncio.Task[CycleResult | None]) -> None:
        self._cycle_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("discovery_cycle_failed", error=str(exc), exc_info=exc)

    async def handle_activity(self, kind: Activity) -> CycleResult | None:
        """Run one discovery cycle for a ``mail`` or ``update`` notification."""
        if self.state is not SessionState.WATCHING:
            logger.debug("activity_ignored", activity=kind.value, state=self.state.value)
            return None
        return await self.run_discovery_cycle(trigger=kind.value)

    # ------------------------------------------------------------------
    # Discovery cycle
    # ------------------------------------------------------------------

    async def run_discovery_cycle(self, trigger: str = "manual") -> CycleResult:
        """Search, then fetch, decode and emit every match concurrently.

        Never raises for search, per-message or per-attachment failures;
        those are emitted on the ``error`` event and recorded in the
        returned :class:`CycleResult`.
        """
        async with self._cycle_lock:
            self.cycles_run += 1
            self.last_cycle_at = datetime.now(UTC)
            result = CycleResult(trigger=trigger)

            try:
                uids = await self._client.search(list(self.config.search_filter))
            except MailWatchError as exc:
                result.error = exc
                await self._emit_error(exc)
                return result

            result.uids = uids
            if not uids:
                logger.debug("discovery_cycle_empty", trigger=trigger)
                return result

            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(self._process_message(uid)) for uid in uids]
            result.outcomes = [task.result() for task in tasks]

            logger.info(
                "discovery_cycle_complete",
                trigger=trigger,
                matched=len(uids),
                emitted=result.emitted,
            )
            return result

    def _limit(self) -> asyncio.Semaphore | contextlib.nullcontext[None]:
        return self._semaphore if self._semaphore is not None else contextlib.nullcontext()

    async def _process_message(self, uid: str) -> MessageOutcome:
        """Fetch → decode → persist → emit for one UID, isolated from its siblings."""
        outcome = MessageOutcome(uid=uid)
        async with self._limit():
            try:
                fetched = await self._client.fetch(uid, mark_seen=self.config.mark_seen)
                outcome.seqno = fetched.seqno
                message = await asyncio.to_thread(
                    self._parser.parse,
                    fetched.raw_bytes,
                    stream_attachments=self.config.stream_attachments,
                    uid=uid,
                )
                if message.attachments and self.config.attachments:
                    outcome.attachment_refs = await self._persist_attachments(message, outcome)
            except MailWatchError as exc:
                outcome.errors.append(exc)
                await self._emit_error(exc)
                return outcome
            except Exception as exc:
                logger.exception("message_processing_failed", uid=uid)
                outcome.errors.append(exc)
                await self._emit_error(exc)
                return outcome

            await self._emit_message(message, outcome.attachment_refs, fetched.seqno)
            outcome.emitted = True
        return outcome

    async def _persist_attachments(
        self,
        message: DecodedMessage,
        outcome: MessageOutcome,
    ) -> list[str]:
        """Persist every attachment; failed ones are reported and left out."""
        results = await asyncio.gather(
            *(self._store.persist(att) for att in message.attachments),
            return_exceptions=True,
        )
        refs: list[str] = []
        for result in results:
            if isinstance(result, AttachmentReference):
                refs.append(result.path)
            elif isinstance(result, MailWatchError):
                outcome.errors.append(result)
                await self._emit_error(result)
            else:
                raise result
        return refs

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    async def _emit_message(
        self,
        message: DecodedMessage,
        attachment_refs: list[str] | None,
        seqno: int,
    ) -> None:
        await self.events.emit(WatcherEvent.MAIL, message, attachment_refs, seqno)
        await self.events.emit(WatcherEvent.HEADERS, message.headers, seqno)
        await self.events.emit(WatcherEvent.BODY, message.body, seqno)
        self.messages_emitted += 1

    async def _emit_error(self, error: Exception) -> None:
        self.errors_emitted += 1
        logger.warning(
            "watcher_error",
            error=str(error),
            error_type=type(error).__name__,
            mailbox=self.config.mailbox,
        )
        await self.events.emit(WatcherEvent.ERROR, error)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> dict[str, object]:
        connected = await self._client.is_connected()
        return {
            "state": self.state.value,
            "imap_connected": connected,
            "imap_host": self.config.imap.host,
            "mailbox": self.config.mailbox,
            "cycles_run": self.cycles_run,
            "messages_emitted": self.messages_emitted,
            "errors_emitted": self.errors_emitted,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }
