"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import re
import ssl
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

from .config import ImapConfig
from .errors import FetchError, MailboxOpenError, MailConnectionError, SearchError
from .models import Activity, FetchedMessage, MailboxInfo

logger = structlog.get_logger()

_ATOM_SPECIALS = re.compile(r'[\s(){%*"\\\]]')
_CONNECTION_ERRORS = (imaplib.IMAP4.error, OSError)

T = TypeVar("T")


class AsyncImapClient:
    """Async-friendly IMAP client.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  An
    ``imaplib`` connection cannot interleave commands, so every protocol
    round-trip holds ``_lock``; callers may still issue fetches from
    concurrent tasks.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()
        self._mailbox: str | None = None
        self._exists: int = 0

    @property
    def mailbox(self) -> str | None:
        return self._mailbox

    async def _in_thread(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking imaplib call in a worker thread; caller holds ``_lock``.

        If the awaiting task is cancelled, the cancellation is held back
        until the worker thread returns, so ``_lock`` is never released
        while a command is still in flight on the connection.
        """
        future = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            await asyncio.wait([future])
            if not future.cancelled() and future.exception() is not None:
                logger.debug(
                    "imap_command_abandoned",
                    command=getattr(fn, "__name__", repr(fn)),
                    error=str(future.exception()),
                )
            raise

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and authenticate."""
        async with self._lock:
            try:
                await self._in_thread(self._connect_sync)
            except _CONNECTION_ERRORS as exc:
                self._conn = None
                raise MailConnectionError(
                    f"could not connect to {self._config.host}:{self._config.port}: {exc}"
                ) from exc
        logger.info("imap_connected", host=self._config.host, port=self._config.port)

    def _connect_sync(self) -> None:
        timeout = self._config.conn_timeout_seconds
        if self._config.use_ssl:
            self._conn = imaplib.IMAP4_SSL(
                self._config.host,
                self._config.port,
                ssl_context=self._ssl_context(),
                timeout=timeout,
            )
        else:
            self._conn = imaplib.IMAP4(self._config.host, self._config.port, timeout=timeout)
            if self._config.starttls:
                self._conn.starttls(ssl_context=self._ssl_context())

        if self._config.debug:
            self._conn.debug = self._config.debug

        if self._config.auth_timeout_seconds is not None:
            self._conn.sock.settimeout(self._config.auth_timeout_seconds)

        if self._config.xoauth2 is not None:
            auth_string = (
                f"user={self._config.username}\x01"
                f"auth=Bearer {self._config.xoauth2.get_secret_value()}\x01\x01"
            )
            self._conn.authenticate("XOAUTH2", lambda _: auth_string.encode())
        else:
            assert self._config.password is not None
            self._conn.login(self._config.username, self._config.password.get_secret_value())

        if self._config.auth_timeout_seconds is not None:
            self._conn.sock.settimeout(timeout)

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=self._config.tls_ca_file)
        if not self._config.tls_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def disconnect(self) -> None:
        """Close mailbox and logout."""
        if self._conn is not None:
            async with self._lock:
                if self._conn is None:
                    return
                await self._in_thread(self._disconnect_sync)
                self._conn = None
                self._mailbox = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        if self._mailbox is not None:
            try:
                self._conn.close()
            except _CONNECTION_ERRORS:
                pass
        try:
            self._conn.logout()
        except _CONNECTION_ERRORS:
            pass

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            async with self._lock:
                status, _ = await self._in_thread(self._conn.noop)
            return status == "OK"
        except _CONNECTION_ERRORS:
            return False

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    async def open_mailbox(self, name: str, read_only: bool = False) -> MailboxInfo:
        """SELECT (or EXAMINE) *name* and return its status."""
        assert self._conn is not None, "Not connected"
        async with self._lock:
            try:
                info = await self._in_thread(self._select_sync, name, read_only)
            except _CONNECTION_ERRORS as exc:
                raise MailboxOpenError(name, f"could not open mailbox {name!r}: {exc}") from exc
        self._mailbox = name
        self._exists = info.exists
        logger.info("imap_mailbox_opened", mailbox=name, exists=info.exists)
        return info

    def _select_sync(self, name: str, read_only: bool) -> MailboxInfo:
        assert self._conn is not None
        status, data = self._conn.select(_quote_mailbox(name), readonly=read_only)
        if status != "OK":
            detail = data[0].decode(errors="replace") if data and data[0] else status
            raise MailboxOpenError(name, f"could not open mailbox {name!r}: {detail}")

        flags_data = self._pop_untagged("FLAGS")
        flags: list[str] = []
        if flags_data:
            flags = flags_data[-1].decode().strip("()").split()

        return MailboxInfo(
            name=name,
            read_only=read_only,
            exists=_to_int(data[0]) or 0,
            recent=_last_int(self._pop_untagged("RECENT")) or 0,
            uid_validity=_last_int(self._pop_untagged("UIDVALIDITY")),
            uid_next=_last_int(self._pop_untagged("UIDNEXT")),
            flags=flags,
        )

    def _pop_untagged(self, name: str) -> list[bytes]:
        assert self._conn is not None
        _, data = self._conn.response(name)
        return [d for d in data if isinstance(d, bytes)]

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def search(self, criteria: list[str]) -> list[str]:
        """Run ``UID SEARCH`` and return matching UIDs in server order."""
        async with self._lock:
            if self._conn is None:
                raise SearchError(f"search {criteria} failed: not connected")
            try:
                status, data = await self._in_thread(
                    self._conn.uid, "SEARCH", None, *criteria
                )
            except _CONNECTION_ERRORS as exc:
                raise SearchError(f"search {criteria} failed: {exc}") from exc

        if status != "OK":
            raise SearchError(f"search {criteria} failed with status {status}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch(self, uid: str, mark_seen: bool = False) -> FetchedMessage:
        """Fetch the full RFC 822 body of *uid*.

        ``BODY[]`` lets the server set ``\\Seen``; ``BODY.PEEK[]`` leaves
        the flags untouched.
        """
        item = "(BODY[])" if mark_seen else "(BODY.PEEK[])"
        async with self._lock:
            if self._conn is None:
                raise FetchError(uid, f"fetch of uid {uid} failed: not connected")
            try:
                status, data = await self._in_thread(self._conn.uid, "FETCH", uid, item)
            except _CONNECTION_ERRORS as exc:
                raise FetchError(uid, f"fetch of uid {uid} failed: {exc}") from exc

        if status != "OK":
            raise FetchError(uid, f"fetch of uid {uid} failed with status {status}")

        for entry in data or []:
            if isinstance(entry, tuple) and len(entry) == 2:
                header, raw_bytes = entry
                seqno = _to_int(header.split(None, 1)[0]) or 0
                return FetchedMessage(uid=uid, seqno=seqno, raw_bytes=raw_bytes)

        raise FetchError(uid, f"no message body returned for uid {uid}")

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def poll_activity(self) -> list[Activity]:
        """Ping the server and report unsolicited mailbox activity.

        New arrivals show up as a grown ``EXISTS`` count, flag changes as
        untagged ``FETCH`` responses.
        """
        async with self._lock:
            if self._conn is None:
                raise MailConnectionError("connection lost: not connected")
            try:
                return await self._in_thread(self._poll_sync)
            except _CONNECTION_ERRORS as exc:
                raise MailConnectionError(f"connection lost: {exc}") from exc

    def _poll_sync(self) -> list[Activity]:
        assert self._conn is not None
        status, _ = self._conn.noop()
        if status != "OK":
            raise MailConnectionError(f"NOOP failed with status {status}")

        activity: list[Activity] = []
        # imaplib keeps untagged responses per name, so their relative order
        # is lost; expunges are applied first and EXISTS is taken as the count
        # after them
        self._exists = max(self._exists - len(self._pop_untagged("EXPUNGE")), 0)
        exists = _last_int(self._pop_untagged("EXISTS"))
        if exists is not None:
            if exists > self._exists:
                activity.append(Activity.MAIL)
            self._exists = exists
        if self._pop_untagged("FETCH"):
            activity.append(Activity.UPDATE)
        self._pop_untagged("RECENT")

        if activity:
            logger.debug("imap_activity", activity=[a.value for a in activity], exists=self._exists)
        return activity


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _quote_mailbox(name: str) -> str:
    """Quote a mailbox name when it is not a plain IMAP atom."""
    if name and not _ATOM_SPECIALS.search(name):
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _to_int(value: bytes | str | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode(errors="replace")
    try:
        return int(value.strip())
    except ValueError:
        return None


def _last_int(values: list[bytes]) -> int | None:
    for value in reversed(values):
        number = _to_int(value)
        if number is not None:
            return number
    return None
