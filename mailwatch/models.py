"""Data types passed between the transport, decoder, store and watcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO


class SessionState(str, Enum):
    """Lifecycle state of a watcher's IMAP session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    WATCHING = "watching"
    FAULTED = "faulted"


class WatcherEvent(str, Enum):
    """Names of the events published on a watcher's event channel."""

    SERVER_CONNECTED = "server:connected"
    SERVER_DISCONNECTED = "server:disconnected"
    MAILBOX = "mailbox"
    ERROR = "error"
    MAIL = "mail"
    HEADERS = "headers"
    BODY = "body"


class Activity(str, Enum):
    """Kinds of unsolicited mailbox activity reported by the server."""

    MAIL = "mail"
    UPDATE = "update"


@dataclass
class MailboxInfo:
    """Status of a freshly opened mailbox."""

    name: str
    read_only: bool
    exists: int
    recent: int = 0
    uid_validity: int | None = None
    uid_next: int | None = None
    flags: list[str] = field(default_factory=list)


@dataclass
class FetchedMessage:
    """Raw message bytes fetched from IMAP."""

    uid: str
    seqno: int
    raw_bytes: bytes


@dataclass
class Attachment:
    """A single attachment extracted from a MIME message.

    Exactly one of ``content`` and ``stream`` is set: buffered decoding
    fills ``content``, streaming decoding hands out a readable ``stream``.
    The stdlib ``email`` package decodes a whole message at once, so in
    streaming mode ``stream`` is an in-memory ``io.BytesIO`` over the fully
    decoded payload; memory use is not bounded by attachment size.
    """

    filename: str
    content_type: str
    size: int
    content: bytes | None = None
    stream: BinaryIO | None = None
    content_id: str | None = None
    checksum: str | None = None


@dataclass
class MessageBody:
    """Payload of the ``body`` event."""

    html: str | None
    text: str | None
    text_as_html: str | None

    def as_dict(self) -> dict[str, str | None]:
        return {"html": self.html, "text": self.text, "textAsHtml": self.text_as_html}


@dataclass
class DecodedMessage:
    """Structured representation of a fully decoded message."""

    message_id: str
    subject: str
    from_address: str
    to_addresses: list[str]
    cc_addresses: list[str]
    bcc_addresses: list[str]
    date: str
    text: str | None
    html: str | None
    text_as_html: str | None
    headers: dict[str, Any]
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def body(self) -> MessageBody:
        return MessageBody(html=self.html, text=self.text, text_as_html=self.text_as_html)


@dataclass(frozen=True)
class AttachmentReference:
    """Location of one persisted attachment, relative to the storage root."""

    token: str
    filename: str

    @property
    def path(self) -> str:
        return f"{self.token}/{self.filename}"

    def __str__(self) -> str:
        return self.path


@dataclass
class MessageOutcome:
    """What happened to one UID during a discovery cycle."""

    uid: str
    seqno: int | None = None
    emitted: bool = False
    attachment_refs: list[str] | None = None
    errors: list[Exception] = field(default_factory=list)


@dataclass
class CycleResult:
    """Summary of one discovery cycle."""

    trigger: str
    uids: list[str] = field(default_factory=list)
    outcomes: list[MessageOutcome] = field(default_factory=list)
    error: Exception | None = None

    @property
    def emitted(self) -> int:
        return sum(1 for o in self.outcomes if o.emitted)
