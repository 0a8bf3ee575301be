"""Mailwatch: an IMAP mailbox watcher that decodes new mail, persists
attachments, and publishes structured events.
"""

from .config import AttachmentOptions, DecoderOptions, ImapConfig, RetryConfig, WatcherConfig
from .errors import (
    AttachmentError,
    DecodeError,
    DirectoryCreateError,
    FetchError,
    FileWriteError,
    MailboxOpenError,
    MailConnectionError,
    MailWatchError,
    SearchError,
)
from .events import EventChannel
from .imap_client import AsyncImapClient
from .models import (
    Activity,
    Attachment,
    AttachmentReference,
    CycleResult,
    DecodedMessage,
    FetchedMessage,
    MailboxInfo,
    MessageBody,
    MessageOutcome,
    SessionState,
    WatcherEvent,
)
from .parser import MimeParser
from .runner import WatcherRunner
from .storage import AttachmentStore
from .watcher import MailWatcher

__all__ = [
    "Activity",
    "AsyncImapClient",
    "Attachment",
    "AttachmentError",
    "AttachmentOptions",
    "AttachmentReference",
    "AttachmentStore",
    "CycleResult",
    "DecodeError",
    "DecodedMessage",
    "DecoderOptions",
    "DirectoryCreateError",
    "EventChannel",
    "FetchError",
    "FetchedMessage",
    "FileWriteError",
    "ImapConfig",
    "MailConnectionError",
    "MailWatchError",
    "MailWatcher",
    "MailboxInfo",
    "MailboxOpenError",
    "MessageBody",
    "MessageOutcome",
    "MimeParser",
    "RetryConfig",
    "SearchError",
    "SessionState",
    "WatcherConfig",
    "WatcherEvent",
    "WatcherRunner",
]
