"""Exception hierarchy surfaced through the watcher's ``error`` event."""

from __future__ import annotations


class MailWatchError(Exception):
    """Base class for every error the watcher reports."""


class MailConnectionError(MailWatchError):
    """Connecting, authenticating, or keeping the IMAP session alive failed."""


class MailboxOpenError(MailConnectionError):
    """The configured mailbox could not be selected."""

    def __init__(self, mailbox: str, message: str) -> None:
        super().__init__(message)
        self.mailbox = mailbox


class SearchError(MailWatchError):
    """A discovery search failed; the cycle is aborted."""


class FetchError(MailWatchError):
    """Fetching a single message failed."""

    def __init__(self, uid: str, message: str) -> None:
        super().__init__(message)
        self.uid = uid


class DecodeError(MailWatchError):
    """A fetched message could not be decoded."""

    def __init__(self, uid: str | None, message: str) -> None:
        super().__init__(message)
        self.uid = uid


class AttachmentError(MailWatchError):
    """Persisting a single attachment failed."""

    def __init__(self, filename: str, path: str, message: str) -> None:
        super().__init__(message)
        self.filename = filename
        self.path = path


class DirectoryCreateError(AttachmentError):
    """The token directory for an attachment could not be created."""


class FileWriteError(AttachmentError):
    """Attachment bytes could not be written (or its stream could not be read)."""
