"""Shared test fixtures for the mailwatch test suite."""

from __future__ import annotations

from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from mailwatch.config import AttachmentOptions, ImapConfig, RetryConfig, WatcherConfig
from mailwatch.errors import FetchError
from mailwatch.imap_client import AsyncImapClient
from mailwatch.models import FetchedMessage, MailboxInfo


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def attachment_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "attachments"
    directory.mkdir()
    return directory


@pytest.fixture
def watcher_config(imap_config: ImapConfig, attachment_dir: Path) -> WatcherConfig:
    return WatcherConfig(
        imap=imap_config,
        mailbox="INBOX",
        search_filter=["UNSEEN"],
        attachments=True,
        attachment_options=AttachmentOptions(directory=str(attachment_dir)),
        retry=RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.02),
        health_port=18080,
    )


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "sender@example.com",
    to_addr: str = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str = "<test-001@example.com>",
    cc: str | None = None,
    bcc: str | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"
    if cc:
        msg["Cc"] = cc
    if bcc:
        msg["Bcc"] = bcc
    return msg.as_bytes()


def _build_html_email(*, body_html: str = "<p>Hello</p>") -> bytes:
    msg = MIMEText(body_html, "html")
    msg["Subject"] = "HTML Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<html-001@example.com>"
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
    message_id: str = "<multi-001@example.com>",
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def html_eml_bytes() -> bytes:
    return _build_html_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )


# ------------------------------------------------------------------
# Mailbox double
# ------------------------------------------------------------------


def _make_mock_client(
    messages: dict[str, bytes] | None = None,
    *,
    search_result: list[str] | None = None,
    fetch_errors: set[str] | None = None,
) -> AsyncMock:
    """Create an AsyncImapClient double backed by an in-memory mailbox.

    ``messages`` maps UID → raw bytes; the sequence number of each
    message is its position in the mapping (1-based).
    """
    messages = messages or {}
    fetch_errors = fetch_errors or set()
    seqnos = {uid: i for i, uid in enumerate(messages, start=1)}

    client = AsyncMock(spec=AsyncImapClient)
    client.connect.return_value = None
    client.disconnect.return_value = None
    client.is_connected.return_value = True
    client.poll_activity.return_value = []
    client.open_mailbox.return_value = MailboxInfo(
        name="INBOX",
        read_only=False,
        exists=len(messages),
        uid_validity=42,
        uid_next=len(messages) + 1,
        flags=["\\Seen", "\\Answered"],
    )
    client.search.return_value = (
        list(messages) if search_result is None else list(search_result)
    )

    async def fetch(uid: str, mark_seen: bool = False) -> FetchedMessage:
        if uid in fetch_errors or uid not in messages:
            raise FetchError(uid, f"fetch of uid {uid} failed")
        return FetchedMessage(uid=uid, seqno=seqnos[uid], raw_bytes=messages[uid])

    client.fetch.side_effect = fetch
    return client


@pytest.fixture
def mock_client_factory():
    """Factory for in-memory AsyncImapClient doubles."""
    return _make_mock_client
