"""Watcher configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
All models are frozen: the configuration is built once at startup and
only read afterwards.
"""

from __future__ import annotations

import json
from typing import Annotated, Any

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode


class ImapConfig(BaseSettings):
    """IMAP server connection settings."""

    model_config = {"env_prefix": "IMAP_", "frozen": True}

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use an implicit SSL/TLS connection")
    starttls: bool = Field(
        default=False,
        description="Upgrade a plain connection with STARTTLS (ignored when use_ssl is set)",
    )
    username: str = Field(description="IMAP login username")
    password: SecretStr | None = Field(default=None, description="IMAP login password")
    xoauth2: SecretStr | None = Field(
        default=None,
        description="OAuth2 access token; enables XOAUTH2 instead of LOGIN",
    )
    tls_verify: bool = Field(default=True, description="Verify the server certificate")
    tls_ca_file: str | None = Field(default=None, description="CA bundle for verification")
    conn_timeout_seconds: float | None = Field(
        default=None,
        description="Socket timeout while connecting",
    )
    auth_timeout_seconds: float | None = Field(
        default=None,
        description="Socket timeout while authenticating",
    )
    debug: int = Field(default=0, description="imaplib debug level (0 disables)")
    poll_interval_seconds: float = Field(
        default=30.0,
        description="Seconds between activity checks while watching",
    )

    @model_validator(mode="after")
    def _require_credentials(self) -> ImapConfig:
        if self.password is None and self.xoauth2 is None:
            raise ValueError("either password or xoauth2 must be set")
        return self


class AttachmentOptions(BaseSettings):
    """Where and how decoded attachments are written to disk."""

    model_config = {"env_prefix": "ATTACHMENTS_", "frozen": True}

    directory: str = Field(
        default="",
        description="Storage root for attachment token directories (empty = cwd)",
    )
    stream: bool = Field(
        default=False,
        description="Expose attachments as streams instead of buffered bytes",
    )


class DecoderOptions(BaseSettings):
    """Options forwarded to the MIME decoder."""

    model_config = {"env_prefix": "DECODER_", "frozen": True}

    skip_text_to_html: bool = Field(
        default=False,
        description="Do not render the plain-text body as HTML",
    )
    skip_html_to_text: bool = Field(
        default=False,
        description="Do not derive a plain-text body from HTML-only messages",
    )
    max_html_length_to_parse: int | None = Field(
        default=None,
        description="HTML bodies longer than this are not converted to text",
    )


class RetryConfig(BaseSettings):
    """Reconnect backoff used by the process runner."""

    model_config = {"env_prefix": "RETRY_", "frozen": True}

    max_attempts: int = Field(default=5, description="Maximum connection attempts per outage")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=60.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class WatcherConfig(BaseSettings):
    """Root configuration for one watched mailbox.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "MAILWATCH_", "frozen": True}

    imap: ImapConfig = Field(default_factory=ImapConfig)
    mailbox: str = Field(default="INBOX", description="Mailbox to open and watch")
    search_filter: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["UNSEEN"],
        description="IMAP search tokens used to discover messages",
    )
    mark_seen: bool = Field(
        default=False,
        description="Let the server flag fetched messages as \\Seen",
    )
    fetch_unread_on_start: bool = Field(
        default=False,
        description="Run one discovery cycle as soon as the mailbox is open",
    )
    attachments: bool = Field(default=False, description="Persist decoded attachments")
    attachment_options: AttachmentOptions = Field(default_factory=AttachmentOptions)
    decoder: DecoderOptions = Field(default_factory=DecoderOptions)
    max_concurrent_messages: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on messages processed at once (None = unbounded)",
    )

    health_port: int = Field(default=8080, description="Port for health probe endpoints")
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_level: str = Field(default="INFO", description="Root log level")
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("search_filter", mode="before")
    @classmethod
    def _normalize_filter(cls, value: Any) -> Any:
        """Accept a JSON list, or a single token such as ``UNSEEN``."""
        if isinstance(value, str):
            if value.lstrip().startswith("["):
                return json.loads(value)
            return [value]
        return value

    @field_validator("search_filter")
    @classmethod
    def _filter_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("search_filter needs at least one token")
        return value

    @property
    def stream_attachments(self) -> bool:
        """Streaming decode is only used when attachments are persisted."""
        return self.attachments and self.attachment_options.stream
