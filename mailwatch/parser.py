"""Full MIME decoder. Walks the entire message to extract headers, text
and HTML bodies, and attachments.
"""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
import hashlib
import html
import io
import re
from collections.abc import Iterator
from html.parser import HTMLParser
from typing import Any, BinaryIO

from .config import DecoderOptions
from .errors import DecodeError
from .models import Attachment, DecodedMessage

_URL_RE = re.compile(r"\b(?:https?://|www\.)[^\s<>\"]+[^\s<>\".,;:!?)\]]")
_PARAGRAPH_RE = re.compile(r"\r?\n[ \t]*\r?\n")
_BLOCK_TAGS = frozenset(
    {"p", "div", "br", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6", "table", "blockquote"}
)


class MimeParser:
    """Stateless decoder: raw RFC 822 bytes (or a binary stream) → DecodedMessage."""

    def __init__(self, options: DecoderOptions | None = None) -> None:
        self._options = options or DecoderOptions()

    def parse(
        self,
        source: bytes | BinaryIO,
        *,
        stream_attachments: bool = False,
        uid: str | None = None,
    ) -> DecodedMessage:
        try:
            return self._parse(source, stream_attachments)
        except Exception as exc:
            raise DecodeError(uid, f"could not decode message (uid {uid}): {exc}") from exc

    def _parse(self, source: bytes | BinaryIO, stream_attachments: bool) -> DecodedMessage:
        if isinstance(source, (bytes, bytearray)):
            msg = email.message_from_bytes(bytes(source), policy=email.policy.default)
        else:
            msg = email.message_from_binary_file(source, policy=email.policy.default)

        if not msg.keys():
            raise ValueError("message has no headers")

        text, body_html = self._extract_bodies(msg)
        attachments = self._extract_attachments(msg, stream_attachments)

        if text is None and body_html is not None and not self._options.skip_html_to_text:
            limit = self._options.max_html_length_to_parse
            if limit is None or len(body_html) <= limit:
                text = html_to_text(body_html)

        text_as_html = None
        if text is not None and not self._options.skip_text_to_html:
            text_as_html = text_to_html(text)

        return DecodedMessage(
            message_id=str(msg.get("Message-ID", "")),
            subject=str(msg.get("Subject", "")),
            from_address=str(msg.get("From", "")),
            to_addresses=self._parse_address_list(msg.get("To")),
            cc_addresses=self._parse_address_list(msg.get("Cc")),
            bcc_addresses=self._parse_address_list(msg.get("Bcc")),
            date=str(msg.get("Date", "")),
            text=text,
            html=body_html,
            text_as_html=text_as_html,
            headers=self._collect_headers(msg),
            attachments=attachments,
        )

    def _collect_headers(self, msg: email.message.Message) -> dict[str, Any]:
        """Lower-cased header names; repeated headers become lists."""
        headers: dict[str, Any] = {}
        for key, value in msg.items():
            name = key.lower()
            if name in headers:
                existing = headers[name]
                if isinstance(existing, list):
                    existing.append(str(value))
                else:
                    headers[name] = [existing, str(value)]
            else:
                headers[name] = str(value)
        return headers

    def _extract_bodies(self, msg: email.message.Message) -> tuple[str | None, str | None]:
        """Return the first inline (plain_text, html_text) of *msg* itself."""
        body_text: str | None = None
        body_html: str | None = None

        for part in _own_parts(msg):
            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue

            disposition = str(part.get("Content-Disposition", ""))
            if "attachment" in disposition or part.get_filename():
                continue

            payload = part.get_content()
            if content_type == "text/plain" and isinstance(payload, str) and body_text is None:
                body_text = payload
            elif content_type == "text/html" and isinstance(payload, str) and body_html is None:
                body_html = payload

        return body_text, body_html

    def _extract_attachments(
        self,
        msg: email.message.Message,
        stream_attachments: bool,
    ) -> list[Attachment]:
        """Collect attachments in message order.

        An attached message (``message/rfc822`` and friends) is kept whole,
        as its serialized bytes.
        """
        attachments: list[Attachment] = []

        for part in _own_parts(msg):
            disposition = str(part.get("Content-Disposition", ""))
            filename = part.get_filename()
            is_message = part.get_content_maintype() == "message"

            # Attachment: Content-Disposition: attachment, a named part, or an attached message
            if "attachment" not in disposition and not filename and not is_message:
                continue

            if is_message and part.is_multipart():
                payload = part.get_payload(0).as_bytes()
            else:
                payload = part.get_payload(decode=True)
            if not isinstance(payload, bytes):
                continue

            content_id = part.get("Content-ID")
            attachment = Attachment(
                filename=filename or "unnamed",
                content_type=part.get_content_type(),
                size=len(payload),
                content_id=str(content_id).strip("<>") if content_id else None,
                checksum=hashlib.md5(payload).hexdigest(),
            )
            if stream_attachments:
                attachment.stream = io.BytesIO(payload)
            else:
                attachment.content = payload
            attachments.append(attachment)

        return attachments

    def _parse_address_list(self, header_value: Any) -> list[str]:
        if not header_value:
            return []
        return [addr for _, addr in email.utils.getaddresses([str(header_value)]) if addr]


def _own_parts(msg: email.message.Message) -> Iterator[email.message.Message]:
    """Yield the leaf parts of *msg* in order.

    Unlike ``Message.walk()`` this does not descend into attached
    messages: a ``message/*`` part is yielded as a single leaf.
    """
    if msg.get_content_maintype() == "multipart" and msg.is_multipart():
        for sub in msg.get_payload():
            yield from _own_parts(sub)
    else:
        yield msg


# ------------------------------------------------------------------
# Body rendering
# ------------------------------------------------------------------


def text_to_html(text: str) -> str:
    """Render plain text as simple HTML: escaped, linkified, paragraphs."""
    escaped = html.escape(text.strip(), quote=False)
    linked = _URL_RE.sub(_link, escaped)
    paragraphs = [p for p in _PARAGRAPH_RE.split(linked) if p.strip()]
    rendered = [p.replace("\r\n", "\n").replace("\n", "<br/>") for p in paragraphs]
    return "".join(f"<p>{p}</p>" for p in rendered)


def _link(match: re.Match[str]) -> str:
    url = match.group(0)
    href = url if "://" in url else f"http://{url}"
    return f'<a href="{href}">{url}</a>'


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.chunks: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in ("script", "style"):
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS:
            self.chunks.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in ("script", "style") and self._skip_depth:
            self._skip_depth -= 1
        elif tag in _BLOCK_TAGS:
            self.chunks.append("\n")

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self.chunks.append(data)


def html_to_text(body_html: str) -> str:
    """Strip tags from *body_html*, keeping block boundaries as line breaks."""
    extractor = _TextExtractor()
    extractor.feed(body_html)
    extractor.close()
    text = "".join(extractor.chunks)
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
