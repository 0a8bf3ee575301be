"""On-disk storage for decoded attachments.

Each attachment gets its own directory named by a random token, so two
attachments with the same filename never collide.  All filesystem calls
are wrapped with ``asyncio.to_thread()`` to avoid blocking.
"""

from __future__ import annotations

import asyncio
import secrets
import shutil
from pathlib import Path, PurePosixPath, PureWindowsPath

import structlog

from .errors import DirectoryCreateError, FileWriteError
from .models import Attachment, AttachmentReference

logger = structlog.get_logger()

TOKEN_BYTES = 28
_CHUNK_SIZE = 64 * 1024


class AttachmentStore:
    """Write attachments to ``<directory>/<token>/<filename>``."""

    def __init__(self, directory: str | Path = "") -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    async def persist(
        self,
        attachment: Attachment,
        directory: str | Path | None = None,
    ) -> AttachmentReference:
        """Persist one attachment and return its reference.

        The reference is only returned once the file has been completely
        written.
        """
        root = Path(directory) if directory is not None else self._directory
        token = generate_token()
        filename = safe_filename(attachment.filename)
        token_dir = root / token

        try:
            await asyncio.to_thread(token_dir.mkdir, parents=False, exist_ok=False)
        except OSError as exc:
            raise DirectoryCreateError(
                attachment.filename,
                str(token_dir),
                f"could not create attachment directory {token_dir}: {exc}",
            ) from exc

        target = token_dir / filename
        try:
            size = await asyncio.to_thread(_write_attachment, target, attachment)
        except Exception as exc:
            raise FileWriteError(
                attachment.filename,
                str(target),
                f"could not write attachment {target}: {exc}",
            ) from exc

        ref = AttachmentReference(token=token, filename=filename)
        logger.debug("attachment_persisted", path=ref.path, size=size)
        return ref


def generate_token() -> str:
    """Return a fresh hex token backed by ``TOKEN_BYTES`` of CSPRNG output."""
    return secrets.token_hex(TOKEN_BYTES)


def safe_filename(name: str) -> str:
    """Drop directory components so the file stays inside its token directory."""
    name = name.replace("\x00", "")
    base = PureWindowsPath(PurePosixPath(name).name).name
    if base in ("", ".", ".."):
        return "unnamed"
    return base


def _write_attachment(target: Path, attachment: Attachment) -> int:
    with target.open("xb") as fh:
        if attachment.stream is not None:
            try:
                shutil.copyfileobj(attachment.stream, fh, _CHUNK_SIZE)
            finally:
                attachment.stream.close()
        else:
            fh.write(attachment.content or b"")
        return fh.tell()
