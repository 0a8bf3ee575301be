"""Entry point for the mailbox watcher.

Usage::

    python -m mailwatch        # configured from IMAP_*, MAILWATCH_*, ... env vars
"""

from __future__ import annotations

import asyncio
import sys

from pydantic import ValidationError
from pydantic_settings import SettingsError


def main() -> None:
    from .config import WatcherConfig
    from .runner import WatcherRunner

    try:
        config = WatcherConfig()
    except (ValidationError, SettingsError) as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        sys.exit(1)

    asyncio.run(WatcherRunner(config).run())


if __name__ == "__main__":
    main()
