"""Change notification sources that trigger sync runs.

Local folders are watched with watchfiles (debounced inotify/FSEvents);
remote drives have no push channel here and are polled on an interval.
Either way the watcher only signals "something changed": the next scan
works out what.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Collection

from watchfiles import Change, awatch

from docsync.utils.files import has_accepted_extension, is_hidden, normalize_extensions

LOGGER = logging.getLogger(__name__)

OnChange = Callable[[], Awaitable[None]]


class LocalChangeWatcher:
    def __init__(
        self,
        root: Path | str,
        extensions: Collection[str],
        *,
        recursive: bool = True,
        debounce_ms: int = 1600,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.extensions = normalize_extensions(extensions)
        self.recursive = recursive
        self.debounce_ms = debounce_ms

    def is_relevant(self, change: Change, path: str) -> bool:
        candidate = Path(path)
        if is_hidden(candidate, self.root):
            return False
        if not self.recursive and candidate.parent != self.root:
            return False
        if change == Change.deleted and not candidate.suffix:
            # could be a removed directory; its files are gone too
            return True
        return has_accepted_extension(candidate, self.extensions)

    async def run(self, on_change: OnChange, stop_event: asyncio.Event) -> None:
        LOGGER.info("Watching %s for changes", self.root)
        async for changes in awatch(
            self.root,
            watch_filter=self.is_relevant,
            debounce=self.debounce_ms,
            recursive=self.recursive,
            stop_event=stop_event,
            ignore_permission_denied=True,
        ):
            LOGGER.info("Detected %d change(s) under %s", len(changes), self.root)
            await on_change()


class PollingChangeWatcher:
    """Fires ``on_change`` every ``interval`` seconds until stopped."""

    def __init__(self, interval: float = 30.0) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval

    async def run(self, on_change: OnChange, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                LOGGER.debug("Poll interval elapsed; requesting sync")
                await on_change()
