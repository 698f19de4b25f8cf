"""FileDiscoverer — continuous polling of object storage for new input files.

:class:`FileDiscoverer` lists a file pattern on a fixed interval and yields a
:class:`~redactstream.core.models.FileHandle` for every object it has not
already emitted during the current run.  Discovery never completes on its own;
it ends only when the caller sets the stop event (or a poll budget is used up).

**Failure policy**

* A transient listing failure (network error, throttling, any non-storage
  exception) is logged and retried on the next tick.
* A non-retryable :class:`~redactstream.services.storage.StorageError`
  (missing bucket, access denied) raises :class:`DiscoveryError`.

The dedup set lives in memory only, so a restarted run re-emits every file
that still matches the pattern.

Usage::

    discoverer = FileDiscoverer(store, "s3://incoming/*.txt", poll_interval=300)
    stop = asyncio.Event()
    async for handle in discoverer.watch(stop):
        ...
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from redactstream.core.events import EventSink, LoggingEventSink
from redactstream.core.models import FileHandle
from redactstream.services.storage import ObjectStore, StorageError, to_file_handle

logger = logging.getLogger(__name__)

#: Default polling interval in seconds.
DEFAULT_POLL_INTERVAL: float = 300.0


class DiscoveryError(Exception):
    """Raised when listing fails in a way retrying cannot fix."""


class FileDiscoverer:
    """Poll *pattern* on *store* and emit each newly matched file once.

    Args:
        store: Object store used for listing.
        pattern: Glob-style file pattern understood by *store*.
        poll_interval: Seconds between listing calls.  Defaults to
            :data:`DEFAULT_POLL_INTERVAL`.
        events: Sink notified for every discovered file.
    """

    def __init__(
        self,
        store: ObjectStore,
        pattern: str,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        events: Optional[EventSink] = None,
    ) -> None:
        self._store = store
        self._pattern = pattern
        self._poll_interval = poll_interval
        self._events = events or LoggingEventSink()
        self._seen: set[str] = set()

    @property
    def pattern(self) -> str:
        return self._pattern

    async def poll_once(self) -> list[FileHandle]:
        """Run one listing and return the handles not emitted before.

        Raises:
            :class:`DiscoveryError`: On a non-retryable storage failure.
            :class:`~redactstream.services.storage.StorageError`: On a
                retryable failure (the caller decides whether to retry).
        """
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.run_in_executor(None, self._store.list, self._pattern)
        except StorageError as exc:
            if not exc.retryable:
                raise DiscoveryError(f"cannot list {self._pattern!r}: {exc}") from exc
            raise

        new: list[FileHandle] = []
        for info in infos:
            if info.resource_id in self._seen:
                continue
            self._seen.add(info.resource_id)
            handle = to_file_handle(info)
            self._events.on_file_discovered(handle)
            new.append(handle)

        logger.debug(
            "FileDiscoverer poll: pattern=%s matched=%d new=%d",
            self._pattern,
            len(infos),
            len(new),
        )
        return new

    async def watch(
        self,
        stop: asyncio.Event,
        *,
        max_polls: Optional[int] = None,
    ) -> AsyncIterator[FileHandle]:
        """Yield newly discovered files until *stop* is set.

        Args:
            stop: Checked before every poll; setting it also cuts the sleep
                between polls short.
            max_polls: Stop after this many listing attempts.  ``None`` (the
                default) polls forever.

        Raises:
            :class:`DiscoveryError`: On a non-retryable listing failure.
        """
        polls = 0
        while not stop.is_set():
            polls += 1
            try:
                handles = await self.poll_once()
            except DiscoveryError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "FileDiscoverer: listing %s failed, retrying in %.0fs: %s",
                    self._pattern,
                    self._poll_interval,
                    exc,
                )
                handles = []

            for handle in handles:
                yield handle

            if max_polls is not None and polls >= max_polls:
                return
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
