"""ChunkedReader — stream one input file as fixed-size text chunks.

The reader opens the file through the object store, fills a buffer of
``batch_size`` bytes at a time and yields each filled buffer as a
:class:`~redactstream.core.models.Chunk`: the filled bytes are decoded as
UTF-8 (malformed sequences, including characters cut in half by the buffer
boundary, become U+FFFD) and stripped of leading and trailing whitespace.
Every chunk of a file carries the time the file was opened, so all of a
file's chunks fall into the same window.

The stream is always released: after the last buffer, after a read error and
when the consumer abandons the generator early.

**Errors**

* :class:`StreamOpenError` — the object could not be opened.  Logged at
  ERROR; the orchestrator decides whether it ends the run.
* :class:`StreamReadError` — a read failed part-way through.  Only the
  affected file is abandoned.

A zero-byte file yields no chunks and is not an error.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import IO, AsyncIterator, Callable, Iterator

from redactstream.core.models import Chunk, FileHandle
from redactstream.services.storage import ObjectStore, open_stream

logger = logging.getLogger(__name__)

#: Default read buffer capacity in bytes.
DEFAULT_BATCH_SIZE: int = 51200


class StreamOpenError(Exception):
    """Raised when an input file cannot be opened."""

    def __init__(self, handle: FileHandle, original: Exception) -> None:
        super().__init__(f"failed to open {handle.resource_id}: {original}")
        self.handle = handle
        self.original = original


class StreamReadError(Exception):
    """Raised when reading an already opened input file fails."""

    def __init__(self, handle: FileHandle, chunks_read: int, original: Exception) -> None:
        super().__init__(
            f"read failed for {handle.resource_id} after {chunks_read} chunk(s): {original}"
        )
        self.handle = handle
        self.chunks_read = chunks_read
        self.original = original


def _fill(stream: IO[bytes], size: int) -> bytes:
    """Read up to *size* bytes, looping over short reads until full or EOF."""
    parts: list[bytes] = []
    remaining = size
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


class ChunkedReader:
    """Split files into chunks of at most *batch_size* bytes.

    Args:
        store: Object store the files are opened from.
        batch_size: Buffer capacity in bytes.  Defaults to
            :data:`DEFAULT_BATCH_SIZE`.
        clock: Returns the current Unix time; read once per file when it is
            opened and stamped on every chunk of that file.
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._store = store
        self._batch_size = batch_size
        self._clock = clock

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def iter_chunks(self, handle: FileHandle) -> Iterator[Chunk]:
        """Yield the chunks of *handle* in file order.

        Raises:
            :class:`StreamOpenError`: If the file cannot be opened.
            :class:`StreamReadError`: If a read fails mid-stream.
        """
        with contextlib.ExitStack() as stack:
            try:
                stream = stack.enter_context(open_stream(self._store, handle))
            except Exception as exc:
                logger.error("Failed to open file %s: %s", handle.resource_id, exc)
                raise StreamOpenError(handle, exc) from exc

            opened_at = self._clock()
            index = 0
            while True:
                try:
                    data = _fill(stream, self._batch_size)
                except Exception as exc:
                    raise StreamReadError(handle, index, exc) from exc
                if not data:
                    break
                yield Chunk(
                    filename=handle.filename,
                    text=data.decode("utf-8", errors="replace").strip(),
                    index=index,
                    timestamp=opened_at,
                )
                index += 1

        logger.debug(
            "ChunkedReader: finished filename=%s chunks=%d", handle.filename, index
        )

    async def stream(self, handle: FileHandle) -> AsyncIterator[Chunk]:
        """Async variant of :meth:`iter_chunks`.

        Each blocking open/read step runs in the default thread-pool executor
        so the event loop keeps serving other files.
        """
        loop = asyncio.get_running_loop()
        chunks = self.iter_chunks(handle)
        sentinel = object()
        try:
            while True:
                chunk = await loop.run_in_executor(None, next, chunks, sentinel)
                if chunk is sentinel:
                    return
                yield chunk  # type: ignore[misc]
        finally:
            # ValueError: a cancelled read is still running in the executor;
            # the generator is then closed when it is garbage collected.
            with contextlib.suppress(ValueError):
                chunks.close()
