"""Pipeline observability sink.

Every stage reports what happened to the records it handled through an
injected :class:`EventSink` rather than through module globals, so callers can
observe a run (and tests can assert on it) without scraping logs.

:class:`LoggingEventSink` is the production default: it writes structured log
lines and increments the Prometheus counters below.  :class:`RecordingEventSink`
keeps every event in memory.

Prometheus metrics
------------------
``redactstream_files_total{status}``
    Files fully read (``status="ok"``) or abandoned (``status="failed"``).
``redactstream_chunks_redacted_total``
    Chunks returned by the redaction service.
``redactstream_request_bytes_total``
    Serialized size of successful redaction requests.
``redactstream_chunks_failed_total{reason}``
    Chunks dropped after redaction failed (``reason`` is ``"retryable"``,
    ``"non_retryable"`` or ``"timeout"``).
``redactstream_chunks_late_total``
    Chunks discarded by the window grouper.
``redactstream_shards_written_total``
    Output shards written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from prometheus_client import Counter

from redactstream.core.models import (
    ChunkFailure,
    FileHandle,
    FileResult,
    RedactedChunk,
    WindowedGroup,
)

logger = logging.getLogger(__name__)

files_total = Counter(
    "redactstream_files_total",
    "Input files processed, by outcome",
    ["status"],
)
chunks_redacted_total = Counter(
    "redactstream_chunks_redacted_total",
    "Chunks successfully redacted",
)
request_bytes_total = Counter(
    "redactstream_request_bytes_total",
    "Total serialized size of successful redaction requests in bytes",
)
chunks_failed_total = Counter(
    "redactstream_chunks_failed_total",
    "Chunks dropped because redaction failed",
    ["reason"],
)
chunks_late_total = Counter(
    "redactstream_chunks_late_total",
    "Redacted chunks discarded by the window grouper",
)
shards_written_total = Counter(
    "redactstream_shards_written_total",
    "Output shards written",
)


class EventSink(Protocol):
    """Receives pipeline events.  Implementations must not raise."""

    def on_file_discovered(self, handle: FileHandle) -> None:
        ...

    def on_file_done(self, result: FileResult) -> None:
        ...

    def on_redacted(self, chunk: RedactedChunk, request_bytes: int) -> None:
        ...

    def on_chunk_failed(self, failure: ChunkFailure) -> None:
        ...

    def on_late_chunk(self, chunk: RedactedChunk, reason: str) -> None:
        ...

    def on_group_written(self, group: WindowedGroup, path: str) -> None:
        ...


class LoggingEventSink:
    """Default :class:`EventSink`: log lines plus Prometheus counters."""

    def on_file_discovered(self, handle: FileHandle) -> None:
        logger.info(
            "Discovered file: filename=%s resource=%s size=%d compression=%s",
            handle.filename,
            handle.resource_id,
            handle.size_bytes,
            handle.compression,
        )

    def on_file_done(self, result: FileResult) -> None:
        if result.ok:
            files_total.labels(status="ok").inc()
            logger.info("Read file: filename=%s chunks=%d", result.filename, result.chunks)
        else:
            files_total.labels(status="failed").inc()
            logger.error(
                "File failed: filename=%s chunks_before_failure=%d error=%s",
                result.filename,
                result.chunks,
                result.error,
            )

    def on_redacted(self, chunk: RedactedChunk, request_bytes: int) -> None:
        chunks_redacted_total.inc()
        request_bytes_total.inc(request_bytes)

    def on_chunk_failed(self, failure: ChunkFailure) -> None:
        chunks_failed_total.labels(reason=failure.reason.split(":", 1)[0]).inc()
        logger.error(
            "Dropped chunk after %d attempt(s): filename=%s index=%d reason=%s",
            failure.attempts,
            failure.chunk.filename,
            failure.chunk.index,
            failure.reason,
        )

    def on_late_chunk(self, chunk: RedactedChunk, reason: str) -> None:
        chunks_late_total.inc()
        logger.warning(
            "Discarded %s chunk: filename=%s index=%d",
            reason,
            chunk.filename,
            chunk.index,
        )

    def on_group_written(self, group: WindowedGroup, path: str) -> None:
        shards_written_total.inc()
        logger.info(
            "Wrote shard: filename=%s window=%s texts=%d path=%s",
            group.filename,
            group.window.label(),
            len(group.texts),
            path,
        )


@dataclass
class RecordingEventSink:
    """In-memory :class:`EventSink` that keeps ``(event_name, payload)`` tuples."""

    events: list[tuple[str, Any]] = field(default_factory=list)

    def on_file_discovered(self, handle: FileHandle) -> None:
        self.events.append(("file_discovered", handle))

    def on_file_done(self, result: FileResult) -> None:
        self.events.append(("file_done", result))

    def on_redacted(self, chunk: RedactedChunk, request_bytes: int) -> None:
        self.events.append(("redacted", (chunk, request_bytes)))

    def on_chunk_failed(self, failure: ChunkFailure) -> None:
        self.events.append(("chunk_failed", failure))

    def on_late_chunk(self, chunk: RedactedChunk, reason: str) -> None:
        self.events.append(("late_chunk", (chunk, reason)))

    def on_group_written(self, group: WindowedGroup, path: str) -> None:
        self.events.append(("group_written", (group, path)))

    def of(self, name: str) -> list[Any]:
        """Return the payloads of every event called *name*, in order."""
        return [payload for event, payload in self.events if event == name]
