"""Record types passed between the redaction pipeline stages.

Each stage owns the records it produces and hands them to the next stage by
value; all records are frozen dataclasses.  The ``filename`` field is carried
unchanged from :class:`FileHandle` through to :class:`WindowedGroup` because it
doubles as the grouping key and the output shard name.

Usage::

    from redactstream.core.models import Chunk, FileHandle

    handle = FileHandle(filename="a.txt", resource_id="s3://in/a.txt")
    chunk = Chunk(filename=handle.filename, text="SSN 123-45-6789 ok", index=0, timestamp=0.0)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

Compression = Literal["uncompressed", "gzip", "bzip2"]


@dataclass(frozen=True)
class FileHandle:
    """Reference to one discovered input object.

    Attributes:
        filename: Last path segment of *resource_id*; the pipeline key.
        resource_id: Store-specific identifier used to open the object
            (``s3://bucket/key`` or an absolute local path).
        size_bytes: Object size reported by the listing, ``-1`` if unknown.
        compression: Detected compression of the stored bytes.
    """

    filename: str
    resource_id: str
    size_bytes: int = -1
    compression: Compression = "uncompressed"


@dataclass(frozen=True)
class Chunk:
    """A bounded slice of one file's text, the unit of work for redaction.

    Chunk boundaries are raw byte-count cuts; they are not aligned to lines,
    sentences or multi-byte characters.

    Attributes:
        filename: Key of the source file.
        text: UTF-8 decoded, whitespace-trimmed content of the slice.
        index: 0-based position of the slice within its file.
        timestamp: Unix time at which the source file was opened for
            reading; shared by every chunk of the file and decides the window.
    """

    filename: str
    text: str
    index: int
    timestamp: float


@dataclass(frozen=True)
class RedactedChunk:
    """A :class:`Chunk` whose text has been through the redaction service."""

    filename: str
    text: str
    index: int
    timestamp: float

    @classmethod
    def from_chunk(cls, chunk: Chunk, text: str) -> "RedactedChunk":
        return cls(
            filename=chunk.filename,
            text=text,
            index=chunk.index,
            timestamp=chunk.timestamp,
        )


@dataclass(frozen=True, order=True)
class Window:
    """Half-open fixed window ``[start, end)`` in Unix seconds."""

    start: float
    end: float

    def label(self) -> str:
        """Return ``<start>-<end>`` as compact ISO-8601 UTC timestamps."""
        fmt = "%Y%m%dT%H%M%SZ"
        start = datetime.fromtimestamp(self.start, tz=timezone.utc).strftime(fmt)
        end = datetime.fromtimestamp(self.end, tz=timezone.utc).strftime(fmt)
        return f"{start}-{end}"


@dataclass(frozen=True)
class WindowedGroup:
    """All redacted texts of one file that fired together in one window.

    Attributes:
        filename: Key shared by every text in the group.
        window: The window the texts were assigned to.
        texts: Redacted texts ordered by chunk index.
        pane_index: Firing number of this (window, key) pane; always ``0``
            under the default single-firing trigger.
    """

    filename: str
    window: Window
    texts: tuple[str, ...]
    pane_index: int = 0


@dataclass(frozen=True)
class ChunkFailure:
    """A chunk that was dropped because redaction did not succeed."""

    chunk: Chunk
    reason: str
    attempts: int


@dataclass
class FileResult:
    """Outcome of reading one input file.

    ``error`` is ``None`` when every chunk was read; otherwise it holds a
    human-readable reason and ``chunks`` counts what was emitted before the
    failure.
    """

    filename: str
    resource_id: str
    chunks: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunSummary:
    """Counters accumulated over one pipeline run."""

    files_discovered: int = 0
    chunks_read: int = 0
    chunks_redacted: int = 0
    chunks_failed: int = 0
    chunks_late: int = 0
    groups_written: int = 0
    written_paths: list[str] = field(default_factory=list)
    file_results: list[FileResult] = field(default_factory=list)

    @property
    def files_ok(self) -> int:
        return sum(1 for r in self.file_results if r.ok)

    @property
    def files_failed(self) -> int:
        return sum(1 for r in self.file_results if not r.ok)
