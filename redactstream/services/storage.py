"""Object storage access for the redaction pipeline.

:class:`ObjectStore` is the narrow storage capability the pipeline depends on:

1. **List** — enumerate objects matching a glob-style pattern.
2. **Open** — return a readable binary stream for one object.
3. **Write** — persist a UTF-8 text object so that readers never observe a
   partial write.

Two backends are provided:

* :class:`LocalObjectStore` — local filesystem paths (development, tests and
  mounted volumes).  Writes go to a temporary file in the destination
  directory followed by ``os.replace`` so the final name appears atomically.
* :class:`~redactstream.services.s3_storage.S3ObjectStore` — Amazon S3 (or
  any S3-compatible endpoint) via boto3.

Pattern syntax is the same for both backends: ``*`` matches within one path
segment, ``**`` matches across segments and ``?`` matches one character.

Usage::

    from redactstream.services.storage import open_store

    store = open_store("/data/incoming/*.txt")
    for info in store.list("/data/incoming/*.txt"):
        with store.open(info.resource_id) as fh:
            head = fh.read(100)
"""

from __future__ import annotations

import bz2
import contextlib
import glob
import gzip
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Iterator

from redactstream.core.models import Compression, FileHandle

if TYPE_CHECKING:
    from redactstream.config import Settings

logger = logging.getLogger(__name__)

_S3_SCHEME = "s3://"


class StorageError(Exception):
    """Raised when an object store operation fails.

    Attributes:
        retryable: ``True`` when the failure is transient (network blip,
            throttling, 5xx) and the same call may succeed later; ``False``
            for configuration errors such as a missing bucket or denied
            access.

    The original cause is always chained via ``__cause__``.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class ObjectInfo:
    """One entry returned by :meth:`ObjectStore.list`."""

    resource_id: str
    size_bytes: int = -1


class ObjectStore(ABC):
    """Abstract storage capability used by discovery, reading and writing."""

    @abstractmethod
    def list(self, pattern: str) -> list[ObjectInfo]:
        """Return every object currently matching *pattern*.

        Raises:
            :class:`StorageError`: If the listing call fails.
        """

    @abstractmethod
    def open(self, resource_id: str) -> IO[bytes]:
        """Open *resource_id* for streaming reads.

        The caller owns the returned stream and must close it.

        Raises:
            :class:`StorageError`: If the object cannot be opened.
        """

    @abstractmethod
    def write_text(self, path: str, content: str) -> None:
        """Write *content* as UTF-8 to *path*, replacing any existing object.

        Raises:
            :class:`StorageError`: If the write fails.
        """

    def join(self, root: str, name: str) -> str:
        """Return the location of object *name* under *root*."""
        return f"{root.rstrip('/')}/{name}"


class LocalObjectStore(ObjectStore):
    """Filesystem-backed :class:`ObjectStore`."""

    def list(self, pattern: str) -> list[ObjectInfo]:
        try:
            matches = sorted(glob.glob(pattern, recursive=True))
            return [
                ObjectInfo(resource_id=os.path.abspath(p), size_bytes=os.path.getsize(p))
                for p in matches
                if os.path.isfile(p)
            ]
        except OSError as exc:
            raise StorageError(f"listing {pattern!r} failed: {exc}") from exc

    def open(self, resource_id: str) -> IO[bytes]:
        try:
            return open(resource_id, "rb")
        except FileNotFoundError as exc:
            raise StorageError(f"{resource_id} does not exist", retryable=False) from exc
        except OSError as exc:
            raise StorageError(f"cannot open {resource_id}: {exc}") from exc

    def write_text(self, path: str, content: str) -> None:
        directory = os.path.dirname(os.path.abspath(path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".part")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(content)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as exc:
            raise StorageError(f"writing {path} failed: {exc}") from exc
        logger.debug(
            "LocalObjectStore.write_text: path=%s bytes=%d",
            path,
            len(content.encode("utf-8")),
        )

    def join(self, root: str, name: str) -> str:
        return os.path.join(root, name)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def filename_of(resource_id: str) -> str:
    """Return the last path segment of *resource_id*."""
    return resource_id.rstrip("/").replace("\\", "/").rsplit("/", 1)[-1]


def detect_compression(resource_id: str) -> Compression:
    """Guess the compression of an object from its extension."""
    lower = resource_id.lower()
    if lower.endswith(".gz") or lower.endswith(".gzip"):
        return "gzip"
    if lower.endswith(".bz2"):
        return "bzip2"
    return "uncompressed"


def to_file_handle(info: ObjectInfo) -> FileHandle:
    """Build the pipeline :class:`FileHandle` for a listed object."""
    return FileHandle(
        filename=filename_of(info.resource_id),
        resource_id=info.resource_id,
        size_bytes=info.size_bytes,
        compression=detect_compression(info.resource_id),
    )


@contextlib.contextmanager
def open_stream(store: ObjectStore, handle: FileHandle) -> Iterator[IO[bytes]]:
    """Open *handle* through *store*, transparently decompressing it.

    Both the decompressor and the underlying store stream are closed when
    the context exits, whether normally or through an exception.
    """
    with contextlib.closing(store.open(handle.resource_id)) as raw:
        if handle.compression == "gzip":
            with gzip.GzipFile(fileobj=raw, mode="rb") as fh:
                yield fh  # type: ignore[misc]
        elif handle.compression == "bzip2":
            with bz2.BZ2File(raw, mode="rb") as fh:
                yield fh  # type: ignore[misc]
        else:
            yield raw


def open_store(location: str, settings: "Settings | None" = None) -> ObjectStore:
    """Return the :class:`ObjectStore` able to serve *location*.

    ``s3://`` URLs get an :class:`~redactstream.services.s3_storage.S3ObjectStore`
    configured from *settings* (region, explicit keys, endpoint); anything
    else is treated as a local path.
    """
    if location.startswith(_S3_SCHEME):
        from redactstream.services.s3_storage import S3ObjectStore

        if settings is None:
            return S3ObjectStore()
        return S3ObjectStore(
            region_name=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            endpoint_url=settings.s3_endpoint_url,
        )
    return LocalObjectStore()
