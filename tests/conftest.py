"""Shared pytest configuration and fixtures for redactstream tests.

Sets required environment variables before any redactstream module is
imported, so that ``redactstream.config.get_settings()`` succeeds in the test
environment, and provides in-memory stand-ins for the object store and the
redaction backend so no test touches S3 or Google Cloud.
"""
from __future__ import annotations

import fnmatch
import io
import os
from typing import IO, Callable, Iterable

import pytest

# Set required env vars before any redactstream module is imported
os.environ.setdefault("PROJECT_ID", "test-project")
os.environ.setdefault(
    "DEIDENTIFY_TEMPLATE_NAME", "projects/test-project/deidentifyTemplates/tokenize"
)
os.environ.setdefault("INSPECT_TEMPLATE_NAME", "projects/test-project/inspectTemplates/pii")
os.environ.setdefault("BUCKET_URL", "s3://test-input/*.txt")
os.environ.setdefault("OUTPUT_PATH", "s3://test-output/redacted")

from redactstream.core.adapters.redaction_service import (  # noqa: E402
    RedactionBackendError,
    RedactionResult,
    RedactionService,
)
from redactstream.services.storage import ObjectInfo, ObjectStore, StorageError  # noqa: E402


class TrackingStream(io.BytesIO):
    """BytesIO that remembers it was closed and can fail after N reads."""

    def __init__(self, data: bytes, *, fail_after_reads: int | None = None) -> None:
        super().__init__(data)
        self.closed_by_reader = False
        self._reads = 0
        self._fail_after = fail_after_reads

    def read(self, size: int | None = -1) -> bytes:  # type: ignore[override]
        if self._fail_after is not None and self._reads >= self._fail_after:
            raise OSError("connection reset by peer")
        self._reads += 1
        return super().read(size)

    def close(self) -> None:
        self.closed_by_reader = True
        super().close()


class FakeObjectStore(ObjectStore):
    """In-memory :class:`ObjectStore` keyed by ``mem://`` resource ids."""

    def __init__(self, objects: dict[str, bytes] | None = None) -> None:
        self.objects: dict[str, bytes] = dict(objects or {})
        self.writes: dict[str, str] = {}
        self.write_calls: list[str] = []
        self.list_calls = 0
        self.list_errors: list[Exception] = []
        self.open_errors: dict[str, Exception] = {}
        self.read_failures: dict[str, int] = {}
        self.write_failures = 0
        self.streams: list[TrackingStream] = []

    def add(self, resource_id: str, data: bytes) -> None:
        self.objects[resource_id] = data

    def list(self, pattern: str) -> list[ObjectInfo]:
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        return [
            ObjectInfo(resource_id=rid, size_bytes=len(data))
            for rid, data in sorted(self.objects.items())
            if fnmatch.fnmatchcase(rid, pattern)
        ]

    def open(self, resource_id: str) -> IO[bytes]:
        if resource_id in self.open_errors:
            raise self.open_errors[resource_id]
        if resource_id not in self.objects:
            raise StorageError(f"{resource_id} does not exist", retryable=False)
        stream = TrackingStream(
            self.objects[resource_id],
            fail_after_reads=self.read_failures.get(resource_id),
        )
        self.streams.append(stream)
        return stream

    def write_text(self, path: str, content: str) -> None:
        self.write_calls.append(path)
        if self.write_failures > 0:
            self.write_failures -= 1
            raise StorageError(f"simulated write failure for {path}")
        self.writes[path] = content


class FakeRedactionService(RedactionService):
    """Scriptable :class:`RedactionService`.

    *transform* maps input text to redacted text (identity by default).
    ``failures[text]`` is a list of exceptions raised, one per call, before
    the text is redacted successfully.
    """

    def __init__(self, transform: Callable[[str], str] | None = None) -> None:
        self._transform = transform or (lambda text: text)
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[str] = []

    def fail(self, text: str, errors: Iterable[Exception]) -> None:
        self.failures[text] = list(errors)

    async def deidentify(self, text: str) -> RedactionResult:
        self.calls.append(text)
        pending = self.failures.get(text)
        if pending:
            raise pending.pop(0)
        return RedactionResult(
            text=self._transform(text),
            request_bytes=len(text.encode("utf-8")) + 96,
        )

    async def is_available(self) -> bool:
        return True

    def backend_name(self) -> str:
        return "fake"


def transient(message: str = "service unavailable") -> RedactionBackendError:
    return RedactionBackendError(message, retryable=True)


def permanent(message: str = "invalid template") -> RedactionBackendError:
    return RedactionBackendError(message, retryable=False)


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def service() -> FakeRedactionService:
    return FakeRedactionService()


@pytest.fixture
def make_service() -> Callable[..., FakeRedactionService]:
    return FakeRedactionService


@pytest.fixture
def errors():
    """Factories for retryable / non-retryable backend errors."""

    class _Errors:
        transient = staticmethod(transient)
        permanent = staticmethod(permanent)

    return _Errors
