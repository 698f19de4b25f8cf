"""Unit tests for redactstream/core/discovery.py."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from redactstream.core.discovery import DiscoveryError, FileDiscoverer
from redactstream.core.events import RecordingEventSink
from redactstream.services.s3_storage import S3ObjectStore
from redactstream.services.storage import StorageError

PATTERN = "mem://in/*.txt"


def _discoverer(store, events=None, poll_interval: float = 0.01) -> FileDiscoverer:
    return FileDiscoverer(
        store, PATTERN, poll_interval=poll_interval, events=events or RecordingEventSink()
    )


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_emits_matching_files(self, store) -> None:
        store.add("mem://in/a.txt", b"a")
        store.add("mem://in/b.txt", b"bb")
        store.add("mem://in/c.csv", b"c")

        handles = await _discoverer(store).poll_once()

        assert [h.filename for h in handles] == ["a.txt", "b.txt"]
        assert handles[1].size_bytes == 2

    @pytest.mark.asyncio
    async def test_each_file_emitted_once(self, store) -> None:
        store.add("mem://in/a.txt", b"a")
        discoverer = _discoverer(store)

        first = await discoverer.poll_once()
        store.add("mem://in/b.txt", b"b")
        second = await discoverer.poll_once()
        third = await discoverer.poll_once()

        assert [h.filename for h in first] == ["a.txt"]
        assert [h.filename for h in second] == ["b.txt"]
        assert third == []

    @pytest.mark.asyncio
    async def test_reports_discovered_files(self, store) -> None:
        store.add("mem://in/a.txt", b"a")
        events = RecordingEventSink()

        await _discoverer(store, events).poll_once()

        assert [h.resource_id for h in events.of("file_discovered")] == ["mem://in/a.txt"]

    @pytest.mark.asyncio
    async def test_empty_listing(self, store) -> None:
        assert await _discoverer(store).poll_once() == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_discovery_error(self, store) -> None:
        store.list_errors.append(StorageError("NoSuchBucket", retryable=False))
        with pytest.raises(DiscoveryError):
            await _discoverer(store).poll_once()

    @pytest.mark.asyncio
    async def test_retryable_error_propagates(self, store) -> None:
        store.list_errors.append(StorageError("throttled", retryable=True))
        with pytest.raises(StorageError):
            await _discoverer(store).poll_once()


class TestWatch:
    @pytest.mark.asyncio
    async def test_max_polls_ends_watch(self, store) -> None:
        store.add("mem://in/a.txt", b"a")
        stop = asyncio.Event()

        handles = [h async for h in _discoverer(store).watch(stop, max_polls=3)]

        assert [h.filename for h in handles] == ["a.txt"]
        assert store.list_calls == 3

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_next_tick(self, store) -> None:
        store.add("mem://in/a.txt", b"a")
        store.list_errors.append(StorageError("throttled", retryable=True))
        stop = asyncio.Event()

        handles = [h async for h in _discoverer(store).watch(stop, max_polls=2)]

        assert [h.filename for h in handles] == ["a.txt"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_retried(self, store) -> None:
        store.add("mem://in/a.txt", b"a")
        store.list_errors.append(ConnectionError("reset"))
        stop = asyncio.Event()

        handles = [h async for h in _discoverer(store).watch(stop, max_polls=2)]

        assert len(handles) == 1

    @pytest.mark.asyncio
    async def test_non_retryable_failure_ends_watch(self, store) -> None:
        store.list_errors.append(StorageError("AccessDenied", retryable=False))
        stop = asyncio.Event()

        with pytest.raises(DiscoveryError):
            async for _ in _discoverer(store).watch(stop):
                pass

    @pytest.mark.asyncio
    async def test_s3_pattern_without_bucket_ends_watch(self) -> None:
        discoverer = FileDiscoverer(
            S3ObjectStore(client=MagicMock()),
            "s3:///x/*.txt",
            poll_interval=0.01,
            events=RecordingEventSink(),
        )

        with pytest.raises(DiscoveryError):
            async for _ in discoverer.watch(asyncio.Event(), max_polls=3):
                pass

    @pytest.mark.asyncio
    async def test_stop_event_ends_watch(self, store) -> None:
        store.add("mem://in/a.txt", b"a")
        stop = asyncio.Event()
        discoverer = _discoverer(store, poll_interval=3600)

        seen = []

        async def consume() -> None:
            async for handle in discoverer.watch(stop):
                seen.append(handle)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert [h.filename for h in seen] == ["a.txt"]
        assert store.list_calls == 1

    @pytest.mark.asyncio
    async def test_stopped_before_start_polls_nothing(self, store) -> None:
        stop = asyncio.Event()
        stop.set()

        handles = [h async for h in _discoverer(store).watch(stop)]

        assert handles == []
        assert store.list_calls == 0
