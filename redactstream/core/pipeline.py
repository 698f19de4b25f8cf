"""RedactionPipeline — orchestration of the streaming redaction pipeline.

:class:`RedactionPipeline` wires the five stages together with bounded
:class:`asyncio.Queue` channels::

    FileDiscoverer ──files──▶ ChunkedReader ×N ──chunks──▶ Redactor ×M
        ──redacted──▶ WindowedGrouper ──groups──▶ DynamicWriter ×K

Each stage runs as one or more asyncio tasks; blocking work (listing, stream
reads, DLP calls, shard writes) runs in the default thread-pool executor.  No
mutable state is shared between records apart from the run summary and the
per-file in-flight counts.

**Holding panes**: while a file is still being read, or any of its chunks is
still waiting for redaction, its window panes are *held* and do not fire at
their fire time.  Once the file has settled the pane fires on the next grouper
pass, so a multi-chunk file becomes one group even with a zero fire delay.  A
held pane still fires when its window closes.

**Shutdown**: :meth:`RedactionPipeline.stop` ends discovery at the next poll
tick.  Files already queued are read, their chunks are redacted, every open
window pane is flushed and all resulting shards are written before
:meth:`RedactionPipeline.run` returns.

**Failure policy**

* Per-file read failures are recorded in the file's
  :class:`~redactstream.core.models.FileResult` and the run continues.  With
  ``abort_on_open_error=True`` an open failure ends the run instead.
* Per-chunk redaction failures drop the chunk and are reported through the
  event sink.
* :class:`~redactstream.core.writer.OutputWriteError` and
  :class:`~redactstream.core.discovery.DiscoveryError` are run-level: discovery
  stops, in-flight work drains, queued but unread files are skipped, and
  :meth:`run` raises :class:`PipelineError`.

Usage::

    from redactstream.config import get_settings
    from redactstream.core.pipeline import build_pipeline

    pipeline = build_pipeline(get_settings())
    summary = await pipeline.run()
"""

from __future__ import annotations

import asyncio
import collections
import logging
import time
from typing import Any, Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from redactstream.config import Settings
from redactstream.core.adapters.redaction_service import RedactionService
from redactstream.core.discovery import DiscoveryError, FileDiscoverer
from redactstream.core.events import EventSink, LoggingEventSink
from redactstream.core.models import FileHandle, FileResult, RunSummary
from redactstream.core.reader import ChunkedReader, StreamOpenError, StreamReadError
from redactstream.core.redactor import Redactor
from redactstream.core.windowing import AddOutcome, WindowedGrouper
from redactstream.core.writer import DynamicWriter, OutputWriteError
from redactstream.services.storage import ObjectStore, open_store

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("redactstream.pipeline")

# End-of-stream marker placed on a queue once per consuming worker.
_DONE: Any = object()

# Wakes the grouper after a file settled without delivering a chunk to it.
_WAKE: Any = object()


class PipelineError(Exception):
    """Raised when the run fails as a whole.

    Attributes:
        step_name: Stage that failed (``"discover"``, ``"read"`` or
            ``"write"``).
        original: The exception that triggered the failure.
    """

    def __init__(self, step_name: str, original: Exception) -> None:
        super().__init__(f"Pipeline step '{step_name}' failed: {original}")
        self.step_name = step_name
        self.original = original


class _InFlight:
    """Per-filename count of open readers and chunks not yet at the grouper.

    A file is *held* while it is being read or any of its chunks is still
    queued for, or inside, the redactor.
    """

    def __init__(self) -> None:
        self._reading: collections.Counter[str] = collections.Counter()
        self._chunks: collections.Counter[str] = collections.Counter()

    def file_started(self, filename: str) -> None:
        self._reading[filename] += 1

    def file_finished(self, filename: str) -> None:
        self._decrement(self._reading, filename)

    def chunk_sent(self, filename: str) -> None:
        self._chunks[filename] += 1

    def chunk_settled(self, filename: str) -> None:
        self._decrement(self._chunks, filename)

    def held(self) -> frozenset[str]:
        return frozenset(self._reading) | frozenset(self._chunks)

    @staticmethod
    def _decrement(counter: collections.Counter[str], filename: str) -> None:
        counter[filename] -= 1
        if counter[filename] <= 0:
            del counter[filename]


class RedactionPipeline:
    """Run discovery, reading, redaction, windowing and writing concurrently.

    All stages are injected so tests can substitute in-memory stores and fake
    redaction services.

    Args:
        discoverer: Source of new input files.
        reader: Splits files into chunks.
        redactor: De-identifies chunks.
        grouper: Windowing state machine.
        writer: Writes fired groups.
        events: Sink for file-level events.
        reader_workers: Files read concurrently.
        redaction_workers: Chunks redacted concurrently.
        writer_workers: Shards written concurrently.
        queue_size: Capacity of each inter-stage queue.
        abort_on_open_error: End the run when an input file cannot be opened.
        clock: Returns the current Unix time; drives the grouper.
    """

    def __init__(
        self,
        *,
        discoverer: FileDiscoverer,
        reader: ChunkedReader,
        redactor: Redactor,
        grouper: WindowedGrouper,
        writer: DynamicWriter,
        events: Optional[EventSink] = None,
        reader_workers: int = 4,
        redaction_workers: int = 8,
        writer_workers: int = 2,
        queue_size: int = 256,
        abort_on_open_error: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._discoverer = discoverer
        self._reader = reader
        self._redactor = redactor
        self._grouper = grouper
        self._writer = writer
        self._events = events or LoggingEventSink()
        self._reader_workers = reader_workers
        self._redaction_workers = redaction_workers
        self._writer_workers = writer_workers
        self._queue_size = queue_size
        self._abort_on_open_error = abort_on_open_error
        self._clock = clock

        self._stop = asyncio.Event()
        self._failure: PipelineError | None = None
        self._summary = RunSummary()
        self._in_flight = _InFlight()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Stop polling for new files and let in-flight work drain."""
        if not self._stop.is_set():
            logger.info("RedactionPipeline: stop requested, draining in-flight work")
        self._stop.set()

    @property
    def summary(self) -> RunSummary:
        return self._summary

    async def check_backend(self) -> bool:
        """Return whether the redaction backend is reachable before a run."""
        available = await self._redactor.is_available()
        if not available:
            logger.error("RedactionPipeline: redaction backend is not reachable")
        return available

    async def run(self, *, max_polls: Optional[int] = None) -> RunSummary:
        """Run until stopped (or after *max_polls* listings) and drain.

        Returns:
            The :class:`~redactstream.core.models.RunSummary` of the run.

        Raises:
            :class:`PipelineError`: On a run-level failure, after in-flight
                work has drained.
        """
        self._summary = RunSummary()
        self._failure = None
        self._in_flight = _InFlight()
        files_q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        chunks_q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        redacted_q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        groups_q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        with tracer.start_as_current_span("redactstream.run") as span:
            span.set_attribute("run.pattern", self._discoverer.pattern)
            logger.info(
                "RedactionPipeline starting: pattern=%s readers=%d redactors=%d writers=%d",
                self._discoverer.pattern,
                self._reader_workers,
                self._redaction_workers,
                self._writer_workers,
            )

            discovery = asyncio.create_task(self._discover(files_q, max_polls))
            readers = [
                asyncio.create_task(self._read_worker(files_q, chunks_q, redacted_q))
                for _ in range(self._reader_workers)
            ]
            redactors = [
                asyncio.create_task(self._redact_worker(chunks_q, redacted_q))
                for _ in range(self._redaction_workers)
            ]
            grouper = asyncio.create_task(self._group_worker(redacted_q, groups_q))
            writers = [
                asyncio.create_task(self._write_worker(groups_q))
                for _ in range(self._writer_workers)
            ]
            tasks = [discovery, *readers, *redactors, grouper, *writers]

            try:
                await discovery
                await self._close(files_q, readers)
                await self._close(chunks_q, redactors)
                await self._close(redacted_q, [grouper])
                await self._close(groups_q, writers)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

            summary = self._summary
            span.set_attribute("run.files_discovered", summary.files_discovered)
            span.set_attribute("run.chunks_redacted", summary.chunks_redacted)
            span.set_attribute("run.groups_written", summary.groups_written)

            if self._failure is not None:
                span.record_exception(self._failure.original)
                span.set_status(Status(StatusCode.ERROR, str(self._failure)))
                logger.error(
                    "RedactionPipeline failed at step '%s': %r",
                    self._failure.step_name,
                    self._failure.original,
                )
                raise self._failure

        logger.info(
            "RedactionPipeline complete: files=%d ok=%d failed=%d chunks_read=%d "
            "redacted=%d dropped=%d late=%d shards=%d",
            summary.files_discovered,
            summary.files_ok,
            summary.files_failed,
            summary.chunks_read,
            summary.chunks_redacted,
            summary.chunks_failed,
            summary.chunks_late,
            summary.groups_written,
        )
        return summary

    # ------------------------------------------------------------------
    # Stage workers
    # ------------------------------------------------------------------

    def _fail(self, step_name: str, exc: Exception) -> None:
        if self._failure is None:
            self._failure = PipelineError(step_name, exc)
        self._stop.set()

    @staticmethod
    async def _close(queue: asyncio.Queue, workers: list[asyncio.Task]) -> None:
        for _ in workers:
            await queue.put(_DONE)
        await asyncio.gather(*workers)

    async def _discover(self, files_q: asyncio.Queue, max_polls: Optional[int]) -> None:
        try:
            async for handle in self._discoverer.watch(self._stop, max_polls=max_polls):
                self._summary.files_discovered += 1
                await files_q.put(handle)
        except DiscoveryError as exc:
            self._fail("discover", exc)

    async def _read_worker(
        self,
        files_q: asyncio.Queue,
        chunks_q: asyncio.Queue,
        redacted_q: asyncio.Queue,
    ) -> None:
        while True:
            handle: FileHandle = await files_q.get()
            if handle is _DONE:
                return

            result = FileResult(filename=handle.filename, resource_id=handle.resource_id)
            if self._failure is not None:
                result.error = "skipped: run aborted"
            else:
                self._in_flight.file_started(handle.filename)
                try:
                    async for chunk in self._reader.stream(handle):
                        result.chunks += 1
                        self._summary.chunks_read += 1
                        self._in_flight.chunk_sent(handle.filename)
                        await chunks_q.put(chunk)
                except StreamOpenError as exc:
                    result.error = str(exc)
                    if self._abort_on_open_error:
                        self._fail("read", exc)
                except StreamReadError as exc:
                    result.error = str(exc)
                except Exception as exc:  # noqa: BLE001
                    result.error = f"unexpected {type(exc).__name__}: {exc}"
                self._in_flight.file_finished(handle.filename)
                await redacted_q.put(_WAKE)

            self._summary.file_results.append(result)
            self._events.on_file_done(result)

    async def _redact_worker(self, chunks_q: asyncio.Queue, redacted_q: asyncio.Queue) -> None:
        while True:
            chunk = await chunks_q.get()
            if chunk is _DONE:
                return
            redacted = await self._redactor.redact(chunk)
            if redacted is None:
                self._summary.chunks_failed += 1
                self._in_flight.chunk_settled(chunk.filename)
                await redacted_q.put(_WAKE)
                continue
            self._summary.chunks_redacted += 1
            await redacted_q.put(redacted)

    async def _group_worker(self, redacted_q: asyncio.Queue, groups_q: asyncio.Queue) -> None:
        done = False
        while not done:
            deadline = self._grouper.next_deadline(self._in_flight.held())
            timeout = None if deadline is None else max(0.0, deadline - self._clock())
            items = []
            try:
                items.append(await asyncio.wait_for(redacted_q.get(), timeout=timeout))
            except asyncio.TimeoutError:
                pass
            while not redacted_q.empty():
                items.append(redacted_q.get_nowait())

            for item in items:
                if item is _DONE:
                    done = True
                    continue
                if item is _WAKE:
                    continue
                self._in_flight.chunk_settled(item.filename)
                if self._grouper.add(item, self._clock()) is not AddOutcome.ACCEPTED:
                    self._summary.chunks_late += 1

            for group in self._grouper.due(self._clock(), self._in_flight.held()):
                await groups_q.put(group)

        if self._grouper.pending:
            logger.debug("RedactionPipeline: flushing %d pending chunk(s)", self._grouper.pending)
        for group in self._grouper.flush():
            await groups_q.put(group)

    async def _write_worker(self, groups_q: asyncio.Queue) -> None:
        while True:
            group = await groups_q.get()
            if group is _DONE:
                return
            try:
                path = await self._writer.write(group)
            except OutputWriteError as exc:
                self._fail("write", exc)
                continue
            self._summary.groups_written += 1
            self._summary.written_paths.append(path)


# ---------------------------------------------------------------------------
# Construction from settings
# ---------------------------------------------------------------------------


def build_pipeline(
    settings: Settings,
    *,
    service: Optional[RedactionService] = None,
    input_store: Optional[ObjectStore] = None,
    output_store: Optional[ObjectStore] = None,
    events: Optional[EventSink] = None,
) -> RedactionPipeline:
    """Construct a :class:`RedactionPipeline` from *settings*.

    The template names are read from *settings* here, when the run starts,
    so deployments can change them without rebuilding anything.  Any
    collaborator can be overridden, e.g. with fakes in tests.
    """
    events = events or LoggingEventSink()
    input_store = input_store or open_store(settings.bucket_url, settings)
    output_store = output_store or open_store(settings.output_path, settings)

    if service is None:
        from redactstream.core.adapters.google_dlp_adapter import GoogleDLPRedactionService

        service = GoogleDLPRedactionService(
            project_id=settings.project_id,
            deidentify_template_name=settings.deidentify_template_name,
            inspect_template_name=settings.inspect_template_name,
            location=settings.dlp_location,
            timeout=settings.redaction_timeout_seconds,
        )

    return RedactionPipeline(
        discoverer=FileDiscoverer(
            input_store,
            settings.bucket_url,
            poll_interval=settings.poll_interval_seconds,
            events=events,
        ),
        reader=ChunkedReader(input_store, batch_size=settings.batch_size),
        redactor=Redactor(
            service,
            max_retries=settings.redaction_max_retries,
            retry_base_delay=settings.retry_base_delay_seconds,
            timeout=settings.redaction_timeout_seconds,
            events=events,
        ),
        grouper=WindowedGrouper(
            window_size=settings.window_seconds,
            fire_delay=settings.fire_delay_seconds,
            allowed_lateness=settings.allowed_lateness_seconds,
            events=events,
        ),
        writer=DynamicWriter(
            output_store,
            settings.output_path,
            naming=settings.output_naming,
            max_retries=settings.write_max_retries,
            retry_base_delay=settings.retry_base_delay_seconds,
            timeout=settings.write_timeout_seconds,
            events=events,
        ),
        events=events,
        reader_workers=settings.reader_workers,
        redaction_workers=settings.redaction_workers,
        writer_workers=settings.writer_workers,
        queue_size=settings.queue_size,
        abort_on_open_error=settings.abort_on_open_error,
    )
