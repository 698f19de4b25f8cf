"""DynamicWriter — one output shard per file per fired window.

Each :class:`~redactstream.core.models.WindowedGroup` becomes exactly one text
object under the destination root.  The shard name is derived from the
group's filename key:

``"key"`` naming (default)
    ``<filename>.txt``
``"windowed"`` naming
    ``<filename>-<windowStart>-<windowEnd>-<pane>-00000-of-00001.txt``

Under ``"key"`` naming a file whose chunks fire in more than one window
rewrites the same object; ``"windowed"`` naming keeps one object per window.

Texts are joined with newlines.  Write failures are retried with exponential
back-off; once retries are exhausted :class:`OutputWriteError` is raised and
the pipeline treats it as a run-level failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Literal, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from redactstream.core.events import EventSink, LoggingEventSink
from redactstream.core.models import WindowedGroup
from redactstream.core.redactor import backoff_delay
from redactstream.services.storage import ObjectStore

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("redactstream.writer")

OutputNaming = Literal["key", "windowed"]

#: Extension appended to every shard name.
SHARD_SUFFIX = ".txt"

#: Shards per key per window.
NUM_SHARDS = 1


class OutputWriteError(Exception):
    """Raised when a shard could not be written after all retries."""

    def __init__(self, path: str, attempts: int, original: Exception) -> None:
        super().__init__(f"writing {path} failed after {attempts} attempt(s): {original}")
        self.path = path
        self.attempts = attempts
        self.original = original


class DynamicWriter:
    """Write :class:`WindowedGroup` objects as text shards.

    Args:
        store: Destination object store.
        output_root: Directory or ``s3://bucket/prefix`` receiving shards.
        naming: Shard naming policy, ``"key"`` or ``"windowed"``.
        max_retries: Additional attempts after a failed write.  Defaults to
            ``3``.
        retry_base_delay: Base back-off delay in seconds.
        timeout: Upper bound in seconds for one write attempt.
        events: Sink notified of every written shard.
    """

    def __init__(
        self,
        store: ObjectStore,
        output_root: str,
        *,
        naming: OutputNaming = "key",
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        timeout: float = 60.0,
        events: Optional[EventSink] = None,
    ) -> None:
        if naming not in ("key", "windowed"):
            raise ValueError(f"unknown output naming {naming!r}")
        self._store = store
        self._output_root = output_root
        self._naming = naming
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._timeout = timeout
        self._events = events or LoggingEventSink()

    def shard_name(self, group: WindowedGroup) -> str:
        if self._naming == "key":
            return f"{group.filename}{SHARD_SUFFIX}"
        return (
            f"{group.filename}-{group.window.label()}-{group.pane_index}"
            f"-{0:05d}-of-{NUM_SHARDS:05d}{SHARD_SUFFIX}"
        )

    def shard_path(self, group: WindowedGroup) -> str:
        return self._store.join(self._output_root, self.shard_name(group))

    @staticmethod
    def render(group: WindowedGroup) -> str:
        return "\n".join(group.texts)

    async def write(self, group: WindowedGroup) -> str:
        """Write *group* to its shard and return the shard path.

        Raises:
            :class:`OutputWriteError`: If every attempt failed.
        """
        path = self.shard_path(group)
        content = self.render(group)
        loop = asyncio.get_running_loop()

        with tracer.start_as_current_span("redactstream.write") as span:
            span.set_attribute("shard.filename", group.filename)
            span.set_attribute("shard.path", path)
            span.set_attribute("shard.texts", len(group.texts))

            last_exc: Exception | None = None
            for attempt in range(self._max_retries + 1):
                try:
                    await asyncio.wait_for(
                        loop.run_in_executor(None, self._store.write_text, path, content),
                        timeout=self._timeout,
                    )
                except Exception as exc:  # noqa: BLE001
                    last_exc = exc
                    logger.warning(
                        "Shard write attempt %d/%d failed: path=%s error=%r",
                        attempt + 1,
                        self._max_retries + 1,
                        path,
                        exc,
                    )
                    if attempt < self._max_retries:
                        await asyncio.sleep(backoff_delay(self._retry_base_delay, attempt))
                    continue

                span.set_attribute("shard.attempts", attempt + 1)
                self._events.on_group_written(group, path)
                return path

            assert last_exc is not None
            span.record_exception(last_exc)
            span.set_status(Status(StatusCode.ERROR, str(last_exc)))
            raise OutputWriteError(path, self._max_retries + 1, last_exc) from last_exc
