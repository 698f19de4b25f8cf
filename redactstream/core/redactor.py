"""Redactor — per-chunk de-identification with bounded retry.

:class:`Redactor` sends each :class:`~redactstream.core.models.Chunk` to a
:class:`~redactstream.core.adapters.redaction_service.RedactionService` and
turns the answer into a :class:`~redactstream.core.models.RedactedChunk` that
keeps the chunk's filename, index and timestamp.

Retry policy
------------
Retryable backend errors and call timeouts are retried up to ``max_retries``
times with exponential back-off and jitter::

    delay = base_delay * (2 ** attempt) + random_jitter(0, 0.5)

Non-retryable errors (invalid template, permission denied) are not retried.

**Fail-secure contract:** when a chunk cannot be redacted :meth:`Redactor.redact`
returns ``None`` and reports a :class:`~redactstream.core.models.ChunkFailure`
to the event sink.  The original text is never passed downstream.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from redactstream.core.adapters.redaction_service import (
    RedactionBackendError,
    RedactionResult,
    RedactionService,
)
from redactstream.core.events import EventSink, LoggingEventSink
from redactstream.core.models import Chunk, ChunkFailure, RedactedChunk

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("redactstream.redactor")


def backoff_delay(base: float, attempt: int) -> float:
    """Return the sleep duration for *attempt* using exponential back-off with jitter.

    Formula: ``base * 2**attempt + uniform(0, 0.5)``; ``0`` when *base* is ``0``.
    """
    if base <= 0:
        return 0.0
    return base * (2**attempt) + random.uniform(0, 0.5)  # noqa: S311


class Redactor:
    """De-identify chunks through *service* with bounded retries.

    Args:
        service: The redaction backend.
        max_retries: Additional attempts after the first failure.  Defaults
            to ``3``.
        retry_base_delay: Base back-off delay in seconds.  Defaults to ``1.0``.
        timeout: Upper bound in seconds for one backend call.  Defaults to
            ``30.0``.
        events: Sink receiving success and failure events.
    """

    def __init__(
        self,
        service: RedactionService,
        *,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        timeout: float = 30.0,
        events: Optional[EventSink] = None,
    ) -> None:
        self._service = service
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._timeout = timeout
        self._events = events or LoggingEventSink()

    async def redact(self, chunk: Chunk) -> RedactedChunk | None:
        """Return the redacted form of *chunk*, or ``None`` if redaction failed."""
        if not chunk.text:
            return RedactedChunk.from_chunk(chunk, "")

        with tracer.start_as_current_span("redactstream.redact") as span:
            span.set_attribute("chunk.filename", chunk.filename)
            span.set_attribute("chunk.index", chunk.index)
            span.set_attribute("redaction.backend", self._service.backend_name())

            reason = ""
            attempts = 0
            for attempt in range(self._max_retries + 1):
                attempts = attempt + 1
                try:
                    result: RedactionResult = await asyncio.wait_for(
                        self._service.deidentify(chunk.text),
                        timeout=self._timeout,
                    )
                except asyncio.TimeoutError:
                    reason = f"timeout: no response within {self._timeout:.1f}s"
                    retryable = True
                except RedactionBackendError as exc:
                    kind = "retryable" if exc.retryable else "non_retryable"
                    reason = f"{kind}: {exc}"
                    retryable = exc.retryable
                except Exception as exc:  # noqa: BLE001
                    reason = f"non_retryable: unexpected {type(exc).__name__}: {exc}"
                    retryable = False
                else:
                    redacted = RedactedChunk.from_chunk(chunk, result.text)
                    span.set_attribute("redaction.request_bytes", result.request_bytes)
                    span.set_attribute("redaction.attempts", attempts)
                    logger.info(
                        "Successfully tokenized request size: %d bytes", result.request_bytes
                    )
                    self._events.on_redacted(redacted, result.request_bytes)
                    return redacted

                logger.warning(
                    "Redaction attempt %d/%d failed: filename=%s index=%d %s",
                    attempts,
                    self._max_retries + 1,
                    chunk.filename,
                    chunk.index,
                    reason,
                )
                if not retryable or attempt >= self._max_retries:
                    break
                await asyncio.sleep(backoff_delay(self._retry_base_delay, attempt))

            span.set_status(Status(StatusCode.ERROR, reason))
            span.set_attribute("redaction.attempts", attempts)
            self._events.on_chunk_failed(
                ChunkFailure(chunk=chunk, reason=reason, attempts=attempts)
            )
            return None

    async def is_available(self) -> bool:
        """Return whether the redaction backend answers; never raises."""
        return await self._service.is_available()
