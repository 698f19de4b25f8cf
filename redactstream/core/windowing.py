"""WindowedGrouper — fixed-window, per-file grouping of redacted chunks.

Redacted chunks are assigned to fixed, tumbling windows of ``window_size``
seconds by the timestamp they were read at.  Within a window, chunks are
grouped by filename into *panes*.  Each pane follows a small state machine:

``OPEN``
    Accumulating.  The first chunk schedules the firing time
    ``arrival + fire_delay``.  While the caller reports the file as *held*
    (it still has chunks being read or redacted) the pane waits past that
    time, so all chunks of a file that arrive together fire together.
``FIRED``
    The pane's chunks were emitted as one
    :class:`~redactstream.core.models.WindowedGroup`.  Fired contents are
    discarded, and further chunks for the same window and file are dropped:
    each window fires at most once per file.
``CLOSED``
    ``window.end + allowed_lateness`` has passed.  Any pane still ``OPEN`` is
    fired at this point; afterwards the pane is forgotten and chunks for the
    window are dropped as late.

The grouper is a pure state machine driven by explicit ``now`` arguments;
:class:`~redactstream.core.pipeline.RedactionPipeline` feeds it wall-clock
time.  Chunk texts inside a group are ordered by chunk index, so a file's
byte order is restored even when chunks were redacted concurrently.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import AbstractSet, Optional

from redactstream.core.events import EventSink, LoggingEventSink
from redactstream.core.models import RedactedChunk, Window, WindowedGroup

logger = logging.getLogger(__name__)

#: Default window length in seconds.
DEFAULT_WINDOW_SIZE: float = 60.0


class PaneState(str, enum.Enum):
    OPEN = "open"
    FIRED = "fired"
    CLOSED = "closed"


class AddOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    LATE = "late"
    ALREADY_FIRED = "already_fired"


@dataclass
class _Pane:
    fire_at: float
    state: PaneState = PaneState.OPEN
    items: list[RedactedChunk] = field(default_factory=list)
    firings: int = 0


class WindowedGrouper:
    """Group redacted chunks by (fixed window, filename).

    Args:
        window_size: Window length in seconds.  Defaults to
            :data:`DEFAULT_WINDOW_SIZE`.
        fire_delay: Seconds between the first chunk of a pane arriving and
            the pane firing.  Defaults to ``0``.
        allowed_lateness: Seconds after ``window.end`` during which the window
            still accepts chunks.  Defaults to ``0``.
        events: Sink notified of dropped chunks.
    """

    def __init__(
        self,
        *,
        window_size: float = DEFAULT_WINDOW_SIZE,
        fire_delay: float = 0.0,
        allowed_lateness: float = 0.0,
        events: Optional[EventSink] = None,
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        if fire_delay < 0 or allowed_lateness < 0:
            raise ValueError("fire_delay and allowed_lateness must not be negative")
        self._size = window_size
        self._fire_delay = fire_delay
        self._lateness = allowed_lateness
        self._events = events or LoggingEventSink()
        self._panes: dict[tuple[Window, str], _Pane] = {}

    # ------------------------------------------------------------------
    # Window arithmetic
    # ------------------------------------------------------------------

    def window_for(self, timestamp: float) -> Window:
        """Return the fixed window containing *timestamp*."""
        start = math.floor(timestamp / self._size) * self._size
        return Window(start=start, end=start + self._size)

    def _closes_at(self, window: Window) -> float:
        return window.end + self._lateness

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def state(self, window: Window, filename: str, now: float) -> PaneState:
        """Return the state of the (window, filename) pane at time *now*."""
        if now >= self._closes_at(window):
            return PaneState.CLOSED
        pane = self._panes.get((window, filename))
        if pane is None:
            return PaneState.OPEN
        return pane.state

    def add(self, chunk: RedactedChunk, now: float) -> AddOutcome:
        """Offer *chunk* to its pane at time *now*."""
        window = self.window_for(chunk.timestamp)
        if now >= self._closes_at(window):
            self._events.on_late_chunk(chunk, AddOutcome.LATE.value)
            return AddOutcome.LATE

        key = (window, chunk.filename)
        pane = self._panes.get(key)
        if pane is None:
            pane = _Pane(fire_at=now + self._fire_delay)
            self._panes[key] = pane
        elif pane.state is PaneState.FIRED:
            self._events.on_late_chunk(chunk, AddOutcome.ALREADY_FIRED.value)
            return AddOutcome.ALREADY_FIRED

        pane.items.append(chunk)
        return AddOutcome.ACCEPTED

    def due(self, now: float, held: AbstractSet[str] = frozenset()) -> list[WindowedGroup]:
        """Fire every pane whose trigger time has come and close expired windows.

        Panes of files named in *held* still have chunks in flight; they fire
        only when their window closes.
        """
        groups: list[WindowedGroup] = []
        for key in sorted(self._panes, key=lambda k: (k[0].start, k[1])):
            window, filename = key
            pane = self._panes[key]
            closing = now >= self._closes_at(window)
            ready = pane.fire_at <= now and filename not in held
            if pane.state is PaneState.OPEN and (ready or closing):
                groups.append(self._fire(window, filename, pane))
            if closing:
                del self._panes[key]
        return groups

    def flush(self) -> list[WindowedGroup]:
        """Fire every pane that is still open, e.g. when the pipeline drains."""
        groups = [
            self._fire(window, filename, pane)
            for (window, filename), pane in sorted(
                self._panes.items(), key=lambda kv: (kv[0][0].start, kv[0][1])
            )
            if pane.state is PaneState.OPEN and pane.items
        ]
        self._panes.clear()
        return groups

    def next_deadline(self, held: AbstractSet[str] = frozenset()) -> float | None:
        """Return the earliest time at which :meth:`due` has work to do."""
        deadlines = []
        for (window, filename), pane in self._panes.items():
            close_at = self._closes_at(window)
            if pane.state is PaneState.OPEN and filename not in held:
                deadlines.append(min(pane.fire_at, close_at))
            else:
                deadlines.append(close_at)
        return min(deadlines) if deadlines else None

    @property
    def pending(self) -> int:
        """Number of chunks waiting in open panes."""
        return sum(len(p.items) for p in self._panes.values() if p.state is PaneState.OPEN)

    def _fire(self, window: Window, filename: str, pane: _Pane) -> WindowedGroup:
        items = sorted(pane.items, key=lambda c: c.index)
        group = WindowedGroup(
            filename=filename,
            window=window,
            texts=tuple(c.text for c in items),
            pane_index=pane.firings,
        )
        pane.firings += 1
        pane.state = PaneState.FIRED
        pane.items = []
        logger.debug(
            "WindowedGrouper fired: filename=%s window=%s texts=%d",
            filename,
            window.label(),
            len(group.texts),
        )
        return group
