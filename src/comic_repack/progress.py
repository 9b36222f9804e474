"""
Progress events and their aggregation.

The scheduler publishes one JobCompleted event per page onto the
reporter's queue. A single consumer turns the events into
ProgressSnapshot values. Nothing in the pipeline reads the reporter, so
dropping it changes no behaviour.
"""

import queue
from dataclasses import dataclass
from enum import Enum


class Outcome(Enum):
    CONVERTED = "converted"
    COPIED = "copied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class JobCompleted:
    ordinal: int
    outcome: Outcome
    entry_name: str = None
    reason: str = None


@dataclass(frozen=True)
class ProgressSnapshot:
    completed: int
    skipped: int
    failed: int
    total: int

    @property
    def done(self):
        return self.completed + self.skipped + self.failed

    def __iter__(self):
        return iter((self.completed, self.skipped, self.failed, self.total))


_CLOSED = object()


class ProgressReporter:
    """
    Aggregates JobCompleted events into running counts.

    Producers call `publish`; the consumer iterates the reporter, which
    yields a snapshot after each event and stops once `close` was called
    and the queue is drained:

        reporter = ProgressReporter()
        for completed, skipped, failed, total in reporter:
            bar.update(completed + skipped + failed, total=total)
    """

    def __init__(self, total=0):
        self._events = queue.Queue()
        self._snapshot = ProgressSnapshot(0, 0, 0, total)
        self.events = []

    @property
    def snapshot(self):
        return self._snapshot

    def set_total(self, total):
        self._events.put(("total", total))

    def publish(self, event):
        self._events.put(event)

    def close(self):
        self._events.put(_CLOSED)

    def _apply(self, event):
        completed, skipped, failed, total = self._snapshot
        if isinstance(event, tuple):
            total = event[1]
        else:
            self.events.append(event)
            if event.outcome is Outcome.SKIPPED:
                skipped += 1
            elif event.outcome is Outcome.FAILED:
                failed += 1
            else:
                completed += 1
        self._snapshot = ProgressSnapshot(completed, skipped, failed, total)
        return self._snapshot

    def __iter__(self):
        while True:
            event = self._events.get()
            if event is _CLOSED:
                return
            yield self._apply(event)

    def drain(self):
        """Consume whatever is queued right now without blocking; return the latest snapshot."""
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return self._snapshot
            if event is _CLOSED:
                # keep the stream closed for a later iterator
                self._events.put(_CLOSED)
                return self._snapshot
            self._apply(event)
