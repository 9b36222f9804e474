"""Tests for the progress stream."""

import threading

from comic_repack.progress import JobCompleted, Outcome, ProgressReporter, ProgressSnapshot


def test_iteration_yields_running_counts():
    reporter = ProgressReporter()
    reporter.set_total(3)
    reporter.publish(JobCompleted(0, Outcome.CONVERTED, "p1.jpg"))
    reporter.publish(JobCompleted(1, Outcome.SKIPPED, "p2.jpg", "DecodeError: truncated"))
    reporter.publish(JobCompleted(2, Outcome.COPIED, "p3.webp"))
    reporter.close()

    snapshots = [tuple(s) for s in reporter]
    assert snapshots == [(0, 0, 0, 3), (1, 0, 0, 3), (1, 1, 0, 3), (2, 1, 0, 3)]
    assert reporter.snapshot.done == 3
    assert [e.ordinal for e in reporter.events] == [0, 1, 2]


def test_failed_events_are_counted_apart():
    reporter = ProgressReporter(total=2)
    reporter.publish(JobCompleted(0, Outcome.FAILED, "p1.jpg", "CorruptArchive"))
    reporter.close()
    list(reporter)
    assert reporter.snapshot == ProgressSnapshot(0, 0, 1, 2)


def test_drain_does_not_block():
    reporter = ProgressReporter()
    assert tuple(reporter.drain()) == (0, 0, 0, 0)
    reporter.set_total(5)
    reporter.publish(JobCompleted(0, Outcome.CONVERTED))
    assert tuple(reporter.drain()) == (1, 0, 0, 5)


def test_drain_keeps_the_stream_closed():
    reporter = ProgressReporter()
    reporter.publish(JobCompleted(0, Outcome.CONVERTED))
    reporter.close()
    reporter.drain()
    # the iterator still terminates after a drain saw the close marker
    assert list(reporter) == []
    assert reporter.snapshot.completed == 1


def test_consumer_on_another_thread():
    reporter = ProgressReporter()
    seen = []
    consumer = threading.Thread(target=lambda: seen.extend(reporter))
    consumer.start()
    reporter.set_total(10)
    for ordinal in range(10):
        reporter.publish(JobCompleted(ordinal, Outcome.CONVERTED))
    reporter.close()
    consumer.join(timeout=5)
    assert not consumer.is_alive()
    assert seen[-1] == ProgressSnapshot(10, 0, 0, 10)
    # counts never go backwards
    assert [s.done for s in seen] == sorted(s.done for s in seen)
