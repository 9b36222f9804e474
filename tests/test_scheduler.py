"""Tests for the worker pool and its reorder buffer."""

import random
import threading
import time

import pytest

from comic_repack.config import RepackConfig
from comic_repack.errors import ArchiveIOError, Cancelled, CorruptArchive, DecodeError, EncodeError
from comic_repack.pages import Page
from comic_repack.progress import Outcome, ProgressReporter
from comic_repack.reader import Entry
from comic_repack.scheduler import JobState, TranscodeJob, WorkerPool
from comic_repack.transcode import Transcoded


class FakeReader:
    def __init__(self, failures=None, writer=None):
        self.failures = dict(failures or {})
        self.reads = []
        self.writer = writer
        self.max_ahead = 0

    def read_entry(self, entry, limit=-1):
        if self.writer is not None:
            self.max_ahead = max(self.max_ahead, entry.index - self.writer.next_ordinal + 1)
        self.reads.append(entry.index)
        failure = self.failures.get(entry.index)
        if failure is not None:
            count, error = failure
            if count:
                self.failures[entry.index] = (count - 1, error)
                raise error
        return f"page-{entry.index}".encode()


class FakeWriter:
    def __init__(self):
        self.next_ordinal = 0
        self.written = []
        self.skipped = []

    def commit(self, ordinal, name, data):
        assert ordinal == self.next_ordinal
        self.written.append((ordinal, name, data))
        self.next_ordinal += 1

    def skip(self, ordinal):
        assert ordinal == self.next_ordinal
        self.skipped.append(ordinal)
        self.next_ordinal += 1


def make_pages(count):
    return [Page(i, Entry(f"p{i}.jpg", i)) for i in range(count)]


def echo(data, config, source_format=None, source_ext=None, on_encode=None):
    if on_encode is not None:
        on_encode()
    return Transcoded(data.upper(), "webp", True, len(data))


def jittery(data, config, **kwargs):
    time.sleep(random.uniform(0, 0.01))
    return echo(data, config, **kwargs)


class ConcurrencyMeter:
    """Transcoder that records how many calls overlap."""

    def __init__(self):
        self.lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def __call__(self, data, config, **kwargs):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(0.005)
            return echo(data, config, **kwargs)
        finally:
            with self.lock:
                self.active -= 1


@pytest.mark.parametrize("jobs", [1, 2, 4, 7])
def test_never_more_than_k_jobs_in_flight(jobs):
    meter = ConcurrencyMeter()
    config = RepackConfig(jobs=jobs)
    writer = FakeWriter()
    WorkerPool(config, transcoder=meter).run(FakeReader(), make_pages(30), writer)
    assert 1 <= meter.peak <= jobs
    assert writer.next_ordinal == 30


def test_commits_follow_ordinal_order_regardless_of_completion():
    config = RepackConfig(jobs=4)
    writer = FakeWriter()
    jobs = WorkerPool(config, transcoder=jittery).run(FakeReader(), make_pages(40), writer)
    assert [ordinal for ordinal, _, _ in writer.written] == list(range(40))
    assert writer.written[3] == (3, "3.webp", b"PAGE-3")
    assert all(job.state is JobState.COMMITTED for job in jobs)
    assert all(job.data is None and job.result is None for job in jobs)


def test_reads_stay_within_lookahead_window():
    config = RepackConfig(jobs=2, lookahead=3)
    writer = FakeWriter()
    reader = FakeReader(writer=writer)
    WorkerPool(config, transcoder=jittery).run(reader, make_pages(25), writer)
    assert reader.max_ahead <= 3
    assert reader.reads == list(range(25))


def test_transient_read_errors_are_retried():
    config = RepackConfig(jobs=2, retries=2)
    reader = FakeReader(failures={1: (2, ArchiveIOError("flaky"))})
    writer = FakeWriter()
    jobs = WorkerPool(config, transcoder=echo).run(reader, make_pages(3), writer)
    assert jobs[1].attempts == 3
    assert writer.next_ordinal == 3


def test_exhausted_retries_abort():
    config = RepackConfig(jobs=2, retries=1)
    reader = FakeReader(failures={2: (5, ArchiveIOError("gone"))})
    reporter = ProgressReporter()
    with pytest.raises(ArchiveIOError) as excinfo:
        WorkerPool(config, reporter=reporter, transcoder=echo).run(reader, make_pages(4), FakeWriter())
    assert excinfo.value.ordinal == 2
    reporter.close()
    list(reporter)
    assert reporter.snapshot.failed == 1


def test_corrupt_member_is_not_retried():
    config = RepackConfig(jobs=1, retries=5)
    reader = FakeReader(failures={0: (1, CorruptArchive("bad crc"))})
    with pytest.raises(CorruptArchive):
        WorkerPool(config, transcoder=echo).run(reader, make_pages(2), FakeWriter())
    assert reader.reads == [0]


def failing_on(bad_ordinal):
    def transcoder(data, config, **kwargs):
        if data == f"page-{bad_ordinal}".encode():
            raise DecodeError("truncated image")
        return echo(data, config, **kwargs)

    return transcoder


def test_decode_error_skipped_under_skip_on_error():
    config = RepackConfig(jobs=3, skip_on_error=True)
    writer = FakeWriter()
    reporter = ProgressReporter()
    jobs = WorkerPool(config, reporter=reporter, transcoder=failing_on(2)).run(
        FakeReader(), make_pages(5), writer
    )
    assert writer.skipped == [2]
    assert [ordinal for ordinal, _, _ in writer.written] == [0, 1, 3, 4]
    assert jobs[2].state is JobState.SKIPPED
    assert "page 2" in jobs[2].reason
    reporter.close()
    list(reporter)
    assert tuple(reporter.snapshot) == (4, 1, 0, 0)


def test_decode_error_aborts_without_skip_on_error():
    config = RepackConfig(jobs=3)
    with pytest.raises(DecodeError) as excinfo:
        WorkerPool(config, transcoder=failing_on(2)).run(FakeReader(), make_pages(5), FakeWriter())
    assert excinfo.value.ordinal == 2
    assert excinfo.value.entry_name == "p2.jpg"


def test_empty_entry_is_a_decode_error():
    class EmptyReader(FakeReader):
        def read_entry(self, entry, limit=-1):
            return b""

    config = RepackConfig(jobs=1, skip_on_error=True)
    writer = FakeWriter()
    WorkerPool(config, transcoder=echo).run(EmptyReader(), make_pages(2), writer)
    assert writer.skipped == [0, 1]


def test_cancellation_stops_the_run():
    cancel = threading.Event()
    calls = []

    def cancelling(data, config, **kwargs):
        calls.append(data)
        if len(calls) == 3:
            cancel.set()
        time.sleep(0.01)
        return echo(data, config, **kwargs)

    config = RepackConfig(jobs=2)
    writer = FakeWriter()
    with pytest.raises(Cancelled):
        WorkerPool(config, cancel=cancel, transcoder=cancelling).run(FakeReader(), make_pages(50), writer)
    assert writer.next_ordinal < 50
    assert len(calls) < 50


def test_job_state_machine_rejects_illegal_transitions():
    job = TranscodeJob(make_pages(1)[0])
    job.advance(JobState.EXTRACTING)
    with pytest.raises(RuntimeError):
        job.advance(JobState.COMMITTED)
    job.advance(JobState.DECODING)
    job.advance(JobState.ENCODING)
    job.advance(JobState.COMMITTED)
    assert job.state.terminal
    with pytest.raises(RuntimeError):
        job.advance(JobState.FAILED)


def test_events_carry_outcomes():
    def copying(data, config, **kwargs):
        return Transcoded(data, "jpg", False, len(data))

    reporter = ProgressReporter()
    WorkerPool(RepackConfig(jobs=2), reporter=reporter, transcoder=copying).run(
        FakeReader(), make_pages(3), FakeWriter()
    )
    reporter.close()
    list(reporter)
    assert [e.outcome for e in reporter.events] == [Outcome.COPIED] * 3
    assert [e.ordinal for e in reporter.events] == [0, 1, 2]


def rejecting(bad_ordinal):
    def transcoder(data, config, on_encode=None, **kwargs):
        if data == f"page-{bad_ordinal}".encode():
            on_encode()
            raise EncodeError("encoder rejected 70000x10 image")
        return echo(data, config, on_encode=on_encode, **kwargs)

    return transcoder


def test_encode_error_skipped_under_skip_on_error():
    config = RepackConfig(jobs=2, skip_on_error=True)
    writer = FakeWriter()
    jobs = WorkerPool(config, transcoder=rejecting(1)).run(FakeReader(), make_pages(3), writer)
    assert writer.skipped == [1]
    assert [ordinal for ordinal, _, _ in writer.written] == [0, 2]
    assert jobs[1].state is JobState.SKIPPED
    assert jobs[1].reason.startswith("EncodeError:")


def test_encode_error_aborts_without_skip_on_error():
    with pytest.raises(EncodeError) as excinfo:
        WorkerPool(RepackConfig(jobs=2), transcoder=rejecting(1)).run(FakeReader(), make_pages(3), FakeWriter())
    assert excinfo.value.ordinal == 1
