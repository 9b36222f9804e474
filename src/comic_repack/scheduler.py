"""
Bounded-parallel page transcoding with in-order commits.

The calling thread is the only one that touches the source reader and the
destination writer. It reads page bytes, hands them to a thread pool of K
workers, and commits finished pages through a small reorder buffer keyed
by ordinal:

    reader --read--> [job] --submit--> pool (K workers) --done--> buffer
                                                                   |
    writer <--commit(next_ordinal)-------------------------------- +

At most `lookahead` pages past the writer cursor are ever read, so memory
stays flat no matter how many pages the archive holds.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum

from .errors import ArchiveIOError, Cancelled, DecodeError, RepackError
from .progress import JobCompleted, Outcome
from .transcode import source_format_of, transcode

logger = logging.getLogger(__name__)

# How often a waiting committer re-checks the cancellation signal (seconds)
POLL_INTERVAL = 0.1


class JobState(Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    DECODING = "decoding"
    ENCODING = "encoding"
    COMMITTED = "committed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self):
        return self in (JobState.COMMITTED, JobState.FAILED, JobState.SKIPPED)


TRANSITIONS = {
    JobState.PENDING: {JobState.EXTRACTING, JobState.FAILED},
    JobState.EXTRACTING: {JobState.DECODING, JobState.FAILED},
    # DECODING -> COMMITTED: page copied without re-encoding
    JobState.DECODING: {JobState.ENCODING, JobState.COMMITTED, JobState.FAILED, JobState.SKIPPED},
    JobState.ENCODING: {JobState.COMMITTED, JobState.FAILED, JobState.SKIPPED},
    JobState.COMMITTED: set(),
    JobState.FAILED: set(),
    JobState.SKIPPED: set(),
}


@dataclass(eq=False)
class TranscodeJob:
    """
    One page travelling through the pipeline.

    `data` holds the raw page bytes only between extraction and the end of
    the transcode; `result` holds the new bytes only until they are
    committed.
    """

    page: object
    state: JobState = JobState.PENDING
    data: bytes = field(default=None, repr=False)
    result: object = field(default=None, repr=False)
    error: RepackError = None
    reason: str = None
    attempts: int = 0
    output_name: str = None
    output_size: int = 0
    source_size: int = 0
    converted: bool = False

    @property
    def ordinal(self):
        return self.page.ordinal

    @property
    def name(self):
        return self.page.entry.name

    def advance(self, state):
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"page {self.ordinal}: illegal transition {self.state.value} -> {state.value}")
        self.state = state


class WorkerPool:
    """
    Runs TranscodeJobs on a thread pool and feeds the writer in order.

    Args:
        config (RepackConfig): Jobs, lookahead, retries and skip policy
        reporter (ProgressReporter): Optional sink for JobCompleted events
        cancel (threading.Event): Optional cancellation signal
        transcoder (callable): Page transcoder, `transcode` by default
    """

    def __init__(self, config, reporter=None, cancel=None, transcoder=transcode):
        self.config = config
        self.reporter = reporter
        self.cancel = cancel if cancel is not None else threading.Event()
        self.transcoder = transcoder

    def run(self, reader, pages, writer):
        """
        Transcode every page and commit it (or skip it) in ordinal order.

        Args:
            reader (ArchiveReader): Open source archive
            pages (list[Page]): Pages with ordinals 0..N-1
            writer (ArchiveWriter): Open destination, cursor at 0

        Returns:
            list[TranscodeJob]: All jobs, each in a terminal state

        Raises:
            Cancelled: The cancellation signal was set
            RepackError: First fatal error; the writer is left to be discarded
        """
        jobs = [TranscodeJob(page) for page in pages]
        total = len(jobs)
        buffer = {}
        in_flight = {}
        dispatched = 0

        executor = ThreadPoolExecutor(max_workers=self.config.jobs, thread_name_prefix="transcode")
        aborted = True
        try:
            while writer.next_ordinal < total:
                self._check_cancel()

                while dispatched < total and dispatched - writer.next_ordinal < self.config.lookahead:
                    job = jobs[dispatched]
                    self._extract(reader, job)
                    in_flight[executor.submit(self._work, job)] = job
                    dispatched += 1

                if self._commit_ready(buffer, writer):
                    continue

                if in_flight:
                    done, _ = wait(in_flight, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                    for future in done:
                        job = in_flight.pop(future)
                        future.result()
                        self._settle(job)
                        buffer[job.ordinal] = job
                    self._commit_ready(buffer, writer)
            aborted = False
        finally:
            if aborted:
                for future in in_flight:
                    future.cancel()
            # in-flight encodes are abandoned, not awaited, when aborting
            executor.shutdown(wait=not aborted, cancel_futures=True)
        return jobs

    def _check_cancel(self):
        if self.cancel.is_set():
            raise Cancelled()

    def _publish(self, job, outcome):
        if self.reporter is not None:
            self.reporter.publish(JobCompleted(job.ordinal, outcome, job.name, job.reason))

    def _fail(self, job, error):
        if error.ordinal is None:
            error.ordinal = job.ordinal
        if error.entry_name is None:
            error.entry_name = job.name
        job.error = error
        job.advance(JobState.FAILED)
        self._publish(job, Outcome.FAILED)
        logger.debug("page failed: %s", error)

    def _extract(self, reader, job):
        """Read the page bytes, retrying transient I/O errors."""
        job.advance(JobState.EXTRACTING)
        while True:
            job.attempts += 1
            try:
                job.data = reader.read_entry(job.page.entry)
            except ArchiveIOError as e:
                if job.attempts > self.config.retries:
                    self._fail(job, e)
                    raise
                logger.warning(
                    "read of '%s' failed (attempt %d of %d), retrying: %s",
                    job.name, job.attempts, self.config.retries + 1, e.message,
                )
                self._check_cancel()
                continue
            except RepackError as e:
                self._fail(job, e)
                raise
            job.source_size = len(job.data)
            return

    def _work(self, job):
        """Worker thread body. Never raises RepackError; it is stored on the job."""
        if self.cancel.is_set():
            job.data = None
            job.error = Cancelled(ordinal=job.ordinal, entry_name=job.name)
            return job
        job.advance(JobState.DECODING)
        logger.debug("transcoding '%s'", job.name)
        try:
            if not job.data:
                raise DecodeError("no data in entry")
            source_ext = job.name.rsplit(".", 1)[-1] if "." in job.name else None
            job.result = self.transcoder(
                job.data,
                self.config,
                source_format=source_format_of(job.name),
                source_ext=source_ext,
                on_encode=lambda: job.advance(JobState.ENCODING),
            )
        except RepackError as e:
            job.error = e
        finally:
            job.data = None
        return job

    def _settle(self, job):
        """Turn a finished worker job into a committable or skipped buffer entry."""
        error = job.error
        if error is None:
            return
        if isinstance(error, Cancelled):
            raise error
        if error.is_fatal(self.config.skip_on_error):
            self._fail(job, error)
            raise error
        if error.ordinal is None:
            error.ordinal = job.ordinal
        if error.entry_name is None:
            error.entry_name = job.name
        job.reason = str(error)
        job.advance(JobState.SKIPPED)
        logger.warning("SKIP with reason: %s", job.reason)

    def _commit_ready(self, buffer, writer):
        """Commit every buffered job the writer cursor has reached. Return True if any were."""
        progressed = False
        while writer.next_ordinal in buffer:
            job = buffer.pop(writer.next_ordinal)
            if job.state is JobState.SKIPPED:
                writer.skip(job.ordinal)
                self._publish(job, Outcome.SKIPPED)
            else:
                result, job.result = job.result, None
                job.output_name = self.config.page_name(job.ordinal, result.ext)
                job.output_size = len(result.data)
                job.converted = result.converted
                try:
                    writer.commit(job.ordinal, job.output_name, result.data)
                except RepackError as e:
                    self._fail(job, e)
                    raise
                job.advance(JobState.COMMITTED)
                self._publish(job, Outcome.CONVERTED if result.converted else Outcome.COPIED)
                logger.debug(
                    "Encoded: %s, new size: %db vs. %db = %.2f%%",
                    job.output_name, job.output_size, job.source_size, result.ratio,
                )
            progressed = True
        return progressed
