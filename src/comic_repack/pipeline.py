"""
One archive in, one archive out.

`repack` wires the stages together:

    open_archive -> split_entries/order_pages -> WorkerPool -> ArchiveWriter

and returns a RepackSummary. On any error, or on cancellation, the
temporary output is discarded and the destination path is left as it was.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from .errors import Cancelled
from .pages import SNIFF_BYTES, order_pages, split_entries
from .reader import open_archive
from .scheduler import JobState, WorkerPool
from .transcode import transcode
from .writer import open_writer

logger = logging.getLogger(__name__)


@dataclass
class RepackSummary:
    """
    Result of a successful run.

    Attributes:
        source: Source archive path
        destination: Final destination path
        total: Number of pages found in the source
        converted: Pages re-encoded into the target codec
        copied: Pages stored with their original bytes
        skipped: (ordinal, entry name, reason) for each page dropped under skip-on-error
        extras: Non-image entries copied through
        source_size: Size of the source archive in bytes
        destination_size: Size of the destination archive in bytes
    """

    source: Path
    destination: Path
    total: int = 0
    converted: int = 0
    copied: int = 0
    skipped: list = field(default_factory=list)
    extras: int = 0
    source_size: int = 0
    destination_size: int = 0

    @property
    def committed(self):
        return self.converted + self.copied

    @property
    def ratio(self):
        return self.destination_size / self.source_size * 100.0 if self.source_size else 0.0


def repack(source, destination, config, reporter=None, cancel=None, transcoder=transcode):
    """
    Convert the comic archive at `source` into `destination`.

    Args:
        source (Path): CBZ/CBR/CB7 input (container detected from its bytes)
        destination (Path): Output archive path
        config (RepackConfig): Target container/codec and run policy
        reporter (ProgressReporter): Receives the page total and one event per
            page; it is closed when the run ends, successful or not
        cancel (threading.Event): Set it from any thread to abort the run
        transcoder (callable): Page transcoder, for instrumentation

    Returns:
        RepackSummary: Counts and sizes for the finished archive

    Raises:
        RepackError: A fatal error or Cancelled; nothing is left at `destination`
    """
    source, destination = Path(source), Path(destination)
    cancel = cancel if cancel is not None else threading.Event()
    summary = RepackSummary(source, destination)
    logger.info("Converting: %s", source)

    try:
        with open_archive(source) as reader:
            images, others = split_entries(
                reader.enumerate_entries(), lambda entry: reader.read_entry(entry, SNIFF_BYTES)
            )
            pages = order_pages(images)
            summary.total = len(pages)
            if reporter is not None:
                reporter.set_total(len(pages))

            with open_writer(destination, config.archive, force=config.force) as writer:
                pool = WorkerPool(config, reporter=reporter, cancel=cancel, transcoder=transcoder)
                jobs = pool.run(reader, pages, writer)

                if config.pass_through:
                    for entry in others:
                        if cancel.is_set():
                            raise Cancelled()
                        writer.write_extra(entry.name, reader.read_entry(entry))
                        summary.extras += 1
                elif others:
                    logger.debug("dropping %d non-image entries", len(others))

                if cancel.is_set():
                    raise Cancelled()
                stat = writer.finalize()
    finally:
        if reporter is not None:
            reporter.close()

    for job in jobs:
        if job.state is JobState.SKIPPED:
            summary.skipped.append((job.ordinal, job.name, job.reason))
        elif job.converted:
            summary.converted += 1
        else:
            summary.copied += 1
    summary.source_size = source.stat().st_size
    summary.destination_size = stat.st_size
    logger.info(
        "Archived: %s, new size: %db vs. %db = %.2f%%",
        destination, summary.destination_size, summary.source_size, summary.ratio,
    )
    return summary
