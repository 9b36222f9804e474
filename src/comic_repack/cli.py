"""
Command-line front end: comic-repack FILES... [-o OUTDIR]

Parses options into a RepackConfig, expands glob patterns, and converts
the archives (one after another, or `-p` at a time) while a rich
progress display follows each pipeline's progress stream. Ctrl-C cancels
the archives in flight cleanly (no partial output is left behind).
"""

import argparse
import glob
import logging
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
)

from . import __version__, log
from .config import ArchiveType, ImageFormat, RepackConfig, default_jobs, output_archive_path
from .errors import Cancelled, RepackError
from .pipeline import repack
from .progress import ProgressReporter

logger = logging.getLogger(__name__)


def parse_size(text):
    """Parse a `WIDTHxHEIGHT` bound such as `1600x2400`."""
    try:
        width, height = (int(part) for part in text.lower().split("x", 1))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT, got '{text}'")
    if width < 1 or height < 1:
        raise argparse.ArgumentTypeError("dimensions must be positive")
    return width, height


def parse_quality(text):
    value = int(text)
    if not 1 <= value <= 100:
        raise argparse.ArgumentTypeError("quality must be between 1 and 100")
    return value


def _enum_type(enum_cls):
    def parse(text):
        try:
            return enum_cls.parse(text)
        except ValueError as e:
            raise argparse.ArgumentTypeError(str(e))

    parse.__name__ = enum_cls.__name__
    return parse


def build_parser():
    parser = argparse.ArgumentParser(
        prog="comic-repack",
        description="Convert comic book archives (CBZ/CBR/CB7) to other formats",
    )
    parser.add_argument("input", nargs="+", metavar="FILES", help="Input archives or glob patterns")
    parser.add_argument(
        "-o", "--output", type=Path, default=None,
        help="Output directory (default: current directory)",
    )
    parser.add_argument(
        "-f", "--format", type=_enum_type(ImageFormat), default=ImageFormat.AVIF,
        help="Output image format: avif, webp, png, jpeg, gif, bmp, tiff (default: avif)",
    )
    parser.add_argument("-q", "--quality", type=parse_quality, default=100, help="Quality 1-100 (default: 100)")
    parser.add_argument("-l", "--lossless", action="store_true", help="Lossless encoding (webp only)")
    parser.add_argument("-s", "--speed", type=int, default=3, choices=range(0, 11), metavar="0-10",
                        help="AVIF encoder speed (default: 3)")
    parser.add_argument("-j", "--jobs", type=int, default=default_jobs(),
                        help="Pages transcoded in parallel (default: number of CPUs)")
    parser.add_argument("-p", "--jobs-fs", type=int, default=1, metavar="JOBS",
                        help="Archives converted in parallel; they share the -j page workers (default: 1)")
    parser.add_argument(
        "-a", "--archive", type=_enum_type(ArchiveType), default=ArchiveType.CBZ, metavar="TYPE",
        help="Output archive type: cbz, zip, cb7, 7z (default: cbz)",
    )
    parser.add_argument("--force", action="store_true", help="Overwrite existing output files")
    parser.add_argument("--skip-errors", action="store_true",
                        help="Drop pages that cannot be converted instead of failing the archive")
    parser.add_argument("--retries", type=int, default=2, help="Retries for transient read errors (default: 2)")
    parser.add_argument("--pass-through", action="store_true",
                        help="Copy non-image files (ComicInfo.xml, ...) into the output")
    parser.add_argument("--reencode", action="store_true",
                        help="Re-encode pages already in a modern format (webp/avif)")
    parser.add_argument("--only-smaller", action="store_true",
                        help="Keep the original page when the converted one is not smaller")
    parser.add_argument("--max-size", type=parse_size, default=None, metavar="WxH",
                        help="Downscale pages to fit in this box")
    parser.add_argument("--pad", type=int, default=0, help="Zero-pad page names to this many digits")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More output (-vv for debug)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args):
    return RepackConfig(
        archive=args.archive,
        image_format=args.format,
        quality=args.quality,
        lossless=args.lossless,
        speed=args.speed,
        jobs=args.jobs,
        force=args.force,
        skip_on_error=args.skip_errors,
        retries=args.retries,
        pass_through=args.pass_through,
        reencode_same_format=args.reencode,
        only_if_smaller=args.only_smaller,
        max_size=args.max_size,
        pad_width=args.pad,
    )


def resolve_inputs(patterns):
    """
    Expand input arguments into a sorted, de-duplicated list of files.

    Existing paths are taken as-is; anything else is treated as a glob
    pattern. Patterns that match nothing are reported and ignored.
    """
    paths = set()
    for pattern in patterns:
        path = Path(pattern)
        if path.exists():
            paths.add(path)
            continue
        matches = [Path(match) for match in glob.glob(pattern, recursive=True)]
        if not matches:
            logger.warning("Path or glob pattern '%s' is wrong and will be ignored", pattern)
        paths.update(matches)
    return sorted(path for path in paths if path.is_file())


def _follow(reporter, progress, task):
    """Mirror the reporter's snapshot stream onto a progress bar task."""
    for snapshot in reporter:
        progress.update(task, completed=snapshot.done, total=snapshot.total or None)


def _convert_one(source, outdir, config, cancel, progress):
    """
    Convert one archive with its own pages bar.

    Returns:
        bool: True on success, False on failure, None if it never started
    """
    if cancel.is_set():
        return None
    destination = output_archive_path(source, outdir, config.archive)
    reporter = ProgressReporter()
    pages_task = progress.add_task(source.name, total=None)
    follower = threading.Thread(target=_follow, args=(reporter, progress, pages_task), daemon=True)
    follower.start()
    try:
        summary = repack(source, destination, config, reporter=reporter, cancel=cancel)
    except Cancelled:
        logger.warning("Cancelled: %s", source)
        return False
    except RepackError as e:
        logger.error("%s: %s", source, e)
        return False
    finally:
        follower.join()
        progress.remove_task(pages_task)

    if summary.skipped:
        logger.warning("Finished: %s (%d pages skipped)", source, len(summary.skipped))
    else:
        logger.info("Finished: %s", source)
    return True


def convert_all(sources, outdir, config, cancel, jobs_fs=1):
    """
    Convert every source, `jobs_fs` archives at a time.

    The page workers of `config` are shared between the archives in
    flight. Returns the number of archives that failed.
    """
    concurrency = max(min(jobs_fs, len(sources)), 1)
    archive_config = config.per_archive(concurrency)
    if concurrency > 1:
        logger.info("converting %d archives at a time, %d page workers each", concurrency, archive_config.jobs)
    failures = 0

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=None),
        MofNCompleteColumn(),
        TaskProgressColumn(),
        TimeRemainingColumn(),
        console=log.console,
        expand=True,
    )

    with progress:
        files_task = progress.add_task("files:", total=len(sources))
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="archive") as executor:
            futures = [
                executor.submit(_convert_one, source, outdir, archive_config, cancel, progress)
                for source in sources
            ]
            for future in as_completed(futures):
                if future.result() is False:
                    failures += 1
                progress.advance(files_task)

    return failures


def main(argv=None):
    args = build_parser().parse_args(argv)
    log.init(args.verbose)

    try:
        config = config_from_args(args)
    except ValueError as e:
        logger.error("%s", e)
        return 2
    if args.jobs_fs < 1:
        logger.error("jobs-fs must be at least 1")
        return 2
    logger.debug("input args: %s", args)

    sources = resolve_inputs(args.input)
    if not sources:
        logger.error("No input files")
        return 1

    outdir = args.output or Path.cwd()
    outdir.mkdir(parents=True, exist_ok=True)

    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    try:
        failures = convert_all(sources, outdir, config, cancel, jobs_fs=args.jobs_fs)
    finally:
        signal.signal(signal.SIGINT, previous)

    if failures:
        log.console.print(f"[red]{failures} of {len(sources)} archives failed[/red]")
        return 1
    log.console.print("[bold green]✓ Conversion complete![/bold green]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
