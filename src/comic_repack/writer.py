"""
Destination archive writers.

A writer streams entries into a hidden temporary file next to the
destination and only renames it into place in `finalize`. Whatever
happens before that (an error, a cancellation, a crash) the destination
path never holds a half-written archive.

Pages must be committed strictly in ordinal order; the writer keeps a
cursor of the next expected ordinal and refuses anything else.
"""

import calendar
import logging
import os
import tempfile
import zipfile
from pathlib import Path

import py7zr
from py7zr.helpers import ArchiveTimestamp

from .errors import ArchiveIOError, OutOfOrderCommit, io_error_from

logger = logging.getLogger(__name__)

# Fixed member timestamp so identical input gives identical bytes
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class ArchiveWriter:
    """
    Base writer: temp-file lifecycle, commit cursor and error translation.

    Args:
        path (Path): Final destination path
        force (bool): Replace an existing destination file
    """

    def __init__(self, path, force=False):
        self.path = Path(path)
        self.force = force
        self.next_ordinal = 0
        self.committed = 0
        self.names = []
        self._temp_path = None
        self._archive = None
        self._finalized = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None or not self._finalized:
            self.discard()
        return False

    @property
    def temp_path(self):
        return self._temp_path

    def open(self):
        if self._archive is not None:
            return self
        logger.debug("opening output: '%s'", self.path)
        if self.path.exists() and not self.force:
            raise ArchiveIOError(f"output file already exists {self.path}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".part", dir=self.path.parent)
            os.close(fd)
            self._temp_path = Path(temp)
            self._archive = self._open(self._temp_path)
        except OSError as e:
            self.discard()
            raise io_error_from(e, f"cannot create output for {self.path}") from e
        return self

    def commit(self, ordinal, name, data):
        """
        Append page `ordinal` under `name`.

        Raises:
            OutOfOrderCommit: `ordinal` is not the next expected one
            ArchiveIOError, DiskFull: Write failed
        """
        if ordinal != self.next_ordinal:
            raise OutOfOrderCommit(f"expected page {self.next_ordinal}, got {ordinal}", ordinal=ordinal)
        logger.debug("writing '%s' to output archive", name)
        self._write(name, data, ordinal)
        self.next_ordinal += 1
        self.committed += 1

    def skip(self, ordinal):
        """Advance the cursor past a page that will not be written."""
        if ordinal != self.next_ordinal:
            raise OutOfOrderCommit(f"expected page {self.next_ordinal}, got {ordinal}", ordinal=ordinal)
        self.next_ordinal += 1

    def write_extra(self, name, data):
        """Append a non-page member (copied metadata) after the pages."""
        logger.debug("copying '%s' to output archive", name)
        self._write(name, data, None)

    def _write(self, name, data, ordinal):
        if self._archive is None:
            raise ArchiveIOError(f"{self.path.name} is not open for writing", ordinal=ordinal, entry_name=name)
        try:
            self._add(name, data)
        except OSError as e:
            raise io_error_from(e, "write failed", ordinal=ordinal, entry_name=name) from e
        self.names.append(name)

    def finalize(self):
        """
        Write the archive index, flush to disk and move it into place.

        Returns:
            os.stat_result: Stat of the finished destination file
        """
        try:
            self._close(self._archive)
            self._archive = None
            with open(self._temp_path, "rb+") as f:
                os.fsync(f.fileno())
            os.replace(self._temp_path, self.path)
        except OSError as e:
            self.discard()
            raise io_error_from(e, f"cannot finalize {self.path}") from e
        self._finalized = True
        self._temp_path = None
        return self.path.stat()

    def discard(self):
        """Drop the temporary output. The destination path is left untouched."""
        if self._archive is not None:
            archive, self._archive = self._archive, None
            try:
                self._close(archive)
            except Exception as e:
                logger.debug("ignoring error while closing discarded output: %s", e)
        if self._temp_path is not None:
            try:
                self._temp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("could not remove temporary file %s: %s", self._temp_path, e)
            self._temp_path = None

    def _open(self, temp_path):
        raise NotImplementedError

    def _add(self, name, data):
        raise NotImplementedError

    def _close(self, archive):
        archive.close()


class ZipWriter(ArchiveWriter):
    """CBZ/ZIP output, DEFLATE at maximum compression."""

    def _open(self, temp_path):
        return zipfile.ZipFile(temp_path, "w", zipfile.ZIP_DEFLATED, compresslevel=9)

    def _add(self, name, data):
        info = zipfile.ZipInfo(name, date_time=ZIP_EPOCH)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        self._archive.writestr(info, data, compress_type=zipfile.ZIP_DEFLATED, compresslevel=9)


class SevenZipWriter(ArchiveWriter):
    """CB7/7z output, LZMA2 preset 9."""

    filters = [{"id": py7zr.FILTER_LZMA2, "preset": 9}]
    # py7zr stamps members with the current time; pin them to ZIP_EPOCH
    timestamp = ArchiveTimestamp.from_datetime(calendar.timegm(ZIP_EPOCH))

    def _open(self, temp_path):
        return py7zr.SevenZipFile(temp_path, mode="w", filters=self.filters)

    def _add(self, name, data):
        self._archive.writestr(data, name)
        info = self._archive.header.files_info.files[-1]
        info["creationtime"] = self.timestamp
        info["lastwritetime"] = self.timestamp


def open_writer(path, archive, force=False):
    """Return an opened writer for the configured destination ArchiveType."""
    cls = ZipWriter if archive.is_zip else SevenZipWriter
    return cls(path, force=force).open()
