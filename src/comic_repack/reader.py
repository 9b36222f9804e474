"""
Streaming readers for the source comic archive.

One reader class per container (ZIP, RAR, 7z). The concrete class is
chosen once, from the file signature, by `open_archive`; after that the
pipeline only talks to the common ArchiveReader interface:

    with open_archive("issue01.cbr") as reader:
        for entry in reader.enumerate_entries():
            data = reader.read_entry(entry)

Listing entries only touches the archive index. Payload bytes are read
one entry at a time, on demand (7z archives are staged to disk once, see
SevenZipReader).
"""

import logging
import lzma
import mimetypes
import tempfile
import zipfile
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import py7zr
import py7zr.exceptions
import rarfile

from .errors import ArchiveIOError, CorruptArchive, UnsupportedFormat

logger = logging.getLogger(__name__)


class SourceFormat(Enum):
    ZIP = "zip"
    RAR = "rar"
    SEVEN_ZIP = "7z"


# Leading magic bytes of every container we can read
SIGNATURES = (
    (b"PK\x03\x04", SourceFormat.ZIP),
    (b"PK\x05\x06", SourceFormat.ZIP),  # empty archive
    (b"PK\x07\x08", SourceFormat.ZIP),  # spanned archive marker
    (b"Rar!\x1a\x07", SourceFormat.RAR),  # RAR 4 and 5
    (b"7z\xbc\xaf\x27\x1c", SourceFormat.SEVEN_ZIP),
)

EXTENSIONS = {
    ".cbz": SourceFormat.ZIP,
    ".zip": SourceFormat.ZIP,
    ".cbr": SourceFormat.RAR,
    ".rar": SourceFormat.RAR,
    ".cb7": SourceFormat.SEVEN_ZIP,
    ".7z": SourceFormat.SEVEN_ZIP,
}


@dataclass(frozen=True)
class Entry:
    """One named member of a source archive. Holds metadata only, never bytes."""

    name: str
    index: int
    size: int = 0
    is_dir: bool = False

    @property
    def media_type(self):
        return mimetypes.guess_type(self.name, strict=False)[0]

    @property
    def suffix(self):
        return Path(self.name).suffix.lower()


def sniff_format(head):
    """Return the SourceFormat whose signature starts `head`, or None."""
    for magic, fmt in SIGNATURES:
        if head.startswith(magic):
            return fmt
    return None


def detect_format(path):
    """
    Detect the container of `path` from its leading bytes.

    The extension is only used to warn about misnamed files (a `.cbr` that
    is really a zip is common), never to pick the reader.

    Raises:
        UnsupportedFormat: Signature matches no known container
        ArchiveIOError: File cannot be read
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            head = f.read(8)
    except OSError as e:
        raise ArchiveIOError(f"cannot read {path}: {e}") from e

    fmt = sniff_format(head)
    if fmt is None:
        raise UnsupportedFormat(f"unknown archive signature in {path}")

    expected = EXTENSIONS.get(path.suffix.lower())
    if expected is not None and expected is not fmt:
        logger.warning(
            "'%s' has a %s extension but is a %s archive", path.name, expected.value, fmt.value
        )
    return fmt


class ArchiveReader:
    """
    Common interface of all source readers.

    Subclasses implement `_open`, `_list` and `_stream`, and declare which
    library exceptions mean a damaged archive (`corrupt_errors`). Everything
    else, including error translation, lives here.
    """

    format = None
    corrupt_errors = ()

    def __init__(self, path):
        self.path = Path(path)
        self._archive = None
        self._entries = None
        self._infos = {}

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f"<{type(self).__name__} {self.path}>"

    @property
    def closed(self):
        return self._archive is None

    def open(self):
        if self._archive is not None:
            return self
        logger.debug("opening input: '%s'", self.path)
        try:
            self._archive = self._open()
        except self.corrupt_errors as e:
            raise CorruptArchive(f"cannot parse {self.path.name}: {e}") from e
        except OSError as e:
            raise ArchiveIOError(f"cannot open {self.path}: {e}") from e
        return self

    def close(self):
        if self._archive is not None:
            try:
                self._archive.close()
            finally:
                self._archive = None

    def enumerate_entries(self):
        """
        List archive members in raw archive order.

        Only the index/directory structure is read, no payload bytes.

        Returns:
            list[Entry]: One Entry per member, directories included
        """
        self._require_open()
        if self._entries is None:
            try:
                self._entries = list(self._list())
            except self.corrupt_errors as e:
                raise CorruptArchive(f"cannot read index of {self.path.name}: {e}") from e
            except OSError as e:
                raise ArchiveIOError(f"cannot read index of {self.path}: {e}") from e
            logger.debug("'%s': %d entries", self.path.name, len(self._entries))
        return self._entries

    def read_entry_stream(self, entry):
        """Return a binary file object for `entry`. It can be consumed once."""
        self._require_open()
        if entry.is_dir:
            raise ValueError(f"'{entry.name}' is a directory")
        return self._stream(entry)

    def read_entry(self, entry, limit=-1):
        """
        Read an entry's bytes, translating library errors to the taxonomy.

        Args:
            entry (Entry): Member to read
            limit (int): Read at most this many bytes (-1 for all)

        Raises:
            CorruptArchive: Member data fails to decompress or checksum
            ArchiveIOError: Underlying read failed (may be retried)
        """
        try:
            with self.read_entry_stream(entry) as stream:
                return stream.read(limit)
        except self.corrupt_errors as e:
            raise CorruptArchive(f"damaged member: {e}", entry_name=entry.name) from e
        except OSError as e:
            raise ArchiveIOError(f"read failed: {e}", entry_name=entry.name) from e

    def _require_open(self):
        if self._archive is None:
            raise ArchiveIOError(f"{self.path.name} is not open")

    def _open(self):
        raise NotImplementedError

    def _list(self):
        raise NotImplementedError

    def _stream(self, entry):
        raise NotImplementedError


class ZipReader(ArchiveReader):
    format = SourceFormat.ZIP
    corrupt_errors = (zipfile.BadZipFile, zlib.error, EOFError)

    def _open(self):
        return zipfile.ZipFile(self.path, "r")

    def _list(self):
        for index, info in enumerate(self._archive.infolist()):
            self._infos[index] = info
            yield Entry(info.filename, index, info.file_size, info.is_dir())

    def read_entry(self, entry, limit=-1):
        try:
            return super().read_entry(entry, limit)
        except NotImplementedError as e:
            # zipfile raises this for compression methods it lacks (e.g. PPMd)
            raise UnsupportedFormat(str(e), entry_name=entry.name) from e
        except RuntimeError as e:
            # zipfile refuses encrypted members without a password
            raise UnsupportedFormat(f"{self.path.name} is encrypted", entry_name=entry.name) from e

    def _stream(self, entry):
        return self._archive.open(self._infos[entry.index], "r")


class RarReader(ArchiveReader):
    """
    RAR reader backed by `rarfile`.

    Listing works in pure Python; extracting compressed members needs an
    `unrar`/`unar`/`bsdtar` tool on PATH, which rarfile locates itself.
    """

    format = SourceFormat.RAR
    corrupt_errors = (rarfile.BadRarFile, rarfile.NotRarFile, rarfile.BadRarName)

    def open(self):
        try:
            return super().open()
        except rarfile.NeedFirstVolume as e:
            raise UnsupportedFormat(f"{self.path.name} is not the first volume: {e}") from e
        except rarfile.PasswordRequired as e:
            raise UnsupportedFormat(f"{self.path.name} is encrypted") from e

    def _open(self):
        return rarfile.RarFile(self.path, "r")

    def _list(self):
        for index, info in enumerate(self._archive.infolist()):
            self._infos[index] = info
            yield Entry(info.filename, index, info.file_size, info.is_dir())

    def read_entry(self, entry, limit=-1):
        try:
            return super().read_entry(entry, limit)
        except rarfile.RarCannotExec as e:
            raise UnsupportedFormat(
                f"no unrar tool available to extract {self.path.name}", entry_name=entry.name
            ) from e
        except rarfile.PasswordRequired as e:
            raise UnsupportedFormat(f"{self.path.name} is encrypted", entry_name=entry.name) from e
        except rarfile.Error as e:
            raise CorruptArchive(f"damaged member: {e}", entry_name=entry.name) from e

    def _stream(self, entry):
        return self._archive.open(self._infos[entry.index], "r")


class SevenZipReader(ArchiveReader):
    """
    7z reader backed by `py7zr`.

    7z archives are usually solid: any member can only be reached by
    decompressing the block from its start. The first payload read
    extracts the whole archive into a private temporary directory in one
    pass; members are then served from disk, in any order, and the
    directory is removed on close.
    """

    format = SourceFormat.SEVEN_ZIP
    corrupt_errors = (
        py7zr.exceptions.Bad7zFile,
        py7zr.exceptions.CrcError,
        py7zr.exceptions.DecompressionError,
        lzma.LZMAError,
        EOFError,
    )

    def __init__(self, path):
        super().__init__(path)
        self._staging = None

    def open(self):
        try:
            return super().open()
        except (py7zr.exceptions.PasswordRequired, py7zr.exceptions.UnsupportedCompressionMethodError) as e:
            raise UnsupportedFormat(f"cannot read {self.path.name}: {e}") from e

    def close(self):
        try:
            super().close()
        finally:
            if self._staging is not None:
                self._staging.cleanup()
                self._staging = None

    def read_entry(self, entry, limit=-1):
        try:
            return super().read_entry(entry, limit)
        except (py7zr.exceptions.PasswordRequired, py7zr.exceptions.UnsupportedCompressionMethodError) as e:
            raise UnsupportedFormat(f"cannot extract {self.path.name}: {e}", entry_name=entry.name) from e

    def _open(self):
        return py7zr.SevenZipFile(self.path, mode="r")

    def _list(self):
        for index, info in enumerate(self._archive.list()):
            yield Entry(info.filename, index, info.uncompressed or 0, bool(info.is_directory))

    def _stage(self):
        staging = tempfile.TemporaryDirectory(prefix="comic-repack-")
        logger.debug("extracting '%s' to %s", self.path.name, staging.name)
        try:
            self._archive.extractall(path=staging.name)
        except Exception:
            staging.cleanup()
            raise
        finally:
            self._archive.reset()
        self._staging = staging

    def _stream(self, entry):
        if self._staging is None:
            self._stage()
        path = Path(self._staging.name, entry.name)
        if not path.is_file():
            raise CorruptArchive("member listed in index but missing from data", entry_name=entry.name)
        return open(path, "rb")


READERS = {
    SourceFormat.ZIP: ZipReader,
    SourceFormat.RAR: RarReader,
    SourceFormat.SEVEN_ZIP: SevenZipReader,
}


def open_archive(path):
    """
    Detect the container of `path` and return an opened reader for it.

    The reader owns the file handle; use it as a context manager so the
    handle is released on success and on error.
    """
    reader = READERS[detect_format(path)](path)
    return reader.open()
