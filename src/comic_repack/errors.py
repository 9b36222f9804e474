"""Error taxonomy shared by every stage of the repack pipeline."""

import errno

_NO_SPACE = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class RepackError(Exception):
    """
    Base class for all pipeline errors.

    Args:
        message (str): Human readable description
        ordinal (int): Page ordinal the error belongs to, if page scoped
        entry_name (str): Archive entry name the error belongs to, if any
    """

    kind = "RepackError"
    # Archive-level kinds abort the run no matter the skip policy
    always_fatal = True

    def __init__(self, message, ordinal=None, entry_name=None):
        super().__init__(message)
        self.message = message
        self.ordinal = ordinal
        self.entry_name = entry_name

    @property
    def page_scoped(self):
        return self.ordinal is not None or self.entry_name is not None

    def is_fatal(self, skip_on_error=False):
        """Return True if this error must abort the whole run."""
        return self.always_fatal or not skip_on_error

    def __str__(self):
        where = []
        if self.ordinal is not None:
            where.append(f"page {self.ordinal}")
        if self.entry_name is not None:
            where.append(f"'{self.entry_name}'")
        if where:
            return f"{self.kind}: {self.message} ({', '.join(where)})"
        return f"{self.kind}: {self.message}"


class UnsupportedFormat(RepackError):
    kind = "UnsupportedFormat"


class CorruptArchive(RepackError):
    kind = "CorruptArchive"


class NoImagesFound(RepackError):
    kind = "NoImagesFound"


class ArchiveIOError(RepackError):
    """Transient read/write failure, retried while extracting pages."""

    kind = "IoError"


class DiskFull(ArchiveIOError):
    kind = "DiskFull"


class PageError(RepackError):
    """Content-dependent failure of a single page. Never retried."""

    always_fatal = False


class DecodeError(PageError):
    kind = "DecodeError"


class EncodeError(PageError):
    kind = "EncodeError"


class UnsupportedColorSpace(EncodeError):
    kind = "UnsupportedColorSpace"


class Cancelled(RepackError):
    kind = "Cancelled"

    def __init__(self, message="cancelled by request", ordinal=None, entry_name=None):
        super().__init__(message, ordinal, entry_name)


class OutOfOrderCommit(RepackError):
    """Raised by the writer when an ordinal arrives before its predecessor."""

    kind = "OutOfOrderCommit"


def io_error_from(exc, message, **where):
    """
    Translate an OSError into ArchiveIOError or DiskFull.

    Args:
        exc (OSError): Original exception
        message (str): Context prefix for the new error

    Returns:
        ArchiveIOError: DiskFull when the OS reports no space left
    """
    cls = DiskFull if getattr(exc, "errno", None) in _NO_SPACE else ArchiveIOError
    return cls(f"{message}: {exc}", **where)
