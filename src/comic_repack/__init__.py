"""Convert comic book archives to other containers and image formats."""

__version__ = "0.2.0"

from .config import ArchiveType, ImageFormat, RepackConfig, output_archive_path
from .errors import (
    ArchiveIOError,
    Cancelled,
    CorruptArchive,
    DecodeError,
    DiskFull,
    EncodeError,
    NoImagesFound,
    RepackError,
    UnsupportedColorSpace,
    UnsupportedFormat,
)
from .pipeline import RepackSummary, repack
from .progress import JobCompleted, Outcome, ProgressReporter, ProgressSnapshot

__all__ = [
    "ArchiveIOError",
    "ArchiveType",
    "Cancelled",
    "CorruptArchive",
    "DecodeError",
    "DiskFull",
    "EncodeError",
    "ImageFormat",
    "JobCompleted",
    "NoImagesFound",
    "Outcome",
    "ProgressReporter",
    "ProgressSnapshot",
    "RepackConfig",
    "RepackError",
    "RepackSummary",
    "UnsupportedColorSpace",
    "UnsupportedFormat",
    "output_archive_path",
    "repack",
]
