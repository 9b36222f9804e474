"""
Run configuration for the repack pipeline.

A RepackConfig is built once per run (by the command-line layer or by a
caller using the library directly) and handed to every stage. Nothing in
the pipeline reads process-wide settings.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path


class ArchiveType(Enum):
    """Destination container. CBZ/ZIP and CB7/7Z differ only by extension."""

    CBZ = "cbz"
    ZIP = "zip"
    CB7 = "cb7"
    SEVEN_ZIP = "7z"

    @property
    def ext(self):
        return self.value

    @property
    def is_zip(self):
        return self in (ArchiveType.CBZ, ArchiveType.ZIP)

    @classmethod
    def parse(cls, text):
        text = text.lower().lstrip(".")
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unsupported archive type: {text}")


class ImageFormat(Enum):
    """Target image codec, mapped onto the Pillow plugin that writes it."""

    AVIF = "avif"
    WEBP = "webp"
    PNG = "png"
    JPEG = "jpeg"
    GIF = "gif"
    BMP = "bmp"
    TIFF = "tiff"

    @property
    def ext(self):
        return self.value

    @property
    def pil_name(self):
        return self.value.upper()

    @classmethod
    def parse(cls, text):
        text = text.lower().lstrip(".")
        text = _IMAGE_ALIASES.get(text, text)
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unsupported image format: {text}")

    @classmethod
    def from_pil(cls, pil_format):
        """Map a Pillow `Image.format` value back to an ImageFormat, or None."""
        if not pil_format:
            return None
        try:
            return cls.parse(pil_format)
        except ValueError:
            return None


_IMAGE_ALIASES = {"jpg": "jpeg", "jpe": "jpeg", "tif": "tiff"}

# Formats good enough that re-encoding between them is not worth it
MODERN_FORMATS = frozenset({ImageFormat.WEBP, ImageFormat.AVIF})


def default_jobs():
    return max(os.cpu_count() or 1, 1)


@dataclass(frozen=True)
class RepackConfig:
    """
    Everything a single repack run needs to know.

    Attributes:
        archive: Destination container type
        image_format: Target image codec
        quality: Encoder quality 1-100 (ignored by lossless codecs)
        lossless: WebP lossless mode
        speed: AVIF encoder speed 0-10 (higher is faster, larger)
        jobs: Maximum number of pages transcoded concurrently (K)
        lookahead: Maximum number of pages read ahead of the writer cursor;
            defaults to 2 * jobs
        force: Overwrite an existing destination file
        skip_on_error: Drop pages that fail to decode/encode instead of aborting
        retries: Extra read attempts for transient I/O errors per page
        pass_through: Copy non-image entries (ComicInfo.xml, ...) unchanged
        reencode_same_format: Re-encode pages already in the target codec
        only_if_smaller: Keep the original page when the new one is not smaller
        max_size: Optional (width, height) bound; pages are only resized when set
        pad_width: Zero-pad output page names to this many digits
    """

    archive: ArchiveType = ArchiveType.CBZ
    image_format: ImageFormat = ImageFormat.AVIF
    quality: int = 100
    lossless: bool = False
    speed: int = 3
    jobs: int = field(default_factory=default_jobs)
    lookahead: int = 0
    force: bool = False
    skip_on_error: bool = False
    retries: int = 2
    pass_through: bool = False
    reencode_same_format: bool = False
    only_if_smaller: bool = False
    max_size: tuple = None
    pad_width: int = 0

    def __post_init__(self):
        if not 1 <= self.quality <= 100:
            raise ValueError("quality must be between 1 and 100")
        if not 0 <= self.speed <= 10:
            raise ValueError("speed must be between 0 and 10")
        if self.jobs < 1:
            raise ValueError("jobs must be at least 1")
        if self.retries < 0:
            raise ValueError("retries must not be negative")
        if self.pad_width < 0:
            raise ValueError("pad_width must not be negative")
        if self.lookahead < 0:
            raise ValueError("lookahead must not be negative")
        if self.lookahead == 0:
            # frozen dataclass: bypass __setattr__ for the derived default
            object.__setattr__(self, "lookahead", 2 * self.jobs)
        elif self.lookahead < self.jobs:
            raise ValueError("lookahead must be at least jobs")
        if self.max_size is not None:
            width, height = self.max_size
            if width < 1 or height < 1:
                raise ValueError("max_size dimensions must be positive")
            object.__setattr__(self, "max_size", (int(width), int(height)))

    def per_archive(self, concurrency):
        """
        Config for one of `concurrency` archives converted at the same time.

        The page workers are divided between the archives (at least one
        each) and the lookahead window shrinks with them.
        """
        if concurrency <= 1:
            return self
        jobs = max(self.jobs // concurrency, 1)
        lookahead = max(self.lookahead * jobs // self.jobs, jobs)
        return replace(self, jobs=jobs, lookahead=lookahead)

    def page_name(self, ordinal, ext=None):
        """Name of the destination entry for a page, e.g. `0.webp`."""
        ext = ext or self.image_format.ext
        return f"{ordinal:0{self.pad_width}d}.{ext}" if self.pad_width else f"{ordinal}.{ext}"


def _sanitize_path(path):
    """Drop the anchor and any `..` parts so the path can be joined under outdir."""
    return Path(*[part for part in path.parts if part not in ("..", path.anchor)])


def output_archive_path(source, outdir, archive):
    """
    Derive the destination path for a source archive.

    Absolute sources keep only their file name; relative sources keep their
    relative directory layout (minus any `..`). The extension is replaced by
    the destination archive type's.

    Example:
        >>> output_archive_path("comics/issue01.cbr", "out", ArchiveType.CBZ)
        PosixPath('out/comics/issue01.cbz')
    """
    source = Path(source)
    if source.is_absolute():
        subpath = Path(source.name)
    else:
        subpath = _sanitize_path(source)
    return Path(outdir) / subpath.with_suffix(f".{archive.ext}")
