"""Pick the page images out of an archive listing and put them in reading order."""

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

from natsort import natsort_keygen, ns

from .errors import NoImagesFound
from .reader import Entry

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {
    ".jpg", ".jpeg", ".jpe", ".png", ".gif", ".bmp", ".tiff", ".tif", ".webp", ".avif",
}

# Entries that are obviously not pages, whatever their payload
TEXT_EXTENSIONS = {".txt", ".md", ".xml", ".html", ".svg", ".info", ".json", ".yml", ".yaml", ".nfo", ".sfv"}

JUNK_NAMES = {"thumbs.db", ".ds_store", "desktop.ini"}

# (offset, magic) pairs used when the extension does not settle it
IMAGE_SIGNATURES = (
    (0, b"\xff\xd8\xff"),  # JPEG
    (0, b"\x89PNG\r\n\x1a\n"),
    (0, b"GIF87a"),
    (0, b"GIF89a"),
    (0, b"BM"),
    (0, b"II*\x00"),  # TIFF little endian
    (0, b"MM\x00*"),  # TIFF big endian
    (8, b"WEBP"),  # after RIFF....
    (4, b"ftypavif"),
    (4, b"ftypavis"),
)

SNIFF_BYTES = 16

_natural_key = natsort_keygen(key=lambda entry: entry.name, alg=ns.PATH | ns.IGNORECASE)


@dataclass(frozen=True)
class Page:
    """An image entry with its position in reading order."""

    ordinal: int
    entry: Entry

    @property
    def name(self):
        return self.entry.name


def is_junk(name):
    """
    Check if an archive member is OS/tooling clutter rather than content.

    Matches `Thumbs.db`, `.DS_Store`, anything under `__MACOSX` and any path
    with a hidden (dot-prefixed) component, such as `.thumbnails/`.
    """
    path = PurePosixPath(name.replace("\\", "/"))
    if path.name.lower() in JUNK_NAMES:
        return True
    for part in path.parts:
        if part == "__MACOSX" or (len(part) > 1 and part.startswith(".")):
            return True
    return False


def looks_like_image(head):
    """Check raw leading bytes against known image signatures."""
    return any(head[offset:offset + len(magic)] == magic for offset, magic in IMAGE_SIGNATURES)


def classify(entry, sniff=None):
    """
    Decide whether an entry is a page image.

    The extension decides when it is a known image or text extension.
    Anything else (no extension, `.bin`, `.dat`...) is ambiguous and is
    settled by the first bytes, when a `sniff` callable is given.

    Args:
        entry (Entry): Archive member to classify
        sniff (callable): `sniff(entry) -> bytes` returning the leading bytes

    Returns:
        bool: True if the entry should become a Page
    """
    suffix = entry.suffix
    if suffix in IMAGE_EXTENSIONS:
        return True
    if suffix in TEXT_EXTENSIONS:
        return False
    media_type = entry.media_type
    if media_type and media_type != "application/octet-stream" and not media_type.startswith("image/"):
        return False
    if sniff is None:
        return False
    return looks_like_image(sniff(entry))


def natural_order(entries):
    """
    Sort entries the way a reader flips pages: `p2` before `p10`.

    Falls back to raw archive order when two names produce the same key
    (e.g. `01.jpg` and `01.JPG`), since then there is no reliable reading
    order in the names.
    """
    keyed = [(_natural_key(entry), entry) for entry in entries]
    keys = [key for key, _ in keyed]
    if len(set(keys)) != len(keys):
        logger.warning("page names are not uniquely sortable, keeping archive order")
        return sorted(entries, key=lambda entry: entry.index)
    keyed.sort(key=lambda pair: pair[0])
    return [entry for _, entry in keyed]


def split_entries(entries, sniff=None):
    """
    Separate an archive listing into page images and other files.

    Directories and junk are dropped from both lists.

    Returns:
        tuple[list[Entry], list[Entry]]: (images, others), both in archive order
    """
    images, others = [], []
    for entry in entries:
        if entry.is_dir or entry.name.endswith("/"):
            continue
        if is_junk(entry.name):
            logger.debug("filtered out inner file: %s", entry.name)
            continue
        if classify(entry, sniff):
            images.append(entry)
        else:
            others.append(entry)
    logger.debug("total: %d, images: %d, other: %d", len(entries), len(images), len(others))
    return images, others


def extract(entries, sniff=None):
    """
    Turn an archive listing into ordered pages.

    Args:
        entries (list[Entry]): Listing from ArchiveReader.enumerate_entries
        sniff (callable): Optional leading-bytes reader for ambiguous names

    Returns:
        list[Page]: Pages with contiguous ordinals 0..N-1

    Raises:
        NoImagesFound: No entry qualifies as a page
    """
    images, _ = split_entries(entries, sniff)
    return order_pages(images)


def order_pages(images):
    """Assign reading-order ordinals to already filtered image entries."""
    if not images:
        raise NoImagesFound("archive contains no page images")
    return [Page(ordinal, entry) for ordinal, entry in enumerate(natural_order(images))]
