"""Shared fixtures: real images and real archives built in tmp_path."""

import zipfile
from io import BytesIO

import py7zr
import pytest
from PIL import Image


def image_bytes(fmt="PNG", size=(40, 60), mode="RGB", color=(200, 30, 30)):
    """Encode a solid test image and return its bytes."""
    if mode in ("L", "1"):
        color = 128
    elif mode == "RGBA":
        color = (200, 30, 30, 120)
    img = Image.new(mode, size, color=color)
    buffer = BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def make_zip(path, members):
    """Write `members` (list of (name, bytes)) into a zip at `path`, in order."""
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in members:
            zf.writestr(name, data)
    return path


def make_7z(path, members):
    with py7zr.SevenZipFile(path, "w") as archive:
        for name, data in members:
            archive.writestr(data, name)
    return path


def mark_encrypted(path):
    """Set the "encrypted" flag bit on every member of the zip at `path`."""
    data = bytearray(path.read_bytes())
    # general purpose flags: offset 6 in local headers, 8 in central directory headers
    for magic, offset in ((b"PK\x03\x04", 6), (b"PK\x01\x02", 8)):
        start = data.find(magic)
        while start != -1:
            data[start + offset] |= 0x01
            start = data.find(magic, start + len(magic))
    path.write_bytes(bytes(data))
    return path


def zip_names(path):
    with zipfile.ZipFile(path) as zf:
        return zf.namelist()


def zip_image(path, name):
    with zipfile.ZipFile(path) as zf:
        img = Image.open(BytesIO(zf.read(name)))
        img.load()
        return img


@pytest.fixture
def jpeg_page():
    return image_bytes("JPEG", size=(40, 60))


@pytest.fixture
def png_page():
    return image_bytes("PNG", size=(30, 50))


@pytest.fixture
def issue01(tmp_path, jpeg_page, png_page):
    """Two pages and a text file, stored out of reading order."""
    return make_zip(
        tmp_path / "issue01.cbz",
        [("p2.png", png_page), ("cover.txt", b"just text"), ("p1.jpg", jpeg_page)],
    )


@pytest.fixture
def long_issue(tmp_path):
    """Twelve pages whose names only sort correctly with natural ordering."""
    members = [(f"page{i}.png", image_bytes("PNG", size=(10 + i, 20))) for i in range(12, 0, -1)]
    return make_zip(tmp_path / "long.cbz", members)
