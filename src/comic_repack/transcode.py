"""
Page image transcoding with Pillow.

`transcode` is a pure function of its inputs: it takes the page bytes and
the run configuration and returns new bytes. It shares no state between
calls, so any number of worker threads can run it at once.
"""

import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image

from .config import MODERN_FORMATS, ImageFormat
from .errors import DecodeError, EncodeError, UnsupportedColorSpace

logger = logging.getLogger(__name__)

# Pillow modes each encoder takes without conversion
SUPPORTED_MODES = {
    ImageFormat.WEBP: {"RGB", "RGBA"},
    ImageFormat.AVIF: {"RGB", "RGBA"},
    ImageFormat.JPEG: {"L", "RGB", "CMYK"},
    ImageFormat.PNG: {"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"},
    ImageFormat.GIF: {"1", "L", "P", "RGB", "RGBA"},
    ImageFormat.BMP: {"1", "L", "P", "RGB"},
    ImageFormat.TIFF: {"1", "L", "LA", "P", "RGB", "RGBA", "CMYK", "I", "I;16", "F"},
}

ALPHA_MODES = {"RGBA", "LA", "PA", "RGBa", "La"}

# High bit depth modes: down-converting them would silently clip values
DEEP_MODES = {"I", "F"}


@dataclass(frozen=True)
class Transcoded:
    """
    Outcome of a successful transcode.

    Attributes:
        data: Bytes to store in the destination archive
        ext: Extension for the destination entry name (no dot)
        converted: False when the original bytes were kept
        source_size: Size of the input bytes
    """

    data: bytes
    ext: str
    converted: bool
    source_size: int

    @property
    def ratio(self):
        return len(self.data) / self.source_size * 100.0 if self.source_size else 0.0


def source_format_of(name):
    """Guess the ImageFormat of a page from its entry name, or None."""
    suffix = name.rsplit(".", 1)[-1] if "." in name else ""
    try:
        return ImageFormat.parse(suffix)
    except ValueError:
        return None


def decode(data, source_format=None):
    """
    Decode page bytes into a fully loaded Pillow image.

    Raises:
        DecodeError: Bytes are not a readable image (truncated, unknown, bomb)
    """
    formats = [source_format.pil_name] if source_format else None
    try:
        image = Image.open(BytesIO(data), formats=formats)
        image.load()
    except Image.DecompressionBombError as e:
        raise DecodeError(f"image too large: {e}") from e
    except (OSError, SyntaxError, ValueError, EOFError) as e:
        if formats is not None:
            # Misnamed page (a PNG saved as .jpg): retry with every decoder
            return decode(data)
        raise DecodeError(f"cannot decode image: {e}") from e
    return image


def _target_mode(image, target):
    mode = image.mode
    supported = SUPPORTED_MODES[target]
    if mode in supported:
        return mode
    if mode in DEEP_MODES or mode.startswith("I;"):
        raise UnsupportedColorSpace(f"{target.value} cannot store {mode} images")
    has_alpha = mode in ALPHA_MODES or (mode == "P" and "transparency" in image.info)
    if has_alpha and "RGBA" in supported:
        return "RGBA"
    if "RGB" in supported:
        return "RGB"
    if "L" in supported:
        return "L"
    raise UnsupportedColorSpace(f"{target.value} cannot store {mode} images")


def prepare(image, target):
    """
    Convert an image to a mode the target encoder accepts.

    Palette and alpha images keep their transparency when the encoder can
    store it; otherwise they are flattened to RGB.

    Raises:
        UnsupportedColorSpace: No lossless-enough conversion exists
    """
    mode = _target_mode(image, target)
    if mode == image.mode:
        return image
    try:
        return image.convert(mode)
    except ValueError as e:
        raise UnsupportedColorSpace(f"cannot convert {image.mode} to {mode}: {e}") from e


def encode_options(config):
    """Pillow `save` keyword arguments for the configured target codec."""
    fmt = config.image_format
    if fmt is ImageFormat.WEBP:
        # method 6: slowest, smallest. exif=b"": strip metadata
        return {"quality": config.quality, "lossless": config.lossless, "method": 6, "exif": b""}
    if fmt is ImageFormat.AVIF:
        return {"quality": config.quality, "speed": config.speed}
    if fmt is ImageFormat.JPEG:
        return {"quality": config.quality, "optimize": True}
    if fmt is ImageFormat.PNG:
        return {"optimize": True, "compress_level": 9}
    return {}


def encode(image, config):
    """
    Encode a decoded image with the configured codec.

    Raises:
        UnsupportedColorSpace: Image mode has no encodable equivalent
        EncodeError: Encoder missing or rejecting the image
    """
    image = prepare(image, config.image_format)
    buffer = BytesIO()
    try:
        image.save(buffer, format=config.image_format.pil_name, **encode_options(config))
    except KeyError as e:
        raise EncodeError(f"no {config.image_format.value} encoder in this Pillow build") from e
    except (OSError, ValueError) as e:
        raise EncodeError(f"encoder rejected {image.mode} {image.size[0]}x{image.size[1]} image: {e}") from e
    return buffer.getvalue()


def is_same_format(source, target):
    if source is None:
        return False
    return source is target or (source in MODERN_FORMATS and target in MODERN_FORMATS)


def transcode(data, config, source_format=None, source_ext=None, on_encode=None):
    """
    Re-encode one page into the configured image format.

    Args:
        data (bytes): Raw page bytes as stored in the source archive
        config (RepackConfig): Target codec, quality and resize settings
        source_format (ImageFormat): Codec implied by the entry name, if known
        source_ext (str): Original extension, used when bytes are kept
        on_encode (callable): Called once decoding succeeded, before encoding

    Returns:
        Transcoded: New bytes and the extension for the destination entry

    Raises:
        DecodeError: Page bytes cannot be decoded
        EncodeError: Encoder failed
        UnsupportedColorSpace: Page colour mode cannot be stored in the target
    """
    target = config.image_format
    keep_ext = source_ext or (source_format.ext if source_format else target.ext)

    if not config.reencode_same_format and config.max_size is None and is_same_format(source_format, target):
        logger.debug("copying as-is, already %s", source_format.value)
        return Transcoded(data, keep_ext, False, len(data))

    with decode(data, source_format) as image:
        if config.max_size is not None and (image.width > config.max_size[0] or image.height > config.max_size[1]):
            image.thumbnail(config.max_size, Image.Resampling.LANCZOS)
        if on_encode is not None:
            on_encode()
        output = encode(image, config)

    if config.only_if_smaller and len(output) >= len(data):
        logger.debug("keeping original, %s is not smaller (%d >= %d)", target.value, len(output), len(data))
        return Transcoded(data, keep_ext, False, len(data))

    return Transcoded(output, target.ext, True, len(data))
