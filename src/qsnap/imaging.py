"""Image encoding helpers.

Every image inside the engine travels as an RFC 2397 data URL
(``data:image/jpeg;base64,...``). This module converts between files, raw bytes,
PIL images and data URLs, and prepares photos before they are sent to Gemini.

Example:
    >>> from qsnap.imaging import load_image_file, center_square_crop
    >>> raw = load_image_file(Path("me.png"))
    >>> crop = center_square_crop(raw)
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from qsnap.core.errors import QSnapError

logger = logging.getLogger(__name__)

# Longest edge of a photo sent to the service
MAX_UPLOAD_EDGE = 1600
UPLOAD_QUALITY = 80

# Face crop produced by the CLI crop collaborator
CROP_SIZE = 512
CROP_QUALITY = 95

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.\-]+)?(?:;[\w=\-]+)*;base64,(?P<data>.*)$", re.S)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


class ImageDecodeError(QSnapError):
    """An input could not be read as an image."""

    default_remediation = "Use a JPEG, PNG or WebP photo."


# =============================================================================
# Data URLs
# =============================================================================


def encode_data_url(data: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(data_url: str) -> tuple[str, bytes]:
    """Split a data URL into its MIME type and decoded payload.

    A bare base64 string (no ``data:`` header) is accepted and treated as JPEG,
    which is how older persisted albums stored their anchors.

    Raises:
        ImageDecodeError: If the payload is not valid base64.
    """
    match = _DATA_URL_RE.match(data_url.strip())
    if match:
        mime_type = match.group("mime") or "image/jpeg"
        payload = match.group("data")
    else:
        mime_type, payload = "image/jpeg", data_url.strip()
    try:
        return mime_type, base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError("Image data is not valid base64.") from e


def extension_for(mime_type: str) -> str:
    """File extension for a MIME type, defaulting to jpg."""
    return _EXTENSIONS.get(mime_type.lower(), "jpg")


# =============================================================================
# PIL conversions
# =============================================================================


def open_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageDecodeError("Could not read image data.") from e
    # Respect camera orientation before any cropping happens
    return ImageOps.exif_transpose(img)


def to_jpeg_bytes(img: Image.Image, quality: int = UPLOAD_QUALITY) -> bytes:
    if img.mode != "RGB":
        img = img.convert("RGB")
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def normalize_for_upload(
    data: bytes, max_edge: int = MAX_UPLOAD_EDGE, quality: int = UPLOAD_QUALITY
) -> bytes:
    """Convert to RGB JPEG with a bounded longest edge."""
    img = open_image(data)
    if img.mode != "RGB":
        img = img.convert("RGB")
    img.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)
    return to_jpeg_bytes(img, quality)


def load_image_file(path: Path) -> str:
    """Read a photo from disk and return it as a normalised JPEG data URL.

    Raises:
        ImageDecodeError: If the file cannot be read or is not an image.
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ImageDecodeError(f"Could not read {path.name}: {type(e).__name__}") from e
    jpeg = normalize_for_upload(data)
    logger.debug(f"Loaded {path.name}: {len(data)} -> {len(jpeg)} bytes")
    return encode_data_url(jpeg)


def center_square_crop(data_url: str, size: int = CROP_SIZE, quality: int = CROP_QUALITY) -> str:
    """Crop the centre square of an image and scale it to ``size`` pixels.

    This is the non-interactive crop collaborator: it stands in for the drag
    and zoom crop widget and yields a face-sized square for analysis.

    Args:
        data_url: Source image as a data URL.
        size: Edge length of the output square.
        quality: JPEG quality of the output.

    Returns:
        The crop as a JPEG data URL.
    """
    _, data = decode_data_url(data_url)
    img = open_image(data)
    cropped = ImageOps.fit(img.convert("RGB"), (size, size), Image.Resampling.LANCZOS)
    return encode_data_url(to_jpeg_bytes(cropped, quality))
