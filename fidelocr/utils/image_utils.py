"""Image decoding and normalisation helpers built on Pillow."""

from __future__ import annotations

import base64
import binascii
import io
import re

from PIL import Image, ImageEnhance, ImageOps, ImageSequence

from fidelocr.core.config import (
    DIRECT_VISION_MIME_TYPES,
    PREPROCESS_CONTRAST,
    PREPROCESS_MAX_SCALE,
    PREPROCESS_TARGET_WIDTH,
    PREPROCESS_THRESHOLD,
)
from fidelocr.core.exceptions import UnsupportedFormatError
from fidelocr.ports.vision_port import ImagePart
from fidelocr.utils.file_detection import normalize_mime_type, resolve_mime_type

_DATA_URL_RE = re.compile(r"^data:([^;,]*)(;base64)?,(.*)$", re.DOTALL)


def decode_data_url(data_url: str) -> tuple[bytes, str]:
    """Split a ``data:`` URL into raw bytes and its MIME type.

    Raises:
        ValueError: if the URL is malformed or the payload is not base64
    """
    match = _DATA_URL_RE.match(data_url.strip())
    if not match or not match.group(2):
        raise ValueError("Not a base64 data URL")
    try:
        data = base64.b64decode(match.group(3), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc
    return data, normalize_mime_type(match.group(1))


def _prepare_frame(frame: Image.Image) -> Image.Image:
    frame = ImageOps.exif_transpose(frame)
    if frame.mode not in ("RGB", "L"):
        frame = frame.convert("RGB")
    return frame


def load_frames(data: bytes) -> list[Image.Image]:
    """Decode every frame (page) of a raster image.

    Raises:
        OSError: if Pillow cannot identify or decode the data
    """
    with Image.open(io.BytesIO(data)) as image:
        return [_prepare_frame(frame.copy()) for frame in ImageSequence.Iterator(image)]


def to_vision_image(data: bytes, declared_mime: str | None) -> ImagePart:
    """Normalise file bytes into an inline image every vision provider accepts.

    JPEG, PNG and WebP pass through untouched. Other raster formats (TIFF,
    BMP, GIF) are re-encoded from their first frame as PNG.

    Raises:
        UnsupportedFormatError: non-image input or undecodable image data
    """
    mime = resolve_mime_type(data, declared_mime)
    if mime in DIRECT_VISION_MIME_TYPES:
        return ImagePart(data=data, mime_type=mime)
    if not mime.startswith("image/"):
        raise UnsupportedFormatError(mime, "Only raster images can be sent for vision processing")

    try:
        with Image.open(io.BytesIO(data)) as image:
            first = _prepare_frame(image.copy())
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise UnsupportedFormatError(
            mime, "Image could not be converted; try re-exporting as PNG/JPEG"
        ) from exc

    buffer = io.BytesIO()
    first.save(buffer, format="PNG")
    return ImagePart(data=buffer.getvalue(), mime_type="image/png")


def preprocess_for_ocr(image: Image.Image) -> Image.Image:
    """Upscale, grayscale, boost contrast and binarise a page for the local engine."""
    width, height = image.size
    if width and width < PREPROCESS_TARGET_WIDTH:
        scale = min(PREPROCESS_MAX_SCALE, PREPROCESS_TARGET_WIDTH / width)
        image = image.resize(
            (int(width * scale), int(height * scale)), Image.Resampling.LANCZOS
        )
    gray = ImageOps.grayscale(image)
    gray = ImageEnhance.Contrast(gray).enhance(PREPROCESS_CONTRAST)
    return gray.point(lambda p: 255 if p > PREPROCESS_THRESHOLD else 0)
