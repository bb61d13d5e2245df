"""
File type detection using magic bytes.

Declared MIME types from uploads are often wrong or generic
(application/octet-stream); the pipeline trusts the content signature
first and the declared type second.

Magic bytes reference:
- PDF:  %PDF
- JPEG: 0xFFD8FF
- PNG:  0x89 P N G
- GIF:  GIF87a / GIF89a
- BMP:  BM
- TIFF: II*\\0 (little-endian) or MM\\0* (big-endian)
- WebP: RIFF....WEBP
"""

from typing import Final, Literal

FileType = Literal["pdf", "jpeg", "png", "gif", "bmp", "tiff", "webp"]

MAGIC_BYTES_MAP: Final[dict[bytes, tuple[FileType, str]]] = {
    b"%PDF": ("pdf", "application/pdf"),
    b"\xff\xd8\xff": ("jpeg", "image/jpeg"),
    b"\x89PNG": ("png", "image/png"),
    b"GIF87a": ("gif", "image/gif"),
    b"GIF89a": ("gif", "image/gif"),
    b"BM": ("bmp", "image/bmp"),
    b"\x49\x49\x2a\x00": ("tiff", "image/tiff"),
    b"\x4d\x4d\x00\x2a": ("tiff", "image/tiff"),
}

MIME_ALIASES: Final[dict[str, str]] = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-tiff": "image/tiff",
    "image/x-ms-bmp": "image/bmp",
    "image/x-png": "image/png",
}


def detect_file_type_from_bytes(header: bytes) -> tuple[FileType, str] | None:
    """
    Detect file type from magic bytes header.

    Args:
        header: First 12+ bytes of file

    Returns:
        Tuple of (file_type, mime_type) or None if unrecognized

    Example:
        >>> detect_file_type_from_bytes(b'%PDF-1.4')
        ('pdf', 'application/pdf')
    """
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return ("webp", "image/webp")
    for signature, result in MAGIC_BYTES_MAP.items():
        if header.startswith(signature):
            return result
    return None


def normalize_mime_type(mime_type: str | None) -> str:
    mime = (mime_type or "").split(";")[0].strip().lower()
    return MIME_ALIASES.get(mime, mime)


def resolve_mime_type(data: bytes, declared: str | None) -> str:
    """Content signature when recognisable, else the normalised declared type."""
    detected = detect_file_type_from_bytes(data[:16])
    if detected:
        return detected[1]
    return normalize_mime_type(declared) or "application/octet-stream"
