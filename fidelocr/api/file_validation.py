"""Upload size checks run before any file reaches the pipeline.

Content-level problems (empty files, undecodable bytes) are left to the
pipeline so they surface as per-file failures instead of failing the batch.
"""

import os

from fastapi import UploadFile

from fidelocr.core.exceptions import PayloadTooLargeError
from fidelocr.core.settings import get_app_settings


def _get_file_size(file: UploadFile) -> int:
    file.file.seek(0, os.SEEK_END)
    size = file.file.tell()
    file.file.seek(0)
    return size


def validate_upload_size(file: UploadFile) -> None:
    """Raise PayloadTooLargeError when ``file`` exceeds MAX_FILE_SIZE_MB."""
    max_size_mb = get_app_settings().MAX_FILE_SIZE_MB
    size = _get_file_size(file)
    if size > max_size_mb * 1024 * 1024:
        raise PayloadTooLargeError(max_size_mb=max_size_mb, actual_size_mb=size / (1024 * 1024))
