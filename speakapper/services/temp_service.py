"""Scoped temporary files and directories for one transcription request."""

import contextlib
import logging
import os
import re
import shutil
import tempfile
import time
import uuid

from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

UPLOAD_COPY_BUFFER_BYTES = 1024 * 1024
MAX_UPLOAD_NAME_CHARS = 100


def unique_token():
    return f"{time.time_ns()}_{uuid.uuid4().hex[:12]}"


def safe_prefix(prefix, fallback='tmp'):
    cleaned = re.sub(r'[^a-zA-Z0-9_-]+', '_', str(prefix or '')).strip('_')
    return cleaned or fallback


def remove_path(path):
    """Delete a file or directory tree, logging instead of raising."""
    if not path:
        return
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError as exc:
        logger.warning('Could not remove temporary path %s: %s', path, exc)


@contextlib.contextmanager
def workspace(prefix='speakapper', *, temp_root=None):
    """Yield a fresh private directory that is removed however the block exits."""
    root = temp_root or tempfile.gettempdir()
    os.makedirs(root, exist_ok=True)
    path = tempfile.mkdtemp(prefix=f"{safe_prefix(prefix)}_{unique_token()}_", dir=root)
    try:
        yield path
    finally:
        remove_path(path)


@contextlib.contextmanager
def scoped_file(path):
    """Own ``path`` for the duration of the block; delete it on exit."""
    try:
        yield path
    finally:
        remove_path(path)


class UploadTooLarge(Exception):
    pass


@contextlib.contextmanager
def staged_upload(file_storage, *, temp_root=None, max_bytes=None):
    """Stream a Werkzeug ``FileStorage`` to a unique temp file.

    Yields ``(path, size_bytes)`` and removes the file on exit.
    """
    root = temp_root or tempfile.gettempdir()
    os.makedirs(root, exist_ok=True)
    original_name = (secure_filename(file_storage.filename or '') or 'audio')[-MAX_UPLOAD_NAME_CHARS:]
    path = os.path.join(root, f"upload_{unique_token()}_{original_name}")
    with scoped_file(path):
        size_bytes = 0
        with open(path, 'wb') as handle:
            while True:
                block = file_storage.stream.read(UPLOAD_COPY_BUFFER_BYTES)
                if not block:
                    break
                size_bytes += len(block)
                if max_bytes and size_bytes > max_bytes:
                    raise UploadTooLarge(f"upload exceeds {max_bytes} bytes")
                handle.write(block)
        yield path, size_bytes
