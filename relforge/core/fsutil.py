"""Atomic file replacement and advisory locks for shared on-disk state.

Index and cache files are only ever replaced whole: the new bytes go to a
temp file in the destination directory and are moved into place with
``os.replace``. A reader therefore sees either the old file or the new one,
never a torn write, even if the writer is interrupted.

Locks are ``fcntl.flock`` locks on a sibling ``<file>.lock`` so they work
for files that do not exist yet and survive the rename of the real file.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from relforge.core.errors import ReleaseError

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.05


class LockTimeoutError(ReleaseError):
    """Raised when an advisory lock cannot be acquired in time."""


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write *data* to *path* via temp-file-then-rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        # Interrupted or failed: leave the old file untouched.
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_text(path: Path, text: str) -> None:
    """UTF-8 convenience wrapper around :func:`atomic_write_bytes`."""
    atomic_write_bytes(path, text.encode("utf-8"))


def lock_path_for(path: Path) -> Path:
    """Return the sibling lock file guarding *path*."""
    path = Path(path)
    return path.with_name(f"{path.name}.lock")


@contextmanager
def file_lock(path: Path, timeout: float = 30.0) -> Iterator[None]:
    """Hold an exclusive advisory lock for *path* for the ``with`` body.

    Parameters
    ----------
    path:
        The file being protected. The lock itself lives in ``<path>.lock``.
    timeout:
        Seconds to keep polling before raising ``LockTimeoutError``.
    """
    lock_file = lock_path_for(path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_file, os.O_RDWR | os.O_CREAT, 0o644)
    deadline = time.monotonic() + timeout
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for lock on {path}"
                    ) from None
                time.sleep(_POLL_INTERVAL_SECONDS)
        logger.debug("Acquired lock %s", lock_file)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Released lock %s", lock_file)
    finally:
        os.close(fd)
