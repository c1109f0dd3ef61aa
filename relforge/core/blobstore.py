"""Blobstore boundary — durable storage for built artifact tarballs.

The engine only needs ``put(bytes) -> blobstore_id``, ``get(id) -> bytes``
and ``exists(id)``. Providers raise the errors below; the retry policy
lives at this boundary (``RetryingBlobstore``), not in the engine.

Priority of failure handling:
1. ``BlobstoreConnectionError`` — retried up to the configured attempts.
2. ``BlobstoreAuthError`` / ``BlobNotFoundError`` — fatal immediately.
"""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Protocol, runtime_checkable

from relforge.core.errors import ReleaseError
from relforge.core.fsutil import atomic_write_bytes

logger = logging.getLogger(__name__)


class BlobstoreError(ReleaseError):
    """Base class for blobstore failures."""


class BlobstoreConnectionError(BlobstoreError):
    """Transient failure talking to the blobstore; safe to retry."""


class BlobstoreAuthError(BlobstoreError):
    """Credentials rejected by the blobstore; never retried."""


class BlobNotFoundError(BlobstoreError):
    """The requested blob id does not exist."""


@runtime_checkable
class Blobstore(Protocol):
    """Protocol for blobstore providers."""

    def put(self, data: bytes) -> str:
        """Store *data* and return its opaque blob id."""
        ...

    def get(self, blobstore_id: str) -> bytes:
        """Return the bytes stored under *blobstore_id*."""
        ...

    def exists(self, blobstore_id: str) -> bool:
        """Return ``True`` if *blobstore_id* is present."""
        ...


class LocalBlobstore:
    """Blobstore provider backed by a local (or mounted) directory.

    Blob ids are random UUIDs; the blob file name is the id.

    Parameters
    ----------
    blobstore_path:
        Directory that holds the blobs. Created if missing.
    """

    def __init__(self, blobstore_path: Path) -> None:
        self._base = Path(blobstore_path).expanduser()
        self._base.mkdir(parents=True, exist_ok=True)

    def _blob_path(self, blobstore_id: str) -> Path:
        if not blobstore_id or "/" in blobstore_id or blobstore_id.startswith("."):
            raise BlobNotFoundError(f"Invalid blob id: {blobstore_id!r}")
        return self._base / blobstore_id

    def put(self, data: bytes) -> str:
        blobstore_id = str(uuid.uuid4())
        try:
            atomic_write_bytes(self._blob_path(blobstore_id), data)
        except OSError as exc:
            raise BlobstoreConnectionError(f"Could not write blob {blobstore_id}: {exc}") from exc
        logger.debug("Stored blob %s (%d bytes)", blobstore_id, len(data))
        return blobstore_id

    def get(self, blobstore_id: str) -> bytes:
        path = self._blob_path(blobstore_id)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"Blob not found: {blobstore_id}") from exc
        except OSError as exc:
            raise BlobstoreConnectionError(f"Could not read blob {blobstore_id}: {exc}") from exc

    def exists(self, blobstore_id: str) -> bool:
        try:
            return self._blob_path(blobstore_id).exists()
        except BlobNotFoundError:
            return False


class RetryingBlobstore:
    """Wraps a provider with a bounded retry policy for connection errors.

    Parameters
    ----------
    inner:
        The provider to delegate to.
    attempts:
        Total attempts per call (>= 1).
    backoff_seconds:
        Base delay; attempt *n* sleeps ``backoff_seconds * 2**(n-1)``.
    """

    def __init__(
        self,
        inner: Blobstore,
        *,
        attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep=time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self._inner = inner
        self._attempts = attempts
        self._backoff = backoff_seconds
        self._sleep = sleep

    def _call(self, operation: str, func, *args):
        for attempt in range(1, self._attempts + 1):
            try:
                return func(*args)
            except BlobstoreConnectionError as exc:
                if attempt == self._attempts:
                    logger.error(
                        "Blobstore %s failed after %d attempt(s): %s",
                        operation,
                        attempt,
                        exc,
                    )
                    raise
                delay = self._backoff * 2 ** (attempt - 1)
                logger.warning(
                    "Blobstore %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    operation,
                    attempt,
                    self._attempts,
                    delay,
                    exc,
                )
                self._sleep(delay)

    def put(self, data: bytes) -> str:
        return self._call("put", self._inner.put, data)

    def get(self, blobstore_id: str) -> bytes:
        return self._call("get", self._inner.get, blobstore_id)

    def exists(self, blobstore_id: str) -> bool:
        return self._call("exists", self._inner.exists, blobstore_id)
