"""Global local content cache — built tarballs keyed by SHA-1.

Storage layout: ``{cache_dir}/{sha1}``, one flat file per tarball, shared by
every release working directory on the machine. Entries are written with
temp-file-then-rename so concurrent readers never see partial bytes, and
every read is re-hashed before it is trusted. There is no eviction.

``{cache_dir}/{sha1}.blobstore_id`` holds the blob id of the last upload of
that tarball.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path

from relforge.core.fsutil import atomic_write_bytes
from relforge.core.hasher import sha1_hex

logger = logging.getLogger(__name__)

_SHA1_RE = re.compile(r"^[0-9a-f]{40}$")


class LocalContentCache:
    """SHA-1 keyed tarball cache.

    A corrupted entry is never returned: ``get`` treats a digest mismatch as
    a miss and logs a warning; the next ``put`` for that digest replaces the
    bad file atomically.

    Parameters
    ----------
    cache_dir:
        Root directory for cached tarballs.
    """

    def __init__(self, cache_dir: Path) -> None:
        self._base = Path(cache_dir).expanduser()
        self._base.mkdir(parents=True, exist_ok=True)
        self.hits = 0
        self.misses = 0
        self._stats_lock = threading.Lock()

    @property
    def cache_dir(self) -> Path:
        return self._base

    def path_for(self, sha1: str) -> Path:
        """Storage path for *sha1*."""
        if not _SHA1_RE.match(sha1):
            raise ValueError(f"Not a SHA-1 hex digest: {sha1!r}")
        return self._base / sha1

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, sha1: str) -> bytes | None:
        """Return verified bytes for *sha1*, or ``None`` on a miss."""
        path = self.path_for(sha1)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            self._count(hit=False)
            logger.debug("Cache miss for %s", sha1)
            return None

        actual = sha1_hex(data)
        if actual != sha1:
            self._count(hit=False)
            logger.warning(
                "Cached tarball %s is corrupt (hashes to %s); rebuilding.",
                sha1,
                actual,
            )
            return None

        self._count(hit=True)
        logger.debug("Cache hit for %s (%d bytes)", sha1, len(data))
        return data

    def _count(self, *, hit: bool) -> None:
        with self._stats_lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    def contains(self, sha1: str) -> bool:
        """Cheap existence check — does not verify contents."""
        return self.path_for(sha1).exists()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put(self, sha1: str, data: bytes) -> None:
        """Store *data* under *sha1*.

        Raises ``ValueError`` if *data* does not hash to *sha1*; the cache
        only ever holds bytes matching their key.
        """
        actual = sha1_hex(data)
        if actual != sha1:
            raise ValueError(f"Refusing to cache {sha1}: data hashes to {actual}")
        atomic_write_bytes(self.path_for(sha1), data)
        logger.debug("Cached %s (%d bytes)", sha1, len(data))

    # ------------------------------------------------------------------
    # Upload references
    # ------------------------------------------------------------------

    def _upload_ref_path(self, sha1: str) -> Path:
        return self.path_for(sha1).with_name(f"{sha1}.blobstore_id")

    def uploaded_blob(self, sha1: str) -> str | None:
        """Blob id a previous upload of *sha1* was stored under, if any.

        Shared by every working directory using this cache, so a tarball
        uploaded from one clone is not uploaded again from another.
        """
        try:
            blobstore_id = self._upload_ref_path(sha1).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return blobstore_id or None

    def remember_upload(self, sha1: str, blobstore_id: str) -> None:
        """Record that *sha1* was uploaded as *blobstore_id*."""
        atomic_write_bytes(self._upload_ref_path(sha1), blobstore_id.encode("utf-8"))
        logger.debug("Remembered upload of %s as blob %s", sha1, blobstore_id)
