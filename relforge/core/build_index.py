"""Per-artifact build index — fingerprint -> {version, sha1, blobstore_id}.

One YAML file per artifact name::

    .final_builds/packages/<name>/index.yml
    .final_builds/jobs/<name>/index.yml
    .final_builds/license/index.yml

(and the same under ``.dev_builds``). File format::

    builds:
      <fingerprint>:
        version: <fingerprint>
        sha1: <tarball sha1>
        blobstore_id: <id or null>
    format-version: '2'

Entries are append-only. Re-recording an identical entry is a no-op; the
only in-place update allowed is filling in a ``blobstore_id`` that an
earlier, interrupted run never recorded. A different sha1 for a known
fingerprint is treated as corruption.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from relforge.core.errors import ReleaseError
from relforge.core.fsutil import atomic_write_text, file_lock
from relforge.models.artifacts import ArtifactKind, BuildRecord
from relforge.models.versioning import ReleaseMode

logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = "2"
INDEX_FILENAME = "index.yml"


class IndexIntegrityError(ReleaseError):
    """Raised when an index entry disagrees with the bytes it describes."""


def read_index_file(path: Path) -> dict[str, dict[str, Any]]:
    """Load the ``builds`` mapping from an index file (empty if absent)."""
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise IndexIntegrityError(f"Index {path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise IndexIntegrityError(f"Index {path} is not a mapping")
    fmt = str(raw.get("format-version", INDEX_FORMAT_VERSION))
    if fmt != INDEX_FORMAT_VERSION:
        raise IndexIntegrityError(
            f"Index {path} has unsupported format-version {fmt!r}"
        )
    builds = raw.get("builds") or {}
    if not isinstance(builds, dict):
        raise IndexIntegrityError(f"Index {path} has a malformed 'builds' section")
    entries: dict[str, dict[str, Any]] = {}
    for key, value in builds.items():
        if value is not None and not isinstance(value, dict):
            raise IndexIntegrityError(f"Index {path} entry {key} is not a mapping")
        entries[str(key)] = dict(value or {})
    return entries


def write_index_file(path: Path, builds: dict[str, dict[str, Any]]) -> None:
    """Atomically replace an index file with *builds*."""
    document = {"builds": builds, "format-version": INDEX_FORMAT_VERSION}
    atomic_write_text(path, yaml.safe_dump(document, default_flow_style=False, sort_keys=True))


class BuildIndex:
    """Build index for a single artifact name.

    Parameters
    ----------
    index_path:
        Path to the ``index.yml`` file. Created on first ``record``.
    lock_timeout:
        Seconds to wait for the index lock when recording.
    """

    def __init__(self, index_path: Path, *, lock_timeout: float = 30.0) -> None:
        self._path = Path(index_path)
        self._lock_timeout = lock_timeout

    @classmethod
    def for_artifact(
        cls,
        release_dir: Path,
        mode: ReleaseMode,
        kind: ArtifactKind,
        name: str,
        *,
        lock_timeout: float = 30.0,
    ) -> BuildIndex:
        """Locate the index for *kind*/*name* in a release source tree."""
        root = Path(release_dir) / (".final_builds" if mode is ReleaseMode.FINAL else ".dev_builds")
        if kind is ArtifactKind.LICENSE:
            path = root / kind.index_dir / INDEX_FILENAME
        else:
            path = root / kind.index_dir / name / INDEX_FILENAME
        return cls(path, lock_timeout=lock_timeout)

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def lookup(self, fingerprint: str) -> BuildRecord | None:
        """Return the recorded build for *fingerprint*, or ``None``."""
        entry = read_index_file(self._path).get(fingerprint)
        if entry is None:
            return None
        if not entry.get("sha1"):
            raise IndexIntegrityError(f"Index {self._path} entry {fingerprint} has no sha1")
        return BuildRecord(
            version=str(entry.get("version", fingerprint)),
            sha1=str(entry["sha1"]),
            blobstore_id=entry.get("blobstore_id"),
        )

    def fingerprints(self) -> list[str]:
        return sorted(read_index_file(self._path))

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def record(
        self,
        fingerprint: str,
        version: str,
        sha1: str,
        blobstore_id: str | None,
    ) -> BuildRecord:
        """Upsert keyed by fingerprint.

        Inserts a new entry; is a no-op for an identical one; fills in a
        missing ``blobstore_id`` in place; raises ``IndexIntegrityError`` if
        the fingerprint is already recorded with a different sha1 or a
        different blobstore id.
        """
        new = BuildRecord(version=version, sha1=sha1, blobstore_id=blobstore_id)
        with file_lock(self._path, timeout=self._lock_timeout):
            builds = read_index_file(self._path)
            existing = builds.get(fingerprint)

            if existing is not None:
                if str(existing.get("sha1")) != sha1:
                    raise IndexIntegrityError(
                        f"Fingerprint {fingerprint} in {self._path} is recorded with "
                        f"sha1 {existing.get('sha1')}, refusing to change it to {sha1}"
                    )
                old_id = existing.get("blobstore_id")
                if old_id == blobstore_id or blobstore_id is None:
                    return BuildRecord(
                        version=str(existing.get("version", fingerprint)),
                        sha1=sha1,
                        blobstore_id=old_id,
                    )
                if old_id is not None:
                    raise IndexIntegrityError(
                        f"Fingerprint {fingerprint} in {self._path} already has "
                        f"blobstore_id {old_id}, refusing to change it to {blobstore_id}"
                    )
                logger.info(
                    "Repairing %s: recording blobstore_id for %s", self._path, fingerprint
                )
            else:
                logger.debug("Recording %s in %s", fingerprint, self._path)

            builds[fingerprint] = new.model_dump()
            write_index_file(self._path, builds)
        return new
