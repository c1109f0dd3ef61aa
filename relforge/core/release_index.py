"""Release index and version allocation.

Layout (per release name, so switching names restarts numbering)::

    releases/<name>/index.yml            final releases (committed)
    releases/<name>/<name>-<version>.yml
    dev_releases/<name>/index.yml        dev releases (usually ignored by VCS)
    dev_releases/<name>/<name>-<version>.yml

Index format is the build-index format with only ``version`` per entry::

    builds:
      <release fingerprint>: {version: '1'}
    format-version: '2'

The first version allocated for some content is keyed by the release
fingerprint itself, so re-creating unchanged content finds it and returns
the same version. Versions allocated later for the same content (``force``
or an explicit version) are keyed by ``sha1(<fingerprint>:<version>)``;
the index stays append-only either way.

Allocation holds the index lock across "reuse or allocate", the caller's
commit callback (which writes the manifest), and the index write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from relforge.core.build_index import read_index_file, write_index_file
from relforge.core.errors import ReleaseError
from relforge.core.fsutil import file_lock
from relforge.core.hasher import sha1_hex
from relforge.models.versioning import ReleaseMode, ReleaseVersion, highest_version

logger = logging.getLogger(__name__)


class VersionConflictError(ReleaseError):
    """Raised when an explicit version is already used by different content."""


class VersionAllocationError(ReleaseError):
    """Raised when the index changed under us in a way that would lose a version."""


class Allocation(BaseModel):
    """Result of ``VersionAllocator.allocate``."""

    model_config = ConfigDict(frozen=True)

    version: str
    created: bool  # False when unchanged content reused an existing version


class ReleaseIndex:
    """Release index for one release name in one mode."""

    def __init__(self, release_dir: Path, name: str, mode: ReleaseMode) -> None:
        top = "releases" if mode is ReleaseMode.FINAL else "dev_releases"
        self.name = name
        self.mode = mode
        self.directory = Path(release_dir) / top / name
        self.path = self.directory / "index.yml"

    def entries(self) -> dict[str, str]:
        """Key -> version for every recorded release."""
        return {
            key: str(entry.get("version"))
            for key, entry in read_index_file(self.path).items()
        }

    def versions(self) -> list[str]:
        return list(self.entries().values())

    def latest_version(self) -> ReleaseVersion | None:
        return highest_version(self.versions())

    def manifest_path(self, version: str) -> Path:
        return self.directory / f"{self.name}-{version}.yml"


def _derived_key(release_fingerprint: str, version: str) -> str:
    return sha1_hex(f"{release_fingerprint}:{version}".encode("utf-8"))


class VersionAllocator:
    """Allocates dev and final release versions for one release name.

    Parameters
    ----------
    release_dir:
        Root of the release source tree.
    name:
        Release name; each name has independent sequences.
    lock_timeout:
        Seconds to wait for the release-index lock.
    """

    def __init__(self, release_dir: Path, name: str, *, lock_timeout: float = 30.0) -> None:
        self._release_dir = Path(release_dir)
        self._name = name
        self._lock_timeout = lock_timeout

    def index(self, mode: ReleaseMode) -> ReleaseIndex:
        return ReleaseIndex(self._release_dir, self._name, mode)

    # ------------------------------------------------------------------
    # Sequence arithmetic
    # ------------------------------------------------------------------

    def next_version(self, mode: ReleaseMode, recorded: list[str]) -> str:
        """Next default version given the versions already in *mode*'s index."""
        if mode is ReleaseMode.FINAL:
            finals = [v for v in recorded if (p := ReleaseVersion.parse(v)) and not p.is_dev]
            latest = highest_version(finals)
            return "1" if latest is None else str(latest.increment_release())

        base = self.index(ReleaseMode.FINAL).latest_version()
        base = ReleaseVersion(release=base.release) if base else ReleaseVersion(release=(0,))
        counters = [
            p.dev
            for p in (ReleaseVersion.parse(v) for v in recorded)
            if p is not None and p.is_dev and p.release == base.release
        ]
        return str(base.with_dev(max(counters, default=0) + 1))

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        release_fingerprint: str,
        mode: ReleaseMode,
        *,
        force: bool = False,
        version: str | None = None,
        on_allocate: Callable[[str], None] | None = None,
    ) -> Allocation:
        """Return the version for *release_fingerprint* in *mode*.

        Without *force* or *version*, unchanged content gets its existing
        version back. *force* always allocates the next sequential version.
        An explicit *version* bypasses the sequence but is recorded, so later
        default versions continue from the highest one seen.

        *on_allocate* runs inside the lock with the new version before the
        index entry is written; if it raises, nothing is recorded.
        """
        index = self.index(mode)
        with file_lock(index.path, timeout=self._lock_timeout):
            builds = read_index_file(index.path)
            by_version = {str(e.get("version")): k for k, e in builds.items()}

            if version is not None:
                owner = by_version.get(version)
                if owner is not None:
                    if owner in (release_fingerprint, _derived_key(release_fingerprint, version)):
                        logger.info("Release %s/%s already exists", self._name, version)
                        return Allocation(version=version, created=False)
                    raise VersionConflictError(
                        f"Release '{self._name}' version {version} already exists "
                        "with different content"
                    )
                new_version = version
            else:
                existing = builds.get(release_fingerprint)
                if existing is not None and not force:
                    found = str(existing.get("version"))
                    logger.info(
                        "Release content unchanged; reusing %s/%s", self._name, found
                    )
                    return Allocation(version=found, created=False)
                new_version = self.next_version(mode, list(by_version))

            key = (
                release_fingerprint
                if release_fingerprint not in builds
                else _derived_key(release_fingerprint, new_version)
            )
            if key in builds or new_version in by_version:
                raise VersionAllocationError(
                    f"Release '{self._name}' version {new_version} was allocated "
                    "concurrently; refusing to overwrite it"
                )

            if on_allocate is not None:
                on_allocate(new_version)

            builds[key] = {"version": new_version}
            write_index_file(index.path, builds)
            logger.info("Allocated %s release %s/%s", mode.value, self._name, new_version)
            return Allocation(version=new_version, created=True)
