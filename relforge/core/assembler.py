"""Release assembler — the central coordinator for ``create-release``.

The assembler wires together the release tree loader, DependencyGraph,
Fingerprinter, BuildIndex, LocalContentCache, Blobstore, Archiver and
VersionAllocator into one pipeline:

1. load specs and validate package references (fatal before any build)
2. fingerprint packages in dependency order, then jobs, then the license
3. consult the final index, then the dev index; reuse on a hit
4. archive misses on the build pool; reuse verified cache bytes
5. upload new final builds on the upload pool, reusing blobs the cache remembers
6. record new builds in the build index only after upload succeeded
7. allocate the release version, write the manifest, write the tarball

The manifest and the release-index entry are written together, after every
artifact is recorded, so a failed invocation leaves no partial release.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from relforge.config import RelforgeSettings
from relforge.core.archiver import Archiver, TarballArchiver, build_release_tarball, read_member
from relforge.core.blobstore import Blobstore, LocalBlobstore, RetryingBlobstore
from relforge.core.build_index import BuildIndex, IndexIntegrityError
from relforge.core.content_cache import LocalContentCache
from relforge.core.dependency_graph import DependencyGraph
from relforge.core.errors import ReleaseError
from relforge.core.fingerprinter import Fingerprinter
from relforge.core.fsutil import atomic_write_bytes, atomic_write_text
from relforge.core.hasher import compute_release_fingerprint, sha1_hex
from relforge.core.release_index import VersionAllocator
from relforge.models.artifacts import (
    ArtifactKind,
    ArtifactSource,
    BuildRecord,
    BuiltArtifact,
)
from relforge.models.config import ReleaseOptions
from relforge.models.manifest import (
    JobEntry,
    LicenseEntry,
    PackageEntry,
    ReleaseManifest,
)
from relforge.models.versioning import ReleaseMode
from relforge.source.release_dir import ReleaseDirectory

logger = logging.getLogger(__name__)


class ArtifactUnavailableError(ReleaseError):
    """Raised when a recorded artifact's bytes can be found nowhere."""


class ReleaseResult(BaseModel):
    """Outcome of one ``create-release`` invocation."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    mode: ReleaseMode
    created: bool  # False when unchanged content reused an existing version
    manifest: ReleaseManifest
    manifest_path: Path
    tarball_path: Path | None = None
    artifacts: list[BuiltArtifact] = Field(default_factory=list)


class _Plan:
    """Mutable per-artifact working state while a release is being built."""

    def __init__(self, source: ArtifactSource, fingerprint: str) -> None:
        self.source = source
        self.fingerprint = fingerprint
        self.record: BuildRecord | None = None  # reusable record, if any
        self.reused = False
        self.promote_from: BuildRecord | None = None  # dev record promoted to final
        self.data: bytes | None = None
        self.sha1: str | None = None
        self.blobstore_id: str | None = None

    @property
    def label(self) -> str:
        return f"{self.source.kind.value} '{self.source.name}'"

    @property
    def is_new(self) -> bool:
        return self.record is None


def _tarball_member(kind: ArtifactKind, name: str) -> str:
    if kind is ArtifactKind.LICENSE:
        return "license.tgz"
    return f"{kind.index_dir}/{name}.tgz"


class ReleaseAssembler:
    """Builds release manifests and tarballs.

    Parameters
    ----------
    options:
        Per-invocation options (mode, name, version, tarball path...).
    settings:
        Machine-level settings. Uses defaults if not provided.
    cache, blobstore, archiver, fingerprinter:
        Collaborators; defaults are built from *settings*.
    """

    def __init__(
        self,
        options: ReleaseOptions,
        *,
        settings: RelforgeSettings | None = None,
        cache: LocalContentCache | None = None,
        blobstore: Blobstore | None = None,
        archiver: Archiver | None = None,
        fingerprinter: Fingerprinter | None = None,
    ) -> None:
        self.options = options
        self.settings = settings or RelforgeSettings()
        self.cache = cache or LocalContentCache(self.settings.cache_dir)
        self.blobstore = blobstore or RetryingBlobstore(
            LocalBlobstore(self.settings.blobstore_path),
            attempts=self.settings.upload_attempts,
            backoff_seconds=self.settings.upload_backoff_seconds,
        )
        self.archiver = archiver or TarballArchiver()
        self.fingerprinter = fingerprinter or Fingerprinter()
        self.directory = ReleaseDirectory(options.release_dir, options.excluded_globs)
        self.mode = options.mode

    # ------------------------------------------------------------------
    # Index helpers
    # ------------------------------------------------------------------

    def _index(self, mode: ReleaseMode, kind: ArtifactKind, name: str) -> BuildIndex:
        return BuildIndex.for_artifact(
            self.options.release_dir,
            mode,
            kind,
            name,
            lock_timeout=self.settings.lock_timeout_seconds,
        )

    def lookup_build(self, kind: ArtifactKind, name: str, fingerprint: str) -> BuildRecord | None:
        """Recorded build of *kind*/*name*: final index first, then dev."""
        for mode in (ReleaseMode.FINAL, ReleaseMode.DEV):
            record = self._index(mode, kind, name).lookup(fingerprint)
            if record is not None:
                return record
        return None

    # ------------------------------------------------------------------
    # Release creation
    # ------------------------------------------------------------------

    def create_release(self) -> ReleaseResult:
        """Fingerprint, build, record and version the release in the tree."""
        name = self.options.name or self.directory.default_name(self.mode)
        sources = self.directory.load()

        graph = DependencyGraph([s.package for s in sources.packages if s.package])
        for job in sources.jobs:
            graph.check_references(f"Job '{job.name}'", job.job.package_names if job.job else [])

        plans = self._fingerprint_all(graph, sources.packages, sources.jobs, sources.license)
        for plan in plans:
            self._plan_reuse(plan)

        want_tarball = self.options.tarball_path is not None
        self._run_pool(
            [p for p in plans if p.is_new or p.promote_from or want_tarball],
            self._obtain_bytes,
            self.settings.max_build_workers,
            "build",
        )
        self._upload_and_record([p for p in plans if p.is_new])

        artifacts = [self._built(p, graph) for p in plans]
        release_fingerprint = compute_release_fingerprint(
            name,
            {a.name: a.fingerprint for a in artifacts if a.kind is ArtifactKind.PACKAGE},
            {a.name: a.fingerprint for a in artifacts if a.kind is ArtifactKind.JOB},
            next((a.fingerprint for a in artifacts if a.kind is ArtifactKind.LICENSE), None),
        )

        allocator = VersionAllocator(
            self.options.release_dir, name, lock_timeout=self.settings.lock_timeout_seconds
        )
        index = allocator.index(self.mode)
        written: dict[str, ReleaseManifest] = {}

        def _write_manifest(version: str) -> None:
            manifest = self._manifest(name, version, artifacts)
            atomic_write_text(index.manifest_path(version), manifest.to_yaml())
            written[version] = manifest

        allocation = allocator.allocate(
            release_fingerprint,
            self.mode,
            force=self.options.force,
            version=self.options.version,
            on_allocate=_write_manifest,
        )
        manifest_path = index.manifest_path(allocation.version)
        manifest = written.get(allocation.version)
        if manifest is None:
            if manifest_path.exists():
                manifest = ReleaseManifest.read(manifest_path)
            else:
                logger.warning("Manifest %s was missing; rewriting it", manifest_path)
                _write_manifest(allocation.version)
                manifest = written[allocation.version]

        tarball_path = None
        if self.options.tarball_path is not None:
            payloads = {
                _tarball_member(p.source.kind, p.source.name): p.data for p in plans
            }
            tarball_path = self._write_tarball(
                manifest, payloads, Path(self.options.tarball_path)
            )

        logger.info(
            "Release %s/%s %s (%d package(s), %d job(s))",
            name,
            allocation.version,
            "created" if allocation.created else "unchanged",
            len(manifest.packages),
            len(manifest.jobs),
        )
        return ReleaseResult(
            name=name,
            version=allocation.version,
            mode=self.mode,
            created=allocation.created,
            manifest=manifest,
            manifest_path=manifest_path,
            tarball_path=tarball_path,
            artifacts=artifacts,
        )

    # ------------------------------------------------------------------
    # Fingerprinting and reuse
    # ------------------------------------------------------------------

    def _fingerprint_all(
        self,
        graph: DependencyGraph,
        packages: list[ArtifactSource],
        jobs: list[ArtifactSource],
        license_source: ArtifactSource | None,
    ) -> list[_Plan]:
        by_name = {p.name: p for p in packages}
        package_fps: dict[str, str] = {}
        plans: list[_Plan] = []

        for name in graph.package_names:
            source = by_name[name]
            deps = {d: package_fps[d] for d in graph.get_dependencies(name)}
            package_fps[name] = self.fingerprinter.fingerprint(source, deps)
            plans.append(_Plan(source, package_fps[name]))

        for source in jobs:
            plans.append(_Plan(source, self.fingerprinter.fingerprint(source)))
        if license_source is not None:
            plans.append(_Plan(license_source, self.fingerprinter.fingerprint(license_source)))
        return plans

    def _plan_reuse(self, plan: _Plan) -> None:
        kind, name, fp = plan.source.kind, plan.source.name, plan.fingerprint
        final_record = self._index(ReleaseMode.FINAL, kind, name).lookup(fp)
        if final_record is not None:
            plan.record = final_record
            plan.reused = True
            logger.info("Reusing final build of %s (%s)", plan.label, fp)
            return

        dev_record = self._index(ReleaseMode.DEV, kind, name).lookup(fp)
        if dev_record is None:
            logger.info("Building %s (%s)", plan.label, fp)
        elif self.mode is ReleaseMode.DEV:
            plan.record = dev_record
            plan.reused = True
            logger.info("Reusing dev build of %s (%s)", plan.label, fp)
        else:
            plan.promote_from = dev_record
            logger.info("Promoting dev build of %s to final (%s)", plan.label, fp)

    # ------------------------------------------------------------------
    # Bytes: cache, blobstore, archiver
    # ------------------------------------------------------------------

    def _obtain_bytes(self, plan: _Plan) -> None:
        """Fill ``plan.data``/``plan.sha1`` from the cache, blobstore or a fresh build."""
        known = plan.record or plan.promote_from
        if known is not None:
            plan.data = self._recorded_bytes(plan, known)
            plan.sha1 = known.sha1
            return

        data = self.archiver.archive(plan.source.files)
        sha1 = sha1_hex(data)
        cached = self.cache.get(sha1)
        if cached is None:
            self.cache.put(sha1, data)
        else:
            data = cached
        plan.data, plan.sha1 = data, sha1

    def _recorded_bytes(self, plan: _Plan, record: BuildRecord) -> bytes:
        data = self.cache.get(record.sha1)
        if data is not None:
            return data

        if record.blobstore_id:
            data = self.blobstore.get(record.blobstore_id)
            if sha1_hex(data) != record.sha1:
                raise IndexIntegrityError(
                    f"Blob {record.blobstore_id} for {plan.label} does not match "
                    f"recorded sha1 {record.sha1}"
                )
        else:
            data = self.archiver.archive(plan.source.files)
            if sha1_hex(data) != record.sha1:
                raise IndexIntegrityError(
                    f"Rebuilt {plan.label} hashes to {sha1_hex(data)}, but the build "
                    f"index records {record.sha1}"
                )
        self.cache.put(record.sha1, data)
        return data

    # ------------------------------------------------------------------
    # Upload and record
    # ------------------------------------------------------------------

    @staticmethod
    def _payload(plan: _Plan) -> tuple[bytes, str]:
        if plan.data is None or plan.sha1 is None:
            raise ReleaseError(f"{plan.label} has no built tarball")
        return plan.data, plan.sha1

    def _upload(self, plan: _Plan) -> None:
        data, sha1 = self._payload(plan)
        blobstore_id = self.cache.uploaded_blob(sha1)
        if blobstore_id is not None and self.blobstore.exists(blobstore_id):
            plan.blobstore_id = blobstore_id
            logger.info("Reusing uploaded blob %s for %s", blobstore_id, plan.label)
            return
        plan.blobstore_id = self.blobstore.put(data)
        self.cache.remember_upload(sha1, plan.blobstore_id)
        logger.info("Uploaded %s as blob %s", plan.label, plan.blobstore_id)

    def _upload_and_record(self, plans: list[_Plan]) -> None:
        """Upload final builds, then record each build whose upload succeeded."""
        failures: list[BaseException] = []
        if self.mode is ReleaseMode.FINAL:
            failures = self._run_pool(
                plans, self._upload, self.settings.max_upload_workers, "upload", raise_first=False
            )

        for plan in plans:
            if self.mode is ReleaseMode.FINAL and plan.blobstore_id is None:
                continue
            _, sha1 = self._payload(plan)
            plan.record = self._index(self.mode, plan.source.kind, plan.source.name).record(
                plan.fingerprint, plan.fingerprint, sha1, plan.blobstore_id
            )

        if failures:
            raise failures[0]

    def _run_pool(
        self,
        plans: list[_Plan],
        work: Callable[[_Plan], None],
        max_workers: int,
        what: str,
        *,
        raise_first: bool = True,
    ) -> list[BaseException]:
        """Run *work* for each plan on a bounded thread pool.

        Every submitted task is allowed to finish; failures are logged and
        either the first one is raised or all are returned.
        """
        failures: list[BaseException] = []
        if not plans:
            return failures
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"relforge-{what}") as pool:
            futures = {pool.submit(work, plan): plan for plan in plans}
            for future in as_completed(futures):
                exc = future.exception()
                if exc is not None:
                    logger.error("%s of %s failed: %s", what.capitalize(), futures[future].label, exc)
                    failures.append(exc)
        if failures and raise_first:
            raise failures[0]
        return failures

    # ------------------------------------------------------------------
    # Manifest and tarball
    # ------------------------------------------------------------------

    def _built(self, plan: _Plan, graph: DependencyGraph) -> BuiltArtifact:
        record = plan.record
        if record is None:
            raise ReleaseError(f"{plan.label} was not recorded")
        is_package = plan.source.kind is ArtifactKind.PACKAGE
        return BuiltArtifact(
            kind=plan.source.kind,
            name=plan.source.name,
            fingerprint=plan.fingerprint,
            version=record.version,
            sha1=record.sha1,
            blobstore_id=record.blobstore_id,
            dependencies=graph.get_dependencies(plan.source.name) if is_package else [],
            reused=plan.reused,
        )

    def _manifest(self, name: str, version: str, artifacts: list[BuiltArtifact]) -> ReleaseManifest:
        license_artifact = next((a for a in artifacts if a.kind is ArtifactKind.LICENSE), None)
        return ReleaseManifest(
            name=name,
            version=version,
            commit_hash=self.options.commit_hash,
            uncommitted_changes=self.options.uncommitted_changes,
            packages=[
                PackageEntry(
                    name=a.name,
                    version=a.version,
                    fingerprint=a.fingerprint,
                    sha1=a.sha1,
                    dependencies=list(a.dependencies),
                )
                for a in artifacts
                if a.kind is ArtifactKind.PACKAGE
            ],
            jobs=[
                JobEntry(name=a.name, version=a.version, fingerprint=a.fingerprint, sha1=a.sha1)
                for a in artifacts
                if a.kind is ArtifactKind.JOB
            ],
            license=(
                LicenseEntry(
                    version=license_artifact.version,
                    fingerprint=license_artifact.fingerprint,
                    sha1=license_artifact.sha1,
                )
                if license_artifact
                else None
            ),
        )

    def _write_tarball(
        self, manifest: ReleaseManifest, payloads: dict[str, bytes | None], path: Path
    ) -> Path:
        members: list[tuple[str, bytes]] = [("release.MF", manifest.to_yaml().encode("utf-8"))]
        for member, data in payloads.items():
            if data is None:
                raise ArtifactUnavailableError(f"No bytes for tarball member {member}")
            members.append((member, data))
            if member == "license.tgz":
                license_text = read_member(data, "LICENSE")
                if license_text is not None:
                    members.append(("LICENSE", license_text))

        atomic_write_bytes(path, build_release_tarball(members))
        logger.info("Wrote release tarball %s", path)
        return path

    # ------------------------------------------------------------------
    # Re-creation from an existing manifest
    # ------------------------------------------------------------------

    def create_from_manifest(self, manifest_path: Path) -> ReleaseResult:
        """Rebuild a release tarball from a manifest and existing build indices.

        Nothing is fingerprinted: every artifact is fetched by the sha1 the
        manifest records, from the local cache first and the blobstore second.
        """
        if self.options.tarball_path is None:
            raise ReleaseError("A tarball path is required when creating from a manifest")
        manifest_path = Path(manifest_path)
        manifest = ReleaseManifest.read(manifest_path)

        wanted: list[tuple[ArtifactKind, str, str, str]] = [
            (ArtifactKind.PACKAGE, p.name, p.fingerprint, p.sha1) for p in manifest.packages
        ]
        wanted += [(ArtifactKind.JOB, j.name, j.fingerprint, j.sha1) for j in manifest.jobs]
        if manifest.license is not None:
            wanted.append(
                (ArtifactKind.LICENSE, "license", manifest.license.fingerprint, manifest.license.sha1)
            )

        payloads = {
            _tarball_member(kind, name): self.fetch_recorded(kind, name, fingerprint, sha1)
            for kind, name, fingerprint, sha1 in wanted
        }
        tarball_path = self._write_tarball(manifest, payloads, Path(self.options.tarball_path))
        mode =ReleaseMode.FINAL if manifest_path.parent.parent.name == "releases" else ReleaseMode.DEV
        return ReleaseResult(
            name=manifest.name,
            version=manifest.version,
            mode=mode,
            created=False,
            manifest=manifest,
            manifest_path=manifest_path,
            tarball_path=tarball_path,
        )

    def fetch_recorded(self, kind: ArtifactKind, name: str, fingerprint: str, sha1: str) -> bytes:
        """Verified bytes of a recorded build: cache, then blobstore by index."""
        data = self.cache.get(sha1)
        if data is not None:
            return data

        record = self.lookup_build(kind, name, fingerprint)
        if record is not None and record.sha1 != sha1:
            raise IndexIntegrityError(
                f"{kind.value} '{name}' ({fingerprint}) is indexed with sha1 {record.sha1}, "
                f"manifest says {sha1}"
            )
        if record is None or not record.blobstore_id:
            raise ArtifactUnavailableError(
                f"{kind.value} '{name}' ({fingerprint}) is neither cached nor uploaded"
            )

        data = self.blobstore.get(record.blobstore_id)
        if sha1_hex(data) != sha1:
            raise IndexIntegrityError(
                f"Blob {record.blobstore_id} for {kind.value} '{name}' does not match sha1 {sha1}"
            )
        self.cache.put(sha1, data)
        return data
