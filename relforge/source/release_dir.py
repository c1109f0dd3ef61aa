"""Release source tree loader — turns on-disk specs into ``ArtifactSource``.

Tree layout::

    config/final.yml         final_name, exclude (optional)
    config/dev.yml           dev_name (optional)
    packages/<name>/spec     YAML package spec
    packages/<name>/packaging
    jobs/<name>/spec         YAML job spec
    jobs/<name>/monit
    jobs/<name>/templates/   template sources named in the job spec
    src/, blobs/             package file roots
    LICENSE, NOTICE          license files (optional)

Only the spec YAML is read here; templates are archived as-is.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

from relforge.core.errors import InvalidSpecError
from relforge.models.artifacts import (
    ArtifactKind,
    ArtifactSource,
    JobSpec,
    PackageSpec,
    SourceFile,
)
from relforge.models.versioning import ReleaseMode
from relforge.source.file_selection import FileSelector

logger = logging.getLogger(__name__)

LICENSE_FILES = ("LICENSE", "NOTICE")


class ReleaseSources(BaseModel):
    """All artifact sources of a release, as found on disk."""

    model_config = ConfigDict(frozen=True)

    packages: list[ArtifactSource] = Field(default_factory=list)
    jobs: list[ArtifactSource] = Field(default_factory=list)
    license: ArtifactSource | None = None


def _load_yaml(path: Path, *, artifact_name: str = "") -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise InvalidSpecError(f"{path} is not valid YAML: {exc}", artifact_name=artifact_name) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidSpecError(f"{path} must contain a mapping", artifact_name=artifact_name)
    return data


class ReleaseDirectory:
    """A release source tree on disk.

    Parameters
    ----------
    root:
        Root directory of the release tree.
    excluded_globs:
        Extra release-level exclude globs (merged with ``config/final.yml``'s
        ``exclude`` list).
    """

    def __init__(self, root: Path, excluded_globs: list[str] | None = None) -> None:
        self.root = Path(root)
        config_excludes = self.final_config().get("exclude") or []
        if not isinstance(config_excludes, list):
            raise InvalidSpecError("config/final.yml 'exclude' must be a list")
        self._selector = FileSelector(self.root, list(excluded_globs or []) + config_excludes)

    # ------------------------------------------------------------------
    # Release-level config
    # ------------------------------------------------------------------

    def final_config(self) -> dict[str, Any]:
        path = self.root / "config" / "final.yml"
        return _load_yaml(path) if path.exists() else {}

    def dev_config(self) -> dict[str, Any]:
        path = self.root / "config" / "dev.yml"
        return _load_yaml(path) if path.exists() else {}

    def default_name(self, mode: ReleaseMode) -> str:
        """``dev_name``/``final_name`` for *mode*, then ``final_name``, then the dir name."""
        final_name = self.final_config().get("final_name")
        if mode is ReleaseMode.DEV:
            dev_name = self.dev_config().get("dev_name")
            if dev_name:
                return str(dev_name)
        if final_name:
            return str(final_name)
        return self.root.resolve().name

    # ------------------------------------------------------------------
    # Specs
    # ------------------------------------------------------------------

    def _spec_dirs(self, top: str) -> list[Path]:
        base = self.root / top
        if not base.is_dir():
            return []
        return sorted(p for p in base.iterdir() if p.is_dir() and not p.name.startswith("."))

    def _spec_for(self, spec_dir: Path, kind: str) -> dict[str, Any]:
        spec_path = spec_dir / "spec"
        if not spec_path.exists():
            raise InvalidSpecError(f"{kind.capitalize()} '{spec_dir.name}' has no spec file", artifact_name=spec_dir.name)
        raw = _load_yaml(spec_path, artifact_name=spec_dir.name)
        declared = raw.get("name", spec_dir.name)
        if declared != spec_dir.name:
            raise InvalidSpecError(
                f"{kind.capitalize()} directory '{spec_dir.name}' declares name '{declared}'",
                artifact_name=spec_dir.name,
            )
        return raw

    def package_specs(self) -> list[PackageSpec]:
        return [
            PackageSpec.from_spec_dict(d.name, self._spec_for(d, "package"))
            for d in self._spec_dirs("packages")
        ]

    def job_specs(self) -> list[JobSpec]:
        return [
            JobSpec.from_spec_dict(d.name, self._spec_for(d, "job"))
            for d in self._spec_dirs("jobs")
        ]

    # ------------------------------------------------------------------
    # File selection
    # ------------------------------------------------------------------

    def package_source(self, spec: PackageSpec) -> ArtifactSource:
        package_dir = self.root / "packages" / spec.name
        files: list[SourceFile] = []
        packaging = package_dir / "packaging"
        if packaging.exists():
            files.extend(self._selector.read(package_dir, ["packaging"]))

        seen: set[str] = {"packaging"}
        for base in (self.root / "src", self.root / "blobs"):
            rel_paths = [
                rel
                for rel in self._selector.select(base, spec.files, spec.excluded_files)
                if rel not in seen
            ]
            seen.update(rel_paths)
            files.extend(self._selector.read(base, rel_paths))

        logger.debug("Package %s: %d file(s) selected", spec.name, len(files))
        return ArtifactSource(
            kind=ArtifactKind.PACKAGE,
            name=spec.name,
            files=sorted(files, key=lambda f: f.relative_path),
            package=spec,
        )

    def job_source(self, spec: JobSpec) -> ArtifactSource:
        job_dir = self.root / "jobs" / spec.name
        files = [
            SourceFile(relative_path="job.MF", content=(job_dir / "spec").read_bytes())
        ]
        if (job_dir / "monit").exists():
            files.extend(self._selector.read(job_dir, ["monit"]))

        template_dir = job_dir / "templates"
        for source_name in sorted(spec.templates or {}):
            if not (template_dir / source_name).is_file():
                raise InvalidSpecError(
                    f"Job '{spec.name}' is missing template '{source_name}'",
                    artifact_name=spec.name,
                )
        files.extend(
            self._selector.read(template_dir, sorted(spec.templates or {}), prefix="templates/")
        )
        return ArtifactSource(
            kind=ArtifactKind.JOB,
            name=spec.name,
            files=sorted(files, key=lambda f: f.relative_path),
            job=spec,
        )

    def license_source(self) -> ArtifactSource | None:
        present = [name for name in LICENSE_FILES if (self.root / name).is_file()]
        if not present:
            return None
        return ArtifactSource(
            kind=ArtifactKind.LICENSE,
            name="license",
            files=self._selector.read(self.root, present),
        )

    def load(self) -> ReleaseSources:
        """Read every package, job and the license from the tree."""
        packages = [self.package_source(s) for s in self.package_specs()]
        jobs = [self.job_source(s) for s in self.job_specs()]
        return ReleaseSources(packages=packages, jobs=jobs, license=self.license_source())
