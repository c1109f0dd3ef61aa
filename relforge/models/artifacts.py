"""Artifact models: parsed specs, source files, and build records.

All records are frozen. Build records are append-only once written to an
index; a ``BuiltArtifact`` is what the assembler hands to the manifest.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from relforge.core.errors import InvalidSpecError

ERRAND_RUN_TARGETS: frozenset[str] = frozenset({"bin/run", "bin/run.ps1"})


class ArtifactKind(str, Enum):
    """The three artifact families a release is made of."""

    PACKAGE = "package"
    JOB = "job"
    LICENSE = "license"

    @property
    def index_dir(self) -> str:
        """Directory name under ``.dev_builds`` / ``.final_builds``."""
        return {
            ArtifactKind.PACKAGE: "packages",
            ArtifactKind.JOB: "jobs",
            ArtifactKind.LICENSE: "license",
        }[self]


class SourceFile(BaseModel):
    """One file selected for an artifact tarball."""

    model_config = ConfigDict(frozen=True)

    relative_path: str  # posix, relative to the tarball root
    content: bytes
    executable: bool = False


class BuildRecord(BaseModel):
    """One ``builds`` entry of a build index (fingerprint is the key)."""

    model_config = ConfigDict(frozen=True)

    version: str
    sha1: str
    blobstore_id: str | None = None


def _require_name_list(value: Any, *, message: str, artifact_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidSpecError(message, artifact_name=artifact_name)
    return list(value)


class PackageSpec(BaseModel):
    """A parsed package spec.

    ``files`` globs are relative to the release ``src/`` (or ``blobs/``)
    directory; ``excluded_files`` globs are removed from that selection.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    dependencies: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    excluded_files: list[str] = Field(default_factory=list)

    @classmethod
    def from_spec_dict(cls, name: str, raw: dict[str, Any]) -> PackageSpec:
        """Build from a raw spec mapping, validating the dependency field."""
        deps = _require_name_list(
            raw.get("dependencies"),
            message=f"Package '{name}' has invalid dependencies format",
            artifact_name=name,
        )
        files = _require_name_list(
            raw.get("files"),
            message=f"Package '{name}' has invalid files format",
            artifact_name=name,
        )
        excluded = _require_name_list(
            raw.get("excluded_files"),
            message=f"Package '{name}' has invalid excluded_files format",
            artifact_name=name,
        )
        return cls(name=name, dependencies=deps, files=files, excluded_files=excluded)


class JobSpec(BaseModel):
    """A parsed job spec."""

    model_config = ConfigDict(frozen=True)

    name: str
    templates: dict[str, str] | None = None
    package_names: list[str] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)
    provides: list[Any] | None = None
    consumes: list[Any] | None = None
    logs: list[str] | dict[str, Any] | None = None

    @classmethod
    def from_spec_dict(cls, name: str, raw: dict[str, Any]) -> JobSpec:
        """Build from a raw spec mapping, validating the ``packages`` field."""
        packages = _require_name_list(
            raw.get("packages"),
            message=f"Job '{name}' has invalid package spec format",
            artifact_name=name,
        )
        templates = raw.get("templates")
        if templates is not None and not isinstance(templates, dict):
            raise InvalidSpecError(
                f"Job '{name}' has invalid templates format", artifact_name=name
            )
        return cls(
            name=name,
            templates={str(k): str(v) for k, v in templates.items()} if templates else templates,
            package_names=packages,
            properties=raw.get("properties") or {},
            provides=raw.get("provides"),
            consumes=raw.get("consumes"),
            logs=raw.get("logs"),
        )

    @property
    def runs_as_errand(self) -> bool:
        """True iff a template renders to ``bin/run`` or ``bin/run.ps1``."""
        if not self.templates:
            return False
        return any(target in ERRAND_RUN_TARGETS for target in self.templates.values())


class ArtifactSource(BaseModel):
    """Everything the engine needs to fingerprint and archive one artifact."""

    model_config = ConfigDict(frozen=True)

    kind: ArtifactKind
    name: str
    files: list[SourceFile]
    package: PackageSpec | None = None
    job: JobSpec | None = None

    @property
    def dependencies(self) -> list[str]:
        return list(self.package.dependencies) if self.package else []


class BuiltArtifact(BaseModel):
    """A fully built and recorded artifact, ready for the manifest."""

    model_config = ConfigDict(frozen=True)

    kind: ArtifactKind
    name: str
    fingerprint: str
    version: str
    sha1: str
    blobstore_id: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    reused: bool = False  # True when the build index already had it
