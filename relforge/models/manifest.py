"""Release manifest models — the declarative description of a release tarball."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from relforge.core.errors import ReleaseError


class ManifestError(ReleaseError):
    """Raised when a release manifest cannot be read or parsed."""


class PackageEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    fingerprint: str
    sha1: str
    dependencies: list[str] = Field(default_factory=list)


class JobEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    fingerprint: str
    sha1: str


class LicenseEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str
    fingerprint: str
    sha1: str


class ReleaseManifest(BaseModel):
    """The ``<name>-<version>.yml`` document and the tarball's ``release.MF``.

    Packages are listed in the same dependency-respecting order they were
    built in; each lists its dependencies by name.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    commit_hash: str
    uncommitted_changes: bool
    packages: list[PackageEntry] = Field(default_factory=list)
    jobs: list[JobEntry] = Field(default_factory=list)
    license: LicenseEntry | None = None

    def to_yaml(self) -> str:
        data: dict[str, Any] = self.model_dump(mode="json", exclude_none=True)
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, text: str) -> ReleaseManifest:
        return cls.model_validate(yaml.safe_load(text) or {})

    @classmethod
    def read(cls, path: Path) -> ReleaseManifest:
        """Load the manifest at *path*, raising ``ManifestError`` on any failure."""
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ManifestError(f"Cannot read release manifest {path}: {exc}") from exc
        try:
            return cls.from_yaml(text)
        except yaml.YAMLError as exc:
            raise ManifestError(f"Release manifest {path} is not valid YAML: {exc}") from exc
        except ValidationError as exc:
            raise ManifestError(
                f"Release manifest {path} is malformed: {exc.error_count()} invalid field(s)"
            ) from exc
