"""relforge data models — all Pydantic v2, all frozen (immutable)."""

from relforge.models.artifacts import (
    ArtifactKind,
    ArtifactSource,
    BuildRecord,
    BuiltArtifact,
    JobSpec,
    PackageSpec,
    SourceFile,
)
from relforge.models.config import ReleaseOptions
from relforge.models.manifest import (
    JobEntry,
    LicenseEntry,
    PackageEntry,
    ReleaseManifest,
)
from relforge.models.versioning import ReleaseMode, ReleaseVersion

__all__ = [
    # artifacts
    "ArtifactKind",
    "ArtifactSource",
    "BuildRecord",
    "BuiltArtifact",
    "JobSpec",
    "PackageSpec",
    "SourceFile",
    # config
    "ReleaseOptions",
    # manifest
    "JobEntry",
    "LicenseEntry",
    "PackageEntry",
    "ReleaseManifest",
    # versioning
    "ReleaseMode",
    "ReleaseVersion",
]
