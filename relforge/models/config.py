"""Per-invocation release options."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from relforge.models.versioning import VALID_VERSION, ReleaseMode


class ReleaseOptions(BaseModel):
    """Options for one ``create-release`` invocation.

    ``commit_hash`` and ``uncommitted_changes`` come from the VCS status
    collaborator; everything else mirrors the command-line flags.
    """

    model_config = ConfigDict(frozen=True)

    release_dir: Path = Path(".")
    name: str | None = None
    final: bool = False
    force: bool = False
    version: str | None = None
    tarball_path: Path | None = None
    commit_hash: str = "non-git"
    uncommitted_changes: bool = False
    excluded_globs: list[str] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str | None) -> str | None:
        if value is not None and not VALID_VERSION.match(value):
            raise ValueError(f"Invalid release version {value!r}")
        return value

    @property
    def mode(self) -> ReleaseMode:
        return ReleaseMode.FINAL if self.final else ReleaseMode.DEV
