"""Version-control status of a release tree (commit hash + dirty flag)."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

NON_GIT_COMMIT = "non-git"


class VcsStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    commit_hash: str = NON_GIT_COMMIT
    uncommitted_changes: bool = False


def _git(root: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (subprocess.SubprocessError, OSError) as exc:
        logger.debug("git %s failed: %s", " ".join(args), exc)
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def detect_vcs_status(root: Path) -> VcsStatus:
    """Short commit hash and dirty flag for *root*; ``non-git`` outside git."""
    if shutil.which("git") is None:
        return VcsStatus()
    commit = _git(root, "rev-parse", "--short", "HEAD")
    if commit is None:
        return VcsStatus()
    porcelain = _git(root, "status", "--porcelain") or ""
    return VcsStatus(
        commit_hash=commit.strip(),
        uncommitted_changes=bool(porcelain.strip()),
    )
