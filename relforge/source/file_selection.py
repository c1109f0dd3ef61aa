"""File selection for artifact tarballs.

A path is never selected if any of its components starts with ``.``
(dotfiles and ``.git``/``.svn`` metadata), if it matches a root
``.gitignore`` pattern, or if it matches a release-level exclude glob.
Everything the selector returns is sorted by relative path.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from pathlib import Path

from relforge.models.artifacts import SourceFile

logger = logging.getLogger(__name__)


def _load_gitignore(root: Path) -> list[str]:
    path = root / ".gitignore"
    if not path.exists():
        return []
    patterns: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("!"):
            # Re-inclusion rules are not supported; the path stays excluded.
            logger.debug("Ignoring negated .gitignore pattern %r", line)
            continue
        patterns.append(line)
    return patterns


def _gitignore_match(rel_path: str, pattern: str) -> bool:
    """Approximate gitignore matching for a root-relative posix path."""
    anchored = pattern.startswith("/")
    pattern = pattern.strip("/") if pattern.endswith("/") else pattern.lstrip("/")
    parts = rel_path.split("/")
    if "/" not in pattern and not anchored:
        # Bare name: matches any path component (file or directory).
        return any(fnmatch.fnmatchcase(part, pattern) for part in parts)
    # Path pattern: matches the path itself or any parent directory.
    return any(
        fnmatch.fnmatchcase("/".join(parts[:i]), pattern) for i in range(1, len(parts) + 1)
    )


def glob_match(rel_path: str, pattern: str) -> bool:
    """Match a relative posix path against a glob (``**`` spans directories)."""
    if fnmatch.fnmatchcase(rel_path, pattern):
        return True
    # "a/**/b" should also match "a/b".
    return "**/" in pattern and fnmatch.fnmatchcase(rel_path, pattern.replace("**/", ""))


def _is_executable(path: Path) -> bool:
    return os.access(path, os.X_OK)


class FileSelector:
    """Selects files under a release tree.

    Parameters
    ----------
    release_root:
        Root of the release source tree (where ``.gitignore`` lives).
    excluded_globs:
        Release-level exclude globs, matched against paths relative to the
        base directory of each selection.
    """

    def __init__(self, release_root: Path, excluded_globs: list[str] | None = None) -> None:
        self._root = Path(release_root).resolve()
        self._excluded = list(excluded_globs or [])
        self._gitignore = _load_gitignore(self._root)

    def is_excluded(self, base_dir: Path, rel_path: str) -> bool:
        """True if *rel_path* (relative to *base_dir*) must never be selected."""
        if any(part.startswith(".") for part in rel_path.split("/")):
            return True
        try:
            root_rel = (Path(base_dir).resolve() / rel_path).relative_to(self._root).as_posix()
        except ValueError:
            root_rel = rel_path
        if any(_gitignore_match(root_rel, p) for p in self._gitignore):
            return True
        return any(glob_match(rel_path, p) for p in self._excluded)

    def select(
        self,
        base_dir: Path,
        include_globs: list[str],
        exclude_globs: list[str] | None = None,
    ) -> list[str]:
        """Relative paths of files under *base_dir* matching *include_globs*."""
        base_dir = Path(base_dir)
        if not base_dir.is_dir():
            return []
        selected: set[str] = set()
        for pattern in include_globs:
            for path in base_dir.glob(pattern):
                if not path.is_file():
                    continue
                rel = path.relative_to(base_dir).as_posix()
                if self.is_excluded(base_dir, rel):
                    continue
                if any(glob_match(rel, p) for p in exclude_globs or []):
                    continue
                selected.add(rel)
        return sorted(selected)

    def read(self, base_dir: Path, rel_paths: list[str], prefix: str = "") -> list[SourceFile]:
        """Load *rel_paths* as ``SourceFile`` records, optionally re-rooted."""
        files = []
        for rel in rel_paths:
            path = Path(base_dir) / rel
            files.append(
                SourceFile(
                    relative_path=f"{prefix}{rel}",
                    content=path.read_bytes(),
                    executable=_is_executable(path),
                )
            )
        return files
