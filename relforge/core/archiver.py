"""Archiver adapter — deterministic gzip'd tarballs from a file selection.

Two calls with the same selection produce byte-identical output: member
order is the caller's order, mtimes are zero, owners are root/root with no
names, modes are normalized to 0644/0755, and the gzip header carries no
filename or timestamp.
"""

from __future__ import annotations

import gzip
import io
import tarfile
from typing import Protocol, runtime_checkable

from relforge.models.artifacts import SourceFile

_VCS_DIRS = frozenset({".git", ".svn", ".hg", ".bzr"})


@runtime_checkable
class Archiver(Protocol):
    """Protocol for archiver backends."""

    def archive(self, files: list[SourceFile]) -> bytes:
        """Return tarball bytes for *files*, in the given order."""
        ...


def _tar_info(name: str, size: int, executable: bool) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name=name)
    info.size = size
    info.mtime = 0
    info.mode = 0o755 if executable else 0o644
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.type = tarfile.REGTYPE
    return info


def _is_vcs_path(relative_path: str) -> bool:
    return any(part in _VCS_DIRS for part in relative_path.split("/"))


class TarballArchiver:
    """Default archiver: ``./<relative_path>`` members in a gzip'd ustar/pax tar."""

    def __init__(self, compresslevel: int = 9) -> None:
        self._compresslevel = compresslevel

    def archive(self, files: list[SourceFile]) -> bytes:
        raw = io.BytesIO()
        with tarfile.open(fileobj=raw, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for source in files:
                if _is_vcs_path(source.relative_path):
                    continue
                info = _tar_info(f"./{source.relative_path}", len(source.content), source.executable)
                tar.addfile(info, io.BytesIO(source.content))
        return gzip_deterministic(raw.getvalue(), self._compresslevel)


def gzip_deterministic(data: bytes, compresslevel: int = 9) -> bytes:
    """Gzip *data* with a fixed header (no filename, mtime 0)."""
    out = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=out, mtime=0, compresslevel=compresslevel) as gz:
        gz.write(data)
    return out.getvalue()


def build_release_tarball(members: list[tuple[str, bytes]]) -> bytes:
    """Assemble the outer release tarball from ``(name, bytes)`` pairs.

    Members are written sorted by name so the archive is independent of
    build order.
    """
    files = [
        SourceFile(relative_path=name, content=data, executable=False)
        for name, data in sorted(members, key=lambda m: m[0])
    ]
    return TarballArchiver().archive(files)


def list_members(tarball: bytes) -> list[str]:
    """Return the regular-file member names of a gzip'd tarball."""
    with tarfile.open(fileobj=io.BytesIO(tarball), mode="r:gz") as tar:
        return [m.name for m in tar.getmembers() if m.isfile()]


def read_member(tarball: bytes, name: str) -> bytes | None:
    """Return the bytes of member *name* (with or without ``./``), if present."""
    wanted = {name, f"./{name.removeprefix('./')}", name.removeprefix("./")}
    with tarfile.open(fileobj=io.BytesIO(tarball), mode="r:gz") as tar:
        for member in tar.getmembers():
            if member.isfile() and member.name in wanted:
                handle = tar.extractfile(member)
                return handle.read() if handle is not None else None
    return None
