"""Shared test fixtures for relforge."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from relforge.config import RelforgeSettings
from relforge.core.assembler import ReleaseAssembler
from relforge.core.blobstore import BlobNotFoundError
from relforge.core.content_cache import LocalContentCache
from relforge.models.config import ReleaseOptions


class CountingBlobstore:
    """In-memory blobstore that counts calls."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.puts = 0
        self.gets = 0
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        with self._lock:
            self.puts += 1
            blobstore_id = str(uuid.uuid4())
            self.blobs[blobstore_id] = data
        return blobstore_id

    def get(self, blobstore_id: str) -> bytes:
        with self._lock:
            self.gets += 1
            if blobstore_id not in self.blobs:
                raise BlobNotFoundError(f"Blob not found: {blobstore_id}")
            return self.blobs[blobstore_id]

    def exists(self, blobstore_id: str) -> bool:
        return blobstore_id in self.blobs


def _write(path: Path, content: str, executable: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(0o755 if executable else 0o644)


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    _write(path, yaml.safe_dump(data, sort_keys=False))


def write_release_tree(root: Path, *, final_name: str = "bosh-release") -> Path:
    """Lay out a small release source tree.

    Packages ``c <- b <- a`` and ``foo <- bar``; ``foo`` excludes
    ``excluded_file``. Jobs ``web`` (uses ``a``) and ``smoke`` (an errand
    using ``foo``). A root ``LICENSE``.
    """
    root.mkdir(parents=True, exist_ok=True)
    _write_yaml(root / "config" / "final.yml", {"final_name": final_name})

    packages: dict[str, list[str]] = {"c": [], "b": ["c"], "a": ["b"], "foo": [], "bar": ["foo"]}
    for name, deps in packages.items():
        spec: dict[str, Any] = {"name": name, "dependencies": deps, "files": [f"{name}/**/*"]}
        if name == "foo":
            spec["excluded_files"] = ["foo/excluded_file"]
        _write_yaml(root / "packages" / name / "spec", spec)
        _write(root / "packages" / name / "packaging", f"cp -a {name}/* $BOSH_INSTALL_TARGET\n", True)
        _write(root / "src" / name / f"{name}.txt", f"contents of {name}\n")

    _write(root / "src" / "foo" / "foo", "foo binary\n", True)
    _write(root / "src" / "foo" / "excluded_file", "do not ship\n")

    _write_yaml(
        root / "jobs" / "web" / "spec",
        {
            "name": "web",
            "templates": {"ctl.erb": "bin/ctl", "config.yml.erb": "config/config.yml"},
            "packages": ["a"],
            "properties": {"web.port": {"default": 8080}},
        },
    )
    _write(root / "jobs" / "web" / "monit", "check process web\n")
    _write(root / "jobs" / "web" / "templates" / "ctl.erb", "#!/bin/bash\nexec web\n", True)
    _write(root / "jobs" / "web" / "templates" / "config.yml.erb", "port: <%= p('web.port') %>\n")

    _write_yaml(
        root / "jobs" / "smoke" / "spec",
        {"name": "smoke", "templates": {"run.sh": "bin/run"}, "packages": ["foo"]},
    )
    _write(root / "jobs" / "smoke" / "monit", "")
    _write(root / "jobs" / "smoke" / "templates" / "run.sh", "#!/bin/bash\nfoo --smoke\n", True)

    _write(root / "LICENSE", "Apache License 2.0\n")
    return root


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def release_dir(tmp_dir: Path) -> Path:
    """Provide a populated release source tree."""
    return write_release_tree(tmp_dir / "release")


@pytest.fixture
def make_release_tree(tmp_dir: Path) -> Callable[..., Path]:
    """Factory fixture: lay out another release tree under the temp dir."""

    def _factory(name: str = "release", **kwargs: Any) -> Path:
        return write_release_tree(tmp_dir / name, **kwargs)

    return _factory


@pytest.fixture
def settings(tmp_dir: Path) -> RelforgeSettings:
    """Settings with every storage path inside the temp dir."""
    return RelforgeSettings(
        cache_dir=tmp_dir / "cache",
        blobstore_path=tmp_dir / "blobstore",
        registry_path=tmp_dir / "registry.db",
        max_build_workers=2,
        max_upload_workers=2,
        upload_backoff_seconds=0,
        lock_timeout_seconds=5,
    )


@pytest.fixture
def cache(settings: RelforgeSettings) -> LocalContentCache:
    """Provide a LocalContentCache shared by every assembler in a test."""
    return LocalContentCache(settings.cache_dir)


@pytest.fixture
def blobstore() -> CountingBlobstore:
    """Provide an in-memory blobstore shared by every assembler in a test."""
    return CountingBlobstore()


@pytest.fixture
def make_assembler(
    settings: RelforgeSettings,
    cache: LocalContentCache,
    blobstore: CountingBlobstore,
) -> Callable[..., ReleaseAssembler]:
    """Factory fixture: build a ReleaseAssembler over the shared cache and blobstore."""

    def _factory(release_dir: Path, **option_overrides: Any) -> ReleaseAssembler:
        options = ReleaseOptions(release_dir=release_dir, **option_overrides)
        return ReleaseAssembler(options, settings=settings, cache=cache, blobstore=blobstore)

    return _factory
