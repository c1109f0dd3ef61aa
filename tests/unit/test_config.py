"""Tests for runtime settings — env-driven configuration."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from relforge.config import RelforgeSettings


class TestRelforgeSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("RELFORGE_LOG_LEVEL", raising=False)
        config = RelforgeSettings(_env_file=None)
        assert config.log_level == "INFO"
        assert config.max_build_workers == 4
        assert config.max_upload_workers == 2
        assert config.upload_attempts == 3

    def test_default_paths(self):
        config = RelforgeSettings(_env_file=None)
        assert config.cache_dir == Path.home() / ".relforge" / "cache"
        assert config.registry_path == Path(".relforge/registry.db")

    def test_env_override(self, monkeypatch, tmp_dir: Path):
        monkeypatch.setenv("RELFORGE_CACHE_DIR", str(tmp_dir / "shared-cache"))
        monkeypatch.setenv("RELFORGE_MAX_BUILD_WORKERS", "8")
        config = RelforgeSettings(_env_file=None)
        assert config.cache_dir == tmp_dir / "shared-cache"
        assert config.max_build_workers == 8

    def test_worker_counts_must_be_positive(self):
        with pytest.raises(ValidationError):
            RelforgeSettings(_env_file=None, max_upload_workers=0)

    def test_no_import_time_instance(self):
        import relforge.config

        assert not hasattr(relforge.config, "settings")

    def test_each_instance_reads_current_environment(self, monkeypatch):
        monkeypatch.setenv("RELFORGE_MAX_UPLOAD_WORKERS", "3")
        first = RelforgeSettings(_env_file=None)
        monkeypatch.setenv("RELFORGE_MAX_UPLOAD_WORKERS", "5")
        assert first.max_upload_workers == 3
        assert RelforgeSettings(_env_file=None).max_upload_workers == 5
