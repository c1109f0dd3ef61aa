"""Relforge: deterministic, content-addressed release bundling.

  - Content fingerprints for packages, jobs and the license
  - Per-artifact dev/final build indices with append-only records
  - Machine-wide local content cache keyed by tarball SHA-1
  - Dependency-ordered package builds on bounded worker pools
  - Dev (``<final>+dev.N``) and final (``N``) release version allocation
  - Release manifests and deterministic release tarballs
"""

__version__ = "0.2.0"
__description__ = "Deterministic, content-addressed release bundling with incremental build reuse"

from relforge.core.assembler import ReleaseAssembler, ReleaseResult
from relforge.cli.app import app as cli

__all__ = ["ReleaseAssembler", "ReleaseResult", "cli", "__version__"]
