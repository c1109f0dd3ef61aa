"""Release source tree access — spec loading, file selection and VCS status.

The engine in ``relforge.core`` only sees the parsed ``ArtifactSource``
records produced here.
"""

from relforge.source.release_dir import ReleaseDirectory, ReleaseSources
from relforge.source.vcs import VcsStatus, detect_vcs_status

__all__ = ["ReleaseDirectory", "ReleaseSources", "VcsStatus", "detect_vcs_status"]
