"""Deterministic content fingerprints for packages, jobs and the license.

A fingerprint is the SHA-1 of a canonical JSON document describing the
artifact's build inputs. Only relative paths, per-file content digests and
the executable bit go in, so mtimes, other permission bits, enumeration
order and the absolute location of the source tree never matter.

- package: files (including ``packaging``) + sorted fingerprints of its
  direct dependencies
- job: files (``job.MF``, ``monit``, templates) + referenced package *names*
- license: files
"""

from __future__ import annotations

from relforge.core.errors import InvalidSpecError
from relforge.core.hasher import content_fingerprint, sha1_hex
from relforge.models.artifacts import ArtifactKind, ArtifactSource, SourceFile


def _file_entries(files: list[SourceFile]) -> list[list[object]]:
    entries = [
        [f.relative_path, sha1_hex(f.content), bool(f.executable)]
        for f in files
    ]
    entries.sort(key=lambda e: e[0])
    return entries


class Fingerprinter:
    """Computes fingerprints for artifact sources."""

    def fingerprint(
        self,
        source: ArtifactSource,
        dependency_fingerprints: dict[str, str] | None = None,
    ) -> str:
        """Fingerprint *source*.

        Parameters
        ----------
        source:
            The artifact's parsed spec and selected files.
        dependency_fingerprints:
            For packages: fingerprint of every direct dependency, by name.
            Each declared dependency must be present.
        """
        if source.kind is ArtifactKind.PACKAGE:
            return self.package_fingerprint(source, dependency_fingerprints or {})
        if source.kind is ArtifactKind.JOB:
            return self.job_fingerprint(source)
        return self.license_fingerprint(source)

    def package_fingerprint(
        self, source: ArtifactSource, dependency_fingerprints: dict[str, str]
    ) -> str:
        deps = source.dependencies
        if not isinstance(deps, list):
            raise InvalidSpecError(
                f"Package '{source.name}' has invalid dependencies format",
                artifact_name=source.name,
            )
        missing = [d for d in deps if d not in dependency_fingerprints]
        if missing:
            raise KeyError(
                f"Fingerprints for dependencies of '{source.name}' not computed yet: "
                f"{', '.join(missing)}"
            )
        payload = {
            "kind": "package",
            "files": _file_entries(source.files),
            "dependencies": sorted({dependency_fingerprints[d] for d in deps}),
        }
        return content_fingerprint(payload)

    def job_fingerprint(self, source: ArtifactSource) -> str:
        package_names = source.job.package_names if source.job else []
        payload = {
            "kind": "job",
            "files": _file_entries(source.files),
            "packages": list(package_names),
        }
        return content_fingerprint(payload)

    def license_fingerprint(self, source: ArtifactSource) -> str:
        payload = {"kind": "license", "files": _file_entries(source.files)}
        return content_fingerprint(payload)
