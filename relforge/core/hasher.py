"""Canonical hashing helpers for fingerprints and content addressing.

Fingerprints, tarball digests and release fingerprints are all SHA-1 hex
digests (40 characters) so they stay compatible with existing
``.final_builds`` indices and release manifests.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha1_hex(data: bytes) -> str:
    """Return the SHA-1 hex digest of raw bytes."""
    return hashlib.sha1(data).hexdigest()


def content_fingerprint(obj: Any) -> str:
    """SHA-1 of the canonical JSON form of a JSON-serializable object."""
    return sha1_hex(canonical_json_bytes(obj))


def compute_release_fingerprint(
    name: str,
    packages: dict[str, str],
    jobs: dict[str, str],
    license_fingerprint: str | None,
) -> str:
    """SHA-1 of canonical(release name + every included artifact fingerprint).

    *packages* and *jobs* map artifact name to fingerprint; ordering of the
    input mappings does not matter.
    """
    payload = {
        "name": name,
        "packages": sorted(packages.items()),
        "jobs": sorted(jobs.items()),
        "license": license_fingerprint or "",
    }
    return content_fingerprint(payload)
