"""Release version model — dev (``<final>+dev.N``) and final (``N``) numbering."""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict

VALID_VERSION = re.compile(r"^[0-9A-Za-z_.+-]+$")
_NUMERIC_VERSION = re.compile(r"^(?P<release>\d+(?:\.\d+)*)(?:\+dev\.(?P<dev>\d+))?$")


class ReleaseMode(str, Enum):
    """Which numbering sequence a release belongs to."""

    DEV = "dev"
    FINAL = "final"


class ReleaseVersion(BaseModel):
    """A parsed, orderable release version.

    ``release`` holds the dotted numeric segments; ``dev`` is the dev
    counter, or ``None`` for a final version. Versions that do not follow
    this shape (custom strings such as ``1.0-rc1``) do not parse and take no
    part in sequence arithmetic.
    """

    model_config = ConfigDict(frozen=True)

    release: tuple[int, ...]
    dev: int | None = None

    @classmethod
    def parse(cls, value: str) -> ReleaseVersion | None:
        match = _NUMERIC_VERSION.match(str(value))
        if not match:
            return None
        release = tuple(int(part) for part in match.group("release").split("."))
        dev = match.group("dev")
        return cls(release=release, dev=int(dev) if dev is not None else None)

    @property
    def is_dev(self) -> bool:
        return self.dev is not None

    @property
    def sort_key(self) -> tuple[tuple[int, ...], int]:
        # A final version sorts after all of its own dev builds.
        return (self.release, self.dev if self.dev is not None else 2**63)

    def increment_release(self) -> ReleaseVersion:
        """Bump the last release segment: ``1`` -> ``2``, ``2.0.1`` -> ``2.0.2``."""
        bumped = self.release[:-1] + (self.release[-1] + 1,)
        return ReleaseVersion(release=bumped)

    def with_dev(self, counter: int) -> ReleaseVersion:
        return ReleaseVersion(release=self.release, dev=counter)

    def __str__(self) -> str:
        base = ".".join(str(part) for part in self.release)
        return base if self.dev is None else f"{base}+dev.{self.dev}"


def highest_version(values: list[str]) -> ReleaseVersion | None:
    """Return the highest parseable version among *values*, or ``None``."""
    parsed = [v for v in (ReleaseVersion.parse(s) for s in values) if v is not None]
    if not parsed:
        return None
    return max(parsed, key=lambda v: v.sort_key)
