"""Error taxonomy shared by the release engine.

Every fatal condition raised by the engine derives from ``ReleaseError`` so
the CLI can turn it into a non-zero exit without swallowing anything else.
Component-specific subclasses live next to the code that raises them.
"""

from __future__ import annotations


class ReleaseError(RuntimeError):
    """Base class for fatal ``create-release`` errors."""


class InvalidSpecError(ReleaseError):
    """Raised when a job, package or license spec has the wrong shape.

    Reported with the offending artifact name before any build work starts.
    """

    def __init__(self, message: str, *, artifact_name: str = "") -> None:
        super().__init__(message)
        self.artifact_name = artifact_name
