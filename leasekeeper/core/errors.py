from __future__ import annotations

from typing import Any


class LeaseKeeperError(Exception):
    """Base error carrying an HTTP status and a stable error code."""

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status = int(status)
        self.code = code
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status}, code={self.code!r}, message={self.message!r})"


class LicenseError(LeaseKeeperError):
    """Lease issuance, lifecycle or resolution failure."""


class VmRegistryError(LeaseKeeperError):
    """VM registration lookup or upsert failure."""


class ArtifactError(LeaseKeeperError):
    """Artifact catalog, assignment or download resolution failure."""


class StorageError(LeaseKeeperError):
    """Object storage provider failure or misconfiguration."""
