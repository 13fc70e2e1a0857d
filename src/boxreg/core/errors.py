"""Errors surfaced by the record lifecycle and discovery operations.

Every error carries a ``kind`` used in JSON error bodies and the HTTP status
the API answers with.
"""

from __future__ import annotations


class RegistryError(Exception):
    """Base class for errors returned to API callers."""

    kind = "RegistryError"
    status = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class InvalidRequest(RegistryError):
    """Missing or malformed request parameters."""

    kind = "InvalidRequest"


class NameUnavailable(RegistryError):
    """The requested subdomain is already taken."""

    kind = "UnavailableName"


class NotFound(RegistryError):
    """Unknown token or discovery id."""

    kind = "NotFound"


class DiscoveryUnavailable(RegistryError):
    """The discovery id is already published by another token."""

    kind = "UnavailableDiscovery"


class StoreFailure(RegistryError):
    """The storage backend failed or did not answer in time."""

    kind = "StoreFailure"
    status = 500
