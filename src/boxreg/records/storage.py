"""Storage for domain records and discovery mappings.

``RecordStore`` is the contract the lifecycle and discovery code is written
against. Two backends ship with the server:

- ``MemoryRecordStore``: dictionaries guarded by an asyncio lock, for tests and
  throwaway deployments.
- ``SQLiteRecordStore`` (``boxreg.records.sqlite``): a single SQLite file.

Record format (``DomainRecord.to_dict()``):
    {
        "token": "0f8e2a4c-...",
        "local_name": "local.myhouse.box.example.com.",
        "remote_name": "myhouse.box.example.com.",
        "dns_challenge": null,
        "local_ip": "192.168.1.20",
        "public_ip": "203.0.113.5",
        "description": "myhouse's server",
        "email": null,
        "timestamp": 1700000000
    }
"""

from __future__ import annotations

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


class StoreError(Exception):
    """Raised by storage backends when an operation fails."""


class DuplicateRecordError(StoreError):
    """Raised when a unique key (remote name, token, discovery id) already exists."""


@dataclass(frozen=True)
class DomainRecord:
    """One subscribed box.

    Records are immutable; updates go through ``dataclasses.replace`` so a
    workflow only ever changes the fields it owns.
    """

    token: str
    local_name: str
    remote_name: str
    dns_challenge: str | None = None
    local_ip: str | None = None
    public_ip: str | None = None
    description: str = ""
    email: str | None = None
    timestamp: int = 0

    def replace(self, **changes: Any) -> DomainRecord:
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "token": self.token,
            "local_name": self.local_name,
            "remote_name": self.remote_name,
            "dns_challenge": self.dns_challenge,
            "local_ip": self.local_ip,
            "public_ip": self.public_ip,
            "description": self.description,
            "email": self.email,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomainRecord:
        """Create from dictionary (JSON deserialization)."""
        return cls(
            token=data["token"],
            local_name=data["local_name"],
            remote_name=data["remote_name"],
            dns_challenge=data.get("dns_challenge"),
            local_ip=data.get("local_ip"),
            public_ip=data.get("public_ip"),
            description=data.get("description") or "",
            email=data.get("email"),
            timestamp=int(data.get("timestamp") or 0),
        )


class RecordStore(ABC):
    """Asynchronous storage contract for records and discovery mappings.

    Implementations must never expose a partially written record. They are not
    required to make read-modify-write sequences atomic; callers serialize those.
    Failures are raised as ``StoreError``.
    """

    @abstractmethod
    async def get_record_by_token(self, token: str) -> DomainRecord | None:
        """Get the record owned by a token, or None."""

    @abstractmethod
    async def get_record_by_name(self, remote_name: str) -> DomainRecord | None:
        """Get the record with the given remote name, or None."""

    @abstractmethod
    async def get_records_by_public_ip(self, public_ip: str) -> list[DomainRecord]:
        """Get every record last registered from the given public IP."""

    @abstractmethod
    async def add_record(self, record: DomainRecord) -> None:
        """Insert a new record.

        Raises:
            DuplicateRecordError: If the token or remote name is already stored.
        """

    @abstractmethod
    async def update_record(self, record: DomainRecord) -> bool:
        """Replace the record with the same token.

        Returns:
            True if a record was replaced, False if the token is unknown.
        """

    @abstractmethod
    async def delete_record_by_token(self, token: str) -> int:
        """Delete a record and its discovery mappings.

        Returns:
            Number of records deleted.
        """

    @abstractmethod
    async def add_discovery(self, token: str, discovery_id: str) -> None:
        """Map a discovery id to a token.

        Raises:
            DuplicateRecordError: If the discovery id is already mapped.
        """

    @abstractmethod
    async def delete_discovery(self, discovery_id: str, token: str | None = None) -> int:
        """Delete a discovery mapping.

        Args:
            discovery_id: The mapping to delete.
            token: If given, only delete the mapping when it belongs to this token.

        Returns:
            Number of mappings deleted.
        """

    @abstractmethod
    async def get_token_for_discovery(self, discovery_id: str) -> str | None:
        """Resolve a discovery id to its owner token, or None."""

    async def close(self) -> None:
        """Release backend resources."""


class MemoryRecordStore(RecordStore):
    """In-process storage backed by dictionaries.

    Thread-safe via asyncio locks. Nothing survives a restart.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[str, DomainRecord] = {}
        self._tokens_by_name: dict[str, str] = {}
        self._discoveries: dict[str, str] = {}

    async def get_record_by_token(self, token: str) -> DomainRecord | None:
        async with self._lock:
            return self._records.get(token)

    async def get_record_by_name(self, remote_name: str) -> DomainRecord | None:
        async with self._lock:
            token = self._tokens_by_name.get(remote_name)
            return self._records.get(token) if token else None

    async def get_records_by_public_ip(self, public_ip: str) -> list[DomainRecord]:
        async with self._lock:
            return [record for record in self._records.values() if record.public_ip == public_ip]

    async def add_record(self, record: DomainRecord) -> None:
        async with self._lock:
            if record.token in self._records:
                raise DuplicateRecordError(f"Token already stored: {record.token}")
            if record.remote_name in self._tokens_by_name:
                raise DuplicateRecordError(f"Name already stored: {record.remote_name}")
            self._records[record.token] = record
            self._tokens_by_name[record.remote_name] = record.token

    async def update_record(self, record: DomainRecord) -> bool:
        async with self._lock:
            existing = self._records.get(record.token)
            if existing is None:
                return False
            if existing.remote_name != record.remote_name:
                raise StoreError("remote_name is immutable")
            self._records[record.token] = record
            return True

    async def delete_record_by_token(self, token: str) -> int:
        async with self._lock:
            record = self._records.pop(token, None)
            if record is None:
                return 0
            self._tokens_by_name.pop(record.remote_name, None)
            self._discoveries = {
                disco: owner for disco, owner in self._discoveries.items() if owner != token
            }
            return 1

    async def add_discovery(self, token: str, discovery_id: str) -> None:
        async with self._lock:
            if discovery_id in self._discoveries:
                raise DuplicateRecordError(f"Discovery id already mapped: {discovery_id}")
            self._discoveries[discovery_id] = token

    async def delete_discovery(self, discovery_id: str, token: str | None = None) -> int:
        async with self._lock:
            owner = self._discoveries.get(discovery_id)
            if owner is None or (token is not None and owner != token):
                return 0
            del self._discoveries[discovery_id]
            return 1

    async def get_token_for_discovery(self, discovery_id: str) -> str | None:
        async with self._lock:
            return self._discoveries.get(discovery_id)
