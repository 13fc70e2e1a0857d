"""Read-only lookups for the DNS bridge.

Every call reads the store; nothing is cached, so a dnsconfig or register is
visible to the next DNS query.
"""

from __future__ import annotations

from dataclasses import dataclass

from boxreg.records.concurrency import bounded
from boxreg.records.storage import RecordStore

LOCAL_PREFIX = "local."


def normalize_name(name: str) -> str:
    """Lowercase a DNS name and make sure it ends with a dot."""
    name = name.strip().lower()
    return name if name.endswith(".") else f"{name}."


@dataclass
class AddressLookup:
    """Address currently published for a name."""

    name: str
    address: str | None
    description: str


class ChallengeAccessor:
    """Resolves remote/local names to challenge values and addresses."""

    def __init__(self, store: RecordStore, store_timeout: float = 5.0) -> None:
        self.store = store
        self.store_timeout = store_timeout

    async def lookup_challenge(self, remote_name: str) -> str | None:
        """Latest DNS-01 challenge stored for ``remote_name``, or None."""
        record = await bounded(
            self.store.get_record_by_name(normalize_name(remote_name)),
            self.store_timeout,
            "lookup_challenge",
        )
        if record is None:
            return None
        return record.dns_challenge or None

    async def lookup_addresses(self, name: str) -> AddressLookup | None:
        """Address for a remote name (public IP) or local name (local IP).

        Returns:
            None if no record answers for the name.
        """
        name = normalize_name(name)
        record = await bounded(
            self.store.get_record_by_name(name), self.store_timeout, "lookup_addresses"
        )
        if record is not None:
            return AddressLookup(name=name, address=record.public_ip, description=record.description)

        if name.startswith(LOCAL_PREFIX):
            record = await bounded(
                self.store.get_record_by_name(name[len(LOCAL_PREFIX) :]),
                self.store_timeout,
                "lookup_addresses",
            )
            if record is not None:
                return AddressLookup(
                    name=name, address=record.local_ip, description=record.description
                )
        return None
