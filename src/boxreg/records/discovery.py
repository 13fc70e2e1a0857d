"""LAN rendezvous: find boxes that share the caller's public IP.

Two boxes behind the same NAT are seen by the server with the same public
address. ``ping`` lists every box registered from the caller's address;
``discovery`` resolves a published discovery id and prefers the owner's local
name when caller and owner share the address, falling back to the public name
otherwise.

Usage:
    matcher = DiscoveryMatcher(store)

    await matcher.add_discovery(token, "kitchen-speaker")
    peers = await matcher.discovery("kitchen-speaker", "203.0.113.5")
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from boxreg.core.errors import DiscoveryUnavailable, NotFound
from boxreg.records.concurrency import KeyedLock, bounded, short_token
from boxreg.records.storage import DomainRecord, DuplicateRecordError, RecordStore

logger = structlog.get_logger()


def href_for(name: str) -> str:
    """HTTPS URL for a fully qualified name, trailing dot stripped."""
    return f"https://{name.rstrip('.')}"


@dataclass(frozen=True)
class Discovered:
    """A reachable box as returned to ping and discovery callers."""

    href: str
    desc: str

    @classmethod
    def local(cls, record: DomainRecord) -> Discovered:
        return cls(href=href_for(record.local_name), desc=record.description)

    @classmethod
    def remote(cls, record: DomainRecord) -> Discovered:
        return cls(href=href_for(record.remote_name), desc=record.description)

    def to_dict(self) -> dict[str, str]:
        return {"href": self.href, "desc": self.desc}


class DiscoveryMatcher:
    """Publishes discovery ids and matches callers to boxes by public IP.

    Pass the lifecycle's ``token_locks`` so publishing or revoking an id
    cannot interleave with an unsubscribe of the same token.
    """

    def __init__(
        self,
        store: RecordStore,
        store_timeout: float = 5.0,
        token_locks: KeyedLock | None = None,
    ) -> None:
        self.store = store
        self.store_timeout = store_timeout
        self._token_locks = token_locks if token_locks is not None else KeyedLock()
        self._discovery_locks = KeyedLock()

    async def ping(self, public_ip: str, exclude_token: str | None = None) -> list[Discovered]:
        """List boxes registered from ``public_ip``.

        Args:
            public_ip: The caller's observed public address.
            exclude_token: The caller's own token, left out of the result.
        """
        records = await bounded(
            self.store.get_records_by_public_ip(public_ip), self.store_timeout, "ping"
        )
        return [
            Discovered.local(record)
            for record in records
            if exclude_token is None or record.token != exclude_token
        ]

    async def add_discovery(self, token: str, discovery_id: str) -> None:
        """Publish ``discovery_id`` for the box owning ``token``.

        Re-publishing an id the token already owns is a no-op.

        Raises:
            NotFound: If the token is unknown.
            DiscoveryUnavailable: If another token owns the id.
            StoreFailure: On storage errors.
        """
        async with self._token_locks.hold(token):
            await self._require_record(token, "adddiscovery")
            async with self._discovery_locks.hold(discovery_id):
                await self._publish(token, discovery_id)

        logger.info("Discovery id added", token=short_token(token), discovery_id=discovery_id)

    async def revoke_discovery(self, token: str, discovery_id: str) -> None:
        """Withdraw a discovery id owned by ``token``.

        Raises:
            NotFound: If the token is unknown or does not own the id.
            StoreFailure: On storage errors.
        """
        async with self._token_locks.hold(token):
            await self._require_record(token, "revokediscovery")
            deleted = await bounded(
                self.store.delete_discovery(discovery_id, token=token),
                self.store_timeout,
                "revokediscovery",
            )
        if deleted == 0:
            raise NotFound(f"Unknown discovery id {discovery_id!r}")
        logger.info("Discovery id revoked", token=short_token(token), discovery_id=discovery_id)

    async def discovery(self, discovery_id: str, public_ip: str) -> list[Discovered]:
        """Resolve a discovery id to reachable addresses of its owner.

        If the owner registered from the caller's public IP, both are assumed
        to sit behind the same NAT and the owner's local name is returned.
        Otherwise the owner's public name is returned.

        Raises:
            NotFound: If the discovery id is unknown or its owner is gone.
            StoreFailure: On storage errors.
        """
        owner = await bounded(
            self.store.get_token_for_discovery(discovery_id), self.store_timeout, "discovery"
        )
        if owner is None:
            raise NotFound(f"Unknown discovery id {discovery_id!r}")

        neighbours = await bounded(
            self.store.get_records_by_public_ip(public_ip), self.store_timeout, "discovery"
        )
        local = [Discovered.local(record) for record in neighbours if record.token == owner]
        if local:
            return local

        record = await bounded(
            self.store.get_record_by_token(owner), self.store_timeout, "discovery"
        )
        if record is None:
            raise NotFound(f"Unknown discovery id {discovery_id!r}")
        return [Discovered.remote(record)]

    async def _publish(self, token: str, discovery_id: str) -> None:
        owner = await bounded(
            self.store.get_token_for_discovery(discovery_id),
            self.store_timeout,
            "adddiscovery",
        )
        if owner == token:
            return
        if owner is not None:
            raise DiscoveryUnavailable(f"Discovery id {discovery_id!r} is already in use")
        try:
            await bounded(
                self.store.add_discovery(token, discovery_id),
                self.store_timeout,
                "adddiscovery",
            )
        except DuplicateRecordError as e:
            raise DiscoveryUnavailable(
                f"Discovery id {discovery_id!r} is already in use"
            ) from e

    async def _require_record(self, token: str, operation: str) -> DomainRecord:
        record = await bounded(
            self.store.get_record_by_token(token), self.store_timeout, operation
        )
        if record is None:
            raise NotFound("Unknown token")
        return record
