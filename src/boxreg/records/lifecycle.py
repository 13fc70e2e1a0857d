"""Record lifecycle: subscribe, register, dnsconfig, unsubscribe and info.

A record is created by subscribe with empty addresses and a zero timestamp,
updated by register (addresses + timestamp) and dnsconfig (challenge), and
destroyed by unsubscribe. Updates to one token are serialized so a register
running next to a dnsconfig can never drop the other's field.

Usage:
    lifecycle = RecordLifecycle(store, domain="example.com")

    result = await lifecycle.subscribe("myhouse")
    await lifecycle.register(result.token, "192.168.1.20", "203.0.113.5")
    await lifecycle.dnsconfig(result.token, "acme-challenge-value")
    record = await lifecycle.info(result.token)
"""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from boxreg.core.errors import InvalidRequest, NameUnavailable, NotFound
from boxreg.records.concurrency import KeyedLock, bounded, short_token
from boxreg.records.storage import DomainRecord, DuplicateRecordError, RecordStore

logger = structlog.get_logger()

_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)


def remote_name_for(name: str, domain: str) -> str:
    """Fully qualified remote name for a subdomain, lowercase with trailing dot.

    >>> remote_name_for("MyHouse", "example.com")
    'myhouse.box.example.com.'
    """
    return f"{name}.box.{domain}.".lower()


def local_name_for(remote_name: str) -> str:
    return f"local.{remote_name}"


def validate_name(name: str) -> str:
    """Check that a requested name is a single DNS label.

    Raises:
        InvalidRequest: If the name is empty or not a valid label.
    """
    name = name.strip()
    if not name:
        raise InvalidRequest("name must not be empty")
    if not _LABEL_RE.match(name):
        raise InvalidRequest(f"Invalid name: {name!r}")
    return name


@dataclass
class SubscribeResult:
    """Returned to the subscriber; carries the credential for later calls."""

    name: str
    token: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "token": self.token}


class RecordLifecycle:
    """Creates, updates and deletes domain records.

    Args:
        store: Storage backend.
        domain: Configured domain; records live under box.<domain>.
        store_timeout: Upper bound in seconds for each storage call.
        clock: Returns the current time in seconds, used for timestamps.
        token_locks: Per-token locks, shared with any other component that
            must not interleave with updates or unsubscribe for a token.
    """

    def __init__(
        self,
        store: RecordStore,
        domain: str,
        store_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
        token_locks: KeyedLock | None = None,
    ) -> None:
        self.store = store
        self.domain = domain.rstrip(".").lower()
        self.store_timeout = store_timeout
        self._clock = clock
        self._token_locks = token_locks if token_locks is not None else KeyedLock()
        self._name_locks = KeyedLock()

    async def subscribe(self, name: str, description: str | None = None) -> SubscribeResult:
        """Reserve a subdomain and mint its token.

        Raises:
            InvalidRequest: If the name is not a valid DNS label.
            NameUnavailable: If the subdomain is already taken.
            StoreFailure: On storage errors.
        """
        name = validate_name(name)
        remote_name = remote_name_for(name, self.domain)
        logger.info("Trying to subscribe", remote_name=remote_name)

        async with self._name_locks.hold(remote_name):
            existing = await bounded(
                self.store.get_record_by_name(remote_name), self.store_timeout, "subscribe"
            )
            if existing is not None:
                raise NameUnavailable(f"{remote_name} is already registered")

            token = str(uuid.uuid4())
            record = DomainRecord(
                token=token,
                local_name=local_name_for(remote_name),
                remote_name=remote_name,
                description=description if description is not None else f"{name}'s server",
            )
            try:
                await bounded(self.store.add_record(record), self.store_timeout, "subscribe")
            except DuplicateRecordError as e:
                raise NameUnavailable(f"{remote_name} is already registered") from e

        logger.info("Subscribed", remote_name=remote_name, token=short_token(token))
        return SubscribeResult(name=name, token=token)

    async def register(self, token: str, local_ip: str, public_ip: str) -> DomainRecord:
        """Record the box's current addresses and stamp the registration time.

        Raises:
            NotFound: If the token is unknown.
            StoreFailure: On storage errors.
        """
        record = await self._update(
            token,
            "register",
            local_ip=local_ip,
            public_ip=public_ip,
            timestamp=int(self._clock()),
        )
        logger.info(
            "Registered",
            token=short_token(token),
            local_ip=local_ip,
            public_ip=public_ip,
        )
        return record

    async def dnsconfig(self, token: str, challenge: str) -> DomainRecord:
        """Store the ACME DNS-01 challenge value for the box's name.

        Raises:
            NotFound: If the token is unknown.
            StoreFailure: On storage errors.
        """
        record = await self._update(token, "dnsconfig", dns_challenge=challenge)
        logger.info("DNS challenge updated", token=short_token(token))
        return record

    async def unsubscribe(self, token: str) -> None:
        """Delete the record (and its discovery ids).

        Raises:
            NotFound: If no record was deleted.
            StoreFailure: On storage errors.
        """
        async with self._token_locks.hold(token):
            deleted = await bounded(
                self.store.delete_record_by_token(token), self.store_timeout, "unsubscribe"
            )
        if deleted == 0:
            raise NotFound("Unknown token")
        logger.info("Unsubscribed", token=short_token(token))

    async def info(self, token: str) -> DomainRecord:
        """Return the stored record.

        Raises:
            NotFound: If the token is unknown.
            StoreFailure: On storage errors.
        """
        record = await bounded(
            self.store.get_record_by_token(token), self.store_timeout, "info"
        )
        if record is None:
            raise NotFound("Unknown token")
        return record

    async def _update(self, token: str, operation: str, **changes: object) -> DomainRecord:
        """Read the record, apply ``changes`` and write it back under the token lock."""
        async with self._token_locks.hold(token):
            record = await bounded(
                self.store.get_record_by_token(token), self.store_timeout, operation
            )
            if record is None:
                raise NotFound("Unknown token")

            updated = record.replace(**changes)
            replaced = await bounded(
                self.store.update_record(updated), self.store_timeout, operation
            )
            if not replaced:
                raise NotFound("Unknown token")
            return updated
