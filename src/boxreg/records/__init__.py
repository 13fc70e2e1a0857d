"""Domain records and LAN rendezvous.

This package holds the registration core:

- Record lifecycle: subscribe, register, dnsconfig, unsubscribe, info
- Discovery: ping by public IP, publish/revoke/resolve discovery ids
- Challenge/address lookups for the DNS bridge
- Storage backends (in-memory and SQLite)

Usage:
    from boxreg.records import DiscoveryMatcher, MemoryRecordStore, RecordLifecycle

    store = MemoryRecordStore()
    lifecycle = RecordLifecycle(store, domain="example.com")
    matcher = DiscoveryMatcher(store)

    result = await lifecycle.subscribe("myhouse")
    await lifecycle.register(result.token, "192.168.1.20", "203.0.113.5")
    peers = await matcher.ping("203.0.113.5")
"""

from boxreg.records.challenge import AddressLookup, ChallengeAccessor
from boxreg.records.concurrency import KeyedLock
from boxreg.records.discovery import Discovered, DiscoveryMatcher
from boxreg.records.lifecycle import RecordLifecycle, SubscribeResult, remote_name_for
from boxreg.records.sqlite import SQLiteRecordStore
from boxreg.records.storage import (
    DomainRecord,
    DuplicateRecordError,
    MemoryRecordStore,
    RecordStore,
    StoreError,
)

__all__ = [
    "RecordLifecycle",
    "SubscribeResult",
    "remote_name_for",
    "DiscoveryMatcher",
    "Discovered",
    "ChallengeAccessor",
    "AddressLookup",
    "KeyedLock",
    "RecordStore",
    "MemoryRecordStore",
    "SQLiteRecordStore",
    "DomainRecord",
    "StoreError",
    "DuplicateRecordError",
]
