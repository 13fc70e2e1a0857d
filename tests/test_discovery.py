"""Tests for LAN discovery and the challenge accessor."""

from __future__ import annotations

import asyncio

import pytest

from boxreg.core.errors import DiscoveryUnavailable, NotFound
from boxreg.records import (
    ChallengeAccessor,
    Discovered,
    DiscoveryMatcher,
    DomainRecord,
    KeyedLock,
    MemoryRecordStore,
    RecordLifecycle,
)

HOME_IP = "203.0.113.5"
OFFICE_IP = "198.51.100.7"


@pytest.fixture
def store():
    return MemoryRecordStore()


class SlowStore(MemoryRecordStore):
    """Yields to the event loop after every token lookup."""

    async def get_record_by_token(self, token: str) -> DomainRecord | None:
        record = await super().get_record_by_token(token)
        await asyncio.sleep(0.01)
        return record


@pytest.fixture
def token_locks():
    return KeyedLock()


@pytest.fixture
def lifecycle(store, token_locks):
    return RecordLifecycle(store, domain="example.com", token_locks=token_locks)


@pytest.fixture
def matcher(store, token_locks):
    return DiscoveryMatcher(store, token_locks=token_locks)


async def subscribe_at(lifecycle, name: str, public_ip: str | None, local_ip: str = "192.168.1.20"):
    result = await lifecycle.subscribe(name)
    if public_ip is not None:
        await lifecycle.register(result.token, local_ip, public_ip)
    return result.token


class TestDiscovered:
    """Tests for the Discovered result type."""

    def test_to_dict(self):
        assert Discovered(href="https://a.example.com", desc="A").to_dict() == {
            "href": "https://a.example.com",
            "desc": "A",
        }


class TestPing:
    """Tests for ping."""

    @pytest.mark.asyncio
    async def test_ping_returns_boxes_on_same_ip(self, lifecycle, matcher):
        """Test that ping lists exactly the boxes registered from the caller's IP."""
        await subscribe_at(lifecycle, "one", HOME_IP)
        await subscribe_at(lifecycle, "two", HOME_IP)
        await subscribe_at(lifecycle, "three", OFFICE_IP)
        await subscribe_at(lifecycle, "four", None)

        found = await matcher.ping(HOME_IP)

        assert {item.href for item in found} == {
            "https://local.one.box.example.com",
            "https://local.two.box.example.com",
        }
        assert {item.desc for item in found} == {"one's server", "two's server"}

    @pytest.mark.asyncio
    async def test_ping_no_match(self, lifecycle, matcher):
        await subscribe_at(lifecycle, "one", HOME_IP)

        assert await matcher.ping(OFFICE_IP) == []

    @pytest.mark.asyncio
    async def test_ping_excludes_own_token(self, lifecycle, matcher):
        """Test that a caller passing its token does not see itself."""
        own = await subscribe_at(lifecycle, "one", HOME_IP)
        await subscribe_at(lifecycle, "two", HOME_IP)

        found = await matcher.ping(HOME_IP, exclude_token=own)

        assert [item.href for item in found] == ["https://local.two.box.example.com"]


class TestDiscoveryIds:
    """Tests for adddiscovery and revokediscovery."""

    @pytest.mark.asyncio
    async def test_add_unknown_token(self, matcher, store):
        """Test that an unknown token cannot publish an id."""
        with pytest.raises(NotFound):
            await matcher.add_discovery("unknown", "disco")

        assert await store.get_token_for_discovery("disco") is None

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, lifecycle, matcher, store):
        token = await subscribe_at(lifecycle, "one", HOME_IP)

        await matcher.add_discovery(token, "disco")
        await matcher.add_discovery(token, "disco")

        assert await store.get_token_for_discovery("disco") == token

    @pytest.mark.asyncio
    async def test_add_taken_by_other_token(self, lifecycle, matcher, store):
        """Test that an id owned by another box cannot be hijacked."""
        first = await subscribe_at(lifecycle, "one", HOME_IP)
        second = await subscribe_at(lifecycle, "two", HOME_IP)
        await matcher.add_discovery(first, "disco")

        with pytest.raises(DiscoveryUnavailable):
            await matcher.add_discovery(second, "disco")

        assert await store.get_token_for_discovery("disco") == first

    @pytest.mark.asyncio
    async def test_many_ids_per_token(self, lifecycle, matcher, store):
        token = await subscribe_at(lifecycle, "one", HOME_IP)

        await matcher.add_discovery(token, "disco-a")
        await matcher.add_discovery(token, "disco-b")

        assert await store.get_token_for_discovery("disco-a") == token
        assert await store.get_token_for_discovery("disco-b") == token

    @pytest.mark.asyncio
    async def test_revoke_then_discovery(self, lifecycle, matcher):
        """Test that a revoked id no longer resolves."""
        token = await subscribe_at(lifecycle, "one", HOME_IP)
        await matcher.add_discovery(token, "disco")

        await matcher.revoke_discovery(token, "disco")

        with pytest.raises(NotFound):
            await matcher.discovery("disco", HOME_IP)

    @pytest.mark.asyncio
    async def test_revoke_unknown_token(self, lifecycle, matcher):
        with pytest.raises(NotFound):
            await matcher.revoke_discovery("unknown", "disco")

    @pytest.mark.asyncio
    async def test_revoke_requires_ownership(self, lifecycle, matcher, store):
        """Test that a box cannot revoke another box's id."""
        owner = await subscribe_at(lifecycle, "one", HOME_IP)
        other = await subscribe_at(lifecycle, "two", HOME_IP)
        await matcher.add_discovery(owner, "disco")

        with pytest.raises(NotFound):
            await matcher.revoke_discovery(other, "disco")

        assert await store.get_token_for_discovery("disco") == owner

    @pytest.mark.asyncio
    async def test_revoke_unknown_id(self, lifecycle, matcher):
        token = await subscribe_at(lifecycle, "one", HOME_IP)

        with pytest.raises(NotFound):
            await matcher.revoke_discovery(token, "never-added")

    @pytest.mark.asyncio
    async def test_unsubscribe_drops_ids(self, lifecycle, matcher):
        """Test that ids die with their record."""
        token = await subscribe_at(lifecycle, "one", HOME_IP)
        await matcher.add_discovery(token, "disco")

        await lifecycle.unsubscribe(token)

        with pytest.raises(NotFound):
            await matcher.discovery("disco", HOME_IP)


class TestDiscovery:
    """Tests for discovery id resolution."""

    @pytest.mark.asyncio
    async def test_unknown_id(self, matcher):
        with pytest.raises(NotFound):
            await matcher.discovery("unknown", HOME_IP)

    @pytest.mark.asyncio
    async def test_same_network_returns_local_name(self, lifecycle, matcher):
        """Test that a caller behind the owner's NAT gets the local name."""
        owner = await subscribe_at(lifecycle, "one", HOME_IP)
        await subscribe_at(lifecycle, "two", HOME_IP)
        await matcher.add_discovery(owner, "disco")

        found = await matcher.discovery("disco", HOME_IP)

        assert found == [Discovered(href="https://local.one.box.example.com", desc="one's server")]

    @pytest.mark.asyncio
    async def test_other_network_returns_remote_name(self, lifecycle, matcher):
        """Test that a caller elsewhere gets the public name."""
        owner = await subscribe_at(lifecycle, "one", HOME_IP)
        await matcher.add_discovery(owner, "disco")

        found = await matcher.discovery("disco", OFFICE_IP)

        assert found == [Discovered(href="https://one.box.example.com", desc="one's server")]

    @pytest.mark.asyncio
    async def test_unregistered_owner_returns_remote_name(self, lifecycle, matcher):
        """Test that an owner with no address yet still resolves publicly."""
        owner = await subscribe_at(lifecycle, "one", None)
        await matcher.add_discovery(owner, "disco")

        found = await matcher.discovery("disco", HOME_IP)

        assert [item.href for item in found] == ["https://one.box.example.com"]

    @pytest.mark.asyncio
    async def test_follows_owner_moving(self, lifecycle, matcher):
        """Test that resolution tracks the owner's latest registration."""
        owner = await subscribe_at(lifecycle, "one", HOME_IP)
        await matcher.add_discovery(owner, "disco")

        await lifecycle.register(owner, "10.1.0.4", OFFICE_IP)

        found_home = await matcher.discovery("disco", HOME_IP)
        found_office = await matcher.discovery("disco", OFFICE_IP)
        assert [item.href for item in found_home] == ["https://one.box.example.com"]
        assert [item.href for item in found_office] == ["https://local.one.box.example.com"]

    @pytest.mark.asyncio
    async def test_dangling_mapping(self, matcher, store):
        """Test that an id whose owner record vanished is reported unknown."""
        await store.add_discovery("gone-token", "disco")

        with pytest.raises(NotFound):
            await matcher.discovery("disco", HOME_IP)


class TestChallengeAccessor:
    """Tests for ChallengeAccessor."""

    @pytest.mark.asyncio
    async def test_lookup_challenge_reflects_latest(self, lifecycle, store):
        """Test that every dnsconfig is visible to the next lookup."""
        accessor = ChallengeAccessor(store)
        result = await lifecycle.subscribe("myhouse")

        assert await accessor.lookup_challenge("myhouse.box.example.com.") is None

        await lifecycle.dnsconfig(result.token, "c1")
        assert await accessor.lookup_challenge("myhouse.box.example.com.") == "c1"

        await lifecycle.dnsconfig(result.token, "c2")
        assert await accessor.lookup_challenge("MyHouse.box.example.com") == "c2"

    @pytest.mark.asyncio
    async def test_lookup_challenge_unknown(self, store):
        accessor = ChallengeAccessor(store)

        assert await accessor.lookup_challenge("nobody.box.example.com.") is None

    @pytest.mark.asyncio
    async def test_lookup_addresses(self, lifecycle, store):
        """Test that remote names map to public and local names to local addresses."""
        accessor = ChallengeAccessor(store)
        await subscribe_at(lifecycle, "myhouse", HOME_IP, local_ip="192.168.1.20")

        remote = await accessor.lookup_addresses("myhouse.box.example.com.")
        local = await accessor.lookup_addresses("local.myhouse.box.example.com")

        assert remote.address == HOME_IP
        assert local.address == "192.168.1.20"
        assert await accessor.lookup_addresses("local.nobody.box.example.com.") is None


class TestUnsubscribeRace:
    """Discovery ids must not outlive a record removed concurrently."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("unsubscribe_first", [False, True])
    async def test_add_discovery_racing_unsubscribe(self, unsubscribe_first):
        """Test that no mapping survives for a token unsubscribed mid-publish."""
        store = SlowStore()
        token_locks = KeyedLock()
        lifecycle = RecordLifecycle(store, domain="example.com", token_locks=token_locks)
        matcher = DiscoveryMatcher(store, token_locks=token_locks)
        token = await subscribe_at(lifecycle, "one", HOME_IP)
        other = await subscribe_at(lifecycle, "two", HOME_IP)

        calls = [matcher.add_discovery(token, "speaker"), lifecycle.unsubscribe(token)]
        if unsubscribe_first:
            calls.reverse()
        await asyncio.gather(*calls, return_exceptions=True)

        assert await store.get_record_by_token(token) is None
        assert await store.get_token_for_discovery("speaker") is None

        await matcher.add_discovery(other, "speaker")
        assert await store.get_token_for_discovery("speaker") == other

    @pytest.mark.asyncio
    async def test_revoke_racing_unsubscribe(self, token_locks):
        store = SlowStore()
        lifecycle = RecordLifecycle(store, domain="example.com", token_locks=token_locks)
        matcher = DiscoveryMatcher(store, token_locks=token_locks)
        token = await subscribe_at(lifecycle, "one", HOME_IP)
        await matcher.add_discovery(token, "speaker")

        await asyncio.gather(
            matcher.revoke_discovery(token, "speaker"),
            lifecycle.unsubscribe(token),
            return_exceptions=True,
        )

        assert await store.get_token_for_discovery("speaker") is None
        assert len(token_locks) == 0
