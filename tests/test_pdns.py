"""Tests for the PowerDNS remote backend."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from boxreg.core.config import RegistryConfig
from boxreg.records import MemoryRecordStore
from boxreg.server.app import RegistryServer
from boxreg.server.pdns import quote_txt

ZONE = "box.example.com."


@pytest.fixture
def server():
    config = RegistryConfig(domain="example.com", storage_path=":memory:", dns_ttl=30)
    return RegistryServer(config, store=MemoryRecordStore())


async def registered_box(server, name="myhouse", challenge=None):
    result = await server.lifecycle.subscribe(name)
    await server.lifecycle.register(result.token, "192.168.1.20", "203.0.113.5")
    if challenge is not None:
        await server.lifecycle.dnsconfig(result.token, challenge)
    return result.token


class TestLookup:
    """Tests for DnsBridge.lookup."""

    @pytest.mark.asyncio
    async def test_zone_apex(self, server):
        """Test SOA and NS answers at the zone apex."""
        answers = await server.dns_bridge.lookup("box.example.com", "ANY")

        assert [a["qtype"] for a in answers] == ["SOA", "NS"]
        assert answers[0]["content"].startswith("ns1.example.com. hostmaster.example.com. 1 ")
        assert answers[1]["content"] == "ns1.example.com."
        assert all(a["qname"] == ZONE for a in answers)

    @pytest.mark.asyncio
    async def test_soa_only(self, server):
        answers = await server.dns_bridge.lookup(ZONE, "soa")

        assert [a["qtype"] for a in answers] == ["SOA"]

    @pytest.mark.asyncio
    async def test_public_address(self, server):
        """Test that a remote name resolves to the box's public IP."""
        await registered_box(server)

        answers = await server.dns_bridge.lookup("myhouse.box.example.com.", "A")

        assert answers == [
            {
                "qtype": "A",
                "qname": "myhouse.box.example.com.",
                "content": "203.0.113.5",
                "ttl": 30,
                "auth": True,
            }
        ]

    @pytest.mark.asyncio
    async def test_local_address(self, server):
        """Test that a local name resolves to the box's LAN IP."""
        await registered_box(server)

        answers = await server.dns_bridge.lookup("LOCAL.MyHouse.box.example.com", "ANY")

        assert [(a["qtype"], a["content"]) for a in answers] == [("A", "192.168.1.20")]

    @pytest.mark.asyncio
    async def test_wrong_address_type(self, server):
        await registered_box(server)

        assert await server.dns_bridge.lookup("myhouse.box.example.com.", "AAAA") == []

    @pytest.mark.asyncio
    async def test_ipv6_address(self, server):
        result = await server.lifecycle.subscribe("v6house")
        await server.lifecycle.register(result.token, "fd00::2", "2001:db8::5")

        answers = await server.dns_bridge.lookup("v6house.box.example.com.", "AAAA")

        assert [a["content"] for a in answers] == ["2001:db8::5"]

    @pytest.mark.asyncio
    async def test_unregistered_box(self, server):
        """Test that a subscribed but unregistered box has no address."""
        await server.lifecycle.subscribe("myhouse")

        assert await server.dns_bridge.lookup("myhouse.box.example.com.", "A") == []

    @pytest.mark.asyncio
    async def test_acme_challenge(self, server):
        """Test that the latest challenge is served as TXT."""
        token = await registered_box(server, challenge="c1")
        await server.lifecycle.dnsconfig(token, "c2")

        answers = await server.dns_bridge.lookup(
            "_acme-challenge.myhouse.box.example.com.", "TXT"
        )

        assert [(a["qtype"], a["content"]) for a in answers] == [("TXT", '"c2"')]

    @pytest.mark.asyncio
    async def test_acme_challenge_escaped(self, server):
        """Test that quotes and backslashes in a challenge stay inside one string."""
        await registered_box(server, challenge='a"b\\c')

        answers = await server.dns_bridge.lookup(
            "_acme-challenge.myhouse.box.example.com.", "TXT"
        )

        assert answers[0]["content"] == '"a\\"b\\\\c"'

    @pytest.mark.asyncio
    async def test_acme_challenge_missing(self, server):
        await registered_box(server)

        assert await server.dns_bridge.lookup("_acme-challenge.myhouse.box.example.com.", "TXT") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "qname", ["nobody.box.example.com.", "myhouse.example.org.", "example.com."]
    )
    async def test_unknown_names(self, server, qname):
        await registered_box(server)

        assert await server.dns_bridge.lookup(qname, "ANY") == []


class TestRemoteBackend:
    """Tests for the /pdns endpoint."""

    @pytest.mark.asyncio
    async def test_initialize(self, server):
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post("/pdns", json={"method": "initialize", "parameters": {}})

            assert await resp.json() == {"result": True}

    @pytest.mark.asyncio
    async def test_lookup(self, server):
        await registered_box(server, challenge="c1")

        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post(
                "/pdns",
                json={
                    "method": "lookup",
                    "parameters": {"qname": "_acme-challenge.myhouse.box.example.com.", "qtype": "TXT"},
                },
            )

            body = await resp.json()
            assert body["result"][0]["content"] == '"c1"'

    @pytest.mark.asyncio
    async def test_lookup_no_answer(self, server):
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post(
                "/pdns",
                json={"method": "lookup", "parameters": {"qname": "nobody.box.example.com."}},
            )

            assert await resp.json() == {"result": False}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"method": "getAllDomains"}'])
    async def test_unusable_requests(self, server, body):
        """Test that malformed or unsupported calls answer false."""
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post(
                "/pdns", data=body, headers={"Content-Type": "application/json"}
            )

            assert resp.status == 200
            assert await resp.json() == {"result": False}

    @pytest.mark.asyncio
    async def test_store_failure(self, server):
        """Test that a storage failure answers false instead of erroring."""
        store = server.store
        async with TestClient(TestServer(server.build_app())) as client:
            with patch.object(store, "get_record_by_name", AsyncMock(side_effect=TimeoutError)):
                resp = await client.post(
                    "/pdns",
                    json={"method": "lookup", "parameters": {"qname": "myhouse.box.example.com."}},
                )

            assert await resp.json() == {"result": False}

    @pytest.mark.asyncio
    async def test_disabled(self):
        config = RegistryConfig(domain="example.com", storage_path=":memory:", dns_enabled=False)
        server = RegistryServer(config, store=MemoryRecordStore())

        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post("/pdns", json={"method": "initialize"})

            assert resp.status in (404, 405)


class TestQuoteTxt:
    """Tests for TXT content quoting."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("abc-DEF_123", '"abc-DEF_123"'),
            ('say "hi"', '"say \\"hi\\""'),
            ("back\\slash", '"back\\\\slash"'),
            ("", '""'),
        ],
    )
    def test_quote_txt(self, value, expected):
        assert quote_txt(value) == expected
