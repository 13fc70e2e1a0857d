"""PowerDNS remote backend answering from the stored records.

PowerDNS is configured with the remote backend over HTTP, posting JSON:

    launch=remote
    remote-connection-string=http:url=http://127.0.0.1:4242/pdns,post=1,post_json=1

Served names, for the zone box.<domain>:
    box.<domain>.                        SOA, NS
    <name>.box.<domain>.                 A/AAAA -> public IP
    local.<name>.box.<domain>.           A/AAAA -> local IP
    _acme-challenge.<name>.box.<domain>. TXT    -> DNS-01 challenge
"""

from __future__ import annotations

import json
from ipaddress import IPv6Address, ip_address
from typing import Any

import structlog
from aiohttp import web

from boxreg.core.config import RegistryConfig
from boxreg.core.errors import StoreFailure
from boxreg.observability.metrics import DNS_LOOKUPS
from boxreg.records.challenge import ChallengeAccessor, normalize_name

logger = structlog.get_logger()

ACME_PREFIX = "_acme-challenge."


def quote_txt(value: str) -> str:
    """TXT record content: one quoted character-string with \\ and " escaped."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _address_type(address: str) -> str | None:
    try:
        return "AAAA" if isinstance(ip_address(address), IPv6Address) else "A"
    except ValueError:
        return None


class DnsBridge:
    """Resolves PowerDNS lookups against current store state."""

    def __init__(self, accessor: ChallengeAccessor, config: RegistryConfig) -> None:
        self.accessor = accessor
        self.config = config
        self.zone = f"{config.registry_domain}."

    def register_routes(self, app: web.Application) -> None:
        app.router.add_post("/pdns", self.handle)

    async def handle(self, request: web.Request) -> web.Response:
        """Dispatch one remote backend call."""
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"result": False})
        if not isinstance(payload, dict):
            return web.json_response({"result": False})

        method = payload.get("method")
        parameters = payload.get("parameters") or {}

        if method == "initialize":
            logger.info("PowerDNS backend initialized")
            return web.json_response({"result": True})

        if method == "lookup" and isinstance(parameters, dict):
            qname = str(parameters.get("qname", ""))
            qtype = str(parameters.get("qtype", "ANY"))
            try:
                answers = await self.lookup(qname, qtype)
            except StoreFailure as e:
                logger.error("PowerDNS lookup failed", qname=qname, error=e.message)
                return web.json_response({"result": False})
            DNS_LOOKUPS.labels(qtype=qtype.upper(), answered=str(bool(answers)).lower()).inc()
            return web.json_response({"result": answers or False})

        return web.json_response({"result": False})

    async def lookup(self, qname: str, qtype: str) -> list[dict[str, Any]]:
        """Answer records for ``qname`` of type ``qtype`` (``ANY`` for all)."""
        qname = normalize_name(qname)
        qtype = qtype.upper()

        if qname == self.zone:
            answers = []
            if qtype in ("SOA", "ANY"):
                answers.append(self._answer(qname, "SOA", self.config.soa_content))
            if qtype in ("NS", "ANY"):
                nameserver = self.config.soa_content.split(" ", 1)[0]
                answers.append(self._answer(qname, "NS", nameserver))
            return answers

        if not qname.endswith(f".{self.zone}"):
            return []

        if qname.startswith(ACME_PREFIX):
            if qtype not in ("TXT", "ANY"):
                return []
            challenge = await self.accessor.lookup_challenge(qname[len(ACME_PREFIX) :])
            if challenge is None:
                return []
            return [self._answer(qname, "TXT", quote_txt(challenge))]

        found = await self.accessor.lookup_addresses(qname)
        if found is None or not found.address:
            return []
        rtype = _address_type(found.address)
        if rtype is None:
            logger.warning("Stored address is not an IP", qname=qname, address=found.address)
            return []
        if qtype not in (rtype, "ANY"):
            return []
        return [self._answer(qname, rtype, found.address)]

    def _answer(self, qname: str, qtype: str, content: str) -> dict[str, Any]:
        return {
            "qtype": qtype,
            "qname": qname,
            "content": content,
            "ttl": self.config.dns_ttl,
            "auth": True,
        }
