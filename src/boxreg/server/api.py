"""HTTP API mapping requests onto the record lifecycle and discovery calls.

Every operation is served at ``/<operation>`` for GET and POST. Parameters come
from the query string or a form body. The caller's public IP is the socket peer
address, or the proxy-supplied address when proxy headers are trusted.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from ipaddress import ip_address

import structlog
from aiohttp import web

from boxreg.core.errors import InvalidRequest, RegistryError
from boxreg.observability.metrics import API_REQUESTS, REQUEST_DURATION
from boxreg.records import DiscoveryMatcher, RecordLifecycle

logger = structlog.get_logger()

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def error_response(error: RegistryError) -> web.Response:
    return web.json_response(error.to_dict(), status=error.status)


def ok_response() -> web.Response:
    return web.Response(status=200)


async def read_params(request: web.Request) -> dict[str, str]:
    """Merge query string and form body parameters (body wins)."""
    params: dict[str, str] = dict(request.query)
    if request.method == "POST" and request.can_read_body:
        try:
            form = await request.post()
        except ValueError as e:
            raise InvalidRequest(f"Malformed request body: {e}") from e
        for key, value in form.items():
            if isinstance(value, str):
                params[key] = value
    return params


def require(params: dict[str, str], *names: str) -> list[str]:
    """Return the named parameters, stripped.

    Raises:
        InvalidRequest: If any parameter is missing or blank.
    """
    values = [params.get(name, "").strip() for name in names]
    missing = [name for name, value in zip(names, values, strict=True) if not value]
    if missing:
        raise InvalidRequest(f"Missing parameter(s): {', '.join(missing)}")
    return values


def validate_ip(value: str, name: str) -> str:
    try:
        return str(ip_address(value))
    except ValueError as e:
        raise InvalidRequest(f"Invalid {name}: {value!r}") from e


class RegistryApi:
    """Request handlers for the registration endpoints."""

    def __init__(
        self,
        lifecycle: RecordLifecycle,
        matcher: DiscoveryMatcher,
        trust_proxy_headers: bool = False,
    ) -> None:
        self.lifecycle = lifecycle
        self.matcher = matcher
        self.trust_proxy_headers = trust_proxy_headers

    def routes(self) -> dict[str, Callable[[web.Request], Awaitable[web.Response]]]:
        """Operation name to handler."""
        return {
            "subscribe": self.subscribe,
            "register": self.register,
            "dnsconfig": self.dnsconfig,
            "unsubscribe": self.unsubscribe,
            "info": self.info,
            "ping": self.ping,
            "adddiscovery": self.adddiscovery,
            "revokediscovery": self.revokediscovery,
            "discovery": self.discovery,
        }

    def register_routes(self, app: web.Application) -> None:
        """Register every operation on an aiohttp application."""
        for operation, handler in self.routes().items():
            wrapped = self._wrap(operation, handler)
            app.router.add_get(f"/{operation}", wrapped)
            app.router.add_post(f"/{operation}", wrapped)

    def _wrap(self, operation: str, handler: Handler) -> Handler:
        async def dispatch(request: web.Request) -> web.StreamResponse:
            start = time.perf_counter()
            outcome = "ok"
            try:
                return await handler(request)
            except RegistryError as e:
                outcome = e.kind
                log = logger.error if e.status >= 500 else logger.info
                log("Request failed", operation=operation, error=e.kind, message=e.message)
                return error_response(e)
            except web.HTTPException:
                outcome = "http_error"
                raise
            except Exception as e:
                outcome = "internal_error"
                logger.exception("Unhandled error", operation=operation, error=str(e))
                return web.json_response(
                    {"error": "InternalError", "message": "Internal server error"}, status=500
                )
            finally:
                API_REQUESTS.labels(operation=operation, outcome=outcome).inc()
                REQUEST_DURATION.labels(operation=operation).observe(time.perf_counter() - start)

        return dispatch

    def _get_client_ip(self, request: web.Request) -> str:
        """Extract the caller's public IP, considering proxies when trusted."""
        if self.trust_proxy_headers:
            forwarded = request.headers.get("X-Forwarded-For", "")
            if forwarded:
                # Take the first IP (original client)
                return validate_ip(forwarded.split(",")[0].strip(), "X-Forwarded-For")

            real_ip = request.headers.get("X-Real-IP", "")
            if real_ip:
                return validate_ip(real_ip.strip(), "X-Real-IP")

        if not request.remote:
            raise InvalidRequest("Cannot determine caller address")
        return validate_ip(request.remote, "remote address")

    async def subscribe(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        (name,) = require(params, "name")
        description = params.get("desc", "").strip() or None
        logger.info("Subscribe request", name=name)

        result = await self.lifecycle.subscribe(name, description)
        return web.json_response(result.to_dict())

    async def register(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        token, local_ip = require(params, "token", "local_ip")
        local_ip = validate_ip(local_ip, "local_ip")
        public_ip = self._get_client_ip(request)
        logger.info("Register request", local_ip=local_ip, public_ip=public_ip)

        await self.lifecycle.register(token, local_ip, public_ip)
        return ok_response()

    async def dnsconfig(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        token, challenge = require(params, "token", "challenge")
        logger.debug("Dnsconfig request")

        await self.lifecycle.dnsconfig(token, challenge)
        return ok_response()

    async def unsubscribe(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        (token,) = require(params, "token")
        logger.debug("Unsubscribe request")

        await self.lifecycle.unsubscribe(token)
        return ok_response()

    async def info(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        (token,) = require(params, "token")
        logger.debug("Info request")

        record = await self.lifecycle.info(token)
        return web.json_response(record.to_dict())

    async def ping(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        public_ip = self._get_client_ip(request)
        own_token = params.get("token", "").strip() or None
        logger.info("Ping request", public_ip=public_ip)

        found = await self.matcher.ping(public_ip, exclude_token=own_token)
        return web.json_response([item.to_dict() for item in found])

    async def adddiscovery(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        token, disco = require(params, "token", "disco")
        logger.debug("Add discovery request", disco=disco)

        await self.matcher.add_discovery(token, disco)
        return ok_response()

    async def revokediscovery(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        token, disco = require(params, "token", "disco")
        logger.debug("Revoke discovery request", disco=disco)

        await self.matcher.revoke_discovery(token, disco)
        return ok_response()

    async def discovery(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        (disco,) = require(params, "disco")
        public_ip = self._get_client_ip(request)
        logger.info("Discovery request", disco=disco, public_ip=public_ip)

        found = await self.matcher.discovery(disco, public_ip)
        return web.json_response([item.to_dict() for item in found])

