"""Registration server: wires storage, core operations and HTTP routes."""

from __future__ import annotations

import structlog
from aiohttp import web

from boxreg.core.config import RegistryConfig
from boxreg.observability.metrics import generate_metrics, get_content_type
from boxreg.records import (
    ChallengeAccessor,
    DiscoveryMatcher,
    KeyedLock,
    MemoryRecordStore,
    RecordLifecycle,
    RecordStore,
    SQLiteRecordStore,
)
from boxreg.server.api import RegistryApi
from boxreg.server.pdns import DnsBridge

logger = structlog.get_logger()


def create_store(storage_path: str) -> RecordStore:
    """In-memory store for ':memory:', SQLite otherwise."""
    if storage_path == ":memory:":
        return MemoryRecordStore()
    return SQLiteRecordStore(storage_path)


class RegistryServer:
    """HTTP server exposing the registration API and the DNS bridge."""

    def __init__(self, config: RegistryConfig, store: RecordStore | None = None) -> None:
        self.config = config
        self.store = store if store is not None else create_store(config.storage_path)
        token_locks = KeyedLock()
        self.lifecycle = RecordLifecycle(
            self.store,
            config.domain,
            store_timeout=config.store_timeout,
            token_locks=token_locks,
        )
        self.matcher = DiscoveryMatcher(
            self.store, store_timeout=config.store_timeout, token_locks=token_locks
        )
        self.accessor = ChallengeAccessor(self.store, store_timeout=config.store_timeout)
        self.api = RegistryApi(
            self.lifecycle,
            self.matcher,
            trust_proxy_headers=config.trust_proxy_headers,
        )
        self.dns_bridge = DnsBridge(self.accessor, config) if config.dns_enabled else None
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        self.api.register_routes(app)
        if self.dns_bridge is not None:
            self.dns_bridge.register_routes(app)
        app.router.add_get("/health", self._handle_health_check)
        app.router.add_get("/metrics", self._handle_metrics)
        app.on_cleanup.append(self._close_store)
        return app

    async def start(self) -> None:
        if isinstance(self.store, SQLiteRecordStore):
            await self.store.initialize()

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        host, port = self.config.parse_bind()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info(
            "Registration server started",
            host=host,
            port=port,
            registry_domain=self.config.registry_domain,
            storage=self.config.storage_path,
            dns_bridge=self.dns_bridge is not None,
        )

    async def stop(self) -> None:
        logger.info("Stopping registration server...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Registration server stopped")

    async def _close_store(self, app: web.Application) -> None:
        await self.store.close()

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})
