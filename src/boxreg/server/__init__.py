"""HTTP server: registration API, DNS bridge and entry point."""

from boxreg.server.api import RegistryApi
from boxreg.server.app import RegistryServer, create_store
from boxreg.server.pdns import DnsBridge

__all__ = ["RegistryApi", "RegistryServer", "DnsBridge", "create_store"]
