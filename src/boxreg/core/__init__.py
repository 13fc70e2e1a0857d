"""Core."""

from .config import RegistryConfig, load_config_from_file
from .errors import (
    DiscoveryUnavailable,
    InvalidRequest,
    NameUnavailable,
    NotFound,
    RegistryError,
    StoreFailure,
)

__all__ = [
    "RegistryConfig",
    "load_config_from_file",
    "RegistryError",
    "InvalidRequest",
    "NameUnavailable",
    "NotFound",
    "DiscoveryUnavailable",
    "StoreFailure",
]
