"""Configuration types with environment variable support.

All settings can be configured via environment variables with the BOXREG_ prefix.
Example: BOXREG_DOMAIN=example.com serves subdomains under box.example.com.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary with nested sections flattened.

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            data = tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return flatten_config(data)


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class RegistryConfig(BaseSettings):
    """Registration server configuration.

    Values passed to the constructor (CLI flags, config files) take precedence
    over BOXREG_* environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="BOXREG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    domain: str = Field(
        default="knilxof.org",
        description="Domain under which box.<domain> subdomains are handed out.",
    )
    bind: str = Field(
        default="0.0.0.0:4242",
        description="HTTP API bind address (host:port).",
    )
    storage_path: str = Field(
        default="registry.db",
        description="SQLite database path. ':memory:' keeps records in process memory.",
    )
    store_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound in seconds for a single storage call.",
    )
    trust_proxy_headers: bool = Field(
        default=False,
        description="Take the caller's public IP from X-Forwarded-For/X-Real-IP.",
    )
    log_level: str = Field(
        default="info",
        description="Log level (debug, info, warning, error).",
    )
    # PowerDNS remote backend
    dns_enabled: bool = Field(
        default=True,
        description="Serve the PowerDNS remote backend at /pdns.",
    )
    dns_ttl: int = Field(
        default=60,
        ge=0,
        description="TTL in seconds for answers served to PowerDNS.",
    )
    soa_nameserver: str | None = Field(
        default=None,
        description="Primary nameserver in the SOA record. Defaults to ns1.<domain>.",
    )
    soa_hostmaster: str | None = Field(
        default=None,
        description="Hostmaster mailbox in the SOA record. Defaults to hostmaster.<domain>.",
    )
    soa_serial: int = Field(default=1, description="SOA serial.")
    soa_refresh: int = Field(default=3600, description="SOA refresh (seconds).")
    soa_retry: int = Field(default=600, description="SOA retry (seconds).")
    soa_expire: int = Field(default=86400, description="SOA expire (seconds).")
    soa_minimum: int = Field(default=60, description="SOA negative-caching TTL (seconds).")

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        value = value.strip().rstrip(".").lower()
        if not value:
            raise ValueError("domain must not be empty")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        value = value.lower()
        if value not in ("debug", "info", "warning", "error"):
            raise ValueError(f"Unsupported log level: {value}")
        return value

    @property
    def registry_domain(self) -> str:
        """Suffix shared by every remote name, without trailing dot."""
        return f"box.{self.domain}"

    @property
    def soa_content(self) -> str:
        """SOA record content in PowerDNS format."""
        nameserver = self.soa_nameserver or f"ns1.{self.domain}."
        hostmaster = self.soa_hostmaster or f"hostmaster.{self.domain}."
        return (
            f"{nameserver} {hostmaster} {self.soa_serial} {self.soa_refresh} "
            f"{self.soa_retry} {self.soa_expire} {self.soa_minimum}"
        )

    def parse_bind(self) -> tuple[str, int]:
        """Parse bind address into host and port."""
        if ":" in self.bind:
            host, port = self.bind.rsplit(":", 1)
            return host or "0.0.0.0", int(port)
        return "0.0.0.0", int(self.bind)

