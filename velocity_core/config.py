"""Configuration loading.

Configuration is data: a single YAML file parsed into frozen dataclasses.
Every key is optional and falls back to the sandbox defaults below. Secrets
(the agent private key) never live in the file; they come from the
environment.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigLoadError

DEFAULT_CLEARNODE_URL = "wss://clearnet-sandbox.yellow.com/ws"
SEPOLIA_CHAIN_ID = 11155111
SEPOLIA_USDC = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
OPTIMISM_CHAIN_ID = 10
OPTIMISM_USDC = "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85"
PLACEHOLDER_DESTINATION = "0x0000000000000000000000000000000000000001"

AGENT_PRIVATE_KEY_ENV = "AGENT_PRIVATE_KEY"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded exponential backoff with jitter.

    Attributes:
        base_delay: Delay before the first retry (seconds).
        max_delay: Upper bound for any single delay (seconds).
        max_attempts: Retries allowed before giving up.
        jitter: Fraction of the delay randomized in either direction (0.0-1.0).
    """

    base_delay: float = 5.0
    max_delay: float = 60.0
    max_attempts: int = 8
    jitter: float = 0.5

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("Reconnect delays must satisfy 0 <= base <= max")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"Jitter must be 0.0-1.0, got {self.jitter}")

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retry number ``attempt`` (zero-based)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            spread = (rng or random).uniform(-self.jitter, self.jitter)
            delay *= 1 + spread
        return max(0.0, delay)


@dataclass(frozen=True)
class RoutingConfig:
    """Cross-chain route lookup parameters used by the agent."""

    base_url: str = "https://li.quest/v1"
    integrator: str = "velocityvault"
    from_chain_id: int = SEPOLIA_CHAIN_ID
    to_chain_id: int = OPTIMISM_CHAIN_ID
    from_token: str = SEPOLIA_USDC
    to_token: str = OPTIMISM_USDC
    slippage: float = 0.03
    timeout: float = 20.0


@dataclass(frozen=True)
class VelocityConfig:
    """Top-level client and agent configuration."""

    clearnode_url: str = DEFAULT_CLEARNODE_URL
    ping_interval: int = 20
    connect_timeout: float = 15.0
    request_timeout: float = 30.0

    application: str = "VelocityVault"
    scope: str = "velocityvault.app"
    session_ttl: int = 3600
    asset: str = "ytest.usd"
    allowance: str = "1000000000"

    chain_id: int = SEPOLIA_CHAIN_ID
    token_address: str = SEPOLIA_USDC
    transfer_destination: str = PLACEHOLDER_DESTINATION

    backend_url: str | None = None
    vault_address: str | None = None
    health_interval: float = 60.0

    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    routing: RoutingConfig = field(default_factory=RoutingConfig)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigLoadError(f"File not found: {path}")
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as err:
        raise ConfigLoadError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Top level of {path} must be a mapping")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigLoadError(f"Section '{name}' must be a mapping")
    return section


def config_from_dict(data: dict[str, Any]) -> VelocityConfig:
    """Build a VelocityConfig from parsed YAML.

    Raises:
        ConfigLoadError: If a section has the wrong shape or a value is invalid.
    """
    clearnode = _section(data, "clearnode")
    app = _section(data, "app")
    chain = _section(data, "chain")
    monitor = _section(data, "monitor")
    reconnect = _section(monitor, "reconnect")
    routing = _section(data, "routing")

    defaults = VelocityConfig()
    try:
        return VelocityConfig(
            clearnode_url=clearnode.get("url", defaults.clearnode_url),
            ping_interval=int(clearnode.get("ping_interval", defaults.ping_interval)),
            connect_timeout=float(
                clearnode.get("connect_timeout", defaults.connect_timeout)
            ),
            request_timeout=float(
                clearnode.get("request_timeout", defaults.request_timeout)
            ),
            application=app.get("application", defaults.application),
            scope=app.get("scope", defaults.scope),
            session_ttl=int(app.get("session_ttl", defaults.session_ttl)),
            asset=app.get("asset", defaults.asset),
            allowance=str(app.get("allowance", defaults.allowance)),
            chain_id=int(chain.get("chain_id", defaults.chain_id)),
            token_address=chain.get("token_address", defaults.token_address),
            transfer_destination=chain.get(
                "transfer_destination", defaults.transfer_destination
            ),
            backend_url=monitor.get("backend_url", defaults.backend_url),
            vault_address=monitor.get("vault_address", defaults.vault_address),
            health_interval=float(
                monitor.get("health_interval", defaults.health_interval)
            ),
            reconnect=ReconnectPolicy(
                base_delay=float(reconnect.get("base_delay", 5.0)),
                max_delay=float(reconnect.get("max_delay", 60.0)),
                max_attempts=int(reconnect.get("max_attempts", 8)),
                jitter=float(reconnect.get("jitter", 0.5)),
            ),
            routing=RoutingConfig(
                base_url=routing.get("base_url", defaults.routing.base_url),
                integrator=routing.get("integrator", defaults.routing.integrator),
                from_chain_id=int(
                    routing.get("from_chain_id", defaults.routing.from_chain_id)
                ),
                to_chain_id=int(routing.get("to_chain_id", defaults.routing.to_chain_id)),
                from_token=routing.get("from_token", defaults.routing.from_token),
                to_token=routing.get("to_token", defaults.routing.to_token),
                slippage=float(routing.get("slippage", defaults.routing.slippage)),
                timeout=float(routing.get("timeout", defaults.routing.timeout)),
            ),
        )
    except (TypeError, ValueError) as err:
        raise ConfigLoadError(f"Invalid configuration value: {err}") from err


def load_config(path: Path | None = None) -> VelocityConfig:
    """Load configuration from a YAML file, or defaults when path is None.

    Raises:
        ConfigLoadError: If the file is missing or malformed.
    """
    if path is None:
        return VelocityConfig()
    return config_from_dict(_load_yaml(path))
