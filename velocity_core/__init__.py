"""VelocityVault clearnode client package."""

from .config import ReconnectPolicy, RoutingConfig, VelocityConfig, load_config
from .errors import (
    ConfigLoadError,
    VelocityClientError,
    VelocityConnectionError,
    VelocityHandshakeError,
    VelocityNoChannelError,
    VelocityPreconditionError,
    VelocityRemoteError,
    VelocityResponseError,
    VelocityTimeout,
    VelocityValidationError,
)
from .http import VelocityBackendClient
from .monitor import AgentMonitor, MonitorState
from .routing import Route, RouteClient
from .session import SessionSnapshot, SessionState, VelocitySession, create_session
from .signing import SessionKeySigner, WalletSigner

__version__ = "0.1.0"

__all__ = [
    "AgentMonitor",
    "ConfigLoadError",
    "MonitorState",
    "ReconnectPolicy",
    "Route",
    "RouteClient",
    "RoutingConfig",
    "SessionKeySigner",
    "SessionSnapshot",
    "SessionState",
    "VelocityBackendClient",
    "VelocityClientError",
    "VelocityConfig",
    "VelocityConnectionError",
    "VelocityHandshakeError",
    "VelocityNoChannelError",
    "VelocityPreconditionError",
    "VelocityRemoteError",
    "VelocityResponseError",
    "VelocitySession",
    "VelocityTimeout",
    "VelocityValidationError",
    "WalletSigner",
    "create_session",
    "load_config",
]
