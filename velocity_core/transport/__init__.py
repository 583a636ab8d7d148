"""Transport layer for the clearnode session.

Components:
- ws: WebSocket connection management
- ws_client: WebSocket message iteration
"""

from .ws import connect_websocket
from .ws_client import VelocityWsClient, VelocityWsMessage, VelocityWsMessageType

__all__ = [
    "VelocityWsClient",
    "VelocityWsMessage",
    "VelocityWsMessageType",
    "connect_websocket",
]
