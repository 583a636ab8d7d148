"""Opening the clearnode socket.

All failure modes of the handshake are folded into the package's error
hierarchy here, so the session layer only ever catches ``VelocityClientError``
subclasses.
"""

from __future__ import annotations

import asyncio
from urllib.parse import urlsplit

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import InvalidHandshake, InvalidURI, WebSocketException

from ..errors import VelocityConnectionError, VelocityHandshakeError, VelocityTimeout

WS_SCHEMES = frozenset({"ws", "wss"})
CLOSE_TIMEOUT = 5


def _check_url(url: str) -> None:
    parts = urlsplit(url)
    if parts.scheme not in WS_SCHEMES or not parts.netloc:
        raise VelocityHandshakeError(f"Not a websocket URL: {url!r}")


async def connect_websocket(
    url: str,
    *,
    ping_interval: int | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Open ``url`` and return the live connection.

    Frames may be sent as soon as this returns. Inbound frame size is
    unlimited.

    Raises:
        VelocityHandshakeError: Malformed URL or rejected upgrade.
        VelocityTimeout: No open socket within ``timeout`` seconds.
        VelocityConnectionError: Network failure.
    """
    _check_url(url)
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=CLOSE_TIMEOUT,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise VelocityTimeout(f"No response from {url} after {timeout}s") from err
    except (InvalidURI, InvalidHandshake) as err:
        raise VelocityHandshakeError(f"Handshake with {url} rejected: {err}") from err
    except (OSError, WebSocketException) as err:
        raise VelocityConnectionError(f"Cannot reach {url}: {err}") from err
