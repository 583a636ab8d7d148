"""Clearnode socket wrapper yielding normalized frames."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..errors import VelocityConnectionError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_NOT_CONNECTED = "WebSocket is not connected"


class VelocityWsMessageType(Enum):
    """Kinds of frame the session reacts to."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class VelocityWsMessage:
    """A frame as seen by the session.

    ``data`` holds the JSON text for TEXT frames and the failure reason for
    ERROR frames.
    """

    type: VelocityWsMessageType
    data: str | None = None


_END = VelocityWsMessage(VelocityWsMessageType.CLOSED)


class VelocityWsClient:
    """One clearnode socket.

    Iterating the client yields TEXT frames until the socket goes away, then
    exactly one CLOSED frame (preceded by an ERROR frame if the read loop
    failed). Reconnecting is the caller's job.
    """

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    def _require_socket(self) -> ClientConnection:
        if self._ws is None:
            raise VelocityConnectionError(_NOT_CONNECTED)
        return self._ws

    async def connect(
        self,
        url: str,
        *,
        ping_interval: int = 20,
        timeout: float = 15.0,
    ) -> None:
        self._ws = await connect_websocket(
            url, ping_interval=ping_interval, timeout=timeout
        )

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def send_json(self, payload: dict[str, Any]) -> None:
        """Send ``payload`` as compact JSON text."""
        ws = self._require_socket()
        text = json.dumps(payload, separators=(",", ":"))
        try:
            await ws.send(text)
        except ConnectionClosed as err:
            raise VelocityConnectionError("WebSocket closed while sending") from err

    def __aiter__(self) -> AsyncIterator[VelocityWsMessage]:
        return self._read_frames(self._require_socket())

    async def _read_frames(
        self, ws: ClientConnection
    ) -> AsyncIterator[VelocityWsMessage]:
        try:
            async for raw in ws:
                frame = self._normalize_message(raw)
                if frame is not None:
                    yield frame
        except ConnectionClosed:
            pass
        except Exception as err:  # noqa: BLE001 - surfaced as an ERROR frame
            yield VelocityWsMessage(VelocityWsMessageType.ERROR, str(err))
        yield _END

    @staticmethod
    def _normalize_message(raw: str | bytes) -> VelocityWsMessage | None:
        """Wrap a websockets frame; undecodable binary frames are dropped."""
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                return None
        return VelocityWsMessage(VelocityWsMessageType.TEXT, raw)
