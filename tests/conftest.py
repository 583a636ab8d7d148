"""Pytest configuration and fixtures for velocity_core tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from velocity_core.config import VelocityConfig
from velocity_core.errors import VelocityConnectionError
from velocity_core.signing import WalletSigner
from velocity_core.transport.ws_client import VelocityWsMessage, VelocityWsMessageType

# Well-known throwaway key; never holds funds.
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
USER_ADDRESS = "0x" + "ab" * 20


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: Any = None,
    text_data: str | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.json.return_value = json_data
    else:
        response.json.side_effect = ValueError("no body")
    if text_data is not None:
        response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


class FakeClearnode:
    """In-memory stand-in for VelocityWsClient driven by the test."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.url: str | None = None
        self.closed = False
        self.connect_error: Exception | None = None
        self._inbox: asyncio.Queue[VelocityWsMessage | None] = asyncio.Queue()

    async def connect(
        self, url: str, *, ping_interval: int = 20, timeout: float = 15.0
    ) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.url = url
        self.closed = False
        self._inbox = asyncio.Queue()

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.closed:
            raise VelocityConnectionError("WebSocket is not connected")
        self.sent.append(payload)

    def push(self, frame: dict[str, Any]) -> None:
        self._inbox.put_nowait(
            VelocityWsMessage(VelocityWsMessageType.TEXT, json.dumps(frame))
        )

    def respond(self, method: str, data: dict[str, Any], *, to: int | None = None) -> None:
        """Answer the last sent request (or request ``to``) with ``method``."""
        request_id = to if to is not None else self.sent[-1]["req"][0]
        self.push({"res": [request_id, method, data, 1700000000000]})

    def drop(self) -> None:
        """Simulate the clearnode closing the socket."""
        self._inbox.put_nowait(VelocityWsMessage(VelocityWsMessageType.CLOSED))

    def methods(self) -> list[str]:
        return [frame["req"][1] for frame in self.sent]

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        while True:
            msg = await self._inbox.get()
            if msg is None:
                return
            yield msg
            if msg.type is VelocityWsMessageType.CLOSED:
                return


async def settle(rounds: int = 10) -> None:
    """Let the session listener drain queued frames."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clearnode():
    """Patch the session's socket class with a FakeClearnode."""
    fake = FakeClearnode()
    with patch("velocity_core.session.VelocityWsClient", return_value=fake):
        yield fake


@pytest.fixture
def wallet() -> WalletSigner:
    return WalletSigner.from_key(TEST_PRIVATE_KEY)


@pytest.fixture
def config() -> VelocityConfig:
    return VelocityConfig(clearnode_url="wss://clearnode.test/ws", request_timeout=5.0)
