"""Inbound frame demultiplexing.

The router is stateless per frame: it turns one raw clearnode frame into one
typed event and never looks at what was sent. Request correlation happens in
the session, keyed by the request id each event carries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import VelocityClientError
from .protocol import from_base_units


@dataclass(frozen=True)
class SessionEvent:
    """Base for router output. ``request_id`` is None for uncorrelated frames."""

    request_id: int | None


@dataclass(frozen=True)
class RemoteFailure(SessionEvent):
    message: str


@dataclass(frozen=True)
class AuthChallenge(SessionEvent):
    challenge: str


@dataclass(frozen=True)
class Authenticated(SessionEvent):
    session_key: str
    jwt_token: str | None = None


@dataclass(frozen=True)
class ChannelInfo:
    channel_id: str
    status: str
    amount: str


@dataclass(frozen=True)
class ChannelsListed(SessionEvent):
    channels: tuple[ChannelInfo, ...]

    def first_open(self) -> ChannelInfo | None:
        for channel in self.channels:
            if channel.status == "open":
                return channel
        return None


@dataclass(frozen=True)
class ChannelCreated(SessionEvent):
    channel_id: str


@dataclass(frozen=True)
class ChannelFunded(SessionEvent):
    channel_id: str | None = None


@dataclass(frozen=True)
class TransferConfirmed(SessionEvent):
    """Confirmed transfer; ``amount`` is already converted to display units."""

    amount: Decimal
    user: str | None = None
    destination: str | None = None


def decode_frame(raw: str | bytes | dict[str, Any]) -> dict[str, Any]:
    """Parse a raw frame into a JSON object."""
    if isinstance(raw, dict):
        return raw
    try:
        frame = json.loads(raw)
    except ValueError as err:
        raise VelocityClientError(f"Invalid JSON frame: {err}") from err
    if not isinstance(frame, dict):
        raise VelocityClientError("Frame is not a JSON object")
    return frame


def _request_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or "Unknown error")
    if isinstance(error, str) and error:
        return error
    return "Unknown error"


def _transfer_amount(data: dict[str, Any]) -> Decimal:
    raw = data.get("amount")
    if raw is None:
        allocations = data.get("allocations") or []
        if allocations and isinstance(allocations[0], dict):
            raw = allocations[0].get("amount")
    if raw is None:
        return Decimal(0)
    try:
        amount = from_base_units(str(raw))
    except InvalidOperation as err:
        raise VelocityClientError(f"Invalid transfer amount: {raw!r}") from err
    if not amount.is_finite() or amount < 0:
        raise VelocityClientError(f"Invalid transfer amount: {raw!r}")
    return amount


def _channels(data: dict[str, Any]) -> tuple[ChannelInfo, ...]:
    channels: list[ChannelInfo] = []
    for entry in data.get("channels") or []:
        if not isinstance(entry, dict) or not entry.get("channel_id"):
            continue
        channels.append(
            ChannelInfo(
                channel_id=str(entry["channel_id"]),
                status=str(entry.get("status", "")),
                amount=str(entry.get("amount") or "0"),
            )
        )
    return tuple(channels)


def dispatch(raw: str | bytes | dict[str, Any]) -> SessionEvent | None:
    """Map one inbound frame to a session event.

    Returns None for frames with no ``res`` and for unrecognized methods.

    Raises:
        VelocityClientError: If the frame is not valid JSON or a known method
            carries malformed data.
    """
    frame = decode_frame(raw)

    if frame.get("error") is not None:
        return RemoteFailure(request_id=None, message=_error_message(frame["error"]))

    res = frame.get("res")
    if not isinstance(res, list) or len(res) < 2:
        return None

    request_id = _request_id(res[0])
    method = res[1]
    data = res[2] if len(res) > 2 and isinstance(res[2], dict) else {}

    if method == "error":
        return RemoteFailure(request_id=request_id, message=_error_message(data))

    if method == "auth_challenge":
        challenge = data.get("challenge_message") or data.get("challenge")
        if not challenge:
            raise VelocityClientError("auth_challenge without challenge_message")
        return AuthChallenge(request_id=request_id, challenge=str(challenge))

    if method == "auth_verify":
        if data.get("success") is False:
            return RemoteFailure(
                request_id=request_id, message="Authentication rejected"
            )
        session_key = data.get("session_key")
        if not session_key:
            raise VelocityClientError("auth_verify without session_key")
        return Authenticated(
            request_id=request_id,
            session_key=str(session_key),
            jwt_token=data.get("jwt_token"),
        )

    if method == "channels":
        return ChannelsListed(request_id=request_id, channels=_channels(data))

    if method == "create_channel":
        channel_id = data.get("channel_id")
        if not channel_id:
            raise VelocityClientError("create_channel without channel_id")
        return ChannelCreated(request_id=request_id, channel_id=str(channel_id))

    if method == "resize_channel":
        return ChannelFunded(request_id=request_id, channel_id=data.get("channel_id"))

    if method == "transfer":
        return TransferConfirmed(
            request_id=request_id,
            amount=_transfer_amount(data),
            user=data.get("user"),
            destination=data.get("destination"),
        )

    return None
