"""Message builders for clearnode RPC frames.

Every outbound frame has the shape::

    {"req": [request_id, method, params, timestamp_ms], "sig": [signature, ...]}

Builders are pure given their inputs and a signer. Amounts on the wire are
integers in six-decimal USDC base units.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Any

from .signing import MessageSigner, WalletSigner

USDC_DECIMALS = 6
USDC_SCALE = Decimal(10) ** USDC_DECIMALS


def to_base_units(amount: Decimal | str) -> int:
    """Convert a display amount to integer base units, truncating dust."""
    scaled = Decimal(amount) * USDC_SCALE
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(units: int | str) -> Decimal:
    """Convert integer base units back to a display amount."""
    return Decimal(units) / USDC_SCALE


@dataclass(frozen=True)
class Allocation:
    """Asset amount in base units."""

    asset: str
    amount: int

    def as_params(self) -> dict[str, str]:
        return {"asset": self.asset, "amount": str(self.amount)}


@dataclass(frozen=True)
class AuthIdentity:
    """Who is authenticating: the wallet and the key it delegates to."""

    wallet: str
    session_key: str


@dataclass(frozen=True)
class AuthScope:
    """What the session key may do and for how long."""

    application: str
    scope: str
    expires_at: int
    allowances: tuple[Allocation, ...] = field(default_factory=tuple)


def build_request(
    signer: MessageSigner | None,
    *,
    request_id: int,
    method: str,
    params: dict[str, Any],
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Build a signed request envelope.

    Args:
        signer: Signs the ``req`` array. None produces an empty ``sig`` list.
        request_id: Per-session unique request identifier.
        method: RPC method name.
        params: Method-specific parameter object.
        timestamp_ms: Optional epoch milliseconds override.
    """
    req: list[Any] = [
        request_id,
        method,
        params,
        timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
    ]
    sig = [signer.sign_payload(req)] if signer is not None else []
    return {"req": req, "sig": sig}


def build_auth_request(
    identity: AuthIdentity,
    scope: AuthScope,
    *,
    request_id: int,
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Open the auth handshake. Unsigned; the clearnode answers with a challenge."""
    return build_request(
        None,
        request_id=request_id,
        method="auth_request",
        params={
            "address": identity.wallet,
            "session_key": identity.session_key,
            "application": scope.application,
            "allowances": [a.as_params() for a in scope.allowances],
            "expires_at": scope.expires_at,
            "scope": scope.scope,
        },
        timestamp_ms=timestamp_ms,
    )


def build_auth_policy(
    identity: AuthIdentity, scope: AuthScope, challenge: str
) -> dict[str, Any]:
    """EIP-712 typed data the wallet signs to answer an auth challenge."""
    return {
        "types": {
            "EIP712Domain": [{"name": "name", "type": "string"}],
            "Policy": [
                {"name": "challenge", "type": "string"},
                {"name": "scope", "type": "string"},
                {"name": "wallet", "type": "address"},
                {"name": "session_key", "type": "address"},
                {"name": "expires_at", "type": "uint64"},
                {"name": "allowances", "type": "Allowance[]"},
            ],
            "Allowance": [
                {"name": "asset", "type": "string"},
                {"name": "amount", "type": "string"},
            ],
        },
        "primaryType": "Policy",
        "domain": {"name": scope.application},
        "message": {
            "challenge": challenge,
            "scope": scope.scope,
            "wallet": identity.wallet,
            "session_key": identity.session_key,
            "expires_at": scope.expires_at,
            "allowances": [a.as_params() for a in scope.allowances],
        },
    }


def build_auth_verify(
    wallet: WalletSigner,
    challenge: str,
    identity: AuthIdentity,
    scope: AuthScope,
    *,
    request_id: int,
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Answer an auth challenge with the wallet's EIP-712 policy signature."""
    frame = build_request(
        None,
        request_id=request_id,
        method="auth_verify",
        params={"challenge": challenge},
        timestamp_ms=timestamp_ms,
    )
    frame["sig"] = [
        wallet.sign_typed_data(build_auth_policy(identity, scope, challenge))
    ]
    return frame


def build_create_channel(
    signer: MessageSigner,
    chain_id: int,
    token_address: str,
    *,
    request_id: int,
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    return build_request(
        signer,
        request_id=request_id,
        method="create_channel",
        params={"chain_id": chain_id, "token": token_address},
        timestamp_ms=timestamp_ms,
    )


def build_resize_channel(
    signer: MessageSigner,
    channel_id: str,
    allocate_amount: int,
    destination: str,
    *,
    request_id: int,
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Move ``allocate_amount`` base units into the channel."""
    return build_request(
        signer,
        request_id=request_id,
        method="resize_channel",
        params={
            "channel_id": channel_id,
            "allocate_amount": allocate_amount,
            "funds_destination": destination,
        },
        timestamp_ms=timestamp_ms,
    )


def build_transfer(
    signer: MessageSigner,
    destination: str,
    allocations: Sequence[Allocation],
    nonce: int,
    *,
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Off-chain transfer. ``nonce`` doubles as the request id."""
    return build_request(
        signer,
        request_id=nonce,
        method="transfer",
        params={
            "destination": destination,
            "allocations": [a.as_params() for a in allocations],
        },
        timestamp_ms=timestamp_ms,
    )
