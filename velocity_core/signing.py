"""Signing capabilities for clearnode messages.

Two signers are used by a session:
- SessionKeySigner: a throwaway secp256k1 key created per session, held in a
  zeroable buffer and discarded on disconnect. Signs every request after auth.
- WalletSigner: the user's (or agent's) wallet account. Signs the EIP-712
  auth policy that delegates spending to the session key.

Payload signatures are raw ECDSA over keccak256 of the compact JSON of the
request array, serialized as r || s || v with v in {27, 28}.
"""

from __future__ import annotations

import json
import secrets
from abc import ABC, abstractmethod
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from eth_keys import keys
from eth_utils import keccak

from .errors import VelocityClientError

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def canonical_json(payload: Any) -> str:
    """Compact JSON used both on the wire and as the signed preimage."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _sign_digest(private_key: bytes, digest: bytes) -> str:
    signature = keys.PrivateKey(private_key).sign_msg_hash(digest)
    raw = (
        signature.r.to_bytes(32, "big")
        + signature.s.to_bytes(32, "big")
        + bytes([signature.v + 27])
    )
    return "0x" + raw.hex()


def _generate_private_key() -> bytearray:
    while True:
        candidate = secrets.token_bytes(32)
        if 0 < int.from_bytes(candidate, "big") < SECP256K1_N:
            return bytearray(candidate)


class MessageSigner(ABC):
    """Anything that can sign a canonical clearnode request payload."""

    @property
    @abstractmethod
    def address(self) -> str | None:
        """Checksummed address of the signing key, if any."""

    @abstractmethod
    def sign_payload(self, payload: Any) -> str:
        """Sign the canonical JSON of payload and return a 0x hex signature."""


class SessionKeySigner(MessageSigner):
    """Per-session throwaway key, kept only in memory."""

    def __init__(self, private_key: bytes | None = None) -> None:
        self._key = (
            bytearray(private_key) if private_key is not None else _generate_private_key()
        )
        self._address: str | None = keys.PrivateKey(
            bytes(self._key)
        ).public_key.to_checksum_address()
        self._discarded = False

    @property
    def address(self) -> str | None:
        return self._address

    @property
    def is_discarded(self) -> bool:
        return self._discarded

    def sign_payload(self, payload: Any) -> str:
        if self._discarded:
            raise VelocityClientError("Session key has been discarded")
        digest = keccak(text=canonical_json(payload))
        return _sign_digest(bytes(self._key), digest)

    def discard(self) -> None:
        """Overwrite the key material and refuse further signing."""
        for idx in range(len(self._key)):
            self._key[idx] = 0
        self._discarded = True


class WalletSigner(MessageSigner):
    """Wallet-backed signer.

    ``account`` may be None to model a connected wallet with no account
    selected; connecting a session with such a wallet fails.
    """

    def __init__(self, account: LocalAccount | None) -> None:
        self._account = account

    @classmethod
    def from_key(cls, private_key: str | bytes) -> WalletSigner:
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str | None:
        if self._account is None:
            return None
        return self._account.address

    def _require_account(self) -> LocalAccount:
        if self._account is None:
            raise VelocityClientError("No wallet account found")
        return self._account

    def sign_payload(self, payload: Any) -> str:
        account = self._require_account()
        digest = keccak(text=canonical_json(payload))
        return _sign_digest(bytes(account.key), digest)

    def sign_typed_data(self, typed_data: dict[str, Any]) -> str:
        """Sign an EIP-712 message given as a full typed-data document."""
        account = self._require_account()
        signable = encode_typed_data(full_message=typed_data)
        signed = account.sign_message(signable)
        sig_hex = signed.signature.hex()
        if not sig_hex.startswith("0x"):
            sig_hex = "0x" + sig_hex
        return sig_hex
