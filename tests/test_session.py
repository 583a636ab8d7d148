"""Tests for the VelocitySession state machine."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from velocity_core import SessionState, create_session
from velocity_core.config import PLACEHOLDER_DESTINATION, VelocityConfig
from velocity_core.errors import (
    VelocityConnectionError,
    VelocityNoChannelError,
    VelocityPreconditionError,
    VelocityRemoteError,
    VelocityTimeout,
)
from velocity_core.signing import WalletSigner
from velocity_core.transport.ws_client import VelocityWsMessage, VelocityWsMessageType

from .conftest import settle


async def authenticate(session, clearnode, wallet, session_key="0xabc"):
    """Drive the full auth handshake against the fake clearnode."""
    assert await session.connect(wallet) is True
    clearnode.respond("auth_challenge", {"challenge_message": "challenge-1"})
    await settle()
    clearnode.respond("auth_verify", {"session_key": session_key, "success": True})
    await settle()


async def open_channel(session, clearnode, amount="10", channel_id="0xCH1"):
    task = asyncio.create_task(session.deposit_or_fund(amount))
    await settle()
    clearnode.respond("create_channel", {"channel_id": channel_id})
    assert await task is True


class TestSessionCreation:
    """Tests for a fresh session."""

    def test_defaults(self, config):
        session = create_session(config)

        assert session.state is SessionState.DISCONNECTED
        assert session.session_key is None
        assert session.channel_id is None
        assert session.balance == "0"
        assert not session.is_connected
        assert not session.is_authenticated
        assert not session.is_loading
        assert session.error is None

    def test_sessions_are_independent(self, config):
        first = create_session(config)
        second = create_session(config)

        first._ledger.credit(Decimal("5"))
        assert first is not second
        assert first.balance == "5"
        assert second.balance == "0"

    def test_snapshot_reflects_properties(self, config):
        snapshot = create_session(config).snapshot

        assert snapshot.state is SessionState.DISCONNECTED
        assert snapshot.balance == "0"
        assert snapshot.is_authenticated is False


class TestConnect:
    """Tests for connect() and the auth handshake."""

    @pytest.mark.asyncio
    async def test_connect_without_account_fails(self, config, clearnode):
        session = create_session(config)

        result = await session.connect(WalletSigner(None))

        assert result is False
        assert session.error == "No wallet account found"
        assert isinstance(session.last_error, VelocityConnectionError)
        assert clearnode.sent == []
        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_socket_failure(self, config, clearnode, wallet):
        clearnode.connect_error = VelocityConnectionError("WebSocket connection failed")
        session = create_session(config)

        result = await session.connect(wallet)

        assert result is False
        assert session.state is SessionState.DISCONNECTED
        assert session.error == "WebSocket connection failed"
        assert session._disconnecting is False
        assert session._wallet is None

        clearnode.connect_error = None
        assert await session.connect(wallet) is True
        assert session.state is SessionState.AUTHENTICATING
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_connect_sends_unsigned_auth_request(self, config, clearnode, wallet):
        session = create_session(config)

        result = await session.connect(wallet)

        assert result is True
        assert session.state is SessionState.AUTHENTICATING
        assert clearnode.url == config.clearnode_url
        assert clearnode.methods() == ["auth_request"]
        frame = clearnode.sent[0]
        assert frame["sig"] == []
        params = frame["req"][2]
        assert params["address"] == wallet.address
        assert params["session_key"].startswith("0x")
        assert params["session_key"] != wallet.address
        assert params["application"] == config.application
        assert params["allowances"] == [
            {"asset": config.asset, "amount": config.allowance}
        ]
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_auth_verify_scenario(self, config, clearnode, wallet):
        session = create_session(config)
        await session.connect(wallet)

        # Nothing is authenticated until auth_verify arrives.
        assert session.is_authenticated is False
        assert session.session_key is None

        clearnode.respond("auth_challenge", {"challenge_message": "challenge-1"})
        await settle()

        assert clearnode.methods() == ["auth_request", "auth_verify"]
        verify = clearnode.sent[-1]
        assert verify["req"][2] == {"challenge": "challenge-1"}
        assert len(verify["sig"]) == 1
        assert verify["sig"][0].startswith("0x")

        clearnode.respond("auth_verify", {"session_key": "0xabc", "success": True})
        await settle()

        assert session.state is SessionState.AUTHENTICATED
        assert session.is_authenticated is True
        assert session.session_key == "0xabc"
        assert session.is_connected is True
        assert session.is_loading is False
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_auth_rejected(self, config, clearnode, wallet):
        session = create_session(config)
        await session.connect(wallet)
        clearnode.respond("auth_challenge", {"challenge_message": "c"})
        await settle()

        clearnode.respond("auth_verify", {"success": False})
        await settle()

        assert session.is_authenticated is False
        assert session.session_key is None
        assert session.error == "Authentication rejected"
        assert isinstance(session.last_error, VelocityRemoteError)
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_connect_when_authenticated_fails(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        sent_before = len(clearnode.sent)

        result = await session.connect(wallet)

        assert result is False
        assert isinstance(session.last_error, VelocityPreconditionError)
        assert len(clearnode.sent) == sent_before
        assert session.is_authenticated is True
        await session.disconnect()


class TestDeposit:
    """Tests for deposit_or_fund()."""

    @pytest.mark.asyncio
    async def test_create_channel_scenario(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)

        task = asyncio.create_task(session.deposit_or_fund("10"))
        await settle()

        # Balance moves before any confirmation.
        assert session.balance == "10"
        assert session.state is SessionState.CHANNEL_PENDING
        assert session.is_loading is True
        frame = clearnode.sent[-1]
        assert frame["req"][1] == "create_channel"
        assert frame["req"][2] == {
            "chain_id": config.chain_id,
            "token": config.token_address,
        }
        assert len(frame["sig"]) == 1

        clearnode.respond("create_channel", {"channel_id": "0xCH1"})

        assert await task is True
        assert session.channel_id == "0xCH1"
        assert session.balance == "10"
        assert session.state is SessionState.CHANNEL_OPEN_UNFUNDED
        assert session.is_loading is False
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_resize_when_channel_exists(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)

        task = asyncio.create_task(session.deposit_or_fund("5.5"))
        await settle()

        assert session.balance == "15.5"
        frame = clearnode.sent[-1]
        assert frame["req"][1] == "resize_channel"
        assert frame["req"][2] == {
            "channel_id": "0xCH1",
            "allocate_amount": 5500000,
            "funds_destination": wallet.address,
        }

        clearnode.respond("resize_channel", {"channel_id": "0xCH1"})

        assert await task is True
        assert session.state is SessionState.CHANNEL_OPEN_FUNDED
        await session.disconnect()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-1", "abc", "NaN", "0.0000001"])
    async def test_invalid_amount_sends_nothing(self, config, clearnode, wallet, amount):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        sent_before = len(clearnode.sent)

        result = await session.deposit_or_fund(amount)

        assert result is False
        assert isinstance(session.last_error, VelocityPreconditionError)
        assert len(clearnode.sent) == sent_before
        assert session.balance == "0"
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_requires_authentication(self, config):
        session = create_session(config)

        result = await session.deposit_or_fund("10")

        assert result is False
        assert session.error == "Not connected to clearnode"
        assert session.balance == "0"

    @pytest.mark.asyncio
    async def test_remote_error_keeps_optimistic_balance(
        self, config, clearnode, wallet
    ):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)

        task = asyncio.create_task(session.deposit_or_fund("10"))
        await settle()
        clearnode.respond("error", {"error": "insufficient funds"})

        assert await task is False
        assert session.error == "insufficient funds"
        assert session.state is SessionState.AUTHENTICATED
        assert session.channel_id is None
        assert session.balance == "10"
        await session.disconnect()


class TestTrade:
    """Tests for trade()."""

    @pytest.mark.asyncio
    async def test_transfer_scenario(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)
        assert session.balance == "10"

        task = asyncio.create_task(session.trade("buy", "BTC", "4"))
        await settle()

        # No optimistic debit for trades.
        assert session.balance == "10"
        frame = clearnode.sent[-1]
        assert frame["req"][1] == "transfer"
        assert frame["req"][2] == {
            "destination": PLACEHOLDER_DESTINATION,
            "allocations": [{"asset": config.asset, "amount": "4000000"}],
        }

        clearnode.respond("transfer", {"amount": "4000000"})

        assert await task is True
        assert session.balance == "6"
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_transfer_confirmation_is_dropped(
        self, config, clearnode, wallet
    ):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)

        clearnode.push({"res": [900, "transfer", {"amount": "NaN"}, 0]})
        clearnode.push({"res": [901, "transfer", {"amount": "-4000000"}, 0]})
        await settle()

        assert session.balance == "10"
        assert session.is_connected
        assert not session._listen_task.done()

        clearnode.push({"res": [902, "transfer", {"amount": "1000000"}, 0]})
        await settle()

        assert session.balance == "9"
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_no_channel_sends_nothing(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        sent_before = len(clearnode.sent)

        result = await session.trade("buy", "BTC", "4")

        assert result is False
        assert isinstance(session.last_error, VelocityNoChannelError)
        assert isinstance(session.last_error, VelocityPreconditionError)
        assert len(clearnode.sent) == sent_before
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_unknown_action(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)

        result = await session.trade("hold", "BTC", "1")

        assert result is False
        assert session.error == "Unknown trade action: hold"
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_overlapping_trades_resolve_by_request_id(
        self, config, clearnode, wallet
    ):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)

        first = asyncio.create_task(session.trade("buy", "BTC", "1"))
        await settle()
        second = asyncio.create_task(session.trade("sell", "ETH", "2"))
        await settle()
        first_id = clearnode.sent[-2]["req"][0]
        second_id = clearnode.sent[-1]["req"][0]
        assert first_id != second_id

        # Confirmations arrive out of submission order.
        clearnode.respond("transfer", {"amount": "2000000"}, to=second_id)
        await settle()
        assert second.done() and not first.done()
        assert session.balance == "8"

        clearnode.respond("error", {"error": "rejected"}, to=first_id)

        assert await second is True
        assert await first is False
        assert session.error == "rejected"
        assert session.balance == "8"
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_unanswered_request_times_out(self, clearnode, wallet):
        config = VelocityConfig(request_timeout=0.05)
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)

        result = await session.trade("buy", "BTC", "1")

        assert result is False
        assert session.error == "transfer request timed out"
        assert isinstance(session.last_error, VelocityTimeout)
        assert session.is_loading is False
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_uncorrelated_error_rejects_pending(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)

        task = asyncio.create_task(session.trade("buy", "BTC", "1"))
        await settle()
        clearnode.push({"error": {"message": "rate limited"}})

        assert await task is False
        assert session.error == "rate limited"
        assert session.balance == "10"
        await session.disconnect()


class TestWithdraw:
    """Tests for the local-only withdraw()."""

    @pytest.mark.asyncio
    async def test_withdraw_reduces_balance(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)
        sent_before = len(clearnode.sent)

        assert session.withdraw("3") is True

        assert session.balance == "7"
        assert len(clearnode.sent) == sent_before
        await session.disconnect()

    @pytest.mark.parametrize(
        ("start", "amount", "expected"),
        [("10", "3", "7"), ("10", "10", "0"), ("10", "25", "0"), ("0", "1", "0")],
    )
    def test_withdraw_clamps_at_zero(self, config, start, amount, expected):
        session = create_session(config)
        session._ledger.credit(Decimal(start))

        assert session.withdraw(amount) is True
        assert session.balance == expected

    def test_withdraw_below_smallest_unit(self, config):
        session = create_session(config)
        session._ledger.credit(Decimal("10"))

        assert session.withdraw("0.0000001") is True
        assert session.balance == "9.9999999"

    def test_withdraw_rejects_non_positive(self, config):
        session = create_session(config)

        assert session.withdraw("0") is False
        assert isinstance(session.last_error, VelocityPreconditionError)


class TestChannelsListing:
    """Authoritative channel listings replace local state."""

    @pytest.mark.asyncio
    async def test_open_channel_overwrites_optimistic_balance(
        self, config, clearnode, wallet
    ):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)

        clearnode.push(
            {
                "res": [
                    0,
                    "channels",
                    {
                        "channels": [
                            {"channel_id": "0xOLD", "status": "closed", "amount": "1"},
                            {"channel_id": "0xCH9", "status": "open", "amount": "25.50"},
                        ]
                    },
                ]
            }
        )
        await settle()

        assert session.channel_id == "0xCH9"
        assert session.balance == "25.50"
        assert session.state is SessionState.CHANNEL_OPEN_FUNDED
        await session.disconnect()


class TestDisconnect:
    """Tests for explicit and unexpected disconnects."""

    @pytest.mark.asyncio
    async def test_disconnect_resets_session(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)
        signer = session._session_signer

        await session.disconnect()

        assert clearnode.closed is True
        assert session.state is SessionState.DISCONNECTED
        assert session.session_key is None
        assert session.channel_id is None
        assert session.balance == "0"
        assert not session.is_authenticated
        assert signer.is_discarded

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_request(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        await open_channel(session, clearnode)

        task = asyncio.create_task(session.trade("buy", "BTC", "1"))
        await settle()
        await session.disconnect()

        assert await task is False
        assert session.error == "Session disconnected"

    @pytest.mark.asyncio
    async def test_socket_close_resets_session(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)

        clearnode.drop()
        await settle()

        assert session.state is SessionState.DISCONNECTED
        assert session.session_key is None
        assert session.error == "Connection to clearnode closed"

    @pytest.mark.asyncio
    async def test_reconnect_after_close(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)
        clearnode.drop()
        await settle()

        await authenticate(session, clearnode, wallet, session_key="0xdef")

        assert session.state is SessionState.AUTHENTICATED
        assert session.session_key == "0xdef"
        await session.disconnect()


class TestCallbacksAndFrames:
    """Tests for state callbacks and frame robustness."""

    @pytest.mark.asyncio
    async def test_state_callback_receives_snapshots(self, config, clearnode, wallet):
        session = create_session(config)
        callback = MagicMock()
        session.on_state_changed(callback)

        await authenticate(session, clearnode, wallet)

        states = [call.args[0].state for call in callback.call_args_list]
        assert SessionState.CONNECTING in states
        assert SessionState.AUTHENTICATING in states
        assert states[-1] is SessionState.AUTHENTICATED
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_session(
        self, config, clearnode, wallet
    ):
        session = create_session(config)
        session.on_state_changed(MagicMock(side_effect=RuntimeError("ui broke")))

        await authenticate(session, clearnode, wallet)

        assert session.is_authenticated is True
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_invalid_frames_are_ignored(self, config, clearnode, wallet):
        session = create_session(config)
        await authenticate(session, clearnode, wallet)

        clearnode._inbox.put_nowait(
            VelocityWsMessage(VelocityWsMessageType.TEXT, "not json")
        )
        clearnode.push({"res": [1, "unknown_method", {}]})
        await settle()

        assert session.state is SessionState.AUTHENTICATED
        assert session.error is None
        await session.disconnect()
