"""Session state machine for the clearnode connection.

This module provides the caller-facing API for one off-chain session. It
handles:
- Connection management and the auth handshake
- Session state transitions
- Request/response correlation by request id, with per-request timeouts
- Optimistic balance updates

Every intent operation validates its preconditions before any network I/O,
catches its own failures and records them on the session instead of raising.
Callers observe failure through ``snapshot.error`` and the boolean result.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from .config import VelocityConfig
from .errors import (
    VelocityClientError,
    VelocityConnectionError,
    VelocityNoChannelError,
    VelocityPreconditionError,
    VelocityRemoteError,
    VelocityTimeout,
)
from .ledger import ZERO, OptimisticLedger, parse_amount
from .protocol import (
    Allocation,
    AuthIdentity,
    AuthScope,
    build_auth_request,
    build_auth_verify,
    build_create_channel,
    build_resize_channel,
    build_transfer,
    to_base_units,
)
from .router import (
    AuthChallenge,
    Authenticated,
    ChannelCreated,
    ChannelFunded,
    ChannelsListed,
    RemoteFailure,
    SessionEvent,
    TransferConfirmed,
    dispatch,
)
from .signing import SessionKeySigner, WalletSigner
from .transport.ws_client import VelocityWsClient, VelocityWsMessageType

_LOGGER = logging.getLogger(__name__)

MAX_PENDING_REQUESTS = 32

TRADE_ACTIONS = frozenset({"buy", "sell"})


class SessionState(Enum):
    """Lifecycle of a clearnode session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    CHANNEL_PENDING = "channel_pending"
    CHANNEL_OPEN_UNFUNDED = "channel_open_unfunded"
    CHANNEL_OPEN_FUNDED = "channel_open_funded"


_PRE_AUTH_STATES = frozenset(
    {SessionState.DISCONNECTED, SessionState.CONNECTING, SessionState.AUTHENTICATING}
)


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the session for rendering."""

    state: SessionState
    session_key: str | None
    channel_id: str | None
    balance: str
    is_connected: bool
    is_authenticated: bool
    is_loading: bool
    error: str | None


@dataclass(slots=True)
class _PendingRequest:
    """Outbound request awaiting its correlated response."""

    request_id: int
    method: str
    future: asyncio.Future[SessionEvent]
    sent_at: float
    timer: asyncio.TimerHandle
    background: bool = False


class VelocitySession:
    """One authenticated context with the clearnode.

    Usage:
        session = create_session(config)
        await session.connect(WalletSigner.from_key(key))
        await session.deposit_or_fund("10")
        await session.trade("buy", "BTC", "4")
        session.withdraw("1")
        await session.disconnect()
    """

    def __init__(self, config: VelocityConfig, *, label: str | None = None) -> None:
        self._config = config
        self._label = label or "session"

        # Connection state
        self._ws: VelocityWsClient | None = None
        self._state = SessionState.DISCONNECTED
        self._listen_task: asyncio.Task[None] | None = None
        self._disconnecting = False

        # Auth state
        self._wallet: WalletSigner | None = None
        self._session_signer: SessionKeySigner | None = None
        self._identity: AuthIdentity | None = None
        self._scope: AuthScope | None = None
        self._session_key: str | None = None
        self._authenticated = False

        # Channel state
        self._channel_id: str | None = None
        self._ledger = OptimisticLedger()

        # Correlation
        self._request_ids = itertools.count(int(time.time() * 1000))
        self._pending: dict[int, _PendingRequest] = {}

        # Errors
        self._error: str | None = None
        self._last_error: VelocityClientError | None = None

        self._state_callback: Callable[[SessionSnapshot], None] | None = None

    # -------------------------------------------------------------------------
    # Public API: Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_key(self) -> str | None:
        return self._session_key

    @property
    def channel_id(self) -> str | None:
        return self._channel_id

    @property
    def balance(self) -> str:
        return str(self._ledger)

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._state not in (
            SessionState.DISCONNECTED,
            SessionState.CONNECTING,
        )

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    @property
    def is_loading(self) -> bool:
        return bool(self._pending)

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def last_error(self) -> VelocityClientError | None:
        """Exception behind ``error``, for callers that branch on its type."""
        return self._last_error

    @property
    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            session_key=self._session_key,
            channel_id=self._channel_id,
            balance=self.balance,
            is_connected=self.is_connected,
            is_authenticated=self._authenticated,
            is_loading=self.is_loading,
            error=self._error,
        )

    def on_state_changed(self, callback: Callable[[SessionSnapshot], None]) -> None:
        """Register callback receiving a fresh snapshot after every change."""
        self._state_callback = callback

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self, wallet: WalletSigner) -> bool:
        """Open the socket and start the auth handshake.

        Returns once the auth request is sent; the session reaches
        AUTHENTICATED when the clearnode confirms ``auth_verify``.

        Returns:
            True if the auth request was sent, False otherwise
        """
        self._begin_operation()

        if self._state not in _PRE_AUTH_STATES:
            return self._fail(VelocityPreconditionError("Session already authenticated"))

        address = wallet.address
        if not address:
            return self._fail(VelocityConnectionError("No wallet account found"))

        self._wallet = wallet
        self._label = address[:10]
        self._set_state(SessionState.CONNECTING)

        self._disconnecting = True
        await self._stop_listener()
        await self._close_socket()
        self._reject_all(VelocityConnectionError("Superseded by a new connection"))
        ws_client = VelocityWsClient()
        try:
            _LOGGER.info(
                "[%s] Connecting to %s", self._label, self._config.clearnode_url
            )
            await ws_client.connect(
                self._config.clearnode_url,
                ping_interval=self._config.ping_interval,
                timeout=self._config.connect_timeout,
            )
        except VelocityClientError as err:
            _LOGGER.warning("[%s] Connection failed: %s", self._label, err)
            self._disconnecting = False
            self._wallet = None
            self._set_state(SessionState.DISCONNECTED)
            return self._fail(err)

        self._ws = ws_client
        self._disconnecting = False
        self._listen_task = asyncio.create_task(self._listen(ws_client))

        if self._session_signer is not None:
            self._session_signer.discard()
        self._session_signer = SessionKeySigner()
        self._identity = AuthIdentity(
            wallet=address, session_key=self._session_signer.address or ""
        )
        self._scope = AuthScope(
            application=self._config.application,
            scope=self._config.scope,
            expires_at=int(time.time()) + self._config.session_ttl,
            allowances=(Allocation(self._config.asset, int(self._config.allowance)),),
        )

        request_id = self._next_request_id()
        frame = build_auth_request(self._identity, self._scope, request_id=request_id)
        self._set_state(SessionState.AUTHENTICATING)
        try:
            await self._send_background(frame)
        except VelocityClientError as err:
            return self._fail(err)

        _LOGGER.info("[%s] Auth request sent", self._label)
        return True

    async def disconnect(self) -> None:
        """Close the socket and reset the session."""
        _LOGGER.info("[%s] Disconnecting", self._label)
        self._disconnecting = True
        await self._stop_listener()
        await self._close_socket()
        self._reset_session("Session disconnected")

    # -------------------------------------------------------------------------
    # Public API: Intents
    # -------------------------------------------------------------------------

    async def deposit_or_fund(self, amount: Decimal | str) -> bool:
        """Create the channel if absent, otherwise allocate more funds to it.

        The local balance increases by ``amount`` immediately, before the
        clearnode confirms.

        Returns:
            True once the correlated confirmation arrives, False otherwise
        """
        self._begin_operation()
        try:
            value = self._parse_amount(amount)
            signer = self._require_authenticated()
        except VelocityPreconditionError as err:
            return self._fail(err)

        request_id = self._next_request_id()
        try:
            if self._channel_id is None:
                frame = build_create_channel(
                    signer,
                    self._config.chain_id,
                    self._config.token_address,
                    request_id=request_id,
                )
                self._set_state(SessionState.CHANNEL_PENDING)
            else:
                frame = build_resize_channel(
                    signer,
                    self._channel_id,
                    to_base_units(value),
                    self._identity.wallet if self._identity else "",
                    request_id=request_id,
                )
        except VelocityClientError as err:
            return self._fail(err)

        self._ledger.credit(value)
        _LOGGER.info(
            "[%s] %s %s (optimistic balance %s)",
            self._label,
            frame["req"][1],
            value,
            self.balance,
        )
        self._notify()

        try:
            await self._send_and_wait(frame)
        except VelocityClientError as err:
            if self._state is SessionState.CHANNEL_PENDING and self._channel_id is None:
                self._set_state(SessionState.AUTHENTICATED)
            return self._fail(err)
        return True

    async def trade(self, action: str, asset: str, amount: Decimal | str) -> bool:
        """Submit a trade intent as an off-chain transfer.

        The balance is left untouched until the transfer confirmation arrives.

        Returns:
            True once the transfer is confirmed, False otherwise
        """
        self._begin_operation()
        try:
            if self._channel_id is None:
                raise VelocityNoChannelError("No open channel")
            if action not in TRADE_ACTIONS:
                raise VelocityPreconditionError(f"Unknown trade action: {action}")
            value = self._parse_amount(amount)
            signer = self._require_authenticated()
        except VelocityPreconditionError as err:
            return self._fail(err)

        try:
            frame = build_transfer(
                signer,
                self._config.transfer_destination,
                [Allocation(self._config.asset, to_base_units(value))],
                self._next_request_id(),
            )
        except VelocityClientError as err:
            return self._fail(err)

        _LOGGER.info("[%s] Trade intent: %s %s %s", self._label, action, value, asset)

        try:
            await self._send_and_wait(frame)
        except VelocityClientError as err:
            return self._fail(err)
        return True

    def withdraw(self, amount: Decimal | str) -> bool:
        """Decrease the local balance, clamped at zero.

        No frame is sent; settlement happens against the vault contract.
        """
        self._begin_operation()
        try:
            value = self._parse_amount(amount, on_wire=False)
        except VelocityPreconditionError as err:
            return self._fail(err)

        self._ledger.debit(value)
        _LOGGER.info(
            "[%s] Withdrew %s locally (balance %s)", self._label, value, self.balance
        )
        self._notify()
        return True

    # -------------------------------------------------------------------------
    # Internal: Preconditions and Errors
    # -------------------------------------------------------------------------

    def _begin_operation(self) -> None:
        self._error = None
        self._last_error = None

    @staticmethod
    def _parse_amount(amount: Decimal | str, *, on_wire: bool = True) -> Decimal:
        try:
            value = parse_amount(amount)
        except ValueError as err:
            raise VelocityPreconditionError(str(err)) from err
        if on_wire and to_base_units(value) == 0:
            raise VelocityPreconditionError("Amount is below the smallest unit")
        return value

    def _require_authenticated(self) -> SessionKeySigner:
        if (
            not self._authenticated
            or self._ws is None
            or self._session_signer is None
        ):
            raise VelocityPreconditionError("Not connected to clearnode")
        return self._session_signer

    def _fail(self, err: VelocityClientError) -> bool:
        self._record_error(err)
        return False

    def _record_error(self, err: BaseException) -> None:
        self._error = str(err) or type(err).__name__
        self._last_error = (
            err
            if isinstance(err, VelocityClientError)
            else VelocityClientError(self._error)
        )
        _LOGGER.warning("[%s] %s", self._label, self._error)
        self._notify()

    # -------------------------------------------------------------------------
    # Internal: State
    # -------------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        """Update session state and notify callback."""
        if self._state != state:
            _LOGGER.debug(
                "[%s] State: %s → %s", self._label, self._state.value, state.value
            )
            self._state = state
            self._notify()

    def _notify(self) -> None:
        if self._state_callback is None:
            return
        try:
            self._state_callback(self.snapshot)
        except Exception as err:
            _LOGGER.exception("[%s] State callback error: %s", self._label, err)

    def _channel_state(self) -> SessionState:
        if self._ledger.balance > ZERO:
            return SessionState.CHANNEL_OPEN_FUNDED
        return SessionState.CHANNEL_OPEN_UNFUNDED

    def _reset_session(self, reason: str) -> None:
        """Drop everything learned from the clearnode; keep the last error."""
        self._reject_all(VelocityConnectionError(reason))
        if self._session_signer is not None:
            self._session_signer.discard()
        self._session_signer = None
        self._wallet = None
        self._identity = None
        self._scope = None
        self._session_key = None
        self._authenticated = False
        self._channel_id = None
        self._ledger.reset()
        self._ws = None
        self._set_state(SessionState.DISCONNECTED)
        self._notify()

    async def _stop_listener(self) -> None:
        task, self._listen_task = self._listen_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_socket(self) -> None:
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        try:
            await asyncio.wait_for(ws.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self._label)

    # -------------------------------------------------------------------------
    # Internal: Request Correlation
    # -------------------------------------------------------------------------

    def _next_request_id(self) -> int:
        return next(self._request_ids)

    def _track(
        self, request_id: int, method: str, *, background: bool = False
    ) -> asyncio.Future[SessionEvent]:
        if len(self._pending) >= MAX_PENDING_REQUESTS:
            raise VelocityPreconditionError(
                f"Too many requests in flight ({len(self._pending)})"
            )
        loop = asyncio.get_running_loop()
        future: asyncio.Future[SessionEvent] = loop.create_future()
        timer = loop.call_later(
            self._config.request_timeout, self._expire_request, request_id
        )
        self._pending[request_id] = _PendingRequest(
            request_id=request_id,
            method=method,
            future=future,
            sent_at=time.monotonic(),
            timer=timer,
            background=background,
        )
        return future

    def _untrack(self, request_id: int) -> _PendingRequest | None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()
        return pending

    def _expire_request(self, request_id: int) -> None:
        pending = self._untrack(request_id)
        if pending is None or pending.future.done():
            return
        _LOGGER.warning(
            "[%s] %s id=%d timed out", self._label, pending.method, request_id
        )
        pending.future.set_exception(
            VelocityTimeout(f"{pending.method} request timed out")
        )
        self._notify()

    def _resolve(self, event: SessionEvent) -> None:
        if event.request_id is None:
            return
        pending = self._untrack(event.request_id)
        if pending is None or pending.future.done():
            return
        _LOGGER.debug(
            "[%s] %s id=%d answered (%.2fs)",
            self._label,
            pending.method,
            event.request_id,
            time.monotonic() - pending.sent_at,
        )
        if isinstance(event, RemoteFailure):
            pending.future.set_exception(
                VelocityRemoteError(event.message, event.request_id)
            )
        else:
            pending.future.set_result(event)

    def _reject_all(self, err: VelocityClientError) -> None:
        for request_id in list(self._pending):
            pending = self._untrack(request_id)
            if pending is None or pending.future.done():
                continue
            if pending.background:
                pending.future.cancel()
            else:
                pending.future.set_exception(err)

    async def _send_and_wait(self, frame: dict[str, Any]) -> SessionEvent:
        """Send a frame and wait for the response carrying its request id."""
        if self._ws is None:
            raise VelocityConnectionError("WebSocket is not connected")
        request_id, method = frame["req"][0], frame["req"][1]
        future = self._track(request_id, method)
        self._notify()
        try:
            await self._ws.send_json(frame)
            return await future
        finally:
            self._untrack(request_id)
            self._notify()

    async def _send_background(self, frame: dict[str, Any]) -> None:
        """Send a frame whose response is handled by the listener alone.

        A failure or timeout of the request is recorded on the session.
        """
        if self._ws is None:
            raise VelocityConnectionError("WebSocket is not connected")
        request_id, method = frame["req"][0], frame["req"][1]
        future = self._track(request_id, method, background=True)
        future.add_done_callback(self._on_background_done)
        try:
            await self._ws.send_json(frame)
        except VelocityClientError:
            self._untrack(request_id)
            future.cancel()
            raise
        self._notify()

    def _on_background_done(self, future: asyncio.Future[SessionEvent]) -> None:
        if future.cancelled():
            return
        err = future.exception()
        if err is not None:
            self._record_error(err)

    # -------------------------------------------------------------------------
    # Internal: Message Listener
    # -------------------------------------------------------------------------

    async def _listen(self, ws: VelocityWsClient) -> None:
        """Dispatch inbound frames until the socket closes."""
        message_count = 0
        try:
            async for msg in ws:
                message_count += 1

                if msg.type == VelocityWsMessageType.TEXT:
                    try:
                        event = dispatch(msg.data or "")
                    except VelocityClientError as err:
                        _LOGGER.warning("[%s] Invalid message: %s", self._label, err)
                        continue
                    if event is not None:
                        await self._apply_event(event)

                elif msg.type == VelocityWsMessageType.ERROR:
                    _LOGGER.error("[%s] WebSocket error: %s", self._label, msg.data)
                    self._record_error(
                        VelocityConnectionError("Connection to clearnode failed")
                    )

                elif msg.type == VelocityWsMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by clearnode", self._label)
                    break

        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d messages)", self._label, message_count
            )
            raise
        except VelocityClientError as err:
            _LOGGER.warning("[%s] Client error: %s", self._label, err)

        if not self._disconnecting and self._ws is ws:
            self._listen_task = None
            self._record_error(VelocityConnectionError("Connection to clearnode closed"))
            self._reset_session("Connection to clearnode closed")

    # -------------------------------------------------------------------------
    # Internal: Event Handlers
    # -------------------------------------------------------------------------

    async def _apply_event(self, event: SessionEvent) -> None:
        """Apply a router event to session state, then wake its waiter."""
        if isinstance(event, RemoteFailure):
            self._handle_remote_failure(event)
            return

        if isinstance(event, AuthChallenge):
            self._resolve(event)
            await self._handle_auth_challenge(event)
        elif isinstance(event, Authenticated):
            self._handle_authenticated(event)
            self._resolve(event)
        elif isinstance(event, ChannelsListed):
            self._handle_channels(event)
            self._resolve(event)
        elif isinstance(event, ChannelCreated):
            self._channel_id = event.channel_id
            if self._authenticated:
                self._set_state(SessionState.CHANNEL_OPEN_UNFUNDED)
            _LOGGER.info("[%s] Channel created: %s", self._label, event.channel_id)
            self._resolve(event)
        elif isinstance(event, ChannelFunded):
            if self._channel_id is not None:
                self._set_state(SessionState.CHANNEL_OPEN_FUNDED)
            _LOGGER.info("[%s] Channel funded", self._label)
            self._resolve(event)
        elif isinstance(event, TransferConfirmed):
            self._ledger.debit(event.amount)
            _LOGGER.info(
                "[%s] Transfer confirmed: %s (balance %s)",
                self._label,
                event.amount,
                self.balance,
            )
            self._resolve(event)

        self._notify()

    def _handle_remote_failure(self, event: RemoteFailure) -> None:
        _LOGGER.warning("[%s] Clearnode error: %s", self._label, event.message)
        err = VelocityRemoteError(event.message, event.request_id)
        if event.request_id is not None and event.request_id in self._pending:
            self._resolve(event)
        else:
            # Uncorrelated error: nothing identifies the request it answers.
            self._reject_all(err)
        self._error = event.message
        self._last_error = err
        self._notify()

    async def _handle_auth_challenge(self, event: AuthChallenge) -> None:
        if self._wallet is None or self._identity is None or self._scope is None:
            _LOGGER.debug("[%s] Challenge ignored: no auth in progress", self._label)
            return

        try:
            frame = build_auth_verify(
                self._wallet,
                event.challenge,
                self._identity,
                self._scope,
                request_id=self._next_request_id(),
            )
            await self._send_background(frame)
        except VelocityClientError as err:
            self._record_error(err)
            return
        _LOGGER.debug("[%s] Auth verify sent", self._label)

    def _handle_authenticated(self, event: Authenticated) -> None:
        self._session_key = event.session_key
        self._authenticated = True
        if self._state in _PRE_AUTH_STATES:
            self._set_state(SessionState.AUTHENTICATED)
        _LOGGER.info("[%s] Authenticated with clearnode", self._label)

    def _handle_channels(self, event: ChannelsListed) -> None:
        channel = event.first_open()
        if channel is None:
            return
        try:
            self._ledger.replace(channel.amount)
        except ValueError as err:
            _LOGGER.warning("[%s] Ignoring channel listing: %s", self._label, err)
            return
        self._channel_id = channel.channel_id
        if self._authenticated:
            self._set_state(self._channel_state())
        _LOGGER.info(
            "[%s] Open channel %s (balance %s)",
            self._label,
            channel.channel_id,
            self.balance,
        )


def create_session(
    config: VelocityConfig | None = None, *, label: str | None = None
) -> VelocitySession:
    """Create an independent session; callers own and pass it explicitly."""
    return VelocitySession(config or VelocityConfig(), label=label)
