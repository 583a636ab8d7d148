"""Agent monitor for clearnode transfer events.

The monitor watches the clearnode socket for confirmed transfers, turns each
one into a TradeIntent and runs it through the execution pipeline:

1. Withdraw the amount from the vault (simulated)
2. Find a cross-chain route
3. Execute the route (stubbed)
4. Execute the trade (stubbed)
5. Return proceeds to the vault (simulated 5% return) and report PnL

On socket loss it reconnects with bounded exponential backoff. Once the
attempts are exhausted it enters UNREACHABLE and stops.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import random
import sys
import time
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from pathlib import Path

import aiohttp

from .config import AGENT_PRIVATE_KEY_ENV, VelocityConfig, load_config
from .errors import ConfigLoadError, VelocityClientError
from .http import VelocityBackendClient
from .ledger import format_amount
from .models import TradeIntent, TradeSide
from .protocol import to_base_units
from .router import (
    Authenticated,
    ChannelCreated,
    ChannelFunded,
    SessionEvent,
    TransferConfirmed,
    dispatch,
)
from .routing import RouteClient
from .signing import WalletSigner
from .transport.ws_client import VelocityWsClient, VelocityWsMessageType

_LOGGER = logging.getLogger(__name__)

UNKNOWN_USER = "0x0000000000000000000000000000000000000000"
DEFAULT_ASSET = "BTC"
SIMULATED_RETURN = Decimal("1.05")
CENT = Decimal("0.01")


class MonitorState(Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    MONITORING = "monitoring"
    BACKING_OFF = "backing_off"
    UNREACHABLE = "unreachable"


class AgentMonitor:
    """Long-running clearnode watcher that executes trade intents.

    Usage:
        monitor = AgentMonitor(config, WalletSigner.from_key(key))
        await monitor.run()
    """

    def __init__(
        self,
        config: VelocityConfig,
        wallet: WalletSigner,
        *,
        route_client: RouteClient | None = None,
        backend: VelocityBackendClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not wallet.address:
            raise VelocityClientError("No wallet account found")
        self._config = config
        self._wallet = wallet
        self._routes = route_client
        self._backend = backend
        self._rng = rng

        self._state = MonitorState.STOPPED
        self._ws: VelocityWsClient | None = None
        self._stop_requested = False
        self._attempts = 0
        self._pending: dict[str, TradeIntent] = {}
        self._unreachable_callback: Callable[[int], None] | None = None

    # ---- Public API -----------------------------------------------------

    @property
    def address(self) -> str:
        return self._wallet.address or ""

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def pending_intents(self) -> dict[str, TradeIntent]:
        return dict(self._pending)

    def on_unreachable(self, callback: Callable[[int], None]) -> None:
        """Register callback receiving the attempt count on giving up."""
        self._unreachable_callback = callback

    async def run(self) -> None:
        """Monitor until stopped or the clearnode becomes unreachable."""
        self._stop_requested = False
        _LOGGER.info(
            "Agent %s starting (vault %s)",
            self.address,
            self._config.vault_address or "not set",
        )

        async with aiohttp.ClientSession() as http:
            if self._routes is None:
                self._routes = RouteClient(http, self._config.routing)
            if self._backend is None and self._config.backend_url:
                self._backend = VelocityBackendClient(http, self._config.backend_url)

            health_task = asyncio.create_task(self._health_loop())
            try:
                await self._connection_loop()
            finally:
                health_task.cancel()
                try:
                    await health_task
                except asyncio.CancelledError:
                    pass

        if self._state is not MonitorState.UNREACHABLE:
            self._state = MonitorState.STOPPED
        _LOGGER.info("Agent stopped (%s)", self._state.value)

    async def stop(self) -> None:
        _LOGGER.info("Shutting down agent")
        self._stop_requested = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def handle_frame(self, raw: str) -> SessionEvent | None:
        """Route one inbound frame; transfers start the execution pipeline."""
        try:
            event = dispatch(raw)
        except VelocityClientError as err:
            _LOGGER.warning("Invalid message: %s", err)
            return None

        if isinstance(event, TransferConfirmed):
            await self.handle_transfer(event)
        elif isinstance(event, Authenticated):
            _LOGGER.info("User authenticated: %s", event.session_key)
        elif isinstance(event, ChannelCreated):
            _LOGGER.info("Channel created: %s", event.channel_id)
        elif isinstance(event, ChannelFunded):
            _LOGGER.info("Channel funded")
        return event

    async def handle_transfer(self, event: TransferConfirmed) -> TradeIntent:
        """Record a trade intent for the transfer and execute it."""
        intent = TradeIntent(
            user=event.user or UNKNOWN_USER,
            action=TradeSide.BUY,
            asset=DEFAULT_ASSET,
            amount=format_amount(event.amount),
            timestamp=int(time.time() * 1000),
        )
        self._pending[intent.intent_id] = intent
        _LOGGER.info(
            "Trade intent %s: %s %s %s USDC (destination %s)",
            intent.intent_id,
            intent.action.value,
            intent.asset,
            intent.amount,
            event.destination,
        )
        await self.execute_trade(intent)
        return intent

    async def execute_trade(self, intent: TradeIntent) -> bool:
        """Run the execution pipeline for one intent.

        The intent is dropped from the pending set when the pipeline ends,
        whatever the outcome.

        Returns:
            True if every step completed, False otherwise
        """
        try:
            # Step 1: vault withdrawal
            if self._config.vault_address is None:
                _LOGGER.info("Vault not configured - simulating withdrawal")
            else:
                _LOGGER.info(
                    "Withdrew %s USDC from vault %s",
                    intent.amount,
                    self._config.vault_address,
                )

            # Step 2: route lookup
            if self._routes is None:
                _LOGGER.error("No route client available")
                return False
            routes = await self._routes.get_routes(
                to_base_units(intent.amount), self.address
            )
            if not routes:
                _LOGGER.warning("No routes found for intent %s", intent.intent_id)
                return False
            best = routes[0]
            _LOGGER.info(
                "Route %s: chain %d -> %d in %d step(s)",
                best.route_id,
                best.from_chain_id,
                best.to_chain_id,
                best.step_count,
            )

            # Steps 3 and 4 are not executed on-chain.
            _LOGGER.info("Demo mode - not executing cross-chain swap")
            _LOGGER.info(
                "Demo mode - simulating %s %s", intent.action.value, intent.asset
            )

            # Step 5: simulated return
            principal = Decimal(intent.amount)
            returned = (principal * SIMULATED_RETURN).quantize(
                CENT, rounding=ROUND_HALF_UP
            )
            profit = returned - principal
            _LOGGER.info(
                "Returned %s USDC to vault (profit %s)", returned, format_amount(profit)
            )

            if self._backend is not None:
                await self._backend.update_pnl(
                    intent.user,
                    format_amount(profit),
                    float((SIMULATED_RETURN - 1) * 100),
                    pair=f"{intent.asset}/USDC",
                    side=intent.action,
                    amount=intent.amount,
                    price="0",
                )

            _LOGGER.info("Trade %s executed", intent.intent_id)
            return True
        except VelocityClientError as err:
            _LOGGER.error("Trade %s failed: %s", intent.intent_id, err)
            return False
        finally:
            self._pending.pop(intent.intent_id, None)

    # ---- Internal -------------------------------------------------------

    async def _connection_loop(self) -> None:
        policy = self._config.reconnect
        self._attempts = 0
        while not self._stop_requested:
            self._state = MonitorState.CONNECTING
            ws = VelocityWsClient()
            try:
                await ws.connect(
                    self._config.clearnode_url,
                    ping_interval=self._config.ping_interval,
                    timeout=self._config.connect_timeout,
                )
            except VelocityClientError as err:
                _LOGGER.warning("Connection to clearnode failed: %s", err)
            else:
                self._ws = ws
                self._attempts = 0
                self._state = MonitorState.MONITORING
                _LOGGER.info("Connected to %s", self._config.clearnode_url)
                await self._listen(ws)
                self._ws = None

            if self._stop_requested:
                return

            if self._attempts >= policy.max_attempts:
                self._state = MonitorState.UNREACHABLE
                _LOGGER.error(
                    "Clearnode unreachable after %d attempt(s)", self._attempts
                )
                if self._unreachable_callback is not None:
                    self._unreachable_callback(self._attempts)
                return

            delay = policy.delay_for(self._attempts, self._rng)
            self._attempts += 1
            self._state = MonitorState.BACKING_OFF
            _LOGGER.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay,
                self._attempts,
                policy.max_attempts,
            )
            await asyncio.sleep(delay)

    async def _listen(self, ws: VelocityWsClient) -> None:
        async for msg in ws:
            if msg.type == VelocityWsMessageType.TEXT:
                try:
                    await self.handle_frame(msg.data or "")
                except Exception:
                    _LOGGER.exception("Error handling clearnode frame")
            elif msg.type == VelocityWsMessageType.ERROR:
                _LOGGER.error("WebSocket error: %s", msg.data)
            elif msg.type == VelocityWsMessageType.CLOSED:
                _LOGGER.info("Disconnected from clearnode")
                break

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.health_interval)
            _LOGGER.info(
                "Agent healthy - monitoring %d pending intent(s)", len(self._pending)
            )


def main(argv: list[str] | None = None) -> int:
    """Console entry point."""
    parser = argparse.ArgumentParser(description="Run the VelocityVault agent")
    parser.add_argument("--config", type=Path, help="YAML configuration file")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    private_key = os.environ.get(AGENT_PRIVATE_KEY_ENV)
    if not private_key:
        _LOGGER.error("%s not set", AGENT_PRIVATE_KEY_ENV)
        return 2

    try:
        config = load_config(args.config)
    except ConfigLoadError as err:
        _LOGGER.error("Config error: %s", err)
        return 2

    monitor = AgentMonitor(config, WalletSigner.from_key(private_key))
    try:
        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted")
    return 1 if monitor.state is MonitorState.UNREACHABLE else 0


if __name__ == "__main__":
    sys.exit(main())
