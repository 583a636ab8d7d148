"""HTTP client for the VelocityVault backend API."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Final
from urllib.parse import quote

import aiohttp

from .errors import (
    VelocityConnectionError,
    VelocityPreconditionError,
    VelocityResponseError,
    VelocityTimeout,
    VelocityValidationError,
)
from .models import (
    ActivityFeed,
    AgentAction,
    AgentState,
    ExecutionLog,
    Mandate,
    PortfolioState,
    ReputationRecords,
    Strategy,
    TradeSide,
    validate_address,
)

_LOGGER = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: Final = 10

# Backend rejections that mean the agent is already in the requested state.
_AGENT_STATE_ERRORS: Final = ("Agent is already running", "Agent is not running")


class VelocityBackendClient:
    """HTTP client wrapper for the VelocityVault backend.

    Every response is a ``{success, data, error}`` envelope. Methods return
    the ``data`` member, parsed into a model where one exists.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        what: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        """Send one request and unwrap the response envelope.

        Raises:
            VelocityResponseError: If the backend returns a non-2xx status or
                ``success: false``.
            VelocityPreconditionError: If an agent start/stop was a duplicate.
            VelocityTimeout: If the request times out.
            VelocityConnectionError: If the network request fails.
        """
        url = self._url(path)
        try:
            async with self._session.request(
                method,
                url,
                json=json,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                if not isinstance(body, dict):
                    body = {}
                message = body.get("error") or f"{what} failed"
                if resp.status == 400 and message in _AGENT_STATE_ERRORS:
                    raise VelocityPreconditionError(message)
                if resp.status < 200 or resp.status >= 300:
                    raise VelocityResponseError(resp.status, message)
                if body.get("success") is False:
                    raise VelocityResponseError(resp.status, message)
                return body.get("data")
        except TimeoutError as err:
            raise VelocityTimeout(f"{what} request timed out") from err
        except aiohttp.ClientError as err:
            raise VelocityConnectionError(f"{what} request failed") from err

    # ---- Sessions -------------------------------------------------------

    async def create_session(self, mandate: Mandate) -> Mandate:
        """Store a signed mandate; returns it as the backend recorded it."""
        data = await self._request(
            "POST", "/session", "Create session", json=mandate.to_dict()
        )
        _LOGGER.debug("Mandate stored for %s", mandate.user_address)
        return Mandate.from_dict(data or {})

    async def get_session(self, address: str) -> Mandate | None:
        """Fetch the active mandate, or None if the user has none."""
        validate_address(address)
        try:
            data = await self._request("GET", f"/session/{address}", "Get session")
        except VelocityResponseError as err:
            if err.status == 404:
                return None
            raise
        return Mandate.from_dict(data) if data else None

    async def revoke_session(self, address: str) -> None:
        validate_address(address)
        await self._request("DELETE", f"/session/{address}", "Revoke session")

    # ---- Agent control --------------------------------------------------

    async def submit_intent(
        self,
        address: str,
        action: AgentAction | str,
        *,
        strategy: Strategy | str | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> AgentState:
        """Start or stop the agent.

        Raises:
            VelocityValidationError: If the address, action or strategy is
                malformed.
            VelocityPreconditionError: If the agent is already in the
                requested state.
        """
        validate_address(address)
        try:
            action = AgentAction(action)
            strategy = Strategy(strategy) if strategy is not None else None
        except ValueError as err:
            raise VelocityValidationError(str(err)) from err

        body: dict[str, Any] = {"userAddress": address, "action": action.value}
        if strategy is not None:
            body["strategy"] = strategy.value
        if params:
            body["params"] = dict(params)

        data = await self._request("POST", "/intent", "Agent intent", json=body)
        _LOGGER.info("Agent %s for %s", action.value, address)
        return AgentState.from_dict(data or {})

    async def update_pnl(
        self,
        address: str,
        pnl: str,
        pnl_percent: float,
        *,
        pair: str | None = None,
        side: TradeSide | str | None = None,
        amount: str | None = None,
        price: str | None = None,
        tx_hash: str | None = None,
    ) -> None:
        """Report PnL after a trade, optionally logging the trade itself."""
        validate_address(address)
        body: dict[str, Any] = {
            "userAddress": address,
            "pnl": pnl,
            "pnlPercent": pnl_percent,
        }
        if pair is not None and side is not None:
            try:
                side = TradeSide(side)
            except ValueError as err:
                raise VelocityValidationError(str(err)) from err
            trade: dict[str, Any] = {
                "pair": pair,
                "side": side.value,
                "amount": amount or "0",
                "price": price or "0",
            }
            if tx_hash:
                trade["txHash"] = tx_hash
            body["trade"] = trade
        await self._request("POST", "/intent/update-pnl", "PnL update", json=body)

    # ---- Reads ----------------------------------------------------------

    async def get_state(
        self, address: str, *, include_ens: bool = False
    ) -> PortfolioState:
        validate_address(address)
        params = {"includeEns": "true"} if include_ens else None
        data = await self._request(
            "GET", f"/state/{address}", "Portfolio state", params=params
        )
        return PortfolioState.from_dict(data or {})

    async def get_logs(
        self, address: str, *, limit: int = 50, offset: int = 0
    ) -> ActivityFeed:
        validate_address(address)
        data = await self._request(
            "GET",
            f"/logs/{address}",
            "Activity feed",
            params={"limit": str(limit), "offset": str(offset)},
        )
        return ActivityFeed.from_dict(data or {})

    async def get_trades(
        self, address: str, *, limit: int = 50, offset: int = 0
    ) -> list[ExecutionLog]:
        validate_address(address)
        data = await self._request(
            "GET",
            f"/logs/{address}/trades",
            "Trade history",
            params={"limit": str(limit), "offset": str(offset)},
        )
        return [ExecutionLog.from_dict(entry) for entry in data or ()]

    # ---- Reputation -----------------------------------------------------

    async def update_ens(self, address: str) -> list[str]:
        """Publish current PnL to the user's name records.

        Returns:
            Transaction hashes of the record updates.
        """
        validate_address(address)
        data = await self._request(
            "POST", f"/ens/{address}/update", "Reputation update"
        )
        return list((data or {}).get("txHashes") or ())

    async def get_ens_records(self, ens_name: str) -> ReputationRecords:
        if "." not in ens_name:
            raise VelocityValidationError(f"Invalid ENS name format: {ens_name!r}")
        data = await self._request(
            "GET", f"/ens/{quote(ens_name)}", "Reputation lookup"
        )
        return ReputationRecords.from_dict((data or {}).get("records") or {})
