"""Cross-chain route lookup against the LI.FI REST API.

Only quoting is implemented. Routes come back ranked by the service; the
caller decides whether to act on them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Final

import aiohttp

from .config import RoutingConfig
from .errors import (
    VelocityConnectionError,
    VelocityResponseError,
    VelocityTimeout,
    VelocityValidationError,
)
from .models import validate_address

_LOGGER = logging.getLogger(__name__)

ROUTE_ORDER: Final = "RECOMMENDED"


@dataclass(frozen=True)
class Route:
    """One candidate route.

    Attributes:
        route_id: Service-assigned identifier.
        from_chain_id: Source chain.
        to_chain_id: Destination chain.
        from_amount: Input in source-token base units.
        to_amount: Expected output in destination-token base units.
        to_amount_min: Output floor after slippage.
        steps: Tool names of each hop, in order.
        tags: Ranking tags such as ``RECOMMENDED`` or ``CHEAPEST``.
    """

    route_id: str
    from_chain_id: int
    to_chain_id: int
    from_amount: int
    to_amount: int
    to_amount_min: int
    steps: tuple[str, ...] = field(default_factory=tuple)
    tags: tuple[str, ...] = field(default_factory=tuple)

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def effective_rate(self) -> Decimal:
        if self.from_amount == 0:
            return Decimal(0)
        return Decimal(self.to_amount) / Decimal(self.from_amount)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Route:
        steps = tuple(
            str(step.get("tool") or step.get("type") or "")
            for step in data.get("steps") or ()
            if isinstance(step, dict)
        )
        return cls(
            route_id=str(data.get("id", "")),
            from_chain_id=int(data.get("fromChainId", 0)),
            to_chain_id=int(data.get("toChainId", 0)),
            from_amount=int(data.get("fromAmount") or 0),
            to_amount=int(data.get("toAmount") or 0),
            to_amount_min=int(data.get("toAmountMin") or 0),
            steps=steps,
            tags=tuple(data.get("tags") or ()),
        )


class RouteClient:
    """Fetch ranked cross-chain routes."""

    def __init__(
        self, session: aiohttp.ClientSession, config: RoutingConfig | None = None
    ) -> None:
        self._session = session
        self._config = config or RoutingConfig()

    def _url(self, path: str) -> str:
        return f"{self._config.base_url.rstrip('/')}{path}"

    async def get_routes(
        self,
        from_amount: int,
        from_address: str,
        *,
        to_address: str | None = None,
    ) -> list[Route]:
        """Request routes for ``from_amount`` base units of the source token.

        Returns:
            Routes in the order the service ranked them; empty if none exist.

        Raises:
            VelocityValidationError: If the amount or an address is invalid.
            VelocityResponseError: If the service returns a non-200 status.
            VelocityTimeout: If the request times out.
            VelocityConnectionError: If the network request fails.
        """
        if from_amount <= 0:
            raise VelocityValidationError("from_amount must be positive")
        validate_address(from_address)
        to_address = validate_address(to_address or from_address)

        cfg = self._config
        body = {
            "fromChainId": cfg.from_chain_id,
            "toChainId": cfg.to_chain_id,
            "fromTokenAddress": cfg.from_token,
            "toTokenAddress": cfg.to_token,
            "fromAmount": str(from_amount),
            "fromAddress": from_address,
            "toAddress": to_address,
            "options": {
                "slippage": cfg.slippage,
                "order": ROUTE_ORDER,
                "integrator": cfg.integrator,
            },
        }
        url = self._url("/advanced/routes")
        try:
            async with self._session.post(
                url,
                json=body,
                headers={"x-lifi-integrator": cfg.integrator},
                timeout=aiohttp.ClientTimeout(total=cfg.timeout),
            ) as resp:
                if resp.status != 200:
                    raise VelocityResponseError(
                        resp.status, "Route request failed with non-200 response"
                    )
                data = await resp.json()
        except TimeoutError as err:
            raise VelocityTimeout("Route request timed out") from err
        except aiohttp.ClientError as err:
            raise VelocityConnectionError("Route request failed") from err

        routes = [
            Route.from_dict(entry)
            for entry in (data or {}).get("routes") or ()
            if isinstance(entry, dict)
        ]
        _LOGGER.debug("%d route(s) for %d base units", len(routes), from_amount)
        return routes
