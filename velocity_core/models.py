"""Canonical records exchanged with the VelocityVault backend.

Records validate themselves on construction. Anything malformed at the
boundary raises VelocityValidationError before it reaches the network or the
caller.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import VelocityValidationError

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


def validate_address(address: Any) -> str:
    """Return the address unchanged if it is 0x plus 40 hex characters."""
    if not isinstance(address, str) or not ADDRESS_PATTERN.match(address):
        raise VelocityValidationError(f"Invalid address format: {address!r}")
    return address


def _enum_value(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as err:
        raise VelocityValidationError(f"Invalid {field_name}: {value!r}") from err


def _require(data: Mapping[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise VelocityValidationError(f"Missing field: {key}")
    return data[key]


def _parse_datetime(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise VelocityValidationError(f"Invalid {field_name}: {value!r}")
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as err:
        raise VelocityValidationError(f"Invalid {field_name}: {value!r}") from err


def _format_datetime(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class RiskLevel(Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class Strategy(Enum):
    MOMENTUM = "momentum"
    MEAN_REVERSION = "mean-reversion"
    ARBITRAGE = "arbitrage"
    CUSTOM = "custom"


class AgentAction(Enum):
    START = "start"
    STOP = "stop"


class TradeSide(Enum):
    BUY = "buy"
    SELL = "sell"


class ExecutionStatus(Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Mandate:
    """Authorization for the agent to act on a user's behalf.

    Attributes:
        user_address: Wallet granting the mandate.
        session_id: Clearnode session key the mandate is bound to.
        max_trade_size: Largest single trade, base units as a string.
        allowed_pairs: Trading pairs the agent may touch.
        risk_level: Risk profile.
        expires_at: Expiry of the grant.
        signature: Wallet signature over the mandate.
    """

    user_address: str
    session_id: str
    max_trade_size: str
    allowed_pairs: tuple[str, ...]
    risk_level: RiskLevel
    expires_at: datetime
    signature: str
    id: str | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        validate_address(self.user_address)
        if not self.max_trade_size.isdigit():
            raise VelocityValidationError(
                f"max_trade_size must be an integer string, got {self.max_trade_size!r}"
            )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "userAddress": self.user_address,
            "yellowSessionId": self.session_id,
            "maxTradeSize": self.max_trade_size,
            "allowedPairs": list(self.allowed_pairs),
            "riskLevel": self.risk_level.value,
            "expiresAt": _format_datetime(self.expires_at),
            "signature": self.signature,
        }
        if self.id is not None:
            data["id"] = self.id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Mandate:
        created = data.get("createdAt")
        return cls(
            user_address=validate_address(_require(data, "userAddress")),
            session_id=str(_require(data, "yellowSessionId")),
            max_trade_size=str(_require(data, "maxTradeSize")),
            allowed_pairs=tuple(data.get("allowedPairs") or ()),
            risk_level=_enum_value(RiskLevel, _require(data, "riskLevel"), "riskLevel"),
            expires_at=_parse_datetime(_require(data, "expiresAt"), "expiresAt"),
            signature=str(_require(data, "signature")),
            id=data.get("id"),
            created_at=_parse_datetime(created, "createdAt") if created else None,
        )


@dataclass(frozen=True)
class AgentState:
    """Run state of the trading agent for one user."""

    user_address: str
    is_running: bool
    strategy: Strategy | None = None
    current_positions: Mapping[str, str] = field(default_factory=dict)
    total_pnl: str = "0"

    def __post_init__(self) -> None:
        validate_address(self.user_address)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AgentState:
        strategy = data.get("strategy")
        return cls(
            user_address=validate_address(_require(data, "userAddress")),
            is_running=bool(data.get("isRunning", False)),
            strategy=_enum_value(Strategy, strategy, "strategy") if strategy else None,
            current_positions=dict(data.get("currentPositions") or {}),
            total_pnl=str(data.get("totalPnl") or "0"),
        )


@dataclass(frozen=True)
class ExecutionLog:
    """One agent action as recorded by the backend."""

    user_address: str
    action: str
    status: ExecutionStatus
    pair: str | None = None
    side: TradeSide | None = None
    amount: str | None = None
    price: str | None = None
    tx_hash: str | None = None
    error: str | None = None
    id: str | None = None
    timestamp: datetime | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionLog:
        side = data.get("side")
        timestamp = data.get("timestamp")
        return cls(
            user_address=validate_address(_require(data, "userAddress")),
            action=str(_require(data, "action")),
            status=_enum_value(ExecutionStatus, _require(data, "status"), "status"),
            pair=data.get("pair"),
            side=_enum_value(TradeSide, side, "side") if side else None,
            amount=data.get("amount"),
            price=data.get("price"),
            tx_hash=data.get("txHash"),
            error=data.get("error"),
            id=data.get("id"),
            timestamp=_parse_datetime(timestamp, "timestamp") if timestamp else None,
        )


@dataclass(frozen=True)
class PnLSnapshot:
    user_address: str
    pnl: str
    pnl_percent: float
    snapshot_at: datetime
    ens_updated: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PnLSnapshot:
        return cls(
            user_address=validate_address(_require(data, "userAddress")),
            pnl=str(_require(data, "pnl")),
            pnl_percent=float(_require(data, "pnlPercent")),
            snapshot_at=_parse_datetime(_require(data, "snapshotAt"), "snapshotAt"),
            ens_updated=bool(data.get("ensUpdated", False)),
        )


@dataclass(frozen=True)
class ActivityFeed:
    logs: tuple[ExecutionLog, ...]
    pnl_history: tuple[PnLSnapshot, ...]
    total_trades: int
    success_rate: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ActivityFeed:
        return cls(
            logs=tuple(ExecutionLog.from_dict(e) for e in data.get("logs") or ()),
            pnl_history=tuple(
                PnLSnapshot.from_dict(e) for e in data.get("pnlHistory") or ()
            ),
            total_trades=int(data.get("totalTrades", 0)),
            success_rate=float(data.get("successRate", 0.0)),
        )


@dataclass(frozen=True)
class PortfolioState:
    user_address: str
    ens_name: str | None
    agent_state: AgentState | None
    mandate: Mandate | None
    current_pnl: str
    positions: Mapping[str, str]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PortfolioState:
        user = data.get("user") or {}
        agent_state = data.get("agentState")
        mandate = data.get("mandate")
        return cls(
            user_address=validate_address(_require(user, "address")),
            ens_name=user.get("ensName"),
            agent_state=AgentState.from_dict(agent_state) if agent_state else None,
            mandate=Mandate.from_dict(mandate) if mandate else None,
            current_pnl=str(data.get("currentPnl") or "0"),
            positions=dict(data.get("positions") or {}),
        )


# Text record keys published under the user's name.
REPUTATION_KEYS: tuple[str, ...] = (
    "pnl",
    "pnl_percent",
    "total_trades",
    "win_rate",
    "last_updated",
    "agent_status",
)


@dataclass(frozen=True)
class ReputationRecords:
    """The six name-service text fields describing agent performance."""

    pnl: str | None = None
    pnl_percent: str | None = None
    total_trades: str | None = None
    win_rate: str | None = None
    last_updated: str | None = None
    agent_status: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReputationRecords:
        camel = {
            "pnl": "pnl",
            "pnl_percent": "pnlPercent",
            "total_trades": "totalTrades",
            "win_rate": "winRate",
            "last_updated": "lastUpdated",
            "agent_status": "agentStatus",
        }
        values: dict[str, str | None] = {}
        for key in REPUTATION_KEYS:
            raw = data.get(key, data.get(camel[key]))
            values[key] = None if raw in (None, "") else str(raw)
        return cls(**values)


@dataclass(frozen=True)
class TradeIntent:
    """A trade the agent picked up from a clearnode transfer event."""

    user: str
    action: TradeSide
    asset: str
    amount: str
    timestamp: int

    @property
    def intent_id(self) -> str:
        return f"{self.user}-{self.timestamp}"
