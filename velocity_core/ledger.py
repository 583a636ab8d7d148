"""Optimistic client-side balance.

The ledger holds the last known channel balance in display units. Local
intents apply deltas immediately; an authoritative listing from the clearnode
replaces the value outright. The balance never goes below zero.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

ZERO = Decimal(0)


def parse_amount(value: Decimal | str | int) -> Decimal:
    """Parse a user-supplied amount.

    Raises:
        ValueError: If the value is not a finite positive number.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as err:
        raise ValueError(f"Invalid amount: {value!r}") from err
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    if amount <= ZERO:
        raise ValueError("Amount must be greater than zero")
    return amount


def format_amount(value: Decimal) -> str:
    """Render a balance without exponent notation or trailing zeros."""
    if value == ZERO:
        return "0"
    normalized = value.normalize()
    return f"{normalized:f}"


class OptimisticLedger:
    """Running balance for one session."""

    def __init__(self, balance: Decimal | str = ZERO) -> None:
        self._balance = Decimal(balance)
        # Verbatim text of the last authoritative value, until a local delta.
        self._reported: str | None = None

    @property
    def balance(self) -> Decimal:
        return self._balance

    def __str__(self) -> str:
        if self._reported is not None:
            return self._reported
        return format_amount(self._balance)

    def credit(self, amount: Decimal) -> Decimal:
        """Optimistic increase, applied before confirmation."""
        self._balance += amount
        self._reported = None
        return self._balance

    def debit(self, amount: Decimal) -> Decimal:
        """Decrease clamped at zero."""
        self._balance = max(ZERO, self._balance - amount)
        self._reported = None
        return self._balance

    def replace(self, authoritative: Decimal | str) -> Decimal:
        """Overwrite with a value reported by the clearnode.

        Raises:
            ValueError: If the reported value is not a non-negative number.
        """
        text = str(authoritative).strip()
        try:
            value = Decimal(text)
        except InvalidOperation as err:
            raise ValueError(f"Invalid reported balance: {authoritative!r}") from err
        if not value.is_finite() or value < ZERO:
            raise ValueError(f"Invalid reported balance: {authoritative!r}")
        self._balance = value
        self._reported = text
        return self._balance

    def reset(self) -> None:
        self._balance = ZERO
        self._reported = None
