"""Trader position record."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ValidationError
from .types import Side


@dataclass
class Position:
    """Per-trader position state.

    ``price`` is the entry price (``PRICE_DECIMALS``); ``locked_amount`` and
    ``collateral_amount`` are collateral-custody tokens.
    """

    owner: str = ""
    pool: str = ""
    custody: str = ""
    collateral_custody: str = ""
    side: Side = Side.LONG
    price: int = 0
    size_usd: int = 0
    borrow_size_usd: int = 0
    collateral_usd: int = 0
    unrealized_profit_usd: int = 0
    unrealized_loss_usd: int = 0
    cumulative_interest_snapshot: int = 0
    locked_amount: int = 0
    collateral_amount: int = 0
    open_time: int = 0
    update_time: int = 0
    key: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.side, Side):
            raise ValidationError(f"side must be a Side: {self.side!r}")
        for name in (
            "price",
            "size_usd",
            "borrow_size_usd",
            "collateral_usd",
            "unrealized_profit_usd",
            "unrealized_loss_usd",
            "cumulative_interest_snapshot",
            "locked_amount",
            "collateral_amount",
            "open_time",
            "update_time",
        ):
            v = getattr(self, name)
            if not isinstance(v, int) or isinstance(v, bool):
                raise ValidationError(f"{name} must be an int")
            if v < 0:
                raise ValidationError(f"{name} must be non-negative: {v}")

    @property
    def is_empty(self) -> bool:
        return self.size_usd == 0 or self.price == 0
