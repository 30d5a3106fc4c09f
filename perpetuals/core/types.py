"""Enums and quote types shared across the perpetuals core.

Units/conventions:
- ``*_usd`` values are integer USD scaled by ``10^USD_DECIMALS``.
- ``price`` values are integer quote prices scaled by ``10^PRICE_DECIMALS``.
- ``*_bps`` rates are basis points (1/10_000).
- token amounts are native units of the custody's mint.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum, unique


@unique
class Side(Enum):
    LONG = "long"
    SHORT = "short"

    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


@unique
class AumCalcMode(Enum):
    """Price used to value each custody's holdings in the AUM."""
    MIN = "min"
    MAX = "max"
    LAST = "last"
    EMA = "ema"


@unique
class OracleType(Enum):
    NONE = "none"
    PUSH = "push"
    AGGREGATOR = "aggregator"


@unique
class LiquidationState(IntEnum):
    HEALTHY = 0
    LIQUIDATABLE = 1


@dataclass(frozen=True)
class PriceAndFee:
    price: int
    fee: int


@dataclass(frozen=True)
class AmountAndFee:
    amount: int
    fee: int


@dataclass(frozen=True)
class NewPositionPricesAndFee:
    entry_price: int
    liquidation_price: int
    fee: int


@dataclass(frozen=True)
class PnlUsd:
    """``exit_fee`` is in position-custody tokens; the rest is USD."""

    profit_usd: int
    loss_usd: int
    exit_fee_usd: int
    exit_fee: int = 0


@dataclass(frozen=True)
class CloseAmount:
    """Settlement of a closing position, in collateral-custody tokens."""

    total_amount_out: int
    fee_amount: int
    profit_usd: int
    loss_usd: int
