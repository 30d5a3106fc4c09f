"""
Core perpetuals risk and accounting kernels
"""

from .custody import (
    Assets,
    BorrowRateParams,
    BorrowRateState,
    Custody,
    Fees,
    FeesStats,
    Permissions,
    PositionStats,
    PricingParams,
    TradeStats,
    VolumeStats,
)
from .errors import (
    InstructionNotAllowed,
    InsufficientFunds,
    InvalidPositionState,
    MathOverflowError,
    MissingAccount,
    PerpetualsError,
    PriceError,
    SolvencyViolation,
    ValidationError,
)
from .fees import FeeShare, get_fee_amount, get_fee_amount_ceil, split_fee_share
from .invariants import check_all
from .oracle import AggregatorRecord, OracleParams, OraclePrice, PushOracleRecord
from .pool import Pool
from .position import Position
from .types import (
    AmountAndFee,
    AumCalcMode,
    CloseAmount,
    LiquidationState,
    NewPositionPricesAndFee,
    OracleType,
    PnlUsd,
    PriceAndFee,
    Side,
)

__all__ = [
    "Assets",
    "BorrowRateParams",
    "BorrowRateState",
    "Custody",
    "Fees",
    "FeesStats",
    "Permissions",
    "PositionStats",
    "PricingParams",
    "TradeStats",
    "VolumeStats",
    "InstructionNotAllowed",
    "InsufficientFunds",
    "InvalidPositionState",
    "MathOverflowError",
    "MissingAccount",
    "PerpetualsError",
    "PriceError",
    "SolvencyViolation",
    "ValidationError",
    "FeeShare",
    "get_fee_amount",
    "get_fee_amount_ceil",
    "split_fee_share",
    "check_all",
    "AggregatorRecord",
    "OracleParams",
    "OraclePrice",
    "PushOracleRecord",
    "Pool",
    "Position",
    "AmountAndFee",
    "AumCalcMode",
    "CloseAmount",
    "LiquidationState",
    "NewPositionPricesAndFee",
    "OracleType",
    "PnlUsd",
    "PriceAndFee",
    "Side",
]
