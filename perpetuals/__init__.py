"""`perpetuals`: solvency and risk-accounting core of a perpetual-futures pool.

Deterministic, integer-only pricing, fee, leverage and liquidation math over
custody ledgers, plus an engine that stages settlements for the caller to
commit.

Public API:
- `PerpetualsEngine(pool, config)`: views and staged mutations
- `AccountMap.from_accounts(accounts)`: one-call account snapshot
- `load_market(path)` / `config_from_env()`: configuration
"""

from .config import EngineConfig, config_from_env, load_market, parse_market
from .core import (
    AggregatorRecord,
    AumCalcMode,
    Custody,
    LiquidationState,
    OracleParams,
    OraclePrice,
    OracleType,
    PerpetualsError,
    Pool,
    Position,
    PushOracleRecord,
    Side,
)
from .integration import PerpetualsEngine, Settlement, Transfer
from .state import AccountMap

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "config_from_env",
    "load_market",
    "parse_market",
    "AggregatorRecord",
    "AumCalcMode",
    "Custody",
    "LiquidationState",
    "OracleParams",
    "OraclePrice",
    "OracleType",
    "PerpetualsError",
    "Pool",
    "Position",
    "PushOracleRecord",
    "Side",
    "PerpetualsEngine",
    "Settlement",
    "Transfer",
    "AccountMap",
]
