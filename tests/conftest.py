"""Shared market fixtures: a SOL custody, a USDC custody and their pool."""

from __future__ import annotations

import pytest

from perpetuals.core.custody import Assets, Custody, Fees, PricingParams
from perpetuals.core.math import BPS_POWER
from perpetuals.core.oracle import OracleParams, PushOracleRecord
from perpetuals.core.pool import Pool
from perpetuals.core.types import OracleType

NOW = 1_700_000_000

SOL_PRICE = 100_000_000  # $100 at exponent -6
USDC_PRICE = 1_000_000  # $1 at exponent -6


def push_record(
    key: str,
    price: int,
    *,
    ema_price: int | None = None,
    conf: int = 0,
    exponent: int = -6,
    publish_time: int = NOW,
) -> PushOracleRecord:
    return PushOracleRecord(
        key=key,
        price=price,
        conf=conf,
        ema_price=price if ema_price is None else ema_price,
        ema_conf=conf,
        exponent=exponent,
        publish_time=publish_time,
    )


def make_custody(
    key: str,
    *,
    owned: int = 0,
    decimals: int = 6,
    is_stable: bool = False,
    is_virtual: bool = False,
    fees: Fees | None = None,
    pricing: PricingParams | None = None,
    **kwargs,
) -> Custody:
    custody = Custody(
        key=key,
        pool="pool",
        mint=key.upper(),
        decimals=decimals,
        is_stable=is_stable,
        is_virtual=is_virtual,
        oracle=OracleParams(
            oracle_account=f"{key}-oracle",
            oracle_type=OracleType.PUSH,
            max_price_error=100,
        ),
        pricing=pricing or PricingParams(
            use_ema=True,
            max_initial_leverage=20 * BPS_POWER,
            max_leverage=50 * BPS_POWER,
        ),
        fees=fees or Fees(
            open_position=10,
            close_position=10,
            liquidation=50,
            protocol_share=1_000,
        ),
        assets=Assets(owned=owned),
        **kwargs,
    )
    custody.validate()
    return custody


@pytest.fixture
def sol() -> Custody:
    return make_custody("sol", owned=100_000_000)


@pytest.fixture
def usdc() -> Custody:
    return make_custody("usdc", owned=10_000_000_000, is_stable=True)


@pytest.fixture
def pool() -> Pool:
    return Pool(key="pool", name="main", custodies=("sol", "usdc"), inception_time=NOW - 86_400)


@pytest.fixture
def sol_record() -> PushOracleRecord:
    return push_record("sol-oracle", SOL_PRICE)


@pytest.fixture
def usdc_record() -> PushOracleRecord:
    return push_record("usdc-oracle", USDC_PRICE)
