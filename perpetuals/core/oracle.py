"""
Oracle price kernel.

This module is intentionally small and pure:
- The functional core normalizes raw feed records into ``OraclePrice`` values
  and decides freshness deterministically.
- The imperative shell is responsible for fetching the records and the clock.

Two raw record shapes are supported:
- ``PushOracleRecord``: a pushed feed carrying spot + EMA with a shared exponent,
- ``AggregatorRecord``: a pulled aggregator result carrying one resolved value
  (``mantissa · 10^-scale``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import total_ordering
from typing import Union

from .errors import MathOverflowError, PriceError, ValidationError
from .math import (
    BPS_POWER,
    I32_MAX,
    I32_MIN,
    I64_MAX,
    I64_MIN,
    ORACLE_MAXIMUM_AGE,
    PRICE_DECIMALS,
    USD_DECIMALS,
    checked_decimal_div,
    checked_decimal_mul,
)
from .types import OracleType

logger = logging.getLogger(__name__)


def _is_int(v: object) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


@dataclass(frozen=True)
class OracleParams:
    """Per-custody oracle configuration."""

    oracle_account: str = ""
    oracle_type: OracleType = OracleType.NONE
    max_price_error: int = BPS_POWER
    max_price_age_sec: int = ORACLE_MAXIMUM_AGE

    def __post_init__(self) -> None:
        if not isinstance(self.oracle_type, OracleType):
            raise ValidationError(f"oracle_type must be an OracleType: {self.oracle_type!r}")
        if not _is_int(self.max_price_error) or self.max_price_error < 0:
            raise ValidationError(f"max_price_error must be a non-negative int: {self.max_price_error}")
        if not _is_int(self.max_price_age_sec) or self.max_price_age_sec <= 0:
            raise ValidationError(f"max_price_age_sec must be positive: {self.max_price_age_sec}")


@dataclass(frozen=True)
class PushOracleRecord:
    """Raw pushed price update (spot + EMA share one exponent)."""

    key: str
    price: int
    conf: int
    ema_price: int
    ema_conf: int
    exponent: int
    publish_time: int


@dataclass(frozen=True)
class AggregatorRecord:
    """Raw aggregator round result."""

    key: str
    mantissa: int
    scale: int
    latest_timestamp: int


OracleRecord = Union[PushOracleRecord, AggregatorRecord]


@total_ordering
@dataclass(frozen=True, eq=False)
class OraclePrice:
    """Fixed-point price ``price · 10^exponent``.

    Equality and ordering compare exact values, so ``OraclePrice(100, 0)``
    equals ``OraclePrice(100_000_000, -6)``.
    """

    price: int
    exponent: int

    def __post_init__(self) -> None:
        if not _is_int(self.price) or not (I64_MIN <= self.price <= I64_MAX):
            raise ValidationError(f"price must be a signed 64-bit int: {self.price!r}")
        if not _is_int(self.exponent) or not (I32_MIN <= self.exponent <= I32_MAX):
            raise ValidationError(f"exponent must be a signed 32-bit int: {self.exponent!r}")

    # -- Construction --------------------------------------------------------

    @classmethod
    def new_from_oracle(
        cls,
        record: OracleRecord,
        params: OracleParams,
        current_time: int,
        use_ema: bool,
    ) -> "OraclePrice":
        """Resolve a raw record into a price, enforcing staleness and shape.

        Raises:
            PriceError: stale, malformed or unsupported record.
        """
        if params.oracle_type is OracleType.PUSH:
            if not isinstance(record, PushOracleRecord):
                raise PriceError(f"expected a push oracle record, got {type(record).__name__}")
            price = _price_from_push(record, params, current_time, use_ema)
        elif params.oracle_type is OracleType.AGGREGATOR:
            if not isinstance(record, AggregatorRecord):
                raise PriceError(f"expected an aggregator record, got {type(record).__name__}")
            price = _price_from_aggregator(record, params, current_time)
        else:
            raise PriceError(f"unsupported oracle type: {params.oracle_type.value}")
        logger.debug(
            "resolved oracle %s: price=%d exponent=%d use_ema=%s",
            params.oracle_account, price.price, price.exponent, use_ema,
        )
        return price

    @classmethod
    def spot_and_ema(
        cls,
        record: OracleRecord,
        params: OracleParams,
        current_time: int,
        use_ema: bool,
    ) -> tuple["OraclePrice", "OraclePrice"]:
        """Return ``(spot, ema)`` from one record; ``ema`` is spot unless ``use_ema``."""
        spot = cls.new_from_oracle(record, params, current_time, False)
        if not use_ema:
            return spot, spot
        return spot, cls.new_from_oracle(record, params, current_time, True)

    # -- Comparison ----------------------------------------------------------

    def _aligned(self, other: "OraclePrice") -> tuple[int, int]:
        """Both mantissas scaled to the smaller exponent (exact)."""
        if self.exponent == other.exponent:
            return self.price, other.price
        if self.exponent < other.exponent:
            return self.price, other.price * 10 ** (other.exponent - self.exponent)
        return self.price * 10 ** (self.exponent - other.exponent), other.price

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OraclePrice):
            return NotImplemented
        lhs, rhs = self._aligned(other)
        return lhs == rhs

    def __lt__(self, other: "OraclePrice") -> bool:
        if not isinstance(other, OraclePrice):
            return NotImplemented
        lhs, rhs = self._aligned(other)
        return lhs < rhs

    def __hash__(self) -> int:
        price, exponent = self.price, self.exponent
        while price != 0 and price % 10 == 0:
            price //= 10
            exponent += 1
        return hash((price, exponent if price != 0 else 0))

    # -- Scaling -------------------------------------------------------------

    def scale_to_exponent(self, target_exponent: int) -> "OraclePrice":
        """Rescale to ``target_exponent``; truncates when precision drops."""
        if target_exponent == self.exponent:
            return self
        delta = target_exponent - self.exponent
        if delta > 0:
            # |price| < 10^19, so any larger shift truncates to zero.
            magnitude = abs(self.price) // 10 ** min(delta, 20)
            scaled = magnitude if self.price >= 0 else -magnitude
        elif self.price == 0:
            scaled = 0
        elif -delta > 20:
            raise MathOverflowError(f"price overflow scaling to exponent {target_exponent}")
        else:
            scaled = self.price * 10 ** (-delta)
        if not (I64_MIN <= scaled <= I64_MAX):
            raise MathOverflowError(f"price overflow scaling to exponent {target_exponent}")
        return OraclePrice(scaled, target_exponent)

    def normalize(self) -> "OraclePrice":
        """Rescale to ``-PRICE_DECIMALS``."""
        return self.scale_to_exponent(-PRICE_DECIMALS)

    # -- Conversions ---------------------------------------------------------

    def get_asset_amount_usd(self, token_amount: int, token_decimals: int) -> int:
        """USD value of ``token_amount`` native units (truncated)."""
        if token_amount == 0 or self.price == 0:
            return 0
        return checked_decimal_mul(
            token_amount, -token_decimals,
            self.price, self.exponent,
            -USD_DECIMALS,
        )

    def get_token_amount(self, asset_amount_usd: int, token_decimals: int) -> int:
        """Native token units worth ``asset_amount_usd`` (truncated toward zero)."""
        if asset_amount_usd == 0 or self.price == 0:
            return 0
        return checked_decimal_div(
            asset_amount_usd, -USD_DECIMALS,
            self.price, self.exponent,
            -token_decimals,
        )

    def get_min_price(self, other: "OraclePrice", is_stable: bool) -> "OraclePrice":
        """Lower of the two prices; stable assets are additionally capped at $1."""
        min_price = self if self < other else other
        if not is_stable:
            return min_price
        if min_price.exponent > 0:
            if min_price.price == 0:
                return min_price
            return OraclePrice(10**PRICE_DECIMALS, -PRICE_DECIMALS)
        one_usd = 10 ** (-min_price.exponent)
        if min_price.price > one_usd:
            return OraclePrice(one_usd, min_price.exponent)
        return min_price


# -- Record resolution -------------------------------------------------------

def _check_age(publish_time: int, current_time: int, max_age: int, account: str) -> None:
    if current_time - publish_time > max_age:
        raise PriceError(
            f"stale oracle {account}: published {publish_time}, now {current_time}, max age {max_age}s"
        )


def _price_from_push(
    record: PushOracleRecord,
    params: OracleParams,
    current_time: int,
    use_ema: bool,
) -> OraclePrice:
    for name in ("price", "conf", "ema_price", "ema_conf", "exponent", "publish_time"):
        if not _is_int(getattr(record, name)):
            raise PriceError(f"malformed push oracle record: {name}")
    _check_age(record.publish_time, current_time, params.max_price_age_sec, params.oracle_account)

    price, conf = (record.ema_price, record.ema_conf) if use_ema else (record.price, record.conf)
    if price <= 0 or conf < 0:
        raise PriceError(f"invalid oracle price {price} (conf {conf})")
    if conf * BPS_POWER > params.max_price_error * price:
        raise PriceError(f"oracle confidence {conf} too wide for price {price}")
    try:
        return OraclePrice(price, record.exponent)
    except ValidationError as exc:
        raise PriceError(str(exc)) from exc


def _price_from_aggregator(
    record: AggregatorRecord,
    params: OracleParams,
    current_time: int,
) -> OraclePrice:
    for name in ("mantissa", "scale", "latest_timestamp"):
        if not _is_int(getattr(record, name)):
            raise PriceError(f"malformed aggregator record: {name}")
    _check_age(record.latest_timestamp, current_time, params.max_price_age_sec, params.oracle_account)

    if record.mantissa <= 0 or record.scale < 0:
        raise PriceError(f"invalid aggregator result {record.mantissa}e-{record.scale}")
    try:
        return OraclePrice(record.mantissa, -record.scale)
    except ValidationError as exc:
        raise PriceError(str(exc)) from exc
