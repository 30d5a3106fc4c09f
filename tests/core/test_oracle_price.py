"""Tests for perpetuals/core/oracle.py: price normalization and freshness."""

from __future__ import annotations

import hypothesis.strategies as st
import pytest
from hypothesis import given

from perpetuals.core.errors import MathOverflowError, PriceError, ValidationError
from perpetuals.core.oracle import AggregatorRecord, OracleParams, OraclePrice
from perpetuals.core.types import OracleType

from conftest import NOW, push_record

PUSH = OracleParams(oracle_account="sol-oracle", oracle_type=OracleType.PUSH, max_price_error=100)
AGG = OracleParams(oracle_account="sol-agg", oracle_type=OracleType.AGGREGATOR)


# ---------------------------------------------------------------------------
# Construction and comparison
# ---------------------------------------------------------------------------

class TestOraclePriceValue:
    def test_equality_across_exponents(self):
        assert OraclePrice(100, 0) == OraclePrice(100_000_000, -6)
        assert hash(OraclePrice(100, 0)) == hash(OraclePrice(100_000_000, -6))

    def test_ordering_across_exponents(self):
        assert OraclePrice(99_999_999, -6) < OraclePrice(100, 0)
        assert OraclePrice(1, 2) > OraclePrice(99, 0)
        assert max(OraclePrice(5, 0), OraclePrice(4_999, -3)) == OraclePrice(5, 0)

    def test_rejects_out_of_range_mantissa(self):
        with pytest.raises(ValidationError):
            OraclePrice(1 << 63, 0)

    def test_rejects_out_of_range_exponent(self):
        with pytest.raises(ValidationError):
            OraclePrice(1, 1 << 31)

    def test_scale_down_truncates(self):
        assert OraclePrice(123_456_789, -8).scale_to_exponent(-6).price == 1_234_567

    def test_scale_up(self):
        p = OraclePrice(15, -1).scale_to_exponent(-6)
        assert (p.price, p.exponent) == (1_500_000, -6)

    def test_scale_up_overflow(self):
        with pytest.raises(MathOverflowError):
            OraclePrice(10**18, 0).scale_to_exponent(-6)

    def test_normalize(self):
        assert OraclePrice(2_500, -2).normalize() == OraclePrice(25_000_000, -6)
        assert OraclePrice(2_500, -2).normalize().exponent == -6


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

class TestConversions:
    def test_asset_amount_usd(self):
        # 1.5 SOL (9 dp) at $100
        assert OraclePrice(100_000_000, -6).get_asset_amount_usd(1_500_000_000, 9) == 150_000_000

    def test_token_amount(self):
        assert OraclePrice(100_000_000, -6).get_token_amount(150_000_000, 9) == 1_500_000_000

    def test_token_amount_truncates(self):
        # $1 at $3 per token, 0 dp -> 0 whole tokens
        assert OraclePrice(3, 0).get_token_amount(1_000_000, 0) == 0

    def test_zero_price(self):
        zero = OraclePrice(0, -6)
        assert zero.get_token_amount(1_000_000, 6) == 0
        assert zero.get_asset_amount_usd(1_000_000, 6) == 0

    def test_min_price(self):
        a, b = OraclePrice(101, 0), OraclePrice(99, 0)
        assert a.get_min_price(b, is_stable=False) == b
        assert b.get_min_price(a, is_stable=False) == b

    def test_min_price_stable_clamps_to_peg(self):
        a, b = OraclePrice(1_010_000, -6), OraclePrice(1_020_000, -6)
        assert a.get_min_price(b, is_stable=True) == OraclePrice(1, 0)

    def test_min_price_stable_below_peg_kept(self):
        a, b = OraclePrice(990_000, -6), OraclePrice(1_020_000, -6)
        assert a.get_min_price(b, is_stable=True) == a


# ---------------------------------------------------------------------------
# Record resolution
# ---------------------------------------------------------------------------

class TestNewFromOracle:
    def test_push_spot(self):
        r = push_record("sol-oracle", 100_000_000, ema_price=98_000_000)
        assert OraclePrice.new_from_oracle(r, PUSH, NOW, False) == OraclePrice(100, 0)

    def test_push_ema(self):
        r = push_record("sol-oracle", 100_000_000, ema_price=98_000_000)
        assert OraclePrice.new_from_oracle(r, PUSH, NOW, True) == OraclePrice(98, 0)

    def test_spot_and_ema(self):
        r = push_record("sol-oracle", 100_000_000, ema_price=98_000_000)
        spot, ema = OraclePrice.spot_and_ema(r, PUSH, NOW, True)
        assert (spot, ema) == (OraclePrice(100, 0), OraclePrice(98, 0))
        spot, ema = OraclePrice.spot_and_ema(r, PUSH, NOW, False)
        assert spot == ema == OraclePrice(100, 0)

    def test_stale_record_rejected(self):
        r = push_record("sol-oracle", 100_000_000, publish_time=NOW - 61)
        with pytest.raises(PriceError):
            OraclePrice.new_from_oracle(r, PUSH, NOW, False)

    def test_age_boundary_accepted(self):
        r = push_record("sol-oracle", 100_000_000, publish_time=NOW - 60)
        assert OraclePrice.new_from_oracle(r, PUSH, NOW, False) == OraclePrice(100, 0)

    def test_custom_max_age(self):
        params = OracleParams(oracle_account="x", oracle_type=OracleType.PUSH, max_price_age_sec=5)
        r = push_record("x", 100_000_000, publish_time=NOW - 6)
        with pytest.raises(PriceError):
            OraclePrice.new_from_oracle(r, params, NOW, False)

    def test_non_positive_price(self):
        with pytest.raises(PriceError):
            OraclePrice.new_from_oracle(push_record("sol-oracle", 0), PUSH, NOW, False)

    def test_wide_confidence(self):
        # 1% bound, 2% confidence
        r = push_record("sol-oracle", 100_000_000, conf=2_000_000)
        with pytest.raises(PriceError):
            OraclePrice.new_from_oracle(r, PUSH, NOW, False)

    def test_malformed_field(self):
        r = push_record("sol-oracle", 100_000_000)
        bad = type(r)(**{**r.__dict__, "price": "100"})
        with pytest.raises(PriceError):
            OraclePrice.new_from_oracle(bad, PUSH, NOW, False)

    def test_shape_mismatch(self):
        r = AggregatorRecord(key="sol-oracle", mantissa=100, scale=0, latest_timestamp=NOW)
        with pytest.raises(PriceError):
            OraclePrice.new_from_oracle(r, PUSH, NOW, False)

    def test_unconfigured_oracle(self):
        with pytest.raises(PriceError):
            OraclePrice.new_from_oracle(push_record("x", 1), OracleParams(), NOW, False)

    def test_aggregator(self):
        r = AggregatorRecord(key="sol-agg", mantissa=10_025, scale=2, latest_timestamp=NOW)
        p = OraclePrice.new_from_oracle(r, AGG, NOW, True)
        assert (p.price, p.exponent) == (10_025, -2)

    def test_aggregator_stale(self):
        r = AggregatorRecord(key="sol-agg", mantissa=10_025, scale=2, latest_timestamp=NOW - 61)
        with pytest.raises(PriceError):
            OraclePrice.new_from_oracle(r, AGG, NOW, False)


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

class TestOracleProperties:
    @given(
        usd=st.integers(min_value=0, max_value=10**12),
        mantissa=st.integers(min_value=1_000, max_value=10**12),
        decimals=st.integers(min_value=0, max_value=9),
    )
    def test_token_usd_round_trip_within_one_unit(self, usd, mantissa, decimals):
        price = OraclePrice(mantissa, -6)
        tokens = price.get_token_amount(usd, decimals)
        back = price.get_asset_amount_usd(tokens, decimals)
        one_unit_usd = price.get_asset_amount_usd(1, decimals)
        assert back <= usd
        assert usd - back <= one_unit_usd + 1

    @given(
        a=st.integers(min_value=-(10**12), max_value=10**12),
        b=st.integers(min_value=-(10**12), max_value=10**12),
        shift=st.integers(min_value=0, max_value=6),
    )
    def test_comparison_is_exponent_independent(self, a, b, shift):
        pa = OraclePrice(a, -6)
        pb = OraclePrice(b * 10**shift, -6 - shift)
        assert (pa < pb) == (a < b)
        assert (pa == pb) == (a == b)
