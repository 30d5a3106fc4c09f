"""Tests for perpetuals/core/fees.py: bps fees, fee currency and fee shares."""

from __future__ import annotations

import hypothesis.strategies as st
import pytest
from hypothesis import given

from perpetuals.core.custody import Fees
from perpetuals.core.errors import ValidationError
from perpetuals.core.fees import (
    FeeShare,
    collect_protocol_fee,
    convert_fee_to_collateral,
    get_fee_amount,
    get_fee_amount_ceil,
    split_fee_share,
)
from perpetuals.core.oracle import OraclePrice
from perpetuals.core.types import Side

from conftest import make_custody


# ---------------------------------------------------------------------------
# Fee amounts
# ---------------------------------------------------------------------------

class TestFeeAmount:
    def test_thirty_bps(self):
        assert get_fee_amount(30, 1_000_000) == 3_000

    def test_floor(self):
        assert get_fee_amount(30, 333) == 0
        assert get_fee_amount(30, 334) == 1

    def test_ceil(self):
        assert get_fee_amount_ceil(30, 333) == 1
        assert get_fee_amount_ceil(30, 1_000_000) == 3_000

    def test_zero_inputs(self):
        assert get_fee_amount(0, 10**12) == 0
        assert get_fee_amount(30, 0) == 0
        assert get_fee_amount_ceil(0, 10**12) == 0

    def test_full_bps(self):
        assert get_fee_amount(10_000, 12_345) == 12_345

    @pytest.mark.parametrize("bps", [-1, 10_001])
    def test_out_of_range_bps(self, bps):
        with pytest.raises(ValidationError):
            get_fee_amount(bps, 1)

    @given(
        bps=st.integers(min_value=0, max_value=10_000),
        a=st.integers(min_value=0, max_value=10**15),
        b=st.integers(min_value=0, max_value=10**15),
    )
    def test_monotone_in_amount(self, bps, a, b):
        lo, hi = sorted((a, b))
        assert get_fee_amount(bps, lo) <= get_fee_amount(bps, hi)
        assert get_fee_amount_ceil(bps, lo) <= get_fee_amount_ceil(bps, hi)

    @given(
        bps=st.integers(min_value=1, max_value=10_000),
        amount=st.integers(min_value=10_000, max_value=10**15),
    )
    def test_positive_above_rounding_floor(self, bps, amount):
        assert get_fee_amount(bps, amount) > 0

    @given(bps=st.integers(min_value=0, max_value=10_000), amount=st.integers(min_value=0, max_value=10**15))
    def test_ceil_within_one_of_floor(self, bps, amount):
        assert 0 <= get_fee_amount_ceil(bps, amount) - get_fee_amount(bps, amount) <= 1


# ---------------------------------------------------------------------------
# Fee currency
# ---------------------------------------------------------------------------

class TestConvertFee:
    def test_long_on_real_asset_pays_in_asset(self):
        sol = make_custody("sol", decimals=9)
        usdc = make_custody("usdc", is_stable=True)
        fee = convert_fee_to_collateral(
            5_000_000, Side.LONG, sol, OraclePrice(100, 0), usdc, OraclePrice(1, 0),
        )
        assert fee == 5_000_000

    def test_short_converts_through_usd(self):
        sol = make_custody("sol", decimals=9)
        usdc = make_custody("usdc", is_stable=True)
        # 0.005 SOL at $100 = $0.50 = 500_000 USDC units
        fee = convert_fee_to_collateral(
            5_000_000, Side.SHORT, sol, OraclePrice(100, 0), usdc, OraclePrice(1, 0),
        )
        assert fee == 500_000

    def test_virtual_long_converts(self):
        gold = make_custody("gold", is_virtual=True)
        usdc = make_custody("usdc", is_stable=True)
        fee = convert_fee_to_collateral(
            1_000_000, Side.LONG, gold, OraclePrice(2_000, 0), usdc, OraclePrice(1, 0),
        )
        assert fee == 2_000_000_000


# ---------------------------------------------------------------------------
# Fee shares
# ---------------------------------------------------------------------------

class TestFeeShare:
    def test_paid_in_full(self):
        assert split_fee_share(10_000, 1_000, available=1_000) == FeeShare(amount=1_000, paid=True)

    def test_skipped_entirely_when_short(self):
        assert split_fee_share(10_000, 1_000, available=999) == FeeShare(amount=0, paid=False)

    def test_unpaid_share_must_be_zero(self):
        with pytest.raises(ValidationError):
            FeeShare(amount=1, paid=False)

    def test_collect_protocol_fee_moves_owned(self):
        c = make_custody("usdc", owned=1_000_000, is_stable=True, fees=Fees(protocol_share=0))
        share = collect_protocol_fee(c, 40_000, 2_500)
        assert share == FeeShare(amount=10_000, paid=True)
        assert c.assets.owned == 990_000
        assert c.assets.protocol_fees == 10_000

    def test_collect_protocol_fee_skipped_without_unlocked_balance(self):
        c = make_custody("usdc", owned=1_000_000, is_stable=True, fees=Fees(protocol_share=0))
        c.assets.locked = 995_000
        share = collect_protocol_fee(c, 40_000, 2_500)
        assert not share.paid
        assert c.assets.owned == 1_000_000
        assert c.assets.protocol_fees == 0
