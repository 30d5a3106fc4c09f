"""Tests for perpetuals/core/invariants.py."""

from __future__ import annotations

import pytest

from perpetuals.core.custody import BorrowRateParams
from perpetuals.core.invariants import (
    INVARIANT_REGISTRY,
    check_all,
    inv_assets_within_u64,
    inv_borrow_rate_bounded,
    inv_owned_covers_locked_and_collateral,
)
from perpetuals.core.math import U64_MAX

from conftest import make_custody


class TestInvariants:
    def test_fresh_custody_passes(self):
        assert check_all(make_custody("sol", owned=1_000)) == []

    def test_locked_plus_collateral_exceeds_owned(self):
        c = make_custody("sol", owned=1_000)
        c.assets.locked = 600
        c.assets.collateral = 401
        assert not inv_owned_covers_locked_and_collateral(c)
        assert check_all(c) == ["inv_owned_covers_locked_and_collateral"]

    def test_boundary_holds(self):
        c = make_custody("sol", owned=1_000)
        c.assets.locked = 600
        c.assets.collateral = 400
        assert check_all(c) == []

    def test_negative_balance(self):
        c = make_custody("sol", owned=1_000)
        c.assets.protocol_fees = -1
        assert "inv_assets_non_negative" in check_all(c)

    def test_above_u64(self):
        c = make_custody("sol")
        c.assets.owned = U64_MAX + 1
        assert not inv_assets_within_u64(c)

    def test_borrow_rate_cap(self):
        c = make_custody("sol", borrow_rate=BorrowRateParams(base_rate=1, slope1=2, slope2=3))
        c.borrow_rate_state.current_rate = 6
        assert inv_borrow_rate_bounded(c)
        c.borrow_rate_state.current_rate = 7
        assert check_all(c) == ["inv_borrow_rate_bounded"]

    @pytest.mark.parametrize("inv_id", sorted(INVARIANT_REGISTRY))
    def test_registry_ids_match_function_names(self, inv_id):
        assert INVARIANT_REGISTRY[inv_id].__name__ == inv_id
