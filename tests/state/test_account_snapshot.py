"""Tests for perpetuals/state/account_map.py."""

from __future__ import annotations

import pytest

from perpetuals.core.errors import MissingAccount, ValidationError
from perpetuals.core.position import Position
from perpetuals.state.account_map import AccountMap

from conftest import SOL_PRICE, make_custody, push_record


def _accounts():
    return [
        make_custody("sol", owned=1_000),
        push_record("sol-oracle", SOL_PRICE),
        Position(key="pos-1", custody="sol", collateral_custody="sol"),
    ]


class TestAccountMap:
    def test_lookup_by_key(self):
        m = AccountMap.from_accounts(_accounts())
        assert len(m) == 3
        assert "sol" in m
        assert m.get_custody("sol").assets.owned == 1_000
        assert m.get_oracle_record("sol-oracle").price == SOL_PRICE
        assert m.get_account("pos-1").key == "pos-1"

    def test_order_does_not_matter(self):
        a = AccountMap.from_accounts(_accounts())
        b = AccountMap.from_accounts(list(reversed(_accounts())))
        assert set(a.accounts) == set(b.accounts)

    def test_missing_key(self):
        m = AccountMap.from_accounts(_accounts())
        with pytest.raises(MissingAccount):
            m.get_custody("usdc")
        with pytest.raises(LookupError):
            m.get_oracle_record("usdc-oracle")

    def test_duplicate_key(self):
        with pytest.raises(ValidationError, match="duplicate"):
            AccountMap.from_accounts([make_custody("sol"), make_custody("sol")])

    def test_empty_key(self):
        with pytest.raises(ValidationError):
            AccountMap.from_accounts([Position()])

    def test_unsupported_type(self):
        with pytest.raises(ValidationError):
            AccountMap.from_accounts([{"key": "sol"}])

    def test_wrong_account_type(self):
        m = AccountMap.from_accounts(_accounts())
        with pytest.raises(ValidationError):
            m.get_custody("sol-oracle")
        with pytest.raises(ValidationError):
            m.get_oracle_record("sol")

    def test_table_is_read_only(self):
        m = AccountMap.from_accounts(_accounts())
        with pytest.raises(TypeError):
            m.accounts["usdc"] = make_custody("usdc")  # type: ignore[index]

    def test_map_is_frozen(self):
        m = AccountMap.from_accounts(_accounts())
        with pytest.raises(AttributeError):
            m.accounts = {}  # type: ignore[misc]
