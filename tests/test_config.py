"""Tests for perpetuals/config.py: environment overrides and YAML market files."""

from __future__ import annotations

import textwrap

import pytest

from perpetuals.config import EngineConfig, config_from_env, load_market, parse_market
from perpetuals.core.custody import Permissions
from perpetuals.core.errors import ValidationError
from perpetuals.core.types import OracleType

MARKET_YAML = textwrap.dedent(
    """
    config:
      oracle_max_age_sec: 30
      permissions:
        allow_remove_liquidity: false
    pool:
      key: pool
      name: main
    custodies:
      - key: sol
        mint: SOL
        decimals: 9
        oracle:
          oracle_account: sol-oracle
          oracle_type: push
          max_price_error: 100
        pricing:
          trade_spread_long: 10
          max_initial_leverage: 200000
          max_leverage: 500000
        fees:
          open_position: 10
          close_position: 10
          liquidation: 50
          protocol_share: 1000
        assets:
          owned: 1000000000
      - key: usdc
        mint: USDC
        is_stable: true
        oracle:
          oracle_account: usdc-oracle
          oracle_type: aggregator
          max_price_age_sec: 120
    """
)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

class TestEnvConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PERPETUALS_ORACLE_MAX_AGE_SEC", raising=False)
        cfg = config_from_env()
        assert cfg == EngineConfig()
        assert cfg.oracle_max_age_sec == 60

    def test_max_age_override(self, monkeypatch):
        monkeypatch.setenv("PERPETUALS_ORACLE_MAX_AGE_SEC", "15")
        assert config_from_env().oracle_max_age_sec == 15

    @pytest.mark.parametrize("raw,expected", [("0", 1), ("-5", 1), ("999999", 86_400)])
    def test_max_age_clamped(self, monkeypatch, raw, expected):
        monkeypatch.setenv("PERPETUALS_ORACLE_MAX_AGE_SEC", raw)
        assert config_from_env().oracle_max_age_sec == expected

    def test_non_integer_falls_back(self, monkeypatch):
        monkeypatch.setenv("PERPETUALS_ORACLE_MAX_AGE_SEC", "soon")
        base = EngineConfig(oracle_max_age_sec=45)
        assert config_from_env(base).oracle_max_age_sec == 45

    def test_gate_override(self, monkeypatch):
        monkeypatch.setenv("PERPETUALS_ALLOW_OPEN_POSITION", "false")
        monkeypatch.setenv("PERPETUALS_ALLOW_ADD_LIQUIDITY", "no")
        perms = config_from_env().permissions
        assert perms.allow_open_position is False
        assert perms.allow_add_liquidity is False
        assert perms.allow_close_position is True

    def test_gate_reopened_over_base(self, monkeypatch):
        monkeypatch.setenv("PERPETUALS_ALLOW_CLOSE_POSITION", "1")
        base = EngineConfig(permissions=Permissions(allow_close_position=False))
        assert config_from_env(base).permissions.allow_close_position is True

    def test_unparseable_gate_keeps_base(self, monkeypatch):
        monkeypatch.setenv("PERPETUALS_ALLOW_OPEN_POSITION", "maybe")
        assert config_from_env().permissions.allow_open_position is True

    def test_config_bounds(self):
        with pytest.raises(ValidationError):
            EngineConfig(oracle_max_age_sec=0)


# ---------------------------------------------------------------------------
# YAML market files
# ---------------------------------------------------------------------------

class TestMarketFile:
    def test_load(self, tmp_path):
        path = tmp_path / "market.yaml"
        path.write_text(MARKET_YAML, encoding="utf-8")
        config, pool, custodies = load_market(path)

        assert config.oracle_max_age_sec == 30
        assert config.permissions.allow_remove_liquidity is False
        assert pool.name == "main"
        assert pool.custodies == ("sol", "usdc")

        sol, usdc = custodies
        assert sol.pool == "pool"
        assert sol.decimals == 9
        assert sol.oracle.oracle_type is OracleType.PUSH
        assert sol.oracle.max_price_age_sec == 30
        assert sol.pricing.trade_spread_long == 10
        assert sol.fees.protocol_share == 1_000
        assert sol.assets.owned == 1_000_000_000
        assert usdc.is_stable
        assert usdc.oracle.oracle_type is OracleType.AGGREGATOR
        assert usdc.oracle.max_price_age_sec == 120

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("pool: [unclosed\n", encoding="utf-8")
        with pytest.raises(ValidationError, match="invalid YAML"):
            load_market(path)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValidationError, match="unknown keys"):
            parse_market({"pool": {"name": "p"}, "pools": []})

    def test_unknown_custody_key(self):
        doc = {
            "pool": {"key": "p", "name": "p"},
            "custodies": [{"key": "sol", "oracle": {"oracle_account": "o", "oracle_type": "push"}, "colour": "red"}],
        }
        with pytest.raises(ValidationError, match="colour"):
            parse_market(doc)

    def test_unknown_oracle_type(self):
        doc = {
            "pool": {"key": "p", "name": "p"},
            "custodies": [{"key": "sol", "oracle": {"oracle_account": "o", "oracle_type": "carrier-pigeon"}}],
        }
        with pytest.raises(ValidationError, match="oracle_type"):
            parse_market(doc)

    def test_custody_without_oracle(self):
        doc = {"pool": {"key": "p", "name": "p"}, "custodies": [{"key": "sol"}]}
        with pytest.raises(ValidationError, match="no oracle"):
            parse_market(doc)

    def test_pool_custodies_are_derived(self):
        with pytest.raises(ValidationError):
            parse_market({"pool": {"key": "p", "name": "p", "custodies": ["sol"]}})

    def test_duplicate_custody(self):
        custody = {"key": "sol", "oracle": {"oracle_account": "o", "oracle_type": "push"}}
        with pytest.raises(ValidationError):
            parse_market({"pool": {"key": "p", "name": "p"}, "custodies": [custody, custody]})

    def test_nested_section_must_be_mapping(self):
        doc = {
            "pool": {"key": "p", "name": "p"},
            "custodies": [{"key": "sol", "oracle": {"oracle_account": "o", "oracle_type": "push"}, "fees": [1, 2]}],
        }
        with pytest.raises(ValidationError, match="expected a mapping"):
            parse_market(doc)
