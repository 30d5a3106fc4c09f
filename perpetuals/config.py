"""
Engine configuration.

Two sources are supported:
- environment variables (``config_from_env``), clamped to safe ranges,
- a YAML market description (``load_market``) carrying the global config,
  the pool and its custodies.

Unknown keys are rejected rather than ignored so a typo in a market file
cannot silently fall back to a default.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from .core.custody import (
    Assets,
    BorrowRateParams,
    BorrowRateState,
    Custody,
    Fees,
    Permissions,
    PricingParams,
)
from .core.errors import ValidationError
from .core.math import ORACLE_MAXIMUM_AGE
from .core.oracle import OracleParams
from .core.pool import Pool
from .core.types import OracleType

logger = logging.getLogger(__name__)

ENV_PREFIX = "PERPETUALS_"
MAX_ORACLE_AGE_SEC = 86_400


@dataclass(frozen=True)
class EngineConfig:
    """Global settings shared by every pool."""

    permissions: Permissions = field(default_factory=Permissions)
    oracle_max_age_sec: int = ORACLE_MAXIMUM_AGE

    def __post_init__(self) -> None:
        if not isinstance(self.permissions, Permissions):
            raise ValidationError("permissions must be a Permissions record")
        v = self.oracle_max_age_sec
        if not isinstance(v, int) or isinstance(v, bool) or not (1 <= v <= MAX_ORACLE_AGE_SEC):
            raise ValidationError(f"oracle_max_age_sec must be in [1, {MAX_ORACLE_AGE_SEC}]: {v!r}")


# -- Environment -------------------------------------------------------------

def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return int(default)
    try:
        v = int(raw.strip())
    except ValueError:
        logger.warning("ignoring non-integer %s=%r", name, raw)
        return int(default)
    if v < lo:
        return int(lo)
    if v > hi:
        return int(hi)
    return int(v)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    logger.warning("ignoring non-boolean %s=%r", name, raw)
    return default


def config_from_env(base: EngineConfig | None = None) -> EngineConfig:
    """Apply ``PERPETUALS_*`` environment overrides on top of ``base``.

    ``PERPETUALS_ORACLE_MAX_AGE_SEC`` is clamped to ``[1, 86400]``; each
    ``PERPETUALS_ALLOW_<GATE>`` toggles the matching permission.
    """
    base = base or EngineConfig()
    gates = {
        f.name: _env_bool(ENV_PREFIX + f.name.upper(), getattr(base.permissions, f.name))
        for f in fields(Permissions)
    }
    return EngineConfig(
        permissions=Permissions(**gates),
        oracle_max_age_sec=_env_int(
            ENV_PREFIX + "ORACLE_MAX_AGE_SEC",
            base.oracle_max_age_sec,
            lo=1,
            hi=MAX_ORACLE_AGE_SEC,
        ),
    )


# -- YAML market files -------------------------------------------------------

def _mapping(raw: Any, where: str) -> Mapping[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValidationError(f"{where}: expected a mapping, got {type(raw).__name__}")
    return raw


def _build(cls: type, raw: Any, where: str, **extra: Any) -> Any:
    """Construct dataclass ``cls`` from a mapping, rejecting unknown keys."""
    data = dict(_mapping(raw, where))
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(f"{where}: unknown keys {unknown}")
    data.update(extra)
    try:
        return cls(**data)
    except TypeError as exc:
        raise ValidationError(f"{where}: {exc}") from exc


def _oracle_params(raw: Any, where: str, default_age: int) -> OracleParams:
    data = dict(_mapping(raw, where))
    type_name = data.pop("oracle_type", OracleType.NONE.value)
    try:
        oracle_type = OracleType(type_name)
    except ValueError:
        raise ValidationError(f"{where}: unknown oracle_type {type_name!r}") from None
    data.setdefault("max_price_age_sec", default_age)
    return _build(OracleParams, data, where, oracle_type=oracle_type)


def _custody(raw: Any, index: int, pool_key: str, config: EngineConfig) -> Custody:
    where = f"custodies[{index}]"
    data = dict(_mapping(raw, where))
    nested = {
        "oracle": None,
        "pricing": PricingParams,
        "permissions": Permissions,
        "fees": Fees,
        "borrow_rate": BorrowRateParams,
        "assets": Assets,
        "borrow_rate_state": BorrowRateState,
    }
    built: dict[str, Any] = {}
    for name, cls in nested.items():
        if name not in data:
            continue
        sub = data.pop(name)
        if cls is None:
            built[name] = _oracle_params(sub, f"{where}.{name}", config.oracle_max_age_sec)
        else:
            built[name] = _build(cls, sub, f"{where}.{name}")
    if "oracle" not in built:
        built["oracle"] = OracleParams(max_price_age_sec=config.oracle_max_age_sec)
    data.setdefault("pool", pool_key)
    custody = _build(Custody, data, where, **built)
    custody.validate()
    return custody


def parse_market(doc: Any) -> tuple[EngineConfig, Pool, list[Custody]]:
    """Build ``(config, pool, custodies)`` from an already-parsed document."""
    root = _mapping(doc, "market")
    unknown = sorted(set(root) - {"config", "pool", "custodies"})
    if unknown:
        raise ValidationError(f"market: unknown keys {unknown}")

    cfg_raw = dict(_mapping(root.get("config"), "config"))
    perms = _build(Permissions, cfg_raw.pop("permissions", None), "config.permissions")
    config = _build(EngineConfig, cfg_raw, "config", permissions=perms)

    raw_custodies = root.get("custodies") or []
    if not isinstance(raw_custodies, list):
        raise ValidationError("custodies: expected a list")

    pool_raw = dict(_mapping(root.get("pool"), "pool"))
    if "custodies" in pool_raw:
        raise ValidationError("pool.custodies is derived from the custodies list")
    pool = _build(Pool, pool_raw, "pool")
    custodies = [_custody(raw, i, pool.key, config) for i, raw in enumerate(raw_custodies)]
    pool = replace(pool, custodies=tuple(c.key for c in custodies))
    pool.validate()
    return config, pool, custodies


def load_market(path: str | Path) -> tuple[EngineConfig, Pool, list[Custody]]:
    """Read a YAML market file.

    Raises:
        ValidationError: unreadable YAML or an invalid market description.
    """
    path = Path(path)
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValidationError(f"{path}: invalid YAML: {exc}") from exc
    try:
        config, pool, custodies = parse_market(doc)
    except ValidationError as exc:
        raise ValidationError(f"{path}: {exc}") from exc
    logger.info("loaded market %s from %s with %d custodies", pool.name, path, len(custodies))
    return config, pool, custodies
