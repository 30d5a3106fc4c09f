"""Fixed-point arithmetic for the perpetuals core.

Every monetary operation goes through the checked helpers below, which fail
with ``MathOverflowError`` instead of silently leaving the u64/u128 domain.

Two field families are exempt and say so in their dataclass metadata:
- ``Policy.WRAPPING``: cumulative historical counters (wrap modulo 2**64),
- ``Policy.SATURATING``: open-interest style counters (decrements clamp at 0).

``add_field``/``sub_field`` read that metadata, so the policy of a field is
declared once next to the field and never inferred at call sites.

Integer division is explicit about rounding: ``//`` on non-negative operands
truncates toward zero; ``checked_ceil_div`` rounds up.
"""

from __future__ import annotations

from dataclasses import field, fields, is_dataclass
from enum import Enum, unique
from typing import Any

from .errors import MathOverflowError

# Domain constants
U64_MAX: int = (1 << 64) - 1
U128_MAX: int = (1 << 128) - 1
I64_MIN: int = -(1 << 63)
I64_MAX: int = (1 << 63) - 1
I32_MIN: int = -(1 << 31)
I32_MAX: int = (1 << 31) - 1

BPS_DECIMALS: int = 4
BPS_POWER: int = 10**BPS_DECIMALS
PRICE_DECIMALS: int = 6
USD_DECIMALS: int = 6
LP_DECIMALS: int = USD_DECIMALS
RATE_DECIMALS: int = 9
RATE_POWER: int = 10**RATE_DECIMALS

ORACLE_MAXIMUM_AGE: int = 60  # seconds


@unique
class Policy(Enum):
    """Overflow policy of a ledger field."""
    CHECKED = "checked"
    WRAPPING = "wrapping"
    SATURATING = "saturating"


def _require_int(name: str, v: Any) -> int:
    if not isinstance(v, int) or isinstance(v, bool):
        raise MathOverflowError(f"{name} must be an int, got {type(v).__name__}")
    return v


def _bounded(value: int, limit: int, op: str) -> int:
    if value < 0 or value > limit:
        raise MathOverflowError(f"{op} overflow: {value}")
    return value


# -- Checked primitives ------------------------------------------------------

def checked_add(a: int, b: int, *, limit: int = U64_MAX) -> int:
    return _bounded(_require_int("a", a) + _require_int("b", b), limit, "add")


def checked_sub(a: int, b: int, *, limit: int = U64_MAX) -> int:
    return _bounded(_require_int("a", a) - _require_int("b", b), limit, "sub")


def checked_mul(a: int, b: int, *, limit: int = U128_MAX) -> int:
    return _bounded(_require_int("a", a) * _require_int("b", b), limit, "mul")


def checked_div(a: int, b: int) -> int:
    """Truncating division of non-negative ints."""
    _require_int("a", a)
    _require_int("b", b)
    if b == 0:
        raise MathOverflowError("division by zero")
    if a < 0 or b < 0:
        raise MathOverflowError(f"div operands must be non-negative: {a}, {b}")
    return a // b


def checked_ceil_div(a: int, b: int) -> int:
    """Division rounding up; ``checked_ceil_div(0, b) == 0``."""
    q = checked_div(a, b)
    if q * b != a:
        q += 1
    return q


def checked_as_u64(v: int) -> int:
    return _bounded(_require_int("v", v), U64_MAX, "u64 cast")


def checked_as_u128(v: int) -> int:
    return _bounded(_require_int("v", v), U128_MAX, "u128 cast")


# -- Non-failing primitives --------------------------------------------------

def saturating_sub(a: int, b: int) -> int:
    """``max(a - b, 0)``."""
    return max(_require_int("a", a) - _require_int("b", b), 0)


def wrapping_add(a: int, b: int, *, bits: int = 64) -> int:
    return (_require_int("a", a) + _require_int("b", b)) & ((1 << bits) - 1)


def wrapping_sub(a: int, b: int, *, bits: int = 64) -> int:
    return (_require_int("a", a) - _require_int("b", b)) & ((1 << bits) - 1)


# -- Decimal fixed-point -----------------------------------------------------

# Past this many decimal places a u128 quotient is always zero and a
# u128 product always overflows.
_MAX_DECIMAL_SHIFT: int = 39


def _decimal_quotient(numerator: int, denominator: int, power: int) -> int:
    """``numerator · 10^power / denominator`` as a u64, truncated toward zero."""
    if power >= 0:
        if power > _MAX_DECIMAL_SHIFT:
            raise MathOverflowError(f"decimal shift out of range: {power}")
        numerator = numerator * 10**power
    else:
        if -power > _MAX_DECIMAL_SHIFT:
            return 0
        denominator = denominator * 10**(-power)
    return checked_as_u64(checked_div(numerator, denominator))


def checked_decimal_mul(
    coefficient1: int,
    exponent1: int,
    coefficient2: int,
    exponent2: int,
    target_exponent: int,
) -> int:
    """``c1·10^e1 · c2·10^e2`` expressed as a u64 coefficient of ``10^target``.

    Truncates toward zero.
    """
    if coefficient1 == 0 or coefficient2 == 0:
        return 0
    product = checked_mul(coefficient1, coefficient2)
    return _decimal_quotient(product, 1, exponent1 + exponent2 - target_exponent)


def checked_decimal_div(
    coefficient1: int,
    exponent1: int,
    coefficient2: int,
    exponent2: int,
    target_exponent: int,
) -> int:
    """``(c1·10^e1) / (c2·10^e2)`` expressed as a u64 coefficient of ``10^target``.

    The quotient is computed from one exact fraction, so the only rounding is
    the final truncation toward zero.
    """
    if coefficient2 == 0:
        raise MathOverflowError("decimal division by zero")
    if coefficient1 == 0:
        return 0
    checked_as_u128(coefficient1)
    checked_as_u128(coefficient2)
    return _decimal_quotient(
        coefficient1, coefficient2, exponent1 - exponent2 - target_exponent,
    )


# -- Per-field policy --------------------------------------------------------

def policy_field(
    policy: Policy = Policy.CHECKED, *, default: int = 0, limit: int = U64_MAX,
) -> Any:
    """Dataclass field carrying an arithmetic policy and an upper bound."""
    return field(default=default, metadata={"policy": policy, "limit": limit})


def _field_metadata(record: Any, name: str) -> Any:
    if not is_dataclass(record):
        raise TypeError(f"{type(record).__name__} is not a dataclass")
    for f in fields(record):
        if f.name == name:
            return f.metadata
    raise AttributeError(f"{type(record).__name__} has no field {name!r}")


def policy_of(record: Any, name: str) -> Policy:
    """Declared policy of ``record.name`` (``CHECKED`` when undeclared)."""
    return _field_metadata(record, name).get("policy", Policy.CHECKED)


def limit_of(record: Any, name: str) -> int:
    """Declared upper bound of ``record.name`` (u64 when undeclared)."""
    return _field_metadata(record, name).get("limit", U64_MAX)


def add_field(record: Any, name: str, amount: int) -> int:
    """Add ``amount`` to ``record.name`` under its declared policy.

    Increments of a saturating field are checked: saturation only applies
    when a counter would go below zero.
    """
    current = getattr(record, name)
    if policy_of(record, name) is Policy.WRAPPING:
        value = wrapping_add(current, amount)
    else:
        value = checked_add(current, amount, limit=limit_of(record, name))
    setattr(record, name, value)
    return value


def sub_field(record: Any, name: str, amount: int) -> int:
    """Subtract ``amount`` from ``record.name`` under its declared policy."""
    current = getattr(record, name)
    policy = policy_of(record, name)
    if policy is Policy.WRAPPING:
        value = wrapping_sub(current, amount)
    elif policy is Policy.SATURATING:
        value = saturating_sub(current, amount)
    else:
        value = checked_sub(current, amount, limit=limit_of(record, name))
    setattr(record, name, value)
    return value
