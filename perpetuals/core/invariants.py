"""Invariant checkers for custody ledgers.

Each function returns True when the invariant holds, and `check_all()` returns
the list of violated invariant IDs (empty = all pass).

These are per-custody invariants; the engine runs them on every staged
custody before a settlement is returned.
"""

from __future__ import annotations

from typing import Callable

from .custody import Custody
from .math import U64_MAX


def inv_owned_covers_locked_and_collateral(c: Custody) -> bool:
    return c.assets.owned >= c.assets.locked + c.assets.collateral


def inv_assets_non_negative(c: Custody) -> bool:
    a = c.assets
    return min(a.owned, a.locked, a.collateral, a.protocol_fees) >= 0


def inv_assets_within_u64(c: Custody) -> bool:
    a = c.assets
    return max(a.owned, a.locked, a.collateral, a.protocol_fees) <= U64_MAX


def inv_borrow_rate_bounded(c: Custody) -> bool:
    p = c.borrow_rate
    return 0 <= c.borrow_rate_state.current_rate <= p.base_rate + p.slope1 + p.slope2


# ---------------------------------------------------------------------------
# Registry + check_all
# ---------------------------------------------------------------------------

INVARIANT_REGISTRY: dict[str, Callable[[Custody], bool]] = {
    "inv_owned_covers_locked_and_collateral": inv_owned_covers_locked_and_collateral,
    "inv_assets_non_negative": inv_assets_non_negative,
    "inv_assets_within_u64": inv_assets_within_u64,
    "inv_borrow_rate_bounded": inv_borrow_rate_bounded,
}


def check_all(custody: Custody) -> list[str]:
    """Return list of violated invariant IDs (empty = all pass)."""
    return [
        inv_id
        for inv_id, check_fn in INVARIANT_REGISTRY.items()
        if not check_fn(custody)
    ]
