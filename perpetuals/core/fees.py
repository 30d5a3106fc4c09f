"""
Fee kernels (deterministic, integer-only).

Trading fees are basis-point fractions of a token amount. Two rounding
directions exist on purpose:
- ``get_fee_amount`` floors (shares carved out of an amount already owed),
- ``get_fee_amount_ceil`` rounds up (fees charged to a trader, in the pool's favor).

The protocol share follows an all-or-nothing rule: it is paid in full only
when the paying custody's unlocked balance covers it, otherwise nothing is
split off. The liquidator reward is a plain floored share of the payout.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ValidationError
from .math import BPS_POWER, add_field, checked_ceil_div, checked_div, checked_mul, checked_as_u64, sub_field
from .types import Side

if TYPE_CHECKING:
    from .custody import Custody
    from .oracle import OraclePrice


def _check_bps(fee_bps: int) -> None:
    if not isinstance(fee_bps, int) or isinstance(fee_bps, bool):
        raise ValidationError("fee bps must be an int")
    if not (0 <= fee_bps <= BPS_POWER):
        raise ValidationError(f"fee bps must be in [0, {BPS_POWER}]: {fee_bps}")


def get_fee_amount(fee_bps: int, amount: int) -> int:
    """``floor(amount · fee_bps / 10000)``."""
    _check_bps(fee_bps)
    if fee_bps == 0 or amount == 0:
        return 0
    return checked_as_u64(checked_div(checked_mul(amount, fee_bps), BPS_POWER))


def get_fee_amount_ceil(fee_bps: int, amount: int) -> int:
    """``ceil(amount · fee_bps / 10000)``."""
    _check_bps(fee_bps)
    if fee_bps == 0 or amount == 0:
        return 0
    return checked_as_u64(checked_ceil_div(checked_mul(amount, fee_bps), BPS_POWER))


def convert_fee_to_collateral(
    fee_amount: int,
    side: Side,
    custody: "Custody",
    token_ema_price: "OraclePrice",
    collateral_custody: "Custody",
    collateral_ema_price: "OraclePrice",
) -> int:
    """Express a fee charged in ``custody`` tokens in the currency it is paid in.

    Shorts and virtual assets settle in the collateral custody, so the fee is
    converted through USD; longs on real assets pay in the asset itself.
    """
    if side is not Side.SHORT and not custody.is_virtual:
        return fee_amount
    fee_usd = token_ema_price.get_asset_amount_usd(fee_amount, custody.decimals)
    return collateral_ema_price.get_token_amount(fee_usd, collateral_custody.decimals)


@dataclass(frozen=True)
class FeeShare:
    """Outcome of an all-or-nothing fee split."""

    amount: int
    paid: bool

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValidationError(f"fee share must be non-negative: {self.amount}")
        if not self.paid and self.amount != 0:
            raise ValidationError("an unpaid fee share must be zero")


def split_fee_share(amount: int, share_bps: int, available: int) -> FeeShare:
    """Carve ``share_bps`` out of ``amount`` if ``available`` covers it in full."""
    share = get_fee_amount(share_bps, amount)
    if share > available:
        return FeeShare(amount=0, paid=False)
    return FeeShare(amount=share, paid=True)


def collect_protocol_fee(custody: "Custody", fee_amount: int, protocol_share_bps: int) -> FeeShare:
    """Move ``protocol_share_bps`` of ``fee_amount`` from ``owned`` to ``protocol_fees``.

    ``custody`` is the paying (collateral) custody; the share comes from the
    fee schedule of the traded custody, which may be a different record.
    Mutates ``custody``; skipped entirely when the unlocked balance is short.
    """
    share = split_fee_share(fee_amount, protocol_share_bps, custody.available_amount())
    if share.paid and share.amount:
        sub_field(custody.assets, "owned", share.amount)
        add_field(custody.assets, "protocol_fees", share.amount)
    return share
