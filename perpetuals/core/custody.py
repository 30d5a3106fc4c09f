"""
Per-asset custody ledger.

A custody holds one token for a pool. Its ``assets`` split the tokens it owns:
- ``locked``: reserved to pay out potential profit of open positions,
- ``collateral``: trader collateral deposited into the custody,
- the remainder (``owned - locked - collateral``) is the unlocked balance.

Solvency invariant: ``owned >= locked + collateral``.

Statistics fields declare their overflow policy (see ``perpetuals.core.math``):
collected fees, realized profit/loss and booked interest wrap; open interest
and position statistics saturate at zero on decrement; assets and volume are
checked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .errors import InsufficientFunds, ValidationError
from .math import (
    BPS_POWER,
    RATE_POWER,
    U128_MAX,
    Policy,
    add_field,
    checked_add,
    checked_ceil_div,
    checked_div,
    checked_mul,
    checked_as_u64,
    policy_field,
    sub_field,
)
from .oracle import OracleParams
from .position import Position
from .types import OracleType, Side

MAX_TOKEN_DECIMALS = 18
SECONDS_PER_HOUR = 3600


def _check_bps_fields(record: object, names: tuple[str, ...], hi: int = BPS_POWER) -> None:
    for name in names:
        v = getattr(record, name)
        if not isinstance(v, int) or isinstance(v, bool):
            raise ValidationError(f"{name} must be an int")
        if not (0 <= v <= hi):
            raise ValidationError(f"{name} must be in [0, {hi}]: {v}")


# -- Parameters (immutable) --------------------------------------------------

@dataclass(frozen=True)
class PricingParams:
    """Pricing and leverage limits; leverage values are bps (10_000 == 1x)."""

    use_ema: bool = True
    use_unrealized_pnl_in_aum: bool = False
    trade_spread_long: int = 0
    trade_spread_short: int = 0
    min_initial_leverage: int = BPS_POWER
    max_initial_leverage: int = 100 * BPS_POWER
    max_leverage: int = 100 * BPS_POWER
    max_payoff_mult: int = BPS_POWER

    def __post_init__(self) -> None:
        _check_bps_fields(self, ("trade_spread_long", "trade_spread_short"))
        for name in ("min_initial_leverage", "max_initial_leverage", "max_leverage", "max_payoff_mult"):
            v = getattr(self, name)
            if not isinstance(v, int) or isinstance(v, bool) or v <= 0:
                raise ValidationError(f"{name} must be a positive int: {v!r}")


@dataclass(frozen=True)
class Permissions:
    """Feature gates; a closed gate rejects the operation."""

    allow_open_position: bool = True
    allow_close_position: bool = True
    allow_collateral_withdrawal: bool = True
    allow_add_liquidity: bool = True
    allow_remove_liquidity: bool = True


@dataclass(frozen=True)
class Fees:
    """Fee schedule in bps."""

    open_position: int = 0
    close_position: int = 0
    liquidation: int = 0
    protocol_share: int = 0
    add_liquidity: int = 0
    remove_liquidity: int = 0

    def __post_init__(self) -> None:
        _check_bps_fields(self, (
            "open_position",
            "close_position",
            "liquidation",
            "protocol_share",
            "add_liquidity",
            "remove_liquidity",
        ))


@dataclass(frozen=True)
class BorrowRateParams:
    """Two-slope hourly borrow-rate curve (``RATE_DECIMALS`` fixed point)."""

    base_rate: int = 0
    slope1: int = 0
    slope2: int = 0
    optimal_utilization: int = RATE_POWER

    def __post_init__(self) -> None:
        _check_bps_fields(self, ("base_rate", "slope1", "slope2"), hi=RATE_POWER * 100)
        _check_bps_fields(self, ("optimal_utilization",), hi=RATE_POWER)


# -- Ledgers (mutable) -------------------------------------------------------

@dataclass
class Assets:
    collateral: int = policy_field(Policy.CHECKED)
    protocol_fees: int = policy_field(Policy.CHECKED)
    owned: int = policy_field(Policy.CHECKED)
    locked: int = policy_field(Policy.CHECKED)


@dataclass
class FeesStats:
    """Cumulative fees collected, in USD."""

    open_position_usd: int = policy_field(Policy.WRAPPING)
    close_position_usd: int = policy_field(Policy.WRAPPING)
    liquidation_usd: int = policy_field(Policy.WRAPPING)
    add_liquidity_usd: int = policy_field(Policy.WRAPPING)
    remove_liquidity_usd: int = policy_field(Policy.WRAPPING)


@dataclass
class VolumeStats:
    """Cumulative traded volume, in USD."""

    open_position_usd: int = policy_field(Policy.CHECKED)
    close_position_usd: int = policy_field(Policy.CHECKED)
    liquidation_usd: int = policy_field(Policy.CHECKED)
    add_liquidity_usd: int = policy_field(Policy.CHECKED)
    remove_liquidity_usd: int = policy_field(Policy.CHECKED)


@dataclass
class TradeStats:
    profit_usd: int = policy_field(Policy.WRAPPING)
    loss_usd: int = policy_field(Policy.WRAPPING)
    oi_long_usd: int = policy_field(Policy.SATURATING)
    oi_short_usd: int = policy_field(Policy.SATURATING)


@dataclass
class PositionStats:
    """Aggregate of all open positions on one side."""

    open_positions: int = policy_field(Policy.SATURATING)
    collateral_usd: int = policy_field(Policy.SATURATING)
    size_usd: int = policy_field(Policy.SATURATING)
    borrow_size_usd: int = policy_field(Policy.SATURATING)
    locked_amount: int = policy_field(Policy.SATURATING)
    # sum(price * size_usd) and sum(size_usd): size-weighted entry price.
    weighted_price: int = policy_field(Policy.SATURATING, limit=U128_MAX)
    total_quantity: int = policy_field(Policy.SATURATING, limit=U128_MAX)
    cumulative_interest_usd: int = policy_field(Policy.WRAPPING)
    cumulative_interest_snapshot: int = policy_field(Policy.CHECKED, limit=U128_MAX)


@dataclass
class BorrowRateState:
    current_rate: int = policy_field(Policy.CHECKED)
    cumulative_interest: int = policy_field(Policy.CHECKED, limit=U128_MAX)
    last_update: int = 0


# -- Custody -----------------------------------------------------------------

@dataclass
class Custody:
    key: str = ""
    pool: str = ""
    mint: str = ""
    decimals: int = 6
    is_stable: bool = False
    is_virtual: bool = False
    oracle: OracleParams = field(default_factory=OracleParams)
    pricing: PricingParams = field(default_factory=PricingParams)
    permissions: Permissions = field(default_factory=Permissions)
    fees: Fees = field(default_factory=Fees)
    borrow_rate: BorrowRateParams = field(default_factory=BorrowRateParams)
    assets: Assets = field(default_factory=Assets)
    collected_fees: FeesStats = field(default_factory=FeesStats)
    volume_stats: VolumeStats = field(default_factory=VolumeStats)
    trade_stats: TradeStats = field(default_factory=TradeStats)
    long_positions: PositionStats = field(default_factory=PositionStats)
    short_positions: PositionStats = field(default_factory=PositionStats)
    borrow_rate_state: BorrowRateState = field(default_factory=BorrowRateState)

    def validate(self) -> None:
        """Cross-field parameter checks. Raises ``ValidationError``."""
        if not self.key:
            raise ValidationError("custody key must be non-empty")
        if not isinstance(self.decimals, int) or not (0 <= self.decimals <= MAX_TOKEN_DECIMALS):
            raise ValidationError(f"decimals must be in [0, {MAX_TOKEN_DECIMALS}]: {self.decimals!r}")
        if self.is_stable and self.is_virtual:
            raise ValidationError("a custody cannot be both stable and virtual")
        if self.oracle.oracle_type is OracleType.NONE or not self.oracle.oracle_account:
            raise ValidationError(f"custody {self.key} has no oracle configured")
        p = self.pricing
        if not (BPS_POWER <= p.min_initial_leverage <= p.max_initial_leverage <= p.max_leverage):
            raise ValidationError(
                "leverage limits must satisfy 1x <= min_initial <= max_initial <= max: "
                f"{p.min_initial_leverage}, {p.max_initial_leverage}, {p.max_leverage}"
            )

    # -- Funds ---------------------------------------------------------------

    def available_amount(self) -> int:
        """Unlocked balance: ``owned - locked - collateral``."""
        reserved = self.assets.locked + self.assets.collateral
        if self.assets.owned < reserved:
            raise InsufficientFunds(
                f"custody {self.key} insolvent: owned {self.assets.owned} < reserved {reserved}"
            )
        return self.assets.owned - reserved

    def lock_funds(self, amount: int) -> None:
        if amount < 0:
            raise ValidationError(f"lock amount must be non-negative: {amount}")
        if amount > self.available_amount():
            raise InsufficientFunds(
                f"cannot lock {amount} in custody {self.key}: available {self.available_amount()}"
            )
        add_field(self.assets, "locked", amount)

    def unlock_funds(self, amount: int) -> None:
        if amount < 0:
            raise ValidationError(f"unlock amount must be non-negative: {amount}")
        if amount > self.assets.locked:
            raise InsufficientFunds(
                f"cannot unlock {amount} in custody {self.key}: locked {self.assets.locked}"
            )
        sub_field(self.assets, "locked", amount)

    # -- Borrow rate ---------------------------------------------------------

    def get_cumulative_interest(self, current_time: int) -> int:
        """Cumulative interest index at ``current_time`` (``RATE_DECIMALS``)."""
        state = self.borrow_rate_state
        if current_time <= state.last_update:
            return state.cumulative_interest
        accrued = checked_ceil_div(
            checked_mul(current_time - state.last_update, state.current_rate),
            SECONDS_PER_HOUR,
        )
        return checked_add(state.cumulative_interest, accrued, limit=U128_MAX)

    def update_borrow_rate(self, current_time: int) -> None:
        """Accrue interest up to ``current_time`` and re-price from utilization."""
        state = self.borrow_rate_state
        if current_time < state.last_update:
            raise ValidationError(
                f"borrow rate time moved backwards: {current_time} < {state.last_update}"
            )
        if current_time > state.last_update:
            state.cumulative_interest = self.get_cumulative_interest(current_time)
            state.last_update = current_time

        if self.assets.owned == 0:
            state.current_rate = 0
            return

        params = self.borrow_rate
        if params.optimal_utilization == 0:
            state.current_rate = params.base_rate
            return
        utilization = checked_div(checked_mul(self.assets.locked, RATE_POWER), self.assets.owned)
        if utilization < params.optimal_utilization:
            rate = params.base_rate + checked_div(
                checked_mul(utilization, params.slope1), params.optimal_utilization,
            )
        else:
            rate = params.base_rate + params.slope1
            headroom = RATE_POWER - params.optimal_utilization
            if headroom > 0:
                rate += checked_div(
                    checked_mul(utilization - params.optimal_utilization, params.slope2), headroom,
                )
        state.current_rate = checked_as_u64(rate)

    def get_interest_amount_usd(self, position: Position, current_time: int) -> int:
        """Borrow interest owed by ``position`` since its snapshot."""
        if position.size_usd == 0:
            return 0
        cumulative = self.get_cumulative_interest(current_time)
        if cumulative <= position.cumulative_interest_snapshot:
            return 0
        return checked_as_u64(checked_div(
            checked_mul(cumulative - position.cumulative_interest_snapshot, position.size_usd),
            RATE_POWER,
        ))

    # -- Position statistics -------------------------------------------------

    def position_stats(self, side: Side) -> PositionStats:
        return self.long_positions if side is Side.LONG else self.short_positions

    def _accrue_side_interest(self, stats: PositionStats, rate_source: "Custody", current_time: int) -> None:
        cumulative = rate_source.get_cumulative_interest(current_time)
        if stats.size_usd and cumulative > stats.cumulative_interest_snapshot:
            accrued = checked_div(
                checked_mul(cumulative - stats.cumulative_interest_snapshot, stats.size_usd),
                RATE_POWER,
            )
            add_field(stats, "cumulative_interest_usd", checked_as_u64(accrued))
        stats.cumulative_interest_snapshot = cumulative

    def add_position(
        self,
        position: Position,
        current_time: int,
        collateral_custody: Optional["Custody"] = None,
    ) -> None:
        """Book a newly opened position into side statistics and open interest."""
        stats = self.position_stats(position.side)
        self._accrue_side_interest(stats, collateral_custody or self, current_time)

        add_field(stats, "open_positions", 1)
        add_field(stats, "collateral_usd", position.collateral_usd)
        add_field(stats, "size_usd", position.size_usd)
        add_field(stats, "borrow_size_usd", position.borrow_size_usd)
        add_field(stats, "locked_amount", position.locked_amount)
        add_field(stats, "weighted_price", checked_mul(position.price, position.size_usd))
        add_field(stats, "total_quantity", position.size_usd)

        oi_field = "oi_long_usd" if position.side is Side.LONG else "oi_short_usd"
        add_field(self.trade_stats, oi_field, position.size_usd)

    def remove_position(
        self,
        position: Position,
        current_time: int,
        collateral_custody: Optional["Custody"] = None,
    ) -> None:
        """Remove a closed position from side statistics and open interest.

        Decrements saturate at zero: these counters are statistics, the
        solvency-critical amounts live in ``assets``.
        """
        stats = self.position_stats(position.side)
        self._accrue_side_interest(stats, collateral_custody or self, current_time)

        sub_field(stats, "open_positions", 1)
        sub_field(stats, "collateral_usd", position.collateral_usd)
        sub_field(stats, "size_usd", position.size_usd)
        sub_field(stats, "borrow_size_usd", position.borrow_size_usd)
        sub_field(stats, "locked_amount", position.locked_amount)
        sub_field(stats, "weighted_price", position.price * position.size_usd)
        sub_field(stats, "total_quantity", position.size_usd)

        oi_field = "oi_long_usd" if position.side is Side.LONG else "oi_short_usd"
        sub_field(self.trade_stats, oi_field, position.size_usd)

    def update_position_collateral(self, side: Side, collateral_delta_usd: int) -> None:
        """Adjust side collateral statistics by a signed USD delta."""
        stats = self.position_stats(side)
        if collateral_delta_usd >= 0:
            add_field(stats, "collateral_usd", collateral_delta_usd)
        else:
            sub_field(stats, "collateral_usd", -collateral_delta_usd)

    def get_collective_position(self, side: Side) -> Position:
        """All open positions on ``side`` folded into one synthetic position."""
        stats = self.position_stats(side)
        if stats.open_positions == 0 or stats.total_quantity == 0:
            return Position(side=side, custody=self.key, collateral_custody=self.key)
        return Position(
            side=side,
            custody=self.key,
            collateral_custody=self.key,
            price=checked_as_u64(checked_div(stats.weighted_price, stats.total_quantity)),
            size_usd=stats.size_usd,
            borrow_size_usd=stats.borrow_size_usd,
            collateral_usd=stats.collateral_usd,
            cumulative_interest_snapshot=stats.cumulative_interest_snapshot,
            locked_amount=stats.locked_amount,
        )

