"""
Pool pricing and risk kernel.

A pool groups custodies and answers the risk questions of a position:
directional entry/exit prices, fees, PnL, leverage, liquidation price and
close settlement. Methods are pure with respect to their arguments; the only
state a pool owns is its custody list and the last computed AUM.

Price-selection rule: whenever spot and EMA diverge, the trader gets the worse
of the two. Entries pay the higher price on longs and receive the lower one on
shorts; exits are the mirror image.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from .custody import Custody
from .errors import InvalidPositionState, MissingAccount, ValidationError
from .fees import get_fee_amount, get_fee_amount_ceil
from .math import (
    BPS_POWER,
    U128_MAX,
    U64_MAX,
    checked_add,
    checked_as_u64,
    checked_div,
    checked_mul,
    checked_sub,
    saturating_sub,
    wrapping_add,
)
from .oracle import OraclePrice, OracleRecord
from .position import Position
from .types import AumCalcMode, CloseAmount, PnlUsd, Side

logger = logging.getLogger(__name__)

MAX_CUSTODIES = 32


class AccountSource(Protocol):
    """Read-only account snapshot consulted by AUM valuation."""

    def get_custody(self, key: str) -> Custody: ...

    def get_oracle_record(self, key: str) -> OracleRecord: ...


def _price_value(price: OraclePrice) -> int:
    return price.normalize().price


@dataclass
class Pool:
    key: str = ""
    name: str = ""
    custodies: tuple[str, ...] = ()
    aum_usd: int = 0
    inception_time: int = 0

    def __post_init__(self) -> None:
        self.custodies = tuple(self.custodies)

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("pool name must be non-empty")
        if len(self.custodies) > MAX_CUSTODIES:
            raise ValidationError(f"pool has too many custodies: {len(self.custodies)} > {MAX_CUSTODIES}")
        if len(set(self.custodies)) != len(self.custodies):
            raise ValidationError(f"pool {self.name} lists a custody twice")
        if not (0 <= self.aum_usd <= U128_MAX):
            raise ValidationError(f"aum_usd out of range: {self.aum_usd}")

    def get_token_id(self, custody_key: str) -> int:
        """Index of ``custody_key`` within the pool."""
        try:
            return self.custodies.index(custody_key)
        except ValueError:
            raise MissingAccount(custody_key) from None

    # -- Prices --------------------------------------------------------------

    def get_price(self, spot: OraclePrice, ema: OraclePrice, side: Side, spread_bps: int) -> int:
        """Worse-for-trader price on ``side`` widened by ``spread_bps``.

        ``side`` is the direction the trader is trading in: buying (LONG) pays
        the higher price plus spread, selling (SHORT) receives the lower price
        minus spread.
        """
        if side is Side.LONG:
            price = _price_value(spot if spot > ema else ema)
            spread = checked_div(checked_mul(price, spread_bps), BPS_POWER)
            return checked_add(price, spread)
        price = _price_value(spot if spot < ema else ema)
        spread = checked_div(checked_mul(price, spread_bps), BPS_POWER)
        return checked_sub(price, spread)

    def get_entry_price(self, spot: OraclePrice, ema: OraclePrice, side: Side, custody: Custody) -> int:
        spread = custody.pricing.trade_spread_long if side is Side.LONG else custody.pricing.trade_spread_short
        return self.get_price(spot, ema, side, spread)

    def get_exit_price(self, spot: OraclePrice, ema: OraclePrice, side: Side, custody: Custody) -> int:
        """Long exits sell at ``min(spot, ema)``; short exits buy back at ``max``."""
        spread = custody.pricing.trade_spread_short if side is Side.LONG else custody.pricing.trade_spread_long
        return self.get_price(spot, ema, side.opposite(), spread)

    # -- Fees ----------------------------------------------------------------

    @staticmethod
    def get_fee_amount(fee_bps: int, amount: int) -> int:
        return get_fee_amount(fee_bps, amount)

    def get_entry_fee(self, size: int, custody: Custody) -> int:
        return get_fee_amount_ceil(custody.fees.open_position, size)

    def get_exit_fee(self, size: int, custody: Custody) -> int:
        return get_fee_amount_ceil(custody.fees.close_position, size)

    def get_liquidation_fee(self, size: int, custody: Custody) -> int:
        return get_fee_amount(custody.fees.liquidation, size)

    def get_remove_liquidity_fee(self, amount: int, custody: Custody) -> int:
        return get_fee_amount_ceil(custody.fees.remove_liquidity, amount)

    # -- PnL and leverage ----------------------------------------------------

    def get_pnl_usd(
        self,
        position: Position,
        token_price: OraclePrice,
        token_ema_price: OraclePrice,
        custody: Custody,
        collateral_token_price: OraclePrice,
        collateral_token_ema_price: OraclePrice,
        collateral_custody: Custody,
        current_time: int,
        liquidation: bool,
    ) -> PnlUsd:
        """Unrealized ``(profit, loss, exit_fee)`` in USD at the exit price.

        The exit fee and accrued borrow interest count as loss. Profit and loss
        already booked on the position net against the price move either way.
        Profit is capped at the USD value of the locked amount and is zero in
        the opening second.
        """
        if position.is_empty:
            return PnlUsd(0, 0, 0)

        exit_price = self.get_exit_price(token_price, token_ema_price, position.side, custody)
        size = token_ema_price.get_token_amount(position.size_usd, custody.decimals)
        if liquidation:
            exit_fee = self.get_liquidation_fee(size, custody)
        else:
            exit_fee = self.get_exit_fee(size, custody)
        exit_fee_usd = token_ema_price.get_asset_amount_usd(exit_fee, custody.decimals)
        interest_usd = collateral_custody.get_interest_amount_usd(position, current_time)
        unrealized_loss_usd = checked_add(
            checked_add(exit_fee_usd, interest_usd), position.unrealized_loss_usd,
        )

        if position.side is Side.LONG:
            gained = exit_price > position.price
            price_diff = exit_price - position.price if gained else position.price - exit_price
        else:
            gained = exit_price < position.price
            price_diff = position.price - exit_price if gained else exit_price - position.price
        move_usd = checked_as_u64(
            checked_div(checked_mul(position.size_usd, price_diff), position.price)
        )

        if gained:
            potential_profit_usd = checked_add(move_usd, position.unrealized_profit_usd)
            potential_loss_usd = unrealized_loss_usd
        else:
            potential_profit_usd = position.unrealized_profit_usd
            potential_loss_usd = checked_add(move_usd, unrealized_loss_usd)

        if potential_profit_usd <= potential_loss_usd:
            return PnlUsd(0, potential_loss_usd - potential_profit_usd, exit_fee_usd, exit_fee)

        cur_profit_usd = potential_profit_usd - potential_loss_usd
        max_profit_usd = self._max_profit_usd(
            position, collateral_token_price, collateral_token_ema_price, collateral_custody, current_time,
        )
        return PnlUsd(min(max_profit_usd, cur_profit_usd), 0, exit_fee_usd, exit_fee)

    @staticmethod
    def _max_profit_usd(
        position: Position,
        collateral_token_price: OraclePrice,
        collateral_token_ema_price: OraclePrice,
        collateral_custody: Custody,
        current_time: int,
    ) -> int:
        # Nothing is payable in the opening second.
        if current_time <= position.open_time:
            return 0
        min_collateral_price = collateral_token_price.get_min_price(
            collateral_token_ema_price, collateral_custody.is_stable,
        )
        return min_collateral_price.get_asset_amount_usd(
            position.locked_amount, collateral_custody.decimals,
        )

    @staticmethod
    def _margin_usd(collateral_usd: int, pnl: PnlUsd) -> int:
        if pnl.profit_usd > 0:
            return checked_add(collateral_usd, pnl.profit_usd)
        return saturating_sub(collateral_usd, pnl.loss_usd)

    def get_leverage(
        self,
        position: Position,
        token_price: OraclePrice,
        token_ema_price: OraclePrice,
        custody: Custody,
        collateral_token_price: OraclePrice,
        collateral_token_ema_price: OraclePrice,
        collateral_custody: Custody,
        current_time: int,
    ) -> int:
        """Current leverage in bps; ``U64_MAX`` once the margin is exhausted."""
        pnl = self.get_pnl_usd(
            position,
            token_price,
            token_ema_price,
            custody,
            collateral_token_price,
            collateral_token_ema_price,
            collateral_custody,
            current_time,
            False,
        )
        margin_usd = self._margin_usd(position.collateral_usd, pnl)
        if margin_usd == 0:
            return U64_MAX
        return checked_as_u64(checked_div(checked_mul(position.size_usd, BPS_POWER), margin_usd))

    def check_leverage(
        self,
        position: Position,
        token_price: OraclePrice,
        token_ema_price: OraclePrice,
        custody: Custody,
        collateral_token_price: OraclePrice,
        collateral_token_ema_price: OraclePrice,
        collateral_custody: Custody,
        current_time: int,
        is_open: bool,
    ) -> bool:
        """Maintenance check, or the stricter initial-leverage band when ``is_open``."""
        leverage = self.get_leverage(
            position,
            token_price,
            token_ema_price,
            custody,
            collateral_token_price,
            collateral_token_ema_price,
            collateral_custody,
            current_time,
        )
        pricing = custody.pricing
        if is_open:
            return pricing.min_initial_leverage <= leverage <= pricing.max_initial_leverage
        return leverage <= pricing.max_leverage

    # -- Liquidation ---------------------------------------------------------

    def get_liquidation_price(
        self,
        position: Position,
        token_ema_price: OraclePrice,
        custody: Custody,
        collateral_custody: Custody,
        current_time: int,
    ) -> int:
        """Price at which the position reaches maximum leverage.

        Linear model: ``entry ± (margin - max_loss) · entry / size_usd`` where
        ``max_loss = size_usd / max_leverage + liquidation fee + interest``.

        Raises:
            InvalidPositionState: empty position, or no positive price exists.
        """
        if position.is_empty:
            raise InvalidPositionState("liquidation price of an empty position is undefined")

        size = token_ema_price.get_token_amount(position.size_usd, custody.decimals)
        fee_usd = token_ema_price.get_asset_amount_usd(
            self.get_liquidation_fee(size, custody), custody.decimals,
        )
        interest_usd = collateral_custody.get_interest_amount_usd(position, current_time)
        unrealized_loss_usd = checked_add(
            checked_add(fee_usd, interest_usd), position.unrealized_loss_usd,
        )
        max_loss_usd = checked_add(
            checked_div(checked_mul(position.size_usd, BPS_POWER), custody.pricing.max_leverage),
            unrealized_loss_usd,
        )
        margin_usd = checked_add(position.collateral_usd, position.unrealized_profit_usd)

        # Underwater already: the threshold sits on the profitable side of entry.
        underwater = max_loss_usd >= margin_usd
        usd_diff = max_loss_usd - margin_usd if underwater else margin_usd - max_loss_usd
        price_diff = checked_as_u64(
            checked_div(checked_mul(usd_diff, position.price), position.size_usd)
        )

        moves_up = underwater if position.side is Side.LONG else not underwater
        if moves_up:
            return checked_add(position.price, price_diff)
        if price_diff >= position.price:
            raise InvalidPositionState(
                f"position {position.key or '<unnamed>'} cannot be liquidated at a positive price"
            )
        return position.price - price_diff

    # -- Settlement ----------------------------------------------------------

    def get_close_amount(
        self,
        position: Position,
        token_price: OraclePrice,
        token_ema_price: OraclePrice,
        custody: Custody,
        collateral_token_price: OraclePrice,
        collateral_token_ema_price: OraclePrice,
        collateral_custody: Custody,
        current_time: int,
        liquidation: bool,
    ) -> CloseAmount:
        """Collateral plus or minus PnL, in collateral tokens at the max collateral price.

        ``fee_amount`` is in ``custody`` tokens. The payout is capped at what
        the position brought in (``locked_amount + collateral_amount``).
        """
        pnl = self.get_pnl_usd(
            position,
            token_price,
            token_ema_price,
            custody,
            collateral_token_price,
            collateral_token_ema_price,
            collateral_custody,
            current_time,
            liquidation,
        )
        available_usd = self._margin_usd(position.collateral_usd, pnl)
        max_collateral_price = (
            collateral_token_price if collateral_token_price > collateral_token_ema_price
            else collateral_token_ema_price
        )
        close_amount = max_collateral_price.get_token_amount(available_usd, collateral_custody.decimals)
        max_amount = min(position.locked_amount + position.collateral_amount, U64_MAX)
        return CloseAmount(
            total_amount_out=min(max_amount, close_amount),
            fee_amount=pnl.exit_fee,
            profit_usd=pnl.profit_usd,
            loss_usd=pnl.loss_usd,
        )

    def check_available_amount(self, amount: int, custody: Custody) -> bool:
        return amount <= custody.available_amount()

    # -- AUM -----------------------------------------------------------------

    def get_assets_under_management_usd(
        self,
        mode: AumCalcMode,
        accounts: AccountSource,
        current_time: int,
    ) -> int:
        """USD value of every custody's holdings under one price snapshot."""
        pool_amount_usd = 0
        for custody_key in self.custodies:
            custody = accounts.get_custody(custody_key)
            record = accounts.get_oracle_record(custody.oracle.oracle_account)
            token_price, token_ema_price = OraclePrice.spot_and_ema(
                record, custody.oracle, current_time, custody.pricing.use_ema,
            )
            if mode is AumCalcMode.LAST:
                aum_price = token_price
            elif mode is AumCalcMode.EMA:
                aum_price = token_ema_price
            elif mode is AumCalcMode.MIN:
                aum_price = token_price if token_price < token_ema_price else token_ema_price
            else:
                aum_price = token_price if token_price > token_ema_price else token_ema_price

            # Trader collateral sits inside ``owned`` but is not pool liquidity.
            pool_owned = checked_sub(custody.assets.owned, custody.assets.collateral)
            owned_usd = aum_price.get_asset_amount_usd(pool_owned, custody.decimals)
            pool_amount_usd = checked_add(pool_amount_usd, owned_usd, limit=U128_MAX)

            if custody.pricing.use_unrealized_pnl_in_aum:
                for side in (Side.LONG, Side.SHORT):
                    pnl = self.get_pnl_usd(
                        custody.get_collective_position(side),
                        token_price,
                        token_ema_price,
                        custody,
                        token_price,
                        token_ema_price,
                        custody,
                        current_time,
                        False,
                    )
                    # Trader losses are pool gains and vice versa.
                    pool_amount_usd = wrapping_add(pool_amount_usd, pnl.loss_usd, bits=128)
                    pool_amount_usd = saturating_sub(pool_amount_usd, pnl.profit_usd)

        logger.debug("pool %s aum (%s): %d", self.name, mode.value, pool_amount_usd)
        return pool_amount_usd
