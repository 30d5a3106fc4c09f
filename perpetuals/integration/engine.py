"""
Perpetuals execution adapter.

Applies position operations to pool/custody records in a deterministic,
fail-closed way:
- every input is read from one ``AccountMap`` snapshot (prices included),
- mutations are staged on deep copies and returned as a ``Settlement``,
- staged custodies must pass the ledger invariants before anything is returned,
- closed feature gates raise ``InstructionNotAllowed``.

The caller owns persistence and token movement: it commits the staged records
and executes the requested ``Transfer`` list atomically, or drops both.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Optional

from ..config import EngineConfig
from ..core.custody import Custody
from ..core.errors import (
    InstructionNotAllowed,
    InsufficientFunds,
    InvalidPositionState,
    SolvencyViolation,
    ValidationError,
)
from ..core.fees import collect_protocol_fee, convert_fee_to_collateral, get_fee_amount
from ..core.invariants import check_all
from ..core.math import (
    BPS_POWER,
    LP_DECIMALS,
    add_field,
    checked_add,
    checked_as_u64,
    checked_div,
    checked_mul,
    checked_sub,
    sub_field,
)
from ..core.oracle import OraclePrice
from ..core.pool import Pool
from ..core.position import Position
from ..core.types import (
    AmountAndFee,
    AumCalcMode,
    LiquidationState,
    NewPositionPricesAndFee,
    PnlUsd,
    PriceAndFee,
    Side,
)
from ..state.account_map import AccountMap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketPrices:
    """Spot and EMA prices of a position's custody and collateral custody."""

    token_price: OraclePrice
    token_ema_price: OraclePrice
    collateral_price: OraclePrice
    collateral_ema_price: OraclePrice

    @property
    def max_collateral_price(self) -> OraclePrice:
        return self.collateral_price if self.collateral_price > self.collateral_ema_price else self.collateral_ema_price


@dataclass(frozen=True)
class Transfer:
    """Token movement requested from the caller.

    ``inbound`` transfers move tokens from ``account`` into the custody,
    outbound ones pay ``account`` out of it.
    """

    custody: str
    account: str
    amount: int
    inbound: bool


@dataclass(frozen=True)
class Settlement:
    """Staged result of a mutating operation.

    ``position`` is None once the position is closed or liquidated. When the
    position custody and its collateral custody are one account,
    ``custody is collateral_custody``.
    """

    position: Optional[Position]
    custody: Custody
    collateral_custody: Custody
    transfers: tuple[Transfer, ...] = ()
    fee_amount: int = 0
    protocol_fee: int = 0
    profit_usd: int = 0
    loss_usd: int = 0
    reward: int = 0


@dataclass
class _Staged:
    custody: Custody
    collateral_custody: Custody
    position: Position


class PerpetualsEngine:
    """Risk and settlement operations of one pool."""

    def __init__(self, pool: Pool, config: EngineConfig | None = None) -> None:
        self.pool = pool
        self.config = config or EngineConfig()

    # -- Snapshot helpers ----------------------------------------------------

    def _custodies(self, accounts: AccountMap, custody_key: str, collateral_key: str) -> tuple[Custody, Custody]:
        self.pool.get_token_id(custody_key)
        self.pool.get_token_id(collateral_key)
        return accounts.get_custody(custody_key), accounts.get_custody(collateral_key)

    def resolve_prices(
        self,
        accounts: AccountMap,
        custody_key: str,
        collateral_custody_key: str,
        current_time: int,
    ) -> MarketPrices:
        """Resolve both custodies' spot and EMA prices from the snapshot."""
        custody, collateral_custody = self._custodies(accounts, custody_key, collateral_custody_key)
        token_price, token_ema_price = OraclePrice.spot_and_ema(
            accounts.get_oracle_record(custody.oracle.oracle_account),
            custody.oracle,
            current_time,
            custody.pricing.use_ema,
        )
        collateral_price, collateral_ema_price = OraclePrice.spot_and_ema(
            accounts.get_oracle_record(collateral_custody.oracle.oracle_account),
            collateral_custody.oracle,
            current_time,
            collateral_custody.pricing.use_ema,
        )
        return MarketPrices(token_price, token_ema_price, collateral_price, collateral_ema_price)

    @staticmethod
    def _stage(custody: Custody, collateral_custody: Custody, position: Position) -> _Staged:
        staged_custody = copy.deepcopy(custody)
        if collateral_custody.key == custody.key:
            staged_collateral = staged_custody
        else:
            staged_collateral = copy.deepcopy(collateral_custody)
        return _Staged(staged_custody, staged_collateral, copy.deepcopy(position))

    @staticmethod
    def _check_invariants(staged: _Staged) -> None:
        for custody in {id(c): c for c in (staged.custody, staged.collateral_custody)}.values():
            violations = check_all(custody)
            if violations:
                raise SolvencyViolation(custody.key, violations)

    def _require(self, gate: str, custody: Custody) -> None:
        if not getattr(self.config.permissions, gate) or not getattr(custody.permissions, gate):
            raise InstructionNotAllowed(f"{gate} is disabled for custody {custody.key}")

    @staticmethod
    def _require_pair(side: Side, custody: Custody, collateral_custody: Custody) -> None:
        if side is Side.LONG and not custody.is_virtual:
            if collateral_custody.key != custody.key:
                raise ValidationError("a long on a real asset must post the asset itself as collateral")
        elif not collateral_custody.is_stable or collateral_custody.is_virtual:
            raise ValidationError(f"collateral custody {collateral_custody.key} must be a real stable asset")

    @staticmethod
    def _require_open(position: Position) -> None:
        if position.is_empty:
            raise InvalidPositionState(f"position {position.key or '<unnamed>'} is not open")

    def _risk_args(self, position: Position, custody: Custody, collateral_custody: Custody, prices: MarketPrices):
        return (
            position,
            prices.token_price,
            prices.token_ema_price,
            custody,
            prices.collateral_price,
            prices.collateral_ema_price,
            collateral_custody,
        )

    def _fee_in_collateral(
        self,
        fee_amount: int,
        side: Side,
        custody: Custody,
        collateral_custody: Custody,
        prices: MarketPrices,
    ) -> tuple[int, int]:
        """``(fee in collateral tokens, fee in USD)`` of a fee charged in custody tokens."""
        fee_usd = prices.token_ema_price.get_asset_amount_usd(fee_amount, custody.decimals)
        fee = convert_fee_to_collateral(
            fee_amount, side, custody, prices.token_ema_price,
            collateral_custody, prices.collateral_ema_price,
        )
        return fee, fee_usd

    def _new_position(
        self,
        owner: str,
        custody: Custody,
        collateral_custody: Custody,
        side: Side,
        collateral: int,
        size: int,
        prices: MarketPrices,
        current_time: int,
        key: str = "",
    ) -> tuple[Position, int, int]:
        """Position an open would create, with its entry fee (collateral tokens, USD)."""
        if collateral <= 0 or size <= 0:
            raise ValidationError(f"collateral and size must be positive: {collateral}, {size}")
        self._require_pair(side, custody, collateral_custody)

        entry_price = self.pool.get_entry_price(prices.token_price, prices.token_ema_price, side, custody)
        size_usd = prices.token_ema_price.get_asset_amount_usd(size, custody.decimals)
        min_collateral_price = prices.collateral_price.get_min_price(
            prices.collateral_ema_price, collateral_custody.is_stable,
        )
        collateral_usd = min_collateral_price.get_asset_amount_usd(collateral, collateral_custody.decimals)

        payoff_mult = custody.pricing.max_payoff_mult
        if side is Side.SHORT or custody.is_virtual:
            max_payoff_usd = checked_as_u64(checked_div(checked_mul(size_usd, payoff_mult), BPS_POWER))
            locked_amount = min_collateral_price.get_token_amount(max_payoff_usd, collateral_custody.decimals)
            borrow_size_usd = min_collateral_price.get_asset_amount_usd(locked_amount, collateral_custody.decimals)
        else:
            locked_amount = checked_as_u64(checked_div(checked_mul(size, payoff_mult), BPS_POWER))
            borrow_size_usd = prices.token_ema_price.get_asset_amount_usd(locked_amount, custody.decimals)

        fee, fee_usd = self._fee_in_collateral(
            self.pool.get_entry_fee(size, custody), side, custody, collateral_custody, prices,
        )
        position = Position(
            owner=owner,
            pool=self.pool.key,
            custody=custody.key,
            collateral_custody=collateral_custody.key,
            side=side,
            price=entry_price,
            size_usd=size_usd,
            borrow_size_usd=borrow_size_usd,
            collateral_usd=collateral_usd,
            cumulative_interest_snapshot=collateral_custody.get_cumulative_interest(current_time),
            locked_amount=locked_amount,
            collateral_amount=collateral,
            open_time=current_time,
            update_time=current_time,
            key=key,
        )
        return position, fee, fee_usd

    # -- Views ---------------------------------------------------------------

    def get_entry_price_and_fee(
        self,
        accounts: AccountMap,
        custody_key: str,
        collateral_custody_key: str,
        side: Side,
        collateral: int,
        size: int,
        current_time: int,
    ) -> NewPositionPricesAndFee:
        custody, collateral_custody = self._custodies(accounts, custody_key, collateral_custody_key)
        prices = self.resolve_prices(accounts, custody_key, collateral_custody_key, current_time)
        position, fee, _ = self._new_position(
            "", custody, collateral_custody, side, collateral, size, prices, current_time,
        )
        liquidation_price = self.pool.get_liquidation_price(
            position, prices.token_ema_price, custody, collateral_custody, current_time,
        )
        return NewPositionPricesAndFee(entry_price=position.price, liquidation_price=liquidation_price, fee=fee)

    def get_exit_price_and_fee(self, accounts: AccountMap, position: Position, current_time: int) -> PriceAndFee:
        custody, collateral_custody = self._custodies(accounts, position.custody, position.collateral_custody)
        prices = self.resolve_prices(accounts, custody.key, collateral_custody.key, current_time)
        price = self.pool.get_exit_price(prices.token_price, prices.token_ema_price, position.side, custody)
        size = prices.token_ema_price.get_token_amount(position.size_usd, custody.decimals)
        fee, _ = self._fee_in_collateral(
            self.pool.get_exit_fee(size, custody), position.side, custody, collateral_custody, prices,
        )
        return PriceAndFee(price=price, fee=fee)

    def get_pnl(self, accounts: AccountMap, position: Position, current_time: int) -> PnlUsd:
        custody, collateral_custody = self._custodies(accounts, position.custody, position.collateral_custody)
        prices = self.resolve_prices(accounts, custody.key, collateral_custody.key, current_time)
        return self.pool.get_pnl_usd(
            *self._risk_args(position, custody, collateral_custody, prices), current_time, False,
        )

    def get_liquidation_price(
        self,
        accounts: AccountMap,
        position: Position,
        current_time: int,
        add_collateral: int = 0,
        remove_collateral: int = 0,
    ) -> int:
        """Liquidation price, optionally after a hypothetical collateral change (tokens)."""
        custody, collateral_custody = self._custodies(accounts, position.custody, position.collateral_custody)
        prices = self.resolve_prices(accounts, custody.key, collateral_custody.key, current_time)
        min_collateral_price = prices.collateral_price.get_min_price(
            prices.collateral_ema_price, collateral_custody.is_stable,
        )
        candidate = copy.deepcopy(position)
        candidate.update_time = current_time
        if add_collateral > 0:
            usd = min_collateral_price.get_asset_amount_usd(add_collateral, collateral_custody.decimals)
            candidate.collateral_usd = checked_add(candidate.collateral_usd, usd)
            candidate.collateral_amount = checked_add(candidate.collateral_amount, add_collateral)
        if remove_collateral > 0:
            usd = min_collateral_price.get_asset_amount_usd(remove_collateral, collateral_custody.decimals)
            if usd >= candidate.collateral_usd or remove_collateral >= candidate.collateral_amount:
                raise InsufficientFunds(
                    f"cannot remove {remove_collateral} of {candidate.collateral_amount} collateral"
                )
            candidate.collateral_usd -= usd
            candidate.collateral_amount -= remove_collateral
        return self.pool.get_liquidation_price(
            candidate, prices.token_ema_price, custody, collateral_custody, current_time,
        )

    def get_liquidation_state(self, accounts: AccountMap, position: Position, current_time: int) -> LiquidationState:
        custody, collateral_custody = self._custodies(accounts, position.custody, position.collateral_custody)
        prices = self.resolve_prices(accounts, custody.key, collateral_custody.key, current_time)
        healthy = self.pool.check_leverage(
            *self._risk_args(position, custody, collateral_custody, prices), current_time, False,
        )
        return LiquidationState.HEALTHY if healthy else LiquidationState.LIQUIDATABLE

    def get_assets_under_management(
        self,
        accounts: AccountMap,
        current_time: int,
        mode: AumCalcMode = AumCalcMode.MIN,
    ) -> int:
        return self.pool.get_assets_under_management_usd(mode, accounts, current_time)

    def get_lp_token_price(self, accounts: AccountMap, lp_supply: int, current_time: int) -> int:
        """USD value of one LP token (``USD_DECIMALS``); 0 for an unminted pool."""
        if lp_supply == 0:
            return 0
        aum_usd = self.pool.get_assets_under_management_usd(AumCalcMode.EMA, accounts, current_time)
        return checked_as_u64(checked_div(checked_mul(aum_usd, 10**LP_DECIMALS), lp_supply))

    def get_remove_liquidity_amount_and_fee(
        self,
        accounts: AccountMap,
        custody_key: str,
        lp_amount_in: int,
        lp_supply: int,
        current_time: int,
    ) -> AmountAndFee:
        """Tokens paid out for burning ``lp_amount_in`` LP tokens, net of the fee."""
        if lp_amount_in <= 0:
            raise ValidationError(f"lp_amount_in must be positive: {lp_amount_in}")
        if lp_amount_in > lp_supply:
            raise ValidationError(f"lp_amount_in {lp_amount_in} exceeds supply {lp_supply}")
        self.pool.get_token_id(custody_key)
        custody = accounts.get_custody(custody_key)
        token_price, token_ema_price = OraclePrice.spot_and_ema(
            accounts.get_oracle_record(custody.oracle.oracle_account),
            custody.oracle,
            current_time,
            custody.pricing.use_ema,
        )
        pool_amount_usd = self.pool.get_assets_under_management_usd(AumCalcMode.MIN, accounts, current_time)
        remove_amount_usd = checked_as_u64(checked_div(
            checked_mul(pool_amount_usd, lp_amount_in), lp_supply,
        ))
        max_price = token_price if token_price > token_ema_price else token_ema_price
        remove_amount = max_price.get_token_amount(remove_amount_usd, custody.decimals)
        fee_amount = self.pool.get_remove_liquidity_fee(remove_amount, custody)
        return AmountAndFee(amount=checked_sub(remove_amount, fee_amount), fee=fee_amount)

    # -- Mutations -----------------------------------------------------------

    def open_position(
        self,
        accounts: AccountMap,
        owner: str,
        custody_key: str,
        collateral_custody_key: str,
        side: Side,
        price: int,
        collateral: int,
        size: int,
        current_time: int,
        position_key: str = "",
    ) -> Settlement:
        """Open a position of ``size`` custody tokens backed by ``collateral``.

        ``price`` bounds slippage: the entry price may not exceed it on a long
        nor fall below it on a short.
        """
        custody, collateral_custody = self._custodies(accounts, custody_key, collateral_custody_key)
        self._require("allow_open_position", custody)
        if price <= 0:
            raise ValidationError(f"price limit must be positive: {price}")

        prices = self.resolve_prices(accounts, custody_key, collateral_custody_key, current_time)
        position, fee, fee_usd = self._new_position(
            owner, custody, collateral_custody, side, collateral, size, prices, current_time, position_key,
        )
        if (side is Side.LONG and position.price > price) or (side is Side.SHORT and position.price < price):
            raise ValidationError(f"entry price {position.price} breaches limit {price}")

        if not self.pool.check_leverage(
            *self._risk_args(position, custody, collateral_custody, prices), current_time, True,
        ):
            raise InvalidPositionState("position leverage outside the initial leverage band")

        staged = self._stage(custody, collateral_custody, position)
        cc = staged.collateral_custody
        transfer_amount = checked_add(collateral, fee)
        add_field(cc.assets, "owned", transfer_amount)
        add_field(cc.assets, "collateral", collateral)
        protocol = collect_protocol_fee(cc, fee, custody.fees.protocol_share)
        cc.lock_funds(position.locked_amount)

        add_field(cc.collected_fees, "open_position_usd", fee_usd)
        add_field(staged.custody.volume_stats, "open_position_usd", position.size_usd)
        staged.custody.add_position(staged.position, current_time, cc)
        cc.update_borrow_rate(current_time)
        self._check_invariants(staged)

        logger.info(
            "open %s %s: size_usd=%d collateral=%d fee=%d locked=%d",
            side.value, custody.key, position.size_usd, collateral, fee, position.locked_amount,
        )
        return Settlement(
            position=staged.position,
            custody=staged.custody,
            collateral_custody=cc,
            transfers=(Transfer(cc.key, owner, transfer_amount, inbound=True),),
            fee_amount=fee,
            protocol_fee=protocol.amount,
        )

    def add_collateral(
        self,
        accounts: AccountMap,
        position: Position,
        collateral: int,
        current_time: int,
    ) -> Settlement:
        custody, collateral_custody = self._custodies(accounts, position.custody, position.collateral_custody)
        self._require("allow_open_position", custody)
        self._require_open(position)
        if collateral <= 0:
            raise ValidationError(f"collateral must be positive: {collateral}")

        prices = self.resolve_prices(accounts, custody.key, collateral_custody.key, current_time)
        min_collateral_price = prices.collateral_price.get_min_price(
            prices.collateral_ema_price, collateral_custody.is_stable,
        )
        collateral_usd = min_collateral_price.get_asset_amount_usd(collateral, collateral_custody.decimals)

        staged = self._stage(custody, collateral_custody, position)
        p = staged.position
        p.collateral_usd = checked_add(p.collateral_usd, collateral_usd)
        p.collateral_amount = checked_add(p.collateral_amount, collateral)
        p.update_time = current_time
        if not self.pool.check_leverage(
            *self._risk_args(p, staged.custody, staged.collateral_custody, prices), current_time, True,
        ):
            raise InvalidPositionState("position leverage outside the initial leverage band")

        cc = staged.collateral_custody
        add_field(cc.assets, "owned", collateral)
        add_field(cc.assets, "collateral", collateral)
        staged.custody.update_position_collateral(p.side, collateral_usd)
        cc.update_borrow_rate(current_time)
        self._check_invariants(staged)

        logger.info("add collateral %s: amount=%d usd=%d", p.key or custody.key, collateral, collateral_usd)
        return Settlement(
            position=p,
            custody=staged.custody,
            collateral_custody=cc,
            transfers=(Transfer(cc.key, p.owner, collateral, inbound=True),),
        )

    def remove_collateral(
        self,
        accounts: AccountMap,
        position: Position,
        collateral_usd: int,
        current_time: int,
    ) -> Settlement:
        """Withdraw ``collateral_usd`` worth of collateral, valued at the max collateral price."""
        custody, collateral_custody = self._custodies(accounts, position.custody, position.collateral_custody)
        self._require("allow_collateral_withdrawal", custody)
        self._require_open(position)
        if collateral_usd <= 0 or collateral_usd >= position.collateral_usd:
            raise ValidationError(
                f"collateral_usd must be in (0, {position.collateral_usd}): {collateral_usd}"
            )

        prices = self.resolve_prices(accounts, custody.key, collateral_custody.key, current_time)
        collateral = prices.max_collateral_price.get_token_amount(collateral_usd, collateral_custody.decimals)
        if collateral > position.collateral_amount:
            raise InsufficientFunds(
                f"position holds {position.collateral_amount} collateral, {collateral} requested"
            )

        staged = self._stage(custody, collateral_custody, position)
        p = staged.position
        p.collateral_usd -= collateral_usd
        p.collateral_amount -= collateral
        p.update_time = current_time
        if not self.pool.check_leverage(
            *self._risk_args(p, staged.custody, staged.collateral_custody, prices), current_time, True,
        ):
            raise InvalidPositionState("position leverage outside the initial leverage band")

        cc = staged.collateral_custody
        sub_field(cc.assets, "collateral", collateral)
        sub_field(cc.assets, "owned", collateral)
        staged.custody.update_position_collateral(p.side, -collateral_usd)
        cc.update_borrow_rate(current_time)
        self._check_invariants(staged)

        logger.info("remove collateral %s: amount=%d usd=%d", p.key or custody.key, collateral, collateral_usd)
        return Settlement(
            position=p,
            custody=staged.custody,
            collateral_custody=cc,
            transfers=(Transfer(cc.key, p.owner, collateral, inbound=False),),
        )

    def _settle_exit(
        self,
        staged: _Staged,
        total_amount_out: int,
    ) -> None:
        """Release the position's reservations and pay ``total_amount_out`` from the custody."""
        cc = staged.collateral_custody
        p = staged.position
        cc.unlock_funds(p.locked_amount)
        sub_field(cc.assets, "collateral", p.collateral_amount)
        if not self.pool.check_available_amount(total_amount_out, cc):
            raise InsufficientFunds(
                f"custody {cc.key} cannot pay out {total_amount_out}: available {cc.available_amount()}"
            )
        sub_field(cc.assets, "owned", total_amount_out)

    def _book_exit(
        self,
        staged: _Staged,
        volume_field: str,
        profit_usd: int,
        loss_usd: int,
        current_time: int,
    ) -> None:
        custody, p = staged.custody, staged.position
        add_field(custody.volume_stats, volume_field, p.size_usd)
        add_field(custody.trade_stats, "profit_usd", profit_usd)
        add_field(custody.trade_stats, "loss_usd", loss_usd)
        custody.remove_position(p, current_time, staged.collateral_custody)
        staged.collateral_custody.update_borrow_rate(current_time)

    def close_position(
        self,
        accounts: AccountMap,
        position: Position,
        price: int,
        current_time: int,
    ) -> Settlement:
        """Close ``position``; ``price`` bounds the exit price against slippage."""
        custody, collateral_custody = self._custodies(accounts, position.custody, position.collateral_custody)
        self._require("allow_close_position", custody)
        self._require_open(position)

        prices = self.resolve_prices(accounts, custody.key, collateral_custody.key, current_time)
        exit_price = self.pool.get_exit_price(prices.token_price, prices.token_ema_price, position.side, custody)
        if (position.side is Side.LONG and exit_price < price) or (position.side is Side.SHORT and exit_price > price):
            raise ValidationError(f"exit price {exit_price} breaches limit {price}")

        close = self.pool.get_close_amount(
            *self._risk_args(position, custody, collateral_custody, prices), current_time, False,
        )
        fee, fee_usd = self._fee_in_collateral(
            close.fee_amount, position.side, custody, collateral_custody, prices,
        )

        staged = self._stage(custody, collateral_custody, position)
        self._settle_exit(staged, close.total_amount_out)
        protocol = collect_protocol_fee(staged.collateral_custody, fee, custody.fees.protocol_share)
        add_field(staged.collateral_custody.collected_fees, "close_position_usd", fee_usd)
        self._book_exit(staged, "close_position_usd", close.profit_usd, close.loss_usd, current_time)
        self._check_invariants(staged)

        logger.info(
            "close %s: profit_usd=%d loss_usd=%d fee=%d amount_out=%d",
            position.key or custody.key, close.profit_usd, close.loss_usd, fee, close.total_amount_out,
        )
        transfers = ()
        if close.total_amount_out:
            transfers = (Transfer(staged.collateral_custody.key, position.owner, close.total_amount_out, inbound=False),)
        return Settlement(
            position=None,
            custody=staged.custody,
            collateral_custody=staged.collateral_custody,
            transfers=transfers,
            fee_amount=fee,
            protocol_fee=protocol.amount,
            profit_usd=close.profit_usd,
            loss_usd=close.loss_usd,
        )

    def liquidate(
        self,
        accounts: AccountMap,
        position: Position,
        liquidator: str,
        current_time: int,
    ) -> Settlement:
        """Force-close a position that fails the maintenance leverage check.

        The liquidator earns the custody's liquidation bps of the payout; the
        owner receives the rest.
        """
        custody, collateral_custody = self._custodies(accounts, position.custody, position.collateral_custody)
        self._require("allow_close_position", custody)
        self._require_open(position)

        prices = self.resolve_prices(accounts, custody.key, collateral_custody.key, current_time)
        risk_args = self._risk_args(position, custody, collateral_custody, prices)
        if self.pool.check_leverage(*risk_args, current_time, False):
            raise InvalidPositionState(f"position {position.key or '<unnamed>'} is not liquidatable")

        close = self.pool.get_close_amount(*risk_args, current_time, True)
        fee, fee_usd = self._fee_in_collateral(
            close.fee_amount, position.side, custody, collateral_custody, prices,
        )
        reward = get_fee_amount(custody.fees.liquidation, close.total_amount_out)
        user_amount = close.total_amount_out - reward

        staged = self._stage(custody, collateral_custody, position)
        self._settle_exit(staged, close.total_amount_out)
        protocol = collect_protocol_fee(staged.collateral_custody, fee, custody.fees.protocol_share)
        add_field(staged.collateral_custody.collected_fees, "liquidation_usd", fee_usd)
        self._book_exit(staged, "liquidation_usd", close.profit_usd, close.loss_usd, current_time)
        self._check_invariants(staged)

        logger.info(
            "liquidate %s: profit_usd=%d loss_usd=%d fee=%d amount_out=%d reward=%d",
            position.key or custody.key, close.profit_usd, close.loss_usd, fee, user_amount, reward,
        )
        cc_key = staged.collateral_custody.key
        transfers = tuple(
            t for t in (
                Transfer(cc_key, position.owner, user_amount, inbound=False),
                Transfer(cc_key, liquidator, reward, inbound=False),
            )
            if t.amount
        )
        return Settlement(
            position=None,
            custody=staged.custody,
            collateral_custody=staged.collateral_custody,
            transfers=transfers,
            fee_amount=fee,
            protocol_fee=protocol.amount,
            profit_usd=close.profit_usd,
            loss_usd=close.loss_usd,
            reward=reward,
        )
