"""
pool.py - Share-based lending pool accounting

The LendingPool is the only component that mutates markets and positions.
It ensures controlled, auditable and atomic changes.

Key responsibilities:
    - Implements the PoolView protocol for the rate, risk and liquidation engines
    - Converts between underlying amounts and shares at current market totals
    - Accrues interest on every touched market before any share math
    - Asks the RiskEngine to validate each request before mutating anything
    - Collects token moves and commits them atomically with the state change
    - Runs every entry point as one serializable transaction: a single
      re-entrant lock, a checkpoint on entry and a full restore on any error
    - Keeps an operation log (audit trail) and aggregate real-time metrics

Thread Safety:
    All state-changing entry points serialize on one re-entrant lock; reads
    taken outside an entry point may observe a committed state only.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple, Any
import threading

from .core import (
    Clock, Market, AccountPosition, RiskParameters, OperationRecord, PortfolioSnapshot,
    Move, CallerContext, Capability,
    ZERO, POOL_WALLET, PROTOCOL_TREASURY, DECIMAL_ROUNDING,
    to_decimal, quantize_amount, calculate_shares, calculate_amount,
    ProtocolPaused, OracleError,
    InvalidAmount, MarketNotListed, MarketAlreadyListed, MarketInactive, MarketFrozen,
    InsufficientShares, InsufficientLiquidity, InsufficientCollateral, PositionNotLiquidatable,
    BatchLengthMismatch, EmptyBatch,
    DEFAULT_MIN_HEALTH_FACTOR_FOR_BORROW,
)
from .interest import InterestRateEngine, InterestRateParams, RateAdjustmentSettings
from .price_feed import PriceFeed
from .risk import RiskEngine
from .tokens import TokenLedger, UnderlyingToken, DerivativeToken, register_market_tokens


OP_SUPPLY = "SUPPLY"
OP_WITHDRAW = "WITHDRAW"
OP_BORROW = "BORROW"
OP_REPAY = "REPAY"
OP_LIQUIDATION = "LIQUIDATION"


@dataclass(frozen=True, slots=True)
class ProtocolMetrics:
    """
    Aggregate real-time metrics, refreshed at most once per distinct timestamp.

    Assets without a valid price are left out of the USD figures and listed in
    unpriced_assets.
    """
    timestamp: datetime
    tvl_usd: Decimal
    total_borrows_usd: Decimal
    utilization: Decimal
    supply_apy: Decimal
    borrow_apy: Decimal
    unpriced_assets: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class UserAccountData:
    total_collateral_usd: Decimal
    total_debt_usd: Decimal
    available_borrows_usd: Decimal
    liquidation_threshold: Decimal
    ltv: Decimal
    health_factor: Decimal


class LendingPool:
    """
    Share-based accounting for pooled deposits and debts.

    Implements the PoolView protocol.

    `lock` is the re-entrant lock every entry point holds; engines attached
    to the pool take it to read or change their own state consistently.

    Example:
        clock = Clock(datetime(2025, 1, 1))
        feed = OraclePriceFeed(clock)
        pool = LendingPool("main", feed, clock, verbose=False)
        admin = CallerContext.admin()
        pool.list_market(admin, "USDC")
        pool.tokens.issue("alice", "USDC", Decimal("1000"))
        pool.supply("alice", "USDC", Decimal("1000"))
    """

    def __init__(
        self,
        name: str,
        price_feed: PriceFeed,
        clock: Optional[Clock] = None,
        token_ledger: Optional[TokenLedger] = None,
        default_rate_params: Optional[InterestRateParams] = None,
        rate_settings: Optional[RateAdjustmentSettings] = None,
        min_health_factor_for_borrow: Decimal = DEFAULT_MIN_HEALTH_FACTOR_FOR_BORROW,
        verbose: bool = True,
    ):
        """
        Create a pool.

        Args:
            name: Pool identifier (used in execution ids)
            price_feed: Validated USD prices
            clock: Logical clock shared with the price feed (default: new clock at 1970-01-01)
            token_ledger: Token balances (default: a fresh TokenLedger)
            default_rate_params: Curve used for assets without their own parameters
            rate_settings: Switches for the optional rate layers
            min_health_factor_for_borrow: HF floor for borrow and withdraw (> 1.0)
            verbose: Print each committed operation
        """
        self.name = name
        self.clock = clock or Clock()
        self.price_feed = price_feed
        self.tokens = token_ledger or TokenLedger(f"{name}-tokens")
        self.verbose = verbose
        self.paused = False

        self.markets: Dict[str, Market] = {}
        self.positions: Dict[Tuple[str, str], AccountPosition] = {}
        # account -> assets with a position, for O(1) portfolio lookups
        self._assets_by_account: Dict[str, Set[str]] = {}
        self._underlying: Dict[str, UnderlyingToken] = {}
        self._receipt: Dict[str, DerivativeToken] = {}
        self._debt: Dict[str, DerivativeToken] = {}

        self.rates = InterestRateEngine(self, price_feed, default_rate_params, rate_settings, verbose=verbose)
        self.risk = RiskEngine(self, price_feed, min_health_factor_for_borrow, verbose=verbose)
        self._components: List[Any] = [self.rates, self.risk]

        self.operation_log: List[OperationRecord] = []
        self._next_sequence = 0
        self._metrics: Optional[ProtocolMetrics] = None

        self.lock = threading.RLock()
        self._depth = 0
        self._pending_moves: List[Move] = []
        self._pending_records: List[OperationRecord] = []

    # ========================================================================
    # PoolView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        return self.clock.now()

    def get_market(self, asset: str) -> Market:
        market = self.markets.get(asset)
        if market is None:
            raise MarketNotListed(f"Market {asset} is not listed")
        return market

    def list_markets(self) -> List[str]:
        return sorted(self.markets)

    def get_position(self, account: str, asset: str) -> AccountPosition:
        position = self.positions.get((account, asset))
        if position is None:
            return AccountPosition(account, asset)
        return position

    def account_assets(self, account: str) -> List[str]:
        return sorted(self._assets_by_account.get(account, ()))

    def list_accounts(self) -> List[str]:
        return sorted(self._assets_by_account)

    # ========================================================================
    # TOKEN VIEWS
    # ========================================================================

    def receipt_token(self, asset: str) -> DerivativeToken:
        self.get_market(asset)
        return self._receipt[asset]

    def debt_token(self, asset: str) -> DerivativeToken:
        self.get_market(asset)
        return self._debt[asset]

    def balance_of_underlying(self, account: str, asset: str) -> Decimal:
        """Underlying the account could redeem for its supply shares."""
        market = self.get_market(asset)
        return market.supply_shares_to_amount(self.get_position(account, asset).supply_shares)

    def balance_of_debt(self, account: str, asset: str) -> Decimal:
        """Underlying the account owes for its debt shares (rounded up)."""
        market = self.get_market(asset)
        return market.borrow_shares_to_amount(self.get_position(account, asset).borrow_shares)

    def get_user_account_data(self, account: str) -> UserAccountData:
        values = self.risk.compute_account_values(account)
        collateral = values.total_collateral_usd
        return UserAccountData(
            total_collateral_usd=collateral,
            total_debt_usd=values.total_debt_usd,
            available_borrows_usd=max(values.borrowing_power_usd - values.total_debt_usd, ZERO),
            liquidation_threshold=(values.weighted_collateral_usd / collateral) if collateral else ZERO,
            ltv=(values.total_debt_usd / collateral) if collateral else ZERO,
            health_factor=values.health_factor,
        )

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the shared logical clock. Interest accrues lazily on the next
        operation touching each market.

        Raises:
            ValueError: If new_time is before the current time
        """
        self.clock.advance(new_time)

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    def attach(self, component: Any) -> None:
        """Register a component whose checkpoint()/restore() join every transaction."""
        with self.lock:
            self._components.append(component)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Serializable unit of work.

        The outermost level takes the pool lock, checks the global pause,
        checkpoints pool and component state, and on exit commits collected
        token moves atomically. Any exception restores the checkpoint and
        propagates. Nested levels join the enclosing transaction.

        Raises:
            ProtocolPaused: Global pause is set
        """
        with self.lock:
            outermost = self._depth == 0
            if outermost:
                if self.paused:
                    raise ProtocolPaused("Protocol is paused")
                saved = self._checkpoint()
                self._pending_moves = []
                self._pending_records = []
            self._depth += 1
            try:
                yield
                if outermost:
                    self.tokens.execute(self._pending_moves)
            except Exception as e:
                if outermost:
                    self._restore(saved)
                    if self.verbose:
                        print(f"✗ REJECTED: {type(e).__name__}: {e}")
                raise
            finally:
                self._depth -= 1
            if outermost:
                self.operation_log.extend(self._pending_records)
                # recomputed lazily by get_metrics
                self._metrics = None
                if self.verbose:
                    for record in self._pending_records:
                        self._print_record(record)
                self._pending_moves = []
                self._pending_records = []

    def _checkpoint(self) -> Dict[str, Any]:
        return {
            'markets': dict(self.markets),
            'positions': dict(self.positions),
            'assets_by_account': {a: set(s) for a, s in self._assets_by_account.items()},
            'next_sequence': self._next_sequence,
            'metrics': self._metrics,
            'components': [c.checkpoint() for c in self._components],
        }

    def _restore(self, state: Dict[str, Any]) -> None:
        self.markets = state['markets']
        self.positions = state['positions']
        self._assets_by_account = state['assets_by_account']
        self._next_sequence = state['next_sequence']
        self._metrics = state['metrics']
        for component, saved in zip(self._components, state['components']):
            component.restore(saved)
        self._pending_moves = []
        self._pending_records = []

    def _authorize(self, account: str, ctx: Optional[CallerContext]) -> CallerContext:
        if ctx is None:
            return CallerContext.for_account(account)
        ctx.require_account(account)
        return ctx

    def _record(self, operation: str, account: str, asset: str, amount: Decimal, shares: Decimal,
                moves: Sequence[Move], details: Optional[Dict[str, Any]] = None) -> OperationRecord:
        sequence = self._next_sequence
        self._next_sequence += 1
        now = self.current_time
        micros = int(now.timestamp() * 1_000_000)
        record = OperationRecord(
            sequence=sequence,
            exec_id=f"exec:{self.name}:{sequence:012d}:{micros}",
            operation=operation,
            account=account,
            asset=asset,
            amount=amount,
            shares=shares,
            timestamp=now,
            moves=tuple(moves),
            details=details,
        )
        self._pending_moves.extend(moves)
        self._pending_records.append(record)
        return record

    def _print_record(self, record: OperationRecord) -> None:
        lines = repr(record).split('\n')
        w = 88
        bar = "─" * w
        lines[-1] = f"├{bar}┤"
        lines.append(f"│{' ✓ APPLIED':<{w}}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    # ========================================================================
    # ADMIN (Mutating)
    # ========================================================================

    def list_market(
        self,
        ctx: CallerContext,
        asset: str,
        risk: Optional[RiskParameters] = None,
        rate_params: Optional[InterestRateParams] = None,
        is_native: bool = False,
    ) -> Market:
        ctx.require(Capability.ADMIN)
        with self.lock:
            if asset in self.markets:
                raise MarketAlreadyListed(f"Market {asset} is already listed")
            underlying, receipt, debt = register_market_tokens(self.tokens, asset)
            self._underlying[asset] = underlying
            self._receipt[asset] = receipt
            self._debt[asset] = debt
            market = Market(asset=asset, last_accrual=self.current_time,
                            risk=risk or RiskParameters(), is_native=is_native)
            self.markets[asset] = market
            if rate_params is not None:
                self.rates.set_params(ctx, asset, rate_params)
            if self.verbose:
                print(f"📝 Listed market: {asset}{' (native)' if is_native else ''}")
            return market

    def set_risk_parameters(self, ctx: CallerContext, asset: str, risk: RiskParameters) -> None:
        ctx.require(Capability.ADMIN)
        with self.lock:
            self.markets[asset] = replace(self.get_market(asset), risk=risk)

    def set_market_frozen(self, ctx: CallerContext, asset: str, frozen: bool) -> None:
        ctx.require(Capability.ADMIN)
        with self.lock:
            market = self.get_market(asset)
            self.markets[asset] = replace(market, risk=replace(market.risk, is_frozen=frozen))

    def set_market_active(self, ctx: CallerContext, asset: str, active: bool) -> None:
        ctx.require(Capability.ADMIN)
        with self.lock:
            self.markets[asset] = replace(self.get_market(asset), is_active=active)

    def pause(self, ctx: CallerContext) -> None:
        ctx.require(Capability.ADMIN)
        with self.lock:
            self.paused = True
        if self.verbose:
            print("⚠️  PROTOCOL PAUSED")

    def unpause(self, ctx: CallerContext) -> None:
        ctx.require(Capability.ADMIN)
        with self.lock:
            self.paused = False

    # ========================================================================
    # INTERNAL HELPERS
    # ========================================================================

    def _open_market(self, asset: str) -> Market:
        market = self.get_market(asset)
        if not market.is_active:
            raise MarketInactive(f"Market {asset} is inactive")
        if market.is_frozen:
            raise MarketFrozen(f"Market {asset} is frozen")
        return market

    @staticmethod
    def _positive_amount(amount: Any) -> Decimal:
        amount = quantize_amount(to_decimal(amount))
        if amount.is_nan() or amount.is_infinite() or amount <= 0:
            raise InvalidAmount(f"Amount must be a positive finite number, got {amount}")
        return amount

    def _accrue(self, asset: str) -> Market:
        market = self.rates.accrue(self.get_market(asset), self.current_time)
        self.markets[asset] = market
        return market

    def _accrue_account(self, account: str, *assets: str) -> None:
        """Accrue every market the account touches, plus any extra assets."""
        for asset in sorted(set(self.account_assets(account)) | set(assets)):
            self._accrue(asset)

    def _set_position(self, position: AccountPosition) -> None:
        self.positions[(position.account, position.asset)] = position
        self._assets_by_account.setdefault(position.account, set()).add(position.asset)

    def _after_account_change(self, *accounts: str) -> None:
        for account in accounts:
            self.risk.refresh_account(account)

    def _settle_supply_dust(self, market: Market) -> Market:
        """With no shares left, leftover supply underlying moves to reserves."""
        if market.total_supply_shares == 0 and market.total_supply != 0:
            return replace(market, total_reserves=market.total_reserves + market.total_supply,
                           total_supply=ZERO)
        return market

    def _settle_borrow_dust(self, market: Market) -> Market:
        """With no debt shares left (or a total rounded below zero), the residual goes through reserves."""
        if (market.total_borrow_shares == 0 or market.total_borrow < 0) and market.total_borrow != 0:
            return replace(market, total_reserves=market.total_reserves - market.total_borrow,
                           total_borrow=ZERO)
        return market

    # ========================================================================
    # USER OPERATIONS (Mutating)
    # ========================================================================

    def supply(self, account: str, asset: str, amount: Decimal,
               ctx: Optional[CallerContext] = None) -> OperationRecord:
        """
        Deposit underlying and receive supply shares (rounded down).

        Raises:
            PermissionDenied, ProtocolPaused, InvalidAmount, MarketNotListed,
            MarketInactive, MarketFrozen, SupplyCapExceeded, InsufficientBalance,
            OracleError (snapshot refresh needs the account's prices)
        """
        self._authorize(account, ctx)
        with self.transaction():
            amount = self._positive_amount(amount)
            self._open_market(asset)
            market = self._accrue(asset)
            self.risk.validate_supply(market, amount)

            shares = calculate_shares(amount, market.total_supply_shares, market.total_supply,
                                      DECIMAL_ROUNDING['MINT_SHARES'])
            if shares <= 0:
                raise InvalidAmount(f"Supply of {amount} {asset} mints no shares")

            self.markets[asset] = replace(
                market,
                total_supply=market.total_supply + amount,
                total_supply_shares=market.total_supply_shares + shares,
            )
            position = self.get_position(account, asset)
            self._set_position(replace(position, supply_shares=position.supply_shares + shares))

            ref = f"supply:{account}:{asset}"
            record = self._record(OP_SUPPLY, account, asset, amount, shares, [
                self._underlying[asset].pull(account, amount, ref),
                self._receipt[asset].mint(account, shares, ref),
            ])
            self._after_account_change(account)
        return record

    def withdraw(self, account: str, asset: str, amount: Decimal,
                 ctx: Optional[CallerContext] = None) -> OperationRecord:
        """
        Redeem supply shares (burned rounded up) for underlying.

        Raises:
            InsufficientShares: amount exceeds the account's redeemable balance
            InsufficientLiquidity: the pool lacks idle underlying
            HealthFactorTooLow: the remaining collateral would not cover debt
        """
        self._authorize(account, ctx)
        with self.transaction():
            amount = self._positive_amount(amount)
            self._open_market(asset)
            self._accrue_account(account, asset)
            self.risk.validate_withdraw(account, asset, amount)
            market = self.get_market(asset)
            if amount > market.available_liquidity():
                raise InsufficientLiquidity(
                    f"{asset}: {amount} requested, {market.available_liquidity()} available"
                )

            position = self.get_position(account, asset)
            shares = calculate_shares(amount, market.total_supply_shares, market.total_supply,
                                      DECIMAL_ROUNDING['BURN_SHARES'])
            if shares > position.supply_shares:
                raise InsufficientShares(f"{account}: needs {shares} {asset} shares, holds {position.supply_shares}")

            self.markets[asset] = self._settle_supply_dust(replace(
                market,
                total_supply=market.total_supply - amount,
                total_supply_shares=market.total_supply_shares - shares,
            ))
            self._set_position(replace(position, supply_shares=position.supply_shares - shares))

            ref = f"withdraw:{account}:{asset}"
            record = self._record(OP_WITHDRAW, account, asset, amount, shares, [
                self._receipt[asset].burn(account, shares, ref),
                self._underlying[asset].push(account, amount, ref),
            ])
            self._after_account_change(account)
        return record

    def borrow(self, account: str, asset: str, amount: Decimal,
               ctx: Optional[CallerContext] = None) -> OperationRecord:
        """
        Borrow underlying against supplied collateral; debt shares round up.

        Raises:
            BorrowCapExceeded, InsufficientLiquidity, HealthFactorTooLow, OracleError
        """
        self._authorize(account, ctx)
        with self.transaction():
            amount = self._positive_amount(amount)
            self._open_market(asset)
            self._accrue_account(account, asset)
            self.risk.validate_borrow(account, asset, amount)
            market = self.get_market(asset)
            if amount > market.available_liquidity():
                raise InsufficientLiquidity(
                    f"{asset}: {amount} requested, {market.available_liquidity()} available"
                )

            shares = calculate_shares(amount, market.total_borrow_shares, market.total_borrow,
                                      DECIMAL_ROUNDING['DEBT_SHARES'])
            self.markets[asset] = replace(
                market,
                total_borrow=market.total_borrow + amount,
                total_borrow_shares=market.total_borrow_shares + shares,
            )
            position = self.get_position(account, asset)
            self._set_position(replace(position, borrow_shares=position.borrow_shares + shares))

            ref = f"borrow:{account}:{asset}"
            record = self._record(OP_BORROW, account, asset, amount, shares, [
                self._debt[asset].mint(account, shares, ref),
                self._underlying[asset].push(account, amount, ref),
            ])
            self._after_account_change(account)
        return record

    def repay(self, account: str, asset: str, amount: Decimal,
              ctx: Optional[CallerContext] = None) -> OperationRecord:
        """
        Repay debt. The amount is clamped to the outstanding debt; for a native
        asset the full amount is sent and the excess refunded in the same commit.

        Raises:
            InvalidAmount: no outstanding debt, or amount too small to burn a share
        """
        self._authorize(account, ctx)
        with self.transaction():
            amount = self._positive_amount(amount)
            self._open_market(asset)
            market = self._accrue(asset)
            position = self.get_position(account, asset)
            debt = market.borrow_shares_to_amount(position.borrow_shares)
            if debt <= 0:
                raise InvalidAmount(f"{account} has no {asset} debt to repay")

            applied = min(amount, debt)
            if applied == debt:
                shares = position.borrow_shares
            else:
                shares = calculate_shares(applied, market.total_borrow_shares, market.total_borrow,
                                          DECIMAL_ROUNDING['MINT_SHARES'])
                if shares <= 0:
                    raise InvalidAmount(f"Repayment of {applied} {asset} burns no debt shares")

            self.markets[asset] = self._settle_borrow_dust(replace(
                market,
                total_borrow=market.total_borrow - applied,
                total_borrow_shares=market.total_borrow_shares - shares,
            ))
            self._set_position(replace(position, borrow_shares=position.borrow_shares - shares))

            ref = f"repay:{account}:{asset}"
            refund = ZERO
            if market.is_native:
                refund = amount - applied
                moves = [self._underlying[asset].pull(account, amount, ref)]
                if refund > 0:
                    moves.append(self._underlying[asset].push(account, refund, ref))
            else:
                moves = [self._underlying[asset].pull(account, applied, ref)]
            moves.append(self._debt[asset].burn(account, shares, ref))

            record = self._record(OP_REPAY, account, asset, applied, shares, moves,
                                  {'requested': amount, 'refund': refund})
            self._after_account_change(account)
        return record

    # ========================================================================
    # LIQUIDATION APPLICATION (called by LiquidationEngine)
    # ========================================================================

    def apply_liquidation(
        self,
        ctx: CallerContext,
        liquidator: str,
        account: str,
        debt_asset: str,
        debt_amount: Decimal,
        collateral_asset: str,
        collateral_amount: Decimal,
        protocol_fee: Decimal = ZERO,
        details: Optional[Dict[str, Any]] = None,
    ) -> OperationRecord:
        """
        Apply a validated liquidation.

        The liquidator pays `debt_amount` of the debt asset; the target's debt
        shares shrink accordingly. The target loses the supply shares backing
        `collateral_amount`; the liquidator receives shares worth
        `collateral_amount - protocol_fee` and the protocol treasury the rest.
        Supply totals do not change because only share ownership moves.

        The caller must hold SETTLEMENT, and the target must be liquidatable
        at the moment of application.

        Raises:
            PermissionDenied: ctx lacks SETTLEMENT
            PositionNotLiquidatable: the target's health factor is at or above 1.0
            InsufficientCollateral: the target's shares cannot cover the seizure
        """
        ctx.require(Capability.SETTLEMENT)
        with self.transaction():
            if not self.risk.is_liquidation_allowed(account):
                raise PositionNotLiquidatable(f"{account} is not liquidatable")
            debt_market = self.get_market(debt_asset)
            target_debt = self.get_position(account, debt_asset)
            owed = debt_market.borrow_shares_to_amount(target_debt.borrow_shares)
            if debt_amount >= owed:
                debt_amount = owed
                debt_shares = target_debt.borrow_shares
            else:
                debt_shares = calculate_shares(debt_amount, debt_market.total_borrow_shares,
                                               debt_market.total_borrow, DECIMAL_ROUNDING['MINT_SHARES'])
            self.markets[debt_asset] = self._settle_borrow_dust(replace(
                debt_market,
                total_borrow=debt_market.total_borrow - debt_amount,
                total_borrow_shares=debt_market.total_borrow_shares - debt_shares,
            ))
            self._set_position(replace(target_debt, borrow_shares=target_debt.borrow_shares - debt_shares))

            collateral_market = self.get_market(collateral_asset)
            target_collateral = self.get_position(account, collateral_asset)
            seized_shares = calculate_shares(collateral_amount, collateral_market.total_supply_shares,
                                             collateral_market.total_supply, DECIMAL_ROUNDING['BURN_SHARES'])
            if seized_shares > target_collateral.supply_shares:
                raise InsufficientCollateral(
                    f"{account}: needs {seized_shares} {collateral_asset} shares, "
                    f"holds {target_collateral.supply_shares}"
                )
            liquidator_shares = calculate_shares(collateral_amount - protocol_fee,
                                                 collateral_market.total_supply_shares,
                                                 collateral_market.total_supply,
                                                 DECIMAL_ROUNDING['MINT_SHARES'])
            fee_shares = seized_shares - liquidator_shares

            self._set_position(replace(target_collateral,
                                       supply_shares=target_collateral.supply_shares - seized_shares))
            liquidator_position = self.get_position(liquidator, collateral_asset)
            self._set_position(replace(liquidator_position,
                                       supply_shares=liquidator_position.supply_shares + liquidator_shares))
            if fee_shares > 0:
                treasury = self.get_position(PROTOCOL_TREASURY, collateral_asset)
                self._set_position(replace(treasury, supply_shares=treasury.supply_shares + fee_shares))

            ref = f"liquidation:{account}:{debt_asset}:{collateral_asset}"
            moves = [self._underlying[debt_asset].pull(liquidator, debt_amount, ref)]
            if debt_shares > 0:
                moves.append(self._debt[debt_asset].burn(account, debt_shares, ref))
            if liquidator_shares > 0:
                moves.append(self._receipt[collateral_asset].transfer_from(account, liquidator, liquidator_shares, ref))
            if fee_shares > 0:
                moves.append(self._receipt[collateral_asset].transfer_from(account, PROTOCOL_TREASURY, fee_shares, ref))

            record = self._record(OP_LIQUIDATION, account, debt_asset, debt_amount, debt_shares, moves, {
                'liquidator': liquidator,
                'collateral': f"{collateral_amount} {collateral_asset}",
                'seized': seized_shares,
                'fee_shares': fee_shares,
                **(details or {}),
            })
            self._after_account_change(account, liquidator)
        return record

    # ========================================================================
    # BATCH / KEEPER ENTRY POINTS
    # ========================================================================

    def batch_supply(self, account: str, assets: Sequence[str], amounts: Sequence[Decimal],
                     ctx: Optional[CallerContext] = None) -> List[OperationRecord]:
        """Several supplies in one all-or-nothing transaction."""
        self._check_batch(assets, amounts)
        self._authorize(account, ctx)
        with self.transaction():
            return [self.supply(account, a, x, ctx) for a, x in zip(assets, amounts)]

    def batch_withdraw(self, account: str, assets: Sequence[str], amounts: Sequence[Decimal],
                       ctx: Optional[CallerContext] = None) -> List[OperationRecord]:
        self._check_batch(assets, amounts)
        self._authorize(account, ctx)
        with self.transaction():
            return [self.withdraw(account, a, x, ctx) for a, x in zip(assets, amounts)]

    @staticmethod
    def _check_batch(assets: Sequence[str], amounts: Sequence[Any]) -> None:
        if not assets:
            raise EmptyBatch("Empty batch")
        if len(assets) != len(amounts):
            raise BatchLengthMismatch(f"{len(assets)} assets but {len(amounts)} amounts")

    def accrue_all(self, assets: Optional[Sequence[str]] = None) -> List[Market]:
        """Keeper entry point: accrue the given (default: all) markets to now."""
        with self.transaction():
            return [self._accrue(asset) for asset in (assets or self.list_markets())]

    def accrue_account(self, account: str, *assets: str) -> None:
        """Accrue every market the account touches (plus `assets`) to now."""
        with self.transaction():
            self._accrue_account(account, *assets)

    def refresh_accounts(self, accounts: Optional[Sequence[str]] = None) -> List[PortfolioSnapshot]:
        """Keeper entry point: accrue and recompute snapshots for the given (default: all) accounts."""
        with self.transaction():
            snapshots = []
            for account in (accounts if accounts is not None else self.list_accounts()):
                self._accrue_account(account)
                snapshots.append(self.risk.refresh_account(account))
            return snapshots

    # ========================================================================
    # METRICS
    # ========================================================================

    def _refresh_metrics(self) -> ProtocolMetrics:
        now = self.current_time
        tvl = borrows = supply_interest = borrow_interest = ZERO
        unpriced = []
        for asset in self.list_markets():
            market = self.markets[asset]
            try:
                price = self.price_feed.get_price(asset)
            except OracleError:
                unpriced.append(asset)
                continue
            supply_usd = market.total_supply * price
            borrow_usd = market.total_borrow * price
            tvl += supply_usd
            borrows += borrow_usd
            supply_interest += supply_usd * market.supply_rate
            borrow_interest += borrow_usd * market.borrow_rate

        self._metrics = ProtocolMetrics(
            timestamp=now,
            tvl_usd=tvl,
            total_borrows_usd=borrows,
            utilization=(borrows / tvl) if tvl else ZERO,
            supply_apy=(supply_interest / tvl) if tvl else ZERO,
            borrow_apy=(borrow_interest / borrows) if borrows else ZERO,
            unpriced_assets=tuple(unpriced),
        )
        return self._metrics

    def get_metrics(self) -> ProtocolMetrics:
        """Aggregate metrics, recomputed once per committed change or clock tick."""
        with self.lock:
            if self._metrics is None or self._metrics.timestamp != self.current_time:
                return self._refresh_metrics()
            return self._metrics

    # ========================================================================
    # CONSERVATION CHECKS
    # ========================================================================

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Verify share, token and cash invariants for every market.

        Checks:
            - receipt/debt token supplies equal the market's share totals
            - account shares sum to the market's share totals
            - redeemable amounts never exceed the recorded totals
            - pool custody == total_supply + total_reserves - total_borrow
            - token balances net to zero (double entry)

        Returns:
            Dict with 'valid' (bool) and 'discrepancies' (list of dicts)
        """
        discrepancies = []
        with self.lock:
            for asset, market in sorted(self.markets.items()):
                positions = [p for (_, a), p in self.positions.items() if a == asset]
                supply_shares = sum((p.supply_shares for p in positions), ZERO)
                borrow_shares = sum((p.borrow_shares for p in positions), ZERO)
                redeemable = sum((calculate_amount(p.supply_shares, market.total_supply_shares,
                                                   market.total_supply) for p in positions), ZERO)
                owed = sum((calculate_amount(p.borrow_shares, market.total_borrow_shares,
                                             market.total_borrow) for p in positions), ZERO)
                custody = self.tokens.get_balance(POOL_WALLET, asset)
                checks = {
                    'receipt_supply': (self._receipt[asset].total_supply(), market.total_supply_shares),
                    'debt_supply': (self._debt[asset].total_supply(), market.total_borrow_shares),
                    'supply_shares': (supply_shares, market.total_supply_shares),
                    'borrow_shares': (borrow_shares, market.total_borrow_shares),
                    'custody': (custody, market.total_supply + market.total_reserves - market.total_borrow),
                }
                for name, (actual, expected) in checks.items():
                    if actual != expected:
                        discrepancies.append({'asset': asset, 'check': name,
                                              'actual': actual, 'expected': expected})
                if redeemable > market.total_supply:
                    discrepancies.append({'asset': asset, 'check': 'redeemable',
                                          'actual': redeemable, 'expected': market.total_supply})
                if owed > market.total_borrow:
                    discrepancies.append({'asset': asset, 'check': 'owed',
                                          'actual': owed, 'expected': market.total_borrow})
                if market.total_reserves < 0:
                    discrepancies.append({'asset': asset, 'check': 'reserves',
                                          'actual': market.total_reserves, 'expected': ZERO})

            double_entry = self.tokens.verify_double_entry()
            for item in double_entry['discrepancies']:
                discrepancies.append({'asset': item['unit'], 'check': 'double_entry',
                                      'actual': item['net'], 'expected': ZERO})

        return {'valid': not discrepancies, 'discrepancies': discrepancies}

    def __repr__(self) -> str:
        return f"LendingPool({self.name!r}, {len(self.markets)} markets, {len(self.operation_log)} operations)"
