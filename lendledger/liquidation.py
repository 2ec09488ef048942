"""
liquidation.py - Liquidation validation, pricing and execution

The LiquidationEngine prices liquidations of insolvent accounts and hands the
resulting debt/collateral adjustment to LendingPool.apply_liquidation(), which
only an engine holding the SETTLEMENT capability may call.

Key Formulas:
    debt_value_usd       = debt_amount x debt_price
    collateral_value_usd = debt_value_usd x (1 + bonus_rate)
    collateral_amount    = collateral_value_usd / collateral_price
    bonus                = debt_value_usd x bonus_rate / collateral_price
    protocol_fee         = bonus x protocol_fee_rate
    net_bonus            = bonus - protocol_fee

    The liquidator receives collateral_amount - protocol_fee (repaid value
    plus net bonus); the protocol treasury receives protocol_fee.

    Slippage-protected calls also require
        collateral_amount - protocol_fee >= debt_value_usd / reference_price x (1 - max_slippage)

Micro-liquidation repays the smallest debt that lifts an account inside the
band [band_floor, 1.0) back to the target health factor:
    required = (target x debt - weighted_collateral) / (target - seize_factor)
    seize_factor = (1 + bonus) x liquidation_threshold(collateral asset)
With seize_factor 0 this is debt - weighted_collateral / target.

Liquidation is permissionless. Every attempt runs inside one pool
transaction: concurrent attempts on the same account serialize, and each
one re-validates against the state the previous one committed.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Deque, Dict, List, Optional, Sequence, Tuple, Any

from .core import (
    PortfolioSnapshot, CallerContext, Capability, OperationRecord,
    ZERO, ONE, LIQUIDATION_THRESHOLD,
    to_decimal, quantize_amount,
    LendingError, ValidationError, InvalidAmount, LiquidationConfigInactive,
    PositionNotLiquidatable, LiquidationTooSmall, LiquidationTooLarge,
    LiquidationExceedsDebt, InsufficientCollateral, LiquidationWorsensHealth, SlippageTooHigh,
    LiquidationsPaused, EmergencyLiquidationsHalted,
    NotInMicroLiquidationBand, TooManyMicroLiquidations,
)
from .registry import AccountRegistry


DEFAULT_PROTOCOL_FEE_RATE = Decimal("0.01")
DEFAULT_EMERGENCY_BONUS = Decimal("0.10")
DEFAULT_MAX_SLIPPAGE = Decimal("0.03")

STATS_WINDOW = timedelta(hours=24)
MICRO_RATE_WINDOW = timedelta(hours=1)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class LiquidationConfig:
    """
    Per-debt-asset liquidation limits.

    Attributes:
        is_active: Liquidations repaying this asset are allowed
        min_liquidation_usd: Smallest repayment accepted (USD)
        max_liquidation_ratio: Largest repayment as a share of the account's total debt USD
    """
    is_active: bool = True
    min_liquidation_usd: Decimal = Decimal("10")
    max_liquidation_ratio: Decimal = Decimal("0.5")

    def __post_init__(self):
        for name in ('min_liquidation_usd', 'max_liquidation_ratio'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if self.min_liquidation_usd < 0:
            raise ValueError(f"min_liquidation_usd must be non-negative, got {self.min_liquidation_usd}")
        if not (0 < self.max_liquidation_ratio <= 1):
            raise ValueError(f"max_liquidation_ratio must be in (0, 1], got {self.max_liquidation_ratio}")


@dataclass(frozen=True, slots=True)
class MicroLiquidationConfig:
    band_floor: Decimal = Decimal("0.95")
    target_health_factor: Decimal = Decimal("1.02")
    max_liquidation_usd: Decimal = Decimal("10000")
    bonus: Decimal = Decimal("0.02")
    max_per_hour: int = 3

    def __post_init__(self):
        for name in ('band_floor', 'target_health_factor', 'max_liquidation_usd', 'bonus'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if not (0 < self.band_floor < LIQUIDATION_THRESHOLD):
            raise ValueError(f"band_floor must be in (0, 1), got {self.band_floor}")
        if self.target_health_factor <= LIQUIDATION_THRESHOLD:
            raise ValueError(f"target_health_factor must exceed 1, got {self.target_health_factor}")
        if self.max_liquidation_usd <= 0:
            raise ValueError(f"max_liquidation_usd must be positive, got {self.max_liquidation_usd}")
        if not (0 <= self.bonus < 1):
            raise ValueError(f"bonus must be in [0, 1), got {self.bonus}")
        if self.max_per_hour < 1:
            raise ValueError(f"max_per_hour must be at least 1, got {self.max_per_hour}")


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class LiquidationQuote:
    """Priced liquidation; amounts in units of the asset named."""
    debt_amount: Decimal
    debt_value_usd: Decimal
    collateral_value_usd: Decimal
    collateral_amount: Decimal
    bonus: Decimal
    protocol_fee: Decimal
    net_bonus: Decimal
    bonus_rate: Decimal

    @property
    def liquidator_collateral(self) -> Decimal:
        return self.collateral_amount - self.protocol_fee


@dataclass(frozen=True, slots=True)
class LiquidationResult:
    liquidator: str
    account: str
    debt_asset: str
    collateral_asset: str
    quote: LiquidationQuote
    health_factor_before: Decimal
    health_factor_after: Decimal
    is_micro: bool
    record: Optional[OperationRecord] = None


@dataclass(frozen=True, slots=True)
class LiquidatablePosition:
    account: str
    health_factor: Decimal
    total_debt_usd: Decimal


@dataclass(frozen=True, slots=True)
class LiquidationStats:
    total_liquidations: int = 0
    total_volume_usd: Decimal = ZERO
    liquidations_24h: int = 0
    volume_24h_usd: Decimal = ZERO
    window_start: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class LiquidationRequest:
    account: str
    debt_asset: str
    debt_amount: Decimal
    collateral_asset: str
    max_slippage: Optional[Decimal] = None


@dataclass(frozen=True, slots=True)
class BatchLiquidationOutcome:
    request: LiquidationRequest
    result: Optional[LiquidationResult] = None
    error: Optional[LendingError] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_liquidation_amounts(
    debt_amount: Decimal,
    debt_price: Decimal,
    collateral_price: Decimal,
    bonus_rate: Decimal,
    protocol_fee_rate: Decimal,
) -> LiquidationQuote:
    """
    Price a liquidation.

    Collateral and bonus round down, the protocol fee rounds up, so the
    liquidator never receives more than the formula allows.

    Example:
        >>> q = calculate_liquidation_amounts(Decimal("1000"), Decimal("1"), Decimal("2000"),
        ...                                   Decimal("0.05"), Decimal("0.01"))
        >>> q.collateral_amount == Decimal("0.525"), q.net_bonus == Decimal("0.02475")
        (True, True)
    """
    if collateral_price <= 0:
        raise ValueError(f"Collateral price must be positive, got {collateral_price}")
    debt_value_usd = debt_amount * debt_price
    collateral_value_usd = debt_value_usd * (ONE + bonus_rate)
    collateral_amount = quantize_amount(collateral_value_usd / collateral_price, ROUND_DOWN)
    bonus = quantize_amount(debt_value_usd * bonus_rate / collateral_price, ROUND_DOWN)
    protocol_fee = quantize_amount(bonus * protocol_fee_rate, ROUND_UP)
    return LiquidationQuote(
        debt_amount=debt_amount,
        debt_value_usd=debt_value_usd,
        collateral_value_usd=collateral_value_usd,
        collateral_amount=collateral_amount,
        bonus=bonus,
        protocol_fee=protocol_fee,
        net_bonus=bonus - protocol_fee,
        bonus_rate=bonus_rate,
    )


def calculate_required_debt_reduction(
    total_debt_usd: Decimal,
    weighted_collateral_usd: Decimal,
    target_health_factor: Decimal,
    seize_factor: Decimal = ZERO,
) -> Decimal:
    """
    USD debt repayment that brings HF to target_health_factor.

    seize_factor is the weighted collateral removed per USD repaid
    ((1 + bonus) x collateral liquidation threshold). Returns the whole debt
    when the target cannot be reached by partial repayment, and 0 when the
    account is already at or above target.
    """
    if total_debt_usd <= 0:
        return ZERO
    shortfall = target_health_factor * total_debt_usd - weighted_collateral_usd
    if shortfall <= 0:
        return ZERO
    denominator = target_health_factor - seize_factor
    if denominator <= 0:
        return total_debt_usd
    return min(shortfall / denominator, total_debt_usd)


def calculate_expected_collateral(
    debt_value_usd: Decimal,
    collateral_price: Decimal,
    slippage: Decimal,
) -> Decimal:
    """
    Least collateral a liquidator accepts for repaying `debt_value_usd`.

        expected = debt_value_usd / collateral_price x (1 - slippage)

    Example:
        >>> calculate_expected_collateral(Decimal("1000"), Decimal("2000"), Decimal("0.025"))
        Decimal('0.487500000000000000')
    """
    if collateral_price <= 0:
        raise ValueError(f"Collateral price must be positive, got {collateral_price}")
    return quantize_amount(debt_value_usd / collateral_price * (ONE - slippage), ROUND_DOWN)


def _check_slippage(value: Decimal) -> Decimal:
    value = to_decimal(value)
    if not (0 <= value < 1):
        raise ValueError(f"max_slippage must be in [0, 1), got {value}")
    return value


# ============================================================================
# ENGINE
# ============================================================================

class LiquidationEngine:
    """
    Validates, prices and executes liquidations against a LendingPool.

    Example:
        engine = LiquidationEngine(pool)
        engine.liquidate("bot", "alice", "USDC", Decimal("500"), "WETH")
        positions, total = engine.get_liquidatable_positions()
    """

    def __init__(
        self,
        pool,
        protocol_fee_rate: Decimal = DEFAULT_PROTOCOL_FEE_RATE,
        emergency_bonus: Decimal = DEFAULT_EMERGENCY_BONUS,
        max_slippage: Decimal = DEFAULT_MAX_SLIPPAGE,
        micro_config: Optional[MicroLiquidationConfig] = None,
        default_config: Optional[LiquidationConfig] = None,
        verbose: bool = False,
    ):
        protocol_fee_rate = to_decimal(protocol_fee_rate)
        emergency_bonus = to_decimal(emergency_bonus)
        if not (0 <= protocol_fee_rate < 1):
            raise ValueError(f"protocol_fee_rate must be in [0, 1), got {protocol_fee_rate}")
        if not (0 <= emergency_bonus < 1):
            raise ValueError(f"emergency_bonus must be in [0, 1), got {emergency_bonus}")
        max_slippage = _check_slippage(max_slippage)
        self.pool = pool
        self.risk = pool.risk
        self.price_feed = pool.price_feed
        self.protocol_fee_rate = protocol_fee_rate
        self.emergency_bonus = emergency_bonus
        self.max_slippage = max_slippage
        self.micro_config = micro_config or MicroLiquidationConfig()
        self.default_config = default_config or LiquidationConfig()
        self.verbose = verbose
        self._settlement = CallerContext(f"liquidation-engine:{pool.name}", {Capability.SETTLEMENT})

        self.liquidations_paused = False
        self.emergency_mode = False
        self.emergency_halted = False

        self._configs: Dict[str, LiquidationConfig] = {}
        self.liquidatable = AccountRegistry()
        self._stats = LiquidationStats()
        self._micro_history: Dict[str, Deque[datetime]] = {}

        pool.attach(self)
        self.risk.add_snapshot_listener(self._on_snapshot)

    # ========================================================================
    # CONFIGURATION (admin)
    # ========================================================================

    def get_config(self, asset: str) -> LiquidationConfig:
        return self._configs.get(asset, self.default_config)

    def set_config(self, ctx: CallerContext, asset: str, config: LiquidationConfig) -> None:
        ctx.require(Capability.ADMIN)
        with self.pool.transaction():
            self._configs[asset] = config

    def set_micro_config(self, ctx: CallerContext, config: MicroLiquidationConfig) -> None:
        ctx.require(Capability.ADMIN)
        with self.pool.transaction():
            self.micro_config = config

    def set_protocol_fee_rate(self, ctx: CallerContext, rate: Decimal) -> None:
        ctx.require(Capability.ADMIN)
        rate = to_decimal(rate)
        if not (0 <= rate < 1):
            raise ValueError(f"protocol_fee_rate must be in [0, 1), got {rate}")
        with self.pool.transaction():
            self.protocol_fee_rate = rate

    def set_max_slippage(self, ctx: CallerContext, max_slippage: Decimal) -> None:
        """Upper bound on the slippage a liquidator may accept in liquidate()."""
        ctx.require(Capability.ADMIN)
        max_slippage = _check_slippage(max_slippage)
        with self.pool.transaction():
            self.max_slippage = max_slippage

    def pause_liquidations(self, ctx: CallerContext) -> None:
        ctx.require(Capability.ADMIN, Capability.EMERGENCY)
        with self.pool.lock:
            self.liquidations_paused = True

    def resume_liquidations(self, ctx: CallerContext) -> None:
        ctx.require(Capability.ADMIN)
        with self.pool.lock:
            self.liquidations_paused = False

    def set_emergency_mode(self, ctx: CallerContext, enabled: bool) -> None:
        """Emergency mode: fixed emergency bonus, no max-ratio cap, gated by the kill switch."""
        ctx.require(Capability.EMERGENCY, Capability.ADMIN)
        with self.pool.lock:
            self.emergency_mode = enabled
        if self.verbose:
            print(f"⚠️  EMERGENCY LIQUIDATION MODE {'ON' if enabled else 'OFF'}")

    def set_emergency_kill_switch(self, ctx: CallerContext, halted: bool) -> None:
        ctx.require(Capability.EMERGENCY, Capability.ADMIN)
        with self.pool.lock:
            self.emergency_halted = halted

    # ========================================================================
    # LIQUIDATABLE REGISTRY
    # ========================================================================

    def _on_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        self.liquidatable.set_membership(snapshot.account, snapshot.is_liquidatable)

    def get_liquidatable_positions(self, offset: int = 0, limit: int = 100) -> Tuple[List[LiquidatablePosition], int]:
        """Page of currently liquidatable accounts (from cached snapshots) and the total count."""
        with self.pool.lock:
            accounts, total = self.liquidatable.page(offset, limit)
            positions = []
            for account in accounts:
                snapshot = self.risk.get_snapshot(account)
                positions.append(LiquidatablePosition(account, snapshot.health_factor, snapshot.total_debt_usd))
            return positions, total

    # ========================================================================
    # VALIDATION / PRICING (no state changes)
    # ========================================================================

    def _check_gates(self) -> None:
        if self.emergency_mode:
            if self.emergency_halted:
                raise EmergencyLiquidationsHalted("Emergency liquidations are halted")
        elif self.liquidations_paused:
            raise LiquidationsPaused("Liquidations are paused")

    def current_bonus_rate(self, collateral_asset: str) -> Decimal:
        if self.emergency_mode:
            return self.emergency_bonus
        return self.pool.get_market(collateral_asset).liquidation_bonus

    def validate_liquidation(
        self,
        account: str,
        debt_asset: str,
        debt_amount: Decimal,
        collateral_asset: str,
        micro: bool = False,
    ) -> Decimal:
        """
        Check that a liquidation may proceed at current state.

        Returns:
            The account's health factor before liquidation

        Raises:
            InvalidAmount / MarketNotListed / LiquidationConfigInactive
            PositionNotLiquidatable: HF >= 1.0
            NotInMicroLiquidationBand: micro request outside [band_floor, 1.0)
            LiquidationExceedsDebt: more than the account owes in debt_asset
            LiquidationTooSmall / LiquidationTooLarge: USD bounds
            OracleError: a needed price is unavailable
        """
        debt_amount = to_decimal(debt_amount)
        if debt_amount.is_nan() or debt_amount <= 0:
            raise InvalidAmount(f"Liquidation amount must be positive, got {debt_amount}")
        debt_market = self.pool.get_market(debt_asset)
        self.pool.get_market(collateral_asset)
        config = self.get_config(debt_asset)
        if not config.is_active:
            raise LiquidationConfigInactive(f"Liquidations repaying {debt_asset} are disabled")

        values = self.risk.compute_account_values(account)
        health_factor = values.health_factor
        if health_factor >= LIQUIDATION_THRESHOLD:
            raise PositionNotLiquidatable(f"{account}: health factor {health_factor:.6f} >= {LIQUIDATION_THRESHOLD}")
        if micro and health_factor < self.micro_config.band_floor:
            raise NotInMicroLiquidationBand(
                f"{account}: health factor {health_factor:.6f} below micro band floor {self.micro_config.band_floor}"
            )

        owed = debt_market.borrow_shares_to_amount(self.pool.get_position(account, debt_asset).borrow_shares)
        if debt_amount > owed:
            raise LiquidationExceedsDebt(f"{account}: repay {debt_amount} {debt_asset} exceeds debt {owed}")

        debt_value_usd = debt_amount * self.price_feed.get_price(debt_asset)
        if micro:
            if debt_value_usd > self.micro_config.max_liquidation_usd:
                raise LiquidationTooLarge(
                    f"Micro-liquidation {debt_value_usd} USD exceeds {self.micro_config.max_liquidation_usd} USD"
                )
            return health_factor
        if debt_value_usd < config.min_liquidation_usd and debt_amount < owed:
            raise LiquidationTooSmall(f"Liquidation {debt_value_usd} USD below minimum {config.min_liquidation_usd} USD")
        if not self.emergency_mode:
            cap = config.max_liquidation_ratio * values.total_debt_usd
            if debt_value_usd > cap:
                raise LiquidationTooLarge(f"Liquidation {debt_value_usd} USD exceeds {cap} USD "
                                          f"({config.max_liquidation_ratio} of total debt)")
        return health_factor

    def calculate_liquidation_amounts(
        self,
        debt_asset: str,
        debt_amount: Decimal,
        collateral_asset: str,
        bonus_rate: Optional[Decimal] = None,
    ) -> LiquidationQuote:
        """Quote at current feed prices; bonus defaults to the mode's rate for the collateral asset."""
        if bonus_rate is None:
            bonus_rate = self.current_bonus_rate(collateral_asset)
        return calculate_liquidation_amounts(
            to_decimal(debt_amount),
            self.price_feed.get_price(debt_asset),
            self.price_feed.get_price(collateral_asset),
            bonus_rate,
            self.protocol_fee_rate,
        )

    def calculate_optimal_liquidation(
        self,
        account: str,
        debt_asset: str,
        max_debt_amount: Decimal,
        collateral_asset: Optional[str] = None,
    ) -> Decimal:
        """
        Smallest repayment (in debt_asset units) restoring the micro target HF.

        Bounded by the micro max USD size, the caller's max_debt_amount and the
        account's debt in debt_asset. Returns 0 outside the micro band.
        """
        values = self.risk.compute_account_values(account)
        health_factor = values.health_factor
        if not (self.micro_config.band_floor <= health_factor < LIQUIDATION_THRESHOLD):
            return ZERO

        seize_factor = ZERO
        if collateral_asset is not None:
            market = self.pool.get_market(collateral_asset)
            seize_factor = (ONE + self.micro_config.bonus) * market.liquidation_threshold
        required_usd = calculate_required_debt_reduction(
            values.total_debt_usd, values.weighted_collateral_usd,
            self.micro_config.target_health_factor, seize_factor,
        )
        price = self.price_feed.get_price(debt_asset)
        owed = self.pool.get_market(debt_asset).borrow_shares_to_amount(
            self.pool.get_position(account, debt_asset).borrow_shares
        )
        amount = min(
            quantize_amount(required_usd / price, ROUND_UP),
            quantize_amount(self.micro_config.max_liquidation_usd / price),
            to_decimal(max_debt_amount),
            owed,
        )
        return max(amount, ZERO)

    def preview_liquidation(
        self,
        account: str,
        debt_asset: str,
        debt_amount: Decimal,
        collateral_asset: str,
    ) -> LiquidationQuote:
        """Validate and quote without mutating anything (accrual is not applied)."""
        with self.pool.lock:
            self._check_gates()
            self.validate_liquidation(account, debt_asset, debt_amount, collateral_asset)
            return self.calculate_liquidation_amounts(debt_asset, debt_amount, collateral_asset)

    # ========================================================================
    # EXECUTION (Mutating)
    # ========================================================================

    def liquidate(
        self,
        liquidator: str,
        account: str,
        debt_asset: str,
        debt_amount: Decimal,
        collateral_asset: str,
        ctx: Optional[CallerContext] = None,
        max_slippage: Optional[Decimal] = None,
        reference_price: Optional[Decimal] = None,
    ) -> LiquidationResult:
        """
        Repay part of an insolvent account's debt and seize its collateral.

        With max_slippage set, the liquidator must receive at least
        calculate_expected_collateral(debt value, reference_price, max_slippage)
        of collateral. reference_price is the collateral price the liquidator
        quoted against (default: the current feed price).

        Raises:
            PermissionDenied: ctx given and not acting as the liquidator
            ProtocolPaused / LiquidationsPaused / EmergencyLiquidationsHalted
            RiskError / ValidationError / OracleError (see validate_liquidation)
            InsufficientCollateral: the account's collateral cannot cover the seizure
            LiquidationWorsensHealth: the account's HF would drop
            SlippageTooHigh: max_slippage above the engine limit, or the
                liquidator would receive less than the expected collateral
            InsufficientBalance: the liquidator cannot pay debt_amount
        """
        if ctx is not None:
            ctx.require_account(liquidator)
        with self.pool.transaction():
            if max_slippage is not None:
                max_slippage = to_decimal(max_slippage)
                if not (0 <= max_slippage <= self.max_slippage):
                    raise SlippageTooHigh(f"Slippage {max_slippage} outside [0, {self.max_slippage}]")
            return self._execute(liquidator, account, debt_asset, debt_amount, collateral_asset, micro=False,
                                 slippage=max_slippage, reference_price=reference_price)

    def micro_liquidate(
        self,
        liquidator: str,
        account: str,
        debt_asset: str,
        max_debt_amount: Decimal,
        collateral_asset: str,
        ctx: Optional[CallerContext] = None,
    ) -> LiquidationResult:
        """
        Small partial liquidation of an account in the micro band, repaying the
        optimal amount (capped by max_debt_amount) at the reduced micro bonus.

        Raises:
            NotInMicroLiquidationBand: HF outside [band_floor, 1.0)
            TooManyMicroLiquidations: hourly limit for the account reached
        """
        if ctx is not None:
            ctx.require_account(liquidator)
        with self.pool.transaction():
            self.pool.accrue_account(account, debt_asset, collateral_asset)
            history = self._micro_history.get(account)
            now = self.pool.current_time
            if history is not None:
                recent = [t for t in history if now - t < MICRO_RATE_WINDOW]
                if len(recent) >= self.micro_config.max_per_hour:
                    raise TooManyMicroLiquidations(
                        f"{account}: {len(recent)} micro-liquidations in the last hour"
                    )
            amount = self.calculate_optimal_liquidation(account, debt_asset, max_debt_amount, collateral_asset)
            if amount <= 0:
                raise NotInMicroLiquidationBand(f"{account}: no micro-liquidation available")
            return self._execute(liquidator, account, debt_asset, amount, collateral_asset, micro=True)

    def batch_liquidate(self, liquidator: str, requests: Sequence[LiquidationRequest],
                        ctx: Optional[CallerContext] = None) -> List[BatchLiquidationOutcome]:
        """
        Attempt each request in its own transaction; failures are reported per item.
        """
        outcomes = []
        for request in requests:
            try:
                result = self.liquidate(liquidator, request.account, request.debt_asset,
                                        request.debt_amount, request.collateral_asset, ctx,
                                        max_slippage=request.max_slippage)
            except LendingError as e:
                outcomes.append(BatchLiquidationOutcome(request, error=e))
            else:
                outcomes.append(BatchLiquidationOutcome(request, result=result))
        return outcomes

    def _execute(
        self,
        liquidator: str,
        account: str,
        debt_asset: str,
        debt_amount: Decimal,
        collateral_asset: str,
        micro: bool,
        slippage: Optional[Decimal] = None,
        reference_price: Optional[Decimal] = None,
    ) -> LiquidationResult:
        self._check_gates()
        if liquidator == account:
            raise ValidationError(f"{account} cannot liquidate itself")
        debt_amount = quantize_amount(to_decimal(debt_amount))
        self.pool.accrue_account(account, debt_asset, collateral_asset)
        health_factor_before = self.validate_liquidation(account, debt_asset, debt_amount, collateral_asset, micro)

        bonus_rate = self.micro_config.bonus if micro else self.current_bonus_rate(collateral_asset)
        quote = self.calculate_liquidation_amounts(debt_asset, debt_amount, collateral_asset, bonus_rate)

        collateral_market = self.pool.get_market(collateral_asset)
        available = collateral_market.supply_shares_to_amount(
            self.pool.get_position(account, collateral_asset).supply_shares
        )
        if quote.collateral_amount > available:
            raise InsufficientCollateral(
                f"{account}: seizure of {quote.collateral_amount} {collateral_asset} exceeds {available}"
            )
        if slippage is not None:
            if reference_price is None:
                reference_price = self.price_feed.get_price(collateral_asset)
            expected = calculate_expected_collateral(quote.debt_value_usd, to_decimal(reference_price), slippage)
            if quote.liquidator_collateral < expected:
                raise SlippageTooHigh(
                    f"{liquidator} would receive {quote.liquidator_collateral} {collateral_asset}, "
                    f"expected at least {expected}"
                )

        after = self.risk.compute_account_values(
            account,
            supply_deltas={collateral_asset: -quote.collateral_amount},
            debt_deltas={debt_asset: -debt_amount},
        )
        health_factor_after = after.health_factor
        if health_factor_after < health_factor_before:
            raise LiquidationWorsensHealth(
                f"{account}: health factor would fall from {health_factor_before:.6f} to {health_factor_after:.6f}"
            )

        record = self.pool.apply_liquidation(
            self._settlement, liquidator, account, debt_asset, debt_amount, collateral_asset,
            quote.collateral_amount, quote.protocol_fee,
            details={'bonus': quote.bonus, 'fee': quote.protocol_fee, 'micro': micro},
        )
        self._record_stats(quote.debt_value_usd)
        if micro:
            self._micro_history.setdefault(account, deque(maxlen=self.micro_config.max_per_hour)).append(
                self.pool.current_time
            )
        if self.verbose:
            kind = "MICRO-LIQUIDATION" if micro else "LIQUIDATION"
            print(f"⚡ {kind}: {liquidator} repaid {debt_amount} {debt_asset} for {account}, "
                  f"seized {quote.collateral_amount} {collateral_asset} "
                  f"(HF {health_factor_before:.4f} → {health_factor_after:.4f})")

        return LiquidationResult(
            liquidator=liquidator,
            account=account,
            debt_asset=debt_asset,
            collateral_asset=collateral_asset,
            quote=quote,
            health_factor_before=health_factor_before,
            health_factor_after=health_factor_after,
            is_micro=micro,
            record=record,
        )

    # ========================================================================
    # STATISTICS
    # ========================================================================

    def _rolled(self, stats: LiquidationStats, now: datetime) -> LiquidationStats:
        if stats.window_start is None or now - stats.window_start >= STATS_WINDOW:
            return replace(stats, liquidations_24h=0, volume_24h_usd=ZERO, window_start=now)
        return stats

    def _record_stats(self, volume_usd: Decimal) -> None:
        stats = self._rolled(self._stats, self.pool.current_time)
        self._stats = replace(
            stats,
            total_liquidations=stats.total_liquidations + 1,
            total_volume_usd=stats.total_volume_usd + volume_usd,
            liquidations_24h=stats.liquidations_24h + 1,
            volume_24h_usd=stats.volume_24h_usd + volume_usd,
        )

    def get_statistics(self) -> LiquidationStats:
        """Running totals; the 24h window reads as empty once it has expired."""
        with self.pool.lock:
            if self._stats.window_start is None:
                return self._stats
            return self._rolled(self._stats, self.pool.current_time)

    # ========================================================================
    # CHECKPOINT / RESTORE
    # ========================================================================

    def checkpoint(self) -> Dict[str, Any]:
        return {
            'configs': dict(self._configs),
            'micro_config': self.micro_config,
            'protocol_fee_rate': self.protocol_fee_rate,
            'max_slippage': self.max_slippage,
            'stats': self._stats,
            'micro_history': {a: deque(h, maxlen=h.maxlen) for a, h in self._micro_history.items()},
            'liquidatable': self.liquidatable.snapshot(),
        }

    def restore(self, state: Dict[str, Any]) -> None:
        self._configs = state['configs']
        self.micro_config = state['micro_config']
        self.protocol_fee_rate = state['protocol_fee_rate']
        self.max_slippage = state['max_slippage']
        self._stats = state['stats']
        self._micro_history = state['micro_history']
        self.liquidatable.restore(state['liquidatable'])
