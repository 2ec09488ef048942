"""
interest.py - Interest rate curve, layered rate adjustments and accrual

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit inputs):
   - InterestRateParams: kinked curve parameters per asset (falls back to a default set)
   - CircuitBreakerConfig / CircuitBreakerState: per-update rate change limit
   - RateSmoothing, VolatilityMultiplier: optional per-asset layer state
   - RateAdjustmentSettings: engine-wide switches for the optional layers

2. PURE CALCULATION FUNCTIONS (calculate_* / apply_*):
   - One function per layer, explicit inputs, no engine state

3. InterestRateEngine:
   - Holds per-asset configuration and layer state
   - calculate_rates() composes the layers in a fixed order
   - accrue() compounds a Market's indices and totals, once per timestamp

Key Formulas:
    below kink:  borrow = base + u * slope1
    above kink:  borrow = base + kink * slope1 + (u - kink) * slope2
    supply = u * borrow * (1 - reserve_factor)
    index *= 1 + (rate / SECONDS_PER_YEAR) * elapsed_seconds

Layer order (each applied to the borrow rate left by the previous one):
    1. emergency override (linear rate capped at half the network max,
       reserve factor doubled; later layers skipped)
    2. volatility multiplier, clamped to [0.5, 3], ignored once stale
    3. utilization pressure: x(1 + excess^2) above kink, x0.95 below kink/2
    4. market-size tier by USD TVL
    5. correlation premium from highly correlated peers above their kink
    6. circuit breaker: bounded change versus the last rate, hard cap
    7. smoothing toward a target rate
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple, Any

import numpy as np

from .core import (
    Market, PoolView, CallerContext, Capability,
    ZERO, ONE, BPS, SECONDS_PER_YEAR, DECIMAL_ROUNDING,
    to_decimal, quantize_amount, elapsed_seconds, calculate_utilization,
    ValidationError, MarketNotListed,
)
from .price_feed import PriceFeed


RATE_HISTORY_CAPACITY = 100

VOLATILITY_MULTIPLIER_MIN = Decimal("0.5")
VOLATILITY_MULTIPLIER_MAX = Decimal("3")

CORRELATION_THRESHOLD = Decimal("0.8")

LOW_UTILIZATION_DISCOUNT = Decimal("0.95")

# (minimum TVL in USD, multiplier), checked top-down
MARKET_SIZE_TIERS = (
    (Decimal("100000000"), Decimal("0.90")),
    (Decimal("10000000"), Decimal("0.95")),
)
SMALL_MARKET_TVL = Decimal("1000000")
SMALL_MARKET_MULTIPLIER = Decimal("1.20")

DEFAULT_NETWORK_MAX_RATE = Decimal("1.0")


# ============================================================================
# FROZEN DATACLASSES - Explicit Inputs for Pure Functions
# ============================================================================

@dataclass(frozen=True, slots=True)
class InterestRateParams:
    """
    Kinked-linear curve for one asset. All rates are annualized fractions.

    Attributes:
        base_rate: Borrow rate at zero utilization
        slope1: Multiplier applied to utilization below the kink
        slope2: Jump multiplier applied to utilization above the kink
        kink: Optimal utilization where the slope changes, in (0, 1)
        reserve_factor: Share of borrow interest kept by the protocol
    """
    base_rate: Decimal = Decimal("0.02")
    slope1: Decimal = Decimal("0.08")
    slope2: Decimal = Decimal("2.5")
    kink: Decimal = Decimal("0.80")
    reserve_factor: Decimal = Decimal("0.10")

    def __post_init__(self):
        for name in ('base_rate', 'slope1', 'slope2', 'kink', 'reserve_factor'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if not (ZERO <= self.base_rate <= ONE):
            raise ValueError(f"Invalid base rate: {self.base_rate}")
        if self.slope1 < 0 or self.slope2 < 0:
            raise ValueError("Slopes cannot be negative")
        if not (ZERO < self.kink < ONE):
            raise ValueError(f"Invalid optimal utilization: {self.kink}")
        if not (ZERO <= self.reserve_factor <= ONE):
            raise ValueError(f"Invalid reserve factor: {self.reserve_factor}")


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """
    Attributes:
        enabled: Whether the layer runs
        max_change_bps: Max change per update, in bps of the last rate
        emergency_threshold: Hard cap on the borrow rate
        cooldown: Seconds after a trigger before `triggered` clears
    """
    enabled: bool = True
    max_change_bps: Decimal = Decimal("1000")
    emergency_threshold: Decimal = Decimal("1.0")
    cooldown: int = 3600

    def __post_init__(self):
        object.__setattr__(self, 'max_change_bps', to_decimal(self.max_change_bps))
        object.__setattr__(self, 'emergency_threshold', to_decimal(self.emergency_threshold))
        if self.max_change_bps <= 0:
            raise ValueError("max_change_bps must be positive")
        if self.emergency_threshold <= 0:
            raise ValueError("emergency_threshold must be positive")
        if self.cooldown < 0:
            raise ValueError("cooldown cannot be negative")


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    config: CircuitBreakerConfig
    last_trigger: Optional[datetime] = None
    triggered: bool = False


@dataclass(frozen=True, slots=True)
class RateSmoothing:
    target_rate: Decimal
    adjustment_speed: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'target_rate', to_decimal(self.target_rate))
        object.__setattr__(self, 'adjustment_speed', to_decimal(self.adjustment_speed))
        if self.target_rate < 0:
            raise ValueError("target_rate cannot be negative")
        if not (ZERO < self.adjustment_speed <= ONE):
            raise ValueError(f"adjustment_speed must be in (0, 1], got {self.adjustment_speed}")


@dataclass(frozen=True, slots=True)
class VolatilityMultiplier:
    value: Decimal
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class RateAdjustmentSettings:
    """
    Engine-wide switches for the layers that need no per-asset state.

    Attributes:
        utilization_pressure: Enable layer 3
        market_size_tiering: Enable layer 4 (needs a price feed)
        price_validity_period: Seconds after which a volatility multiplier is ignored
    """
    utilization_pressure: bool = False
    market_size_tiering: bool = False
    price_validity_period: int = 3600


@dataclass(frozen=True, slots=True)
class RateHistoryEntry:
    timestamp: datetime
    borrow_rate: Decimal
    supply_rate: Decimal


@dataclass(frozen=True, slots=True)
class RateQuote:
    """Result of calculate_rates(): final rates plus which layers changed them."""
    borrow_rate: Decimal
    supply_rate: Decimal
    utilization: Decimal
    reserve_factor: Decimal
    layers: Tuple[str, ...] = ()
    circuit_breaker_triggered: bool = False


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_borrow_rate(utilization: Decimal, params: InterestRateParams) -> Decimal:
    """
    Kinked-linear borrow rate.

    Example:
        base=2%, slope1=10%, kink=80%, utilization=50% -> 2% + 50% x 10% = 7%
    """
    if utilization <= params.kink:
        return params.base_rate + utilization * params.slope1
    return (params.base_rate
            + params.kink * params.slope1
            + (utilization - params.kink) * params.slope2)


def calculate_supply_rate(utilization: Decimal, borrow_rate: Decimal, reserve_factor: Decimal) -> Decimal:
    return utilization * borrow_rate * (ONE - reserve_factor)


def calculate_base_rates(utilization: Decimal, params: InterestRateParams) -> Tuple[Decimal, Decimal]:
    """(borrow_rate, supply_rate) on the base curve."""
    borrow = calculate_borrow_rate(utilization, params)
    return borrow, calculate_supply_rate(utilization, borrow, params.reserve_factor)


def apply_emergency_rates(
    utilization: Decimal,
    params: InterestRateParams,
    network_max_rate: Decimal,
) -> Tuple[Decimal, Decimal]:
    """
    Emergency override: linear rate with no jump, capped at half the network
    max; the reserve factor doubles (capped at 100%).

    Returns:
        (borrow_rate, reserve_factor)
    """
    linear = params.base_rate + utilization * params.slope1
    borrow = min(linear, network_max_rate / 2)
    return borrow, min(params.reserve_factor * 2, ONE)


def clamp_volatility_multiplier(value: Decimal) -> Decimal:
    return min(max(value, VOLATILITY_MULTIPLIER_MIN), VOLATILITY_MULTIPLIER_MAX)


def apply_volatility_multiplier(
    rate: Decimal,
    multiplier: Optional[VolatilityMultiplier],
    now: datetime,
    validity_period: int,
) -> Decimal:
    if multiplier is None:
        return rate
    if elapsed_seconds(multiplier.updated_at, now) > validity_period:
        return rate
    return rate * clamp_volatility_multiplier(multiplier.value)


def apply_utilization_pressure(rate: Decimal, utilization: Decimal, kink: Decimal) -> Decimal:
    if utilization > kink:
        excess = utilization - kink
        return rate * (ONE + excess * excess)
    if utilization < kink / 2:
        return rate * LOW_UTILIZATION_DISCOUNT
    return rate


def apply_market_size_tier(rate: Decimal, tvl_usd: Decimal) -> Decimal:
    for min_tvl, multiplier in MARKET_SIZE_TIERS:
        if tvl_usd >= min_tvl:
            return rate * multiplier
    if tvl_usd < SMALL_MARKET_TVL:
        return rate * SMALL_MARKET_MULTIPLIER
    return rate


def apply_correlation_premium(
    rate: Decimal,
    peers: Iterable[Tuple[Decimal, Decimal, Decimal]],
    threshold: Decimal = CORRELATION_THRESHOLD,
) -> Decimal:
    """
    Args:
        rate: Borrow rate so far
        peers: (correlation, peer utilization, peer kink) triples

    Returns:
        rate x (1 + sum(correlation x (peer_u - peer_kink))) over peers with
        correlation above the threshold and utilization above their kink
    """
    premium = ZERO
    for correlation, peer_utilization, peer_kink in peers:
        if correlation > threshold and peer_utilization > peer_kink:
            premium += correlation * (peer_utilization - peer_kink)
    return rate * (ONE + premium)


def apply_circuit_breaker(
    rate: Decimal,
    last_rate: Optional[Decimal],
    config: CircuitBreakerConfig,
) -> Tuple[Decimal, bool]:
    """
    Bound the change versus the last rate, then hard-cap.

    Returns:
        (rate, triggered) where triggered is True if either bound bit
    """
    if not config.enabled:
        return rate, False
    triggered = False
    if last_rate is not None and last_rate > 0:
        max_change = last_rate * config.max_change_bps / BPS
        low, high = last_rate - max_change, last_rate + max_change
        if rate > high:
            rate, triggered = high, True
        elif rate < low:
            rate, triggered = low, True
    if rate > config.emergency_threshold:
        rate, triggered = config.emergency_threshold, True
    return rate, triggered


def apply_smoothing(rate: Decimal, smoothing: Optional[RateSmoothing]) -> Decimal:
    if smoothing is None:
        return rate
    return rate + (smoothing.target_rate - rate) * smoothing.adjustment_speed


# ============================================================================
# ENGINE
# ============================================================================

class InterestRateEngine:
    """
    Per-asset rate configuration, layered rate calculation and index accrual.

    The engine reads markets through a PoolView and never stores them; accrue()
    returns the updated Market for the pool to commit.

    Example:
        engine = InterestRateEngine(pool)
        quote = engine.preview_rates("USDC", Decimal("0.5"))
        market = engine.accrue(pool.get_market("USDC"), pool.current_time)
    """

    def __init__(
        self,
        pool: PoolView,
        price_feed: Optional[PriceFeed] = None,
        default_params: Optional[InterestRateParams] = None,
        settings: Optional[RateAdjustmentSettings] = None,
        network_max_rate: Decimal = DEFAULT_NETWORK_MAX_RATE,
        verbose: bool = False,
    ):
        self.pool = pool
        self.price_feed = price_feed
        self.default_params = default_params or InterestRateParams()
        self.settings = settings or RateAdjustmentSettings()
        self.network_max_rate = to_decimal(network_max_rate)
        self.verbose = verbose
        self._params: Dict[str, InterestRateParams] = {}
        self._breakers: Dict[str, CircuitBreakerState] = {}
        self._smoothing: Dict[str, RateSmoothing] = {}
        self._volatility: Dict[str, VolatilityMultiplier] = {}
        self._correlations: Dict[str, Dict[str, Decimal]] = {}
        self._emergency_assets: Set[str] = set()
        self._history: Dict[str, Deque[RateHistoryEntry]] = {}
        self._last_borrow_rate: Dict[str, Decimal] = {}

    # ========================================================================
    # CONFIGURATION (admin)
    # ========================================================================

    def get_params(self, asset: str) -> InterestRateParams:
        return self._params.get(asset, self.default_params)

    def set_params(self, ctx: CallerContext, asset: str, params: InterestRateParams) -> None:
        ctx.require(Capability.ADMIN)
        self._params[asset] = params

    def set_default_params(self, ctx: CallerContext, params: InterestRateParams) -> None:
        ctx.require(Capability.ADMIN)
        self.default_params = params

    def set_circuit_breaker(self, ctx: CallerContext, asset: str, config: CircuitBreakerConfig) -> None:
        ctx.require(Capability.ADMIN)
        self._breakers[asset] = CircuitBreakerState(config)

    def reset_circuit_breaker(self, ctx: CallerContext, asset: str) -> None:
        ctx.require(Capability.ADMIN, Capability.EMERGENCY)
        state = self._breakers.get(asset)
        if state is None:
            raise ValidationError(f"No rate circuit breaker configured for {asset}")
        self._breakers[asset] = replace(state, triggered=False, last_trigger=None)

    def get_circuit_breaker(self, asset: str) -> Optional[CircuitBreakerState]:
        return self._breakers.get(asset)

    def set_smoothing(self, ctx: CallerContext, asset: str, target_rate: Decimal,
                      adjustment_speed: Decimal) -> None:
        ctx.require(Capability.ADMIN)
        self._smoothing[asset] = RateSmoothing(target_rate, adjustment_speed)

    def clear_smoothing(self, ctx: CallerContext, asset: str) -> None:
        ctx.require(Capability.ADMIN)
        self._smoothing.pop(asset, None)

    def set_volatility_multiplier(self, ctx: CallerContext, asset: str, value: Decimal) -> None:
        ctx.require(Capability.ADMIN)
        value = clamp_volatility_multiplier(to_decimal(value))
        self._volatility[asset] = VolatilityMultiplier(value, self.pool.current_time)

    def get_volatility_multiplier(self, asset: str) -> Optional[VolatilityMultiplier]:
        return self._volatility.get(asset)

    def set_correlation(self, ctx: CallerContext, asset: str, peer: str, correlation: Decimal) -> None:
        """Record a symmetric correlation between two assets."""
        ctx.require(Capability.ADMIN)
        correlation = to_decimal(correlation)
        if not (-ONE <= correlation <= ONE):
            raise ValueError(f"Correlation must be in [-1, 1], got {correlation}")
        if asset == peer:
            raise ValueError("An asset cannot be correlated with itself")
        self._correlations.setdefault(asset, {})[peer] = correlation
        self._correlations.setdefault(peer, {})[asset] = correlation

    def set_emergency_mode(self, ctx: CallerContext, asset: str, enabled: bool) -> None:
        ctx.require(Capability.EMERGENCY, Capability.ADMIN)
        if enabled:
            self._emergency_assets.add(asset)
        else:
            self._emergency_assets.discard(asset)
        if self.verbose:
            print(f"⚠️  RATE EMERGENCY MODE {'ON' if enabled else 'OFF'}: {asset}")

    def is_emergency(self, asset: str) -> bool:
        return asset in self._emergency_assets

    # ========================================================================
    # RATE CALCULATION
    # ========================================================================

    def calculate_rates(
        self,
        asset: str,
        utilization: Decimal,
        total_supply: Decimal,
        total_borrow: Decimal,
        now: Optional[datetime] = None,
    ) -> RateQuote:
        """
        Compose the base curve and every active layer, in order.

        Pure with respect to engine state: the circuit breaker's trigger flag
        is reported on the quote and recorded only by accrue().

        Raises:
            OracleError: Market-size tiering is enabled and the asset has no valid price
        """
        now = now or self.pool.current_time
        params = self.get_params(asset)

        if asset in self._emergency_assets:
            borrow, reserve_factor = apply_emergency_rates(utilization, params, self.network_max_rate)
            supply = calculate_supply_rate(utilization, borrow, reserve_factor)
            return RateQuote(borrow, supply, utilization, reserve_factor, ("emergency",))

        layers: List[str] = []
        borrow = calculate_borrow_rate(utilization, params)

        adjusted = apply_volatility_multiplier(
            borrow, self._volatility.get(asset), now, self.settings.price_validity_period
        )
        if adjusted != borrow:
            layers.append("volatility")
            borrow = adjusted

        if self.settings.utilization_pressure:
            adjusted = apply_utilization_pressure(borrow, utilization, params.kink)
            if adjusted != borrow:
                layers.append("utilization_pressure")
                borrow = adjusted

        if self.settings.market_size_tiering and self.price_feed is not None:
            tvl_usd = self.price_feed.get_asset_value(asset, total_supply)
            adjusted = apply_market_size_tier(borrow, tvl_usd)
            if adjusted != borrow:
                layers.append("market_size")
                borrow = adjusted

        peers = list(self._peer_utilizations(asset))
        if peers:
            adjusted = apply_correlation_premium(borrow, peers)
            if adjusted != borrow:
                layers.append("correlation")
                borrow = adjusted

        triggered = False
        breaker = self._breakers.get(asset)
        if breaker is not None:
            borrow, triggered = apply_circuit_breaker(
                borrow, self._last_borrow_rate.get(asset), breaker.config
            )
            if triggered:
                layers.append("circuit_breaker")

        smoothing = self._smoothing.get(asset)
        if smoothing is not None:
            borrow = apply_smoothing(borrow, smoothing)
            layers.append("smoothing")

        borrow = max(borrow, ZERO)
        supply = calculate_supply_rate(utilization, borrow, params.reserve_factor)
        return RateQuote(borrow, supply, utilization, params.reserve_factor, tuple(layers), triggered)

    def preview_rates(self, asset: str, utilization: Optional[Decimal] = None) -> RateQuote:
        """Rates the asset would get right now (optionally at a hypothetical utilization)."""
        market = self.pool.get_market(asset)
        if utilization is None:
            utilization = market.utilization()
        return self.calculate_rates(asset, to_decimal(utilization),
                                    market.total_supply, market.total_borrow)

    def get_current_rates(self, asset: str) -> Tuple[Decimal, Decimal]:
        """(borrow_rate, supply_rate) applied at the asset's last accrual."""
        market = self.pool.get_market(asset)
        return market.borrow_rate, market.supply_rate

    def _peer_utilizations(self, asset: str) -> Iterable[Tuple[Decimal, Decimal, Decimal]]:
        for peer, correlation in sorted(self._correlations.get(asset, {}).items()):
            try:
                market = self.pool.get_market(peer)
            except MarketNotListed:
                continue
            yield correlation, market.utilization(), self.get_params(peer).kink

    # ========================================================================
    # ACCRUAL
    # ========================================================================

    def accrue(self, market: Market, now: datetime) -> Market:
        """
        Compound the market's indices and totals up to `now`.

        A second call for the same timestamp returns the market unchanged.
        Only whole elapsed seconds are consumed: last_accrual advances by
        exactly that many, so a sub-second remainder carries into the next call.
        Supply totals round down and borrow totals round up; the gap between
        borrow interest and supply interest accrues to reserves.

        Returns:
            Updated Market (the same instance if nothing changed)
        """
        if now <= market.last_accrual:
            return market
        elapsed = elapsed_seconds(market.last_accrual, now)
        if elapsed == 0:
            return market

        self._expire_breaker(market.asset, now)
        utilization = calculate_utilization(market.total_supply, market.total_borrow)
        quote = self.calculate_rates(market.asset, utilization, market.total_supply,
                                     market.total_borrow, now)
        if quote.circuit_breaker_triggered:
            state = self._breakers[market.asset]
            self._breakers[market.asset] = replace(state, triggered=True, last_trigger=now)
            if self.verbose:
                print(f"⚠️  RATE CIRCUIT BREAKER: {market.asset} clamped to {quote.borrow_rate}")

        borrow_growth = ONE + quote.borrow_rate * elapsed / SECONDS_PER_YEAR
        supply_growth = ONE + quote.supply_rate * elapsed / SECONDS_PER_YEAR

        new_borrow = quantize_amount(market.total_borrow * borrow_growth, DECIMAL_ROUNDING['BORROW_TOTAL'])
        new_supply = quantize_amount(market.total_supply * supply_growth, DECIMAL_ROUNDING['SUPPLY_TOTAL'])
        borrow_interest = new_borrow - market.total_borrow
        supply_interest = min(new_supply - market.total_supply, borrow_interest)
        new_supply = market.total_supply + supply_interest

        updated = replace(
            market,
            total_borrow=new_borrow,
            total_supply=new_supply,
            total_reserves=market.total_reserves + (borrow_interest - supply_interest),
            borrow_index=market.borrow_index * borrow_growth,
            supply_index=market.supply_index * supply_growth,
            borrow_rate=quote.borrow_rate,
            supply_rate=quote.supply_rate,
            last_accrual=market.last_accrual + timedelta(seconds=int(elapsed)),
        )
        self._record_rates(market.asset, now, quote.borrow_rate, quote.supply_rate)
        return updated

    def _expire_breaker(self, asset: str, now: datetime) -> None:
        state = self._breakers.get(asset)
        if state is None or not state.triggered or state.last_trigger is None:
            return
        if now >= state.last_trigger + timedelta(seconds=state.config.cooldown):
            self._breakers[asset] = replace(state, triggered=False)

    def _record_rates(self, asset: str, now: datetime, borrow_rate: Decimal, supply_rate: Decimal) -> None:
        history = self._history.setdefault(asset, deque(maxlen=RATE_HISTORY_CAPACITY))
        history.append(RateHistoryEntry(now, borrow_rate, supply_rate))
        self._last_borrow_rate[asset] = borrow_rate

    # ========================================================================
    # HISTORY / ANALYTICS
    # ========================================================================

    def get_rate_history(self, asset: str, n: Optional[int] = None) -> List[RateHistoryEntry]:
        """Most recent `n` entries (all retained entries if n is None), oldest first."""
        history = list(self._history.get(asset, ()))
        if n is None:
            return history
        if n <= 0:
            return []
        return history[-n:]

    def calculate_rate_variance(self, asset: str, n: int = 20) -> Decimal:
        """Population variance of the last `n` borrow rates (0 with fewer than two)."""
        entries = self.get_rate_history(asset, n)
        if len(entries) < 2:
            return ZERO
        rates = np.array([float(e.borrow_rate) for e in entries])
        return Decimal(str(round(float(np.var(rates)), 18)))

    def refresh_volatility_multiplier(self, asset: str, n: int = 20) -> Decimal:
        """
        Derive the volatility multiplier from rate history: 1 + stdev / mean
        of the last `n` borrow rates, clamped to [0.5, 3].
        """
        entries = self.get_rate_history(asset, n)
        rates = np.array([float(e.borrow_rate) for e in entries])
        if len(rates) < 2 or float(np.mean(rates)) <= 0:
            value = ONE
        else:
            ratio = float(np.std(rates)) / float(np.mean(rates))
            value = clamp_volatility_multiplier(ONE + Decimal(str(round(ratio, 18))))
        self._volatility[asset] = VolatilityMultiplier(value, self.pool.current_time)
        return value

    # ========================================================================
    # CHECKPOINT / RESTORE (used by LendingPool.transaction)
    # ========================================================================

    def checkpoint(self) -> Dict[str, Any]:
        return {
            'breakers': dict(self._breakers),
            'volatility': dict(self._volatility),
            'history': {a: deque(h, maxlen=h.maxlen) for a, h in self._history.items()},
            'last_borrow_rate': dict(self._last_borrow_rate),
        }

    def restore(self, state: Dict[str, Any]) -> None:
        self._breakers = state['breakers']
        self._volatility = state['volatility']
        self._history = state['history']
        self._last_borrow_rate = state['last_borrow_rate']
