"""
price_feed.py - Price sources and the validated USD price feed

Provides the price query contract consumed by the rate, risk and liquidation
engines, plus a concrete feed built from an ordered list of sources.

Classes:
- PriceSource: Protocol for a single source returning typed results
- PriceQuote / PriceFailure: success / failure results of a source lookup
- StaticPriceSource: time-independent prices (always fresh)
- TimeSeriesPriceSource: time-varying observations, most recent at or before now
- PriceFeed: Protocol consumed by the engines
- OraclePriceFeed: ordered sources + manual store, staleness, emergency
  override, update pause and a per-asset price-change circuit breaker

Fallback is explicit: sources are consulted in order and the first fresh quote
wins. A source never raises to signal "no price"; it returns a PriceFailure.
All prices are USD per unit of the asset.
"""

from __future__ import annotations
from bisect import bisect_right
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Deque, Dict, List, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

import numpy as np

from .core import (
    Clock, Capability, CallerContext, ZERO, ONE, SECONDS_PER_YEAR,
    to_decimal, elapsed_seconds,
    ValidationError, EmptyBatch, BatchLengthMismatch, InvalidAmount,
    PriceUnavailable, PriceStale, CircuitBreakerTripped,
    PriceUpdatesPaused, PriceDeviationTooLarge,
)


# ============================================================================
# SOURCE RESULTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class PriceQuote:
    """A successful price lookup."""
    price: Decimal
    timestamp: datetime
    confidence: Decimal = ONE
    source: str = "manual"


@dataclass(frozen=True, slots=True)
class PriceFailure:
    """A failed price lookup with the reason the source gave."""
    reason: str
    source: str


PriceResult = Union[PriceQuote, PriceFailure]


@runtime_checkable
class PriceSource(Protocol):
    """
    Protocol for one price source.

    fetch() returns a PriceQuote or a PriceFailure; it never raises to report
    a missing price.
    """
    name: str

    def fetch(self, asset: str, now: datetime) -> PriceResult:
        ...


class StaticPriceSource:
    """
    Price source with static prices (time-independent).

    Quotes are stamped with the request time, so they are never stale.
    """

    def __init__(self, prices: Dict[str, Decimal], name: str = "static", confidence: Decimal = ONE):
        self.name = name
        self.confidence = to_decimal(confidence)
        self.prices = {asset: to_decimal(p) for asset, p in prices.items()}

    def fetch(self, asset: str, now: datetime) -> PriceResult:
        price = self.prices.get(asset)
        if price is None:
            return PriceFailure(f"no price for {asset}", self.name)
        return PriceQuote(price, now, self.confidence, self.name)

    def update_price(self, asset: str, price: Decimal) -> None:
        self.prices[asset] = to_decimal(price)

    def remove_price(self, asset: str) -> None:
        self.prices.pop(asset, None)

    def __repr__(self):
        return f"StaticPriceSource({self.name!r}, {len(self.prices)} prices)"


class TimeSeriesPriceSource:
    """
    Price source with time-varying observations.

    Returns the most recent observation at or before the request time, stamped
    with the observation time so the feed can judge staleness.
    """

    def __init__(
        self,
        price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None,
        name: str = "timeseries",
        confidence: Decimal = ONE,
    ):
        self.name = name
        self.confidence = to_decimal(confidence)
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        if price_paths:
            for asset, path in price_paths.items():
                if path:
                    self.price_history[asset] = sorted(
                        ((ts, to_decimal(p)) for ts, p in path), key=lambda x: x[0]
                    )

    def add_price(self, asset: str, timestamp: datetime, price: Decimal) -> None:
        history = self.price_history.setdefault(asset, [])
        history.append((timestamp, to_decimal(price)))
        history.sort(key=lambda x: x[0])

    def fetch(self, asset: str, now: datetime) -> PriceResult:
        history = self.price_history.get(asset)
        if not history:
            return PriceFailure(f"no observations for {asset}", self.name)
        # Binary search: rightmost entry with ts <= now
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, now)
        if idx == 0:
            return PriceFailure(f"no observation for {asset} at or before {now}", self.name)
        ts, price = history[idx - 1]
        return PriceQuote(price, ts, self.confidence, self.name)

    def __repr__(self):
        return f"TimeSeriesPriceSource({self.name!r}, {len(self.price_history)} assets)"


# ============================================================================
# FEED CONTRACT
# ============================================================================

@dataclass(frozen=True, slots=True)
class PriceData:
    """Full price record for an asset as seen by the engines."""
    price: Decimal
    timestamp: Optional[datetime]
    confidence: Decimal
    is_valid: bool


@runtime_checkable
class PriceFeed(Protocol):
    """
    Query contract consumed by the engines.

    get_price / get_asset_value raise an OracleError when no valid price
    exists; they never return zero or an arbitrarily old price.
    """

    def get_price(self, asset: str) -> Decimal:
        ...

    def get_price_data(self, asset: str) -> PriceData:
        ...

    def get_asset_value(self, asset: str, amount: Decimal) -> Decimal:
        ...

    def is_price_valid(self, asset: str) -> Tuple[bool, Optional[int]]:
        ...


@dataclass(frozen=True, slots=True)
class PriceFeedConfig:
    """
    Feed configuration.

    Attributes:
        price_validity_period: Max quote age in seconds
        max_price_deviation: Relative change that trips the circuit breaker
        breaker_cooldown: Seconds before a tripped breaker may be reset
        history_size: Accepted manual prices kept per asset for volatility
    """
    price_validity_period: int = 3600
    max_price_deviation: Decimal = Decimal("0.10")
    breaker_cooldown: int = 3600
    history_size: int = 100

    def __post_init__(self):
        object.__setattr__(self, 'max_price_deviation', to_decimal(self.max_price_deviation))
        if self.price_validity_period <= 0:
            raise ValueError("price_validity_period must be positive")
        if self.max_price_deviation <= 0:
            raise ValueError("max_price_deviation must be positive")
        if self.breaker_cooldown < 0:
            raise ValueError("breaker_cooldown cannot be negative")
        if self.history_size < 2:
            raise ValueError("history_size must be at least 2")


class ManualPriceSource:
    """The feed's own store of pushed prices; always consulted last."""

    def __init__(self, name: str = "manual"):
        self.name = name
        self.quotes: Dict[str, PriceQuote] = {}

    def fetch(self, asset: str, now: datetime) -> PriceResult:
        quote = self.quotes.get(asset)
        if quote is None:
            return PriceFailure(f"no manual price for {asset}", self.name)
        return quote


class OraclePriceFeed:
    """
    Validated USD price feed over an ordered list of sources.

    Resolution order for an asset:
        1. tripped circuit breaker -> CircuitBreakerTripped
        2. emergency override (until cleared)
        3. external sources, in the order given
        4. manually pushed prices
    Quotes older than the validity period are skipped. If nothing usable is
    left the read raises PriceStale (something was seen) or PriceUnavailable.

    Example:
        clock = Clock(datetime(2025, 1, 1))
        feed = OraclePriceFeed(clock)
        feed.update_price(CallerContext.admin(), "WETH", Decimal("2000"))
        feed.get_price("WETH")   # Decimal('2000')
    """

    def __init__(
        self,
        clock: Clock,
        sources: Optional[Sequence[PriceSource]] = None,
        config: Optional[PriceFeedConfig] = None,
        verbose: bool = False,
    ):
        self.clock = clock
        self.sources: List[PriceSource] = list(sources or [])
        self.config = config or PriceFeedConfig()
        self.verbose = verbose
        self.manual_source = ManualPriceSource()
        self.updates_paused = False
        self._emergency: Dict[str, PriceQuote] = {}
        self._breaker_trips: Dict[str, datetime] = {}
        self._history: Dict[str, Deque[Tuple[datetime, Decimal]]] = {}

    # ========================================================================
    # PriceFeed PROTOCOL
    # ========================================================================

    def get_price(self, asset: str) -> Decimal:
        return self._resolve(asset).price

    def get_price_data(self, asset: str) -> PriceData:
        """
        Price record with a validity flag. Does not raise for bad prices;
        an invalid record carries the last known price (or zero) and is_valid=False.
        """
        try:
            quote = self._resolve(asset)
        except (PriceStale, PriceUnavailable, CircuitBreakerTripped):
            last = self._last_known(asset)
            if last is None:
                return PriceData(ZERO, None, ZERO, False)
            return PriceData(last.price, last.timestamp, last.confidence, False)
        return PriceData(quote.price, quote.timestamp, quote.confidence, True)

    def get_asset_value(self, asset: str, amount: Decimal) -> Decimal:
        return amount * self.get_price(asset)

    def is_price_valid(self, asset: str) -> Tuple[bool, Optional[int]]:
        """
        Returns:
            (valid, age in seconds of the best known quote, None if never priced)
        """
        data = self.get_price_data(asset)
        if data.timestamp is None:
            return False, None
        return data.is_valid, int(elapsed_seconds(data.timestamp, self.clock.now()))

    # ========================================================================
    # UPDATES
    # ========================================================================

    def update_price(self, ctx: CallerContext, asset: str, price: Decimal) -> None:
        """
        Push a manual price stamped with the current time.

        Raises:
            PermissionDenied: ctx lacks ADMIN
            PriceUpdatesPaused: Updates are paused
            InvalidAmount: Non-positive price
            CircuitBreakerTripped: The asset's breaker is already tripped
            PriceDeviationTooLarge: The change exceeds max_price_deviation; the
                update is refused and the asset's breaker trips
        """
        ctx.require(Capability.ADMIN)
        self._apply_update(asset, price)

    def _apply_update(self, asset: str, price: Decimal) -> None:
        if self.updates_paused:
            raise PriceUpdatesPaused("Price updates are paused")
        price = to_decimal(price)
        if price <= 0:
            raise InvalidAmount(f"Price must be positive, got {price}")
        now = self.clock.now()
        if asset in self._breaker_trips:
            raise CircuitBreakerTripped(f"Circuit breaker tripped for {asset}")

        previous = self.manual_source.quotes.get(asset)
        if previous is not None:
            change = abs(price - previous.price) / previous.price
            if change > self.config.max_price_deviation:
                self._breaker_trips[asset] = now
                if self.verbose:
                    print(f"⚠️  CIRCUIT BREAKER: {asset} {previous.price} → {price} ({change:.2%})")
                raise PriceDeviationTooLarge(
                    f"{asset} price change {change:.4f} exceeds {self.config.max_price_deviation}"
                )

        self.manual_source.quotes[asset] = PriceQuote(price, now, ONE, self.manual_source.name)
        history = self._history.setdefault(asset, deque(maxlen=self.config.history_size))
        history.append((now, price))

    def batch_update_prices(self, ctx: CallerContext, assets: Sequence[str], prices: Sequence[Decimal]) -> None:
        """
        Push several manual prices; all-or-nothing.

        Raises:
            PermissionDenied: ctx lacks ADMIN
            EmptyBatch / BatchLengthMismatch: Malformed batch
            OracleError: Any single update fails (earlier updates are undone)
        """
        ctx.require(Capability.ADMIN)
        if not assets:
            raise EmptyBatch("Empty price batch")
        if len(assets) != len(prices):
            raise BatchLengthMismatch(f"{len(assets)} assets but {len(prices)} prices")
        saved_quotes = dict(self.manual_source.quotes)
        saved_history = {a: deque(h, maxlen=h.maxlen) for a, h in self._history.items()}
        try:
            for asset, price in zip(assets, prices):
                self._apply_update(asset, price)
        except Exception:
            self.manual_source.quotes = saved_quotes
            self._history = saved_history
            raise

    def set_emergency_price(self, ctx: CallerContext, asset: str, price: Decimal) -> None:
        """Override every source for `asset` until clear_emergency_price()."""
        ctx.require(Capability.EMERGENCY, Capability.ADMIN)
        price = to_decimal(price)
        if price <= 0:
            raise InvalidAmount(f"Price must be positive, got {price}")
        self._emergency[asset] = PriceQuote(price, self.clock.now(), ONE, "emergency")
        if self.verbose:
            print(f"⚠️  EMERGENCY PRICE: {asset} = {price}")

    def clear_emergency_price(self, ctx: CallerContext, asset: str) -> None:
        ctx.require(Capability.EMERGENCY, Capability.ADMIN)
        self._emergency.pop(asset, None)

    def pause_updates(self, ctx: CallerContext) -> None:
        ctx.require(Capability.EMERGENCY, Capability.ADMIN)
        self.updates_paused = True

    def resume_updates(self, ctx: CallerContext) -> None:
        ctx.require(Capability.ADMIN)
        self.updates_paused = False

    # ========================================================================
    # CIRCUIT BREAKER
    # ========================================================================

    def is_circuit_breaker_tripped(self, asset: str) -> bool:
        return asset in self._breaker_trips

    def reset_circuit_breaker(self, ctx: CallerContext, asset: str, new_price: Optional[Decimal] = None) -> None:
        """
        Clear a tripped breaker once the cooldown has elapsed.

        Args:
            asset: Asset whose breaker to reset
            new_price: Optional price installed as the new baseline without a
                deviation check (otherwise the next update is compared with
                the last accepted price)

        Raises:
            PermissionDenied: ctx lacks ADMIN
            ValidationError: Breaker not tripped, or cooldown still running
        """
        ctx.require(Capability.ADMIN)
        tripped_at = self._breaker_trips.get(asset)
        if tripped_at is None:
            raise ValidationError(f"Circuit breaker for {asset} is not tripped")
        now = self.clock.now()
        ready_at = tripped_at + timedelta(seconds=self.config.breaker_cooldown)
        if now < ready_at:
            raise ValidationError(f"Circuit breaker cooldown for {asset} runs until {ready_at}")
        if new_price is not None and self.updates_paused:
            raise PriceUpdatesPaused("Price updates are paused")
        del self._breaker_trips[asset]
        if new_price is not None:
            self.manual_source.quotes.pop(asset, None)
            self._apply_update(asset, new_price)

    # ========================================================================
    # HISTORY / VOLATILITY
    # ========================================================================

    def get_price_history(self, asset: str) -> List[Tuple[datetime, Decimal]]:
        return list(self._history.get(asset, ()))

    def get_price_volatility(self, asset: str) -> Decimal:
        """
        Annualized volatility of log returns over the manual price history.

        Returns Decimal 0 with fewer than three observations or when the
        observations share one timestamp.
        """
        history = self._history.get(asset)
        if not history or len(history) < 3:
            return ZERO
        prices = np.array([float(p) for _, p in history])
        times = np.array([(ts - history[0][0]).total_seconds() for ts, _ in history])
        intervals = np.diff(times)
        mean_interval = float(np.mean(intervals))
        if mean_interval <= 0:
            return ZERO
        log_returns = np.diff(np.log(prices))
        per_period = float(np.std(log_returns, ddof=1))
        annualized = per_period * np.sqrt(float(SECONDS_PER_YEAR) / mean_interval)
        return Decimal(str(round(annualized, 12)))

    # ========================================================================
    # RESOLUTION
    # ========================================================================

    def _resolve(self, asset: str) -> PriceQuote:
        if asset in self._breaker_trips:
            raise CircuitBreakerTripped(f"Circuit breaker tripped for {asset}")
        now = self.clock.now()
        saw_stale = False

        emergency = self._emergency.get(asset)
        if emergency is not None:
            return emergency

        for source in [*self.sources, self.manual_source]:
            result = source.fetch(asset, now)
            if isinstance(result, PriceFailure):
                continue
            if elapsed_seconds(result.timestamp, now) > self.config.price_validity_period:
                saw_stale = True
                continue
            return result

        if saw_stale:
            raise PriceStale(f"Price for {asset} is stale")
        raise PriceUnavailable(f"No price available for {asset}")

    def _last_known(self, asset: str) -> Optional[PriceQuote]:
        now = self.clock.now()
        candidates = []
        if asset in self._emergency:
            candidates.append(self._emergency[asset])
        for source in [*self.sources, self.manual_source]:
            result = source.fetch(asset, now)
            if isinstance(result, PriceQuote):
                candidates.append(result)
        if not candidates:
            return None
        return max(candidates, key=lambda q: q.timestamp)

    def __repr__(self):
        return f"OraclePriceFeed({len(self.sources)} sources, {len(self.manual_source.quotes)} manual prices)"
