"""
test_price_feed.py - Tests for price sources and the validated price feed

Tests:
- Source fallback order and staleness
- Price change circuit breaker: trip, cooldown, reset with a new baseline
- Emergency override, update pause, batch all-or-nothing
- Capability checks on every feed mutator
- Volatility from price history
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from lendledger import (
    OraclePriceFeed, PriceFeedConfig, StaticPriceSource, TimeSeriesPriceSource, PriceFeed,
    CallerContext, Capability,
    PriceUnavailable, PriceStale, CircuitBreakerTripped, PriceUpdatesPaused,
    PriceDeviationTooLarge, InvalidAmount, ValidationError, EmptyBatch, BatchLengthMismatch,
    PermissionDenied,
)

from tests.scenarios import START
from tests.fake_feed import FakePriceFeed


class TestResolution:

    def test_manual_price(self, feed, admin):
        feed.update_price(admin, "WETH", Decimal("2000"))
        assert feed.get_price("WETH") == Decimal("2000")
        assert feed.get_asset_value("WETH", Decimal("2")) == Decimal("4000")

    def test_unknown_asset_unavailable(self, feed):
        with pytest.raises(PriceUnavailable):
            feed.get_price("DOGE")

    def test_manual_price_goes_stale(self, feed, clock, admin):
        feed.update_price(admin, "WETH", Decimal("2000"))
        clock.advance(START + timedelta(seconds=3601))
        with pytest.raises(PriceStale):
            feed.get_price("WETH")
        data = feed.get_price_data("WETH")
        assert not data.is_valid
        assert data.price == Decimal("2000")
        assert feed.is_price_valid("WETH") == (False, 3601)

    def test_never_priced(self, feed):
        assert feed.is_price_valid("DOGE") == (False, None)
        assert feed.get_price_data("DOGE").price == 0

    def test_sources_consulted_before_manual(self, clock, static_prices, admin):
        feed = OraclePriceFeed(clock, sources=[static_prices])
        feed.update_price(admin, "WETH", Decimal("1999"))
        assert feed.get_price("WETH") == Decimal("2000")

    def test_falls_back_to_next_source(self, clock):
        primary = StaticPriceSource({"USDC": Decimal("1")}, name="primary")
        backup = StaticPriceSource({"WETH": Decimal("2100")}, name="backup")
        feed = OraclePriceFeed(clock, sources=[primary, backup])
        assert feed.get_price("WETH") == Decimal("2100")

    def test_stale_source_skipped(self, clock):
        series = TimeSeriesPriceSource({"WETH": [(START, Decimal("2000"))]})
        feed = OraclePriceFeed(clock, sources=[series])
        assert feed.get_price("WETH") == Decimal("2000")
        clock.advance(START + timedelta(hours=2))
        with pytest.raises(PriceStale):
            feed.get_price("WETH")
        series.add_price("WETH", START + timedelta(hours=2), Decimal("2050"))
        assert feed.get_price("WETH") == Decimal("2050")

    def test_satisfies_protocol(self, feed):
        assert isinstance(feed, PriceFeed)
        assert isinstance(FakePriceFeed(), PriceFeed)


class TestUpdates:

    def test_non_positive_price_rejected(self, feed, admin):
        with pytest.raises(InvalidAmount):
            feed.update_price(admin, "WETH", Decimal("0"))

    def test_paused_updates(self, feed, admin):
        feed.pause_updates(admin)
        with pytest.raises(PriceUpdatesPaused):
            feed.update_price(admin, "WETH", Decimal("2000"))
        feed.resume_updates(admin)
        feed.update_price(admin, "WETH", Decimal("2000"))

    def test_batch_is_all_or_nothing(self, feed, admin):
        feed.update_price(admin, "WETH", Decimal("2000"))
        with pytest.raises(InvalidAmount):
            feed.batch_update_prices(admin, ["WETH", "WBTC"], [Decimal("2010"), Decimal("-1")])
        assert feed.get_price("WETH") == Decimal("2000")
        assert len(feed.get_price_history("WETH")) == 1

    def test_batch_shape_errors(self, feed, admin):
        with pytest.raises(EmptyBatch):
            feed.batch_update_prices(admin, [], [])
        with pytest.raises(BatchLengthMismatch):
            feed.batch_update_prices(admin, ["WETH"], [])

    def test_emergency_price_holds_until_cleared(self, feed, clock, admin):
        feed.update_price(admin, "WETH", Decimal("2000"))
        feed.set_emergency_price(admin, "WETH", Decimal("1500"))
        assert feed.get_price("WETH") == Decimal("1500")
        clock.advance(START + timedelta(hours=3))
        assert feed.get_price("WETH") == Decimal("1500")
        feed.clear_emergency_price(admin, "WETH")
        # the manual price underneath has gone stale by now
        with pytest.raises(PriceStale):
            feed.get_price("WETH")


class TestPermissions:

    @pytest.fixture
    def user(self):
        return CallerContext.for_account("mallory")

    def test_update_requires_admin(self, feed, user):
        with pytest.raises(PermissionDenied):
            feed.update_price(user, "WETH", Decimal("2000"))
        with pytest.raises(PermissionDenied):
            feed.batch_update_prices(user, ["WETH"], [Decimal("2000")])
        assert feed.is_price_valid("WETH") == (False, None)

    def test_emergency_override_refused_for_users(self, feed, admin, user):
        feed.update_price(admin, "WETH", Decimal("2000"))
        with pytest.raises(PermissionDenied):
            feed.set_emergency_price(user, "WETH", Decimal("1"))
        assert feed.get_price("WETH") == Decimal("2000")

        feed.set_emergency_price(admin, "WETH", Decimal("1500"))
        with pytest.raises(PermissionDenied):
            feed.clear_emergency_price(user, "WETH")
        assert feed.get_price("WETH") == Decimal("1500")

    def test_guardian_may_pause_but_not_resume(self, feed, admin):
        guardian = CallerContext("guardian", {Capability.EMERGENCY})
        feed.pause_updates(guardian)
        assert feed.updates_paused
        with pytest.raises(PermissionDenied):
            feed.resume_updates(guardian)
        feed.resume_updates(admin)
        assert not feed.updates_paused

    def test_breaker_reset_requires_admin(self, feed, clock, admin, user):
        feed.update_price(admin, "WETH", Decimal("2000"))
        with pytest.raises(PriceDeviationTooLarge):
            feed.update_price(admin, "WETH", Decimal("1500"))
        clock.advance(START + timedelta(seconds=3600))
        with pytest.raises(PermissionDenied):
            feed.reset_circuit_breaker(user, "WETH")
        assert feed.is_circuit_breaker_tripped("WETH")


class TestCircuitBreaker:

    def test_large_move_trips_breaker(self, feed, admin):
        feed.update_price(admin, "WETH", Decimal("2000"))
        with pytest.raises(PriceDeviationTooLarge):
            feed.update_price(admin, "WETH", Decimal("1500"))
        assert feed.is_circuit_breaker_tripped("WETH")
        with pytest.raises(CircuitBreakerTripped):
            feed.get_price("WETH")
        with pytest.raises(CircuitBreakerTripped):
            feed.update_price(admin, "WETH", Decimal("2000"))
        assert feed.get_price_data("WETH").is_valid is False

    def test_move_within_limit_accepted(self, feed, admin):
        feed.update_price(admin, "WETH", Decimal("2000"))
        feed.update_price(admin, "WETH", Decimal("2200"))
        assert feed.get_price("WETH") == Decimal("2200")

    def test_reset_requires_cooldown(self, feed, clock, admin):
        feed.update_price(admin, "WETH", Decimal("2000"))
        with pytest.raises(PriceDeviationTooLarge):
            feed.update_price(admin, "WETH", Decimal("1500"))
        with pytest.raises(ValidationError, match="cooldown"):
            feed.reset_circuit_breaker(admin, "WETH")
        clock.advance(START + timedelta(seconds=3600))
        feed.reset_circuit_breaker(admin, "WETH", new_price=Decimal("1500"))
        assert not feed.is_circuit_breaker_tripped("WETH")
        assert feed.get_price("WETH") == Decimal("1500")

    def test_reset_untripped_raises(self, feed, admin):
        with pytest.raises(ValidationError, match="not tripped"):
            feed.reset_circuit_breaker(admin, "WETH")

    def test_custom_deviation(self, clock, admin):
        feed = OraclePriceFeed(clock, config=PriceFeedConfig(max_price_deviation=Decimal("0.5")))
        feed.update_price(admin, "WETH", Decimal("2000"))
        feed.update_price(admin, "WETH", Decimal("1500"))
        assert feed.get_price("WETH") == Decimal("1500")


class TestVolatility:

    def test_too_few_observations(self, feed, admin):
        feed.update_price(admin, "WETH", Decimal("2000"))
        feed.update_price(admin, "WETH", Decimal("2010"))
        assert feed.get_price_volatility("WETH") == 0

    def test_volatility_positive(self, feed, clock, admin):
        for hour, price in enumerate(["2000", "2040", "1990", "2030", "2010"]):
            clock.advance(START + timedelta(hours=hour))
            feed.update_price(admin, "WETH", Decimal(price))
        vol = feed.get_price_volatility("WETH")
        assert vol > 0
        assert len(feed.get_price_history("WETH")) == 5

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            PriceFeedConfig(price_validity_period=0)
