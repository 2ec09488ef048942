"""
conftest.py - Shared pytest fixtures for lending core tests

Provides common fixtures used across unit, functional and conformance tests:
- Clock, price source and validated feed
- An empty pool with USDC / WETH / WBTC listed, plus its liquidation engine
- A pool with an open borrow, and one with an underwater borrower
"""

import pytest

from lendledger import Clock, CallerContext, OraclePriceFeed, StaticPriceSource

from tests.scenarios import START, DEFAULT_PRICES, build_env, make_borrower, make_underwater


@pytest.fixture
def clock():
    return Clock(START)


@pytest.fixture
def static_prices():
    return StaticPriceSource(dict(DEFAULT_PRICES))


@pytest.fixture
def feed(clock):
    """Feed with manual prices only (stale after an hour)."""
    return OraclePriceFeed(clock)


@pytest.fixture
def admin():
    return CallerContext.admin()


@pytest.fixture
def env():
    return build_env()


@pytest.fixture
def pool(env):
    return env.pool


@pytest.fixture
def borrower_env():
    env = build_env()
    make_borrower(env)
    return env


@pytest.fixture
def underwater_env():
    env = build_env()
    make_underwater(env)
    return env
