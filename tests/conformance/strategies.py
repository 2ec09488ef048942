"""
strategies.py - Hypothesis strategies and an operation driver shared by the conformance suite
"""

from datetime import timedelta
from decimal import Decimal

from hypothesis import strategies as st

from lendledger import LendingError, POOL_WALLET, PROTOCOL_TREASURY

from tests.scenarios import Env, fund


ACCOUNTS = ("alice", "bob", "carol")
ASSETS = ("USDC", "WETH", "WBTC")
OPERATIONS = ("supply", "withdraw", "borrow", "repay", "advance", "price", "liquidate")

# one "unit" of each asset, roughly $2,000
UNIT = {"USDC": Decimal("2000"), "WETH": Decimal("1"), "WBTC": Decimal("0.05")}


def operation():
    """(op, account, asset, size in thousandths of a unit)"""
    return st.tuples(
        st.sampled_from(OPERATIONS),
        st.sampled_from(ACCOUNTS),
        st.sampled_from(ASSETS),
        st.integers(min_value=1, max_value=3000),
    )


def operations(max_size=25):
    return st.lists(operation(), min_size=1, max_size=max_size)


def fund_accounts(env: Env) -> None:
    for account in ACCOUNTS:
        for asset in ASSETS:
            fund(env.pool, account, asset, UNIT[asset] * 10)
    fund(env.pool, "keeper", "USDC", Decimal("1000000"))


def apply_operation(env: Env, op) -> bool:
    """
    Run one operation; returns False if the pool rejected it.

    Only LendingError counts as a rejection; anything else propagates.
    """
    name, account, asset, size = op
    pool = env.pool
    amount = UNIT[asset] * Decimal(size) / 1000
    try:
        if name == "supply":
            pool.supply(account, asset, amount)
        elif name == "withdraw":
            pool.withdraw(account, asset, amount)
        elif name == "borrow":
            pool.borrow(account, asset, amount)
        elif name == "repay":
            pool.repay(account, asset, amount)
        elif name == "advance":
            pool.advance_time(pool.current_time + timedelta(hours=size))
            pool.accrue_all()
        elif name == "price":
            # WETH moves by -15% .. +15%
            move = Decimal(size % 31 - 15) / 100
            env.prices.update_price("WETH", env.prices.prices["WETH"] * (1 + move))
            pool.refresh_accounts()
        else:
            env.liquidations.liquidate("keeper", account, "USDC", amount, "WETH")
    except LendingError:
        return False
    return True


def pool_state(env: Env):
    """Comparable snapshot of everything an operation may change."""
    pool = env.pool
    balances = {
        (wallet, unit): pool.tokens.get_balance(wallet, unit)
        for wallet in list(ACCOUNTS) + ["keeper", PROTOCOL_TREASURY, POOL_WALLET]
        for unit in pool.tokens.units
    }
    return (
        dict(pool.markets),
        dict(pool.positions),
        balances,
        len(pool.operation_log),
        pool.risk.checkpoint()['snapshots'],
        env.liquidations.get_statistics(),
    )
