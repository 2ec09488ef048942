"""
Concurrency Conformance Tests

INVARIANT: Pool entry points are serializable.

    Any interleaving of concurrent calls produces the state of some serial
    order of the calls that succeeded; readers never observe a half-applied
    operation.
"""

import threading
from decimal import Decimal

from lendledger import LendingError, PositionNotLiquidatable, HealthFactorTooLow

from tests.scenarios import build_env, make_underwater, fund, supply_funded


def run_concurrently(*calls):
    """Start every call behind a barrier; returns (results, errors) in call order."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)
    errors = [None] * len(calls)

    def worker(i, call):
        barrier.wait()
        try:
            results[i] = call()
        except LendingError as e:
            errors[i] = e

    threads = [threading.Thread(target=worker, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


class TestConcurrentWriters:

    def test_parallel_supplies_all_land(self):
        env = build_env()
        pool = env.pool
        accounts = [f"user{i}" for i in range(8)]
        for account in accounts:
            fund(pool, account, "USDC", 500)

        def supply_five_times(account):
            def call():
                for _ in range(5):
                    pool.supply(account, "USDC", Decimal("100"))
            return call

        _, errors = run_concurrently(*(supply_five_times(a) for a in accounts))

        assert errors == [None] * len(accounts)
        assert pool.get_market("USDC").total_supply == Decimal("4000")
        assert all(pool.balance_of_underlying(a, "USDC") == Decimal("500") for a in accounts)
        assert [r.sequence for r in pool.operation_log] == list(range(40))
        assert pool.verify_conservation()['valid']

    def test_racing_keepers_liquidate_once(self):
        env = build_env()
        make_underwater(env)
        fund(env.pool, "keeper2", "USDC", 5000)
        liquidations = env.liquidations

        results, errors = run_concurrently(
            lambda: liquidations.liquidate("keeper", "alice", "USDC", Decimal("750"), "WETH"),
            lambda: liquidations.liquidate("keeper2", "alice", "USDC", Decimal("750"), "WETH"),
        )

        assert sum(r is not None for r in results) == 1
        assert [type(e) for e in errors if e is not None] == [PositionNotLiquidatable]
        assert env.pool.balance_of_debt("alice", "USDC") == Decimal("750")
        assert env.pool.verify_conservation()['valid']

    def test_racing_borrows_respect_health(self):
        env = build_env()
        pool = env.pool
        supply_funded(pool, "bob", "USDC", 10000)
        supply_funded(pool, "alice", "WETH", 1)

        results, errors = run_concurrently(
            lambda: pool.borrow("alice", "USDC", Decimal("1000")),
            lambda: pool.borrow("alice", "USDC", Decimal("1000")),
        )

        assert sum(r is not None for r in results) == 1
        assert [type(e) for e in errors if e is not None] == [HealthFactorTooLow]
        assert pool.balance_of_debt("alice", "USDC") == Decimal("1000")


class TestConcurrentReaders:

    def test_readers_see_balanced_pool(self):
        env = build_env()
        pool = env.pool
        supply_funded(pool, "bob", "USDC", 100000)
        supply_funded(pool, "alice", "WETH", 50)
        checks = []

        def writer():
            for _ in range(25):
                pool.borrow("alice", "USDC", Decimal("100"))
                pool.repay("alice", "USDC", Decimal("60"))

        def reader():
            for _ in range(50):
                checks.append(pool.verify_conservation()['valid'])

        _, errors = run_concurrently(writer, reader, reader)

        assert errors == [None, None, None]
        assert len(checks) == 100
        assert all(checks)
        assert pool.balance_of_debt("alice", "USDC") == Decimal("1000")

    def test_lock_gives_consistent_multi_read(self):
        env = build_env()
        pool = env.pool
        supply_funded(pool, "bob", "USDC", 100000)
        supply_funded(pool, "alice", "WETH", 50)
        checks = []

        def writer():
            for _ in range(25):
                pool.borrow("alice", "USDC", Decimal("100"))
                pool.repay("alice", "USDC", Decimal("60"))

        def reader():
            for _ in range(50):
                with pool.lock:
                    # alice is the only borrower
                    total = pool.get_market("USDC").total_borrow
                    owed = pool.balance_of_debt("alice", "USDC")
                checks.append(total == owed)

        _, errors = run_concurrently(writer, reader)

        assert errors == [None, None]
        assert all(checks)
        with pool.lock:
            with pool.lock:
                assert pool.get_market("USDC").total_borrow == Decimal("1000")
