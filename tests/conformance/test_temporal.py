"""
Temporal Conformance Tests

INVARIANT: Time only moves forward, and what accrues with it never shrinks.

    ∀ market m, t1 ≤ t2:
        supply_index(m, t1) ≤ supply_index(m, t2)
        borrow_index(m, t1) ≤ borrow_index(m, t2)
        total_reserves(m, t1) ≤ total_reserves(m, t2)
        last_accrual(m, t1) ≤ last_accrual(m, t2)

    The operation log is ordered by sequence and by timestamp, and the clock
    refuses to move backwards.
"""

import pytest
from hypothesis import given, settings, HealthCheck
from datetime import timedelta

from tests.scenarios import START, build_env, make_borrower
from tests.conformance.strategies import operations, fund_accounts, apply_operation


def market_marks(pool):
    return {
        asset: (m.supply_index, m.borrow_index, m.total_reserves, m.last_accrual)
        for asset, m in pool.markets.items()
    }


class TestMonotonicity:

    @given(operations())
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_indices_and_reserves_never_decrease(self, ops):
        """
        PROPERTY: Indices, reserves and last_accrual are non-decreasing.
        """
        env = build_env()
        make_borrower(env)
        fund_accounts(env)
        marks = market_marks(env.pool)
        for op in ops:
            apply_operation(env, op)
            current = market_marks(env.pool)
            for asset, (supply_index, borrow_index, reserves, updated) in current.items():
                before = marks[asset]
                assert supply_index >= before[0], (asset, op)
                assert borrow_index >= before[1], (asset, op)
                assert reserves >= before[2], (asset, op)
                assert updated >= before[3], (asset, op)
            marks = current

    @given(operations())
    @settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_operation_log_is_ordered(self, ops):
        """
        PROPERTY: Log records are ordered by sequence and timestamp.
        """
        env = build_env()
        fund_accounts(env)
        for op in ops:
            apply_operation(env, op)
        log = env.pool.operation_log
        for earlier, later in zip(log, log[1:]):
            assert earlier.sequence < later.sequence
            assert earlier.timestamp <= later.timestamp


class TestClock:

    def test_clock_cannot_go_backwards(self, pool):
        pool.advance_time(START + timedelta(days=1))
        with pytest.raises(ValueError):
            pool.advance_time(START)
        assert pool.current_time == START + timedelta(days=1)

    def test_borrow_index_grows_with_time(self, borrower_env):
        pool = borrower_env.pool
        indices = []
        for day in (1, 2, 30, 365):
            pool.advance_time(START + timedelta(days=day))
            pool.accrue_all()
            indices.append(pool.get_market("USDC").borrow_index)
        assert indices == sorted(indices)
        assert len(set(indices)) == len(indices)
