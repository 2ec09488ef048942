"""
Conservation Conformance Tests

INVARIANT: Every market balances after every operation.

    ∀ market m, at all times:
        custody(m) = total_supply(m) + total_reserves(m) - total_borrow(m)
        Σ account shares = recorded share totals = receipt / debt token supply
        Σ redeemable ≤ total_supply,  Σ owed ≤ total_borrow
        total_reserves ≥ 0
        Σ balances of every token unit = 0   (double entry)

Rejected operations are included in the sequences; they must not disturb
any of the above.
"""

from hypothesis import given, settings, HealthCheck
from decimal import Decimal

from tests.scenarios import build_env, make_borrower
from tests.conformance.strategies import operations, fund_accounts, apply_operation


class TestConservationProperties:
    """Property-based conservation tests."""

    @given(operations())
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_random_operations_conserve(self, ops):
        """
        PROPERTY: After any sequence of operations, verify_conservation() is clean.
        """
        env = build_env()
        fund_accounts(env)
        for op in ops:
            apply_operation(env, op)
            result = env.pool.verify_conservation()
            assert result['valid'], (op, result['discrepancies'])

    @given(operations())
    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_conservation_from_open_borrow(self, ops):
        """
        PROPERTY: Conservation holds starting from a book with an open borrow.
        """
        env = build_env()
        make_borrower(env)
        fund_accounts(env)
        for op in ops:
            apply_operation(env, op)
        assert env.pool.verify_conservation()['valid']
        assert env.pool.tokens.verify_double_entry()['valid']


class TestConservationExamples:

    def test_empty_pool_is_balanced(self, pool):
        result = pool.verify_conservation()
        assert result == {'valid': True, 'discrepancies': []}

    def test_tampering_is_detected(self, borrower_env):
        from dataclasses import replace
        pool = borrower_env.pool
        market = pool.get_market("USDC")
        pool.markets["USDC"] = replace(market, total_reserves=market.total_reserves + Decimal("1"))
        result = pool.verify_conservation()
        assert not result['valid']
        assert {d['check'] for d in result['discrepancies']} == {'custody'}
