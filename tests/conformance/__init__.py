"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending core.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Custody, share and double-entry invariants
2. atomicity.py - All-or-nothing operation semantics
3. idempotency.py - Accrual at most once per timestamp, unique execution ids
4. determinism.py - Reproducible behavior
5. temporal.py - Monotone indices and reserves, ordered operation log
6. liquidation_safety.py - Liquidations never hurt the borrower's health
7. concurrency.py - Serializable entry points under threads

These tests use hypothesis for property-based testing.
"""
