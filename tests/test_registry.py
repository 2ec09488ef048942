"""
test_registry.py - Tests for the dense account registry (swap-and-pop)
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from lendledger import AccountRegistry


class TestAccountRegistry:

    def test_add_and_contains(self):
        reg = AccountRegistry()
        assert reg.add("alice")
        assert not reg.add("alice")
        assert "alice" in reg
        assert len(reg) == 1

    def test_remove_swaps_last_into_hole(self):
        reg = AccountRegistry()
        for account in ("a", "b", "c"):
            reg.add(account)
        assert reg.remove("a")
        assert list(reg) == ["c", "b"]
        assert reg.check_integrity()

    def test_remove_missing_returns_false(self):
        reg = AccountRegistry()
        assert not reg.remove("ghost")

    def test_set_membership(self):
        reg = AccountRegistry()
        reg.set_membership("alice", True)
        reg.set_membership("alice", True)
        assert len(reg) == 1
        reg.set_membership("alice", False)
        assert len(reg) == 0

    def test_page(self):
        reg = AccountRegistry()
        for i in range(5):
            reg.add(f"acct_{i}")
        members, total = reg.page(1, 2)
        assert members == ["acct_1", "acct_2"]
        assert total == 5
        assert reg.page(10, 5) == ([], 5)

    def test_negative_page_raises(self):
        with pytest.raises(ValueError):
            AccountRegistry().page(-1, 10)

    def test_snapshot_restore(self):
        reg = AccountRegistry()
        reg.add("alice")
        saved = reg.snapshot()
        reg.add("bob")
        reg.remove("alice")
        reg.restore(saved)
        assert list(reg) == ["alice"]
        assert reg.check_integrity()

    def test_iteration_is_a_copy(self):
        reg = AccountRegistry()
        reg.add("a")
        reg.add("b")
        for account in reg:
            reg.remove(account)
        assert len(reg) == 0


class TestRegistryProperties:

    @given(st.lists(st.tuples(st.booleans(), st.integers(min_value=0, max_value=15)), max_size=200))
    @settings(max_examples=100)
    def test_matches_a_set(self, ops):
        """
        PROPERTY: After any add/remove sequence, members equal the reference
        set and every index points back at its member.
        """
        reg = AccountRegistry()
        reference = set()
        for add, n in ops:
            account = f"acct_{n}"
            reg.set_membership(account, add)
            if add:
                reference.add(account)
            else:
                reference.discard(account)
        assert set(reg) == reference
        assert len(reg) == len(reference)
        assert reg.check_integrity()
