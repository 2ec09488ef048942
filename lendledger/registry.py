"""
registry.py - Dense account registries with O(1) insert and remove

Used for the at-risk set (RiskEngine) and the liquidatable-position set
(LiquidationEngine). Members live in a dense list; an index map records each
member's slot so removal swaps the last member into the hole and pops.
Iteration order is insertion order until a removal reorders the tail.
"""

from __future__ import annotations
from typing import Dict, Iterator, List, Tuple


class AccountRegistry:
    """
    Dense array + index map of account ids.

    Example:
        reg = AccountRegistry()
        reg.add("alice")
        reg.add("bob")
        reg.remove("alice")   # bob moves into slot 0
        reg.page(0, 10)       # (["bob"], 1)
    """

    def __init__(self):
        self._members: List[str] = []
        self._index: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, account: object) -> bool:
        return account in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._members))

    def add(self, account: str) -> bool:
        """Insert an account. Returns False if it was already present."""
        if account in self._index:
            return False
        self._index[account] = len(self._members)
        self._members.append(account)
        return True

    def remove(self, account: str) -> bool:
        """Remove an account by swapping the last member into its slot."""
        slot = self._index.pop(account, None)
        if slot is None:
            return False
        last = self._members.pop()
        if last != account:
            self._members[slot] = last
            self._index[last] = slot
        return True

    def set_membership(self, account: str, member: bool) -> None:
        if member:
            self.add(account)
        else:
            self.remove(account)

    def page(self, offset: int, limit: int) -> Tuple[List[str], int]:
        """
        Paginated slice of members.

        Returns:
            (members in [offset, offset + limit), total member count)

        Raises:
            ValueError: If offset or limit is negative
        """
        if offset < 0 or limit < 0:
            raise ValueError(f"offset and limit must be non-negative, got {offset}, {limit}")
        return self._members[offset:offset + limit], len(self._members)

    def snapshot(self) -> Tuple[List[str], Dict[str, int]]:
        return list(self._members), dict(self._index)

    def restore(self, state: Tuple[List[str], Dict[str, int]]) -> None:
        members, index = state
        self._members = list(members)
        self._index = dict(index)

    def check_integrity(self) -> bool:
        """Every member's recorded slot points back at it."""
        if len(self._members) != len(self._index):
            return False
        return all(self._members[i] == a for a, i in self._index.items())

    def __repr__(self) -> str:
        return f"AccountRegistry({len(self._members)} accounts)"
