"""
test_tokens.py - Tests for the double-entry token ledger and token handles
"""

import pytest
from decimal import Decimal

from lendledger import (
    TokenLedger, Move, InsufficientBalance, ValidationError,
    TOKEN_KIND_UNDERLYING, TOKEN_KIND_RECEIPT, TOKEN_KIND_DEBT,
    SYSTEM_WALLET, POOL_WALLET,
    DerivativeToken, register_market_tokens,
)


@pytest.fixture
def tokens():
    ledger = TokenLedger("test")
    ledger.register_unit("USDC", TOKEN_KIND_UNDERLYING)
    ledger.issue("alice", "USDC", Decimal("1000"))
    return ledger


class TestTokenLedger:

    def test_issue_debits_system(self, tokens):
        assert tokens.get_balance("alice", "USDC") == Decimal("1000")
        assert tokens.get_balance(SYSTEM_WALLET, "USDC") == Decimal("-1000")
        assert tokens.total_supply("USDC") == Decimal("1000")

    def test_execute_transfers(self, tokens):
        tokens.execute([Move(Decimal("250"), "USDC", "alice", "bob", "pay")])
        assert tokens.get_balance("alice", "USDC") == Decimal("750")
        assert tokens.get_balance("bob", "USDC") == Decimal("250")

    def test_batch_is_all_or_nothing(self, tokens):
        moves = [
            Move(Decimal("500"), "USDC", "alice", "bob", "a"),
            Move(Decimal("600"), "USDC", "alice", "carol", "b"),
        ]
        with pytest.raises(InsufficientBalance):
            tokens.execute(moves)
        assert tokens.get_balance("alice", "USDC") == Decimal("1000")
        assert tokens.get_balance("bob", "USDC") == 0
        assert len(tokens.move_log) == 1

    def test_batch_validates_net_deltas(self, tokens):
        tokens.execute([
            Move(Decimal("1000"), "USDC", "alice", "bob", "a"),
            Move(Decimal("1000"), "USDC", "bob", "carol", "b"),
        ])
        assert tokens.get_balance("carol", "USDC") == Decimal("1000")

    def test_unregistered_unit_raises(self, tokens):
        with pytest.raises(ValidationError, match="not registered"):
            tokens.execute([Move(Decimal("1"), "DAI", "alice", "bob", "x")])

    def test_duplicate_registration_raises(self, tokens):
        with pytest.raises(ValueError, match="already registered"):
            tokens.register_unit("USDC", TOKEN_KIND_UNDERLYING)

    def test_double_entry_holds(self, tokens):
        tokens.execute([Move(Decimal("10"), "USDC", "alice", POOL_WALLET, "x")])
        result = tokens.verify_double_entry()
        assert result['valid']
        assert result['supplies']["USDC"] == Decimal("1000")


class TestTokenHandles:

    def test_register_market_tokens(self, tokens):
        underlying, receipt, debt = register_market_tokens(tokens, "USDC")
        assert receipt.symbol == "USDC-supply"
        assert debt.symbol == "USDC-debt"
        assert tokens.units["USDC-supply"] == TOKEN_KIND_RECEIPT
        assert tokens.units["USDC-debt"] == TOKEN_KIND_DEBT

    def test_moves_are_returned_not_applied(self, tokens):
        underlying, receipt, _ = register_market_tokens(tokens, "USDC")
        pull = underlying.pull("alice", Decimal("100"), "supply")
        mint = receipt.mint("alice", Decimal("100"), "supply")
        assert tokens.get_balance("alice", "USDC") == Decimal("1000")
        tokens.execute([pull, mint])
        assert underlying.balance_of("alice") == Decimal("900")
        assert tokens.get_balance(POOL_WALLET, "USDC") == Decimal("100")
        assert receipt.balance_of("alice") == Decimal("100")
        assert receipt.total_supply() == Decimal("100")

    def test_burn_more_than_held_rejected(self, tokens):
        _, receipt, _ = register_market_tokens(tokens, "USDC")
        with pytest.raises(InsufficientBalance):
            tokens.execute([receipt.burn("alice", Decimal("1"), "withdraw")])

    def test_invalid_kind_raises(self, tokens):
        with pytest.raises(ValueError):
            DerivativeToken(tokens, "USDC", TOKEN_KIND_UNDERLYING)
