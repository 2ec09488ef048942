"""
tokens.py - Double-entry token ledger for underlying, receipt and debt tokens

The TokenLedger holds every token balance the lending core touches:
    - underlying assets (USDC, WETH, ...) held by users and by POOL_WALLET
    - receipt tokens (<asset>-supply) mirroring supply shares
    - debt tokens (<asset>-debt) mirroring borrow shares

Receipt and debt tokens are issued from and redeemed to SYSTEM_WALLET, so for
every unit the sum of balances over all wallets (system included) is zero.

Moves are produced by DerivativeToken / UnderlyingToken handles and collected
by the pool during a transaction. TokenLedger.execute() applies a batch
atomically: every move is validated against the resulting balances first and
nothing is applied if any wallet would go negative.
"""

from __future__ import annotations
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Set, Sequence, Tuple, Any

from .core import (
    Move,
    SYSTEM_WALLET, POOL_WALLET, ZERO,
    InsufficientBalance, ValidationError,
    receipt_token_symbol, debt_token_symbol,
)


TOKEN_KIND_UNDERLYING = "UNDERLYING"
TOKEN_KIND_RECEIPT = "RECEIPT"
TOKEN_KIND_DEBT = "DEBT"


class TokenLedger:
    """
    Double-entry ledger of token balances with atomic batch execution.

    Wallets are implicit: any wallet id may receive tokens. SYSTEM_WALLET is
    exempt from the non-negative balance rule.

    Example:
        tokens = TokenLedger("main")
        tokens.register_unit("USDC", TOKEN_KIND_UNDERLYING)
        tokens.issue("alice", "USDC", Decimal("1000"))
        tokens.execute([Move(Decimal("10"), "USDC", "alice", "bob", "payment")])
    """

    def __init__(self, name: str = "tokens", verbose: bool = False):
        self.name = name
        self.verbose = verbose
        self.units: Dict[str, str] = {}
        self.balances: Dict[str, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
        self.move_log: List[Tuple[Move, ...]] = []

    # ========================================================================
    # READS
    # ========================================================================

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        self._require_unit(unit_symbol)
        return self.balances[wallet_id][unit_symbol]

    def total_supply(self, unit_symbol: str) -> Decimal:
        """Circulating supply: sum of every non-system balance."""
        self._require_unit(unit_symbol)
        return sum(
            (bals.get(unit_symbol, ZERO) for w, bals in sorted(self.balances.items()) if w != SYSTEM_WALLET),
            ZERO,
        )

    def list_wallets(self) -> Set[str]:
        return set(self.balances.keys())

    def verify_double_entry(self) -> Dict[str, Any]:
        """
        Check that every unit's balances, system wallet included, sum to zero.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'supplies': circulating supply per unit
            - 'discrepancies': units whose full sum is non-zero
        """
        supplies = {}
        discrepancies = []
        for unit_symbol in self.units:
            supplies[unit_symbol] = self.total_supply(unit_symbol)
            full = sum((bals.get(unit_symbol, ZERO) for bals in self.balances.values()), ZERO)
            if full != 0:
                discrepancies.append({'unit': unit_symbol, 'net': full})
        return {'valid': not discrepancies, 'supplies': supplies, 'discrepancies': discrepancies}

    # ========================================================================
    # REGISTRATION / ISSUANCE
    # ========================================================================

    def register_unit(self, unit_symbol: str, kind: str) -> None:
        if kind not in (TOKEN_KIND_UNDERLYING, TOKEN_KIND_RECEIPT, TOKEN_KIND_DEBT):
            raise ValueError(f"Unknown token kind: {kind}")
        if unit_symbol in self.units:
            raise ValueError(f"Unit already registered: {unit_symbol}")
        self.units[unit_symbol] = kind
        if self.verbose:
            print(f"📝 Registered token: {unit_symbol} [{kind}]")

    def issue(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Credit underlying to a wallet from SYSTEM_WALLET (faucet / bridge-in)."""
        self.execute([Move(quantity, unit_symbol, SYSTEM_WALLET, wallet_id, "issue")])

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def validate(self, moves: Sequence[Move]) -> None:
        """
        Validate a batch of moves against the balances it would produce.

        Raises:
            ValidationError: If a unit is not registered
            InsufficientBalance: If any non-system wallet would go negative
        """
        net: Dict[Tuple[str, str], Decimal] = {}
        for move in moves:
            self._require_unit(move.unit_symbol)
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = net.get(key_src, ZERO) - move.quantity
            net[key_dst] = net.get(key_dst, ZERO) + move.quantity

        for (wallet, unit_symbol), delta in sorted(net.items()):
            if wallet == SYSTEM_WALLET:
                continue
            proposed = self.balances[wallet][unit_symbol] + delta
            if proposed < 0:
                raise InsufficientBalance(
                    f"{wallet} {unit_symbol}: balance {self.balances[wallet][unit_symbol]} "
                    f"cannot cover {-delta}"
                )

    def execute(self, moves: Sequence[Move]) -> None:
        """
        Apply a batch of moves atomically: all of them or none.

        Raises:
            ValidationError / InsufficientBalance: batch rejected, no balance changed
        """
        if not moves:
            return
        try:
            self.validate(moves)
        except ValidationError as e:
            if self.verbose:
                print(f"✗ REJECTED: {e}")
            raise
        for move in moves:
            self.balances[move.source][move.unit_symbol] -= move.quantity
            self.balances[move.dest][move.unit_symbol] += move.quantity
        self.move_log.append(tuple(moves))

    def _require_unit(self, unit_symbol: str) -> None:
        if unit_symbol not in self.units:
            raise ValidationError(f"Token {unit_symbol} not registered")

    def __repr__(self) -> str:
        return f"TokenLedger({self.name!r}, {len(self.units)} units, {len(self.balances)} wallets)"


# ============================================================================
# TOKEN HANDLES
# ============================================================================

class UnderlyingToken:
    """Pull/push handle for an asset's underlying token."""

    def __init__(self, ledger: TokenLedger, asset: str):
        self.ledger = ledger
        self.asset = asset

    def pull(self, account: str, amount: Decimal, reference: str) -> Move:
        """Move underlying from the account into pool custody."""
        return Move(amount, self.asset, account, POOL_WALLET, reference)

    def push(self, account: str, amount: Decimal, reference: str) -> Move:
        """Move underlying from pool custody to the account."""
        return Move(amount, self.asset, POOL_WALLET, account, reference)

    def balance_of(self, account: str) -> Decimal:
        return self.ledger.get_balance(account, self.asset)


class DerivativeToken:
    """
    Receipt or debt token mirroring share balances of one market.

    mint/burn/transfer_from return moves rather than applying them; the pool
    commits them together with the rest of the operation.
    """

    def __init__(self, ledger: TokenLedger, asset: str, kind: str):
        if kind == TOKEN_KIND_RECEIPT:
            self.symbol = receipt_token_symbol(asset)
        elif kind == TOKEN_KIND_DEBT:
            self.symbol = debt_token_symbol(asset)
        else:
            raise ValueError(f"DerivativeToken kind must be RECEIPT or DEBT, got {kind}")
        self.ledger = ledger
        self.asset = asset
        self.kind = kind

    def mint(self, account: str, shares: Decimal, reference: str) -> Move:
        return Move(shares, self.symbol, SYSTEM_WALLET, account, reference)

    def burn(self, account: str, shares: Decimal, reference: str) -> Move:
        return Move(shares, self.symbol, account, SYSTEM_WALLET, reference)

    def transfer_from(self, source: str, dest: str, shares: Decimal, reference: str) -> Move:
        return Move(shares, self.symbol, source, dest, reference)

    def total_supply(self) -> Decimal:
        return self.ledger.total_supply(self.symbol)

    def balance_of(self, account: str) -> Decimal:
        return self.ledger.get_balance(account, self.symbol)

    def __repr__(self) -> str:
        return f"DerivativeToken({self.symbol})"


def register_market_tokens(ledger: TokenLedger, asset: str) -> Tuple[UnderlyingToken, DerivativeToken, DerivativeToken]:
    """
    Register the token triple for a newly listed market.

    The underlying unit may already exist (e.g. funded before listing).
    """
    if asset not in ledger.units:
        ledger.register_unit(asset, TOKEN_KIND_UNDERLYING)
    ledger.register_unit(receipt_token_symbol(asset), TOKEN_KIND_RECEIPT)
    ledger.register_unit(debt_token_symbol(asset), TOKEN_KIND_DEBT)
    return (
        UnderlyingToken(ledger, asset),
        DerivativeToken(ledger, asset, TOKEN_KIND_RECEIPT),
        DerivativeToken(ledger, asset, TOKEN_KIND_DEBT),
    )
