"""
Core types and pure functions for the lending ledger.

This module provides the foundational data structures shared by every engine:
1. Decimal context and protocol-wide constants
2. Exceptions: LendingError and the ValidationError / RiskError / OracleError /
   PermissionDenied taxonomy
3. Capability model: CallerContext checked once at each entry boundary
4. Logical clock shared by the pool and the price feed
5. Immutable data structures: Move, RiskParameters, Market, AccountPosition,
   PortfolioSnapshot, OperationRecord
6. Share math: pure conversions between underlying amounts and shares with an
   explicit rounding direction
7. Protocols: PoolView for read-only access by the engines

All functions in this module are pure. Nothing here mutates pool state.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
from typing import (
    Dict, List, Optional, Any, Protocol, Tuple, FrozenSet, Iterable,
    runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All money, shares, prices, rates and indices are Decimals evaluated under
# one global context so every engine produces identical results.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
# Context parameters:
#   - prec=50: enough headroom for 18-place amounts multiplied by indices
#   - rounding=ROUND_HALF_EVEN: default for intermediate math; every stored
#     amount is quantized with an explicit direction instead
#
_LENDING_DECIMAL_CONTEXT = getcontext()
_LENDING_DECIMAL_CONTEXT.prec = 50
_LENDING_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Fixed-point quantum: amounts and shares carry 18 decimal places (1e18 scale).
WAD_PLACES = 18
WAD = Decimal("1e-18")

SECONDS_PER_YEAR = Decimal(365 * 86400)
BPS = Decimal("10000")

INFINITY = Decimal("Infinity")
ZERO = Decimal("0")
ONE = Decimal("1")

# Health factor below which a position may be liquidated.
LIQUIDATION_THRESHOLD = Decimal("1.0")

# Health factor below which an account is tracked in the at-risk registry.
AT_RISK_HEALTH_FACTOR = Decimal("1.5")

# Lower bounds of risk levels 1..4; anything below the last bound is level 5.
RISK_LEVEL_THRESHOLDS = (
    Decimal("1.50"),
    Decimal("1.25"),
    Decimal("1.10"),
    Decimal("1.05"),
)
MAX_RISK_LEVEL = 5

# Reserved wallets in the token ledger.
SYSTEM_WALLET = "system"        # issuance/redemption of receipt and debt tokens
POOL_WALLET = "pool"            # custody of pooled underlying
PROTOCOL_TREASURY = "protocol"  # receives liquidation protocol fees as shares

# Rounding direction per flow. Anything credited to a user rounds down,
# anything charged to a user rounds up.
DECIMAL_ROUNDING = {
    'MINT_SHARES': ROUND_DOWN,
    'BURN_SHARES': ROUND_UP,
    'DEBT_SHARES': ROUND_UP,
    'PAYOUT': ROUND_DOWN,
    'DEBT_OWED': ROUND_UP,
    'SUPPLY_TOTAL': ROUND_DOWN,
    'BORROW_TOTAL': ROUND_UP,
}

# Protocol defaults
DEFAULT_LIQUIDATION_THRESHOLD = Decimal("0.85")
DEFAULT_LIQUIDATION_BONUS = Decimal("0.05")
DEFAULT_BORROW_FACTOR = Decimal("0.75")
DEFAULT_MIN_HEALTH_FACTOR_FOR_BORROW = Decimal("1.1")


# ============================================================================
# TYPE ALIASES
# ============================================================================

# asset -> USD price
PriceMap = Dict[str, Decimal]

# asset -> signed relative price shock (e.g. -0.30 for a 30% drop)
ShockMap = Dict[str, Decimal]


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """Base exception for all lending-core errors."""
    pass


class ProtocolPaused(LendingError):
    """Raised by every state-changing entry point while the global pause is set."""
    pass


class PermissionDenied(LendingError):
    """Raised when a caller lacks the capability an entry point requires."""
    pass


# --- Validation errors: rejected before touching state ----------------------

class ValidationError(LendingError):
    """Malformed request or a market/cap condition that rejects the request."""
    pass


class InvalidAmount(ValidationError):
    pass


class MarketNotListed(ValidationError):
    pass


class MarketAlreadyListed(ValidationError):
    pass


class MarketInactive(ValidationError):
    pass


class MarketFrozen(ValidationError):
    pass


class SupplyCapExceeded(ValidationError):
    pass


class BorrowCapExceeded(ValidationError):
    pass


class InsufficientShares(ValidationError):
    pass


class InsufficientLiquidity(ValidationError):
    """Raised when the pool does not hold enough idle underlying."""
    pass


class InsufficientBalance(ValidationError):
    """Raised when a wallet cannot cover a token move."""
    pass


class BatchLengthMismatch(ValidationError):
    pass


class EmptyBatch(ValidationError):
    pass


class LiquidationConfigInactive(ValidationError):
    pass


# --- Risk errors: caller-visible reason, state untouched ---------------------

class RiskError(LendingError):
    """A health-factor or liquidation rule rejects the request."""
    pass


class HealthFactorTooLow(RiskError):
    pass


class PositionNotLiquidatable(RiskError):
    pass


class LiquidationTooSmall(RiskError):
    pass


class LiquidationTooLarge(RiskError):
    pass


class LiquidationExceedsDebt(RiskError):
    pass


class InsufficientCollateral(RiskError):
    pass


class LiquidationWorsensHealth(RiskError):
    pass


class SlippageTooHigh(RiskError):
    pass


class LiquidationsPaused(RiskError):
    pass


class EmergencyLiquidationsHalted(RiskError):
    pass


class NotInMicroLiquidationBand(RiskError):
    pass


class TooManyMicroLiquidations(RiskError):
    pass


# --- Oracle errors: fatal for any operation that needs the price -------------

class OracleError(LendingError):
    """No usable price for an asset the operation depends on."""
    pass


class PriceUnavailable(OracleError):
    pass


class PriceStale(OracleError):
    pass


class CircuitBreakerTripped(OracleError):
    pass


class PriceUpdatesPaused(OracleError):
    pass


class PriceDeviationTooLarge(OracleError):
    pass


# ============================================================================
# CAPABILITIES
# ============================================================================

class Capability(Enum):
    """
    Permissions a caller may hold.

    ADMIN: market listing, parameter changes, pause
    EMERGENCY: emergency rate/liquidation modes, kill switch, price overrides
    OPERATOR: act on behalf of another account
    SETTLEMENT: apply validated liquidations to a pool (held by its LiquidationEngine)
    """
    ADMIN = "admin"
    EMERGENCY = "emergency"
    OPERATOR = "operator"
    SETTLEMENT = "settlement"


@dataclass(frozen=True, slots=True)
class CallerContext:
    """
    Identity and capabilities of whoever invokes an entry point.

    The context is checked once at the entry boundary, before the pause flag
    and before any other validation.
    """
    caller: str
    capabilities: FrozenSet[Capability] = frozenset()

    def __post_init__(self):
        if not self.caller or not self.caller.strip():
            raise ValueError("CallerContext caller cannot be empty")
        if not isinstance(self.capabilities, frozenset):
            object.__setattr__(self, 'capabilities', frozenset(self.capabilities))

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, *capabilities: Capability) -> None:
        """
        Require at least one of the given capabilities.

        Raises:
            PermissionDenied: If the caller holds none of them.
        """
        if not any(c in self.capabilities for c in capabilities):
            names = ", ".join(c.value for c in capabilities)
            raise PermissionDenied(f"{self.caller} lacks capability: {names}")

    def require_account(self, account: str) -> None:
        """Allow acting on `account` only as that account or as an operator."""
        if self.caller != account and Capability.OPERATOR not in self.capabilities:
            raise PermissionDenied(f"{self.caller} cannot act for {account}")

    @classmethod
    def for_account(cls, account: str) -> CallerContext:
        return cls(caller=account)

    @classmethod
    def admin(cls, caller: str = "admin") -> CallerContext:
        return cls(caller=caller, capabilities=frozenset({Capability.ADMIN, Capability.EMERGENCY}))


# ============================================================================
# LOGICAL CLOCK
# ============================================================================

class Clock:
    """
    Logical clock shared by the pool and the price feed.

    Time can only move forward. Nothing in the core reads wall-clock time.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._now: datetime = initial_time or datetime(1970, 1, 1)

    def now(self) -> datetime:
        return self._now

    def advance(self, new_time: datetime) -> None:
        """
        Advance to a new time.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._now:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._now}")
        self._now = new_time

    def __repr__(self) -> str:
        return f"Clock({self._now.isoformat()})"


def elapsed_seconds(start: datetime, end: datetime) -> Decimal:
    """Whole seconds between two timestamps (never negative)."""
    seconds = int((end - start).total_seconds())
    return Decimal(max(seconds, 0))


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Convert int/float/str to Decimal via str() so floats keep their printed value."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_amount(value: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
    """Quantize to the 18-place fixed-point grid with an explicit direction."""
    if value.is_infinite():
        return value
    return value.quantize(WAD, rounding=rounding)


# ============================================================================
# SHARE MATH
# ============================================================================
#
# shares = total_shares == 0 ? amount : amount * total_shares / total_underlying
# amount = shares * total_underlying / total_shares
#
# The direction argument decides which side absorbs the rounding dust.

def calculate_shares(
    amount: Decimal,
    total_shares: Decimal,
    total_underlying: Decimal,
    rounding: str = ROUND_DOWN,
) -> Decimal:
    """
    Convert an underlying amount to shares at the market's current totals.

    An empty market (no shares, or shares backed by nothing) mints 1:1.

    Args:
        amount: Underlying amount
        total_shares: Shares outstanding
        total_underlying: Underlying those shares represent
        rounding: ROUND_DOWN when crediting shares, ROUND_UP when charging them

    Returns:
        Share amount quantized to WAD
    """
    if total_shares == 0 or total_underlying == 0:
        return quantize_amount(amount, rounding)
    return quantize_amount(amount * total_shares / total_underlying, rounding)


def calculate_amount(
    shares: Decimal,
    total_shares: Decimal,
    total_underlying: Decimal,
    rounding: str = ROUND_DOWN,
) -> Decimal:
    """Convert shares back to underlying (redeem direction)."""
    if total_shares == 0:
        return ZERO
    return quantize_amount(shares * total_underlying / total_shares, rounding)


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single token transfer between two wallets of the token ledger.

    Attributes:
        quantity: Amount to transfer (finite, strictly positive)
        unit_symbol: Token moved (underlying, receipt or debt token)
        source: Wallet debited
        dest: Wallet credited
        reference: Operation that generated the move
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    reference: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class RiskParameters:
    """
    Per-asset risk configuration, mutated only by an admin.

    Attributes:
        liquidation_threshold: Share of collateral value counted toward the
            health factor (0 < t <= 1)
        liquidation_bonus: Premium paid to liquidators seizing this collateral
        borrow_factor: Share of collateral value that may be borrowed against
            (loan-to-value); never above the liquidation threshold
        supply_cap: Maximum total supplied underlying (None = unlimited)
        borrow_cap: Maximum total borrowed underlying (None = unlimited)
        is_frozen: Frozen markets reject every user operation
    """
    liquidation_threshold: Decimal = DEFAULT_LIQUIDATION_THRESHOLD
    liquidation_bonus: Decimal = DEFAULT_LIQUIDATION_BONUS
    borrow_factor: Decimal = DEFAULT_BORROW_FACTOR
    supply_cap: Optional[Decimal] = None
    borrow_cap: Optional[Decimal] = None
    is_frozen: bool = False

    def __post_init__(self):
        for name in ('liquidation_threshold', 'liquidation_bonus', 'borrow_factor'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        for name in ('supply_cap', 'borrow_cap'):
            value = getattr(self, name)
            if value is not None:
                value = to_decimal(value)
                if value < 0:
                    raise ValueError(f"{name} cannot be negative, got {value}")
                object.__setattr__(self, name, value)

        if not (ZERO < self.liquidation_threshold <= ONE):
            raise ValueError(f"liquidation_threshold must be in (0, 1], got {self.liquidation_threshold}")
        if not (ZERO <= self.liquidation_bonus < ONE):
            raise ValueError(f"liquidation_bonus must be in [0, 1), got {self.liquidation_bonus}")
        if not (ZERO <= self.borrow_factor <= self.liquidation_threshold):
            raise ValueError(
                f"borrow_factor must be in [0, liquidation_threshold], got {self.borrow_factor}"
            )


@dataclass(frozen=True, slots=True)
class Market:
    """
    Pooled state of one listed asset. Owned exclusively by the LendingPool.

    Totals and indices change only through accrual and the share-mutating
    operations. Every change produces a new instance via dataclasses.replace().

    Attributes:
        asset: Underlying asset symbol
        total_supply: Underlying owed to suppliers (grows with supply interest)
        total_borrow: Underlying owed by borrowers (grows with borrow interest)
        total_supply_shares: Receipt shares outstanding
        total_borrow_shares: Debt shares outstanding
        total_reserves: Interest retained by the protocol (reserve factor)
        supply_index: Cumulative supply growth factor, starts at 1
        borrow_index: Cumulative borrow growth factor, starts at 1
        borrow_rate: Annualized borrow rate applied at the last accrual
        supply_rate: Annualized supply rate applied at the last accrual
        last_accrual: Timestamp of the last accrual
        risk: Per-asset risk configuration
        is_active: Inactive markets reject every user operation
        is_native: Network-native asset (repay refunds overpayment)
    """
    asset: str
    last_accrual: datetime
    risk: RiskParameters = field(default_factory=RiskParameters)
    total_supply: Decimal = ZERO
    total_borrow: Decimal = ZERO
    total_supply_shares: Decimal = ZERO
    total_borrow_shares: Decimal = ZERO
    total_reserves: Decimal = ZERO
    supply_index: Decimal = ONE
    borrow_index: Decimal = ONE
    borrow_rate: Decimal = ZERO
    supply_rate: Decimal = ZERO
    is_active: bool = True
    is_native: bool = False

    @property
    def supply_cap(self) -> Optional[Decimal]:
        return self.risk.supply_cap

    @property
    def borrow_cap(self) -> Optional[Decimal]:
        return self.risk.borrow_cap

    @property
    def liquidation_threshold(self) -> Decimal:
        return self.risk.liquidation_threshold

    @property
    def liquidation_bonus(self) -> Decimal:
        return self.risk.liquidation_bonus

    @property
    def is_frozen(self) -> bool:
        return self.risk.is_frozen

    @property
    def receipt_symbol(self) -> str:
        return receipt_token_symbol(self.asset)

    @property
    def debt_symbol(self) -> str:
        return debt_token_symbol(self.asset)

    def utilization(self) -> Decimal:
        """total_borrow / total_supply, 0 when nothing is supplied."""
        return calculate_utilization(self.total_supply, self.total_borrow)

    def available_liquidity(self) -> Decimal:
        """Idle underlying held by the pool: supply + reserves - borrows."""
        return max(self.total_supply + self.total_reserves - self.total_borrow, ZERO)

    def supply_shares_to_amount(self, shares: Decimal) -> Decimal:
        return calculate_amount(shares, self.total_supply_shares, self.total_supply,
                                DECIMAL_ROUNDING['PAYOUT'])

    def borrow_shares_to_amount(self, shares: Decimal) -> Decimal:
        return calculate_amount(shares, self.total_borrow_shares, self.total_borrow,
                                DECIMAL_ROUNDING['DEBT_OWED'])


@dataclass(frozen=True, slots=True)
class AccountPosition:
    """
    Shares one account holds in one market.

    Created implicitly on the first non-zero share and never deleted;
    balances settle to zero instead.
    """
    account: str
    asset: str
    supply_shares: Decimal = ZERO
    borrow_shares: Decimal = ZERO

    @property
    def is_empty(self) -> bool:
        return self.supply_shares == 0 and self.borrow_shares == 0


@dataclass(frozen=True, slots=True)
class PortfolioSnapshot:
    """
    Cached risk view of one account, derived from positions, markets and prices.

    Attributes:
        account: Account id
        total_collateral_usd: Sum of supplied value in USD
        total_debt_usd: Sum of borrowed value in USD
        weighted_collateral_usd: Sum of collateral USD x liquidation threshold
        health_factor: weighted_collateral_usd / total_debt_usd (infinite without debt)
        is_liquidatable: health_factor < LIQUIDATION_THRESHOLD
        risk_level: 1 (safest) .. 5 (critical)
        last_update: Pool time of the computation
    """
    account: str
    total_collateral_usd: Decimal
    total_debt_usd: Decimal
    weighted_collateral_usd: Decimal
    health_factor: Decimal
    is_liquidatable: bool
    risk_level: int
    last_update: datetime

    @property
    def liquidation_threshold(self) -> Decimal:
        """Collateral-value-weighted liquidation threshold of the account."""
        if self.total_collateral_usd == 0:
            return ZERO
        return self.weighted_collateral_usd / self.total_collateral_usd


@dataclass(frozen=True, slots=True)
class OperationRecord:
    """
    Immutable audit-trail entry for a committed pool operation.

    Attributes:
        sequence: Monotonic sequence within the pool
        exec_id: Unique execution id (pool name + sequence + time)
        operation: SUPPLY, WITHDRAW, BORROW, REPAY, LIQUIDATION, ...
        account: Account acted upon
        asset: Asset touched (the debt asset for liquidations)
        amount: Underlying amount actually applied
        shares: Shares minted or burned for the account
        timestamp: Pool time at execution
        moves: Token moves committed with the operation
        details: Extra operation-specific values
    """
    sequence: int
    exec_id: str
    operation: str
    account: str
    asset: str
    amount: Decimal
    shares: Decimal
    timestamp: datetime
    moves: Tuple[Move, ...] = ()
    details: Optional[Dict[str, Any]] = None

    def __repr__(self) -> str:
        w = 88  # inner content width
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' ' + self.operation + ': ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   account   : ' + self.account)}│",
            f"│{pad('   asset     : ' + self.asset)}│",
            f"│{pad('   amount    : ' + str(self.amount))}│",
            f"│{pad('   shares    : ' + str(self.shares))}│",
            f"│{pad('   timestamp : ' + str(self.timestamp))}│",
        ]
        if self.details:
            for key, value in self.details.items():
                lines.append(f"│{pad(f'   {key:<10}: {value}')}│")
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            lines.append(f"│{pad(f'   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


# ============================================================================
# PURE HELPERS
# ============================================================================

def receipt_token_symbol(asset: str) -> str:
    return f"{asset}-supply"


def debt_token_symbol(asset: str) -> str:
    return f"{asset}-debt"


def calculate_utilization(total_supply: Decimal, total_borrow: Decimal) -> Decimal:
    if total_supply <= 0:
        return ZERO
    return total_borrow / total_supply


def calculate_health_factor(weighted_collateral_usd: Decimal, total_debt_usd: Decimal) -> Decimal:
    """
    HF = sum(collateral_usd_i * liquidation_threshold_i) / total_debt_usd.

    Returns Decimal('Infinity') iff the debt is zero.
    """
    if total_debt_usd <= 0:
        return INFINITY
    return weighted_collateral_usd / total_debt_usd


def calculate_risk_level(health_factor: Decimal) -> int:
    """Bucket a health factor into risk levels 1 (safest) .. 5 (critical)."""
    for level, bound in enumerate(RISK_LEVEL_THRESHOLDS, start=1):
        if health_factor >= bound:
            return level
    return MAX_RISK_LEVEL


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class PoolView(Protocol):
    """
    Read-only view of pool state consumed by the rate, risk and liquidation engines.

    The LendingPool implements this protocol. Engines never mutate markets or
    positions through it.
    """

    @property
    def current_time(self) -> datetime:
        ...

    def get_market(self, asset: str) -> Market:
        ...

    def list_markets(self) -> List[str]:
        ...

    def get_position(self, account: str, asset: str) -> AccountPosition:
        ...

    def account_assets(self, account: str) -> List[str]:
        ...

    def list_accounts(self) -> Iterable[str]:
        ...
