"""
risk.py - Health factor, operation gating, at-risk tracking and portfolio analytics

The RiskEngine reads positions and markets through a PoolView and prices
through a PriceFeed. It never mutates pool state; it only keeps derived data:
    - cached PortfolioSnapshots per account
    - the at-risk registry (accounts with HF < 1.5)
    - running system totals for cheap system-wide metrics

Key Formulas:
    HF = sum(collateral_usd_i x liquidation_threshold_i) / total_debt_usd
    HF = +infinity when total_debt_usd == 0
    account liquidation threshold = collateral-value-weighted average of
        the per-asset thresholds
    HHI = sum(share_i^2) over exposure shares
    VaR = collateral x z(confidence) x volatility x sqrt(horizon / year)

Analytics functions (calculate_*) are pure; the engine methods load inputs
from the pool and price feed and delegate to them.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Any

from scipy.stats import norm

from .core import (
    PoolView, PortfolioSnapshot, Market,
    ZERO, ONE, INFINITY, SECONDS_PER_YEAR,
    LIQUIDATION_THRESHOLD, AT_RISK_HEALTH_FACTOR,
    DEFAULT_LIQUIDATION_THRESHOLD, DEFAULT_MIN_HEALTH_FACTOR_FOR_BORROW,
    ShockMap, to_decimal,
    calculate_health_factor, calculate_risk_level,
    InvalidAmount, MarketInactive, MarketFrozen,
    SupplyCapExceeded, BorrowCapExceeded, InsufficientShares,
    HealthFactorTooLow, ValidationError, RiskError,
)
from .price_feed import PriceFeed
from .registry import AccountRegistry


SnapshotListener = Callable[[PortfolioSnapshot], None]


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class AssetExposure:
    asset: str
    collateral_amount: Decimal
    debt_amount: Decimal
    price: Decimal
    collateral_usd: Decimal
    debt_usd: Decimal
    liquidation_threshold: Decimal
    borrow_factor: Decimal


@dataclass(frozen=True, slots=True)
class AccountValues:
    """USD valuation of an account's positions at current (or overridden) prices."""
    account: str
    exposures: Tuple[AssetExposure, ...]
    total_collateral_usd: Decimal
    weighted_collateral_usd: Decimal
    borrowing_power_usd: Decimal
    total_debt_usd: Decimal

    @property
    def health_factor(self) -> Decimal:
        return calculate_health_factor(self.weighted_collateral_usd, self.total_debt_usd)


@dataclass(frozen=True, slots=True)
class StressTestResult:
    scenario: str
    health_factor: Decimal
    is_liquidatable: bool
    collateral_usd: Decimal
    debt_usd: Decimal
    collateral_loss_usd: Decimal
    risk_level: int


@dataclass(frozen=True, slots=True)
class SystemRiskMetrics:
    """
    Attributes:
        accounts_at_risk: Registry size (HF < 1.5)
        average_health_factor: Mean HF over at-risk accounts (None if none)
        total_collateral_usd / total_debt_usd: Sums over cached snapshots
        liquidity_risk: total_debt_usd / total_collateral_usd
        risk_score: 0 (calm) .. 1 (stressed), half liquidity risk, half
            share of borrowers at risk
    """
    accounts_at_risk: int
    average_health_factor: Optional[Decimal]
    total_collateral_usd: Decimal
    total_debt_usd: Decimal
    liquidity_risk: Decimal
    risk_score: Decimal


# ============================================================================
# PURE ANALYTICS
# ============================================================================

def calculate_hhi(exposures: Iterable[Decimal]) -> Decimal:
    """
    Herfindahl-Hirschman Index over non-negative exposures, in [0, 1].

    1 means everything sits in one bucket; 0 means no exposure at all.
    """
    values = [e for e in exposures if e > 0]
    total = sum(values, ZERO)
    if total == 0:
        return ZERO
    return sum(((v / total) ** 2 for v in values), ZERO)


def _z_score(confidence: Decimal) -> float:
    c = float(confidence)
    if not (0.0 < c < 1.0):
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")
    return float(norm.ppf(c))


def _horizon_scale(horizon_seconds: int) -> Decimal:
    if horizon_seconds < 0:
        raise ValueError(f"horizon_seconds cannot be negative, got {horizon_seconds}")
    return (Decimal(horizon_seconds) / SECONDS_PER_YEAR).sqrt()


def calculate_value_at_risk(
    collateral_usd: Decimal,
    confidence: Decimal,
    volatility: Decimal,
    horizon_seconds: int,
) -> Decimal:
    """
    Parametric VaR = collateral x z(confidence) x volatility x sqrt(horizon).

    Args:
        collateral_usd: Position value
        confidence: e.g. 0.95 or 0.99
        volatility: Annualized volatility (0.6 = 60%)
        horizon_seconds: Horizon, converted to years inside the square root
    """
    z = Decimal(str(_z_score(to_decimal(confidence))))
    return collateral_usd * z * to_decimal(volatility) * _horizon_scale(horizon_seconds)


def calculate_conditional_var(
    collateral_usd: Decimal,
    confidence: Decimal,
    volatility: Decimal,
    horizon_seconds: int,
) -> Decimal:
    """Expected shortfall beyond VaR under the same normal model (always >= VaR)."""
    confidence = to_decimal(confidence)
    z = _z_score(confidence)
    tail = Decimal(str(float(norm.pdf(z)) / (1.0 - float(confidence))))
    return collateral_usd * tail * to_decimal(volatility) * _horizon_scale(horizon_seconds)


def correlate_shocks(
    base_shocks: Mapping[str, Decimal],
    correlations: Mapping[str, Mapping[str, Decimal]],
) -> Dict[str, Decimal]:
    """
    Spread base shocks through a correlation matrix.

    shock_i = sum_j corr_ij x base_j (corr_ii = 1), clamped at -100%.
    Assets appearing only in the matrix receive the propagated shock too.
    """
    assets = set(base_shocks)
    for asset, row in correlations.items():
        assets.add(asset)
        assets.update(row)
    result = {}
    for asset in sorted(assets):
        shock = ZERO
        for source, base in base_shocks.items():
            if source == asset:
                corr = ONE
            else:
                corr = to_decimal(correlations.get(asset, {}).get(source,
                                  correlations.get(source, {}).get(asset, ZERO)))
            shock += corr * to_decimal(base)
        result[asset] = max(shock, -ONE)
    return result


# ============================================================================
# ENGINE
# ============================================================================

class RiskEngine:
    """
    Health-factor computation, operation gating and risk analytics.

    Example:
        risk = RiskEngine(pool, feed)
        risk.calculate_health_factor("alice")
        risk.validate_borrow("alice", "USDC", Decimal("500"))
        risk.stress_test("alice", {"WETH": Decimal("-0.3")})
    """

    def __init__(
        self,
        pool: PoolView,
        price_feed: PriceFeed,
        min_health_factor_for_borrow: Decimal = DEFAULT_MIN_HEALTH_FACTOR_FOR_BORROW,
        verbose: bool = False,
    ):
        min_health_factor_for_borrow = to_decimal(min_health_factor_for_borrow)
        if min_health_factor_for_borrow <= LIQUIDATION_THRESHOLD:
            raise ValueError(
                f"min_health_factor_for_borrow must exceed {LIQUIDATION_THRESHOLD}, "
                f"got {min_health_factor_for_borrow}"
            )
        self.pool = pool
        self.price_feed = price_feed
        self.min_health_factor_for_borrow = min_health_factor_for_borrow
        self.verbose = verbose
        self.at_risk = AccountRegistry()
        self._snapshots: Dict[str, PortfolioSnapshot] = {}
        self._borrowers: Set[str] = set()
        self._total_collateral_usd = ZERO
        self._total_debt_usd = ZERO
        self._listeners: List[SnapshotListener] = []

    # ========================================================================
    # VALUATION
    # ========================================================================

    def compute_account_values(
        self,
        account: str,
        supply_deltas: Optional[Mapping[str, Decimal]] = None,
        debt_deltas: Optional[Mapping[str, Decimal]] = None,
        price_overrides: Optional[Mapping[str, Decimal]] = None,
    ) -> AccountValues:
        """
        Value every position of an account.

        Args:
            account: Account id
            supply_deltas: Hypothetical underlying changes to supplied amounts
            debt_deltas: Hypothetical underlying changes to borrowed amounts
            price_overrides: Prices to use instead of the feed (stress tests)

        Raises:
            OracleError: A non-zero position has no valid price
        """
        supply_deltas = supply_deltas or {}
        debt_deltas = debt_deltas or {}
        price_overrides = price_overrides or {}

        assets = set(self.pool.account_assets(account)) | set(supply_deltas) | set(debt_deltas)
        exposures = []
        for asset in sorted(assets):
            market = self.pool.get_market(asset)
            position = self.pool.get_position(account, asset)
            collateral = market.supply_shares_to_amount(position.supply_shares) + supply_deltas.get(asset, ZERO)
            debt = market.borrow_shares_to_amount(position.borrow_shares) + debt_deltas.get(asset, ZERO)
            collateral, debt = max(collateral, ZERO), max(debt, ZERO)
            if collateral == 0 and debt == 0:
                continue
            if asset in price_overrides:
                price = to_decimal(price_overrides[asset])
            else:
                price = self.price_feed.get_price(asset)
            exposures.append(AssetExposure(
                asset=asset,
                collateral_amount=collateral,
                debt_amount=debt,
                price=price,
                collateral_usd=collateral * price,
                debt_usd=debt * price,
                liquidation_threshold=market.liquidation_threshold,
                borrow_factor=market.risk.borrow_factor,
            ))

        return AccountValues(
            account=account,
            exposures=tuple(exposures),
            total_collateral_usd=sum((e.collateral_usd for e in exposures), ZERO),
            weighted_collateral_usd=sum((e.collateral_usd * e.liquidation_threshold for e in exposures), ZERO),
            borrowing_power_usd=sum((e.collateral_usd * e.borrow_factor for e in exposures), ZERO),
            total_debt_usd=sum((e.debt_usd for e in exposures), ZERO),
        )

    def calculate_health_factor(self, account: str) -> Decimal:
        return self.compute_account_values(account).health_factor

    def health_factor_after(
        self,
        account: str,
        asset: str,
        supply_delta: Decimal = ZERO,
        debt_delta: Decimal = ZERO,
    ) -> Decimal:
        """Health factor if the account's position in `asset` changed by the given amounts."""
        values = self.compute_account_values(
            account,
            supply_deltas={asset: supply_delta} if supply_delta else None,
            debt_deltas={asset: debt_delta} if debt_delta else None,
        )
        return values.health_factor

    def get_user_liquidation_threshold(self, account: str) -> Decimal:
        """Collateral-value-weighted liquidation threshold (0 without collateral)."""
        values = self.compute_account_values(account)
        if values.total_collateral_usd == 0:
            return ZERO
        return values.weighted_collateral_usd / values.total_collateral_usd

    def calculate_ltv(self, account: str) -> Decimal:
        """Debt / collateral in USD; infinite with debt but no collateral."""
        values = self.compute_account_values(account)
        if values.total_debt_usd == 0:
            return ZERO
        if values.total_collateral_usd == 0:
            return INFINITY
        return values.total_debt_usd / values.total_collateral_usd

    def calculate_max_borrow_amount(self, account: str, asset: str) -> Decimal:
        """
        Additional `asset` the account could borrow before its borrow-factor
        weighted collateral is exhausted.
        """
        values = self.compute_account_values(account)
        headroom = values.borrowing_power_usd - values.total_debt_usd
        if headroom <= 0:
            return ZERO
        return headroom / self.price_feed.get_price(asset)

    def get_risk_level(self, account: str) -> int:
        return calculate_risk_level(self.calculate_health_factor(account))

    # ========================================================================
    # OPERATION GATING
    # ========================================================================

    def validate_supply(self, market: Market, amount: Decimal) -> None:
        """
        Raises:
            SupplyCapExceeded: total supply would exceed the cap
        """
        if market.supply_cap is not None and market.total_supply + amount > market.supply_cap:
            raise SupplyCapExceeded(
                f"{market.asset}: supply {market.total_supply + amount} exceeds cap {market.supply_cap}"
            )

    def validate_borrow(self, account: str, asset: str, amount: Decimal) -> None:
        """
        Raises:
            InvalidAmount / MarketInactive / MarketFrozen / BorrowCapExceeded
            HealthFactorTooLow: post-borrow HF below min_health_factor_for_borrow
            OracleError: a needed price is unavailable
        """
        if amount <= 0:
            raise InvalidAmount(f"Borrow amount must be positive, got {amount}")
        market = self.pool.get_market(asset)
        _require_open(market)
        if market.borrow_cap is not None and market.total_borrow + amount > market.borrow_cap:
            raise BorrowCapExceeded(
                f"{asset}: borrows {market.total_borrow + amount} exceed cap {market.borrow_cap}"
            )
        health_factor = self.health_factor_after(account, asset, debt_delta=amount)
        if health_factor < self.min_health_factor_for_borrow:
            raise HealthFactorTooLow(
                f"{account}: health factor after borrow {health_factor:.6f} "
                f"< {self.min_health_factor_for_borrow}"
            )

    def validate_withdraw(self, account: str, asset: str, amount: Decimal) -> None:
        """
        Raises:
            InvalidAmount / MarketInactive / MarketFrozen
            InsufficientShares: the account's supplied balance does not cover amount
            HealthFactorTooLow: post-withdraw HF below the margin (skipped without debt)
        """
        if amount <= 0:
            raise InvalidAmount(f"Withdraw amount must be positive, got {amount}")
        market = self.pool.get_market(asset)
        _require_open(market)
        position = self.pool.get_position(account, asset)
        balance = market.supply_shares_to_amount(position.supply_shares)
        if amount > balance:
            raise InsufficientShares(f"{account}: {asset} balance {balance} < {amount}")
        values = self.compute_account_values(account, supply_deltas={asset: -amount})
        if values.total_debt_usd == 0:
            return
        if values.health_factor < self.min_health_factor_for_borrow:
            raise HealthFactorTooLow(
                f"{account}: health factor after withdraw {values.health_factor:.6f} "
                f"< {self.min_health_factor_for_borrow}"
            )

    def is_borrow_allowed(self, account: str, asset: str, amount: Decimal) -> bool:
        try:
            self.validate_borrow(account, asset, to_decimal(amount))
        except (ValidationError, RiskError):
            return False
        return True

    def is_withdraw_allowed(self, account: str, asset: str, amount: Decimal) -> bool:
        try:
            self.validate_withdraw(account, asset, to_decimal(amount))
        except (ValidationError, RiskError):
            return False
        return True

    def is_liquidation_allowed(self, account: str) -> bool:
        return self.calculate_health_factor(account) < LIQUIDATION_THRESHOLD

    # ========================================================================
    # SNAPSHOTS / AT-RISK REGISTRY
    # ========================================================================

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def refresh_account(self, account: str) -> PortfolioSnapshot:
        """Recompute and cache an account's snapshot from live positions and prices."""
        values = self.compute_account_values(account)
        return self.update_user_risk_data(
            account, values.total_collateral_usd, values.total_debt_usd,
            weighted_collateral_usd=values.weighted_collateral_usd,
        )

    def update_user_risk_data(
        self,
        account: str,
        collateral_usd: Decimal,
        debt_usd: Decimal,
        weighted_collateral_usd: Optional[Decimal] = None,
    ) -> PortfolioSnapshot:
        """
        Push-model sink: store an account's USD totals and derived risk data.

        Without `weighted_collateral_usd`, the account's previous liquidation
        threshold (or the protocol default) weights the collateral.
        """
        collateral_usd = to_decimal(collateral_usd)
        debt_usd = to_decimal(debt_usd)
        previous = self._snapshots.get(account)
        if weighted_collateral_usd is None:
            threshold = DEFAULT_LIQUIDATION_THRESHOLD
            if previous is not None and previous.total_collateral_usd > 0:
                threshold = previous.liquidation_threshold
            weighted_collateral_usd = collateral_usd * threshold

        health_factor = calculate_health_factor(weighted_collateral_usd, debt_usd)
        snapshot = PortfolioSnapshot(
            account=account,
            total_collateral_usd=collateral_usd,
            total_debt_usd=debt_usd,
            weighted_collateral_usd=weighted_collateral_usd,
            health_factor=health_factor,
            is_liquidatable=health_factor < LIQUIDATION_THRESHOLD,
            risk_level=calculate_risk_level(health_factor),
            last_update=self.pool.current_time,
        )

        if previous is not None:
            self._total_collateral_usd -= previous.total_collateral_usd
            self._total_debt_usd -= previous.total_debt_usd
        self._total_collateral_usd += collateral_usd
        self._total_debt_usd += debt_usd
        self._snapshots[account] = snapshot

        if debt_usd > 0:
            self._borrowers.add(account)
        else:
            self._borrowers.discard(account)
        self.at_risk.set_membership(account, health_factor < AT_RISK_HEALTH_FACTOR)

        if self.verbose and snapshot.risk_level >= 4:
            print(f"⚠️  AT RISK: {account} HF={health_factor:.4f} level={snapshot.risk_level}")
        for listener in self._listeners:
            listener(snapshot)
        return snapshot

    def get_snapshot(self, account: str) -> Optional[PortfolioSnapshot]:
        return self._snapshots.get(account)

    def get_at_risk_accounts(self, offset: int = 0, limit: int = 100) -> Tuple[List[str], int]:
        return self.at_risk.page(offset, limit)

    def get_system_metrics(self) -> SystemRiskMetrics:
        """Aggregates bounded to the at-risk registry plus O(1) running totals."""
        at_risk_hfs = [self._snapshots[a].health_factor for a in self.at_risk]
        average = sum(at_risk_hfs, ZERO) / len(at_risk_hfs) if at_risk_hfs else None

        if self._total_collateral_usd > 0:
            liquidity_risk = self._total_debt_usd / self._total_collateral_usd
        else:
            liquidity_risk = ZERO
        at_risk_share = (Decimal(len(at_risk_hfs)) / len(self._borrowers)) if self._borrowers else ZERO
        risk_score = (min(liquidity_risk, ONE) + min(at_risk_share, ONE)) / 2

        return SystemRiskMetrics(
            accounts_at_risk=len(at_risk_hfs),
            average_health_factor=average,
            total_collateral_usd=self._total_collateral_usd,
            total_debt_usd=self._total_debt_usd,
            liquidity_risk=liquidity_risk,
            risk_score=risk_score,
        )

    # ========================================================================
    # PORTFOLIO ANALYTICS (no state changes)
    # ========================================================================

    def calculate_concentration_risk(self, account: str) -> Decimal:
        """HHI over the account's gross per-asset exposure (collateral + debt)."""
        values = self.compute_account_values(account)
        return calculate_hhi(e.collateral_usd + e.debt_usd for e in values.exposures)

    def calculate_system_concentration(self) -> Decimal:
        """HHI over borrower debt across cached snapshots."""
        return calculate_hhi(s.total_debt_usd for s in self._snapshots.values())

    def _portfolio_volatility(self, values: AccountValues,
                              volatilities: Optional[Mapping[str, Decimal]]) -> Decimal:
        if values.total_collateral_usd == 0:
            return ZERO
        weighted = ZERO
        for exposure in values.exposures:
            if volatilities is not None and exposure.asset in volatilities:
                vol = to_decimal(volatilities[exposure.asset])
            elif hasattr(self.price_feed, "get_price_volatility"):
                vol = self.price_feed.get_price_volatility(exposure.asset)
            else:
                vol = ZERO
            weighted += exposure.collateral_usd * vol
        return weighted / values.total_collateral_usd

    def calculate_account_var(
        self,
        account: str,
        confidence: Decimal = Decimal("0.95"),
        horizon_seconds: int = 86400,
        volatilities: Optional[Mapping[str, Decimal]] = None,
    ) -> Decimal:
        """
        VaR of an account's collateral. Portfolio volatility is the
        collateral-weighted average of per-asset annualized volatilities,
        taken from `volatilities` or the feed's price history.
        """
        values = self.compute_account_values(account)
        vol = self._portfolio_volatility(values, volatilities)
        return calculate_value_at_risk(values.total_collateral_usd, confidence, vol, horizon_seconds)

    def calculate_account_cvar(
        self,
        account: str,
        confidence: Decimal = Decimal("0.95"),
        horizon_seconds: int = 86400,
        volatilities: Optional[Mapping[str, Decimal]] = None,
    ) -> Decimal:
        values = self.compute_account_values(account)
        vol = self._portfolio_volatility(values, volatilities)
        return calculate_conditional_var(values.total_collateral_usd, confidence, vol, horizon_seconds)

    def stress_test(self, account: str, shocks: ShockMap, scenario: str = "stress") -> StressTestResult:
        """
        Apply signed relative price shocks to the account's collateral assets.

        Debt is valued at unshocked prices. Nothing is mutated.
        """
        base = self.compute_account_values(account)
        overrides = {}
        for exposure in base.exposures:
            shock = to_decimal(shocks.get(exposure.asset, ZERO))
            if shock < -ONE:
                raise ValueError(f"Shock for {exposure.asset} below -100%: {shock}")
            if shock and exposure.collateral_amount > 0:
                overrides[exposure.asset] = exposure.price * (ONE + shock)

        collateral = ZERO
        weighted = ZERO
        for exposure in base.exposures:
            price = overrides.get(exposure.asset, exposure.price)
            value = exposure.collateral_amount * price
            collateral += value
            weighted += value * exposure.liquidation_threshold

        health_factor = calculate_health_factor(weighted, base.total_debt_usd)
        return StressTestResult(
            scenario=scenario,
            health_factor=health_factor,
            is_liquidatable=health_factor < LIQUIDATION_THRESHOLD,
            collateral_usd=collateral,
            debt_usd=base.total_debt_usd,
            collateral_loss_usd=base.total_collateral_usd - collateral,
            risk_level=calculate_risk_level(health_factor),
        )

    def run_stress_scenarios(self, account: str, scenarios: Mapping[str, ShockMap]) -> List[StressTestResult]:
        return [self.stress_test(account, shocks, name) for name, shocks in scenarios.items()]

    def correlated_stress_test(
        self,
        account: str,
        base_shocks: ShockMap,
        correlations: Mapping[str, Mapping[str, Decimal]],
        scenario: str = "correlated",
    ) -> StressTestResult:
        return self.stress_test(account, correlate_shocks(base_shocks, correlations), scenario)

    # ========================================================================
    # CHECKPOINT / RESTORE
    # ========================================================================

    def checkpoint(self) -> Dict[str, Any]:
        return {
            'snapshots': dict(self._snapshots),
            'borrowers': set(self._borrowers),
            'totals': (self._total_collateral_usd, self._total_debt_usd),
            'at_risk': self.at_risk.snapshot(),
        }

    def restore(self, state: Dict[str, Any]) -> None:
        self._snapshots = state['snapshots']
        self._borrowers = state['borrowers']
        self._total_collateral_usd, self._total_debt_usd = state['totals']
        self.at_risk.restore(state['at_risk'])


def _require_open(market: Market) -> None:
    if not market.is_active:
        raise MarketInactive(f"Market {market.asset} is inactive")
    if market.is_frozen:
        raise MarketFrozen(f"Market {market.asset} is frozen")
