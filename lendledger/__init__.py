"""
lendledger - Accounting and risk core of a collateralized lending protocol

Share-based pool accounting, a kinked interest-rate curve with optional
adjustment layers, health-factor risk gating and analytics, and liquidation.

Usage:
    from lendledger import (
        Clock, CallerContext, OraclePriceFeed, StaticPriceSource,
        LendingPool, LiquidationEngine, RiskParameters,
    )

    clock = Clock(datetime(2025, 1, 1))
    feed = OraclePriceFeed(clock, sources=[StaticPriceSource({"USDC": Decimal("1"), "WETH": Decimal("2000")})])
    pool = LendingPool("main", feed, clock)
    liquidations = LiquidationEngine(pool)

    admin = CallerContext.admin()
    pool.list_market(admin, "USDC")
    pool.list_market(admin, "WETH")

    pool.tokens.issue("alice", "WETH", Decimal("1"))
    pool.supply("alice", "WETH", Decimal("1"))
    pool.borrow("alice", "USDC", Decimal("1000"))   # needs USDC liquidity
"""

# Core types
from .core import (
    # Constants
    WAD,
    WAD_PLACES,
    SECONDS_PER_YEAR,
    BPS,
    INFINITY,
    ZERO,
    ONE,
    LIQUIDATION_THRESHOLD,
    AT_RISK_HEALTH_FACTOR,
    RISK_LEVEL_THRESHOLDS,
    MAX_RISK_LEVEL,
    SYSTEM_WALLET,
    POOL_WALLET,
    PROTOCOL_TREASURY,
    DECIMAL_ROUNDING,
    DEFAULT_LIQUIDATION_THRESHOLD,
    DEFAULT_LIQUIDATION_BONUS,
    DEFAULT_BORROW_FACTOR,
    DEFAULT_MIN_HEALTH_FACTOR_FOR_BORROW,
    # Errors
    LendingError,
    ProtocolPaused,
    PermissionDenied,
    ValidationError,
    InvalidAmount,
    MarketNotListed,
    MarketAlreadyListed,
    MarketInactive,
    MarketFrozen,
    SupplyCapExceeded,
    BorrowCapExceeded,
    InsufficientShares,
    InsufficientLiquidity,
    InsufficientBalance,
    BatchLengthMismatch,
    EmptyBatch,
    LiquidationConfigInactive,
    RiskError,
    HealthFactorTooLow,
    PositionNotLiquidatable,
    LiquidationTooSmall,
    LiquidationTooLarge,
    LiquidationExceedsDebt,
    InsufficientCollateral,
    LiquidationWorsensHealth,
    SlippageTooHigh,
    LiquidationsPaused,
    EmergencyLiquidationsHalted,
    NotInMicroLiquidationBand,
    TooManyMicroLiquidations,
    OracleError,
    PriceUnavailable,
    PriceStale,
    CircuitBreakerTripped,
    PriceUpdatesPaused,
    PriceDeviationTooLarge,
    # Capabilities and time
    Capability,
    CallerContext,
    Clock,
    # Data structures
    Move,
    RiskParameters,
    Market,
    AccountPosition,
    PortfolioSnapshot,
    OperationRecord,
    PoolView,
    # Pure functions
    elapsed_seconds,
    to_decimal,
    quantize_amount,
    calculate_shares,
    calculate_amount,
    receipt_token_symbol,
    debt_token_symbol,
    calculate_utilization,
    calculate_health_factor,
    calculate_risk_level,
)

# Registries and tokens
from .registry import AccountRegistry
from .tokens import (
    TokenLedger,
    UnderlyingToken,
    DerivativeToken,
    register_market_tokens,
    TOKEN_KIND_UNDERLYING,
    TOKEN_KIND_RECEIPT,
    TOKEN_KIND_DEBT,
)

# Prices
from .price_feed import (
    PriceQuote,
    PriceFailure,
    PriceSource,
    StaticPriceSource,
    TimeSeriesPriceSource,
    ManualPriceSource,
    PriceData,
    PriceFeed,
    PriceFeedConfig,
    OraclePriceFeed,
)

# Interest rates
from .interest import (
    InterestRateParams,
    CircuitBreakerConfig,
    CircuitBreakerState,
    RateSmoothing,
    VolatilityMultiplier,
    RateAdjustmentSettings,
    RateHistoryEntry,
    RateQuote,
    InterestRateEngine,
    calculate_borrow_rate,
    calculate_supply_rate,
    calculate_base_rates,
    apply_emergency_rates,
    apply_volatility_multiplier,
    apply_utilization_pressure,
    apply_market_size_tier,
    apply_correlation_premium,
    apply_circuit_breaker,
    apply_smoothing,
)

# Risk
from .risk import (
    AssetExposure,
    AccountValues,
    StressTestResult,
    SystemRiskMetrics,
    RiskEngine,
    calculate_hhi,
    calculate_value_at_risk,
    calculate_conditional_var,
    correlate_shocks,
)

# Pool
from .pool import (
    LendingPool,
    ProtocolMetrics,
    UserAccountData,
)

# Liquidation
from .liquidation import (
    LiquidationConfig,
    MicroLiquidationConfig,
    LiquidationQuote,
    LiquidationResult,
    LiquidatablePosition,
    LiquidationStats,
    LiquidationRequest,
    BatchLiquidationOutcome,
    LiquidationEngine,
    calculate_liquidation_amounts,
    calculate_required_debt_reduction,
    calculate_expected_collateral,
    DEFAULT_MAX_SLIPPAGE,
)


__all__ = [
    # Constants
    'WAD', 'WAD_PLACES', 'SECONDS_PER_YEAR', 'BPS', 'INFINITY', 'ZERO', 'ONE',
    'LIQUIDATION_THRESHOLD', 'AT_RISK_HEALTH_FACTOR', 'RISK_LEVEL_THRESHOLDS', 'MAX_RISK_LEVEL',
    'SYSTEM_WALLET', 'POOL_WALLET', 'PROTOCOL_TREASURY', 'DECIMAL_ROUNDING',
    'DEFAULT_LIQUIDATION_THRESHOLD', 'DEFAULT_LIQUIDATION_BONUS', 'DEFAULT_BORROW_FACTOR',
    'DEFAULT_MIN_HEALTH_FACTOR_FOR_BORROW',
    # Errors
    'LendingError', 'ProtocolPaused', 'PermissionDenied',
    'ValidationError', 'InvalidAmount', 'MarketNotListed', 'MarketAlreadyListed',
    'MarketInactive', 'MarketFrozen', 'SupplyCapExceeded', 'BorrowCapExceeded',
    'InsufficientShares', 'InsufficientLiquidity', 'InsufficientBalance',
    'BatchLengthMismatch', 'EmptyBatch', 'LiquidationConfigInactive',
    'RiskError', 'HealthFactorTooLow', 'PositionNotLiquidatable', 'LiquidationTooSmall',
    'LiquidationTooLarge', 'LiquidationExceedsDebt', 'InsufficientCollateral',
    'LiquidationWorsensHealth', 'SlippageTooHigh', 'LiquidationsPaused', 'EmergencyLiquidationsHalted',
    'NotInMicroLiquidationBand', 'TooManyMicroLiquidations',
    'OracleError', 'PriceUnavailable', 'PriceStale', 'CircuitBreakerTripped',
    'PriceUpdatesPaused', 'PriceDeviationTooLarge',
    # Capabilities and time
    'Capability', 'CallerContext', 'Clock',
    # Data structures
    'Move', 'RiskParameters', 'Market', 'AccountPosition', 'PortfolioSnapshot',
    'OperationRecord', 'PoolView',
    # Pure functions
    'elapsed_seconds', 'to_decimal', 'quantize_amount', 'calculate_shares', 'calculate_amount',
    'receipt_token_symbol', 'debt_token_symbol', 'calculate_utilization',
    'calculate_health_factor', 'calculate_risk_level',
    # Registries and tokens
    'AccountRegistry', 'TokenLedger', 'UnderlyingToken', 'DerivativeToken',
    'register_market_tokens', 'TOKEN_KIND_UNDERLYING', 'TOKEN_KIND_RECEIPT', 'TOKEN_KIND_DEBT',
    # Prices
    'PriceQuote', 'PriceFailure', 'PriceSource', 'StaticPriceSource', 'TimeSeriesPriceSource',
    'ManualPriceSource', 'PriceData', 'PriceFeed', 'PriceFeedConfig', 'OraclePriceFeed',
    # Interest rates
    'InterestRateParams', 'CircuitBreakerConfig', 'CircuitBreakerState', 'RateSmoothing',
    'VolatilityMultiplier', 'RateAdjustmentSettings', 'RateHistoryEntry', 'RateQuote',
    'InterestRateEngine', 'calculate_borrow_rate', 'calculate_supply_rate', 'calculate_base_rates',
    'apply_emergency_rates', 'apply_volatility_multiplier', 'apply_utilization_pressure',
    'apply_market_size_tier', 'apply_correlation_premium', 'apply_circuit_breaker', 'apply_smoothing',
    # Risk
    'AssetExposure', 'AccountValues', 'StressTestResult', 'SystemRiskMetrics', 'RiskEngine',
    'calculate_hhi', 'calculate_value_at_risk', 'calculate_conditional_var', 'correlate_shocks',
    # Pool
    'LendingPool', 'ProtocolMetrics', 'UserAccountData',
    # Liquidation
    'LiquidationConfig', 'MicroLiquidationConfig', 'LiquidationQuote', 'LiquidationResult',
    'LiquidatablePosition', 'LiquidationStats', 'LiquidationRequest', 'BatchLiquidationOutcome',
    'LiquidationEngine', 'calculate_liquidation_amounts', 'calculate_required_debt_reduction',
    'calculate_expected_collateral', 'DEFAULT_MAX_SLIPPAGE',
]

__version__ = '0.1.0'
