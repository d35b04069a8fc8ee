"""
Configuration Module for the DTI Portfolio Simulator

This module centralizes every tunable constant used by the indicator
pipeline, the signal generator, the conviction filter, the portfolio
simulator, and the risk analytics.

All "magic numbers" are defined here to ensure:
1. Single source of truth for all constants
2. Easy modification without touching simulation code
3. Transparency in assumptions and thresholds

Configuration groups are frozen dataclasses. A SimulationConfig bundles
them and is handed explicitly to the simulator and pipeline, so no module
holds mutable run state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from dti_quant.exceptions import ConfigurationError


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Market(Enum):
    """Exchange groupings that carry their own trade size and currency."""
    INDIA = "India"
    UK = "UK"
    US = "US"


class Currency(Enum):
    """Currencies used for trade sizing and display."""
    INR = "INR"
    GBP = "GBP"
    USD = "USD"


class ExitReason(Enum):
    """Why a backtest trade or simulated position was closed."""
    TAKE_PROFIT = "Take Profit"
    STOP_LOSS = "Stop Loss"
    MAX_DAYS = "Max Days"
    TIME_EXIT = "Time Exit"
    SEVEN_DAY_EXIT = "7-Day DTI Exit"
    FORCE_CLOSE = "Max Days (Force Close)"
    FORCE_CLOSE_NO_PRICE = "Max Days (Force Close, No Price)"
    OPEN = "Open"


class ExitCategory(Enum):
    """Reporting buckets for exit reasons."""
    TAKE_PROFIT = "Take Profit"
    STOP_LOSS = "Stop Loss"
    MAX_DAYS = "Max Days"
    OTHER = "Other"


class StrategyVariant(Enum):
    """
    Entry rule used when backtesting a symbol.

    CROSSOVER: daily DTI crosses up through the threshold while the 7-day
        DTI is positive. Exits also fire when the 7-day DTI turns negative.
    REVERSAL: daily DTI is below the threshold and rising while the 7-day
        DTI is rising. Exits are take-profit, stop-loss, and time only.
    """
    CROSSOVER = "crossover"
    REVERSAL = "reversal"


class ConvictionLevel(Enum):
    """Win-rate classification for a symbol's trade history."""
    HIGH = "High"
    MODERATE = "Moderate"
    LOW = "Low"


# =============================================================================
# CONSTANTS
# =============================================================================

TRADING_DAYS_YEAR: int = 252
DAYS_PER_YEAR: float = 365.25

# Returned in place of an infinite ratio (Sortino, Calmar, profit factor)
RATIO_SENTINEL: float = 99.99

# Symbol suffix -> market
MARKET_SUFFIXES: Tuple[Tuple[str, Market], ...] = (
    (".NS", Market.INDIA),
    (".BO", Market.INDIA),
    (".L", Market.UK),
)

MARKET_CURRENCIES: Dict[Market, Currency] = {
    Market.INDIA: Currency.INR,
    Market.UK: Currency.GBP,
    Market.US: Currency.USD,
}

# Starting capital per display currency, the baseline for return and drawdown
DEFAULT_INITIAL_CAPITAL: Dict[Currency, float] = {
    Currency.INR: 1_000_000.0,
    Currency.GBP: 10_000.0,
    Currency.USD: 15_000.0,
}

DEFAULT_FX_RATES: Dict[Tuple[Currency, Currency], float] = {
    (Currency.GBP, Currency.INR): 105.0,
    (Currency.GBP, Currency.USD): 1.27,
    (Currency.USD, Currency.GBP): 0.79,
    (Currency.USD, Currency.INR): 83.0,
    (Currency.INR, Currency.GBP): 0.0095,
    (Currency.INR, Currency.USD): 0.012,
}


def get_market_for_symbol(symbol: str) -> Market:
    """Map a ticker to its market by exchange suffix (.NS/.BO India, .L UK, else US)."""
    upper = symbol.upper()
    for suffix, market in MARKET_SUFFIXES:
        if upper.endswith(suffix):
            return market
    return Market.US


# =============================================================================
# CONFIGURATION GROUPS
# =============================================================================

@dataclass(frozen=True)
class DTIParameters:
    """Triple-EMA periods for the DTI oscillator and the aggregation block size."""
    r: int = 14
    s: int = 10
    u: int = 5
    block_size: int = 7


@dataclass(frozen=True)
class TradingRules:
    """
    Entry and exit rules applied when backtesting a symbol.

    Percent values are expressed as percentages (8 means 8%).
    """
    entry_threshold: float = 0.0
    take_profit_percent: float = 8.0
    stop_loss_percent: float = 5.0
    max_holding_days: int = 30
    warmup_months: int = 6
    variant: StrategyVariant = StrategyVariant.CROSSOVER
    min_bars: int = 200


@dataclass(frozen=True)
class TradeSize:
    """Fixed notional per position for one market."""
    amount: float
    currency: Currency


DEFAULT_TRADE_SIZES: Dict[Market, TradeSize] = {
    Market.INDIA: TradeSize(50000.0, Currency.INR),
    Market.UK: TradeSize(400.0, Currency.GBP),
    Market.US: TradeSize(500.0, Currency.USD),
}


@dataclass(frozen=True)
class PortfolioConstraints:
    """Hard caps enforced by the simulator on every admission."""
    max_total_positions: int = 30
    max_positions_per_market: int = 10
    trade_sizes: Mapping[Market, TradeSize] = field(
        default_factory=lambda: dict(DEFAULT_TRADE_SIZES)
    )
    prevent_duplicate_symbols: bool = True


@dataclass(frozen=True)
class ConvictionThresholds:
    """Gates used to rank opportunities by historical win rate."""
    high_conviction_win_rate: float = 75.0
    moderate_conviction_win_rate: float = 50.0
    min_historical_trades: int = 5
    recency_trading_days: int = 5
    recency_scan_cap_days: int = 10
    unranked_fallback_limit: int = 5


@dataclass(frozen=True)
class ExchangeRates:
    """Static FX table. Identity conversions are implicit."""
    rates: Mapping[Tuple[Currency, Currency], float] = field(
        default_factory=lambda: dict(DEFAULT_FX_RATES)
    )
    strict: bool = True


@dataclass(frozen=True)
class MonteCarloParameters:
    """Defaults for the forward-looking risk simulation."""
    iterations: int = 1000
    days: int = 30
    default_volatility: float = 20.0
    risk_free_rate: float = 0.02


@dataclass(frozen=True)
class AnalyticsParameters:
    """
    Annualization inputs and the capital baseline for performance ratios.

    Returns and drawdown are measured on initial_capital[display currency]
    plus the daily valuation; a currency missing from the mapping has no
    baseline.
    """
    risk_free_rate: float = 0.02
    trading_days_year: int = TRADING_DAYS_YEAR
    initial_capital: Mapping[Currency, float] = field(
        default_factory=lambda: dict(DEFAULT_INITIAL_CAPITAL)
    )

    def capital_for(self, currency: Currency) -> float:
        return float(self.initial_capital.get(currency, 0.0))


@dataclass(frozen=True)
class SimulationConfig:
    """
    Everything one simulation run needs.

    Attributes:
        dti: Oscillator periods
        rules: Entry/exit rules for per-symbol backtests
        constraints: Position caps and trade sizes
        conviction: Win-rate gates
        fx: Exchange-rate table
        analytics: Ratio annualization inputs
        display_currency: Currency all valuations are reported in
        max_workers: Threads used for per-symbol signal generation
    """
    dti: DTIParameters = field(default_factory=DTIParameters)
    rules: TradingRules = field(default_factory=TradingRules)
    constraints: PortfolioConstraints = field(default_factory=PortfolioConstraints)
    conviction: ConvictionThresholds = field(default_factory=ConvictionThresholds)
    fx: ExchangeRates = field(default_factory=ExchangeRates)
    analytics: AnalyticsParameters = field(default_factory=AnalyticsParameters)
    display_currency: Currency = Currency.USD
    max_workers: Optional[int] = None

    def validate(self) -> "SimulationConfig":
        """Raise ConfigurationError for any setting that cannot drive a run."""
        errors = []

        for name in ("r", "s", "u", "block_size"):
            if getattr(self.dti, name) <= 0:
                errors.append(f"DTI parameter {name} must be positive")

        if self.rules.take_profit_percent <= 0:
            errors.append("take_profit_percent must be positive")
        if self.rules.stop_loss_percent <= 0:
            errors.append("stop_loss_percent must be positive")
        if self.rules.max_holding_days <= 0:
            errors.append("max_holding_days must be positive")
        if self.rules.warmup_months < 0:
            errors.append("warmup_months cannot be negative")

        if self.constraints.max_total_positions < 0:
            errors.append("max_total_positions cannot be negative")
        if self.constraints.max_positions_per_market < 0:
            errors.append("max_positions_per_market cannot be negative")
        for market in Market:
            size = self.constraints.trade_sizes.get(market)
            if size is None:
                errors.append(f"No trade size configured for {market.value}")
            elif size.amount <= 0:
                errors.append(f"Trade size for {market.value} must be positive")

        if self.conviction.min_historical_trades < 1:
            errors.append("min_historical_trades must be at least 1")
        if any(amount < 0 for amount in self.analytics.initial_capital.values()):
            errors.append("initial_capital cannot be negative")
        if self.max_workers is not None and self.max_workers < 1:
            errors.append("max_workers must be at least 1")

        if errors:
            raise ConfigurationError("; ".join(errors))
        return self
