"""
DTI signal generation, portfolio simulation, and risk analytics.
"""

from dti_quant.config import (
    Currency,
    ExitReason,
    Market,
    SimulationConfig,
    StrategyVariant,
    get_market_for_symbol,
)
from dti_quant.conviction import ConvictionFilter, RankedOpportunities, UnrankedOpportunities
from dti_quant.currency import CurrencyConverter
from dti_quant.data_loader import PriceDataLoader, PriceSeries
from dti_quant.exceptions import (
    ConfigurationError,
    DTIQuantError,
    InvalidSeriesError,
    UnknownCurrencyPairError,
)
from dti_quant.indicators import aggregate_to_periods, calculate_7day_dti, calculate_dti, ema
from dti_quant.monte_carlo import MonteCarloRiskSimulator
from dti_quant.performance_analytics import PerformanceAnalyzer
from dti_quant.pipeline import SimulationPipeline, format_simulation_report
from dti_quant.portfolio_simulator import PortfolioSimulator
from dti_quant.signal_generator import Signal, SignalGenerator

__version__ = "1.0.0"
