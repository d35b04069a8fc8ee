"""
Performance & Risk Analytics

Read-only reductions over a simulation's DailyValuation series and
ClosedTrade ledger.

BASELINE
    Every metric derived from the valuation series is measured on
        equity[i] = initial_capital[display currency] + valuation[i]
    so a run that starts with an empty book still has a non-zero base.

METRICS
    Returns
        total_return      = (last - first) / first * 100
        annualized_return = ((1 + total/100) ^ (1/years) - 1) * 100,
                            years = calendar days / 365.25
        monthly returns   = first-to-last valuation within each month

    Risk
        daily_return[i]   = (v[i] - v[i-1]) / v[i-1]
        volatility        = std(daily) * sqrt(252) * 100
        max_drawdown      = max((running_peak - v) / running_peak) * 100

    Risk-adjusted (rf = 2% annual, 2%/252 daily)
        sharpe  = (mean(daily) - rf_d) / std(daily) * sqrt(252)
        sortino = (mean(daily) - rf_d) / rms(negative daily) * sqrt(252)
        calmar  = annualized_return / max_drawdown

    Trades (win means pl_percent > 0, everything else is a loss)
        win rate, average win/loss, profit factor, expectancy = mean(pl%),
        average/median holding period

    Breakdowns
        by market (count, P/L in display currency, win rate) and by exit
        reason bucket (substring match on the stored reason)

Ratios that would be infinite return RATIO_SENTINEL (99.99). Standard
deviations are population deviations.

Reference:
    Sharpe, W.F. (1994). "The Sharpe Ratio." Journal of Portfolio Management.
    Sortino, F.A. & van der Meer, R. (1991). "Downside Risk."
    Young, T.W. (1991). "Calmar Ratio: A Smoother Tool."
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from dti_quant.config import (
    RATIO_SENTINEL,
    AnalyticsParameters,
    Currency,
    DAYS_PER_YEAR,
    ExitCategory,
    Market,
)
from dti_quant.currency import CurrencyConverter
from dti_quant.portfolio_simulator import ClosedTrade, DailyValuation, SimulationResult

warnings.filterwarnings('ignore', category=RuntimeWarning)

logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class MonthlyReturn:
    month: str                    # YYYY-MM
    return_pct: float


@dataclass
class MarketBreakdown:
    """Closed-trade statistics for one market."""
    trades: int = 0
    pl: float = 0.0               # display currency
    win_rate: float = 0.0


@dataclass
class AnalyticsSummary:
    """
    Everything the analytics layer reports for one run.

    Percent-valued fields are expressed as percentages.
    """
    # Returns
    initial_value: float
    final_value: float
    total_return: float
    annualized_return: float

    # Risk
    volatility: float
    max_drawdown: float
    skewness: float
    kurtosis: float

    # Risk-adjusted
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float

    # Trades
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    avg_win: float
    avg_loss: float
    profit_factor: float
    expectancy: float
    avg_holding_period: float
    median_holding_period: float

    # Breakdowns
    by_market: Dict[str, MarketBreakdown] = field(default_factory=dict)
    exit_reasons: Dict[str, int] = field(default_factory=dict)
    monthly_returns: List[MonthlyReturn] = field(default_factory=list)
    best_month: Optional[MonthlyReturn] = None
    worst_month: Optional[MonthlyReturn] = None

    display_currency: Currency = Currency.USD

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['display_currency'] = self.display_currency.value
        return data


# =============================================================================
# RETURNS
# =============================================================================

def _values(valuations: Sequence[DailyValuation]) -> np.ndarray:
    return np.array([v.value for v in valuations], dtype=float)


class ReturnCalculator:
    """Total, annualized, and monthly returns from a valuation series."""

    @staticmethod
    def daily_returns(valuations: Sequence[DailyValuation]) -> np.ndarray:
        """Simple returns between consecutive valuations; zero bases are skipped."""
        values = _values(valuations)
        if len(values) < 2:
            return np.array([])
        prev, curr = values[:-1], values[1:]
        valid = prev != 0
        return (curr[valid] - prev[valid]) / prev[valid]

    @staticmethod
    def total_return(valuations: Sequence[DailyValuation]) -> float:
        if len(valuations) < 2:
            return 0.0
        first, last = valuations[0].value, valuations[-1].value
        if first == 0:
            return 0.0
        return (last - first) / first * 100

    @staticmethod
    def annualized_return(
        valuations: Sequence[DailyValuation],
        start_date: Optional[pd.Timestamp] = None
    ) -> float:
        """Compound annual return over the calendar span of the series."""
        if len(valuations) < 2:
            return 0.0
        total = ReturnCalculator.total_return(valuations)
        start = pd.Timestamp(start_date) if start_date is not None else valuations[0].date
        years = (valuations[-1].date - start).days / DAYS_PER_YEAR
        if years <= 0:
            return total
        growth = 1 + total / 100
        if growth <= 0:
            return -100.0
        return (growth ** (1 / years) - 1) * 100

    @staticmethod
    def monthly_returns(valuations: Sequence[DailyValuation]) -> List[MonthlyReturn]:
        """Return within each calendar month, first to last valuation of that month."""
        if len(valuations) < 2:
            return []

        frame = pd.DataFrame({
            'month': [v.date.strftime('%Y-%m') for v in valuations],
            'value': [v.value for v in valuations],
        })
        months: List[MonthlyReturn] = []
        for month, group in frame.groupby('month', sort=True):
            first, last = group['value'].iloc[0], group['value'].iloc[-1]
            pct = (last - first) / first * 100 if first != 0 else 0.0
            months.append(MonthlyReturn(month=month, return_pct=pct))
        return months


# =============================================================================
# RISK
# =============================================================================

class RiskCalculator:
    """Drawdown and volatility."""

    @staticmethod
    def max_drawdown(values: Sequence[float]) -> float:
        """Largest peak-to-trough decline, as a percentage of the running peak."""
        values = np.asarray(values, dtype=float)
        if len(values) < 2:
            return 0.0
        peaks = np.maximum.accumulate(values)
        with np.errstate(divide='ignore', invalid='ignore'):
            drawdowns = np.where(peaks > 0, (peaks - values) / peaks * 100, 0.0)
        return float(max(drawdowns.max(), 0.0))

    @staticmethod
    def volatility(daily_returns: np.ndarray, trading_days: int = 252) -> float:
        """Annualized standard deviation of daily returns, in percent."""
        if len(daily_returns) == 0:
            return 0.0
        return float(np.std(daily_returns) * np.sqrt(trading_days) * 100)

    @staticmethod
    def distribution_moments(daily_returns: np.ndarray) -> tuple:
        """(skewness, excess kurtosis) of daily returns; zeros when undefined."""
        if len(daily_returns) < 3 or np.std(daily_returns) == 0:
            return 0.0, 0.0
        return float(stats.skew(daily_returns)), float(stats.kurtosis(daily_returns))


# =============================================================================
# RISK-ADJUSTED
# =============================================================================

class RiskAdjustedCalculator:
    """Sharpe, Sortino, and Calmar ratios."""

    @staticmethod
    def sharpe(
        daily_returns: np.ndarray,
        params: Optional[AnalyticsParameters] = None
    ) -> float:
        params = params or AnalyticsParameters()
        if len(daily_returns) == 0:
            return 0.0
        std = np.std(daily_returns)
        if std == 0:
            return 0.0
        rf_daily = params.risk_free_rate / params.trading_days_year
        return float((np.mean(daily_returns) - rf_daily) / std * np.sqrt(params.trading_days_year))

    @staticmethod
    def sortino(
        daily_returns: np.ndarray,
        params: Optional[AnalyticsParameters] = None
    ) -> float:
        params = params or AnalyticsParameters()
        if len(daily_returns) == 0:
            return 0.0
        negative = daily_returns[daily_returns < 0]
        if len(negative) == 0:
            return RATIO_SENTINEL
        downside = np.sqrt(np.mean(negative ** 2))
        if downside == 0:
            return RATIO_SENTINEL
        rf_daily = params.risk_free_rate / params.trading_days_year
        return float((np.mean(daily_returns) - rf_daily) / downside * np.sqrt(params.trading_days_year))

    @staticmethod
    def calmar(annualized_return: float, max_drawdown: float) -> float:
        if max_drawdown == 0:
            return RATIO_SENTINEL
        return annualized_return / max_drawdown


# =============================================================================
# TRADES
# =============================================================================

def classify_exit_reason(reason: Optional[str]) -> ExitCategory:
    """Bucket a stored exit reason by substring."""
    reason = reason or ''
    if 'Profit' in reason:
        return ExitCategory.TAKE_PROFIT
    if 'Loss' in reason:
        return ExitCategory.STOP_LOSS
    if 'Max Days' in reason or 'Time' in reason:
        return ExitCategory.MAX_DAYS
    return ExitCategory.OTHER


class TradeAnalyzer:
    """Ledger statistics. A trade with pl_percent <= 0 counts as a loss."""

    @staticmethod
    def win_rate(trades: Sequence[ClosedTrade]) -> float:
        if not trades:
            return 0.0
        return sum(1 for t in trades if t.pl_percent > 0) / len(trades) * 100

    @staticmethod
    def avg_win(trades: Sequence[ClosedTrade]) -> float:
        wins = [t.pl_percent for t in trades if t.pl_percent > 0]
        return float(np.mean(wins)) if wins else 0.0

    @staticmethod
    def avg_loss(trades: Sequence[ClosedTrade]) -> float:
        losses = [t.pl_percent for t in trades if t.pl_percent <= 0]
        return float(np.mean(losses)) if losses else 0.0

    @staticmethod
    def profit_factor(trades: Sequence[ClosedTrade]) -> float:
        gross_profit = sum(t.pl_percent for t in trades if t.pl_percent > 0)
        gross_loss = abs(sum(t.pl_percent for t in trades if t.pl_percent <= 0))
        if gross_loss == 0:
            return RATIO_SENTINEL if gross_profit > 0 else 0.0
        return gross_profit / gross_loss

    @staticmethod
    def expectancy(trades: Sequence[ClosedTrade]) -> float:
        return float(np.mean([t.pl_percent for t in trades])) if trades else 0.0

    @staticmethod
    def avg_holding_period(trades: Sequence[ClosedTrade]) -> float:
        return float(np.mean([t.holding_days for t in trades])) if trades else 0.0

    @staticmethod
    def median_holding_period(trades: Sequence[ClosedTrade]) -> float:
        return float(np.median([t.holding_days for t in trades])) if trades else 0.0

    @staticmethod
    def exit_reason_breakdown(trades: Sequence[ClosedTrade]) -> Dict[str, int]:
        counts = {category.value: 0 for category in ExitCategory}
        for trade in trades:
            counts[classify_exit_reason(trade.exit_reason).value] += 1
        return counts

    @staticmethod
    def market_breakdown(
        trades: Sequence[ClosedTrade],
        display_currency: Currency,
        converter: CurrencyConverter
    ) -> Dict[str, MarketBreakdown]:
        breakdown: Dict[str, MarketBreakdown] = {}
        for market in Market:
            market_trades = [t for t in trades if t.market == market]
            breakdown[market.value] = MarketBreakdown(
                trades=len(market_trades),
                pl=sum(
                    converter.convert(t.pl_amount, t.currency, display_currency)
                    for t in market_trades
                ),
                win_rate=TradeAnalyzer.win_rate(market_trades),
            )
        return breakdown


# =============================================================================
# PERFORMANCE ANALYZER
# =============================================================================

class PerformanceAnalyzer:
    """Assemble an AnalyticsSummary from a ledger and valuation series."""

    def __init__(
        self,
        params: Optional[AnalyticsParameters] = None,
        converter: Optional[CurrencyConverter] = None
    ):
        self.params = params or AnalyticsParameters()
        self.converter = converter or CurrencyConverter()

    def analyze_result(self, result: SimulationResult) -> AnalyticsSummary:
        return self.analyze(result.trades, result.valuations, result.display_currency)

    def analyze(
        self,
        trades: Sequence[ClosedTrade],
        valuations: Sequence[DailyValuation],
        display_currency: Currency = Currency.USD
    ) -> AnalyticsSummary:
        """
        Compute every metric.

        Args:
            trades: Closed-trade ledger
            valuations: Daily valuation series, ascending
            display_currency: Currency of the valuation series; selects the
                initial capital baseline

        Returns:
            AnalyticsSummary (all zeros for an empty run)
        """
        trades = list(trades)
        baseline = self.params.capital_for(display_currency)
        valuations = [replace(v, value=v.value + baseline) for v in valuations]
        values = _values(valuations)
        daily = ReturnCalculator.daily_returns(valuations)

        total_return = ReturnCalculator.total_return(valuations)
        annualized = ReturnCalculator.annualized_return(valuations)
        max_dd = RiskCalculator.max_drawdown(values)
        skewness, kurtosis = RiskCalculator.distribution_moments(daily)

        monthly = ReturnCalculator.monthly_returns(valuations)
        best = max(monthly, key=lambda m: m.return_pct) if monthly else None
        worst = min(monthly, key=lambda m: m.return_pct) if monthly else None

        summary = AnalyticsSummary(
            initial_value=float(values[0]) if len(values) else 0.0,
            final_value=float(values[-1]) if len(values) else 0.0,
            total_return=total_return,
            annualized_return=annualized,
            volatility=RiskCalculator.volatility(daily, self.params.trading_days_year),
            max_drawdown=max_dd,
            skewness=skewness,
            kurtosis=kurtosis,
            sharpe_ratio=RiskAdjustedCalculator.sharpe(daily, self.params),
            sortino_ratio=RiskAdjustedCalculator.sortino(daily, self.params),
            calmar_ratio=RiskAdjustedCalculator.calmar(annualized, max_dd),
            total_trades=len(trades),
            winning_trades=sum(1 for t in trades if t.pl_percent > 0),
            losing_trades=sum(1 for t in trades if t.pl_percent <= 0),
            win_rate=TradeAnalyzer.win_rate(trades),
            avg_win=TradeAnalyzer.avg_win(trades),
            avg_loss=TradeAnalyzer.avg_loss(trades),
            profit_factor=TradeAnalyzer.profit_factor(trades),
            expectancy=TradeAnalyzer.expectancy(trades),
            avg_holding_period=TradeAnalyzer.avg_holding_period(trades),
            median_holding_period=TradeAnalyzer.median_holding_period(trades),
            by_market=TradeAnalyzer.market_breakdown(trades, display_currency, self.converter),
            exit_reasons=TradeAnalyzer.exit_reason_breakdown(trades),
            monthly_returns=monthly,
            best_month=best,
            worst_month=worst,
            display_currency=display_currency,
        )

        logger.info(
            f"Analytics: return {summary.total_return:.2f}%, Sharpe {summary.sharpe_ratio:.2f}, "
            f"max DD {summary.max_drawdown:.2f}%, win rate {summary.win_rate:.1f}%"
        )
        return summary
