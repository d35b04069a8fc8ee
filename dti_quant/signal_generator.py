"""
Signal Generation

Backtests each symbol's price history against the DTI entry/exit rules and
turns the resulting trades into immutable Signal records for the portfolio
simulator.

TRADE LIFECYCLE (per symbol)
    Bars are walked from index 1 with at most one trade open at a time.

    Entry (StrategyVariant.CROSSOVER, default)
        dti[i-1] <= threshold < dti[i] and 7-day DTI > 0
    Entry (StrategyVariant.REVERSAL)
        dti[i] < threshold, dti[i] > dti[i-1], 7-day DTI rising, and the bar
        falls after the warm-up window

    Exits, first match wins
        pl >= take_profit        -> Take Profit
        pl <= -stop_loss         -> Stop Loss
        held >= max_days         -> Max Days (CROSSOVER) / Time Exit (REVERSAL)
        7-day DTI turns <= 0     -> 7-Day DTI Exit (CROSSOVER only)

    A trade still open on the last bar is emitted with exit reason Open,
    priced at the last close.

HISTORICAL WIN RATE
    With a simulation start date, the win rate of a symbol comes from its
    completed trades entered after the warm-up buffer and before the
    simulation start, computed on the pre-simulation slice of history. Only
    trades entered on or after the simulation start become signals, so a
    signal never counts towards its own win rate.

    Without a simulation start every trade becomes a signal and its win
    rate is computed over the symbol's other completed trades.

CONCURRENCY
    Symbols share no state, so backtests may run on a thread pool. Results
    are collected in input order before signals are merged and sorted.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from dti_quant.config import (
    DTIParameters,
    ExitReason,
    Market,
    SimulationConfig,
    StrategyVariant,
    TradingRules,
)
from dti_quant.conviction import WinRateStats, compute_win_rates
from dti_quant.data_loader import PriceSeries, SkipRecord
from dti_quant.indicators import SevenDayDTIResult, calculate_7day_dti, calculate_dti, seven_day_rising

logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class BacktestTrade:
    """One round trip produced by backtesting a single symbol."""
    symbol: str
    market: Market
    entry_date: pd.Timestamp
    entry_price: float
    exit_date: pd.Timestamp
    exit_price: float
    pl_percent: float
    holding_days: int
    exit_reason: ExitReason
    entry_index: int
    exit_index: int
    prev_dti: float
    entry_dti: float
    entry_7day_dti: Optional[float]
    is_open: bool = False

    @property
    def is_win(self) -> bool:
        return self.pl_percent > 0


@dataclass(frozen=True)
class Signal:
    """
    A backtested trade offered to the portfolio simulator.

    Exit fields are precomputed; the simulator only applies them.
    `historical_win_rate` never includes this trade's own outcome.
    """
    symbol: str
    market: Market
    entry_date: pd.Timestamp
    entry_price: float
    exit_date: Optional[pd.Timestamp]
    exit_price: Optional[float]
    pl_percent: Optional[float]
    holding_days: Optional[int]
    exit_reason: Optional[ExitReason]
    historical_win_rate: float
    historical_trade_count: int = 0
    is_open: bool = False
    entry_dti: Optional[float] = None
    entry_7day_dti: Optional[float] = None

    @property
    def key(self) -> Tuple[str, pd.Timestamp]:
        return (self.symbol, pd.Timestamp(self.entry_date).normalize())

    @property
    def is_win(self) -> bool:
        return self.pl_percent is not None and self.pl_percent > 0

    @classmethod
    def from_trade(
        cls,
        trade: BacktestTrade,
        win_rate: float,
        trade_count: int
    ) -> "Signal":
        return cls(
            symbol=trade.symbol,
            market=trade.market,
            entry_date=trade.entry_date,
            entry_price=trade.entry_price,
            exit_date=trade.exit_date,
            exit_price=trade.exit_price,
            pl_percent=trade.pl_percent,
            holding_days=trade.holding_days,
            exit_reason=trade.exit_reason,
            historical_win_rate=win_rate,
            historical_trade_count=trade_count,
            is_open=trade.is_open,
            entry_dti=trade.entry_dti,
            entry_7day_dti=trade.entry_7day_dti,
        )


@dataclass
class SymbolBacktest:
    """Trades and indicator series for one symbol."""
    symbol: str
    trades: List[BacktestTrade]
    dti: np.ndarray
    seven_day: SevenDayDTIResult

    @property
    def completed_trades(self) -> List[BacktestTrade]:
        return [t for t in self.trades if not t.is_open]

    @property
    def win_rate(self) -> float:
        completed = self.completed_trades
        if not completed:
            return 0.0
        return sum(1 for t in completed if t.is_win) / len(completed) * 100


@dataclass
class SymbolSignals:
    """Per-symbol output of SignalGenerator."""
    symbol: str
    market: Market
    history: Optional[WinRateStats]
    signals: List[Signal] = field(default_factory=list)
    completed_trades: List[BacktestTrade] = field(default_factory=list)


@dataclass
class SignalBatch:
    """
    Signals for every symbol that backtested successfully.

    Attributes:
        signals: All signals, sorted by entry date (stable w.r.t. input order)
        history: Historical win-rate stats per symbol
        completed_trades: Historical completed trades across symbols
        skipped: Symbols excluded, with reasons
    """
    signals: List[Signal] = field(default_factory=list)
    history: Dict[str, WinRateStats] = field(default_factory=dict)
    completed_trades: List[BacktestTrade] = field(default_factory=list)
    skipped: List[SkipRecord] = field(default_factory=list)

    def for_symbols(self, symbols) -> List[Signal]:
        wanted = set(symbols)
        return [s for s in self.signals if s.symbol in wanted]


# =============================================================================
# PER-SYMBOL BACKTEST
# =============================================================================

def warmup_end(first_date: pd.Timestamp, months: int) -> pd.Timestamp:
    """First date after the indicator warm-up buffer."""
    return pd.Timestamp(first_date) + pd.DateOffset(months=months)


def _exit_reason(
    pl_percent: float,
    holding_days: int,
    prev_7d: Optional[float],
    cur_7d: Optional[float],
    rules: TradingRules
) -> Optional[ExitReason]:
    if pl_percent >= rules.take_profit_percent:
        return ExitReason.TAKE_PROFIT
    if pl_percent <= -rules.stop_loss_percent:
        return ExitReason.STOP_LOSS
    if holding_days >= rules.max_holding_days:
        if rules.variant == StrategyVariant.REVERSAL:
            return ExitReason.TIME_EXIT
        return ExitReason.MAX_DAYS
    if (
        rules.variant == StrategyVariant.CROSSOVER
        and prev_7d is not None and cur_7d is not None
        and prev_7d > 0 and cur_7d <= 0
    ):
        return ExitReason.SEVEN_DAY_EXIT
    return None


def _is_entry(
    prev_dti: float,
    cur_dti: float,
    prev_7d: Optional[float],
    cur_7d: Optional[float],
    rules: TradingRules
) -> bool:
    threshold = rules.entry_threshold
    if rules.variant == StrategyVariant.CROSSOVER:
        return (
            prev_dti <= threshold < cur_dti
            and cur_7d is not None and cur_7d > 0
        )
    return cur_dti < threshold and cur_dti > prev_dti and seven_day_rising(cur_7d, prev_7d)


def backtest_symbol(
    series: PriceSeries,
    params: Optional[DTIParameters] = None,
    rules: Optional[TradingRules] = None
) -> SymbolBacktest:
    """
    Run the DTI strategy over one symbol's full history.

    Args:
        series: Price history
        params: DTI periods
        rules: Entry/exit rules

    Returns:
        SymbolBacktest with trades in chronological order
    """
    params = params or DTIParameters()
    rules = rules or TradingRules()

    dti = calculate_dti(series.high, series.low, params.r, params.s, params.u)
    seven_day = calculate_7day_dti(
        series.dates, series.high, series.low,
        params.r, params.s, params.u, params.block_size
    )
    daily_7d = seven_day.daily

    earliest_entry = None
    if rules.variant == StrategyVariant.REVERSAL and len(series):
        earliest_entry = warmup_end(series.dates[0], rules.warmup_months)

    trades: List[BacktestTrade] = []
    open_trade: Optional[dict] = None

    for i in range(1, len(series)):
        date = series.dates[i]
        price = float(series.close[i])

        if open_trade is None:
            if earliest_entry is not None and date < earliest_entry:
                continue
            if _is_entry(dti[i - 1], dti[i], daily_7d[i - 1], daily_7d[i], rules):
                open_trade = {
                    'entry_index': i,
                    'entry_date': date,
                    'entry_price': price,
                    'prev_dti': float(dti[i - 1]),
                    'entry_dti': float(dti[i]),
                    'entry_7day_dti': daily_7d[i],
                }
            continue

        holding_days = (date - open_trade['entry_date']).days
        pl_percent = (price - open_trade['entry_price']) / open_trade['entry_price'] * 100
        reason = _exit_reason(pl_percent, holding_days, daily_7d[i - 1], daily_7d[i], rules)

        if reason is not None:
            trades.append(BacktestTrade(
                symbol=series.symbol,
                market=series.market,
                exit_date=date,
                exit_price=price,
                pl_percent=pl_percent,
                holding_days=holding_days,
                exit_reason=reason,
                exit_index=i,
                **open_trade,
            ))
            open_trade = None

    if open_trade is not None:
        last = len(series) - 1
        last_price = float(series.close[last])
        trades.append(BacktestTrade(
            symbol=series.symbol,
            market=series.market,
            exit_date=series.dates[last],
            exit_price=last_price,
            pl_percent=(last_price - open_trade['entry_price']) / open_trade['entry_price'] * 100,
            holding_days=(series.dates[last] - open_trade['entry_date']).days,
            exit_reason=ExitReason.OPEN,
            exit_index=last,
            is_open=True,
            **open_trade,
        ))

    logger.debug(f"{series.symbol}: {len(trades)} trades over {len(series)} bars")
    return SymbolBacktest(symbol=series.symbol, trades=trades, dti=dti, seven_day=seven_day)


def leave_one_out_win_rates(trades: Sequence[BacktestTrade]) -> List[Tuple[float, int]]:
    """
    (win rate %, trade count) for each trade, using the symbol's other
    completed trades only. Open trades are scored against all completed trades.
    """
    completed = [t for t in trades if not t.is_open]
    total = len(completed)
    wins = sum(1 for t in completed if t.is_win)

    rates: List[Tuple[float, int]] = []
    for trade in trades:
        if trade.is_open:
            other_total, other_wins = total, wins
        else:
            other_total = total - 1
            other_wins = wins - (1 if trade.is_win else 0)
        rate = other_wins / other_total * 100 if other_total > 0 else 0.0
        rates.append((rate, other_total))
    return rates


# =============================================================================
# SIGNAL GENERATOR
# =============================================================================

class SignalGenerator:
    """
    Produce signals for a batch of symbols.

    A failure in one symbol is logged, recorded as a SkipRecord, and never
    aborts the batch.
    """

    def __init__(self, config: Optional[SimulationConfig] = None):
        self.config = config or SimulationConfig()

    def _historical_stats(
        self,
        series: PriceSeries,
        simulation_start: pd.Timestamp
    ) -> Tuple[Optional[WinRateStats], List[BacktestTrade], Optional[str]]:
        rules = self.config.rules
        history = series.slice_dates(end=simulation_start)
        if len(history) < rules.min_bars:
            return None, [], f"only {len(history)} bars before simulation start"

        backtest = backtest_symbol(history, self.config.dti, rules)
        buffer_end = warmup_end(history.dates[0], rules.warmup_months)
        completed = [
            t for t in backtest.trades
            if not t.is_open and t.entry_date >= buffer_end
        ]
        stats = compute_win_rates(completed).get(series.symbol)
        return stats, completed, None

    def generate_for_symbol(
        self,
        series: PriceSeries,
        simulation_start: Optional[pd.Timestamp] = None
    ) -> SymbolSignals:
        """
        Backtest one symbol and convert its trades into signals.

        Raises whatever the indicator layer raises; generate() isolates it.
        """
        if simulation_start is None:
            backtest = backtest_symbol(series, self.config.dti, self.config.rules)
            rates = leave_one_out_win_rates(backtest.trades)
            signals = [
                Signal.from_trade(trade, rate, count)
                for trade, (rate, count) in zip(backtest.trades, rates)
            ]
            completed = backtest.completed_trades
            return SymbolSignals(
                symbol=series.symbol,
                market=series.market,
                history=compute_win_rates(completed).get(series.symbol),
                signals=signals,
                completed_trades=completed,
            )

        simulation_start = pd.Timestamp(simulation_start)
        stats, completed, reason = self._historical_stats(series, simulation_start)
        if reason is not None:
            raise ValueError(reason)

        backtest = backtest_symbol(series, self.config.dti, self.config.rules)
        win_rate = stats.win_rate if stats else 0.0
        trade_count = stats.total if stats else 0
        signals = [
            Signal.from_trade(trade, win_rate, trade_count)
            for trade in backtest.trades
            if trade.entry_date >= simulation_start
        ]
        return SymbolSignals(
            symbol=series.symbol,
            market=series.market,
            history=stats,
            signals=signals,
            completed_trades=completed,
        )

    def _safe_generate(
        self,
        series: PriceSeries,
        simulation_start: Optional[pd.Timestamp]
    ) -> Tuple[Optional[SymbolSignals], Optional[SkipRecord]]:
        try:
            return self.generate_for_symbol(series, simulation_start), None
        except Exception as e:
            logger.warning(f"Signal generation failed for {series.symbol}: {e}")
            return None, SkipRecord(series.symbol, 'signals', str(e))

    def generate(
        self,
        series_list: Sequence[PriceSeries],
        simulation_start: Optional[pd.Timestamp] = None
    ) -> SignalBatch:
        """
        Generate signals for every symbol.

        Args:
            series_list: Price histories, one per symbol
            simulation_start: First date signals may enter; None turns every
                backtested trade into a signal

        Returns:
            SignalBatch with signals sorted by entry date
        """
        workers = self.config.max_workers
        if workers and workers > 1 and len(series_list) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = list(pool.map(
                    lambda s: self._safe_generate(s, simulation_start), series_list
                ))
        else:
            outcomes = [self._safe_generate(s, simulation_start) for s in series_list]

        batch = SignalBatch()
        for result, skip in outcomes:
            if skip is not None:
                batch.skipped.append(skip)
                continue
            if result.history is not None:
                batch.history[result.symbol] = result.history
            batch.signals.extend(result.signals)
            batch.completed_trades.extend(result.completed_trades)

        # sorted() is stable, so same-day signals keep symbol input order
        batch.signals = sorted(batch.signals, key=lambda s: s.entry_date)

        logger.info(
            f"Generated {len(batch.signals)} signals from {len(series_list) - len(batch.skipped)} "
            f"symbols ({len(batch.skipped)} skipped)"
        )
        return batch
