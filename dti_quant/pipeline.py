"""
Simulation Pipeline

Orchestrates a full run:

    PriceSeries -> SignalGenerator -> conviction gate -> PortfolioSimulator
                -> PerformanceAnalyzer (-> optional MonteCarloRiskSimulator)

A run either completes and returns the ledger, the valuations, the
analytics, and the skip log, or raises ConfigurationError before any work
is done.

Usage:
    pipeline = SimulationPipeline(SimulationConfig())
    report = pipeline.run(series, simulation_start="2024-01-01", end_date="2024-12-31")
    print(format_simulation_report(report))
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from dti_quant.config import Currency, MonteCarloParameters, SimulationConfig
from dti_quant.conviction import ConvictionFilter, FilterOutcome, Opportunity
from dti_quant.currency import CurrencyConverter
from dti_quant.data_loader import PriceSeries, SkipRecord
from dti_quant.indicators import analyze_stock
from dti_quant.monte_carlo import MonteCarloRiskResult, MonteCarloRiskSimulator, PositionSnapshot
from dti_quant.performance_analytics import AnalyticsSummary, PerformanceAnalyzer
from dti_quant.portfolio_simulator import (
    ClosedTrade,
    DailyValuation,
    PortfolioSimulator,
    Position,
    SimulationResult,
)
from dti_quant.signal_generator import SignalGenerator

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# =============================================================================
# REPORT CONTAINER
# =============================================================================

@dataclass
class SimulationReport:
    """
    Everything produced by one pipeline run.

    Attributes:
        ledger: Closed trades
        valuations: Daily valuation series
        analytics: Performance summary
        skipped: Symbols and signals excluded, with reasons
        simulation: Raw simulator output (open positions, counters)
        qualifying_symbols: Symbols that passed the conviction gate
        metadata: Run parameters and timing
    """
    ledger: List[ClosedTrade]
    valuations: List[DailyValuation]
    analytics: AnalyticsSummary
    skipped: List[SkipRecord]
    simulation: SimulationResult
    qualifying_symbols: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    monte_carlo: Optional[MonteCarloRiskResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metadata': self.metadata,
            'qualifying_symbols': self.qualifying_symbols,
            'analytics': self.analytics.to_dict(),
            'stats': self.simulation.stats.to_dict(),
            'skipped': [s.to_dict() for s in self.skipped],
            'monte_carlo': self.monte_carlo.to_dict() if self.monte_carlo else None,
        }


# =============================================================================
# PIPELINE
# =============================================================================

def portfolio_snapshot(
    positions: Sequence[Position],
    converter: CurrencyConverter,
    display_currency: Currency,
    volatilities: Optional[Mapping[str, float]] = None
) -> List[PositionSnapshot]:
    """Open positions as Monte Carlo inputs, valued in the display currency."""
    volatilities = volatilities or {}
    return [
        PositionSnapshot(
            value=converter.convert(p.trade_size, p.currency, display_currency),
            volatility=volatilities.get(p.symbol),
        )
        for p in positions
    ]


def annualized_volatility(series: PriceSeries, window: int = 252) -> float:
    """Annualized close-to-close volatility (%) over the trailing window."""
    closes = series.close[-(window + 1):]
    if len(closes) < 3:
        return 0.0
    returns = np.diff(closes) / closes[:-1]
    return float(np.std(returns) * np.sqrt(252) * 100)


class SimulationPipeline:
    """Signal generation, conviction gating, simulation, and analytics in one call."""

    def __init__(self, config: Optional[SimulationConfig] = None):
        self.config = config or SimulationConfig()
        self.converter = CurrencyConverter(self.config.fx)
        self.generator = SignalGenerator(self.config)
        self.conviction = ConvictionFilter(self.config.conviction)
        self.simulator = PortfolioSimulator(self.config, self.converter)
        self.analyzer = PerformanceAnalyzer(self.config.analytics, self.converter)

    def run(
        self,
        series: Sequence[PriceSeries],
        simulation_start,
        end_date,
        display_currency: Optional[Currency] = None,
        monte_carlo: Optional[MonteCarloParameters] = None,
        seed: Optional[int] = None
    ) -> SimulationReport:
        """
        Run the complete pipeline.

        Args:
            series: Price histories (already loaded)
            simulation_start: First simulated day; history before it sets win rates
            end_date: Last simulated day
            display_currency: Overrides config.display_currency
            monte_carlo: When given, run a risk simulation on the final open book
            seed: Seed for the Monte Carlo random source

        Returns:
            SimulationReport

        Raises:
            ConfigurationError: invalid configuration (nothing is run)
        """
        self.config.validate()
        started = time.time()
        display = display_currency or self.config.display_currency
        simulation_start = pd.Timestamp(simulation_start).normalize()
        end_date = pd.Timestamp(end_date).normalize()

        logger.info(
            f"Running simulation pipeline: {len(series)} symbols, "
            f"{simulation_start.date()} to {end_date.date()} ({display.value})"
        )

        batch = self.generator.generate(series, simulation_start)
        skipped: List[SkipRecord] = list(batch.skipped)

        qualifying = self.conviction.qualifying_symbols(batch.history)
        qualifying_set = set(qualifying)
        already_skipped = {s.symbol for s in batch.skipped}
        for symbol in (s.symbol for s in series):
            if symbol in qualifying_set or symbol in already_skipped:
                continue
            stats = batch.history.get(symbol)
            if stats is None:
                reason = "no completed historical trades"
            else:
                reason = (
                    f"{stats.total} trades ({stats.wins} won, {stats.losses} lost), "
                    f"{stats.win_rate:.1f}% win rate"
                )
            skipped.append(SkipRecord(symbol, 'conviction', reason))

        signals = batch.for_symbols(qualifying_set)
        logger.info(f"{len(qualifying)} high-conviction symbols, {len(signals)} signals")

        price_data = {s.symbol: s for s in series}
        simulation = self.simulator.run(signals, simulation_start, end_date, price_data, display)
        skipped.extend(simulation.skipped)

        analytics = self.analyzer.analyze_result(simulation)

        mc_result = None
        if monte_carlo is not None and simulation.open_positions:
            vols = {
                p.symbol: annualized_volatility(price_data[p.symbol])
                for p in simulation.open_positions if p.symbol in price_data
            }
            vols = {symbol: vol for symbol, vol in vols.items() if vol > 0}
            snapshot = portfolio_snapshot(simulation.open_positions, self.converter, display, vols)
            mc_result = MonteCarloRiskSimulator(monte_carlo, seed=seed).run(snapshot)

        return SimulationReport(
            ledger=list(simulation.trades),
            valuations=simulation.valuations,
            analytics=analytics,
            skipped=skipped,
            simulation=simulation,
            qualifying_symbols=qualifying,
            metadata={
                'version': VERSION,
                'simulation_start': str(simulation_start.date()),
                'end_date': str(end_date.date()),
                'display_currency': display.value,
                'symbols': len(series),
                'strategy': self.config.rules.variant.value,
                'execution_time_s': round(time.time() - started, 3),
                'timestamp': datetime.now().isoformat(timespec='seconds'),
            },
            monte_carlo=mc_result,
        )

    def scan_opportunities(
        self,
        series: Sequence[PriceSeries],
        today,
        completed_trades: Sequence = ()
    ) -> FilterOutcome:
        """
        Check each symbol's latest bar for an entry and rank the hits.

        Symbols that fail analysis are logged and left out.
        """
        opportunities: List[Opportunity] = []
        threshold = self.config.rules.entry_threshold
        for s in series:
            try:
                analysis = analyze_stock(
                    s.symbol, s.dates, s.high, s.low, s.close, self.config.dti, threshold
                )
            except Exception as e:
                logger.warning(f"Scan failed for {s.symbol}: {e}")
                continue
            if analysis.is_opportunity:
                opportunities.append(Opportunity.from_analysis(analysis))

        opportunities.sort(key=lambda o: o.current_dti)
        return self.conviction.filter(opportunities, completed_trades, pd.Timestamp(today))


# =============================================================================
# OUTPUT FORMATTING
# =============================================================================

def format_simulation_report(report: SimulationReport) -> str:
    """Human-readable text report for a pipeline run."""
    a = report.analytics
    cur = a.display_currency.value
    stats = report.simulation.stats
    meta = report.metadata

    lines = [
        "=" * 70,
        "PORTFOLIO SIMULATION REPORT",
        "=" * 70,
        f"Period:   {meta.get('simulation_start')} to {meta.get('end_date')}",
        f"Strategy: {meta.get('strategy')}",
        f"Symbols:  {meta.get('symbols')} loaded, {len(report.qualifying_symbols)} high conviction",
        "",
        "-" * 70,
        "PORTFOLIO VALUE",
        "-" * 70,
        f"Initial Value:      {a.initial_value:,.2f} {cur}",
        f"Final Value:        {a.final_value:,.2f} {cur}",
        f"Total Return:       {a.total_return:+.2f}%",
        f"Annualized Return:  {a.annualized_return:+.2f}%",
        "",
        "-" * 70,
        "RISK",
        "-" * 70,
        f"Volatility:         {a.volatility:.2f}%",
        f"Max Drawdown:       {a.max_drawdown:.2f}%",
        f"Sharpe Ratio:       {a.sharpe_ratio:.3f}",
        f"Sortino Ratio:      {a.sortino_ratio:.3f}",
        f"Calmar Ratio:       {a.calmar_ratio:.3f}",
        "",
        "-" * 70,
        "TRADES",
        "-" * 70,
        f"Closed Trades:      {a.total_trades} ({a.winning_trades} won, {a.losing_trades} lost)",
        f"Win Rate:           {a.win_rate:.1f}%",
        f"Average Win:        {a.avg_win:+.2f}%",
        f"Average Loss:       {a.avg_loss:+.2f}%",
        f"Profit Factor:      {a.profit_factor:.2f}",
        f"Expectancy:         {a.expectancy:+.2f}%",
        f"Holding Period:     {a.avg_holding_period:.1f} days avg, {a.median_holding_period:.1f} median",
        f"Admitted / Rejected (total cap, market cap, duplicate): {stats.admitted} / "
        f"({stats.rejected_total_cap}, {stats.rejected_market_cap}, {stats.rejected_duplicate})",
        "",
        "-" * 70,
        "BY MARKET",
        "-" * 70,
    ]

    for market, breakdown in a.by_market.items():
        lines.append(
            f"  {market:<6} {breakdown.trades:>4} trades  "
            f"P/L {breakdown.pl:>12,.2f} {cur}  win rate {breakdown.win_rate:5.1f}%"
        )

    lines.extend(["", "-" * 70, "EXIT REASONS", "-" * 70])
    for reason, count in a.exit_reasons.items():
        lines.append(f"  {reason:<12} {count:>4}")

    if a.best_month and a.worst_month:
        lines.extend([
            "",
            f"Best Month:         {a.best_month.month} ({a.best_month.return_pct:+.2f}%)",
            f"Worst Month:        {a.worst_month.month} ({a.worst_month.return_pct:+.2f}%)",
        ])

    if report.monte_carlo is not None:
        mc = report.monte_carlo
        lines.extend([
            "",
            "-" * 70,
            f"MONTE CARLO ({mc.iterations} paths x {mc.days} days)",
            "-" * 70,
            f"Initial Value:      {mc.initial_value:,.2f} {cur}",
            f"Expected Value:     {mc.expected_value:,.2f} {cur}",
            f"VaR (95%):          {mc.var_95:,.2f} {cur}",
            f"VaR (99%):          {mc.var_99:,.2f} {cur}",
            f"Expected Shortfall: {mc.expected_shortfall_95:,.2f} {cur}",
            f"Expected Max DD:    {mc.expected_max_drawdown:.2f}%",
            f"Worst Case DD:      {mc.worst_case_drawdown:.2f}%",
            f"P(Loss):            {mc.probability_of_loss:.1f}%",
        ])

    if report.skipped:
        lines.extend(["", f"Skipped: {len(report.skipped)} symbols/signals"])

    lines.append("=" * 70)
    return "\n".join(lines)
