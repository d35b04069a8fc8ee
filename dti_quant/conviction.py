"""
Conviction Filter

Ranks live opportunities by the historical win rate of their symbol.

A symbol is high conviction when it has at least `min_historical_trades`
completed trades and a win rate strictly above `high_conviction_win_rate`
(win means pl_percent > 0). An opportunity is kept only if it is high
conviction AND its signal date is one of the recent trading days: today
plus the previous `recency_trading_days` weekdays, scanning back no more
than `recency_scan_cap_days` calendar days.

When the batch carries no completed trades at all, win rates cannot be
computed and the filter returns the first few opportunities unranked.
Callers distinguish the two cases by type: RankedOpportunities or
UnrankedOpportunities.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

import pandas as pd

from dti_quant.config import ConvictionLevel, ConvictionThresholds, Market, get_market_for_symbol

logger = logging.getLogger(__name__)


# =============================================================================
# WIN RATES
# =============================================================================

@dataclass(frozen=True)
class WinRateStats:
    """Completed-trade tally for one symbol."""
    symbol: str
    wins: int
    total: int

    @property
    def losses(self) -> int:
        return self.total - self.wins

    @property
    def win_rate(self) -> float:
        """Win rate as a percentage."""
        return self.wins / self.total * 100 if self.total > 0 else 0.0


def compute_win_rates(trades: Iterable) -> Dict[str, WinRateStats]:
    """
    Group completed trades by symbol.

    Accepts any objects with `symbol`, `pl_percent` and (optionally)
    `is_open`; open trades are ignored.
    """
    tallies: Dict[str, List[int]] = {}
    for trade in trades:
        if getattr(trade, 'is_open', False):
            continue
        wins_total = tallies.setdefault(trade.symbol, [0, 0])
        wins_total[1] += 1
        if trade.pl_percent > 0:
            wins_total[0] += 1
    return {
        symbol: WinRateStats(symbol, wins, total)
        for symbol, (wins, total) in tallies.items()
    }


def classify_conviction(
    win_rate: float,
    thresholds: Optional[ConvictionThresholds] = None
) -> ConvictionLevel:
    thresholds = thresholds or ConvictionThresholds()
    if win_rate > thresholds.high_conviction_win_rate:
        return ConvictionLevel.HIGH
    if win_rate >= thresholds.moderate_conviction_win_rate:
        return ConvictionLevel.MODERATE
    return ConvictionLevel.LOW


# =============================================================================
# RECENCY WINDOW
# =============================================================================

def recent_trading_days(
    today: pd.Timestamp,
    trading_days: int = 5,
    scan_cap_days: int = 10
) -> List[pd.Timestamp]:
    """
    Today followed by up to `trading_days` earlier weekdays.

    Saturdays and Sundays are skipped while walking backwards; at most
    `scan_cap_days` calendar days are scanned.
    """
    today = pd.Timestamp(today).normalize()
    dates = [today]
    found = 0
    days_back = 0
    while found < trading_days and days_back < scan_cap_days:
        days_back += 1
        candidate = today - pd.Timedelta(days=days_back)
        if candidate.dayofweek < 5:
            dates.append(candidate)
            found += 1
    return dates


def is_within_trading_days(
    signal_date: pd.Timestamp,
    today: pd.Timestamp,
    trading_days: int = 5,
    scan_cap_days: int = 10
) -> bool:
    """True when `signal_date` falls on one of the recent trading days."""
    signal_day = pd.Timestamp(signal_date).normalize()
    return signal_day in recent_trading_days(today, trading_days, scan_cap_days)


# =============================================================================
# OPPORTUNITIES
# =============================================================================

@dataclass(frozen=True)
class Opportunity:
    """A symbol whose latest bar satisfies the entry rule."""
    symbol: str
    signal_date: pd.Timestamp
    current_price: float
    current_dti: float
    current_7day_dti: Optional[float] = None
    market: Optional[Market] = None

    def __post_init__(self):
        object.__setattr__(self, 'signal_date', pd.Timestamp(self.signal_date).normalize())

    @property
    def resolved_market(self) -> Market:
        return self.market or get_market_for_symbol(self.symbol)

    @classmethod
    def from_analysis(cls, analysis) -> "Opportunity":
        """Build from an indicators.StockAnalysis."""
        return cls(
            symbol=analysis.symbol,
            signal_date=analysis.signal_date,
            current_price=analysis.current_price,
            current_dti=analysis.current_dti,
            current_7day_dti=analysis.current_7day_dti,
        )


@dataclass(frozen=True)
class RankedOpportunity:
    """Opportunity annotated with its symbol's trade history."""
    opportunity: Opportunity
    win_rate: float
    total_trades: int
    conviction: ConvictionLevel

    @property
    def symbol(self) -> str:
        return self.opportunity.symbol


@dataclass
class RankedOpportunities:
    """High-conviction, recent opportunities sorted by win rate (best first)."""
    items: List[RankedOpportunity] = field(default_factory=list)
    is_ranked: bool = field(default=True, init=False)

    def __iter__(self) -> Iterator[RankedOpportunity]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class UnrankedOpportunities:
    """Fallback when no trade history exists: raw opportunities in input order."""
    items: List[Opportunity] = field(default_factory=list)
    is_ranked: bool = field(default=False, init=False)

    def __iter__(self) -> Iterator[Opportunity]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


FilterOutcome = Union[RankedOpportunities, UnrankedOpportunities]


# =============================================================================
# FILTER
# =============================================================================

class ConvictionFilter:
    """Apply the win-rate gate and recency window to a batch of opportunities."""

    def __init__(self, thresholds: Optional[ConvictionThresholds] = None):
        self.thresholds = thresholds or ConvictionThresholds()

    def is_high_conviction(self, stats: Optional[WinRateStats]) -> bool:
        if stats is None or stats.total < self.thresholds.min_historical_trades:
            return False
        return stats.win_rate > self.thresholds.high_conviction_win_rate

    def qualifying_symbols(self, history: Dict[str, WinRateStats]) -> List[str]:
        """Symbols from a win-rate table that pass the conviction gate."""
        return [symbol for symbol, stats in history.items() if self.is_high_conviction(stats)]

    def is_recent(self, signal_date: pd.Timestamp, today: pd.Timestamp) -> bool:
        return is_within_trading_days(
            signal_date,
            today,
            self.thresholds.recency_trading_days,
            self.thresholds.recency_scan_cap_days,
        )

    def filter(
        self,
        opportunities: Sequence[Opportunity],
        completed_trades: Sequence,
        today: pd.Timestamp
    ) -> FilterOutcome:
        """
        Keep high-conviction opportunities signalled in the recency window.

        Args:
            opportunities: Candidate entries, in scan order
            completed_trades: Historical trades across the batch
            today: Reference date for the recency window

        Returns:
            RankedOpportunities, or UnrankedOpportunities when
            `completed_trades` is empty
        """
        if not completed_trades:
            limit = self.thresholds.unranked_fallback_limit
            logger.info(f"No trade history; passing through first {limit} opportunities unranked")
            return UnrankedOpportunities(items=list(opportunities[:limit]))

        stats = compute_win_rates(completed_trades)
        ranked: List[RankedOpportunity] = []

        for opp in opportunities:
            symbol_stats = stats.get(opp.symbol)
            if not self.is_high_conviction(symbol_stats):
                logger.debug(f"{opp.symbol}: below conviction gate")
                continue
            if not self.is_recent(opp.signal_date, today):
                logger.debug(f"{opp.symbol}: signal {opp.signal_date.date()} outside recency window")
                continue
            ranked.append(RankedOpportunity(
                opportunity=opp,
                win_rate=symbol_stats.win_rate,
                total_trades=symbol_stats.total,
                conviction=classify_conviction(symbol_stats.win_rate, self.thresholds),
            ))

        ranked.sort(key=lambda r: (-r.win_rate, -r.opportunity.signal_date.value))
        logger.info(f"{len(ranked)} of {len(opportunities)} opportunities pass the conviction filter")
        return RankedOpportunities(items=ranked)
