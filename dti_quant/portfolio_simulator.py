"""
Portfolio Simulator

Replays precomputed signals through a day-by-day portfolio with hard
position caps and per-market fixed trade sizes.

DAILY LOOP (weekdays only, ascending, single-threaded)
    1. Exits
        Every open position looks up its originating signal by
        (symbol, entry_date). The position closes when the signal's exit
        date is on or before the current day, using the signal's exit
        price, P/L and reason. Positions from still-open signals that have
        been held for max_holding_days are force-closed at the latest
        close available in the supplied price data.

    2. Entries (FIFO)
        Signals entering today are taken in the order supplied. Counters
        for the total and per-market caps are seeded once from the open
        book and incremented locally as signals are admitted:
            total cap reached        -> stop processing today's batch
            market cap reached       -> reject, continue
            symbol already held      -> reject, continue
            unknown market           -> skip (recorded), continue

    3. Valuation
        value = sum(open trade sizes) + sum(realized P/L of closed trades),
        each converted into the display currency.

Positions are notional slots; cash is not modelled. Closed trades are
frozen and the ledger is append-only.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from dti_quant.config import (
    Currency,
    ExitReason,
    Market,
    SimulationConfig,
    TradeSize,
)
from dti_quant.currency import CurrencyConverter
from dti_quant.data_loader import PriceSeries, SkipRecord
from dti_quant.signal_generator import Signal

logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class Position:
    """An open allocation owned by the simulator."""
    symbol: str
    market: Market
    entry_date: pd.Timestamp
    entry_price: float
    trade_size: float
    currency: Currency
    win_rate_at_entry: float
    signal_key: Tuple[str, pd.Timestamp]

    def holding_days(self, as_of: pd.Timestamp) -> int:
        return (pd.Timestamp(as_of) - self.entry_date).days


@dataclass(frozen=True)
class ClosedTrade:
    """A realized position. Never modified once appended to the ledger."""
    symbol: str
    market: Market
    entry_date: pd.Timestamp
    entry_price: float
    trade_size: float
    currency: Currency
    win_rate_at_entry: float
    exit_date: pd.Timestamp
    exit_price: float
    pl_percent: float
    exit_reason: str
    holding_days: int

    @property
    def pl_amount(self) -> float:
        """Realized P/L in the trade's own currency."""
        return self.trade_size * self.pl_percent / 100

    @property
    def is_win(self) -> bool:
        return self.pl_percent > 0

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'market': self.market.value,
            'entry_date': self.entry_date,
            'entry_price': self.entry_price,
            'trade_size': self.trade_size,
            'currency': self.currency.value,
            'win_rate_at_entry': self.win_rate_at_entry,
            'exit_date': self.exit_date,
            'exit_price': self.exit_price,
            'pl_percent': self.pl_percent,
            'pl_amount': self.pl_amount,
            'exit_reason': self.exit_reason,
            'holding_days': self.holding_days,
        }


@dataclass(frozen=True)
class DailyValuation:
    """Portfolio value at the end of one simulated day."""
    date: pd.Timestamp
    value: float
    active_position_count: int
    positions_by_market: Mapping[Market, int]


@dataclass
class SimulationStats:
    """Admission and exit counters for one run."""
    days_simulated: int = 0
    signals_received: int = 0
    admitted: int = 0
    rejected_total_cap: int = 0
    rejected_market_cap: int = 0
    rejected_duplicate: int = 0
    skipped_unknown_market: int = 0
    closed_by_signal: int = 0
    force_closed: int = 0
    force_closed_no_price: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class SimulationResult:
    """
    Output of one simulation run.

    Attributes:
        trades: Closed-trade ledger in close order
        valuations: One record per simulated weekday
        open_positions: Positions still open after the last day
        skipped: Signals that could not be simulated
        stats: Admission/exit counters
        display_currency: Currency of every valuation
    """
    trades: Tuple[ClosedTrade, ...]
    valuations: List[DailyValuation]
    open_positions: List[Position]
    skipped: List[SkipRecord]
    stats: SimulationStats
    display_currency: Currency

    def ledger_frame(self) -> pd.DataFrame:
        return pd.DataFrame([t.to_dict() for t in self.trades])

    def valuation_frame(self) -> pd.DataFrame:
        rows = []
        for v in self.valuations:
            row = {
                'date': v.date,
                'value': v.value,
                'active_positions': v.active_position_count,
            }
            for market in Market:
                row[f'positions_{market.value}'] = v.positions_by_market.get(market, 0)
            rows.append(row)
        frame = pd.DataFrame(rows)
        if len(frame):
            frame = frame.set_index('date')
        return frame


# =============================================================================
# SIMULATOR
# =============================================================================

def _resolve_market(value) -> Optional[Market]:
    if isinstance(value, Market):
        return value
    try:
        return Market(value)
    except ValueError:
        return None


class PortfolioSimulator:
    """
    Day-by-day portfolio replay under count-based position caps.

    The simulator owns no global state; everything comes from the
    SimulationConfig passed in.
    """

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        converter: Optional[CurrencyConverter] = None
    ):
        self.config = config or SimulationConfig()
        self.converter = converter or CurrencyConverter(self.config.fx)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _to_display(self, amount: float, currency: Currency, display: Currency) -> float:
        return self.converter.convert(amount, currency, display)

    def _trade_size(self, market: Market) -> Optional[TradeSize]:
        return self.config.constraints.trade_sizes.get(market)

    @staticmethod
    def _build_index(
        signals: Sequence[Signal]
    ) -> Tuple[Dict[Tuple[str, pd.Timestamp], Signal], List[SkipRecord]]:
        """Signals keyed by (symbol, entry_date); later duplicates of a key are skipped."""
        index: Dict[Tuple[str, pd.Timestamp], Signal] = {}
        duplicates: List[SkipRecord] = []
        for signal in signals:
            key = signal.key
            if key in index:
                logger.warning(f"Duplicate signal for {key[0]} on {key[1].date()}; keeping first")
                duplicates.append(SkipRecord(
                    signal.symbol, 'simulation', f"duplicate signal for entry date {key[1].date()}"
                ))
                continue
            index[key] = signal
        return index, duplicates

    @staticmethod
    def _skip_unknown_market(
        signal: Signal,
        stats: SimulationStats,
        skipped: List[SkipRecord]
    ) -> None:
        stats.skipped_unknown_market += 1
        skipped.append(SkipRecord(
            signal.symbol, 'simulation', f"unknown market {signal.market!r}"
        ))
        logger.warning(f"Skipping {signal.symbol}: unknown market {signal.market!r}")

    @staticmethod
    def _group_by_entry(signals: Sequence[Signal]) -> Dict[pd.Timestamp, List[Signal]]:
        by_day: Dict[pd.Timestamp, List[Signal]] = defaultdict(list)
        for signal in signals:
            by_day[pd.Timestamp(signal.entry_date).normalize()].append(signal)
        return by_day

    def _close_from_signal(self, position: Position, signal: Signal) -> ClosedTrade:
        return ClosedTrade(
            symbol=position.symbol,
            market=position.market,
            entry_date=position.entry_date,
            entry_price=position.entry_price,
            trade_size=position.trade_size,
            currency=position.currency,
            win_rate_at_entry=position.win_rate_at_entry,
            exit_date=pd.Timestamp(signal.exit_date).normalize(),
            exit_price=float(signal.exit_price),
            pl_percent=float(signal.pl_percent),
            exit_reason=getattr(signal.exit_reason, 'value', signal.exit_reason) or ExitReason.OPEN.value,
            holding_days=(
                int(signal.holding_days) if signal.holding_days is not None
                else position.holding_days(signal.exit_date)
            ),
        )

    def _force_close(
        self,
        position: Position,
        day: pd.Timestamp,
        price_data: Mapping[str, PriceSeries],
        stats: SimulationStats
    ) -> ClosedTrade:
        series = price_data.get(position.symbol)
        price = series.close_on_or_before(day) if series is not None else None

        if price is None:
            stats.force_closed_no_price += 1
            exit_price, pl_percent = position.entry_price, 0.0
            reason = ExitReason.FORCE_CLOSE_NO_PRICE
            logger.warning(f"{position.symbol}: no price for force close on {day.date()}, closing at entry")
        else:
            stats.force_closed += 1
            exit_price = price
            pl_percent = (price - position.entry_price) / position.entry_price * 100
            reason = ExitReason.FORCE_CLOSE

        return ClosedTrade(
            symbol=position.symbol,
            market=position.market,
            entry_date=position.entry_date,
            entry_price=position.entry_price,
            trade_size=position.trade_size,
            currency=position.currency,
            win_rate_at_entry=position.win_rate_at_entry,
            exit_date=day,
            exit_price=exit_price,
            pl_percent=pl_percent,
            exit_reason=reason.value,
            holding_days=position.holding_days(day),
        )

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def run(
        self,
        signals: Sequence[Signal],
        start_date,
        end_date,
        price_data: Optional[Mapping[str, PriceSeries]] = None,
        display_currency: Optional[Currency] = None
    ) -> SimulationResult:
        """
        Simulate every weekday from `start_date` to `end_date` inclusive.

        Args:
            signals: Signals in FIFO priority order
            start_date: First simulated day
            end_date: Last simulated day ("today")
            price_data: Optional bars by symbol, used for force-closes
            display_currency: Overrides config.display_currency

        Returns:
            SimulationResult
        """
        display = display_currency or self.config.display_currency
        constraints = self.config.constraints
        max_holding = self.config.rules.max_holding_days
        price_data = price_data or {}

        start = pd.Timestamp(start_date).normalize()
        end = pd.Timestamp(end_date).normalize()

        index, skipped = self._build_index(signals)
        entries = self._group_by_entry(index.values())

        stats = SimulationStats(signals_received=len(signals))
        open_positions: List[Position] = []
        ledger: List[ClosedTrade] = []
        valuations: List[DailyValuation] = []
        realized_display = 0.0

        for day in pd.date_range(start, end, freq='D'):
            if day.dayofweek >= 5:
                continue
            stats.days_simulated += 1

            # 1. Exits
            still_open: List[Position] = []
            for position in open_positions:
                signal = index[position.signal_key]
                closed: Optional[ClosedTrade] = None

                if (
                    not signal.is_open
                    and signal.exit_date is not None
                    and pd.Timestamp(signal.exit_date).normalize() <= day
                ):
                    closed = self._close_from_signal(position, signal)
                    stats.closed_by_signal += 1
                elif (
                    (signal.is_open or signal.exit_date is None)
                    and position.holding_days(day) >= max_holding
                ):
                    closed = self._force_close(position, day, price_data, stats)

                if closed is None:
                    still_open.append(position)
                    continue

                ledger.append(closed)
                realized_display += self._to_display(closed.pl_amount, closed.currency, display)
                logger.debug(
                    f"{day.date()} EXIT {closed.symbol} {closed.exit_reason} "
                    f"{closed.pl_percent:+.2f}%"
                )
            open_positions = still_open

            # 2. Entries
            total_open = len(open_positions)
            market_counts: Dict[Market, int] = {m: 0 for m in Market}
            for position in open_positions:
                market_counts[position.market] += 1
            held = {p.symbol for p in open_positions}

            batch = entries.get(day, [])
            for n, signal in enumerate(batch):
                market = _resolve_market(signal.market)
                size = self._trade_size(market) if market is not None else None
                if market is None or size is None:
                    self._skip_unknown_market(signal, stats, skipped)
                    continue

                if total_open >= constraints.max_total_positions:
                    rejected = 0
                    for rest in batch[n:]:
                        rest_market = _resolve_market(rest.market)
                        if rest_market is None or self._trade_size(rest_market) is None:
                            self._skip_unknown_market(rest, stats, skipped)
                        else:
                            rejected += 1
                    stats.rejected_total_cap += rejected
                    logger.debug(f"{day.date()} total cap reached, {rejected} signals rejected")
                    break

                if market_counts[market] >= constraints.max_positions_per_market:
                    stats.rejected_market_cap += 1
                    logger.debug(f"{day.date()} {market.value} cap reached, rejected {signal.symbol}")
                    continue

                if constraints.prevent_duplicate_symbols and signal.symbol in held:
                    stats.rejected_duplicate += 1
                    logger.debug(f"{day.date()} already holding {signal.symbol}")
                    continue

                open_positions.append(Position(
                    symbol=signal.symbol,
                    market=market,
                    entry_date=day,
                    entry_price=float(signal.entry_price),
                    trade_size=size.amount,
                    currency=size.currency,
                    win_rate_at_entry=signal.historical_win_rate,
                    signal_key=(signal.symbol, day),
                ))
                total_open += 1
                market_counts[market] += 1
                held.add(signal.symbol)
                stats.admitted += 1
                logger.debug(f"{day.date()} ENTRY {signal.symbol} @ {signal.entry_price:.2f}")

            # 3. Valuation
            open_value = sum(
                self._to_display(p.trade_size, p.currency, display) for p in open_positions
            )
            valuations.append(DailyValuation(
                date=day,
                value=open_value + realized_display,
                active_position_count=len(open_positions),
                positions_by_market=dict(market_counts),
            ))

        # Entries on days the loop never visited
        visited = {v.date for v in valuations}
        for entry_day, day_signals in entries.items():
            if start <= entry_day <= end and entry_day not in visited:
                for signal in day_signals:
                    skipped.append(SkipRecord(
                        signal.symbol, 'simulation',
                        f"entry date {entry_day.date()} is not a trading day"
                    ))

        logger.info(
            f"Simulated {stats.days_simulated} days: {stats.admitted} admitted, "
            f"{len(ledger)} closed, {len(open_positions)} still open"
        )

        return SimulationResult(
            trades=tuple(ledger),
            valuations=valuations,
            open_positions=open_positions,
            skipped=skipped,
            stats=stats,
            display_currency=display,
        )
