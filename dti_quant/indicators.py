"""
DTI Indicator Engine

Directional Trend Index (William Blau) and the 7-day block variant used to
confirm daily entries.

INDICATOR ARCHITECTURE
    Layer 1 - EMA
        out[0] = x[0]; out[i] = x[i]*k + out[i-1]*(1-k), k = 2/(period+1).
        Identical to pandas ewm(span=period, adjust=False), so no warm-up
        NaNs are produced.

    Layer 2 - DTI
        hmu[i] = max(high[i] - high[i-1], 0)
        lmd[i] = max(low[i-1] - low[i], 0)
        price  = hmu - lmd,  abs_price = |price|   (index 0 seeded with 0)
        DTI    = 100 * EMA_u(EMA_s(EMA_r(price))) / EMA_u(EMA_s(EMA_r(abs_price)))
        A zero denominator yields 0.

    Layer 3 - 7-day DTI
        Daily bars are cut into consecutive blocks of `block_size` entries
        (by position, not calendar week). DTI is computed on the block
        high/low series and each block value is written back onto every
        daily index the block spans.

    Layer 4 - Signal detection
        Entry/exit markers over a DTI series and its back-mapped 7-day
        series, plus a point-in-time opportunity check for the latest bar.

Reference:
    Blau, W. (1995). "Momentum, Direction, and Divergence." Wiley.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from dti_quant.config import DTIParameters
from dti_quant.exceptions import InvalidSeriesError

warnings.filterwarnings('ignore', category=RuntimeWarning)

logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class PeriodBlock:
    """One aggregated block of consecutive daily bars."""
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    start_index: int
    end_index: int
    high: float
    low: float

    @property
    def day_count(self) -> int:
        return self.end_index - self.start_index + 1


@dataclass
class SevenDayDTIResult:
    """
    Block-level DTI and its daily back-mapping.

    Attributes:
        blocks: Aggregated blocks in input order
        block_dti: DTI value per block
        daily: Daily-length array; entry i holds the DTI of the block that
            contains bar i, or None where no block covers it
    """
    blocks: List[PeriodBlock]
    block_dti: np.ndarray
    daily: List[Optional[float]]

    def block_index_for(self, day_index: int) -> int:
        """Return the position of the block containing a daily index."""
        for position, block in enumerate(self.blocks):
            if block.start_index <= day_index <= block.end_index:
                return position
        raise IndexError(f"Daily index {day_index} is not covered by any block")


@dataclass(frozen=True)
class SignalMarker:
    """Entry or exit marker produced by detect_trade_signals."""
    index: int
    kind: str                     # "entry" or "exit"
    dti: float
    seven_day_dti: Optional[float]


@dataclass
class StockAnalysis:
    """Latest-bar DTI reading for one symbol."""
    symbol: str
    current_price: float
    current_dti: float
    current_7day_dti: Optional[float]
    is_opportunity: bool
    signal_date: pd.Timestamp
    markers: List[SignalMarker] = field(default_factory=list)


# =============================================================================
# EMA / DTI
# =============================================================================

def _as_float_array(values: Sequence[float], name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 1:
        raise InvalidSeriesError(f"{name} must be one-dimensional")
    return arr


def ema(series: Sequence[float], period: int) -> np.ndarray:
    """
    Exponential moving average seeded with the first observation.

    Args:
        series: Input values
        period: Smoothing period (k = 2 / (period + 1))

    Returns:
        Array of the same length as `series`

    Raises:
        InvalidSeriesError: empty input or non-positive period
    """
    values = _as_float_array(series, "series")
    if len(values) == 0:
        raise InvalidSeriesError("Cannot smooth an empty series")
    if period <= 0:
        raise InvalidSeriesError(f"EMA period must be positive, got {period}")

    return pd.Series(values).ewm(span=period, adjust=False).mean().to_numpy()


def calculate_dti(
    high: Sequence[float],
    low: Sequence[float],
    r: int = 14,
    s: int = 10,
    u: int = 5
) -> np.ndarray:
    """
    Calculate the Directional Trend Index.

    Args:
        high, low: Aligned price arrays
        r, s, u: Periods of the three successive EMA passes

    Returns:
        DTI array, same length as the inputs

    Raises:
        InvalidSeriesError: misaligned/empty inputs or non-positive periods
    """
    high_arr = _as_float_array(high, "high")
    low_arr = _as_float_array(low, "low")

    if len(high_arr) != len(low_arr):
        raise InvalidSeriesError(
            f"high and low differ in length ({len(high_arr)} vs {len(low_arr)})"
        )
    if len(high_arr) == 0:
        raise InvalidSeriesError("Cannot compute DTI on empty price arrays")
    if r <= 0 or s <= 0 or u <= 0:
        raise InvalidSeriesError(f"DTI periods must be positive, got r={r}, s={s}, u={u}")

    hmu = np.zeros(len(high_arr))
    lmd = np.zeros(len(low_arr))
    hmu[1:] = np.maximum(np.diff(high_arr), 0.0)
    lmd[1:] = np.maximum(-np.diff(low_arr), 0.0)

    price = hmu - lmd
    abs_price = np.abs(price)

    numerator = ema(ema(ema(price, r), s), u)
    denominator = ema(ema(ema(abs_price, r), s), u)

    dti = np.zeros(len(price))
    nonzero = denominator != 0
    dti[nonzero] = 100.0 * numerator[nonzero] / denominator[nonzero]
    return dti


# =============================================================================
# PERIOD AGGREGATION
# =============================================================================

def aggregate_to_periods(
    dates: Sequence,
    high: Sequence[float],
    low: Sequence[float],
    block_size: int = 7
) -> List[PeriodBlock]:
    """
    Collapse daily bars into consecutive blocks of `block_size` entries.

    The final block may be shorter. Every daily index belongs to exactly
    one block.

    Raises:
        InvalidSeriesError: misaligned arrays or non-positive block size
    """
    high_arr = _as_float_array(high, "high")
    low_arr = _as_float_array(low, "low")
    date_index = pd.DatetimeIndex(dates)

    if not (len(date_index) == len(high_arr) == len(low_arr)):
        raise InvalidSeriesError(
            f"dates/high/low lengths differ ({len(date_index)}, {len(high_arr)}, {len(low_arr)})"
        )
    if block_size <= 0:
        raise InvalidSeriesError(f"block_size must be positive, got {block_size}")

    blocks: List[PeriodBlock] = []
    for start in range(0, len(date_index), block_size):
        end = min(start + block_size, len(date_index)) - 1
        blocks.append(PeriodBlock(
            start_date=date_index[start],
            end_date=date_index[end],
            start_index=start,
            end_index=end,
            high=float(high_arr[start:end + 1].max()),
            low=float(low_arr[start:end + 1].min()),
        ))
    return blocks


def calculate_7day_dti(
    dates: Sequence,
    high: Sequence[float],
    low: Sequence[float],
    r: int = 14,
    s: int = 10,
    u: int = 5,
    block_size: int = 7
) -> SevenDayDTIResult:
    """
    DTI over aggregated blocks, back-mapped onto the daily axis.

    Returns:
        SevenDayDTIResult whose `daily` list is constant within each block
    """
    blocks = aggregate_to_periods(dates, high, low, block_size)
    if not blocks:
        return SevenDayDTIResult(blocks=[], block_dti=np.array([]), daily=[])

    daily: List[Optional[float]] = [None] * (blocks[-1].end_index + 1)

    block_dti = calculate_dti(
        [b.high for b in blocks],
        [b.low for b in blocks],
        r, s, u
    )

    for block, value in zip(blocks, block_dti):
        for day in range(block.start_index, block.end_index + 1):
            daily[day] = float(value)

    return SevenDayDTIResult(blocks=blocks, block_dti=block_dti, daily=daily)


# =============================================================================
# SIGNAL DETECTION
# =============================================================================

def seven_day_rising(current: Optional[float], previous: Optional[float]) -> bool:
    """7-day confirmation for reversal entries; true when there is no prior reading."""
    if previous is None:
        return True
    if current is None:
        return False
    return current > previous


def detect_trade_signals(
    dti: Sequence[float],
    daily_7day_dti: Sequence[Optional[float]],
    entry_threshold: float = -40.0
) -> List[SignalMarker]:
    """
    Mark reversal entries and 7-day exits across a whole series.

    Entry: DTI below threshold, rising, and 7-day DTI rising.
    Exit: 7-day DTI turns from positive to zero or below.
    """
    if len(dti) != len(daily_7day_dti):
        raise InvalidSeriesError(
            f"dti and 7-day DTI differ in length ({len(dti)} vs {len(daily_7day_dti)})"
        )

    markers: List[SignalMarker] = []
    for i in range(1, len(dti)):
        current, previous = float(dti[i]), float(dti[i - 1])
        cur_7d, prev_7d = daily_7day_dti[i], daily_7day_dti[i - 1]

        if current < entry_threshold and current > previous and seven_day_rising(cur_7d, prev_7d):
            markers.append(SignalMarker(i, "entry", current, cur_7d))

        if prev_7d is not None and cur_7d is not None and prev_7d > 0 and cur_7d <= 0:
            markers.append(SignalMarker(i, "exit", current, cur_7d))

    return markers


def analyze_stock(
    symbol: str,
    dates: Sequence,
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    params: Optional[DTIParameters] = None,
    entry_threshold: float = -40.0
) -> StockAnalysis:
    """Compute DTI series for one symbol and test the latest bar for an entry."""
    params = params or DTIParameters()
    dti = calculate_dti(high, low, params.r, params.s, params.u)
    seven_day = calculate_7day_dti(dates, high, low, params.r, params.s, params.u, params.block_size)
    markers = detect_trade_signals(dti, seven_day.daily, entry_threshold)

    last = len(dti) - 1
    current_dti = float(dti[last])
    previous_dti = float(dti[last - 1]) if last > 0 else current_dti
    current_7d = seven_day.daily[last]
    previous_7d = seven_day.daily[last - 1] if last > 0 else None

    is_opportunity = (
        current_dti < entry_threshold
        and current_dti > previous_dti
        and seven_day_rising(current_7d, previous_7d)
    )

    return StockAnalysis(
        symbol=symbol,
        current_price=float(np.asarray(close, dtype=float)[last]),
        current_dti=current_dti,
        current_7day_dti=current_7d,
        is_opportunity=is_opportunity,
        signal_date=pd.DatetimeIndex(dates)[last],
        markers=markers,
    )
