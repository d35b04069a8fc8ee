"""
Price Data Loading

Turns raw OHLCV sources into aligned PriceSeries objects that the indicator
and simulation layers consume read-only.

SOURCES
    - pandas DataFrames (any frame with Open/High/Low/Close/Volume columns)
    - CSV files, one per symbol, with a Date column or date index
    - Yahoo Finance via yfinance (lazily imported, retried with backoff)

FAILURE ISOLATION
    A symbol that cannot be loaded, is missing columns, or has too few bars
    is logged and recorded as a SkipRecord. The rest of the batch continues.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from dti_quant.config import Market, get_market_for_symbol
from dti_quant.exceptions import InvalidSeriesError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: Tuple[str, ...] = ('Open', 'High', 'Low', 'Close', 'Volume')
STALE_AFTER_DAYS: int = 7


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class SkipRecord:
    """A symbol or signal excluded from a run, and why."""
    symbol: str
    stage: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {'symbol': self.symbol, 'stage': self.stage, 'reason': self.reason}


@dataclass
class PriceSeries:
    """
    Chronological OHLCV arrays for one symbol.

    All arrays share the length and ordering of `dates`. Instances are not
    reordered or mutated after construction.
    """
    symbol: str
    dates: pd.DatetimeIndex
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray
    market: Optional[Market] = None

    def __post_init__(self):
        self.dates = pd.DatetimeIndex(self.dates).normalize()
        for name in ('open', 'high', 'low', 'close', 'volume'):
            arr = np.asarray(getattr(self, name), dtype=float)
            if len(arr) != len(self.dates):
                raise InvalidSeriesError(
                    f"{self.symbol}: {name} has {len(arr)} values for {len(self.dates)} dates"
                )
            setattr(self, name, arr)
        if not self.dates.is_monotonic_increasing:
            raise InvalidSeriesError(f"{self.symbol}: dates must be in ascending order")
        if self.market is None:
            self.market = get_market_for_symbol(self.symbol)

    def __len__(self) -> int:
        return len(self.dates)

    @classmethod
    def from_dataframe(cls, symbol: str, df: pd.DataFrame) -> "PriceSeries":
        """Build a series from a frame with OHLCV columns and a date index."""
        normalized = normalize_ohlcv_frame(df)
        if normalized is None:
            raise InvalidSeriesError(f"{symbol}: frame is empty or missing OHLCV columns")
        return cls(
            symbol=symbol,
            dates=normalized.index,
            open=normalized['Open'].to_numpy(),
            high=normalized['High'].to_numpy(),
            low=normalized['Low'].to_numpy(),
            close=normalized['Close'].to_numpy(),
            volume=normalized['Volume'].to_numpy(),
        )

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                'Open': self.open,
                'High': self.high,
                'Low': self.low,
                'Close': self.close,
                'Volume': self.volume,
            },
            index=self.dates,
        )

    def slice_dates(
        self,
        start: Optional[pd.Timestamp] = None,
        end: Optional[pd.Timestamp] = None
    ) -> "PriceSeries":
        """Bars with start <= date < end; either bound may be omitted."""
        mask = np.ones(len(self.dates), dtype=bool)
        if start is not None:
            mask &= self.dates >= pd.Timestamp(start)
        if end is not None:
            mask &= self.dates < pd.Timestamp(end)
        return PriceSeries(
            symbol=self.symbol,
            dates=self.dates[mask],
            open=self.open[mask],
            high=self.high[mask],
            low=self.low[mask],
            close=self.close[mask],
            volume=self.volume[mask],
            market=self.market,
        )

    def close_on_or_before(self, date: pd.Timestamp) -> Optional[float]:
        """Last close at or before `date`, or None if the series starts later."""
        position = self.dates.searchsorted(pd.Timestamp(date), side='right') - 1
        if position < 0:
            return None
        return float(self.close[position])

    def days_since_last_bar(self, today: pd.Timestamp) -> Optional[int]:
        if len(self.dates) == 0:
            return None
        return (pd.Timestamp(today).normalize() - self.dates[-1]).days

    def is_stale(self, today: pd.Timestamp, max_days: int = STALE_AFTER_DAYS) -> bool:
        gap = self.days_since_last_bar(today)
        return gap is None or gap > max_days


@dataclass
class LoadResult:
    """Series that loaded successfully plus the symbols that did not."""
    series: List[PriceSeries] = field(default_factory=list)
    skipped: List[SkipRecord] = field(default_factory=list)

    @property
    def symbols(self) -> List[str]:
        return [s.symbol for s in self.series]


class SymbolCatalog:
    """Tradable symbols grouped by market."""

    def __init__(self, symbols: Iterable[str] = ()):
        self._by_market: Dict[Market, List[str]] = {m: [] for m in Market}
        for symbol in symbols:
            self.add(symbol)

    def add(self, symbol: str, market: Optional[Market] = None) -> None:
        market = market or get_market_for_symbol(symbol)
        if symbol not in self._by_market[market]:
            self._by_market[market].append(symbol)

    def symbols(self, market: Optional[Market] = None) -> List[str]:
        if market is not None:
            return list(self._by_market[market])
        return [s for m in Market for s in self._by_market[m]]

    def market_of(self, symbol: str) -> Optional[Market]:
        for market, symbols in self._by_market.items():
            if symbol in symbols:
                return market
        return None

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_market.values())


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_ohlcv_frame(df: Optional[pd.DataFrame]) -> Optional[pd.DataFrame]:
    """
    Normalize a raw OHLCV frame.

    Flattens MultiIndex columns, strips timezones, coerces a DatetimeIndex,
    drops all-NaN rows and rows without high/low/close, and sorts by date.
    Returns None when the frame is empty or missing required columns.
    """
    if df is None or len(df) == 0:
        return None

    df = df.copy()

    if isinstance(df.columns, pd.MultiIndex):
        df.columns = df.columns.get_level_values(0)

    # Title-case so csv headers like "close" or "CLOSE" resolve
    df.columns = [str(c).strip().title() for c in df.columns]

    if 'Date' in df.columns:
        df = df.set_index('Date')

    if not isinstance(df.index, pd.DatetimeIndex):
        df.index = pd.to_datetime(df.index)

    if df.index.tz is not None:
        df.index = df.index.tz_localize(None)

    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        logger.warning(f"Missing required columns: {missing}")
        return None

    df = df.dropna(how='all')
    df = df.dropna(subset=['High', 'Low', 'Close'])
    df = df[~df.index.duplicated(keep='last')].sort_index()
    df['Volume'] = df['Volume'].fillna(0)

    if len(df) == 0:
        return None
    return df


# =============================================================================
# LOADER
# =============================================================================

class PriceDataLoader:
    """
    Load PriceSeries from frames, CSV files, or Yahoo Finance.

    Symbols with fewer than `min_bars` bars are excluded.
    """

    def __init__(self, min_bars: int = 200, max_retries: int = 3, timeout: int = 30):
        self._yf = None
        self.min_bars = min_bars
        self.max_retries = max_retries
        self.timeout = timeout

    def _get_yf(self):
        """Lazy load yfinance to avoid import overhead."""
        if self._yf is None:
            import yfinance as yf
            self._yf = yf
        return self._yf

    def _accept(self, result: LoadResult, symbol: str, series: PriceSeries) -> None:
        if len(series) < self.min_bars:
            reason = f"only {len(series)} bars (minimum {self.min_bars})"
            logger.warning(f"Skipping {symbol}: {reason}")
            result.skipped.append(SkipRecord(symbol, 'load', reason))
            return
        result.series.append(series)

    def load_frames(self, frames: Mapping[str, pd.DataFrame]) -> LoadResult:
        """Convert already-fetched frames, isolating per-symbol failures."""
        result = LoadResult()
        for symbol, df in frames.items():
            try:
                series = PriceSeries.from_dataframe(symbol, df)
            except Exception as e:
                logger.warning(f"Could not load {symbol}: {e}")
                result.skipped.append(SkipRecord(symbol, 'load', str(e)))
                continue
            self._accept(result, symbol, series)
        return result

    def load_csv(self, path: Union[str, Path], symbol: Optional[str] = None) -> PriceSeries:
        """Read one CSV file. The symbol defaults to the file stem."""
        path = Path(path)
        symbol = symbol or path.stem
        df = pd.read_csv(path)
        return PriceSeries.from_dataframe(symbol, df)

    def load_csv_directory(self, directory: Union[str, Path]) -> LoadResult:
        """Load every *.csv file in a directory, one symbol per file."""
        directory = Path(directory)
        result = LoadResult()
        paths = sorted(directory.glob('*.csv'))
        logger.info(f"Loading {len(paths)} CSV files from {directory}")

        for path in paths:
            symbol = path.stem
            try:
                series = self.load_csv(path, symbol)
            except Exception as e:
                logger.warning(f"Could not load {symbol} from {path.name}: {e}")
                result.skipped.append(SkipRecord(symbol, 'load', str(e)))
                continue
            self._accept(result, symbol, series)

        logger.info(f"Loaded {len(result.series)} symbols, skipped {len(result.skipped)}")
        return result

    def _download(self, symbol: str, start: str, end: Optional[str]) -> pd.DataFrame:
        yf = self._get_yf()
        for attempt in range(self.max_retries):
            try:
                data = yf.download(
                    symbol,
                    start=start,
                    end=end,
                    auto_adjust=False,
                    progress=False,
                    timeout=self.timeout,
                )
                if data is None or len(data) == 0:
                    raise ValueError(f"No data returned for {symbol}")
                return data
            except Exception as e:
                if attempt < self.max_retries - 1:
                    wait_time = 2 ** attempt
                    logger.warning(f"Fetch failed for {symbol}: {e}, retrying in {wait_time}s...")
                    time.sleep(wait_time)
                else:
                    raise

    def fetch_yahoo(
        self,
        symbols: Sequence[str],
        start: str,
        end: Optional[str] = None
    ) -> LoadResult:
        """
        Download daily bars for each symbol from Yahoo Finance.

        Args:
            symbols: Ticker symbols (exchange suffixes select the market)
            start: Start date (YYYY-MM-DD)
            end: Optional end date (YYYY-MM-DD), exclusive

        Returns:
            LoadResult with loaded series and skip records
        """
        result = LoadResult()
        logger.info(f"Fetching OHLCV for {len(symbols)} symbols ({start} to {end or 'today'})")

        for symbol in symbols:
            try:
                data = self._download(symbol, start, end)
                series = PriceSeries.from_dataframe(symbol, data)
            except Exception as e:
                logger.warning(f"Could not fetch {symbol}: {e}")
                result.skipped.append(SkipRecord(symbol, 'fetch', str(e)))
                continue
            self._accept(result, symbol, series)

        logger.info(f"Fetched {len(result.series)} symbols: {result.symbols}")
        return result
