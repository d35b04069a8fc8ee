import numpy as np
import pandas as pd
import pytest

from dti_quant.config import ExitReason, Market, get_market_for_symbol
from dti_quant.data_loader import PriceSeries
from dti_quant.signal_generator import Signal


# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def make_series():
    """Build a PriceSeries from closes; highs/lows straddle the close."""
    def _make(symbol="AAPL", closes=None, start="2020-01-01", freq="B", spread=1.0, highs=None, lows=None):
        closes = np.asarray(closes if closes is not None else np.linspace(100, 120, 50), dtype=float)
        dates = pd.date_range(start, periods=len(closes), freq=freq)
        return PriceSeries(
            symbol=symbol,
            dates=dates,
            open=closes,
            high=np.asarray(highs, dtype=float) if highs is not None else closes + spread,
            low=np.asarray(lows, dtype=float) if lows is not None else closes - spread,
            close=closes,
            volume=np.full(len(closes), 1000.0),
        )
    return _make


@pytest.fixture
def random_walk_series(make_series):
    """Seeded random-walk history for pipeline-level tests."""
    def _make(symbol, seed, periods=800, start="2021-01-01"):
        rng = np.random.default_rng(seed)
        closes = 100 * np.cumprod(1 + rng.normal(0.0004, 0.015, periods))
        highs = closes * (1 + np.abs(rng.normal(0, 0.006, periods)))
        lows = closes * (1 - np.abs(rng.normal(0, 0.006, periods)))
        return make_series(symbol, closes, start=start, highs=highs, lows=lows)
    return _make


@pytest.fixture
def make_signal():
    """Build a completed Signal; market follows the symbol suffix unless given."""
    def _make(symbol="AAPL", entry="2024-01-15", exit="2024-01-22", pl=5.0,
              market=None, reason=ExitReason.TAKE_PROFIT, win_rate=80.0,
              entry_price=100.0, is_open=False):
        entry_ts = pd.Timestamp(entry)
        exit_ts = pd.Timestamp(exit) if exit is not None else None
        return Signal(
            symbol=symbol,
            market=market if market is not None else get_market_for_symbol(symbol),
            entry_date=entry_ts,
            entry_price=entry_price,
            exit_date=exit_ts,
            exit_price=entry_price * (1 + pl / 100) if pl is not None else None,
            pl_percent=pl,
            holding_days=(exit_ts - entry_ts).days if exit_ts is not None else None,
            exit_reason=reason,
            historical_win_rate=win_rate,
            historical_trade_count=6,
            is_open=is_open,
        )
    return _make
