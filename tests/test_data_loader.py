from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from dti_quant.config import Market
from dti_quant.data_loader import (
    PriceDataLoader,
    PriceSeries,
    SymbolCatalog,
    normalize_ohlcv_frame,
)
from dti_quant.exceptions import InvalidSeriesError


def _frame(n=10, start="2024-01-01", lowercase=False, with_date_column=False):
    dates = pd.bdate_range(start, periods=n)
    close = np.linspace(100, 110, n)
    df = pd.DataFrame({
        'Open': close,
        'High': close + 1,
        'Low': close - 1,
        'Close': close,
        'Volume': np.full(n, 1000.0),
    }, index=dates)
    if with_date_column:
        df = df.reset_index().rename(columns={'index': 'Date'})
    if lowercase:
        df.columns = [c.lower() for c in df.columns]
    return df


# ------------------------- PriceSeries ------------------------- #

def test_from_dataframe_with_lowercase_columns_and_date_column():
    series = PriceSeries.from_dataframe("BP.L", _frame(lowercase=True, with_date_column=True))

    assert len(series) == 10
    assert series.market == Market.UK
    assert series.close[0] == 100.0
    assert series.dates[0] == pd.Timestamp("2024-01-01")


def test_from_dataframe_missing_column_raises():
    with pytest.raises(InvalidSeriesError):
        PriceSeries.from_dataframe("AAPL", _frame().drop(columns=['Volume']))


def test_misaligned_arrays_raise():
    dates = pd.bdate_range("2024-01-01", periods=3)
    with pytest.raises(InvalidSeriesError):
        PriceSeries("AAPL", dates, [1, 2, 3], [1, 2, 3], [1, 2], [1, 2, 3], [1, 2, 3])


def test_unsorted_dates_raise():
    dates = pd.DatetimeIndex(["2024-01-03", "2024-01-02"])
    with pytest.raises(InvalidSeriesError):
        PriceSeries("AAPL", dates, [1, 2], [1, 2], [1, 2], [1, 2], [1, 2])


def test_normalize_sorts_dedupes_and_strips_timezone():
    df = _frame(5)
    df.index = df.index.tz_localize("UTC")
    df = pd.concat([df.iloc[[3]], df]).iloc[::-1]
    df.loc[df.index[0], 'Volume'] = np.nan

    normalized = normalize_ohlcv_frame(df)

    assert normalized.index.tz is None
    assert normalized.index.is_monotonic_increasing
    assert len(normalized) == 5
    assert not normalized['Volume'].isna().any()


def test_normalize_rejects_empty_frames():
    assert normalize_ohlcv_frame(None) is None
    assert normalize_ohlcv_frame(pd.DataFrame()) is None


def test_slice_dates_is_half_open(make_series):
    series = make_series("AAPL", np.arange(10, dtype=float), start="2024-01-01")

    sliced = series.slice_dates(start="2024-01-03", end="2024-01-08")

    assert list(sliced.close) == [2.0, 3.0, 4.0]
    assert sliced.market == series.market


def test_close_on_or_before(make_series):
    series = make_series("AAPL", [10.0, 11.0, 12.0], start="2024-01-04")  # Thu, Fri, Mon

    assert series.close_on_or_before("2024-01-06") == 11.0
    assert series.close_on_or_before("2024-01-08") == 12.0
    assert series.close_on_or_before("2024-01-03") is None


def test_staleness(make_series):
    series = make_series("AAPL", [10.0, 11.0], start="2024-01-01")

    assert series.days_since_last_bar("2024-01-05") == 3
    assert not series.is_stale("2024-01-05")
    assert series.is_stale("2024-01-20")


def test_round_trip_through_frame(make_series):
    series = make_series("AAPL", [10.0, 11.0, 12.0])
    frame = series.to_dataframe()

    assert list(frame.columns) == ['Open', 'High', 'Low', 'Close', 'Volume']
    assert PriceSeries.from_dataframe("AAPL", frame).close.tolist() == [10.0, 11.0, 12.0]


# ------------------------- Loader ------------------------- #

def test_load_csv_directory_isolates_bad_files(tmp_path):
    _frame(30, with_date_column=True).to_csv(tmp_path / "AAPL.csv", index=False)
    _frame(5, with_date_column=True).to_csv(tmp_path / "SHORT.csv", index=False)
    (tmp_path / "BROKEN.csv").write_text("Date,Close\n2024-01-01,1\n")

    result = PriceDataLoader(min_bars=20).load_csv_directory(tmp_path)

    assert result.symbols == ["AAPL"]
    skipped = {s.symbol: s for s in result.skipped}
    assert set(skipped) == {"BROKEN", "SHORT"}
    assert "minimum 20" in skipped["SHORT"].reason
    assert all(s.stage == 'load' for s in result.skipped)


def test_load_frames():
    result = PriceDataLoader(min_bars=5).load_frames({"AAPL": _frame(10), "EMPTY": pd.DataFrame()})

    assert result.symbols == ["AAPL"]
    assert [s.symbol for s in result.skipped] == ["EMPTY"]


def test_fetch_yahoo_uses_yfinance():
    loader = PriceDataLoader(min_bars=5)
    fake_yf = MagicMock()
    fake_yf.download.side_effect = lambda symbol, **kwargs: (
        _frame(10) if symbol == "AAPL" else pd.DataFrame()
    )

    with patch.object(loader, "_get_yf", return_value=fake_yf), \
            patch("dti_quant.data_loader.time.sleep"):
        result = loader.fetch_yahoo(["AAPL", "MISSING"], start="2024-01-01")

    assert result.symbols == ["AAPL"]
    assert result.skipped[0].symbol == "MISSING"
    assert result.skipped[0].stage == 'fetch'
    # one call for AAPL, max_retries calls for MISSING
    assert fake_yf.download.call_count == 1 + loader.max_retries


# ------------------------- Catalog ------------------------- #

def test_symbol_catalog_groups_by_market():
    catalog = SymbolCatalog(["AAPL", "BP.L", "TCS.NS", "AAPL"])

    assert len(catalog) == 3
    assert catalog.symbols(Market.UK) == ["BP.L"]
    assert catalog.symbols() == ["TCS.NS", "BP.L", "AAPL"]
    assert catalog.market_of("TCS.NS") == Market.INDIA
    assert catalog.market_of("NOPE") is None
