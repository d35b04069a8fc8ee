import numpy as np
import pandas as pd
import pytest

from dti_quant.exceptions import InvalidSeriesError
from dti_quant.indicators import (
    aggregate_to_periods,
    analyze_stock,
    calculate_7day_dti,
    calculate_dti,
    detect_trade_signals,
    ema,
)


# ------------------------- EMA ------------------------- #

@pytest.mark.parametrize("period", [1, 2, 5, 14, 50])
def test_ema_of_constant_series_is_constant(period):
    values = [42.5] * 30
    assert np.allclose(ema(values, period), values)


def test_ema_first_value_equals_first_input():
    values = [3.0, 10.0, -4.0, 8.0]
    assert ema(values, 3)[0] == 3.0


def test_ema_follows_recurrence():
    values = [1.0, 2.0, 3.0, 4.0]
    k = 2 / (3 + 1)
    expected = [1.0]
    for x in values[1:]:
        expected.append(x * k + expected[-1] * (1 - k))

    assert np.allclose(ema(values, 3), expected)
    assert len(ema(values, 3)) == len(values)


@pytest.mark.parametrize("series,period", [([], 3), ([1.0, 2.0], 0), ([1.0, 2.0], -2)])
def test_ema_rejects_invalid_input(series, period):
    with pytest.raises(InvalidSeriesError):
        ema(series, period)


# ------------------------- DTI ------------------------- #

def test_dti_zero_when_prices_do_not_move():
    dti = calculate_dti([10.0] * 25, [9.0] * 25, 14, 10, 5)
    assert len(dti) == 25
    assert np.all(dti == 0)


def test_dti_small_example():
    dti = calculate_dti([10, 12, 11, 15], [5, 6, 7, 6], 2, 2, 2)

    assert len(dti) == 4
    assert dti[0] == 0
    assert np.all(np.isfinite(dti))
    assert np.all((dti >= -100) & (dti <= 100))
    # every directional move here is upward, so the oscillator saturates
    assert dti[1:] == pytest.approx([100.0, 100.0, 100.0])


def test_dti_negative_for_falling_prices():
    highs = np.linspace(200, 100, 60)
    dti = calculate_dti(highs, highs - 2, 14, 10, 5)
    assert dti[-1] == pytest.approx(-100.0)


def test_dti_rejects_mismatched_lengths():
    with pytest.raises(InvalidSeriesError):
        calculate_dti([1, 2, 3], [1, 2], 2, 2, 2)


def test_dti_rejects_empty_input():
    with pytest.raises(InvalidSeriesError):
        calculate_dti([], [], 2, 2, 2)


@pytest.mark.parametrize("r,s,u", [(0, 10, 5), (14, -1, 5), (14, 10, 0)])
def test_dti_rejects_non_positive_periods(r, s, u):
    with pytest.raises(InvalidSeriesError):
        calculate_dti([1, 2, 3], [0, 1, 2], r, s, u)


# ------------------------- Period aggregation ------------------------- #

def _bars(n):
    dates = pd.date_range("2024-01-01", periods=n, freq="D")
    rng = np.random.default_rng(3)
    high = 100 + rng.normal(0, 2, n).cumsum()
    low = high - rng.uniform(0.5, 2.0, n)
    return dates, high, low


@pytest.mark.parametrize("n", [1, 6, 7, 8, 30, 100])
def test_blocks_cover_every_day_exactly_once(n):
    dates, high, low = _bars(n)
    blocks = aggregate_to_periods(dates, high, low)

    assert sum(b.day_count for b in blocks) == n
    covered = [i for b in blocks for i in range(b.start_index, b.end_index + 1)]
    assert covered == list(range(n))
    assert all(b.day_count == 7 for b in blocks[:-1])
    assert 1 <= blocks[-1].day_count <= 7


def test_block_high_low_are_extremes():
    dates, high, low = _bars(10)
    blocks = aggregate_to_periods(dates, high, low)

    assert blocks[0].high == pytest.approx(high[:7].max())
    assert blocks[0].low == pytest.approx(low[:7].min())
    assert blocks[1].start_date == dates[7]
    assert blocks[1].end_date == dates[9]
    assert blocks[1].high == pytest.approx(high[7:].max())


def test_aggregation_rejects_misaligned_arrays():
    dates, high, low = _bars(10)
    with pytest.raises(InvalidSeriesError):
        aggregate_to_periods(dates[:9], high, low)


def test_7day_dti_constant_within_each_block():
    dates, high, low = _bars(64)
    result = calculate_7day_dti(dates, high, low, 3, 2, 2)

    assert len(result.daily) == 64
    assert all(v is not None for v in result.daily)
    for position, block in enumerate(result.blocks):
        values = result.daily[block.start_index:block.end_index + 1]
        assert len(set(values)) == 1
        assert values[0] == pytest.approx(result.block_dti[position])


def test_7day_dti_matches_dti_on_block_series():
    dates, high, low = _bars(35)
    result = calculate_7day_dti(dates, high, low, 3, 2, 2)
    expected = calculate_dti([b.high for b in result.blocks], [b.low for b in result.blocks], 3, 2, 2)

    assert np.allclose(result.block_dti, expected)
    assert result.block_index_for(20) == 2


# ------------------------- Signal detection ------------------------- #

def test_detect_trade_signals_entry_and_exit():
    dti = [-50, -60, -55, -45, 10, 20]
    seven = [None, 5.0, 6.0, 7.0, 7.0, -1.0]
    markers = detect_trade_signals(dti, seven, entry_threshold=-40)

    entries = [m.index for m in markers if m.kind == "entry"]
    exits = [m.index for m in markers if m.kind == "exit"]
    # index 1 falls (-60 < -50); 2 and 3 rise below -40 with a rising 7-day
    assert entries == [2, 3]
    assert exits == [5]
    assert [m.kind for m in markers] == ["entry", "entry", "exit"]


def test_detect_trade_signals_rejects_mismatched_inputs():
    with pytest.raises(InvalidSeriesError):
        detect_trade_signals([1.0, 2.0], [None], -40)


def test_analyze_stock_reports_latest_bar():
    dates = pd.date_range("2024-01-01", periods=40, freq="B")
    close = np.linspace(100, 80, 40)
    analysis = analyze_stock("TEST", dates, close + 1, close - 1, close)

    assert analysis.symbol == "TEST"
    assert analysis.current_price == pytest.approx(80.0)
    assert analysis.signal_date == dates[-1]
    assert analysis.current_dti == pytest.approx(-100.0)
    # a steady decline never turns up, so there is no entry
    assert analysis.is_opportunity is False
    assert not any(m.kind == "entry" for m in analysis.markers)
