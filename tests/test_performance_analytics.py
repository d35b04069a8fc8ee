import numpy as np
import pandas as pd
import pytest

from dti_quant.config import (
    RATIO_SENTINEL,
    AnalyticsParameters,
    Currency,
    ExitCategory,
    ExitReason,
    Market,
)
from dti_quant.performance_analytics import (
    PerformanceAnalyzer,
    ReturnCalculator,
    RiskAdjustedCalculator,
    RiskCalculator,
    TradeAnalyzer,
    classify_exit_reason,
)
from dti_quant.portfolio_simulator import ClosedTrade, DailyValuation


def _valuations(values, start="2024-01-01"):
    dates = pd.bdate_range(start, periods=len(values))
    return [DailyValuation(d, float(v), 0, {}) for d, v in zip(dates, values)]


def _trade(pl, market=Market.US, currency=Currency.USD, size=500.0, reason="Take Profit", days=5):
    entry = pd.Timestamp("2024-01-15")
    return ClosedTrade(
        symbol="X", market=market, entry_date=entry, entry_price=100.0, trade_size=size,
        currency=currency, win_rate_at_entry=80.0, exit_date=entry + pd.Timedelta(days=days),
        exit_price=100.0 * (1 + pl / 100), pl_percent=pl, exit_reason=reason, holding_days=days,
    )


# ------------------------- Returns ------------------------- #

def test_total_and_daily_returns():
    valuations = _valuations([100, 110, 99])

    assert ReturnCalculator.total_return(valuations) == pytest.approx(-1.0)
    assert ReturnCalculator.daily_returns(valuations) == pytest.approx([0.10, -0.10])


def test_zero_base_is_skipped():
    assert ReturnCalculator.daily_returns(_valuations([0, 100, 110])) == pytest.approx([0.10])
    assert ReturnCalculator.total_return(_valuations([0, 100])) == 0.0


def test_short_series_are_zero():
    assert ReturnCalculator.total_return(_valuations([100])) == 0.0
    assert ReturnCalculator.annualized_return(_valuations([100])) == 0.0
    assert len(ReturnCalculator.daily_returns(_valuations([100]))) == 0


def test_annualized_return_over_two_years():
    valuations = [
        DailyValuation(pd.Timestamp("2023-01-01"), 100.0, 0, {}),
        DailyValuation(pd.Timestamp("2023-01-01") + pd.Timedelta(days=365.25 * 2), 121.0, 0, {}),
    ]
    assert ReturnCalculator.annualized_return(valuations) == pytest.approx(10.0, rel=1e-2)


def test_monthly_returns_first_to_last_within_month():
    valuations = [
        DailyValuation(pd.Timestamp("2024-01-02"), 100.0, 0, {}),
        DailyValuation(pd.Timestamp("2024-01-31"), 110.0, 0, {}),
        DailyValuation(pd.Timestamp("2024-02-01"), 120.0, 0, {}),
        DailyValuation(pd.Timestamp("2024-02-29"), 108.0, 0, {}),
    ]

    months = ReturnCalculator.monthly_returns(valuations)

    assert [m.month for m in months] == ["2024-01", "2024-02"]
    assert months[0].return_pct == pytest.approx(10.0)
    assert months[1].return_pct == pytest.approx(-10.0)


# ------------------------- Risk ------------------------- #

def test_monotonic_series_has_no_drawdown():
    assert RiskCalculator.max_drawdown([100, 101, 105, 130]) == 0.0


def test_max_drawdown_from_running_peak():
    assert RiskCalculator.max_drawdown([100, 120, 90, 130]) == pytest.approx(25.0)


def test_volatility_uses_population_std():
    daily = np.array([0.01, -0.01, 0.01, -0.01])
    assert RiskCalculator.volatility(daily) == pytest.approx(0.01 * np.sqrt(252) * 100)


def test_distribution_moments_degenerate_input():
    assert RiskCalculator.distribution_moments(np.array([0.01, 0.01, 0.01])) == (0.0, 0.0)
    skew, _ = RiskCalculator.distribution_moments(np.array([-0.05, 0.0, 0.01, 0.01, 0.01]))
    assert skew < 0


# ------------------------- Risk-adjusted ------------------------- #

def test_sharpe_zero_for_flat_returns():
    assert RiskAdjustedCalculator.sharpe(np.zeros(10)) == 0.0
    assert RiskAdjustedCalculator.sharpe(np.array([])) == 0.0


def test_sharpe_formula():
    daily = np.array([0.02, -0.01, 0.015, 0.0])
    expected = (daily.mean() - 0.02 / 252) / daily.std() * np.sqrt(252)
    assert RiskAdjustedCalculator.sharpe(daily) == pytest.approx(expected)


def test_sortino_sentinel_without_losing_days():
    assert RiskAdjustedCalculator.sortino(np.array([0.01, 0.02, 0.0])) == RATIO_SENTINEL


def test_sortino_uses_downside_rms():
    daily = np.array([0.02, -0.01, -0.03])
    downside = np.sqrt(np.mean(np.array([-0.01, -0.03]) ** 2))
    expected = (daily.mean() - 0.02 / 252) / downside * np.sqrt(252)
    assert RiskAdjustedCalculator.sortino(daily) == pytest.approx(expected)


def test_calmar():
    assert RiskAdjustedCalculator.calmar(12.0, 0.0) == RATIO_SENTINEL
    assert RiskAdjustedCalculator.calmar(12.0, 4.0) == pytest.approx(3.0)


# ------------------------- Trades ------------------------- #

@pytest.mark.parametrize("reason,category", [
    (ExitReason.TAKE_PROFIT.value, ExitCategory.TAKE_PROFIT),
    (ExitReason.STOP_LOSS.value, ExitCategory.STOP_LOSS),
    (ExitReason.MAX_DAYS.value, ExitCategory.MAX_DAYS),
    (ExitReason.TIME_EXIT.value, ExitCategory.MAX_DAYS),
    (ExitReason.FORCE_CLOSE_NO_PRICE.value, ExitCategory.MAX_DAYS),
    (ExitReason.SEVEN_DAY_EXIT.value, ExitCategory.OTHER),
    (None, ExitCategory.OTHER),
])
def test_classify_exit_reason(reason, category):
    assert classify_exit_reason(reason) == category


def test_trade_statistics():
    trades = [_trade(10.0, days=4), _trade(6.0, days=6), _trade(-5.0, days=10, reason="Stop Loss"), _trade(0.0, days=30)]

    assert TradeAnalyzer.win_rate(trades) == pytest.approx(50.0)
    assert TradeAnalyzer.avg_win(trades) == pytest.approx(8.0)
    assert TradeAnalyzer.avg_loss(trades) == pytest.approx(-2.5)
    assert TradeAnalyzer.profit_factor(trades) == pytest.approx(16.0 / 5.0)
    assert TradeAnalyzer.expectancy(trades) == pytest.approx(11.0 / 4)
    assert TradeAnalyzer.avg_holding_period(trades) == pytest.approx(12.5)
    assert TradeAnalyzer.median_holding_period(trades) == pytest.approx(8.0)


def test_profit_factor_edges():
    assert TradeAnalyzer.profit_factor([_trade(5.0)]) == RATIO_SENTINEL
    assert TradeAnalyzer.profit_factor([]) == 0.0


def test_market_breakdown_converts_pl():
    from dti_quant.currency import CurrencyConverter

    trades = [
        _trade(10.0, market=Market.UK, currency=Currency.GBP, size=400.0),
        _trade(-4.0, market=Market.US),
    ]

    breakdown = TradeAnalyzer.market_breakdown(trades, Currency.USD, CurrencyConverter())

    assert breakdown["UK"].trades == 1
    assert breakdown["UK"].pl == pytest.approx(40.0 * 1.27)
    assert breakdown["US"].pl == pytest.approx(-20.0)
    assert breakdown["US"].win_rate == 0.0
    assert breakdown["India"].trades == 0


# ------------------------- Analyzer ------------------------- #

def test_analyze_empty_run():
    summary = PerformanceAnalyzer().analyze([], [])

    assert summary.total_trades == 0
    assert summary.total_return == 0.0
    assert summary.max_drawdown == 0.0
    assert summary.calmar_ratio == RATIO_SENTINEL
    assert summary.best_month is None


def test_analyze_full_summary():
    trades = [_trade(10.0), _trade(-5.0, reason="Stop Loss"), _trade(3.0, reason="Max Days (Force Close)")]
    valuations = _valuations([1000, 1020, 990, 1050, 1040])

    summary = PerformanceAnalyzer(AnalyticsParameters(initial_capital={})).analyze(
        trades, valuations, Currency.USD
    )
    data = summary.to_dict()

    assert summary.initial_value == 1000.0
    assert summary.final_value == 1040.0
    assert summary.total_return == pytest.approx(4.0)
    assert summary.max_drawdown == pytest.approx(30 / 1020 * 100)
    assert summary.winning_trades == 2 and summary.losing_trades == 1
    assert summary.exit_reasons == {"Take Profit": 1, "Stop Loss": 1, "Max Days": 1, "Other": 0}
    assert data["display_currency"] == "USD"
    assert data["by_market"]["US"]["trades"] == 3


def test_empty_book_at_start_uses_capital_baseline():
    # One +8% USD 500 trade: entered on day 2, closed on day 6
    valuations = _valuations([0, 500, 500, 500, 500, 40, 40])

    summary = PerformanceAnalyzer().analyze([_trade(8.0)], valuations, Currency.USD)

    assert summary.initial_value == 15_000.0
    assert summary.final_value == 15_040.0
    assert summary.total_return == pytest.approx(40 / 15_000 * 100)
    assert summary.annualized_return > summary.total_return
    assert summary.max_drawdown == pytest.approx(460 / 15_500 * 100)
    assert summary.volatility < 50.0


def test_capital_baseline_follows_display_currency():
    params = AnalyticsParameters(initial_capital={Currency.GBP: 1_000.0})
    valuations = _valuations([0, 400, 440])

    gbp = PerformanceAnalyzer(params).analyze([], valuations, Currency.GBP)
    usd = PerformanceAnalyzer(params).analyze([], valuations, Currency.USD)

    assert gbp.total_return == pytest.approx(44.0)
    assert gbp.max_drawdown == 0.0
    assert usd.total_return == 0.0
