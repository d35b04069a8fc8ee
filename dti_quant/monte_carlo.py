"""
Monte Carlo Risk Simulator

Forward-looking risk estimate for a portfolio snapshot. Independent of the
signal pipeline: it only needs position values and annualized volatilities.

PATH MODEL
    Each path starts at V0 = sum(position values). On every simulated day
    each position contributes value * z * sigma_daily with
        sigma_daily = volatility / 100 / sqrt(252)
        z           = sqrt(-2 ln u1) * cos(2 pi u2)        (Box-Muller)
    Position values are fixed at their snapshot size; only the portfolio
    total moves. The day's return is change / new_value.

AGGREGATES
    expected_value         mean of final values
    var_95 / var_99        5th / 1st percentile of final values
    expected_shortfall_95  mean of final values at or below var_95
    expected_max_drawdown  mean of per-path max drawdown (%)
    worst_case_drawdown    max of per-path max drawdown (%)
    probability_of_loss    % of paths ending below V0
    sharpe_ratio           over the per-path sum of daily returns

The uniform source is injectable so tests can reproduce exact outputs.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

import numpy as np

from dti_quant.config import MonteCarloParameters, TRADING_DAYS_YEAR

logger = logging.getLogger(__name__)


# =============================================================================
# RANDOM SOURCE
# =============================================================================

class RandomSource(Protocol):
    """Anything that yields uniform floats in [0, 1)."""

    def random(self) -> float:
        ...


class NumpyRandomSource:
    """Seedable uniform source backed by numpy's Generator."""

    def __init__(self, seed: Optional[int] = None):
        self._rng = np.random.default_rng(seed)

    def random(self) -> float:
        return float(self._rng.random())


def box_muller(source: RandomSource) -> float:
    """One standard normal draw from two uniforms."""
    # 1 - u keeps the log argument in (0, 1]
    u1 = 1.0 - source.random()
    u2 = source.random()
    return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class PositionSnapshot:
    """One holding: current value and annualized volatility in percent."""
    value: float
    volatility: Optional[float] = None


@dataclass
class SimulatedPath:
    final_value: float
    daily_returns: List[float]
    max_drawdown: float


@dataclass
class MonteCarloRiskResult:
    """Aggregated output of a Monte Carlo run."""
    initial_value: float
    expected_value: float
    var_95: float
    var_99: float
    expected_shortfall_95: float
    expected_max_drawdown: float
    worst_case_drawdown: float
    probability_of_loss: float
    sharpe_ratio: float
    iterations: int
    days: int
    final_values: np.ndarray = field(default_factory=lambda: np.array([]), repr=False)

    def to_dict(self) -> dict:
        return {
            'initial_value': self.initial_value,
            'expected_value': self.expected_value,
            'var_95': self.var_95,
            'var_99': self.var_99,
            'expected_shortfall_95': self.expected_shortfall_95,
            'expected_max_drawdown': self.expected_max_drawdown,
            'worst_case_drawdown': self.worst_case_drawdown,
            'probability_of_loss': self.probability_of_loss,
            'sharpe_ratio': self.sharpe_ratio,
            'iterations': self.iterations,
            'days': self.days,
        }


# =============================================================================
# SIMULATOR
# =============================================================================

def path_max_drawdown(daily_returns: Sequence[float]) -> float:
    """Max drawdown (%) of a path compounded from a base of 1.0."""
    peak = 1.0
    value = 1.0
    worst = 0.0
    for ret in daily_returns:
        value *= 1 + ret
        if value > peak:
            peak = value
        drawdown = (peak - value) / peak if peak > 0 else 0.0
        if drawdown > worst:
            worst = drawdown
    return worst * 100


class MonteCarloRiskSimulator:
    """
    Estimate VaR, expected shortfall, and drawdown risk by simulation.

    Args:
        params: Iteration/day counts and the default volatility for
            positions that do not carry one
        source: Uniform random source (seeded numpy generator by default)
    """

    def __init__(
        self,
        params: Optional[MonteCarloParameters] = None,
        source: Optional[RandomSource] = None,
        seed: Optional[int] = None
    ):
        self.params = params or MonteCarloParameters()
        self.source = source if source is not None else NumpyRandomSource(seed)

    def _daily_sigma(self, position: PositionSnapshot) -> float:
        vol = self.params.default_volatility if position.volatility is None else position.volatility
        return vol / 100 / math.sqrt(TRADING_DAYS_YEAR)

    def simulate_path(self, portfolio: Sequence[PositionSnapshot], days: int) -> SimulatedPath:
        value = sum(p.value for p in portfolio)
        sigmas = [self._daily_sigma(p) for p in portfolio]
        returns: List[float] = []

        for _ in range(days):
            change = 0.0
            for position, sigma in zip(portfolio, sigmas):
                change += position.value * box_muller(self.source) * sigma
            value += change
            returns.append(change / value if value != 0 else 0.0)

        return SimulatedPath(
            final_value=value,
            daily_returns=returns,
            max_drawdown=path_max_drawdown(returns),
        )

    def run(
        self,
        portfolio: Sequence[PositionSnapshot],
        days: Optional[int] = None,
        iterations: Optional[int] = None
    ) -> MonteCarloRiskResult:
        """
        Simulate `iterations` paths of `days` days.

        Raises:
            ValueError: non-positive days/iterations or an empty portfolio
        """
        days = self.params.days if days is None else days
        iterations = self.params.iterations if iterations is None else iterations
        if days <= 0 or iterations <= 0:
            raise ValueError(f"days and iterations must be positive (got {days}, {iterations})")
        if not portfolio:
            raise ValueError("Cannot simulate an empty portfolio")

        portfolio = [
            p if isinstance(p, PositionSnapshot) else PositionSnapshot(**p)
            for p in portfolio
        ]
        initial = sum(p.value for p in portfolio)
        logger.info(f"Monte Carlo: {iterations} paths x {days} days over {len(portfolio)} positions")

        paths = [self.simulate_path(portfolio, days) for _ in range(iterations)]
        final_values = np.array([p.final_value for p in paths])
        drawdowns = np.array([p.max_drawdown for p in paths])
        summed_returns = np.array([sum(p.daily_returns) for p in paths])

        var_95 = float(np.percentile(final_values, 5))
        var_99 = float(np.percentile(final_values, 1))
        tail = final_values[final_values <= var_95]
        shortfall = float(tail.mean()) if len(tail) else var_95

        std = float(np.std(summed_returns))
        rf_daily = self.params.risk_free_rate / TRADING_DAYS_YEAR
        sharpe = (
            (float(np.mean(summed_returns)) - rf_daily) / std * math.sqrt(TRADING_DAYS_YEAR)
            if std > 0 else 0.0
        )

        return MonteCarloRiskResult(
            initial_value=initial,
            expected_value=float(final_values.mean()),
            var_95=var_95,
            var_99=var_99,
            expected_shortfall_95=shortfall,
            expected_max_drawdown=float(drawdowns.mean()),
            worst_case_drawdown=float(drawdowns.max()),
            probability_of_loss=float((final_values < initial).mean() * 100),
            sharpe_ratio=sharpe,
            iterations=iterations,
            days=days,
            final_values=final_values,
        )
