import math

import numpy as np
import pytest

from dti_quant.config import MonteCarloParameters
from dti_quant.monte_carlo import (
    MonteCarloRiskSimulator,
    NumpyRandomSource,
    PositionSnapshot,
    box_muller,
    path_max_drawdown,
)


class ScriptedSource:
    """Replays a fixed list of uniforms."""

    def __init__(self, values):
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


# ------------------------- Box-Muller ------------------------- #

def test_box_muller_zero_draw():
    # u1 = 1 - 0 = 1, so the radius is zero
    assert box_muller(ScriptedSource([0.0, 0.3])) == 0.0


def test_box_muller_unit_draw():
    z = box_muller(ScriptedSource([1 - math.exp(-0.5), 0.0]))
    assert z == pytest.approx(1.0)


def test_box_muller_is_standard_normal():
    source = NumpyRandomSource(seed=3)
    draws = np.array([box_muller(source) for _ in range(20000)])

    assert abs(draws.mean()) < 0.03
    assert draws.std() == pytest.approx(1.0, abs=0.03)


# ------------------------- Paths ------------------------- #

def test_path_max_drawdown():
    assert path_max_drawdown([0.1, -0.5, 0.2]) == pytest.approx(50.0)
    assert path_max_drawdown([0.01, 0.02]) == 0.0
    assert path_max_drawdown([]) == 0.0


def test_zero_volatility_is_deterministic():
    portfolio = [PositionSnapshot(250.0, 0.0), PositionSnapshot(750.0, 0.0)]

    result = MonteCarloRiskSimulator(seed=1).run(portfolio, days=10, iterations=50)

    assert result.initial_value == 1000.0
    assert result.expected_value == 1000.0
    assert result.var_95 == result.var_99 == 1000.0
    assert result.expected_shortfall_95 == 1000.0
    assert result.probability_of_loss == 0.0
    assert result.worst_case_drawdown == 0.0
    assert result.sharpe_ratio == 0.0


def test_same_seed_reproduces_results():
    portfolio = [PositionSnapshot(1000.0, 25.0), PositionSnapshot(400.0)]

    first = MonteCarloRiskSimulator(seed=42).run(portfolio, days=15, iterations=200)
    second = MonteCarloRiskSimulator(seed=42).run(portfolio, days=15, iterations=200)

    assert np.array_equal(first.final_values, second.final_values)
    assert first.to_dict() == second.to_dict()


def test_statistics_fall_in_expected_bands():
    result = MonteCarloRiskSimulator(seed=7).run(
        [PositionSnapshot(1000.0, 20.0)], days=30, iterations=2000
    )
    # terminal std is about 1000 * 0.20 / sqrt(252) * sqrt(30), roughly 69
    assert result.expected_value == pytest.approx(1000.0, abs=10.0)
    assert 860.0 < result.var_95 < 910.0
    assert result.var_99 < result.var_95
    assert result.expected_shortfall_95 <= result.var_95
    assert 40.0 < result.probability_of_loss < 60.0
    assert 0.0 < result.expected_max_drawdown <= result.worst_case_drawdown


def test_default_volatility_applies_to_missing_values():
    params = MonteCarloParameters(iterations=300, days=20, default_volatility=0.0)

    result = MonteCarloRiskSimulator(params, seed=0).run([PositionSnapshot(500.0)])

    assert result.var_95 == 500.0
    assert result.iterations == 300
    assert result.days == 20


def test_accepts_dict_positions():
    result = MonteCarloRiskSimulator(seed=5).run([{'value': 100.0, 'volatility': 0.0}], days=5, iterations=10)
    assert result.expected_value == 100.0


def test_injected_source_is_used():
    source = ScriptedSource([0.0] * 40)

    result = MonteCarloRiskSimulator(source=source).run([PositionSnapshot(100.0, 30.0)], days=10, iterations=2)

    # every draw is z = 0, so nothing moves
    assert result.expected_value == 100.0


@pytest.mark.parametrize("portfolio,days,iterations", [
    ([], 10, 10),
    ([PositionSnapshot(100.0)], 0, 10),
    ([PositionSnapshot(100.0)], 10, 0),
])
def test_invalid_inputs_raise(portfolio, days, iterations):
    with pytest.raises(ValueError):
        MonteCarloRiskSimulator(seed=0).run(portfolio, days=days, iterations=iterations)
