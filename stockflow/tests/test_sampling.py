"""
Tests for parameter sweeps, Monte Carlo, Latin hypercube and Morris sampling
"""

import numpy as np
import pydantic
import pytest
from stockflow.exceptions import SimulationError
from stockflow.models import Model, SimulationConfig
from stockflow.sampling import (
    ParameterRange,
    latin_hypercube,
    monte_carlo,
    morris_design,
    morris_screening,
    parameter_sweep,
)


def growth_model():
    return Model(
        time={"start": 0.0, "stop": 1.0, "dt": 1.0},
        parameters={"r": 0.1},
        stocks={"P": {"initial": 100, "inflows": ["births"]}},
        flows={"births": {"equation": "r * P"}},
    )


def sum_model():
    return Model(
        time={"start": 0.0, "stop": 2.0, "dt": 1.0},
        parameters={"a": 0.0, "b": 0.0},
        auxiliaries={
            "total": {"equation": "a + b"},
            "noise": {"equation": "NORMAL(0, 1)"},
        },
    )


def test_parameter_sweep():
    """Test one run per value, in order"""
    results = parameter_sweep(growth_model(), None, "r", [0.1, 0.2, 0.3])

    assert len(results) == 3
    assert [run.parameters for run in results.runs] == [{"r": 0.1}, {"r": 0.2}, {"r": 0.3}]
    finals = [run.results.final_state.stocks["P"] for run in results.runs]
    assert finals == pytest.approx([110.0, 120.0, 130.0])


def test_sweep_statistics():
    """Test per-time statistics across runs"""
    results = parameter_sweep(growth_model(), None, "r", [0.1, 0.2, 0.3])
    stats = results.statistics("P")

    assert set(stats) == {"mean", "std", "min", "max", "p5", "p25", "p50", "p75", "p95"}
    assert results.times == [0.0, 1.0]
    assert stats["mean"] == pytest.approx([100.0, 120.0])
    assert stats["min"] == pytest.approx([100.0, 110.0])
    assert stats["max"] == pytest.approx([100.0, 130.0])
    assert stats["p50"] == pytest.approx([100.0, 120.0])
    assert stats["std"][0] == 0.0
    assert set(results.summary()) == {"P", "births"}


def test_sweep_does_not_modify_model():
    """Test the swept parameter is restored on the caller's model"""
    model = growth_model()
    parameter_sweep(model, None, "r", [0.5])
    assert model.parameters["r"] == 0.1


def test_sweep_unknown_parameter():
    """Test sweeping an undefined parameter fails before running"""
    with pytest.raises(SimulationError) as exc_info:
        parameter_sweep(growth_model(), None, "growth", [0.1])
    assert exc_info.value.code == "unknown_parameter"


def test_monte_carlo_is_reproducible():
    """Test a seeded batch repeats exactly"""
    ranges = [ParameterRange(name="a", low=1.0, high=2.0)]
    first = monte_carlo(sum_model(), None, ranges, n_runs=8, seed=123)
    second = monte_carlo(sum_model(), None, ranges, n_runs=8, seed=123)

    assert [r.parameters for r in first.runs] == [r.parameters for r in second.runs]
    assert np.array_equal(first.matrix("noise"), second.matrix("noise"))


def test_monte_carlo_samples_within_ranges():
    """Test draws respect their bounds and each run has its own noise stream"""
    ranges = [
        ParameterRange(name="a", low=1.0, high=2.0),
        ParameterRange(name="b", low=-5.0, high=-4.0),
    ]
    results = monte_carlo(sum_model(), SimulationConfig(), ranges, n_runs=20, seed=7)

    assert len(results) == 20
    assert results.matrix("total").shape == (20, 3)
    for run in results.runs:
        assert 1.0 <= run.parameters["a"] <= 2.0
        assert -5.0 <= run.parameters["b"] <= -4.0
        assert run.results.final_state.auxiliaries["total"] == pytest.approx(
            run.parameters["a"] + run.parameters["b"]
        )

    noise = results.matrix("noise")
    assert not np.array_equal(noise[0], noise[1])


def test_latin_hypercube_stratification():
    """Test each stratum of each range is used exactly once"""
    n = 10
    ranges = [
        ParameterRange(name="a", low=0.0, high=10.0),
        ParameterRange(name="b", low=100.0, high=200.0),
    ]
    results = latin_hypercube(sum_model(), None, ranges, n_samples=n, seed=42)

    a_strata = sorted(int(run.parameters["a"] // 1.0) for run in results.runs)
    b_strata = sorted(int((run.parameters["b"] - 100.0) // 10.0) for run in results.runs)
    assert a_strata == list(range(n))
    assert b_strata == list(range(n))


def test_latin_hypercube_degenerate_range():
    """Test a range with equal bounds pins the parameter"""
    ranges = [
        ParameterRange(name="a", low=3.0, high=3.0),
        ParameterRange(name="b", low=0.0, high=1.0),
    ]
    results = latin_hypercube(sum_model(), None, ranges, n_samples=4, seed=1)
    assert all(run.parameters["a"] == 3.0 for run in results.runs)


def test_parameter_range_bounds():
    """Test high below low is rejected"""
    with pytest.raises(pydantic.ValidationError):
        ParameterRange(name="a", low=2.0, high=1.0)


def test_sampling_unknown_parameter():
    """Test ranges naming undefined parameters fail before running"""
    ranges = [ParameterRange(name="c", low=0.0, high=1.0)]
    with pytest.raises(SimulationError):
        monte_carlo(sum_model(), None, ranges, n_runs=2)
    with pytest.raises(SimulationError):
        latin_hypercube(sum_model(), None, ranges, n_samples=2)


def linear_model():
    return Model(
        time={"start": 0.0, "stop": 1.0, "dt": 1.0},
        parameters={"a": 0.0, "b": 0.0, "c": 0.0},
        stocks={"S": {"initial": 0, "inflows": ["f"]}},
        flows={"f": {"equation": "a + 2 * b"}},
    )


LINEAR_RANGES = [
    ParameterRange(name="a", low=0.0, high=1.0),
    ParameterRange(name="b", low=1.0, high=3.0),
    ParameterRange(name="c", low=0.0, high=5.0),
]


def test_morris_design_moves_one_parameter_at_a_time():
    """Test every trajectory step changes exactly one parameter by the grid jump"""
    design = morris_design(3, 6, 4, np.random.default_rng(11))

    assert design.points.shape == (6, 4, 3)
    levels = design.points * 3
    assert np.allclose(levels, np.round(levels))
    assert levels.min() >= 0 and levels.max() <= 3
    for t in range(6):
        assert sorted(design.order[t]) == [0, 1, 2]
        for j in range(3):
            moved = design.points[t, j + 1] - design.points[t, j]
            changed = np.flatnonzero(np.abs(moved) > 1e-12)
            assert changed.tolist() == [design.order[t, j]]
            assert moved[changed[0]] == pytest.approx(design.steps[t, j])
            assert abs(design.steps[t, j]) == pytest.approx(2.0 / 3.0)


def test_morris_design_rejects_bad_arguments():
    """Test level and trajectory counts are checked"""
    rng = np.random.default_rng(0)
    with pytest.raises(ValueError):
        morris_design(2, 3, 1, rng)
    with pytest.raises(ValueError):
        morris_design(2, 0, 4, rng)


def test_morris_screening_linear_effects():
    """Test elementary effects of a linear model equal coefficient times range"""
    results = morris_screening(linear_model(), None, LINEAR_RANGES, n_trajectories=5, seed=3)

    assert len(results) == 5 * 4
    indices = results.morris_indices("S")
    assert indices["a"]["mu"] == pytest.approx(1.0)
    assert indices["a"]["mu_star"] == pytest.approx(1.0)
    assert indices["b"]["mu_star"] == pytest.approx(4.0)
    assert indices["c"]["mu_star"] == pytest.approx(0.0, abs=1e-12)
    for values in indices.values():
        assert values["sigma"] == pytest.approx(0.0, abs=1e-9)

    effects = results.elementary_effects("S")
    assert effects["b"].shape == (5,)


def test_morris_screening_is_reproducible():
    """Test the same seed gives the same design"""
    first = morris_screening(linear_model(), None, LINEAR_RANGES, n_trajectories=3, seed=8)
    second = morris_screening(linear_model(), None, LINEAR_RANGES, n_trajectories=3, seed=8)

    assert [run.parameters for run in first.runs] == [run.parameters for run in second.runs]
    for run in first.runs:
        assert 1.0 <= run.parameters["b"] <= 3.0


def test_morris_unknown_parameter():
    """Test screening an unknown parameter fails before any run"""
    with pytest.raises(SimulationError) as exc_info:
        morris_screening(
            linear_model(), None, [ParameterRange(name="zzz", low=0, high=1)], n_trajectories=2
        )
    assert exc_info.value.code == "unknown_parameter"
