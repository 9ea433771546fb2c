"""
Tests for the simulation engine with the Euler method
"""

import pytest
from stockflow.exceptions import EvaluationError, SimulationError
from stockflow.models import Model, SimulationConfig, SimulationState
from stockflow.simulation import SimulationEngine, initial_state, run, step
from stockflow.resolver import StepResolver
from stockflow.validation import validate_model


def growth_model(stop=10.0, dt=1.0, rate=0.1, initial=100.0):
    return Model(
        name="Growth",
        time={"start": 0.0, "stop": stop, "dt": dt},
        parameters={"r": rate},
        stocks={"P": {"initial": initial, "inflows": ["births"]}},
        flows={"births": {"equation": "r * P"}},
    )


def test_euler_exact_first_steps():
    """Test Euler reproduces the hand-computed first two steps"""
    results = run(growth_model(stop=0.2, dt=0.1))
    population = results.series("P")
    births = results.series("births")

    assert results.times == [0.0, 0.1, 0.2]
    assert population[0] == 100.0
    assert population[1] == pytest.approx(101.0, abs=1e-12)
    assert population[2] == pytest.approx(102.01, abs=1e-12)
    assert births[0] == pytest.approx(10.0)
    assert births[1] == pytest.approx(10.1)


def test_simple_exponential_growth():
    """Test simple exponential growth model"""
    results = run(growth_model())

    assert results.times[0] == 0.0
    assert results.times[-1] == 10.0
    assert len(results) == 11
    assert results.completed
    assert results.final_state.stocks["P"] == pytest.approx(100 * 1.1 ** 10)


def test_population_model():
    """Test population growth model with births and deaths"""
    model = Model(
        time={"start": 0.0, "stop": 10.0, "dt": 1.0},
        parameters={"birth_rate": 0.03, "death_rate": 0.01},
        stocks={"Population": {"initial": 1000, "inflows": ["births"], "outflows": ["deaths"]}},
        flows={
            "births": {"equation": "birth_rate * Population"},
            "deaths": {"equation": "death_rate * Population"},
        },
    )
    results = run(model)
    population = results.series("Population")

    assert population[0] == 1000.0
    assert population[1] == pytest.approx(1020.0)
    assert population[-1] == pytest.approx(1000 * 1.02 ** 10)


def test_time_not_a_multiple_of_dt():
    """Test the last step is shortened to land on the stop time"""
    results = run(growth_model(stop=2.5, dt=1.0))

    assert results.times == [0.0, 1.0, 2.0, 2.5]
    assert results.series("P")[-1] == pytest.approx(121.0 * 1.05)


def test_output_interval():
    """Test recording only at output interval boundaries plus the final state"""
    model = growth_model(stop=10.0, dt=0.25)
    results = run(model, SimulationConfig(output_interval=2.0))

    assert results.times == [0.0, 2.0, 4.0, 6.0, 8.0, 10.0]


def test_output_interval_keeps_final_state():
    """Test the final state is recorded even off the interval grid"""
    results = run(growth_model(stop=5.0, dt=1.0), SimulationConfig(output_interval=2.0))
    assert results.times == [0.0, 2.0, 4.0, 5.0]


def test_model_output_interval_is_default():
    """Test the model's time output_interval applies when the config has none"""
    model = Model(
        time={"start": 0.0, "stop": 4.0, "dt": 0.5, "output_interval": 1.0},
        stocks={"S": {"initial": 0, "inflows": ["f"]}},
        flows={"f": {"equation": "1"}},
    )
    results = run(model)
    assert results.times == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert results.series("S").tolist() == [0.0, 1.0, 2.0, 3.0, 4.0]


def test_non_negative_stock_is_clamped():
    """Test a non-negative stock never reports a negative value"""
    model = Model(
        time={"start": 0.0, "stop": 10.0, "dt": 1.0},
        stocks={"Tank": {"initial": 10, "outflows": ["drain"], "non_negative": True}},
        flows={"drain": {"equation": "4"}},
    )
    values = run(model).series("Tank")
    assert values.tolist()[:4] == [10.0, 6.0, 2.0, 0.0]
    assert min(values) == 0.0


def test_max_value_stock_is_clamped():
    """Test a stock with max_value never exceeds it"""
    model = Model(
        time={"start": 0.0, "stop": 10.0, "dt": 1.0},
        stocks={"Tank": {"initial": 0, "inflows": ["fill"], "max_value": 25}},
        flows={"fill": {"equation": "10"}},
    )
    values = run(model).series("Tank")
    assert max(values) == 25.0
    assert values[-1] == 25.0


def test_parameter_overrides():
    """Test parameter overrides apply to the run and not to the model"""
    model = growth_model(stop=1.0)
    results = run(model, parameters={"r": 0.5})

    assert results.final_state.stocks["P"] == pytest.approx(150.0)
    assert model.parameters["r"] == 0.1


def test_unknown_parameter_override():
    """Test overriding an undefined parameter fails"""
    with pytest.raises(SimulationError) as exc_info:
        run(growth_model(), parameters={"nope": 1.0})
    assert exc_info.value.code == "unknown_parameter"


def test_validation_failure_blocks_run():
    """Test a structurally invalid model is rejected before running"""
    model = Model(
        stocks={"S": {"initial": 0, "inflows": ["missing_flow"]}},
        flows={"f": {"equation": "undefined_thing * 2"}},
    )
    with pytest.raises(SimulationError) as exc_info:
        SimulationEngine(model)
    assert exc_info.value.code == "validation_failed"
    assert exc_info.value.details["error_count"] == 2


def test_evaluation_error_reports_time():
    """Test a runtime failure carries the failing element and time"""
    model = Model(
        time={"start": 0.0, "stop": 10.0, "dt": 1.0},
        stocks={"S": {"initial": 3, "outflows": ["out"]}},
        flows={"out": {"equation": "10 / (S - 3)"}},
    )
    with pytest.raises(EvaluationError) as exc_info:
        run(model)

    error = exc_info.value
    assert error.code == "division_by_zero"
    assert error.element_id == "out"
    assert error.details["time"] == 0.0


def test_progress_callback():
    """Test the progress callback ends at 1.0"""
    progress = []
    run(growth_model(), progress_callback=progress.append)

    assert progress[-1] == 1.0
    assert progress == sorted(progress)


def test_cancel_returns_partial_results():
    """Test cooperative cancellation between steps"""
    engine = SimulationEngine(growth_model(stop=100.0))

    def cancel_early(progress):
        if progress >= 0.1:
            engine.cancel()

    results = engine.run(progress_callback=cancel_early)

    assert not results.completed
    assert 1 < len(results) < 101


def test_timeout():
    """Test the wall-clock limit aborts the run"""
    engine = SimulationEngine(growth_model(stop=1000.0, dt=0.01), SimulationConfig(timeout=1e-6))
    with pytest.raises(SimulationError) as exc_info:
        engine.run()
    assert exc_info.value.code == "simulation_timeout"


def test_engine_stepping():
    """Test manual stepping and parameter changes between steps"""
    engine = SimulationEngine(growth_model())
    assert engine.current_time == 0.0

    state = engine.step()
    assert state.time == 1.0
    assert state.stocks["P"] == pytest.approx(110.0)

    engine.set_parameter("r", 0.0)
    assert engine.current_state.flows["births"] == 0.0
    state = engine.step()
    assert state.stocks["P"] == pytest.approx(110.0)

    engine.reset()
    assert engine.current_state.stocks["P"] == 100.0


def test_module_step_function():
    """Test stepping a supplied state without an engine"""
    model = growth_model()
    resolver = StepResolver()
    state = initial_state(model, resolver=resolver)
    state = step(model, state, 1.0, resolver=resolver)

    assert state.time == 1.0
    assert state.stocks["P"] == pytest.approx(110.0)
    assert state.flows["births"] == pytest.approx(11.0)


def test_step_resolves_bare_state():
    """Test a state with stocks only is resolved before stepping"""
    state = step(growth_model(), SimulationState(time=3.0, stocks={"P": 200.0}), 0.5)
    assert state.time == 3.5
    assert state.stocks["P"] == pytest.approx(210.0)


def test_results_to_dict():
    """Test the time/results payload contains every variable"""
    data = run(growth_model(stop=2.0)).to_dict()

    assert data["time"] == [0.0, 1.0, 2.0]
    assert set(data["results"]) == {"P", "births"}
    assert data["results"]["P"][1] == pytest.approx(110.0)


def test_auxiliary_reading_flow_uses_previous_value():
    """Test an auxiliary that reads a flow runs and lags it by one step"""
    model = Model(
        name="Share",
        time={"start": 0.0, "stop": 2.0, "dt": 1.0},
        parameters={"r": 0.1},
        stocks={"P": {"initial": 100.0, "inflows": ["births"]}},
        flows={"births": {"equation": "r * P"}},
        auxiliaries={"share": {"equation": "births / P"}},
    )
    result = validate_model(model)
    assert result.valid
    assert "auxiliary_references_flow" in [w.code for w in result.warnings]

    results = run(model)
    share = results.series("share")

    assert results.times == [0.0, 1.0, 2.0]
    assert share[0] == 0.0
    assert share[1] == pytest.approx(10.0 / 110.0)
    assert share[2] == pytest.approx(11.0 / 121.0)
