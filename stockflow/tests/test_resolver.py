"""
Tests for the step resolver: auxiliary fixed-point passes, flows and initial state
"""

import pytest
from stockflow.exceptions import (
    ConvergenceFailureError,
    DivisionByZeroError,
    UndefinedVariableError,
)
from stockflow.integrators import compute_derivatives
from stockflow.models import Model, SimulationState
from stockflow.resolver import StepResolver, evaluation_order


def test_auxiliaries_resolve_in_any_order():
    """Test auxiliaries defined before their dependencies still resolve"""
    model = Model(
        stocks={"S": {"initial": "4"}},
        auxiliaries={
            "a": {"equation": "b + 1"},
            "b": {"equation": "c * 2"},
            "c": {"equation": "S"},
        },
    )
    state = StepResolver().initial_state(model)

    assert state.auxiliaries == {"a": 9.0, "b": 8.0, "c": 4.0}
    assert state.converged


def test_flows_see_resolved_auxiliaries():
    """Test flows are evaluated after auxiliaries"""
    model = Model(
        parameters={"rate": 0.5},
        stocks={"S": {"initial": "10", "outflows": ["drain"]}},
        flows={"drain": {"equation": "S * effective_rate"}},
        auxiliaries={"effective_rate": {"equation": "rate / 2"}},
    )
    state = StepResolver().initial_state(model)

    assert state.flows["drain"] == 2.5


def test_initial_values_may_reference_other_stocks():
    """Test stock initial equations are resolved in dependency order"""
    model = Model(
        parameters={"k": 3.0},
        stocks={
            "A": {"initial": "B * 2"},
            "B": {"initial": "k + 1"},
        },
    )
    state = StepResolver().initial_state(model)

    assert state.stocks == {"A": 8.0, "B": 4.0}


def test_initial_value_cycle_raises():
    """Test mutually dependent initial values fail"""
    model = Model(stocks={"A": {"initial": "B"}, "B": {"initial": "A"}})
    with pytest.raises(UndefinedVariableError):
        StepResolver().initial_state(model)


def test_persistent_error_raises_after_grace_passes():
    """Test a failure that never clears is surfaced with context"""
    model = Model(auxiliaries={"x": {"equation": "missing + 1"}})
    with pytest.raises(UndefinedVariableError) as exc_info:
        StepResolver().resolve(model, SimulationState(time=0.0))

    assert exc_info.value.element_id == "x"
    assert exc_info.value.equation == "missing + 1"


def test_hard_error_is_not_swallowed():
    """Test evaluation errors in auxiliaries propagate"""
    model = Model(auxiliaries={"x": {"equation": "1 / 0"}})
    with pytest.raises(DivisionByZeroError):
        StepResolver().resolve(model, SimulationState(time=0.0))


def oscillating_model():
    return Model(
        auxiliaries={
            "x": {"equation": "1 - y"},
            "y": {"equation": "x"},
        }
    )


def test_non_convergence_sets_flag():
    """Test hitting the pass limit flags the state by default"""
    state = StepResolver(strict=False).resolve(
        oscillating_model(), SimulationState(time=0.0, auxiliaries={"y": 0.0})
    )
    assert state.converged is False


def test_non_convergence_raises_when_strict():
    """Test strict mode turns non-convergence into an error"""
    with pytest.raises(ConvergenceFailureError) as exc_info:
        StepResolver(strict=True, max_passes=10).resolve(
            oscillating_model(), SimulationState(time=0.0, auxiliaries={"y": 0.0})
        )
    assert exc_info.value.code == "auxiliary_convergence_failure"
    assert exc_info.value.details["iterations"] == 10


def test_resolve_does_not_mutate_input_state():
    """Test resolution returns a new state"""
    model = Model(
        stocks={"S": {"initial": "1"}},
        auxiliaries={"a": {"equation": "S * 3"}},
    )
    original = SimulationState(time=2.0, stocks={"S": 5.0})
    resolved = StepResolver().resolve(model, original)

    assert resolved.auxiliaries["a"] == 15.0
    assert original.auxiliaries == {}
    assert resolved.time == 2.0


def test_missing_flow_in_stock_equation():
    """Test a stock wired to a flow that does not exist is reported"""
    model = Model(stocks={"S": {"initial": "1", "inflows": ["ghost"]}})
    with pytest.raises(UndefinedVariableError) as exc_info:
        compute_derivatives(model, {})
    assert exc_info.value.element_id == "S"


def test_reversed_chain_resolves_in_one_pass():
    """Test a long acyclic chain declared back to front is ordered by dependency"""
    auxiliaries = {f"a{i}": {"equation": f"a{i + 1} + 1"} for i in range(1, 7)}
    auxiliaries["a7"] = {"equation": "S"}
    model = Model(stocks={"S": {"initial": "0"}}, auxiliaries=auxiliaries)

    assert evaluation_order(model) == [f"a{i}" for i in range(7, 0, -1)]

    state = StepResolver(grace_passes=0).initial_state(model)
    assert state.auxiliaries["a1"] == 6.0
    assert state.auxiliaries["a7"] == 0.0
    assert state.converged


def test_cyclic_auxiliaries_keep_declaration_order():
    """Test auxiliaries in a cycle follow the acyclic ones"""
    model = Model(
        stocks={"S": {"initial": "1"}},
        auxiliaries={
            "x": {"equation": "y + 1"},
            "y": {"equation": "x * 0.5"},
            "z": {"equation": "S"},
        },
    )
    assert evaluation_order(model) == ["z", "x", "y"]


def test_flows_and_auxiliaries_start_at_zero():
    """Test an auxiliary reading a flow sees 0 before the first flow evaluation"""
    model = Model(
        parameters={"r": 0.1},
        stocks={"P": {"initial": "100", "inflows": ["births"]}},
        flows={"births": {"equation": "r * P"}},
        auxiliaries={"share": {"equation": "births / P"}},
    )
    state = StepResolver(grace_passes=0).initial_state(model)

    assert state.auxiliaries["share"] == 0.0
    assert state.flows["births"] == 10.0
