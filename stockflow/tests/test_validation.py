"""
Tests for validation module
"""

import pydantic
import pytest
from stockflow.models import Model, SimulationConfig, TimeConfig
from stockflow.validation import (
    detect_auxiliary_cycles,
    get_validation_summary,
    quick_validate,
    validate,
    validate_equations,
    validate_model,
    validate_names,
    validate_simulation_config,
    validate_stock_flow_relationships,
    validate_stocks,
    validate_time_config,
)


def population_model(**overrides):
    data = {
        "time": {"start": 0.0, "stop": 50.0, "dt": 1.0},
        "parameters": {"r": 0.02},
        "stocks": {"Population": {"initial": 100, "inflows": ["births"]}},
        "flows": {"births": {"equation": "Population * r"}},
    }
    data.update(overrides)
    return Model(**data)


def test_valid_model():
    """Test a well-formed model has no errors or warnings"""
    result = validate_model(population_model())
    assert result.valid
    assert result.errors == []
    assert result.warnings == []
    assert quick_validate(population_model())


def test_validate_time_config_valid():
    """Test valid time configuration"""
    assert validate_time_config(TimeConfig(start=0.0, stop=100.0, dt=1.0)) == []


def test_validate_time_config_invalid_time_step():
    """Test invalid time step"""
    # Use model_construct to bypass Pydantic validation for testing
    time = TimeConfig.model_construct(start=0.0, stop=100.0, dt=0.0)
    errors = validate_time_config(time)
    assert any(e.code == "invalid_time_step" for e in errors)


def test_validate_time_config_invalid_time_range():
    """Test invalid time range"""
    errors = validate_time_config(TimeConfig(start=100.0, stop=0.0, dt=1.0))
    assert [e.code for e in errors] == ["invalid_time_range"]
    assert errors[0].field == "stop"


def test_validate_time_config_too_many_steps():
    """Test step count limit"""
    errors = validate_time_config(TimeConfig(start=0.0, stop=1_000_000.0, dt=0.5))
    assert [e.code for e in errors] == ["too_many_steps"]


def test_duplicate_names():
    """Test a name shared by two element kinds"""
    model = population_model(auxiliaries={"r": {"equation": "2"}})
    errors = validate_names(model)

    assert len(errors) == 1
    assert errors[0].code == "duplicate_name"
    assert errors[0].element_id == "r"


def test_duplicate_names_in_element_list():
    """Test a list of elements may not repeat a name within one category"""
    flows = [
        {"name": "births", "equation": "1"},
        {"name": "births", "equation": "2"},
    ]
    with pytest.raises(pydantic.ValidationError) as exc_info:
        Model(stocks={"S": {"initial": 0, "inflows": ["births"]}}, flows=flows)
    assert "Duplicate name 'births' in flows" in str(exc_info.value)


def test_element_list_is_keyed_by_name():
    """Test list input becomes a name-keyed mapping"""
    model = Model(
        stocks=[{"name": "S", "initial": 0, "inflows": ["a", "b"]}],
        flows=[{"name": "a", "equation": "1"}, {"name": "b", "equation": "2"}],
    )
    assert list(model.flows) == ["a", "b"]
    assert validate_names(model) == []


def test_undefined_flow():
    """Test a stock wired to a missing flow"""
    model = population_model(
        stocks={"Population": {"initial": 100, "inflows": ["births"], "outflows": ["death"]}}
    )
    errors = validate_stocks(model)

    assert len(errors) == 1
    assert errors[0].code == "undefined_flow"
    assert errors[0].element_id == "Population"
    assert errors[0].field == "outflows"


def test_invalid_constraint():
    """Test a non-negative stock with a negative maximum"""
    model = population_model(
        stocks={
            "Population": {
                "initial": 100,
                "inflows": ["births"],
                "non_negative": True,
                "max_value": -1,
            }
        }
    )
    errors = validate_stocks(model)
    assert [e.code for e in errors] == ["invalid_constraint"]


def test_undefined_variable_with_suggestion():
    """Test typo suggestions for undefined references"""
    model = population_model(flows={"births": {"equation": "Populaton * r"}})
    errors = validate_equations(model)

    assert len(errors) == 1
    assert errors[0].code == "undefined_variable"
    assert errors[0].element_id == "births"
    assert errors[0].context == {"variable": "Populaton"}
    assert "Population" in errors[0].suggestion


def test_time_is_always_defined():
    """Test TIME is accepted in any case"""
    model = population_model(auxiliaries={"t": {"equation": "time * 2 + TIME"}})
    assert validate_equations(model) == []


def test_undefined_variable_in_initial_value():
    """Test stock initial equations are checked too"""
    model = population_model(
        stocks={"Population": {"initial": "start_pop", "inflows": ["births"]}}
    )
    errors = validate_equations(model)
    assert len(errors) == 1
    assert errors[0].field == "initial"


def test_undefined_lookup():
    """Test LOOKUP naming a missing table"""
    model = population_model(auxiliaries={"effect": {"equation": "LOOKUP(Population, crowding)"}})
    errors = validate_equations(model)

    assert [e.code for e in errors] == ["undefined_lookup"]
    assert errors[0].element_id == "effect"


def test_defined_lookup():
    """Test LOOKUP naming a defined table"""
    model = population_model(
        auxiliaries={"effect": {"equation": "LOOKUP(Population, crowding)"}},
        lookups={"crowding": {"points": [[0, 1.0], [1000, 0.0]]}},
    )
    assert validate_equations(model) == []


def test_auxiliary_cycle_is_a_warning():
    """Test simultaneous auxiliaries are reported but allowed"""
    model = population_model(
        auxiliaries={
            "x": {"equation": "y + 1"},
            "y": {"equation": "x * 0.5"},
        }
    )
    warnings = detect_auxiliary_cycles(model)
    assert len(warnings) == 1
    assert warnings[0].code == "auxiliary_cycle"
    assert set(warnings[0].context["cycle"]) == {"x", "y"}

    result = validate_model(model)
    assert result.valid
    assert [w.code for w in result.warnings] == ["auxiliary_cycle"]


def test_self_reference_is_a_cycle():
    """Test an auxiliary that reads itself"""
    model = population_model(auxiliaries={"x": {"equation": "x / 2 + 1"}})
    warnings = detect_auxiliary_cycles(model)
    assert len(warnings) == 1
    assert warnings[0].context["cycle"] == ["x"]


def test_no_cycle_through_stocks():
    """Test a feedback loop through a stock is not a cycle"""
    model = population_model(auxiliaries={"pressure": {"equation": "Population / 1000"}})
    assert detect_auxiliary_cycles(model) == []


def test_stock_flow_relationship_warnings():
    """Test unused flows, flows in and out, and auxiliaries reading flows"""
    model = population_model(
        stocks={"Population": {"initial": 100, "inflows": ["births"], "outflows": ["births"]}},
        flows={
            "births": {"equation": "Population * r"},
            "orphan": {"equation": "1"},
        },
        auxiliaries={"birth_share": {"equation": "births / Population"}},
    )
    codes = sorted(w.code for w in validate_stock_flow_relationships(model))
    assert codes == ["auxiliary_references_flow", "flow_in_and_out", "unused_flow"]


def test_warnings_skipped_when_errors_exist():
    """Test warnings are only computed for structurally sound models"""
    model = population_model(
        flows={"births": {"equation": "missing"}, "orphan": {"equation": "1"}}
    )
    result = validate_model(model)
    assert not result.valid
    assert result.warnings == []


def test_validate_simulation_config():
    """Test RK45 step bounds must be consistent"""
    assert validate_simulation_config(SimulationConfig()) == []

    config = SimulationConfig(method="rk45", rk45={"min_step": 1.0, "max_step": 0.5})
    errors = validate_simulation_config(config)
    assert [e.code for e in errors] == ["invalid_rk45_steps"]

    result = validate_model(population_model(), config)
    assert not result.valid


def test_validate_collects_all_errors():
    """Test every structural error is reported at once"""
    model = population_model(
        time={"start": 10.0, "stop": 0.0, "dt": 1.0},
        stocks={"Population": {"initial": 100, "inflows": ["births", "immigration"]}},
        flows={"births": {"equation": "Population * rate"}},
    )
    codes = sorted(e.code for e in validate(model))
    assert codes == ["invalid_time_range", "undefined_flow", "undefined_variable"]
    assert not quick_validate(model)


def test_validation_summary():
    """Test error counts by code and element"""
    model = population_model(
        stocks={"Population": {"initial": 100, "inflows": ["births", "immigration"]}},
        flows={"births": {"equation": "Population * rate"}},
    )
    summary = get_validation_summary(validate_model(model))

    assert summary["valid"] is False
    assert summary["error_count"] == 2
    assert summary["warning_count"] == 0
    assert summary["errors_by_code"] == {"undefined_flow": 1, "undefined_variable": 1}
    assert summary["errors_by_element"] == {"Population": 1, "births": 1}
