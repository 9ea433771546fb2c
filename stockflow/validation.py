"""
Structural validation for stockflow models
Validates time configuration, names, stock/flow wiring, equation references and auxiliary cycles
"""

import difflib
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from pydantic import BaseModel

from stockflow.config import get_settings
from stockflow.constants import TIME_VARIABLE
from stockflow.exceptions import ValidationError
from stockflow.expressions import Expression, Variable, extract_variable_references, iter_function_calls
from stockflow.models import Model, SimulationConfig, TimeConfig
from stockflow.types import ValidationSummaryDict


class ValidationResult(BaseModel):
    """Result of validation"""

    valid: bool
    errors: List[ValidationError]
    warnings: List[ValidationError] = []


# ============================================================================
# Configuration Validation
# ============================================================================


def validate_time_config(
    time: TimeConfig, output_interval: Optional[float] = None
) -> List[ValidationError]:
    """
    Validate the time axis

    Rules:
    - dt > 0
    - stop > start
    - total steps below the configured maximum
    - output interval, when set, is positive
    """
    errors: List[ValidationError] = []

    if time.dt <= 0:
        errors.append(
            ValidationError(
                code="invalid_time_step",
                message=f"Time step must be greater than 0, got {time.dt}",
                field="dt",
                suggestion="Set dt to a positive value (e.g., 0.25, 1.0)",
            )
        )

    if time.stop <= time.start:
        errors.append(
            ValidationError(
                code="invalid_time_range",
                message=f"Stop time ({time.stop}) must be greater than start time ({time.start})",
                field="stop",
                suggestion=f"Set stop to a value greater than {time.start}",
            )
        )

    max_steps = get_settings().max_simulation_steps
    if time.dt > 0 and time.stop > time.start:
        steps = (time.stop - time.start) / time.dt
        if steps >= max_steps:
            errors.append(
                ValidationError(
                    code="too_many_steps",
                    message=f"Simulation would require {steps:.0f} steps, exceeding maximum of {max_steps:,}",
                    field="dt",
                    suggestion="Increase dt or reduce the time range (stop - start)",
                )
            )

    interval = output_interval if output_interval is not None else time.output_interval
    if interval is not None and interval <= 0:
        errors.append(
            ValidationError(
                code="invalid_output_interval",
                message=f"Output interval must be greater than 0, got {interval}",
                field="output_interval",
            )
        )

    return errors


def validate_simulation_config(config: SimulationConfig) -> List[ValidationError]:
    """Validate options that individual fields cannot check on their own"""
    errors: List[ValidationError] = []
    rk45 = config.rk45
    if rk45.max_step is not None and rk45.min_step > rk45.max_step:
        errors.append(
            ValidationError(
                code="invalid_rk45_steps",
                message=f"RK45 min_step ({rk45.min_step}) exceeds max_step ({rk45.max_step})",
                field="rk45",
                suggestion="Lower min_step or raise max_step",
            )
        )
    return errors


# ============================================================================
# Element Validation
# ============================================================================


def validate_names(model: Model) -> List[ValidationError]:
    """Names must be unique across parameters, stocks, flows and auxiliaries"""
    errors: List[ValidationError] = []
    seen: Dict[str, str] = {}
    categories = (
        ("parameter", model.parameters),
        ("stock", model.stocks),
        ("flow", model.flows),
        ("auxiliary", model.auxiliaries),
    )
    for kind, elements in categories:
        for name in elements:
            if name in seen:
                errors.append(
                    ValidationError(
                        code="duplicate_name",
                        message=f"Name '{name}' is used by both a {seen[name]} and a {kind}",
                        element_id=name,
                        suggestion="Rename one of the elements",
                    )
                )
            else:
                seen[name] = kind
    return errors


def validate_stocks(model: Model) -> List[ValidationError]:
    """
    Validate stock wiring and constraints

    Rules:
    - every inflow/outflow names a defined flow
    - max_value is not negative when the stock is non-negative
    """
    errors: List[ValidationError] = []

    for name, stock in model.stocks.items():
        for field, flow_names in (("inflows", stock.inflows), ("outflows", stock.outflows)):
            for flow in flow_names:
                if flow not in model.flows:
                    similar = _find_similar_names(flow, set(model.flows))
                    errors.append(
                        ValidationError(
                            code="undefined_flow",
                            message=f"Stock '{name}' references undefined flow '{flow}'",
                            element_id=name,
                            field=field,
                            suggestion=f"Did you mean: {', '.join(similar)}?" if similar else None,
                        )
                    )

        if stock.non_negative and stock.max_value is not None and stock.max_value < 0:
            errors.append(
                ValidationError(
                    code="invalid_constraint",
                    message=f"Stock '{name}' is non-negative but max_value is {stock.max_value}",
                    element_id=name,
                    field="max_value",
                )
            )

    return errors


def _equations(model: Model) -> Iterator[Tuple[str, str, Expression]]:
    """(element name, field, expression) for every equation of the model"""
    for name, stock in model.stocks.items():
        yield name, "initial", stock.initial_expression
    for name, flow in model.flows.items():
        yield name, "equation", flow.expression
    for name, aux in model.auxiliaries.items():
        yield name, "equation", aux.expression


def validate_equations(model: Model) -> List[ValidationError]:
    """
    Validate that every equation references defined names

    Rules:
    - variables resolve to a parameter, stock, flow or auxiliary (or TIME)
    - LOOKUP(x, table) names a defined lookup table
    """
    errors: List[ValidationError] = []
    known: Set[str] = set(model.element_names())
    lookup_names = {name.lower() for name in model.lookups}

    for element, field, expression in _equations(model):
        for var_name in sorted(extract_variable_references(expression)):
            if var_name in known or var_name.upper() == TIME_VARIABLE:
                continue
            similar = _find_similar_names(var_name, known)
            errors.append(
                ValidationError(
                    code="undefined_variable",
                    message=f"Undefined variable '{var_name}' in {field} of '{element}'",
                    element_id=element,
                    field=field,
                    suggestion=f"Did you mean: {', '.join(similar)}?" if similar else None,
                    context={"variable": var_name},
                )
            )

        for call in iter_function_calls(expression):
            if call.name != "LOOKUP" or not isinstance(call.args[1], Variable):
                continue
            table = call.args[1].name
            if table.lower() not in lookup_names:
                errors.append(
                    ValidationError(
                        code="undefined_lookup",
                        message=f"Lookup table '{table}' used by '{element}' is not defined",
                        element_id=element,
                        field=field,
                        suggestion=f"Available tables: {', '.join(model.lookups) or 'none'}",
                    )
                )

    return errors


def _find_similar_names(name: str, candidates: Set[str], limit: int = 5) -> List[str]:
    """Candidate names a misspelt reference probably meant, best first"""
    by_lower = {candidate.lower(): candidate for candidate in sorted(candidates)}
    wanted = name.lower()
    if wanted in by_lower:
        return [by_lower[wanted]]
    close = difflib.get_close_matches(wanted, list(by_lower), n=limit, cutoff=0.6)
    contained = [
        lower for lower in by_lower
        if lower not in close and (wanted in lower or lower in wanted)
    ]
    return [by_lower[lower] for lower in close + contained][:limit]


# ============================================================================
# Auxiliary Cycles
# ============================================================================


def detect_auxiliary_cycles(model: Model) -> List[ValidationError]:
    """
    Detect cycles among auxiliaries using DFS (warnings, not errors)

    Stocks break feedback loops, and the step resolver iterates auxiliaries to
    a fixed point, so a cycle is legal; it is reported because simultaneous
    auxiliaries may fail to converge.
    """
    warnings: List[ValidationError] = []

    dependencies: Dict[str, List[str]] = {
        name: sorted(
            ref
            for ref in extract_variable_references(aux.expression)
            if ref in model.auxiliaries and ref not in model.parameters
        )
        for name, aux in model.auxiliaries.items()
    }

    for cycle in _find_cycles(dependencies):
        cycle_path_str = " -> ".join(cycle) + f" -> {cycle[0]}"
        warnings.append(
            ValidationError(
                code="auxiliary_cycle",
                message=f"Simultaneous auxiliaries: {cycle_path_str}",
                element_id=cycle[0],
                field="equation",
                suggestion="The resolver iterates these to a fixed point; "
                "break the cycle with a stock or delay if it does not converge",
                context={"cycle": cycle},
            )
        )

    return warnings


def _find_cycles(dependencies: Dict[str, List[str]]) -> List[List[str]]:
    """
    Cycles closed by back edges in a depth-first search

    Each node is expanded once; a back edge to a node still on the current
    path closes a cycle, reported from that node onwards.
    """
    finished: Set[str] = set()
    cycles: List[List[str]] = []
    seen: Set[Tuple[str, ...]] = set()

    for root in dependencies:
        if root in finished:
            continue
        path: List[str] = [root]
        on_path: Set[str] = {root}
        pending: List[Iterator[str]] = [iter(dependencies[root])]
        while pending:
            neighbor = next(pending[-1], None)
            if neighbor is None:
                pending.pop()
                done = path.pop()
                on_path.discard(done)
                finished.add(done)
            elif neighbor in on_path:
                cycle = path[path.index(neighbor):]
                key = tuple(sorted(cycle))
                if key not in seen:
                    seen.add(key)
                    cycles.append(cycle)
            elif neighbor not in finished:
                path.append(neighbor)
                on_path.add(neighbor)
                pending.append(iter(dependencies.get(neighbor, [])))

    return cycles


# ============================================================================
# Model-Level Validation
# ============================================================================


def validate_stock_flow_relationships(model: Model) -> List[ValidationError]:
    """
    Validate relationships between stocks and flows (warnings, not errors)

    Checks:
    - auxiliaries that read flows see the previous instant's value
    - a flow listed as both inflow and outflow of one stock cancels out
    - flows connected to no stock have no effect
    """
    warnings: List[ValidationError] = []

    for name, aux in model.auxiliaries.items():
        for ref in sorted(extract_variable_references(aux.expression)):
            if ref in model.flows and model.kind_of(ref) == "flow":
                warnings.append(
                    ValidationError(
                        code="auxiliary_references_flow",
                        message=f"Auxiliary '{name}' reads flow '{ref}', which is "
                        "resolved after auxiliaries; the previous value is used",
                        element_id=name,
                        field="equation",
                    )
                )

    connected: Set[str] = set()
    for name, stock in model.stocks.items():
        connected.update(stock.inflows)
        connected.update(stock.outflows)
        for flow in set(stock.inflows) & set(stock.outflows):
            warnings.append(
                ValidationError(
                    code="flow_in_and_out",
                    message=f"Flow '{flow}' is both an inflow and an outflow of stock '{name}'",
                    element_id=name,
                )
            )

    for flow in model.flows:
        if flow not in connected:
            warnings.append(
                ValidationError(
                    code="unused_flow",
                    message=f"Flow '{flow}' is not connected to any stock",
                    element_id=flow,
                )
            )

    return warnings


def validate(model: Model) -> List[ValidationError]:
    """
    Structural errors of a model

    Returns:
        Errors for the time axis, duplicate names, undefined flows, undefined
        variables and lookups, and invalid constraints; empty when valid
    """
    errors: List[ValidationError] = []
    errors.extend(validate_time_config(model.time))
    errors.extend(validate_names(model))
    errors.extend(validate_stocks(model))
    errors.extend(validate_equations(model))
    return errors


def validate_model(
    model: Model, config: Optional[SimulationConfig] = None
) -> ValidationResult:
    """
    Orchestrate all validation checks

    Validation order:
    1. Structural errors (validate)
    2. Simulation configuration
    3. Auxiliary cycles and stock-flow relationships (warnings, only when
       the structure is sound)

    Returns:
        ValidationResult with errors and warnings
    """
    errors = validate(model)
    warnings: List[ValidationError] = []

    if config is not None:
        errors.extend(validate_simulation_config(config))
        if config.output_interval is not None:
            errors.extend(
                e
                for e in validate_time_config(model.time, config.output_interval)
                if e.code == "invalid_output_interval"
            )

    if not errors:
        warnings.extend(detect_auxiliary_cycles(model))
        warnings.extend(validate_stock_flow_relationships(model))

    return ValidationResult(valid=len(errors) == 0, errors=errors, warnings=warnings)


# ============================================================================
# Utility Functions
# ============================================================================


def quick_validate(model: Model) -> bool:
    """
    Quick validation check without full error details

    Returns:
        True if the model has no structural errors
    """
    return not validate(model)


def get_validation_summary(result: ValidationResult) -> ValidationSummaryDict:
    """
    Get a summary of validation results

    Returns:
        Dictionary with error counts by category
    """
    summary: Dict[str, Any] = {
        "valid": result.valid,
        "error_count": len(result.errors),
        "warning_count": len(result.warnings),
        "errors_by_code": {},
        "errors_by_element": {},
    }

    for error in result.errors:
        summary["errors_by_code"][error.code] = summary["errors_by_code"].get(error.code, 0) + 1
        elem_id = error.element_id or "config"
        summary["errors_by_element"][elem_id] = summary["errors_by_element"].get(elem_id, 0) + 1

    return summary
