"""
Data models for the stockflow engine
Model definition, simulation configuration, state snapshots and API payloads
"""

from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import numpy as np
from pydantic import (
    BaseModel,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

from stockflow.constants import (
    INTEGRATION_METHOD_ALIASES,
    PINK_NOISE_ALGORITHMS,
    VALID_INTEGRATION_METHODS,
)
from stockflow.exceptions import SimulationError, ValidationError
from stockflow.expressions import Expression
from stockflow.lookup import LookupTable
from stockflow.parser import parse
from stockflow.types import SimulationResultDict

# ============================================================================
# Model definition
# ============================================================================


class TimeConfig(BaseModel):
    """
    Simulation time axis

    Attributes:
        start: Start time
        stop: Stop time
        dt: Outer step size (must be > 0)
        output_interval: Optional recording interval (records every step when unset)
        units: Optional time units label
    """

    start: float = 0.0
    stop: float = 100.0
    dt: float = Field(0.25, gt=0, description="Time step must be greater than 0")
    output_interval: Optional[float] = Field(None, gt=0)
    units: Optional[str] = None

    def get_num_steps(self) -> int:
        """Calculate the number of outer steps"""
        if self.stop <= self.start:
            return 0
        return int(np.ceil((self.stop - self.start) / self.dt - 1e-9))


def _coerce_equation(v: Any) -> Any:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return repr(float(v))
    return v


class Stock(BaseModel):
    """
    Accumulator integrated over time

    Attributes:
        name: Unique name
        initial: Equation for the value at the start time
        inflows: Names of flows adding to the stock
        outflows: Names of flows draining the stock
        non_negative: Clamp the value at zero
        max_value: Optional upper bound
        units: Optional units label
    """

    name: str
    initial: str = "0"
    inflows: List[str] = []
    outflows: List[str] = []
    non_negative: bool = False
    max_value: Optional[float] = None
    units: Optional[str] = None

    _initial_expression: Optional[Expression] = PrivateAttr(default=None)

    @field_validator("initial", mode="before")
    @classmethod
    def coerce_initial(cls, v: Any) -> Any:
        return _coerce_equation(v)

    def model_post_init(self, __context: Any) -> None:
        self._initial_expression = parse(self.initial, owner=f"{self.name}.initial")

    @property
    def initial_expression(self) -> Expression:
        return self._initial_expression

    def clamp(self, value: float) -> float:
        """Apply the stock's constraints to a candidate value"""
        if self.non_negative:
            value = max(0.0, value)
        if self.max_value is not None:
            value = min(self.max_value, value)
        return value


class _EquationElement(BaseModel):
    name: str
    equation: str
    units: Optional[str] = None

    _expression: Optional[Expression] = PrivateAttr(default=None)

    @field_validator("equation", mode="before")
    @classmethod
    def coerce_equation(cls, v: Any) -> Any:
        return _coerce_equation(v)

    def model_post_init(self, __context: Any) -> None:
        self._expression = parse(self.equation, owner=self.name)

    @property
    def expression(self) -> Expression:
        return self._expression


class Flow(_EquationElement):
    """Rate of change moving material into or out of stocks"""


class Auxiliary(_EquationElement):
    """Intermediate variable computed from other variables each instant"""


def _keyed_elements(value: Any, field: str) -> Any:
    """
    Accept a list of elements or a name-keyed mapping; fill missing names from keys

    Raises:
        ValueError: If a list names the same element twice
    """
    if isinstance(value, list):
        keyed = {}
        for item in value:
            name = item.name if isinstance(item, BaseModel) else item.get("name")
            if name in keyed:
                raise ValueError(f"Duplicate name '{name}' in {field}")
            keyed[name] = item
        return keyed
    if isinstance(value, Mapping):
        keyed = {}
        for key, item in value.items():
            if isinstance(item, Mapping) and "name" not in item:
                item = {**item, "name": key}
            keyed[key] = item
        return keyed
    return value


class Model(BaseModel):
    """
    A stock-and-flow model

    Attributes:
        name: Model name
        description: Optional description
        author: Optional author
        time: Time configuration
        stocks: Stocks by name
        flows: Flows by name
        auxiliaries: Auxiliaries by name
        parameters: Constant parameters by name
        lookups: Named lookup tables referenced by LOOKUP(x, table)
    """

    name: str = "Untitled Model"
    description: Optional[str] = None
    author: Optional[str] = None
    time: TimeConfig = Field(default_factory=TimeConfig)
    stocks: Dict[str, Stock] = {}
    flows: Dict[str, Flow] = {}
    auxiliaries: Dict[str, Auxiliary] = {}
    parameters: Dict[str, float] = {}
    lookups: Dict[str, LookupTable] = {}

    @model_validator(mode="before")
    @classmethod
    def fill_element_names(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            for field in ("stocks", "flows", "auxiliaries"):
                if field in data:
                    data[field] = _keyed_elements(data[field], field)
        return data

    def kind_of(self, name: str) -> Optional[str]:
        """Category of a name, in variable resolution order"""
        if name in self.parameters:
            return "parameter"
        if name in self.stocks:
            return "stock"
        if name in self.flows:
            return "flow"
        if name in self.auxiliaries:
            return "auxiliary"
        return None

    def element_names(self) -> List[str]:
        return [
            *self.parameters,
            *self.stocks,
            *self.flows,
            *self.auxiliaries,
        ]

    def with_parameters(self, overrides: Mapping[str, float]) -> "Model":
        """
        Copy of the model with parameter values replaced

        Args:
            overrides: Parameter name to new value

        Returns:
            New model; this one is not modified

        Raises:
            SimulationError: If an override names an unknown parameter
        """
        unknown = [name for name in overrides if name not in self.parameters]
        if unknown:
            raise SimulationError(
                code="unknown_parameter",
                message=f"Unknown parameter(s): {', '.join(unknown)}",
                details={"parameters": unknown, "available": list(self.parameters)},
            )
        updated = self.model_copy(deep=True)
        updated.parameters.update({name: float(v) for name, v in overrides.items()})
        return updated


# ============================================================================
# Simulation configuration
# ============================================================================


class RK45Options(BaseModel):
    """Adaptive Dormand-Prince step control"""

    rtol: float = Field(1e-6, gt=0)
    atol: float = Field(1e-9, gt=0)
    min_step: float = Field(1e-8, gt=0)
    max_step: Optional[float] = Field(None, gt=0, description="Defaults to the outer dt")
    initial_step: Optional[float] = Field(None, gt=0)
    safety: float = Field(0.9, gt=0, le=1)


class BackwardEulerOptions(BaseModel):
    """Implicit solve controls"""

    max_iterations: int = Field(20, ge=1)
    tolerance: float = Field(1e-6, gt=0)
    solver: str = Field("newton", description="'newton' or 'fixed_point'")

    @field_validator("solver")
    @classmethod
    def validate_solver(cls, v: str) -> str:
        if v not in ("newton", "fixed_point"):
            raise ValueError("Solver must be 'newton' or 'fixed_point'")
        return v


class SimulationConfig(BaseModel):
    """
    Configuration for simulation execution

    Attributes:
        method: Integration method
        output_interval: Recording interval, overrides the model's
        seed: RNG seed for stochastic functions
        rk45: Adaptive step options
        backward_euler: Implicit solver options
        strict_convergence: Fail instead of warn when auxiliaries do not converge
        pink_noise: Algorithm behind PINK_NOISE ('octave' or 'filter')
        timeout: Wall-clock limit in seconds
        verbose: Enable detailed logging
    """

    method: str = Field(
        "euler", description="Integration method: euler, heun, rk4, rk45, backward_euler"
    )
    output_interval: Optional[float] = Field(None, gt=0)
    seed: Optional[int] = Field(None, ge=0)
    rk45: RK45Options = Field(default_factory=RK45Options)
    backward_euler: BackwardEulerOptions = Field(default_factory=BackwardEulerOptions)
    strict_convergence: Optional[bool] = None
    pink_noise: str = "octave"
    timeout: Optional[float] = Field(None, gt=0)
    verbose: bool = False

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        if not isinstance(v, str):
            return v
        method = v.strip().lower()
        method = INTEGRATION_METHOD_ALIASES.get(method, method)
        if method not in VALID_INTEGRATION_METHODS:
            raise ValueError(
                f"Invalid integration method '{v}'. "
                f"Must be one of: {', '.join(sorted(VALID_INTEGRATION_METHODS))}"
            )
        return method

    @field_validator("pink_noise")
    @classmethod
    def validate_pink_noise(cls, v: str) -> str:
        if v not in PINK_NOISE_ALGORITHMS:
            raise ValueError("Pink noise algorithm must be 'octave' or 'filter'")
        return v


# ============================================================================
# State and results
# ============================================================================


class SimulationState(BaseModel):
    """
    Snapshot of every variable at one instant

    Attributes:
        time: Instant of the snapshot
        stocks: Stock values
        flows: Flow values resolved at this instant
        auxiliaries: Auxiliary values resolved at this instant
        converged: False when auxiliaries hit the pass limit without converging
    """

    time: float = 0.0
    stocks: Dict[str, float] = {}
    flows: Dict[str, float] = {}
    auxiliaries: Dict[str, float] = {}
    converged: bool = True

    def derive(
        self, time: Optional[float] = None, stocks: Optional[Dict[str, float]] = None
    ) -> "SimulationState":
        """Clone for a new step or stage; this state is left untouched"""
        return SimulationState.model_construct(
            time=self.time if time is None else time,
            stocks=dict(self.stocks if stocks is None else stocks),
            flows=dict(self.flows),
            auxiliaries=dict(self.auxiliaries),
            converged=True,
        )

    def get(self, name: str) -> Optional[float]:
        for values in (self.stocks, self.flows, self.auxiliaries):
            if name in values:
                return values[name]
        return None

    def values(self) -> Dict[str, float]:
        """All variables of the snapshot in one mapping"""
        return {**self.stocks, **self.flows, **self.auxiliaries}


class SimulationResults:
    """
    Recorded states of one run, in time order

    Iterating yields (time, state) pairs.
    """

    def __init__(
        self,
        states: List[SimulationState],
        method: str,
        completed: bool = True,
        unconverged_steps: int = 0,
    ):
        self.states = states
        self.method = method
        self.completed = completed
        self.unconverged_steps = unconverged_steps

    @property
    def times(self) -> List[float]:
        return [state.time for state in self.states]

    @property
    def final_state(self) -> SimulationState:
        return self.states[-1]

    def __iter__(self) -> Iterator[Tuple[float, SimulationState]]:
        for state in self.states:
            yield state.time, state

    def __len__(self) -> int:
        return len(self.states)

    def __getitem__(self, index: int) -> Tuple[float, SimulationState]:
        state = self.states[index]
        return state.time, state

    def variable_names(self) -> List[str]:
        return list(self.states[0].values()) if self.states else []

    def series(self, name: str) -> np.ndarray:
        """
        Time series of one variable

        Raises:
            KeyError: If no recorded state carries the name
        """
        values = [state.get(name) for state in self.states]
        if not values or values[0] is None:
            raise KeyError(f"No recorded variable named '{name}'")
        return np.array(values, dtype=float)

    def to_dict(self) -> SimulationResultDict:
        """Convert to the {"time": [...], "results": {...}} payload"""
        return {
            "time": self.times,
            "results": {name: self.series(name).tolist() for name in self.variable_names()},
        }


# ============================================================================
# API payloads
# ============================================================================


class SimulationRequest(BaseModel):
    """
    Complete simulation request payload

    The model is kept as raw data so equation errors surface as engine errors.
    """

    model: Dict[str, Any]
    config: SimulationConfig = Field(default_factory=SimulationConfig)
    parameters: Dict[str, float] = {}


class StepRequest(BaseModel):
    """Advance a supplied state by one step"""

    model: Dict[str, Any]
    state: Optional[SimulationState] = None
    dt: Optional[float] = Field(None, gt=0)
    config: SimulationConfig = Field(default_factory=SimulationConfig)


class SimulationResponse(BaseModel):
    """
    Simulation execution result

    Attributes:
        success: Whether simulation completed successfully
        time: List of recorded time points
        results: Dictionary mapping variable names to time series data
        completed: False when the run was cancelled
        unconverged_steps: Instants where auxiliaries did not converge
        error: Error message if simulation failed
    """

    success: bool
    time: List[float] = []
    results: Dict[str, List[float]] = {}
    completed: bool = True
    unconverged_steps: int = 0
    error: Optional[str] = None


class ValidationResponse(BaseModel):
    """
    Model validation result

    Attributes:
        valid: Whether the model is valid
        errors: List of validation errors
        warnings: List of validation warnings
        summary: Summary statistics
    """

    valid: bool
    errors: List[ValidationError] = []
    warnings: List[ValidationError] = []
    summary: Optional[Dict[str, Any]] = None
