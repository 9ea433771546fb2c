"""
Simulation engine for stockflow models
Owns one run: model snapshot, running state, stateful function managers, integrator and recording policy
"""

from typing import Callable, Dict, List, Optional
from time import monotonic
import logging
import math

from stockflow.config import get_settings
from stockflow.delays import DelayManager
from stockflow.exceptions import EngineError, SimulationError
from stockflow.expressions import format_expression
from stockflow.integrators import Integrator, create_integrator
from stockflow.models import Model, SimulationConfig, SimulationResults, SimulationState
from stockflow.resolver import StepResolver
from stockflow.stochastic import StochasticManager
from stockflow.types import SimulationResultDict
from stockflow.utils.logging_config import run_scope
from stockflow.validation import validate, validate_model

logger = logging.getLogger(__name__)

# Relative slack when comparing times against recording boundaries
_TIME_EPSILON = 1e-9


def should_record(
    time: float, step: float, interval: Optional[float], start: float = 0.0
) -> bool:
    """
    Whether the step that ended at `time` crossed a recording boundary

    Args:
        time: Time at the end of the step
        step: Size of the step just taken
        interval: Recording interval; None records every step
        start: Start time the boundaries are measured from

    Returns:
        True if the state at `time` should be recorded
    """
    if interval is None:
        return True
    current = math.floor((time - start) / interval + _TIME_EPSILON)
    previous = math.floor((time - step - start) / interval + _TIME_EPSILON)
    return current > previous


class SimulationEngine:
    """
    Runs one model under one configuration

    The engine works on its own deep copy of the model, builds fresh delay and
    stochastic managers (seeded from the configuration) and drives the chosen
    integrator from the start time to the stop time.
    """

    def __init__(
        self,
        model: Model,
        config: Optional[SimulationConfig] = None,
        parameters: Optional[Dict[str, float]] = None,
        skip_validation: bool = False,
    ):
        """
        Initialize the engine

        Args:
            model: Model to simulate (copied; the caller's model is never touched)
            config: Simulation configuration
            parameters: Parameter overrides applied to the copy
            skip_validation: Skip structural validation

        Raises:
            SimulationError: If a parameter override is unknown or validation fails
        """
        self.config = config or SimulationConfig()
        self.verbose = self.config.verbose
        model = model.model_copy(deep=True)
        if parameters:
            model = model.with_parameters(parameters)
        self.model = model
        self.output_interval = self.config.output_interval or model.time.output_interval

        if self.verbose:
            self._log_model_structure()
        if not skip_validation:
            self._validate_before_simulation()

        self._cancelled = False
        self.reset()

    def _log_model_structure(self) -> None:
        """Log model structure for debugging"""
        model = self.model
        logger.info("=" * 60)
        logger.info(f"MODEL: {model.name}")
        logger.info("=" * 60)
        logger.info(f"Stocks: {len(model.stocks)}")
        for name, stock in model.stocks.items():
            logger.info(f"  - {name} = {stock.initial} (in: {stock.inflows}, out: {stock.outflows})")
        logger.info(f"Flows: {len(model.flows)}")
        for name, flow in model.flows.items():
            logger.info(f"  - {name} = {format_expression(flow.expression)}")
        logger.info(f"Auxiliaries: {len(model.auxiliaries)}")
        for name, aux in model.auxiliaries.items():
            logger.info(f"  - {name} = {format_expression(aux.expression)}")
        logger.info(f"Parameters: {model.parameters}")
        logger.info("=" * 60)

    def _validate_before_simulation(self) -> None:
        """
        Run validation before simulation

        Raises:
            SimulationError: If validation fails
        """
        result = validate_model(self.model, self.config)

        if not result.valid:
            logger.warning(f"Validation failed with {len(result.errors)} error(s):")
            for i, error in enumerate(result.errors, 1):
                logger.warning(f"  {i}. {error}")
            raise SimulationError(
                code="validation_failed",
                message=f"Model validation failed: {len(result.errors)} error(s) found. "
                "Please fix errors before running.",
                details={
                    "errors": [e.model_dump() for e in result.errors],
                    "error_count": len(result.errors),
                },
            )

        if self.verbose:
            for warning in result.warnings:
                logger.warning(f"Validation warning: {warning.message}")

    # ------------------------------------------------------------------
    # Run state
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Discard the running state and all stateful function state"""
        self.delays = DelayManager()
        self.stochastic = StochasticManager(
            seed=self.config.seed, pink_noise=self.config.pink_noise
        )
        self.resolver = StepResolver(
            delays=self.delays,
            stochastic=self.stochastic,
            strict=self.config.strict_convergence,
        )
        self.integrator: Integrator = create_integrator(self.config, self.resolver)
        self._state: Optional[SimulationState] = None
        self._cancelled = False

    @property
    def current_state(self) -> SimulationState:
        if self._state is None:
            self._state = self.resolver.initial_state(self.model)
        return self._state

    @property
    def current_time(self) -> float:
        return self.current_state.time

    def set_parameter(self, name: str, value: float) -> None:
        """
        Change a parameter between steps

        The current state is re-resolved so its auxiliaries and flows reflect
        the new value.

        Raises:
            SimulationError: If the parameter does not exist
        """
        self.model = self.model.with_parameters({name: value})
        if self._state is not None:
            self._state = self.resolver.resolve(self.model, self._state, record=True)
        logger.info(f"Parameter '{name}' set to {value}")

    def cancel(self) -> None:
        """Request cooperative cancellation; honoured between outer steps"""
        self._cancelled = True

    def step(self, dt: Optional[float] = None) -> SimulationState:
        """
        Advance the running state by one outer step

        Args:
            dt: Step size (defaults to the model's dt)

        Returns:
            The new current state
        """
        state = self.current_state
        self._state = self._advance(state, dt or self.model.time.dt)
        return self._state

    def _advance(self, state: SimulationState, dt: float) -> SimulationState:
        try:
            return self.integrator.advance(self.model, state, dt)
        except EngineError as e:
            e.details.setdefault("time", state.time)
            logger.error(f"Simulation failed at t={state.time:.6g}: {e}")
            raise

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(
        self, progress_callback: Optional[Callable[[float], None]] = None
    ) -> SimulationResults:
        """
        Run from the start time to the stop time

        Args:
            progress_callback: Optional callback(progress: 0.0-1.0)

        Returns:
            Recorded states; completed is False if the run was cancelled

        Raises:
            EngineError: Any evaluation or simulation failure, with the
                failing time in details["time"]
            SimulationError: On timeout (code "simulation_timeout")
        """
        with run_scope(f"{self.model.name}:{self.config.method}"):
            return self._run(progress_callback)

    def _run(self, progress_callback: Optional[Callable[[float], None]]) -> SimulationResults:
        cancelled = self._cancelled
        self.reset()
        self._cancelled = cancelled

        time = self.model.time
        n_steps = time.get_num_steps()
        settings = get_settings()
        report_interval = max(1, n_steps // settings.progress_report_interval)
        started = monotonic()

        logger.info(
            f"Simulation start: method={self.config.method}, t={time.start}..{time.stop}, "
            f"dt={time.dt}, steps={n_steps}"
        )

        try:
            state = self.current_state
        except EngineError as e:
            e.details.setdefault("time", time.start)
            logger.error(f"Initialization failed: {e}")
            raise

        states: List[SimulationState] = [state]
        unconverged = 0 if state.converged else 1
        completed = True

        for i in range(1, n_steps + 1):
            if self._cancelled:
                logger.info(f"Simulation cancelled at t={state.time:.6g}")
                completed = False
                break
            self._check_timeout(started, state.time)

            target = min(time.start + i * time.dt, time.stop)
            dt = time.dt if i < n_steps else time.stop - state.time
            state = self._advance(state, dt)
            if abs(state.time - target) <= _TIME_EPSILON * time.dt:
                state.time = target
            self._state = state

            if not state.converged:
                unconverged += 1
            if i == n_steps or should_record(state.time, dt, self.output_interval, time.start):
                states.append(state)

            if progress_callback and (i == n_steps or i % report_interval == 0):
                progress_callback(i / n_steps)

        if unconverged:
            logger.warning(f"Auxiliaries did not converge at {unconverged} instant(s)")
        logger.info(
            f"Simulation complete: {len(states)} states recorded in {monotonic() - started:.3f}s"
        )
        if self.verbose:
            logger.info("Final values:")
            for name, value in state.stocks.items():
                logger.info(f"  {name}: {value:.4f}")

        return SimulationResults(
            states=states,
            method=self.config.method,
            completed=completed,
            unconverged_steps=unconverged,
        )

    def _check_timeout(self, started: float, time: float) -> None:
        timeout = self.config.timeout
        if timeout is not None and monotonic() - started > timeout:
            raise SimulationError(
                code="simulation_timeout",
                message=f"Simulation exceeded timeout of {timeout} seconds at t={time:.6g}",
                details={"time": time, "timeout": timeout},
            )


# ============================================================================
# Module-level API
# ============================================================================


def run(
    model: Model,
    config: Optional[SimulationConfig] = None,
    parameters: Optional[Dict[str, float]] = None,
    progress_callback: Optional[Callable[[float], None]] = None,
) -> SimulationResults:
    """
    Run a model from start to stop

    Args:
        model: Model to simulate
        config: Simulation configuration
        parameters: Optional parameter overrides
        progress_callback: Optional callback for progress updates

    Returns:
        Recorded (time, state) sequence
    """
    return SimulationEngine(model, config, parameters).run(progress_callback)


def initial_state(
    model: Model,
    config: Optional[SimulationConfig] = None,
    resolver: Optional[StepResolver] = None,
) -> SimulationState:
    """Resolved state at the model's start time"""
    resolver = resolver or _standalone_resolver(config or SimulationConfig())
    return resolver.initial_state(model)


def step(
    model: Model,
    state: SimulationState,
    dt: float,
    config: Optional[SimulationConfig] = None,
    resolver: Optional[StepResolver] = None,
) -> SimulationState:
    """
    Advance a state by one step

    Pass the same resolver on every call to keep delay and noise state
    between steps; without one, stateful functions start fresh.

    Args:
        model: The model
        state: Current state
        dt: Step size
        config: Selects the integrator and its options
        resolver: Resolver carrying the run's stateful function state

    Returns:
        State at state.time + dt
    """
    config = config or SimulationConfig()
    resolver = resolver or _standalone_resolver(config)
    return create_integrator(config, resolver).advance(model, state, dt)


def _standalone_resolver(config: SimulationConfig) -> StepResolver:
    return StepResolver(
        stochastic=StochasticManager(seed=config.seed, pink_noise=config.pink_noise),
        strict=config.strict_convergence,
    )


def run_simulation(
    model: Model,
    config: Optional[SimulationConfig] = None,
    parameters: Optional[Dict[str, float]] = None,
    progress_callback: Optional[Callable[[float], None]] = None,
) -> SimulationResultDict:
    """
    Convenience function to run a simulation

    Returns:
        Dictionary with 'time' and 'results' keys
    """
    return run(model, config, parameters, progress_callback).to_dict()


__all__ = [
    "SimulationEngine",
    "initial_state",
    "run",
    "run_simulation",
    "should_record",
    "step",
    "validate",
]
