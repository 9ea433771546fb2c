"""
Step resolver for the stockflow engine
Resolves auxiliaries by fixed-point iteration, then flows, for one instant
"""

import logging
from typing import Dict, List, Optional, Set

from stockflow.config import get_settings
from stockflow.delays import DelayManager
from stockflow.evaluator import EquationEvaluator, EvaluationContext
from stockflow.exceptions import (
    ConvergenceFailureError,
    EvaluationError,
    UndefinedVariableError,
)
from stockflow.expressions import extract_variable_references
from stockflow.models import Model, SimulationState
from stockflow.stochastic import StochasticManager

logger = logging.getLogger(__name__)


def evaluation_order(model: Model) -> List[str]:
    """
    Auxiliary names ordered so each comes after the auxiliaries it reads

    Kahn's algorithm over auxiliary-to-auxiliary references; names caught in
    a cycle are appended in declaration order and left to the fixed-point
    passes.
    """
    auxiliaries = model.auxiliaries
    dependencies: Dict[str, Set[str]] = {
        name: {
            ref
            for ref in extract_variable_references(aux.expression)
            if ref in auxiliaries and ref not in model.parameters
        }
        for name, aux in auxiliaries.items()
    }
    in_degree = {name: len(deps) for name, deps in dependencies.items()}
    dependents: Dict[str, List[str]] = {name: [] for name in auxiliaries}
    for name, deps in dependencies.items():
        for dep in deps:
            dependents[dep].append(name)

    queue = [name for name, degree in in_degree.items() if degree == 0]
    order: List[str] = []
    while queue:
        name = queue.pop(0)
        order.append(name)
        for dependent in dependents[name]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) < len(auxiliaries):
        placed = set(order)
        order.extend(name for name in auxiliaries if name not in placed)
    return order


class StepResolver:
    """
    Produces fully resolved states for one run

    Owns the run's delay and stochastic managers so their state persists
    across steps. Auxiliaries may reference each other in any order and are
    iterated until their values stop moving; flows are evaluated once after.
    """

    def __init__(
        self,
        delays: Optional[DelayManager] = None,
        stochastic: Optional[StochasticManager] = None,
        max_passes: Optional[int] = None,
        grace_passes: Optional[int] = None,
        tolerance: Optional[float] = None,
        strict: Optional[bool] = None,
        evaluator: Optional[EquationEvaluator] = None,
    ):
        """
        Initialize resolver

        Args:
            delays: Delay manager (a fresh one when omitted)
            stochastic: Stochastic manager (a fresh unseeded one when omitted)
            max_passes: Auxiliary pass limit
            grace_passes: Passes during which evaluation errors are retried
            tolerance: Largest change still counted as converged
            strict: Raise instead of warn when the pass limit is reached
            evaluator: Expression evaluator

        Unset numeric options come from settings.
        """
        settings = get_settings()
        self.delays = delays if delays is not None else DelayManager()
        self.stochastic = stochastic if stochastic is not None else StochasticManager()
        self.max_passes = max_passes or settings.max_aux_passes
        self.grace_passes = (
            settings.aux_error_grace_passes if grace_passes is None else grace_passes
        )
        self.tolerance = (
            settings.aux_convergence_tolerance if tolerance is None else tolerance
        )
        self.strict = settings.strict_convergence if strict is None else strict
        self.evaluator = evaluator or EquationEvaluator()
        self._ordered_model: Optional[Model] = None
        self._order: List[str] = []

    def auxiliary_order(self, model: Model) -> List[str]:
        """Evaluation order for the model's auxiliaries, recomputed when the model changes"""
        if model is not self._ordered_model:
            self._order = evaluation_order(model)
            self._ordered_model = model
        return self._order

    def context(
        self,
        model: Model,
        state: SimulationState,
        dt: Optional[float] = None,
        record: bool = False,
    ) -> EvaluationContext:
        return EvaluationContext(
            model,
            state,
            time=state.time,
            dt=dt,
            delays=self.delays,
            stochastic=self.stochastic,
            record_inputs=record,
        )

    def resolve(
        self,
        model: Model,
        state: SimulationState,
        time: Optional[float] = None,
        dt: Optional[float] = None,
        record: bool = False,
    ) -> SimulationState:
        """
        Resolve auxiliaries and flows for the stocks of a state

        Args:
            model: The model
            state: State whose stock values are authoritative; its flow and
                auxiliary values seed the iteration (missing ones start at 0)
            time: Instant to resolve at (defaults to state.time)
            dt: Step size seen by dt-dependent functions
            record: Let delays record their inputs (committed states only)

        Returns:
            New state with auxiliaries and flows filled in

        Raises:
            EvaluationError: If an auxiliary fails past the grace passes or a
                flow fails at all
            ConvergenceFailureError: If strict and the pass limit is reached
        """
        resolved = state.derive(time=time)
        for name in model.flows:
            resolved.flows.setdefault(name, 0.0)
        for name in model.auxiliaries:
            resolved.auxiliaries.setdefault(name, 0.0)
        context = self.context(model, resolved, dt=dt, record=record)
        try:
            resolved.converged = self._resolve_auxiliaries(model, resolved, context)
            self._resolve_flows(model, resolved, context)
        except EvaluationError as e:
            e.details.setdefault("time", resolved.time)
            raise
        return resolved

    def _resolve_auxiliaries(
        self, model: Model, state: SimulationState, context: EvaluationContext
    ) -> bool:
        auxiliaries = model.auxiliaries
        if not auxiliaries:
            return True

        # Updated in place: later auxiliaries see values computed earlier in the pass
        values = state.auxiliaries
        failures: List[EvaluationError] = []
        for pass_index in range(self.max_passes):
            previous: Dict[str, float] = dict(values)
            changed = False
            failures = []
            for name in self.auxiliary_order(model):
                aux = auxiliaries[name]
                try:
                    value = self.evaluator.evaluate(aux.expression, context)
                except EvaluationError as e:
                    e.with_context(name, aux.equation)
                    if pass_index >= self.grace_passes:
                        raise
                    failures.append(e)
                    continue
                old = previous.get(name)
                if old is None or abs(value - old) > self.tolerance:
                    changed = True
                values[name] = value

            if failures:
                logger.debug(
                    f"Pass {pass_index} at t={context.time}: "
                    f"{len(failures)} auxiliaries not yet resolvable"
                )
            elif not changed and pass_index > 0:
                return True

        if failures:
            raise failures[0]

        message = (
            f"Auxiliaries did not converge within {self.max_passes} passes "
            f"at t={context.time:.6g}"
        )
        if self.strict:
            raise ConvergenceFailureError(
                message,
                iterations=self.max_passes,
                code="auxiliary_convergence_failure",
                details={"time": context.time},
            )
        logger.warning(message)
        return False

    def _resolve_flows(
        self, model: Model, state: SimulationState, context: EvaluationContext
    ) -> None:
        for name, flow in model.flows.items():
            try:
                state.flows[name] = self.evaluator.evaluate(flow.expression, context)
            except EvaluationError as e:
                raise e.with_context(name, flow.equation)

    def commit(self, dt: float) -> None:
        """Advance stateful functions past an accepted step of size dt"""
        self.delays.advance(dt)

    def initial_state(self, model: Model) -> SimulationState:
        """
        Build the resolved state at the model's start time

        Stock initial equations may reference parameters and other stocks;
        they are evaluated in repeated passes until all are known.

        Raises:
            EvaluationError: If an initial value cannot be computed
        """
        state = SimulationState(time=model.time.start)
        context = self.context(model, state)
        pending = dict(model.stocks)
        while pending:
            progressed = False
            last_error: Optional[EvaluationError] = None
            for name, stock in list(pending.items()):
                try:
                    value = self.evaluator.evaluate(stock.initial_expression, context)
                except UndefinedVariableError as e:
                    last_error = e.with_context(name, stock.initial)
                    continue
                except EvaluationError as e:
                    raise e.with_context(name, stock.initial)
                state.stocks[name] = value
                del pending[name]
                progressed = True
            if not progressed:
                raise last_error
        return self.resolve(model, state, record=True)
