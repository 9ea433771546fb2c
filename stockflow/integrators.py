"""
Integration methods for the stockflow engine
Euler, Heun, RK4, adaptive Dormand-Prince RK45 and implicit Backward Euler
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Type

import numpy as np

from stockflow.exceptions import ConvergenceFailureError, SimulationError, UndefinedVariableError
from stockflow.models import Model, SimulationConfig, SimulationState
from stockflow.resolver import StepResolver

logger = logging.getLogger(__name__)


def compute_derivatives(model: Model, flows: Dict[str, float]) -> Dict[str, float]:
    """
    Net rate of change of every stock

    Args:
        model: The model
        flows: Resolved flow values

    Returns:
        Stock name to sum(inflows) - sum(outflows)

    Raises:
        UndefinedVariableError: If a stock names a flow that has no value
    """
    derivatives: Dict[str, float] = {}
    for name, stock in model.stocks.items():
        total = 0.0
        try:
            for flow in stock.inflows:
                total += flows[flow]
            for flow in stock.outflows:
                total -= flows[flow]
        except KeyError as e:
            raise UndefinedVariableError(
                e.args[0], message=f"Stock '{name}' references undefined flow '{e.args[0]}'"
            ).with_context(element_id=name) from e
        derivatives[name] = total
    return derivatives


class Integrator(ABC):
    """
    Advances a resolved state by one step

    Every implementation takes a state resolved at its own time and returns a
    state resolved at time + dt, with stock constraints applied and the run's
    delays advanced exactly once.
    """

    name = ""

    def __init__(self, resolver: StepResolver, config: Optional[SimulationConfig] = None):
        self.resolver = resolver
        self.config = config or SimulationConfig(method=self.name)

    @abstractmethod
    def advance(self, model: Model, state: SimulationState, dt: float) -> SimulationState:
        """Return the resolved state at state.time + dt"""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _ensure_resolved(
        self, model: Model, state: SimulationState, dt: float
    ) -> SimulationState:
        if all(name in state.flows for name in model.flows) and all(
            name in state.auxiliaries for name in model.auxiliaries
        ):
            return state
        return self.resolver.resolve(model, state, dt=dt, record=True)

    def _derivatives(self, model: Model, state: SimulationState) -> np.ndarray:
        derivatives = compute_derivatives(model, state.flows)
        return np.array([derivatives[name] for name in model.stocks], dtype=float)

    def _stocks(self, model: Model, state: SimulationState) -> np.ndarray:
        return np.array([state.stocks[name] for name in model.stocks], dtype=float)

    def _stage(
        self,
        model: Model,
        base: SimulationState,
        time: float,
        values: np.ndarray,
        dt: float,
    ) -> np.ndarray:
        """Derivatives at an intermediate point; delays are not touched"""
        stocks = dict(zip(model.stocks, values.tolist()))
        staged = self.resolver.resolve(model, base.derive(time=time, stocks=stocks), dt=dt)
        return self._derivatives(model, staged)

    def _clamp(self, model: Model, values: np.ndarray) -> np.ndarray:
        return np.array(
            [stock.clamp(v) for stock, v in zip(model.stocks.values(), values.tolist())],
            dtype=float,
        )

    def _finish(
        self,
        model: Model,
        base: SimulationState,
        time: float,
        values: np.ndarray,
        dt: float,
    ) -> SimulationState:
        """Clamp the new stocks, commit delays and resolve the new state"""
        stocks = dict(zip(model.stocks, self._clamp(model, values).tolist()))
        self.resolver.commit(dt)
        return self.resolver.resolve(
            model, base.derive(time=time, stocks=stocks), dt=dt, record=True
        )


class EulerIntegrator(Integrator):
    """Forward Euler: y1 = y0 + f(t, y0) * dt"""

    name = "euler"

    def advance(self, model: Model, state: SimulationState, dt: float) -> SimulationState:
        state = self._ensure_resolved(model, state, dt)
        y0 = self._stocks(model, state)
        k1 = self._derivatives(model, state)
        return self._finish(model, state, state.time + dt, y0 + k1 * dt, dt)


class HeunIntegrator(Integrator):
    """Heun's method: Euler predictor, trapezoidal corrector"""

    name = "heun"

    def advance(self, model: Model, state: SimulationState, dt: float) -> SimulationState:
        state = self._ensure_resolved(model, state, dt)
        t1 = state.time + dt
        y0 = self._stocks(model, state)
        k1 = self._derivatives(model, state)
        k2 = self._stage(model, state, t1, y0 + k1 * dt, dt)
        return self._finish(model, state, t1, y0 + (k1 + k2) * dt / 2, dt)


class RK4Integrator(Integrator):
    """Classic fourth-order Runge-Kutta"""

    name = "rk4"

    def advance(self, model: Model, state: SimulationState, dt: float) -> SimulationState:
        state = self._ensure_resolved(model, state, dt)
        t0 = state.time
        y0 = self._stocks(model, state)
        k1 = self._derivatives(model, state)
        k2 = self._stage(model, state, t0 + dt / 2, y0 + k1 * dt / 2, dt)
        k3 = self._stage(model, state, t0 + dt / 2, y0 + k2 * dt / 2, dt)
        k4 = self._stage(model, state, t0 + dt, y0 + k3 * dt, dt)
        y1 = y0 + (k1 + 2 * k2 + 2 * k3 + k4) * dt / 6
        return self._finish(model, state, t0 + dt, y1, dt)


class RK45Integrator(Integrator):
    """
    Adaptive Dormand-Prince 5(4)

    Covers [t, t + dt] with as many accepted sub-steps as the error control
    requires. The last accepted sub-step size carries over to the next call.
    """

    name = "rk45"

    C = (0.0, 1 / 5, 3 / 10, 4 / 5, 8 / 9, 1.0, 1.0)
    A = (
        (),
        (1 / 5,),
        (3 / 40, 9 / 40),
        (44 / 45, -56 / 15, 32 / 9),
        (19372 / 6561, -25360 / 2187, 64448 / 6561, -212 / 729),
        (9017 / 3168, -355 / 33, 46732 / 5247, 49 / 176, -5103 / 18656),
        (35 / 384, 0.0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84),
    )
    # Fifth-order weights
    B = (35 / 384, 0.0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84, 0.0)
    # Difference between fifth- and fourth-order weights
    E = (
        71 / 57600,
        0.0,
        -71 / 16695,
        71 / 1920,
        -17253 / 339200,
        22 / 525,
        -1 / 40,
    )

    MIN_FACTOR = 0.2
    MAX_FACTOR = 5.0

    def __init__(self, resolver: StepResolver, config: Optional[SimulationConfig] = None):
        super().__init__(resolver, config)
        self.options = self.config.rk45
        self._step: Optional[float] = self.options.initial_step

    def advance(self, model: Model, state: SimulationState, dt: float) -> SimulationState:
        state = self._ensure_resolved(model, state, dt)
        opts = self.options
        max_step = min(opts.max_step or dt, dt)
        min_step = min(opts.min_step, max_step)
        t_end = state.time + dt
        h = float(np.clip(self._step or dt, min_step, max_step))

        current = state
        while True:
            remaining = t_end - current.time
            if remaining <= 1e-12 * max(1.0, abs(t_end)):
                break
            last = h >= remaining
            h_try = remaining if last else h

            y0 = self._stocks(model, current)
            k: List[np.ndarray] = [self._derivatives(model, current)]
            for i in range(1, 6):
                increment = sum(a * k[j] for j, a in enumerate(self.A[i]))
                k.append(
                    self._stage(
                        model, current, current.time + self.C[i] * h_try, y0 + h_try * increment, h_try
                    )
                )
            y1 = y0 + h_try * sum(b * k[j] for j, b in enumerate(self.B[:6]))
            k.append(self._stage(model, current, current.time + h_try, y1, h_try))

            error = h_try * sum(e * k[j] for j, e in enumerate(self.E))
            scale = opts.atol + opts.rtol * np.maximum(np.abs(y0), np.abs(y1))
            err_norm = float(np.max(np.abs(error) / scale)) if len(y0) else 0.0

            if err_norm <= 1.0 or h_try <= min_step:
                if err_norm > 1.0:
                    logger.warning(
                        f"RK45 accepting step of minimum size {h_try:.3g} at "
                        f"t={current.time:.6g} with error norm {err_norm:.3g}"
                    )
                new_time = t_end if last else current.time + h_try
                current = self._finish(model, current, new_time, y1, h_try)

            if err_norm == 0.0:
                factor = self.MAX_FACTOR
            else:
                factor = min(
                    self.MAX_FACTOR,
                    max(self.MIN_FACTOR, opts.safety * err_norm ** (-1 / 5)),
                )
            proposal = float(np.clip(h_try * factor, min_step, max_step))
            # A final step truncated to land on t_end only shrinks the step size
            h = max(h, proposal) if last and proposal >= h_try else proposal

        self._step = h
        return current


class BackwardEulerIntegrator(Integrator):
    """
    Implicit Euler: solves y1 = y0 + f(t + dt, y1) * dt

    The 'fixed_point' solver iterates that map directly; the default 'newton'
    solver uses a finite-difference Jacobian so stiff systems (k*dt >> 1)
    still converge.
    """

    name = "backward_euler"

    def __init__(self, resolver: StepResolver, config: Optional[SimulationConfig] = None):
        super().__init__(resolver, config)
        self.options = self.config.backward_euler

    def advance(self, model: Model, state: SimulationState, dt: float) -> SimulationState:
        state = self._ensure_resolved(model, state, dt)
        t1 = state.time + dt
        y0 = self._stocks(model, state)
        if not len(y0):
            return self._finish(model, state, t1, y0, dt)

        # Explicit Euler step as the initial guess
        guess = self._clamp(model, y0 + self._derivatives(model, state) * dt)
        change = float("inf")
        for iteration in range(self.options.max_iterations):
            if self.options.solver == "fixed_point":
                updated = self._clamp(model, y0 + self._stage(model, state, t1, guess, dt) * dt)
            else:
                updated = self._newton_update(model, state, y0, guess, t1, dt)
            change = float(np.max(np.abs(updated - guess)))
            guess = updated
            if change < self.options.tolerance and iteration > 0:
                return self._finish(model, state, t1, guess, dt)

        raise ConvergenceFailureError(
            f"Backward Euler did not converge at t={t1:.6g} within "
            f"{self.options.max_iterations} iterations (last change {change:.3g})",
            iterations=self.options.max_iterations,
            details={"time": t1, "max_change": change},
        )

    def _newton_update(
        self,
        model: Model,
        state: SimulationState,
        y0: np.ndarray,
        guess: np.ndarray,
        t1: float,
        dt: float,
    ) -> np.ndarray:
        f = self._stage(model, state, t1, guess, dt)
        n = len(guess)
        jacobian = np.empty((n, n))
        for j in range(n):
            h = np.sqrt(np.finfo(float).eps) * max(1.0, abs(guess[j]))
            shifted = guess.copy()
            shifted[j] += h
            jacobian[:, j] = (self._stage(model, state, t1, shifted, dt) - f) / h

        residual = guess - y0 - dt * f
        try:
            delta = np.linalg.solve(np.eye(n) - dt * jacobian, -residual)
        except np.linalg.LinAlgError as e:
            raise ConvergenceFailureError(
                f"Backward Euler Jacobian is singular at t={t1:.6g}",
                iterations=0,
                details={"time": t1},
            ) from e
        return self._clamp(model, guess + delta)


INTEGRATORS: Dict[str, Type[Integrator]] = {
    "euler": EulerIntegrator,
    "heun": HeunIntegrator,
    "rk4": RK4Integrator,
    "rk45": RK45Integrator,
    "backward_euler": BackwardEulerIntegrator,
}


def create_integrator(config: SimulationConfig, resolver: StepResolver) -> Integrator:
    """
    Build the integrator named by the configuration

    Raises:
        SimulationError: If the method is not registered
    """
    integrator_class = INTEGRATORS.get(config.method)
    if integrator_class is None:
        raise SimulationError(
            code="invalid_method",
            message=f"Invalid integration method '{config.method}'. "
            f"Must be one of: {', '.join(INTEGRATORS)}",
        )
    return integrator_class(resolver, config)
