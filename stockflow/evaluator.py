"""
Equation evaluator for the stockflow engine
Evaluates parsed expression trees against a model, a state and the stateful function managers
"""

from functools import lru_cache
from typing import List, Optional, Tuple
import logging
import operator

from stockflow.constants import (
    EQUALITY_TOLERANCE,
    EXPONENTIAL_DELAYS,
    FUNCTION_ARITY,
    PIPELINE_DELAYS,
    STOCHASTIC_FUNCTIONS,
    TIME_VARIABLE,
    TRUTH_THRESHOLD,
    describe_arity,
)
from stockflow.delays import DelayManager
from stockflow.exceptions import (
    DivisionByZeroError,
    EvaluationError,
    UndefinedVariableError,
    UnknownFunctionError,
    WrongArgumentCountError,
)
from stockflow.expressions import (
    BinaryOp,
    Conditional,
    Constant,
    Expression,
    FunctionCall,
    UnaryOp,
    Variable,
)
from stockflow.functions import MATH_FUNCTIONS, TIME_FUNCTIONS, call_math_function, power
from stockflow.lookup import LookupTable
from stockflow.models import Model, SimulationState
from stockflow.stochastic import StochasticManager

logger = logging.getLogger(__name__)


class EvaluationContext:
    """
    Everything an expression may read while being evaluated

    Attributes:
        model: The model (read-only)
        state: Values known so far at this instant (read-only)
        time: Evaluation instant, bound to TIME
        dt: Current step size
        delays: Delay state manager of the run
        stochastic: RNG and noise state of the run
        record_inputs: Whether delay calls record their inputs for the next advance
    """

    def __init__(
        self,
        model: Model,
        state: SimulationState,
        time: Optional[float] = None,
        dt: Optional[float] = None,
        delays: Optional[DelayManager] = None,
        stochastic: Optional[StochasticManager] = None,
        record_inputs: bool = False,
    ):
        self.model = model
        self.state = state
        self.time = state.time if time is None else time
        self.dt = model.time.dt if dt is None else dt
        self.delays = delays if delays is not None else DelayManager()
        self.stochastic = stochastic if stochastic is not None else StochasticManager()
        self.record_inputs = record_inputs

    def get_variable(self, name: str) -> float:
        """
        Resolve a name: TIME, then parameter, stock, flow, auxiliary

        Raises:
            UndefinedVariableError: If the name has no value at this point
        """
        if name.upper() == TIME_VARIABLE:
            return self.time
        parameters = self.model.parameters
        if name in parameters:
            return parameters[name]
        state = self.state
        if name in state.stocks:
            return state.stocks[name]
        if name in state.flows:
            return state.flows[name]
        if name in state.auxiliaries:
            return state.auxiliaries[name]
        raise UndefinedVariableError(name)


@lru_cache(maxsize=256)
def _inline_table(points: Tuple[float, ...]) -> LookupTable:
    return LookupTable.from_flat(points)


class EquationEvaluator:
    """
    Evaluate expression trees

    Supports:
    - Arithmetic (+, -, *, /, ^) with division by zero reported as an error
    - Comparisons (<, <=, >, >=, ==, !=) returning 1.0 or 0.0
    - IF ... THEN ... ELSE and IF_THEN_ELSE with lazy branches
    - The registered math, time, delay, lookup and stochastic functions
    """

    BINARY_OPERATORS = {
        "+": operator.add,
        "-": operator.sub,
        "*": operator.mul,
    }

    COMPARISONS = {
        ">": operator.gt,
        "<": operator.lt,
        ">=": operator.ge,
        "<=": operator.le,
    }

    def evaluate(self, expr: Expression, context: EvaluationContext) -> float:
        """
        Evaluate an expression to a number

        Args:
            expr: Parsed expression
            context: Evaluation context

        Returns:
            Result value

        Raises:
            EvaluationError: If evaluation fails
        """
        return self.eval_node(expr, context)

    def eval_node(self, node: Expression, context: EvaluationContext) -> float:
        if isinstance(node, Constant):
            return node.value

        if isinstance(node, Variable):
            return context.get_variable(node.name)

        if isinstance(node, BinaryOp):
            return self._eval_binop(node, context)

        if isinstance(node, UnaryOp):
            operand = self.eval_node(node.operand, context)
            if node.op == "-":
                return -operand
            raise EvaluationError(
                code="unsupported_unary_operator",
                message=f"Unsupported unary operator: {node.op}",
            )

        if isinstance(node, Conditional):
            if self.eval_node(node.condition, context) > TRUTH_THRESHOLD:
                return self.eval_node(node.then_branch, context)
            return self.eval_node(node.else_branch, context)

        if isinstance(node, FunctionCall):
            return self._eval_call(node, context)

        raise EvaluationError(
            code="unsupported_node_type",
            message=f"Unsupported expression type: {type(node).__name__}",
        )

    def _eval_binop(self, node: BinaryOp, context: EvaluationContext) -> float:
        """Evaluate binary operation"""
        left = self.eval_node(node.left, context)
        right = self.eval_node(node.right, context)
        op = node.op

        if op in self.BINARY_OPERATORS:
            return self.BINARY_OPERATORS[op](left, right)

        if op == "/":
            if right == 0:
                raise DivisionByZeroError(f"Division by zero: {left} / 0")
            return left / right

        if op == "^":
            try:
                return power(left, right)
            except ValueError as e:
                raise EvaluationError(
                    code="math_domain_error",
                    message=f"Math domain error: {left} ^ {right}",
                ) from e
            except OverflowError as e:
                raise EvaluationError(
                    code="arithmetic_error",
                    message=f"Numeric overflow: {left} ^ {right}",
                ) from e

        if op in self.COMPARISONS:
            return 1.0 if self.COMPARISONS[op](left, right) else 0.0
        if op == "==":
            return 1.0 if abs(left - right) < EQUALITY_TOLERANCE else 0.0
        if op == "!=":
            return 1.0 if abs(left - right) >= EQUALITY_TOLERANCE else 0.0

        raise EvaluationError(
            code="unsupported_operator", message=f"Unsupported operator: {op}"
        )

    def _eval_call(self, node: FunctionCall, context: EvaluationContext) -> float:
        """Evaluate function call"""
        name = node.name
        if name not in FUNCTION_ARITY:
            raise UnknownFunctionError(name)
        low, high = FUNCTION_ARITY[name]
        if len(node.args) < low or (high is not None and len(node.args) > high):
            raise WrongArgumentCountError(name, describe_arity(name), len(node.args))

        # Functions that must not evaluate every argument eagerly
        if name == "IF_THEN_ELSE":
            condition, then_branch, else_branch = node.args
            if self.eval_node(condition, context) > TRUTH_THRESHOLD:
                return self.eval_node(then_branch, context)
            return self.eval_node(else_branch, context)
        if name == "LOOKUP":
            return self._eval_lookup(node, context)

        args = [self.eval_node(arg, context) for arg in node.args]

        if name in MATH_FUNCTIONS:
            return call_math_function(name, args)
        if name == "TIME":
            return context.time
        if name in TIME_FUNCTIONS:
            return TIME_FUNCTIONS[name](context.time, *args)
        if name in EXPONENTIAL_DELAYS:
            return self._eval_exponential_delay(node, args, context)
        if name in PIPELINE_DELAYS:
            return self._eval_pipeline_delay(node, args, context)
        if name == "WITH_LOOKUP":
            return self._eval_with_lookup(args)
        if name in STOCHASTIC_FUNCTIONS:
            return self._eval_stochastic(node, args, context)

        raise UnknownFunctionError(name)

    # ------------------------------------------------------------------
    # Delays
    # ------------------------------------------------------------------

    def _eval_exponential_delay(
        self, node: FunctionCall, args: List[float], context: EvaluationContext
    ) -> float:
        """Evaluate DELAY1/SMOOTH/DELAY3/SMOOTH3(input, delay[, init]) and DELAYN(input, delay, n[, init])"""
        order = EXPONENTIAL_DELAYS[node.name]
        if order is None:
            input_value, delay_time, n = args[:3]
            order = int(round(n))
            initial = args[3] if len(args) > 3 else None
        else:
            input_value, delay_time = args[:2]
            initial = args[2] if len(args) > 2 else None
        return context.delays.exponential_delay(
            node.site,
            input_value,
            delay_time,
            order,
            initial=initial,
            record=context.record_inputs,
            function=node.name,
        )

    def _eval_pipeline_delay(
        self, node: FunctionCall, args: List[float], context: EvaluationContext
    ) -> float:
        """Evaluate DELAYP(input, delay, init)"""
        input_value, delay_time, initial = args
        return context.delays.pipeline_delay(
            node.site,
            input_value,
            delay_time,
            initial,
            context.time,
            record=context.record_inputs,
            function=node.name,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _eval_with_lookup(self, args: List[float]) -> float:
        """Evaluate WITH_LOOKUP(x, x1, y1, x2, y2, ...)"""
        if len(args) % 2 == 0:
            raise WrongArgumentCountError("WITH_LOOKUP", "an odd number (at least 3)", len(args))
        return _inline_table(tuple(args[1:])).lookup(args[0])

    def _eval_lookup(self, node: FunctionCall, context: EvaluationContext) -> float:
        """Evaluate LOOKUP(x, table_name) against the model's named tables"""
        table_ref = node.args[1]
        if not isinstance(table_ref, Variable):
            raise EvaluationError(
                code="invalid_lookup_table_reference",
                message="LOOKUP table must be specified as a table name",
            )
        table = self._find_lookup_table(table_ref.name, context.model)
        return table.lookup(self.eval_node(node.args[0], context))

    def _find_lookup_table(self, table_name: str, model: Model) -> LookupTable:
        """Find lookup table by name"""
        if table_name in model.lookups:
            return model.lookups[table_name]

        # Try case-insensitive match
        for key, table in model.lookups.items():
            if key.lower() == table_name.lower():
                return table

        raise EvaluationError(
            code="undefined_lookup",
            message=f"Lookup table '{table_name}' not found. "
            f"Available tables: {list(model.lookups)}",
            details={"name": table_name},
        )

    # ------------------------------------------------------------------
    # Stochastic
    # ------------------------------------------------------------------

    def _eval_stochastic(
        self, node: FunctionCall, args: List[float], context: EvaluationContext
    ) -> float:
        rng = context.stochastic
        key, time = node.site, context.time
        name = node.name

        if name == "RANDOM":
            return rng.random(key, time)
        if name == "UNIFORM":
            return rng.uniform(key, time, *args)
        if name == "NORMAL":
            return rng.normal(key, time, *args)
        if name == "LOGNORMAL":
            return rng.lognormal(key, time, *args)
        if name == "POISSON":
            return rng.poisson(key, time, args[0])
        if name == "EXPONENTIAL":
            return rng.exponential(key, time, args[0])
        if name == "WHITE_NOISE":
            mean, std = (0.0, args[0]) if len(args) == 1 else args
            return rng.white_noise(key, time, context.dt, mean, std)

        # Pink noise
        amplitude = args[0]
        offset = args[1] if len(args) > 1 else 0.0
        algorithm = {"PINK_NOISE_OCTAVE": "octave", "PINK_NOISE_FILTER": "filter"}.get(name)
        return rng.pink(key, time, amplitude, offset, algorithm=algorithm)


_evaluator = EquationEvaluator()


def evaluate(expr: Expression, context: EvaluationContext) -> float:
    """Evaluate an expression with the shared evaluator"""
    return _evaluator.evaluate(expr, context)
