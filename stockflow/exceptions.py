"""
Error types for the stockflow engine
Validation findings are plain records; parse, evaluation and run failures are exceptions carrying a code
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel


def _describe(code: str, message: str, **labels: Optional[str]) -> str:
    parts = [f"[{code}] {message}"]
    parts.extend(f"{label}: {value}" for label, value in labels.items() if value)
    return " | ".join(parts)


class ValidationError(BaseModel):
    """
    One validation finding (error or warning) for a model

    element_id names the stock, flow or auxiliary at fault; field is the
    attribute on it (equation, initial, inflows, ...). suggestion carries a
    close-match name for undefined references; context holds any extra data
    such as the cycle path.
    """

    code: str
    message: str
    element_id: Optional[str] = None
    field: Optional[str] = None
    suggestion: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return _describe(
            self.code,
            self.message,
            Element=self.element_id,
            Field=self.field,
            Suggestion=self.suggestion,
        )


class EngineError(Exception):
    """
    Base class for every error raised by the engine

    Carries a machine-readable code and a details dict that callers may
    extend (the run loop adds the failing time).
    """

    def __init__(
        self, code: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """{code, message, details} body for API responses"""
        return {"code": self.code, "message": self.message, "details": dict(self.details)}

    def __str__(self) -> str:
        return _describe(self.code, self.message)


# ============================================================================
# Equation errors
# ============================================================================


class EvaluationError(EngineError):
    """
    Failure while parsing or evaluating an equation

    element_id and equation are filled in by whoever knows them; the parser
    knows only the text, the resolver knows the owning element.
    """

    def __init__(
        self,
        code: str,
        message: str,
        element_id: Optional[str] = None,
        equation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.element_id = element_id
        self.equation = equation
        super().__init__(code=code, message=message, details=details)

    def with_context(
        self, element_id: Optional[str] = None, equation: Optional[str] = None
    ) -> "EvaluationError":
        """Attach the failing element and equation unless already known"""
        if self.element_id is None:
            self.element_id = element_id
        if self.equation is None:
            self.equation = equation
        return self

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        for key in ("element_id", "equation"):
            value = getattr(self, key)
            if value:
                result["details"][key] = value
        return result

    def __str__(self) -> str:
        return _describe(self.code, self.message, Element=self.element_id, Equation=self.equation)


class EquationSyntaxError(EvaluationError):
    """
    Malformed equation text

    Attributes:
        position: Character offset where parsing failed
    """

    def __init__(self, message: str, position: int, equation: Optional[str] = None):
        self.position = position
        super().__init__(
            code="syntax_error",
            message=message,
            equation=equation,
            details={"position": position},
        )


class UndefinedVariableError(EvaluationError):
    """Reference to a name that is not a parameter, stock, flow or auxiliary"""

    def __init__(self, name: str, message: Optional[str] = None):
        self.name = name
        super().__init__(
            code="undefined_variable",
            message=message or f"Undefined variable: '{name}'",
            details={"name": name},
        )


class UnknownFunctionError(EvaluationError):
    """Call to a function name that is not in the registry"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            code="unknown_function",
            message=f"Unknown function: '{name}'",
            details={"function": name},
        )


class WrongArgumentCountError(EvaluationError):
    """
    Function called with an unsupported number of arguments

    Attributes:
        function: Function name
        expected: Human-readable accepted arity, e.g. "2" or "2-3"
        got: Number of arguments supplied
    """

    def __init__(self, function: str, expected: str, got: int):
        self.function = function
        self.expected = expected
        self.got = got
        super().__init__(
            code="wrong_argument_count",
            message=f"{function}() expects {expected} argument(s), got {got}",
            details={"function": function, "expected": expected, "got": got},
        )


class DivisionByZeroError(EvaluationError):
    """Division or modulo by zero"""

    def __init__(self, message: str = "Division by zero"):
        super().__init__(code="division_by_zero", message=message)


class UnsortedLookupPointsError(EvaluationError):
    """Lookup table x-coordinates are not strictly ascending"""

    def __init__(self, message: str, index: Optional[int] = None):
        self.index = index
        super().__init__(
            code="unsorted_lookup_points",
            message=message,
            details={"index": index} if index is not None else None,
        )


class LookupTooLargeError(EvaluationError):
    """Inline lookup table with more points than max_lookup_table_points"""

    def __init__(self, points: int, limit: int):
        super().__init__(
            code="lookup_too_large",
            message=f"Lookup table has {points} points, exceeding maximum of {limit}",
            details={"points": points, "limit": limit},
        )


# ============================================================================
# Simulation errors
# ============================================================================


class SimulationError(EngineError):
    """Exception raised during simulation execution"""


class ConvergenceFailureError(SimulationError):
    """
    An iterative solve did not converge

    Raised by the implicit integrator when its iteration limit is exhausted and
    by the step resolver when strict convergence is requested.

    Attributes:
        iterations: Number of iterations/passes performed
    """

    def __init__(
        self,
        message: str,
        iterations: int,
        code: str = "convergence_failure",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.iterations = iterations
        super().__init__(
            code=code,
            message=message,
            details={**(details or {}), "iterations": iterations},
        )
