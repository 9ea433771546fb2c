"""
Built-in stateless functions for stockflow equations
Math functions and closed-form time functions (STEP, RAMP, PULSE)
"""

import math
from typing import Callable, Dict, Sequence

from stockflow.exceptions import DivisionByZeroError, EvaluationError


def power(base: float, exponent: float) -> float:
    """base ** exponent without complex results or silent division by zero"""
    if base == 0 and exponent < 0:
        raise DivisionByZeroError(f"Zero raised to negative power {exponent}")
    return math.pow(base, exponent)


def modulo(a: float, b: float) -> float:
    """Remainder with the sign of the dividend"""
    if b == 0:
        raise DivisionByZeroError("Modulo by zero")
    return math.fmod(a, b)


def round_half_away(x: float) -> float:
    """Round to nearest integer, halves away from zero"""
    return math.copysign(math.floor(abs(x) + 0.5), x)


def sign(x: float) -> float:
    if x > 0:
        return 1.0
    if x < 0:
        return -1.0
    return 0.0


def xidz(a: float, b: float, fallback: float) -> float:
    """a / b, or the fallback when b is zero"""
    return fallback if b == 0 else a / b


def zidz(a: float, b: float) -> float:
    """a / b, or zero when b is zero"""
    return 0.0 if b == 0 else a / b


def _ln(x: float) -> float:
    if x <= 0:
        raise ValueError(f"logarithm of non-positive value {x}")
    return math.log(x)


def _log10(x: float) -> float:
    if x <= 0:
        raise ValueError(f"logarithm of non-positive value {x}")
    return math.log10(x)


MATH_FUNCTIONS: Dict[str, Callable[..., float]] = {
    # Basic math
    "ABS": abs,
    "MIN": min,
    "MAX": max,
    "POW": power,
    "SQRT": math.sqrt,
    "EXP": math.exp,
    "LN": _ln,
    "LOG": _ln,
    "LOG10": _log10,
    "MODULO": modulo,
    "MOD": modulo,
    "SIGN": sign,
    "XIDZ": xidz,
    "ZIDZ": zidz,
    # Rounding
    "FLOOR": math.floor,
    "CEIL": math.ceil,
    "ROUND": round_half_away,
    "INTEGER": math.trunc,
    # Trigonometric
    "SIN": math.sin,
    "COS": math.cos,
    "TAN": math.tan,
    "ASIN": math.asin,
    "ACOS": math.acos,
    "ATAN": math.atan,
    "ATAN2": math.atan2,
    # Hyperbolic
    "SINH": math.sinh,
    "COSH": math.cosh,
    "TANH": math.tanh,
}


def call_math_function(name: str, args: Sequence[float]) -> float:
    """
    Apply a registered math function

    Args:
        name: Upper-cased function name from MATH_FUNCTIONS
        args: Evaluated arguments

    Returns:
        Function result as float

    Raises:
        EvaluationError: On domain errors or overflow
        DivisionByZeroError: On division or modulo by zero
    """
    try:
        return float(MATH_FUNCTIONS[name](*args))
    except ValueError as e:
        raise EvaluationError(
            code="math_domain_error",
            message=f"Math domain error in {name}(): {e}",
            details={"function": name, "arguments": list(args)},
        ) from e
    except OverflowError as e:
        raise EvaluationError(
            code="arithmetic_error",
            message=f"Numeric overflow in {name}()",
            details={"function": name, "arguments": list(args)},
        ) from e


# ============================================================================
# Time functions
# ============================================================================


def step(time: float, height: float, step_time: float) -> float:
    """STEP(height, t0): 0 before t0, height from t0 on"""
    return height if time >= step_time else 0.0


def ramp(time: float, slope: float, start: float, end: float = math.inf) -> float:
    """RAMP(slope, start[, end]): linear rise from start, held after end"""
    if time < start:
        return 0.0
    return slope * (min(time, end) - start)


def pulse(time: float, start: float, width: float, interval: float = 0.0) -> float:
    """
    PULSE(start, width[, interval])

    1.0 during [start, start + width), repeated every interval when given.
    """
    if time < start:
        return 0.0
    if interval:
        if interval < 0:
            raise EvaluationError(
                code="invalid_argument",
                message=f"PULSE interval must be positive, got {interval}",
                details={"function": "PULSE"},
            )
        return 1.0 if math.fmod(time - start, interval) < width else 0.0
    return 1.0 if time < start + width else 0.0


def pulse_train(
    time: float, start: float, width: float, interval: float, end: float
) -> float:
    """PULSE_TRAIN(start, width, interval, end): repeating pulse until end"""
    if time > end:
        return 0.0
    return pulse(time, start, width, interval)


TIME_FUNCTIONS: Dict[str, Callable[..., float]] = {
    "STEP": step,
    "RAMP": ramp,
    "PULSE": pulse,
    "PULSE_TRAIN": pulse_train,
}
