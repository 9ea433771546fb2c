"""
Shared constants for the stockflow engine
Centralizes the function registry so the parser, evaluator and validator agree
"""

from typing import Dict, Optional, Tuple

# ============================================================================
# Built-in Variables
# ============================================================================

# Synthetic variable bound to the evaluation instant (matched case-insensitively)
TIME_VARIABLE = "TIME"

# Conditional keywords, matched case-insensitively
KEYWORDS = {"IF", "THEN", "ELSE"}

# ============================================================================
# Function Registry
# ============================================================================

# name -> (minimum arguments, maximum arguments or None when variadic)
FUNCTION_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    # Basic math
    "ABS": (1, 1),
    "MIN": (1, None),
    "MAX": (1, None),
    "POW": (2, 2),
    "SQRT": (1, 1),
    "EXP": (1, 1),
    "LN": (1, 1),
    "LOG": (1, 1),
    "LOG10": (1, 1),
    "MODULO": (2, 2),
    "MOD": (2, 2),
    "SIGN": (1, 1),
    "XIDZ": (3, 3),
    "ZIDZ": (2, 2),
    # Rounding
    "FLOOR": (1, 1),
    "CEIL": (1, 1),
    "ROUND": (1, 1),
    "INTEGER": (1, 1),
    # Trigonometric
    "SIN": (1, 1),
    "COS": (1, 1),
    "TAN": (1, 1),
    "ASIN": (1, 1),
    "ACOS": (1, 1),
    "ATAN": (1, 1),
    "ATAN2": (2, 2),
    # Hyperbolic
    "SINH": (1, 1),
    "COSH": (1, 1),
    "TANH": (1, 1),
    # Time functions
    "TIME": (0, 0),
    "STEP": (2, 2),
    "RAMP": (2, 3),
    "PULSE": (2, 3),
    "PULSE_TRAIN": (4, 4),
    "IF_THEN_ELSE": (3, 3),
    # Delays
    "DELAY1": (2, 3),
    "SMOOTH": (2, 3),
    "DELAY3": (2, 3),
    "SMOOTH3": (2, 3),
    "DELAYN": (3, 4),
    "DELAYP": (3, 3),
    "DELAY_FIXED": (3, 3),
    # Lookups
    "WITH_LOOKUP": (3, None),
    "LOOKUP": (2, 2),
    # Stochastic
    "RANDOM": (0, 0),
    "UNIFORM": (2, 2),
    "NORMAL": (2, 2),
    "LOGNORMAL": (2, 2),
    "POISSON": (1, 1),
    "EXPONENTIAL": (1, 1),
    "WHITE_NOISE": (1, 2),
    "PINK_NOISE": (1, 2),
    "PINK_NOISE_OCTAVE": (1, 2),
    "PINK_NOISE_FILTER": (1, 2),
}

# Exponential delays and their cascade order (None: order is an argument)
EXPONENTIAL_DELAYS: Dict[str, Optional[int]] = {
    "DELAY1": 1,
    "SMOOTH": 1,
    "DELAY3": 3,
    "SMOOTH3": 3,
    "DELAYN": None,
}

PIPELINE_DELAYS = {"DELAYP", "DELAY_FIXED"}

STOCHASTIC_FUNCTIONS = {
    "RANDOM",
    "UNIFORM",
    "NORMAL",
    "LOGNORMAL",
    "POISSON",
    "EXPONENTIAL",
    "WHITE_NOISE",
    "PINK_NOISE",
    "PINK_NOISE_OCTAVE",
    "PINK_NOISE_FILTER",
}

# ============================================================================
# Numerics
# ============================================================================

# Absolute tolerance for == and != in equations
EQUALITY_TOLERANCE = 1e-10

# Values strictly above this are true in conditionals
TRUTH_THRESHOLD = 0.5

# ============================================================================
# Simulation Options
# ============================================================================

VALID_INTEGRATION_METHODS = {"euler", "heun", "rk4", "rk45", "backward_euler"}
INTEGRATION_METHOD_ALIASES = {
    "rk2": "heun",
    "implicit_euler": "backward_euler",
}
PINK_NOISE_ALGORITHMS = {"octave", "filter"}


def describe_arity(name: str) -> str:
    """Human-readable accepted argument count for a registered function"""
    low, high = FUNCTION_ARITY[name]
    if high is None:
        return f"at least {low}"
    if low == high:
        return str(low)
    return f"{low}-{high}"
