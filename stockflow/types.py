"""
Type definitions for the stockflow engine
Provides TypedDict hints for structured result payloads
"""

from typing import TypedDict, List, Dict


class SimulationResultDict(TypedDict):
    """
    Typed dictionary for simulation results

    Time points plus one series per recorded variable.
    """
    time: List[float]
    results: Dict[str, List[float]]


class ValidationSummaryDict(TypedDict, total=False):
    """
    Typed dictionary for validation summary

    All fields are optional to match the actual validation response structure.
    """
    valid: bool
    error_count: int
    warning_count: int
    errors_by_code: Dict[str, int]
    errors_by_element: Dict[str, int]


class VariableStatisticsDict(TypedDict):
    """
    Per-time statistics of one variable across sampled runs
    """
    mean: List[float]
    std: List[float]
    min: List[float]
    max: List[float]
    p5: List[float]
    p25: List[float]
    p50: List[float]
    p75: List[float]
    p95: List[float]


class MorrisIndicesDict(TypedDict):
    """
    Elementary-effect summary of one parameter

    mu_star (mean absolute effect) ranks influence; a large sigma relative
    to mu_star points to interactions or non-linearity.
    """
    mu: float
    mu_star: float
    sigma: float
