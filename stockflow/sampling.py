"""
Outer drivers for the stockflow engine
Parameter sweeps, Monte Carlo, Latin hypercube and Morris sampling over repeated runs
"""

import logging
from concurrent.futures import ProcessPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, model_validator
from scipy.stats import qmc

from stockflow.models import Model, SimulationConfig, SimulationResults
from stockflow.simulation import SimulationEngine
from stockflow.stochastic import derive_seed
from stockflow.types import MorrisIndicesDict, VariableStatisticsDict

logger = logging.getLogger(__name__)

PERCENTILES = (5, 25, 50, 75, 95)


class ParameterRange(BaseModel):
    """Closed interval a parameter is sampled from"""

    name: str
    low: float
    high: float

    @model_validator(mode="after")
    def validate_bounds(self) -> "ParameterRange":
        if self.high < self.low:
            raise ValueError(
                f"Parameter range for '{self.name}' has high ({self.high}) below low ({self.low})"
            )
        return self


class SampledRun:
    """One run of a batch: its index, the parameters it used and its results"""

    def __init__(self, index: int, parameters: Dict[str, float], results: SimulationResults):
        self.index = index
        self.parameters = parameters
        self.results = results


class SamplingResults:
    """
    Results of a batch of runs over the same time grid

    Attributes:
        runs: Runs in index order
    """

    def __init__(self, runs: List[SampledRun]):
        self.runs = runs

    def __len__(self) -> int:
        return len(self.runs)

    @property
    def times(self) -> List[float]:
        return self.runs[0].results.times if self.runs else []

    def matrix(self, name: str) -> np.ndarray:
        """Series of one variable stacked as (run, time)"""
        return np.vstack([run.results.series(name) for run in self.runs])

    def statistics(self, name: str) -> VariableStatisticsDict:
        """
        Per-time statistics of a variable across all runs

        Raises:
            KeyError: If the variable was not recorded
        """
        data = self.matrix(name)
        percentiles = np.percentile(data, PERCENTILES, axis=0)
        return {
            "mean": np.mean(data, axis=0).tolist(),
            "std": np.std(data, axis=0).tolist(),
            "min": np.min(data, axis=0).tolist(),
            "max": np.max(data, axis=0).tolist(),
            "p5": percentiles[0].tolist(),
            "p25": percentiles[1].tolist(),
            "p50": percentiles[2].tolist(),
            "p75": percentiles[3].tolist(),
            "p95": percentiles[4].tolist(),
        }

    def summary(self) -> Dict[str, VariableStatisticsDict]:
        if not self.runs:
            return {}
        return {
            name: self.statistics(name) for name in self.runs[0].results.variable_names()
        }


def _run_one(
    job: Tuple[Model, SimulationConfig, Dict[str, float]]
) -> SimulationResults:
    model, config, parameters = job
    return SimulationEngine(model, config, parameters).run()


def _run_batch(
    model: Model,
    config: Optional[SimulationConfig],
    parameter_sets: Sequence[Dict[str, float]],
    base_seed: Optional[int],
    max_workers: Optional[int],
) -> SamplingResults:
    config = config or SimulationConfig()
    if base_seed is None:
        base_seed = config.seed
    jobs = [
        (model, config.model_copy(update={"seed": derive_seed(base_seed, index)}), parameters)
        for index, parameters in enumerate(parameter_sets)
    ]
    logger.info(f"Running batch of {len(jobs)} simulations (max_workers={max_workers})")

    if max_workers and max_workers > 1:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(_run_one, jobs))
    else:
        results = [_run_one(job) for job in jobs]

    return SamplingResults(
        [
            SampledRun(index, parameters, result)
            for index, (parameters, result) in enumerate(zip(parameter_sets, results))
        ]
    )


def _check_ranges(model: Model, ranges: Sequence[ParameterRange]) -> None:
    # Unknown names fail here rather than once per run
    model.with_parameters({r.name: r.low for r in ranges})


def parameter_sweep(
    model: Model,
    config: Optional[SimulationConfig],
    name: str,
    values: Sequence[float],
    max_workers: Optional[int] = None,
) -> SamplingResults:
    """
    Run the model once per value of a single parameter

    Args:
        model: Model to run (never modified)
        config: Simulation configuration shared by all runs
        name: Parameter to vary
        values: Values to run with, in order
        max_workers: Run in a process pool of this size

    Returns:
        One run per value
    """
    if len(values):
        model.with_parameters({name: values[0]})
    return _run_batch(
        model, config, [{name: float(v)} for v in values], None, max_workers
    )


def monte_carlo(
    model: Model,
    config: Optional[SimulationConfig],
    ranges: Sequence[ParameterRange],
    n_runs: int,
    seed: Optional[int] = None,
    max_workers: Optional[int] = None,
) -> SamplingResults:
    """
    Run the model with parameters drawn uniformly from their ranges

    Args:
        model: Model to run (never modified)
        config: Simulation configuration shared by all runs
        ranges: Parameters to sample
        n_runs: Number of runs
        seed: Seed for the parameter draws and the per-run seeds
        max_workers: Run in a process pool of this size

    Returns:
        One run per sample; use statistics() for cross-run summaries
    """
    _check_ranges(model, ranges)
    rng = np.random.default_rng(seed)
    parameter_sets = [
        {r.name: float(rng.uniform(r.low, r.high)) for r in ranges} for _ in range(n_runs)
    ]
    return _run_batch(model, config, parameter_sets, seed, max_workers)


def latin_hypercube(
    model: Model,
    config: Optional[SimulationConfig],
    ranges: Sequence[ParameterRange],
    n_samples: int,
    seed: Optional[int] = None,
    max_workers: Optional[int] = None,
) -> SamplingResults:
    """
    Run the model over a Latin hypercube design of the parameter ranges

    Every range is split into n_samples equal strata and each stratum is
    used exactly once per parameter.

    Args:
        model: Model to run (never modified)
        config: Simulation configuration shared by all runs
        ranges: Parameters to sample
        n_samples: Number of design points
        seed: Seed for the design and the per-run seeds
        max_workers: Run in a process pool of this size
    """
    _check_ranges(model, ranges)
    sampler = qmc.LatinHypercube(d=len(ranges), seed=seed)
    unit = sampler.random(n=n_samples)
    lows = [r.low for r in ranges]
    highs = [r.high for r in ranges]
    # qmc.scale rejects equal bounds; degenerate ranges are pinned afterwards
    pinned = [i for i, r in enumerate(ranges) if r.high == r.low]
    for i in pinned:
        highs[i] = lows[i] + 1.0
    design = qmc.scale(unit, lows, highs)
    for i in pinned:
        design[:, i] = lows[i]

    parameter_sets = [
        {r.name: float(row[i]) for i, r in enumerate(ranges)} for row in design
    ]
    return _run_batch(model, config, parameter_sets, seed, max_workers)


# ============================================================================
# Morris screening
# ============================================================================


class MorrisDesign:
    """
    One-at-a-time trajectories on a unit grid

    Attributes:
        points: Unit coordinates shaped (trajectory, point, parameter); each
            trajectory has one more point than there are parameters
        order: Parameter moved between point j and j + 1, shaped (trajectory, parameter)
        steps: Signed unit step of that move, shaped like order
    """

    def __init__(self, points: np.ndarray, order: np.ndarray, steps: np.ndarray):
        self.points = points
        self.order = order
        self.steps = steps

    @property
    def n_trajectories(self) -> int:
        return self.points.shape[0]

    def parameter_sets(self, ranges: Sequence[ParameterRange]) -> List[Dict[str, float]]:
        lows = np.array([r.low for r in ranges])
        spans = np.array([r.high - r.low for r in ranges])
        values = lows + self.points.reshape(-1, len(ranges)) * spans
        return [{r.name: float(row[i]) for i, r in enumerate(ranges)} for row in values]


def morris_design(
    n_params: int, n_trajectories: int, levels: int, rng: np.random.Generator
) -> MorrisDesign:
    """
    Draw Morris trajectories

    Each trajectory starts at a random grid point and moves every parameter
    once, in random order, by levels // 2 grid steps up or down (whichever
    stays on the grid when the random direction would leave it).

    Raises:
        ValueError: If levels < 2 or n_trajectories < 1
    """
    if levels < 2:
        raise ValueError(f"Morris design needs at least 2 levels, got {levels}")
    if n_trajectories < 1:
        raise ValueError(f"Morris design needs at least 1 trajectory, got {n_trajectories}")

    jump = levels // 2
    grid = np.zeros((n_trajectories, n_params + 1, n_params), dtype=int)
    order = np.zeros((n_trajectories, n_params), dtype=int)
    steps = np.zeros((n_trajectories, n_params), dtype=int)

    for t in range(n_trajectories):
        current = rng.integers(0, levels, size=n_params)
        grid[t, 0] = current
        order[t] = rng.permutation(n_params)
        for j, i in enumerate(order[t]):
            step = jump if rng.random() < 0.5 else -jump
            if not 0 <= current[i] + step <= levels - 1:
                step = -step
            current = current.copy()
            current[i] += step
            grid[t, j + 1] = current
            steps[t, j] = step

    scale = levels - 1
    return MorrisDesign(grid / scale, order, steps / scale)


class MorrisResults(SamplingResults):
    """
    Runs of a Morris design, in trajectory order

    Elementary effects are measured on the final value of an output variable
    and expressed per unit of the normalized parameter range, so effects of
    parameters with different units are comparable.
    """

    def __init__(
        self, runs: List[SampledRun], ranges: Sequence[ParameterRange], design: MorrisDesign
    ):
        super().__init__(runs)
        self.ranges = list(ranges)
        self.design = design

    def elementary_effects(self, name: str) -> Dict[str, np.ndarray]:
        """One effect per trajectory for every parameter"""
        n_params = len(self.ranges)
        finals = np.array([run.results.series(name)[-1] for run in self.runs])
        finals = finals.reshape(self.design.n_trajectories, n_params + 1)
        per_move = np.diff(finals, axis=1) / self.design.steps

        effects = np.empty_like(per_move)
        rows = np.arange(self.design.n_trajectories)[:, None]
        effects[rows, self.design.order] = per_move
        return {r.name: effects[:, i] for i, r in enumerate(self.ranges)}

    def morris_indices(self, name: str) -> Dict[str, MorrisIndicesDict]:
        """
        mu, mu* and sigma of the elementary effects on a variable

        Raises:
            KeyError: If the variable was not recorded
        """
        return {
            parameter: {
                "mu": float(np.mean(values)),
                "mu_star": float(np.mean(np.abs(values))),
                "sigma": float(np.std(values)),
            }
            for parameter, values in self.elementary_effects(name).items()
        }


def morris_screening(
    model: Model,
    config: Optional[SimulationConfig],
    ranges: Sequence[ParameterRange],
    n_trajectories: int,
    levels: int = 4,
    seed: Optional[int] = None,
    max_workers: Optional[int] = None,
) -> MorrisResults:
    """
    Screen parameters by Morris elementary effects

    Runs n_trajectories * (len(ranges) + 1) simulations; each run gets its
    own seed derived from seed and the run index.

    Args:
        model: Model to run (never modified)
        config: Simulation configuration shared by all runs
        ranges: Parameters to screen
        n_trajectories: Number of one-at-a-time trajectories
        levels: Grid levels per parameter
        seed: Seed for the design and the per-run seeds
        max_workers: Run in a process pool of this size

    Returns:
        Runs plus the design; use morris_indices() to rank parameters
    """
    _check_ranges(model, ranges)
    design = morris_design(len(ranges), n_trajectories, levels, np.random.default_rng(seed))
    batch = _run_batch(model, config, design.parameter_sets(ranges), seed, max_workers)
    logger.info(
        f"Morris screening: {n_trajectories} trajectories over {len(ranges)} parameters"
    )
    return MorrisResults(batch.runs, ranges, design)
