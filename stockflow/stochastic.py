"""
Stochastic functions and noise generators for the stockflow engine
One seeded numpy Generator per run; persistent noise state keyed by call site
"""

import logging
import math
from typing import Callable, Dict, List, Optional, Tuple, Union

import numpy as np

from stockflow.config import get_settings
from stockflow.exceptions import EvaluationError

logger = logging.getLogger(__name__)


def derive_seed(base_seed: Optional[int], index: int) -> Optional[int]:
    """
    Derive an independent, reproducible seed for one run of a batch

    Args:
        base_seed: Seed of the batch (None keeps every run non-deterministic)
        index: Run index within the batch

    Returns:
        Seed for the run, or None
    """
    if base_seed is None:
        return None
    state = np.random.SeedSequence([base_seed, index]).generate_state(1)
    return int(state[0])


def _invalid(function: str, message: str, **details) -> EvaluationError:
    return EvaluationError(
        code="invalid_distribution",
        message=f"{function}: {message}",
        details={"function": function, **details},
    )


# ============================================================================
# Pink noise generators
# ============================================================================


class OctavePinkNoise:
    """
    Voss-McCartney pink noise: sum of white rows refreshed at octave rates

    Row i is redrawn every 2**i samples.
    """

    def __init__(self, octaves: int = 16):
        self.octaves = octaves
        self.rows: List[float] = [0.0] * octaves
        self.counter = 0

    def sample(self, rng: np.random.Generator) -> float:
        for i in range(self.octaves):
            if self.counter % (1 << i) == 0:
                self.rows[i] = rng.random() * 2.0 - 1.0
        self.counter += 1
        return sum(self.rows) / self.octaves


class FilterPinkNoise:
    """Paul Kellet's filter cascade applied to uniform white noise"""

    def __init__(self):
        self.b = [0.0] * 7

    def sample(self, rng: np.random.Generator) -> float:
        white = rng.random() * 2.0 - 1.0
        b = self.b
        b[0] = 0.99886 * b[0] + white * 0.0555179
        b[1] = 0.99332 * b[1] + white * 0.0750759
        b[2] = 0.96900 * b[2] + white * 0.1538520
        b[3] = 0.86650 * b[3] + white * 0.3104856
        b[4] = 0.55000 * b[4] + white * 0.5329522
        b[5] = -0.7616 * b[5] - white * 0.0168980
        pink = sum(b) + white * 0.5362
        b[6] = white * 0.115926
        return pink / 7.0


PinkNoise = Union[OctavePinkNoise, FilterPinkNoise]


# ============================================================================
# Manager
# ============================================================================


class StochasticManager:
    """
    Random draws and noise state for one simulation run

    Draws are cached per call site per evaluation instant: evaluating the same
    call again at the same time (fixed-point passes, integrator stages sharing
    a time) returns the same value. A new time produces a new draw.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        pink_noise: str = "octave",
        octaves: Optional[int] = None,
    ):
        """
        Initialize the manager

        Args:
            seed: RNG seed; None draws entropy from the OS
            pink_noise: Algorithm behind PINK_NOISE ('octave' or 'filter')
            octaves: Rows of the octave generator (defaults to settings)
        """
        self.seed = seed
        self.pink_noise = pink_noise
        self.octaves = octaves or get_settings().pink_noise_octaves
        self.rng = np.random.default_rng(seed)
        self._draws: Dict[str, Tuple[float, float]] = {}
        self.generators: Dict[str, PinkNoise] = {}

    def _draw(self, key: str, time: float, sample: Callable[[], float]) -> float:
        cached = self._draws.get(key)
        if cached is not None and cached[0] == time:
            return cached[1]
        value = float(sample())
        self._draws[key] = (time, value)
        return value

    # ------------------------------------------------------------------
    # Distributions
    # ------------------------------------------------------------------

    def random(self, key: str, time: float) -> float:
        """Uniform draw in [0, 1)"""
        return self._draw(key, time, self.rng.random)

    def uniform(self, key: str, time: float, low: float, high: float) -> float:
        return self._draw(key, time, lambda: low + (high - low) * self.rng.random())

    def normal(self, key: str, time: float, mean: float, std: float) -> float:
        if std < 0:
            raise _invalid("NORMAL", f"standard deviation must be >= 0, got {std}", std=std)
        return self._draw(key, time, lambda: self.rng.normal(mean, std))

    def lognormal(self, key: str, time: float, mean: float, std: float) -> float:
        """Log-normal draw; mean and std are those of the underlying normal"""
        if std < 0:
            raise _invalid(
                "LOGNORMAL", f"standard deviation must be >= 0, got {std}", std=std
            )
        return self._draw(key, time, lambda: self.rng.lognormal(mean, std))

    def poisson(self, key: str, time: float, lam: float) -> float:
        if lam <= 0:
            raise _invalid("POISSON", f"rate must be positive, got {lam}", rate=lam)
        return self._draw(key, time, lambda: self.rng.poisson(lam))

    def exponential(self, key: str, time: float, mean: float) -> float:
        if mean <= 0:
            raise _invalid("EXPONENTIAL", f"mean must be positive, got {mean}", mean=mean)
        return self._draw(key, time, lambda: self.rng.exponential(mean))

    # ------------------------------------------------------------------
    # Noise
    # ------------------------------------------------------------------

    def white_noise(
        self, key: str, time: float, dt: float, mean: float, std: float
    ) -> float:
        """
        Gaussian white noise whose variance scales with 1/dt

        Args:
            key: Call-site identity
            time: Evaluation time
            dt: Current step size
            mean: Mean of the noise
            std: Standard deviation at dt == 1

        Returns:
            mean + std / sqrt(dt) * N(0, 1)
        """
        if std < 0:
            raise _invalid(
                "WHITE_NOISE", f"standard deviation must be >= 0, got {std}", std=std
            )
        scale = std / math.sqrt(dt)
        return self._draw(key, time, lambda: mean + scale * self.rng.standard_normal())

    def pink(
        self,
        key: str,
        time: float,
        amplitude: float,
        offset: float = 0.0,
        algorithm: Optional[str] = None,
    ) -> float:
        """
        Pink (1/f) noise with per-call-site state

        Args:
            key: Call-site identity
            time: Evaluation time; the generator advances once per new time
            amplitude: Output scale
            offset: Output offset
            algorithm: 'octave' or 'filter'; defaults to the run's choice

        Returns:
            offset + amplitude * normalized pink sample
        """
        generator = self.generators.get(key)
        if generator is None:
            algorithm = algorithm or self.pink_noise
            if algorithm == "filter":
                generator = FilterPinkNoise()
            else:
                generator = OctavePinkNoise(self.octaves)
            self.generators[key] = generator
            logger.debug(f"Created {algorithm} pink noise state '{key}'")
        sample = self._draw(key, time, lambda: generator.sample(self.rng))
        return offset + amplitude * sample
