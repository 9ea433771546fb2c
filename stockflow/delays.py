"""
Delay state management for the stockflow engine
Exponential (material/information) delays and fixed pipeline delays keyed by call site
"""

import logging
from bisect import bisect_right
from typing import Dict, List, Optional, Tuple

from stockflow.exceptions import EvaluationError

logger = logging.getLogger(__name__)


def _check_delay_time(delay_time: float, function: str) -> None:
    if delay_time <= 0:
        raise EvaluationError(
            code="invalid_delay_time",
            message=f"{function} delay time must be positive, got {delay_time}",
            details={"function": function, "delay_time": delay_time},
        )


class ExponentialDelay:
    """
    Cascade of first-order delays (DELAY1/SMOOTH for one stage, DELAY3 for three)

    Each stage implements: d(stage)/dt = (inflow - stage) / (delay / order)
    The output is the last stage.
    """

    def __init__(self, initial: float, delay_time: float, order: int):
        self.order = order
        self.delay_time = delay_time
        self.stages: List[float] = [initial] * order
        self.pending_input: Optional[float] = None

    @property
    def output(self) -> float:
        return self.stages[-1]

    def record(self, input_value: float, delay_time: float) -> None:
        self.pending_input = input_value
        self.delay_time = delay_time

    def advance(self, dt: float) -> None:
        """One explicit Euler sub-step of every stage, computed from the old stages"""
        if self.pending_input is None:
            return
        stage_time = self.delay_time / self.order
        old = list(self.stages)
        for i in range(self.order):
            inflow = self.pending_input if i == 0 else old[i - 1]
            self.stages[i] = old[i] + (inflow - old[i]) * dt / stage_time


class PipelineDelay:
    """
    Fixed (pipeline) delay: output(t) is the input observed at t - delay

    Keeps a time-stamped buffer of committed inputs and interpolates linearly
    between samples. Until the buffer reaches back to t - delay the initial
    value is returned.
    """

    def __init__(self, initial: float, delay_time: float):
        self.initial = initial
        self.delay_time = delay_time
        self.times: List[float] = []
        self.values: List[float] = []
        self.pending: Optional[Tuple[float, float]] = None

    def output(self, time: float) -> float:
        target = time - self.delay_time
        times, values = self.times, self.values

        if not times or target < times[0]:
            return self.initial

        if target >= times[-1]:
            # Delay shorter than the step: interpolate toward the uncommitted sample
            if self.pending is not None and self.pending[0] > times[-1]:
                pending_time, pending_value = self.pending
                if target >= pending_time:
                    return pending_value
                fraction = (target - times[-1]) / (pending_time - times[-1])
                return values[-1] + fraction * (pending_value - values[-1])
            return values[-1]

        i = bisect_right(times, target)
        t1, v1 = times[i - 1], values[i - 1]
        t2, v2 = times[i], values[i]
        return v1 + (target - t1) * (v2 - v1) / (t2 - t1)

    def record(self, time: float, input_value: float, delay_time: float) -> None:
        self.pending = (time, input_value)
        self.delay_time = delay_time

    def advance(self) -> None:
        """Commit the recorded input and drop samples older than twice the delay"""
        if self.pending is None:
            return
        time, value = self.pending
        if self.times and time <= self.times[-1]:
            self.values[-1] = value
        else:
            self.times.append(time)
            self.values.append(value)
        self.pending = None

        cutoff = time - 2 * self.delay_time
        keep_from = bisect_right(self.times, cutoff) - 1
        if keep_from > 0:
            del self.times[:keep_from]
            del self.values[:keep_from]


class DelayManager:
    """
    Manages state for exponential and pipeline delays

    One instance belongs to one simulation run. Each call site owns its delay
    instance. Evaluations read the current output and record the latest input;
    advance() moves every delay forward once per accepted step.
    """

    def __init__(self):
        self.exponential: Dict[str, ExponentialDelay] = {}
        self.pipelines: Dict[str, PipelineDelay] = {}

    def exponential_delay(
        self,
        key: str,
        input_value: float,
        delay_time: float,
        order: int,
        initial: Optional[float] = None,
        record: bool = True,
        function: str = "DELAY1",
    ) -> float:
        """
        Exponential delay of the given order

        Args:
            key: Call-site identity of this delay instance
            input_value: Current input value
            delay_time: Total delay time (split equally across stages)
            order: Number of cascaded first-order stages
            initial: Initial stage value (defaults to the first observed input)
            record: Store the input for the next advance()
            function: Function name for error messages

        Returns:
            Current delayed output

        Raises:
            EvaluationError: If the delay time or order is invalid
        """
        _check_delay_time(delay_time, function)
        delay = self.exponential.get(key)
        if delay is None:
            if order < 1:
                raise EvaluationError(
                    code="invalid_delay_order",
                    message=f"{function} order must be at least 1, got {order}",
                    details={"function": function, "order": order},
                )
            start = input_value if initial is None else initial
            delay = ExponentialDelay(start, delay_time, order)
            self.exponential[key] = delay
            logger.debug(f"Created {function} state '{key}' (order {order}, init {start})")
        if record:
            delay.record(input_value, delay_time)
        return delay.output

    def pipeline_delay(
        self,
        key: str,
        input_value: float,
        delay_time: float,
        initial: float,
        time: float,
        record: bool = True,
        function: str = "DELAYP",
    ) -> float:
        """
        Fixed pipeline delay

        Args:
            key: Call-site identity of this delay instance
            input_value: Current input value
            delay_time: Delay time
            initial: Output until the history covers the delay
            time: Current evaluation time
            record: Store the input sample for the next advance()
            function: Function name for error messages

        Returns:
            The input value observed at time - delay_time
        """
        _check_delay_time(delay_time, function)
        delay = self.pipelines.get(key)
        if delay is None:
            delay = PipelineDelay(initial, delay_time)
            self.pipelines[key] = delay
            logger.debug(f"Created {function} state '{key}' (delay {delay_time})")
        output = delay.output(time)
        if record:
            delay.record(time, input_value, delay_time)
        return output

    def advance(self, dt: float) -> None:
        for delay in self.exponential.values():
            delay.advance(dt)
        for pipeline in self.pipelines.values():
            pipeline.advance()
