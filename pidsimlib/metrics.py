"""Loop samples and the performance figures derived from them."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional, Sequence

STEP_LOOKBACK = 5
STEP_DETECTION_THRESHOLD = 0.05
MIN_STEP_SIZE = 0.1
SETTLING_BAND = 0.02


@dataclass(frozen=True)
class Sample:
    """One recorded loop sample. ``error`` is setpoint minus measured value."""

    time: float
    setpoint: float
    process_value: float
    controller_output: float
    error: float
    disturbance: float = 0.0


@dataclass(frozen=True)
class StepMetrics:
    settling_time: Optional[float] = None
    overshoot: Optional[float] = None
    steady_state_error: Optional[float] = None
    rise_time: Optional[float] = None


@dataclass(frozen=True)
class PerformanceMetrics:
    """Step-response figures plus continuously accumulated loop statistics."""

    settling_time: Optional[float]
    overshoot: Optional[float]
    steady_state_error: Optional[float]
    rise_time: Optional[float]
    iae: float
    ise: float
    itae: float
    total_variation: float
    max_output: Optional[float]
    min_output: Optional[float]
    current_error: float
    average_error: float
    error_std_dev: float


@dataclass
class MetricsAccumulator:
    """Running integral, control-effort and rolling error statistics.

    Integral figures use the fixed step ``sample_time``; the rolling mean and
    standard deviation cover the most recent ``window`` samples only.
    """

    sample_time: float
    window: int = 100

    iae: float = field(init=False, default=0.0)
    ise: float = field(init=False, default=0.0)
    itae: float = field(init=False, default=0.0)
    total_variation: float = field(init=False, default=0.0)
    max_output: Optional[float] = field(init=False, default=None)
    min_output: Optional[float] = field(init=False, default=None)
    current_error: float = field(init=False, default=0.0)
    _last_output: Optional[float] = field(init=False, default=None, repr=False)
    _recent_errors: Deque[float] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.window < 1:
            raise ValueError("window must be at least 1")
        self.reset()

    def reset(self) -> None:
        self.iae = 0.0
        self.ise = 0.0
        self.itae = 0.0
        self.total_variation = 0.0
        self.max_output = None
        self.min_output = None
        self.current_error = 0.0
        self._last_output = None
        self._recent_errors = deque(maxlen=self.window)

    def seed(self, sample: Sample) -> None:
        """Register a baseline sample without accumulating anything."""

        self._last_output = sample.controller_output

    def update(self, sample: Sample) -> None:
        dt = self.sample_time
        abs_error = abs(sample.error)
        self.iae += abs_error * dt
        self.ise += sample.error * sample.error * dt
        self.itae += abs_error * sample.time * dt

        output = sample.controller_output
        self.max_output = output if self.max_output is None else max(self.max_output, output)
        self.min_output = output if self.min_output is None else min(self.min_output, output)
        if self._last_output is not None:
            self.total_variation += abs(output - self._last_output)
        self._last_output = output

        self.current_error = sample.error
        self._recent_errors.append(sample.error)

    @property
    def average_error(self) -> float:
        if not self._recent_errors:
            return 0.0
        return sum(self._recent_errors) / len(self._recent_errors)

    @property
    def error_std_dev(self) -> float:
        if not self._recent_errors:
            return 0.0
        mean = self.average_error
        variance = sum((e - mean) ** 2 for e in self._recent_errors) / len(self._recent_errors)
        return math.sqrt(variance)

    def snapshot(self, step: StepMetrics) -> PerformanceMetrics:
        return PerformanceMetrics(
            settling_time=step.settling_time,
            overshoot=step.overshoot,
            steady_state_error=step.steady_state_error,
            rise_time=step.rise_time,
            iae=self.iae,
            ise=self.ise,
            itae=self.itae,
            total_variation=self.total_variation,
            max_output=self.max_output,
            min_output=self.min_output,
            current_error=self.current_error,
            average_error=self.average_error,
            error_std_dev=self.error_std_dev,
        )


def find_step_start(samples: Sequence[Sample]) -> Optional[int]:
    """Index of the sample preceding the latest significant setpoint change."""

    for idx in range(len(samples) - 1, STEP_LOOKBACK - 1, -1):
        if abs(samples[idx].setpoint - samples[idx - STEP_LOOKBACK].setpoint) > STEP_DETECTION_THRESHOLD:
            return idx - STEP_LOOKBACK
    return None


def compute_step_metrics(samples: Sequence[Sample]) -> StepMetrics:
    """Characterize the response to the most recent setpoint step.

    Every figure stays ``None`` until a step larger than ``MIN_STEP_SIZE``
    (measured from the PV at the step start) is found in ``samples``.
    """

    if len(samples) <= STEP_LOOKBACK:
        return StepMetrics()

    start = find_step_start(samples)
    if start is None:
        return StepMetrics()

    window = samples[start:]
    final_sp = window[-1].setpoint
    initial_pv = window[0].process_value
    final_pv = window[-1].process_value
    step_size = abs(final_sp - initial_pv)
    if step_size <= MIN_STEP_SIZE:
        return StepMetrics()

    rising = final_sp > initial_pv
    values = [sample.process_value for sample in window]
    if rising:
        overshoot = max(0.0, (max(values) - final_sp) / step_size * 100.0)
    else:
        overshoot = max(0.0, (final_sp - min(values)) / step_size * 100.0)

    return StepMetrics(
        settling_time=_settling_time(window, final_sp, step_size),
        overshoot=overshoot if overshoot > 0 else None,
        steady_state_error=abs(final_sp - final_pv),
        rise_time=_rise_time(window, initial_pv, final_sp),
    )


def _rise_time(window: Sequence[Sample], initial_pv: float, final_sp: float) -> Optional[float]:
    span = final_sp - initial_pv
    low = initial_pv + 0.1 * span
    high = initial_pv + 0.9 * span
    reached = (lambda y, level: y >= level) if span > 0 else (lambda y, level: y <= level)

    start_time: Optional[float] = None
    for sample in window:
        if start_time is None and reached(sample.process_value, low):
            start_time = sample.time
        if reached(sample.process_value, high):
            return None if start_time is None else sample.time - start_time
    return None


def _settling_time(window: Sequence[Sample], final_sp: float, step_size: float) -> Optional[float]:
    band = SETTLING_BAND * step_size
    for idx in range(len(window) - 1, -1, -1):
        if abs(window[idx].process_value - final_sp) > band:
            if idx == len(window) - 1:
                return None
            return window[idx + 1].time - window[0].time
    return 0.0


__all__ = [
    "Sample",
    "StepMetrics",
    "PerformanceMetrics",
    "MetricsAccumulator",
    "compute_step_metrics",
    "find_step_start",
]
