"""Control-law and process-model building blocks for the loop simulator."""

from __future__ import annotations

import logging
import math
import random
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Deque, List, Optional, Tuple

logger = logging.getLogger(__name__)


class PidAlgorithm(str, Enum):
    """Velocity-form PID variants, differing in which terms act on the PV."""

    BASIC_PID = "BasicPID"
    I_PD = "I-PD"
    PI_D = "PI-D"


class ControlMode(str, Enum):
    """Whether the operator output or the control law drives the plant."""

    MANUAL = "Manual"
    AUTO = "Auto"


class AntiWindupMethod(str, Enum):
    """Strategy for limiting integral build-up while the output saturates."""

    NONE = "None"
    CLAMPING = "Clamping"
    CONDITIONAL_INTEGRATION = "ConditionalIntegration"
    BACK_CALCULATION = "BackCalculation"


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up, unlike :func:`round`."""

    return int(math.floor(value + 0.5))


_ALGORITHM_DESCRIPTIONS = {
    PidAlgorithm.BASIC_PID: "Traditional PID - fast, aggressive response with kicks",
    PidAlgorithm.I_PD: "I-PD - smooth, gradual response, no kicks",
    PidAlgorithm.PI_D: "PI-D - compromise, no derivative kick",
}


@dataclass(frozen=True)
class ControllerParameters:
    """Tuning and operating configuration for :class:`VelocityPIDController`.

    Parameters
    ----------
    kp:
        Proportional gain.
    ti:
        Integral time (seconds). ``0`` disables integral action.
    td:
        Derivative time (seconds). ``0`` disables derivative action.
    output_min, output_max:
        Actuator limits applied to every output, manual or automatic.
    algorithm:
        Which velocity-form recurrence to use.
    mode:
        Manual passes ``manual_output`` through; Auto runs the control law.
    manual_output:
        Output held in Manual mode and used to seed Auto after a reset.
    anti_windup:
        How saturation feeds back into the integral increment.
    windup_limit:
        Optional bound on the magnitude of the integral accumulator.
    tracking_gain:
        Back-calculation gain applied to ``limited - unlimited`` output.
    setpoint_min, setpoint_max:
        Range setpoints are clamped to by the simulation engine.
    """

    kp: float = 1.0
    ti: float = 10.0
    td: float = 0.0
    output_min: float = 0.0
    output_max: float = 100.0
    algorithm: PidAlgorithm = PidAlgorithm.BASIC_PID
    mode: ControlMode = ControlMode.MANUAL
    manual_output: float = 50.0
    anti_windup: AntiWindupMethod = AntiWindupMethod.CLAMPING
    windup_limit: Optional[float] = None
    tracking_gain: float = 0.1
    setpoint_min: float = 0.0
    setpoint_max: float = 100.0

    def __post_init__(self) -> None:
        # Accept plain strings, e.g. values loaded from JSON preferences.
        object.__setattr__(self, "algorithm", PidAlgorithm(self.algorithm))
        object.__setattr__(self, "mode", ControlMode(self.mode))
        object.__setattr__(self, "anti_windup", AntiWindupMethod(self.anti_windup))

        if self.output_min >= self.output_max:
            raise ValueError("output_min must be < output_max")
        if self.setpoint_min >= self.setpoint_max:
            raise ValueError("setpoint_min must be < setpoint_max")
        if self.ti < 0:
            raise ValueError("ti must be non-negative")
        if self.td < 0:
            raise ValueError("td must be non-negative")
        if self.tracking_gain < 0:
            raise ValueError("tracking_gain must be non-negative")
        if self.windup_limit is not None and self.windup_limit <= 0:
            raise ValueError("windup_limit must be positive when set")

    def limit(self, value: float) -> float:
        """Clamp ``value`` to the output bounds."""

        return max(self.output_min, min(self.output_max, value))


@dataclass(frozen=True)
class ControllerState:
    """Read-only snapshot of the controller memory."""

    errors: Tuple[float, float, float]
    pvs: Tuple[float, float, float]
    output: float
    last_output: float
    integral_sum: float
    back_calculation: float
    first_tick: bool


@dataclass
class VelocityPIDController:
    """Discrete velocity-form PID with kick elimination and anti-windup.

    Each call to :meth:`calculate` computes an output *delta* and adds it to
    the previous output, so the integral action lives implicitly in the output
    itself. ``integral_sum`` tracks the integral increments actually applied
    and is what anti-windup limits act on.
    """

    parameters: ControllerParameters = field(default_factory=ControllerParameters)
    sample_time: float = 0.1

    _errors: List[float] = field(init=False, repr=False)
    _pvs: List[float] = field(init=False, repr=False)
    _output: float = field(init=False, default=0.0, repr=False)
    _last_output: float = field(init=False, default=0.0, repr=False)
    _integral_sum: float = field(init=False, default=0.0, repr=False)
    _back_calculation: float = field(init=False, default=0.0, repr=False)
    _first_tick: bool = field(init=False, default=True, repr=False)

    def __post_init__(self) -> None:
        if self.sample_time <= 0:
            raise ValueError("sample_time must be positive")
        self.reset()

    @property
    def output(self) -> float:
        """Return the most recent controller output."""

        return self._output

    @property
    def mode(self) -> ControlMode:
        return self.parameters.mode

    @property
    def state(self) -> ControllerState:
        return ControllerState(
            errors=(self._errors[0], self._errors[1], self._errors[2]),
            pvs=(self._pvs[0], self._pvs[1], self._pvs[2]),
            output=self._output,
            last_output=self._last_output,
            integral_sum=self._integral_sum,
            back_calculation=self._back_calculation,
            first_tick=self._first_tick,
        )

    def reset(self) -> None:
        """Zero the history and reseed the output from the manual value."""

        manual = self.parameters.limit(self.parameters.manual_output)
        self._errors = [0.0, 0.0, 0.0]
        self._pvs = [0.0, 0.0, 0.0]
        self._output = manual
        self._last_output = manual
        self._integral_sum = 0.0
        self._back_calculation = 0.0
        self._first_tick = True

    def update_parameters(self, **changes: Any) -> ControllerParameters:
        """Hot-swap configuration; gains take effect on the next sample.

        Raises ``ValueError`` (leaving the current parameters untouched) when
        the merged configuration is inconsistent.
        """

        new_mode = changes.pop("mode", None)
        if new_mode is not None:
            new_mode = ControlMode(new_mode)
        self.parameters = replace(self.parameters, **changes)
        if new_mode is not None:
            self.set_mode(new_mode)
        logger.debug("Controller parameters updated: %s", self.parameters)
        return self.parameters

    def set_mode(self, mode: ControlMode, measured_value: Optional[float] = None) -> None:
        """Switch Manual/Auto, transferring bumplessly into Auto."""

        mode = ControlMode(mode)
        if self.parameters.mode is ControlMode.MANUAL and mode is ControlMode.AUTO:
            manual = self.parameters.limit(self.parameters.manual_output)
            self._output = manual
            self._last_output = manual
            pv = self._pvs[0] if measured_value is None else measured_value
            self._pvs = [pv, pv, pv]
            self._errors = [0.0, 0.0, 0.0]
            self._back_calculation = 0.0
            self._first_tick = True
            logger.debug("Bumpless transfer to Auto at output %.3f (pv=%.3f)", manual, pv)

        self.parameters = replace(self.parameters, mode=mode)

    def calculate(self, setpoint: float, measured_value: float) -> float:
        """Advance the controller one sample and return the new output."""

        params = self.parameters
        if params.mode is ControlMode.MANUAL:
            self._output = params.limit(params.manual_output)
            self._last_output = self._output
            return self._output

        self._errors[2] = self._errors[1]
        self._errors[1] = self._errors[0]
        self._errors[0] = setpoint - measured_value
        self._pvs[2] = self._pvs[1]
        self._pvs[1] = self._pvs[0]
        self._pvs[0] = measured_value

        if self._first_tick:
            # Fill the whole history so the next derivative terms start flat.
            self._errors = [self._errors[0]] * 3
            self._pvs = [measured_value] * 3
            self._first_tick = False
            self._back_calculation = 0.0
            self._output = params.limit(self._last_output)
            self._last_output = self._output
            return self._output

        integral_term, other_terms = self._velocity_terms()
        integral_term += self._back_calculation
        integral_term = self._apply_anti_windup(integral_term, other_terms)

        unlimited = self._last_output + other_terms + integral_term
        limited = params.limit(unlimited)

        if params.anti_windup is AntiWindupMethod.BACK_CALCULATION:
            self._back_calculation = (limited - unlimited) * params.tracking_gain
        else:
            self._back_calculation = 0.0

        self._integral_sum += integral_term
        self._output = limited
        self._last_output = limited
        return self._output

    def describe_algorithm(self) -> str:
        return _ALGORITHM_DESCRIPTIONS[self.parameters.algorithm]

    def _velocity_terms(self) -> Tuple[float, float]:
        """Return ``(integral increment, proportional + derivative increment)``."""

        params = self.parameters
        dt = self.sample_time
        e = self._errors
        pv = self._pvs

        ki = params.kp / params.ti if params.ti > 0 else 0.0
        kd = params.td * params.kp

        integral = ki * e[0] * dt
        if params.algorithm is PidAlgorithm.BASIC_PID:
            proportional = params.kp * (e[0] - e[1])
            derivative = kd * (e[0] - 2.0 * e[1] + e[2]) / dt
        elif params.algorithm is PidAlgorithm.I_PD:
            proportional = params.kp * (pv[1] - pv[0])
            derivative = kd * (pv[2] - 2.0 * pv[1] + pv[0]) / dt
        else:
            proportional = params.kp * (e[0] - e[1])
            derivative = kd * (pv[2] - 2.0 * pv[1] + pv[0]) / dt

        return integral, proportional + derivative

    def _apply_anti_windup(self, integral_term: float, other_terms: float) -> float:
        params = self.parameters
        method = params.anti_windup
        if method is AntiWindupMethod.NONE:
            return integral_term

        candidate = self._last_output + other_terms + integral_term
        if method is AntiWindupMethod.CLAMPING:
            if candidate > params.output_max or candidate < params.output_min:
                integral_term = 0.0
        elif method is AntiWindupMethod.CONDITIONAL_INTEGRATION:
            if (candidate > params.output_max and integral_term > 0) or (
                candidate < params.output_min and integral_term < 0
            ):
                integral_term = 0.0

        if params.windup_limit is not None:
            bounded = max(-params.windup_limit, min(params.windup_limit, self._integral_sum + integral_term))
            integral_term = bounded - self._integral_sum
        return integral_term


@dataclass(frozen=True)
class PlantParameters:
    """First-order plus dead-time process description."""

    gain: float = 1.0
    time_constant: float = 10.0
    dead_time: float = 2.0
    disturbance_level: float = 0.0
    noise_level: float = 0.0

    def __post_init__(self) -> None:
        if self.time_constant <= 0:
            raise ValueError("time_constant must be positive")
        if self.dead_time < 0:
            raise ValueError("dead_time must be non-negative")
        if not 0.0 <= self.disturbance_level <= 1.0:
            raise ValueError("disturbance_level must be within 0-1")
        if not 0.0 <= self.noise_level <= 1.0:
            raise ValueError("noise_level must be within 0-1")


@dataclass(frozen=True)
class PlantState:
    """Read-only snapshot of the process model."""

    output: float
    internal_state: float
    delay_line: Tuple[float, ...]
    disturbance: float
    noise: float
    elapsed: float
    filtered_random: float


DISTURBANCE_FILTER_TIME = 5.0


@dataclass
class FirstOrderProcess:
    """FOPDT process ``K e^(-theta s) / (tau s + 1)`` stepped at a fixed rate.

    The transport delay is an explicit queue of the last N control inputs,
    ``N = max(1, round(dead_time / sample_time))``. Disturbance and noise
    draw from a private :class:`random.Random` seeded with ``seed``.
    """

    parameters: PlantParameters = field(default_factory=PlantParameters)
    sample_time: float = 0.1
    seed: Optional[int] = None

    _rng: random.Random = field(init=False, repr=False)
    _delay_line: Deque[float] = field(init=False, repr=False)
    _output: float = field(init=False, default=0.0, repr=False)
    _internal_state: float = field(init=False, default=0.0, repr=False)
    _disturbance: float = field(init=False, default=0.0, repr=False)
    _filtered_random: float = field(init=False, default=0.0, repr=False)
    _noise: float = field(init=False, default=0.0, repr=False)
    _elapsed: float = field(init=False, default=0.0, repr=False)

    def __post_init__(self) -> None:
        if self.sample_time <= 0:
            raise ValueError("sample_time must be positive")
        self._rng = random.Random(self.seed)
        self.reset()

    @property
    def output(self) -> float:
        """Return the latest measured (noisy) process output."""

        return self._output

    @property
    def internal_state(self) -> float:
        return self._internal_state

    @property
    def disturbance(self) -> float:
        return self._disturbance

    @property
    def dead_time_steps(self) -> int:
        return self._steps_for(self.parameters.dead_time)

    @property
    def state(self) -> PlantState:
        return PlantState(
            output=self._output,
            internal_state=self._internal_state,
            delay_line=tuple(self._delay_line),
            disturbance=self._disturbance,
            noise=self._noise,
            elapsed=self._elapsed,
            filtered_random=self._filtered_random,
        )

    def reset(self) -> None:
        """Return to rest at zero and reseed the random source."""

        self._rng.seed(self.seed)
        self._delay_line = deque([0.0] * self.dead_time_steps)
        self._output = 0.0
        self._internal_state = 0.0
        self._disturbance = 0.0
        self._filtered_random = 0.0
        self._noise = 0.0
        self._elapsed = 0.0

    def set_initial_output(self, value: float) -> None:
        """Force the process to ``value`` with a delay line at equilibrium."""

        self._output = value
        self._internal_state = value
        steady_input = value / self.parameters.gain if self.parameters.gain != 0 else 0.0
        for idx in range(len(self._delay_line)):
            self._delay_line[idx] = steady_input

    def update_parameters(self, **changes: Any) -> PlantParameters:
        """Apply new parameters, resizing the delay line on dead-time changes."""

        new_parameters = replace(self.parameters, **changes)
        old_steps = len(self._delay_line)
        new_steps = self._steps_for(new_parameters.dead_time)
        self.parameters = new_parameters

        if new_steps > old_steps:
            newest = self._delay_line[-1] if self._delay_line else 0.0
            self._delay_line.extendleft([newest] * (new_steps - old_steps))
        else:
            for _ in range(old_steps - new_steps):
                self._delay_line.popleft()
        logger.debug("Plant parameters updated: %s (delay line %d -> %d)", new_parameters, old_steps, new_steps)
        return self.parameters

    def calculate(self, control_input: float) -> float:
        """Advance the model one sample and return the new measured output."""

        self._elapsed += self.sample_time

        self._delay_line.append(control_input)
        delayed_input = self._delay_line.popleft()

        self._disturbance = self._next_disturbance()

        params = self.parameters
        decay = math.exp(-self.sample_time / params.time_constant)
        self._internal_state = (
            self._internal_state * decay + params.gain * delayed_input * (1.0 - decay) + self._disturbance
        )

        self._noise = self._next_noise()
        self._output = self._internal_state + self._noise
        return self._output

    def steady_state_response(self, control_input: float) -> float:
        return self.parameters.gain * control_input

    def approximate_settling_time(self) -> float:
        """Four time constants, the usual 2% settling estimate."""

        return 4.0 * self.parameters.time_constant

    def describe(self) -> str:
        p = self.parameters
        return f"First Order Process: K={p.gain:.2f}, Tau={p.time_constant:.1f}s, Td={p.dead_time:.1f}s"

    def _steps_for(self, dead_time: float) -> int:
        return max(1, round_half_up(dead_time / self.sample_time))

    def _next_disturbance(self) -> float:
        level = self.parameters.disturbance_level
        if level == 0:
            self._filtered_random = 0.0
            return 0.0

        t = self._elapsed
        slow = 0.3 * math.sin(0.1 * t)
        fast = 0.4 * math.sin(0.5 * t)

        raw = (self._rng.random() - 0.5) * 0.3
        alpha = self.sample_time / (DISTURBANCE_FILTER_TIME + self.sample_time)
        self._filtered_random = self._filtered_random * (1.0 - alpha) + raw * alpha

        return level * self.parameters.gain * (slow + fast + self._filtered_random)

    def _next_noise(self) -> float:
        level = self.parameters.noise_level
        if level == 0:
            return 0.0
        magnitude = max(level * abs(self._internal_state), 0.01)
        return self._rng.uniform(-magnitude, magnitude)


__all__ = [
    "PidAlgorithm",
    "ControlMode",
    "AntiWindupMethod",
    "ControllerParameters",
    "ControllerState",
    "VelocityPIDController",
    "PlantParameters",
    "PlantState",
    "FirstOrderProcess",
]
