"""Closed-loop simulation engine coupling the PID controller and FOPDT plant."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from .metrics import MetricsAccumulator, PerformanceMetrics, Sample, compute_step_metrics
from .pid_models import (
    ControlMode,
    ControllerParameters,
    FirstOrderProcess,
    PlantParameters,
    VelocityPIDController,
    round_half_up,
)
from .scheduling import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

MIN_SPEED = 0.1
MAX_SPEED = 10.0
# Relative slack when deciding a ramp has arrived, absorbs float accumulation.
_RAMP_TOLERANCE = 1e-9


@dataclass(frozen=True)
class SimulationConfig:
    """Engine-level settings (times in seconds unless noted)."""

    sample_time: float = 0.1
    max_samples: int = 3000
    tick_interval_ms: float = 100.0
    metrics_window: int = 100
    initial_setpoint: float = 50.0
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.sample_time <= 0:
            raise ValueError("sample_time must be positive")
        if self.max_samples < 1:
            raise ValueError("max_samples must be at least 1")
        if self.tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")
        if self.metrics_window < 1:
            raise ValueError("metrics_window must be at least 1")


@dataclass
class SimulationCallbacks:
    """Notifications invoked synchronously from inside the engine."""

    on_data_update: Optional[Callable[[List[Sample]], None]] = None
    on_state_change: Optional[Callable[[bool], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None


@dataclass(frozen=True)
class SimulationState:
    running: bool
    paused: bool
    simulation_time: float
    setpoint: float
    target_setpoint: float
    speed: float
    controller_parameters: ControllerParameters
    plant_parameters: PlantParameters
    latest_sample: Optional[Sample]
    sample_count: int


class SimulationEngine:
    """Single-loop simulation stepped by an external cadence.

    The host calls :meth:`tick` at ``tick_interval_ms``, either directly or via
    a :class:`~pidsimlib.scheduling.Scheduler` passed in at construction. Each
    tick runs enough fixed ``sample_time`` steps to honour the speed
    multiplier. All mutation happens synchronously inside the engine's own
    methods, so one engine must only ever be driven from one thread.
    """

    def __init__(
        self,
        controller_parameters: Optional[ControllerParameters] = None,
        plant_parameters: Optional[PlantParameters] = None,
        config: Optional[SimulationConfig] = None,
        callbacks: Optional[SimulationCallbacks] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config or SimulationConfig()
        self.callbacks = callbacks or SimulationCallbacks()
        self._scheduler = scheduler
        self._task: Optional[ScheduledTask] = None

        self._controller = VelocityPIDController(
            parameters=controller_parameters or ControllerParameters(),
            sample_time=self.config.sample_time,
        )
        self._plant = FirstOrderProcess(
            parameters=plant_parameters or PlantParameters(),
            sample_time=self.config.sample_time,
            seed=self.config.seed,
        )

        self._running = False
        self._paused = False
        self._time = 0.0
        self._history: Deque[Sample] = deque(maxlen=self.config.max_samples)
        self._metrics = MetricsAccumulator(self.config.sample_time, self.config.metrics_window)

        self._setpoint = self._clamp_setpoint(self.config.initial_setpoint)
        self._target_setpoint = self._setpoint
        self._ramp_rate = 0.0
        self._speed = 1.0

        self._plant.set_initial_output(self._setpoint)

    # Lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def controller(self) -> VelocityPIDController:
        return self._controller

    @property
    def plant(self) -> FirstOrderProcess:
        return self._plant

    def start(self) -> None:
        """Enter Running; a fresh run is seeded with an equilibrium sample."""

        if self._running and not self._paused:
            return
        if self._paused:
            self.resume()
            return

        if not self._history:
            self._time = 0.0
            pv = self._plant.output
            # The t=0 evaluation primes the controller history at equilibrium,
            # so a setpoint step on the first inner step still registers.
            output = self._controller.calculate(self._setpoint, pv)
            initial = Sample(
                time=0.0,
                setpoint=self._setpoint,
                process_value=pv,
                controller_output=output,
                error=self._setpoint - pv,
                disturbance=0.0,
            )
            self._history.append(initial)
            self._metrics.seed(initial)
            self._notify_data()

        self._begin_run()

    def pause(self) -> None:
        if self._running and not self._paused:
            self._paused = True
            logger.info("Simulation paused at t=%.2f", self._time)
            self._notify_state(False)

    def resume(self) -> None:
        if self._running and self._paused:
            self._paused = False
            logger.info("Simulation resumed at t=%.2f", self._time)
            self._notify_state(True)

    def stop(self) -> None:
        """Enter Stopped and cancel the scheduled tick."""

        self._running = False
        self._paused = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        logger.info("Simulation stopped at t=%.2f", self._time)
        self._notify_state(False)

    def reset(self) -> None:
        """Clear time, history and metrics; restart when previously running."""

        was_running = self._running
        self.stop()

        self._time = 0.0
        self._history.clear()
        self._metrics.reset()
        self._setpoint = self._target_setpoint

        self._controller.reset()
        self._plant.reset()
        self._plant.set_initial_output(self._setpoint)
        logger.info("Simulation reset (setpoint=%.3f)", self._setpoint)

        self._notify_data()
        if was_running:
            self._begin_run()

    def tick(self) -> None:
        """Run one host tick worth of inner steps.

        Does nothing unless running and not paused, so a tick delivered after
        :meth:`stop` leaves the state untouched. A failing step is reported
        through ``on_error`` and stops the run; nothing is recorded for it, but
        samples from earlier steps of the same tick are still delivered.
        """

        if not self._running or self._paused:
            return

        steps = self.steps_per_tick
        completed = 0
        try:
            for _ in range(steps):
                self._step()
                completed += 1
            self._notify_data()
        except Exception as exc:
            logger.exception("Simulation step failed at t=%.2f", self._time)
            self.stop()
            if 0 < completed < steps:
                self._notify_data()
            if self.callbacks.on_error is not None:
                self.callbacks.on_error(exc)

    @property
    def steps_per_tick(self) -> int:
        steps = self.config.tick_interval_ms * self._speed / (self.config.sample_time * 1000.0)
        return max(1, round_half_up(steps))

    # Configuration -------------------------------------------------------

    def set_setpoint(self, value: float, ramp_rate: float = 0.0) -> None:
        """Set the target setpoint, approached at ``ramp_rate`` units/second."""

        clamped = self._clamp_setpoint(value)
        self._target_setpoint = clamped
        self._ramp_rate = abs(ramp_rate)

        if not self._history:
            self._setpoint = clamped
            self._plant.set_initial_output(clamped)
        if ramp_rate == 0:
            self._setpoint = clamped

    def update_controller_parameters(self, **changes: Any) -> ControllerParameters:
        """Validated controller update; mode changes go through bumpless transfer."""

        mode = changes.pop("mode", None)
        if mode is not None:
            mode = ControlMode(mode)
        self._update(self._controller.update_parameters, changes, "controller")
        if mode is not None:
            self.set_control_mode(mode)

        self._target_setpoint = self._clamp_setpoint(self._target_setpoint)
        self._setpoint = self._clamp_setpoint(self._setpoint)
        return self._controller.parameters

    def update_plant_parameters(self, **changes: Any) -> PlantParameters:
        return self._update(self._plant.update_parameters, changes, "plant")

    def set_control_mode(self, mode: ControlMode) -> None:
        latest = self.get_latest_sample()
        pv = latest.process_value if latest is not None else self._plant.output
        self._controller.set_mode(ControlMode(mode), pv)
        logger.info("Control mode set to %s", ControlMode(mode).value)

    def set_simulation_speed(self, multiplier: float) -> float:
        self._speed = max(MIN_SPEED, min(MAX_SPEED, multiplier))
        return self._speed

    def apply_step_disturbance(self, magnitude: float) -> None:
        """Shift the plant's internal state by ``magnitude`` (external shock)."""

        self._plant.set_initial_output(self._plant.internal_state + magnitude)
        logger.info("Step disturbance %+.3f applied at t=%.2f", magnitude, self._time)

    # Observation ---------------------------------------------------------

    def get_state(self) -> SimulationState:
        return SimulationState(
            running=self._running,
            paused=self._paused,
            simulation_time=self._time,
            setpoint=self._setpoint,
            target_setpoint=self._target_setpoint,
            speed=self._speed,
            controller_parameters=self._controller.parameters,
            plant_parameters=self._plant.parameters,
            latest_sample=self.get_latest_sample(),
            sample_count=len(self._history),
        )

    def get_history(self) -> List[Sample]:
        return list(self._history)

    def get_latest_sample(self) -> Optional[Sample]:
        return self._history[-1] if self._history else None

    def get_performance_metrics(self) -> PerformanceMetrics:
        return self._metrics.snapshot(compute_step_metrics(list(self._history)))

    # Internals -----------------------------------------------------------

    def _begin_run(self) -> None:
        self._running = True
        self._paused = False
        if self._scheduler is not None and self._task is None:
            self._task = self._scheduler.schedule_repeating(self.config.tick_interval_ms / 1000.0, self.tick)
        logger.info("Simulation running (dt=%.3fs, speed=%.1fx)", self.config.sample_time, self._speed)
        self._notify_state(True)

    def _step(self) -> None:
        self._advance_setpoint()

        setpoint = self._setpoint
        output = self._controller.calculate(setpoint, self._plant.output)
        pv = self._plant.calculate(output)
        time = self._time + self.config.sample_time

        sample = Sample(
            time=time,
            setpoint=setpoint,
            process_value=pv,
            controller_output=output,
            error=setpoint - pv,
            disturbance=self._plant.disturbance,
        )
        self._time = time
        self._history.append(sample)
        self._metrics.update(sample)

    def _advance_setpoint(self) -> None:
        if self._ramp_rate == 0 or self._setpoint == self._target_setpoint:
            self._setpoint = self._target_setpoint
            return

        ramp_step = self._ramp_rate * self.config.sample_time * self._speed
        difference = self._target_setpoint - self._setpoint
        if abs(difference) <= ramp_step * (1.0 + _RAMP_TOLERANCE):
            self._setpoint = self._target_setpoint
        elif difference > 0:
            self._setpoint += ramp_step
        else:
            self._setpoint -= ramp_step

    def _clamp_setpoint(self, value: float) -> float:
        params = self._controller.parameters
        return max(params.setpoint_min, min(params.setpoint_max, value))

    def _update(self, apply: Callable[..., Any], changes: Dict[str, Any], target: str) -> Any:
        try:
            return apply(**changes)
        except (TypeError, ValueError) as exc:
            logger.warning("Rejected %s parameter update %s: %s", target, changes, exc)
            raise

    def _notify_data(self) -> None:
        if self.callbacks.on_data_update is not None:
            self.callbacks.on_data_update(list(self._history))

    def _notify_state(self, running: bool) -> None:
        if self.callbacks.on_state_change is not None:
            self.callbacks.on_state_change(running)


@dataclass
class StepTest:
    """Scripted closed-loop step test (setpoint ``initial -> final`` at ``step_time``)."""

    duration: float = 200.0
    step_time: float = 0.0
    initial_setpoint: float = 50.0
    final_setpoint: float = 60.0
    ramp_rate: float = 0.0
    controller: ControllerParameters = field(
        default_factory=lambda: ControllerParameters(kp=0.6, ti=12.0, td=0.0, mode=ControlMode.AUTO)
    )
    plant: PlantParameters = field(default_factory=PlantParameters)
    sample_time: float = 0.1
    seed: Optional[int] = None


@dataclass
class SimulationResult:
    """Time-series results and metrics from a step test."""

    time: List[float]
    setpoint: List[float]
    output: List[float]
    control: List[float]
    metrics: PerformanceMetrics
    samples: List[Sample]


def run_step_response(test: StepTest) -> SimulationResult:
    """Run ``test`` to completion on a fresh engine, without any scheduler."""

    steps = max(1, int(round(test.duration / test.sample_time)))
    config = SimulationConfig(
        sample_time=test.sample_time,
        max_samples=steps + 1,
        tick_interval_ms=test.sample_time * 1000.0,
        initial_setpoint=test.initial_setpoint,
        seed=test.seed,
    )
    engine = SimulationEngine(test.controller, test.plant, config)
    engine.start()

    stepped = False
    for _ in range(steps):
        if not stepped and engine.get_state().simulation_time >= test.step_time - test.sample_time / 2:
            engine.set_setpoint(test.final_setpoint, test.ramp_rate)
            stepped = True
        engine.tick()
    engine.stop()

    samples = engine.get_history()
    return SimulationResult(
        time=[s.time for s in samples],
        setpoint=[s.setpoint for s in samples],
        output=[s.process_value for s in samples],
        control=[s.controller_output for s in samples],
        metrics=engine.get_performance_metrics(),
        samples=samples,
    )


def history_to_columns(samples: Sequence[Sample]) -> Dict[str, List[float]]:
    """Column-oriented view of ``samples`` for plotting or CSV export."""

    return {
        "time": [s.time for s in samples],
        "setpoint": [s.setpoint for s in samples],
        "process_value": [s.process_value for s in samples],
        "controller_output": [s.controller_output for s in samples],
        "error": [s.error for s in samples],
        "disturbance": [s.disturbance for s in samples],
    }


__all__ = [
    "SimulationConfig",
    "SimulationCallbacks",
    "SimulationState",
    "SimulationEngine",
    "StepTest",
    "SimulationResult",
    "run_step_response",
    "history_to_columns",
]
