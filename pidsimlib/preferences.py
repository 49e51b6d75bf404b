"""Utility helpers for loading and saving user preferences."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .pid_models import ControllerParameters, PlantParameters
from .scheduling import Scheduler
from .simulation import SimulationCallbacks, SimulationConfig, SimulationEngine

logger = logging.getLogger(__name__)

DEFAULT_PREFERENCES_PATH = Path("config/user_prefs.json")


@dataclass
class ControllerPrefs:
    kp: float
    ti: float
    td: float
    kp_max: float
    ti_max: float
    td_max: float
    output_min: float
    output_max: float
    algorithm: str
    mode: str
    manual_output: float
    anti_windup: str
    windup_limit: float | None
    tracking_gain: float
    setpoint_min: float
    setpoint_max: float

    def to_parameters(self) -> ControllerParameters:
        return ControllerParameters(
            kp=self.kp,
            ti=self.ti,
            td=self.td,
            output_min=self.output_min,
            output_max=self.output_max,
            algorithm=self.algorithm,
            mode=self.mode,
            manual_output=self.manual_output,
            anti_windup=self.anti_windup,
            windup_limit=self.windup_limit,
            tracking_gain=self.tracking_gain,
            setpoint_min=self.setpoint_min,
            setpoint_max=self.setpoint_max,
        )


@dataclass
class PlantPrefs:
    gain: float
    time_constant: float
    dead_time: float
    disturbance_level: float
    noise_level: float

    def to_parameters(self) -> PlantParameters:
        return PlantParameters(**asdict(self))


@dataclass
class SimulationPrefs:
    sample_time: float
    tick_interval_ms: float
    max_samples: int
    metrics_window: int
    setpoint: float
    speed: float
    seed: int | None

    def to_config(self) -> SimulationConfig:
        return SimulationConfig(
            sample_time=self.sample_time,
            max_samples=self.max_samples,
            tick_interval_ms=self.tick_interval_ms,
            metrics_window=self.metrics_window,
            initial_setpoint=self.setpoint,
            seed=self.seed,
        )


@dataclass
class Preferences:
    controller: ControllerPrefs
    plant: PlantPrefs
    simulation: SimulationPrefs

    @classmethod
    def defaults(cls) -> "Preferences":
        return cls(
            controller=ControllerPrefs(
                kp=1.0,
                ti=10.0,
                td=0.0,
                kp_max=5.0,
                ti_max=60.0,
                td_max=10.0,
                output_min=0.0,
                output_max=100.0,
                algorithm="BasicPID",
                mode="Manual",
                manual_output=50.0,
                anti_windup="Clamping",
                windup_limit=None,
                tracking_gain=0.1,
                setpoint_min=0.0,
                setpoint_max=100.0,
            ),
            plant=PlantPrefs(
                gain=1.0,
                time_constant=10.0,
                dead_time=2.0,
                disturbance_level=0.0,
                noise_level=0.0,
            ),
            simulation=SimulationPrefs(
                sample_time=0.1,
                tick_interval_ms=100.0,
                max_samples=3000,
                metrics_window=100,
                setpoint=50.0,
                speed=1.0,
                seed=None,
            ),
        )

    def build_engine(
        self,
        callbacks: Optional[SimulationCallbacks] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> SimulationEngine:
        """Construct an engine configured from these preferences."""

        engine = SimulationEngine(
            controller_parameters=self.controller.to_parameters(),
            plant_parameters=self.plant.to_parameters(),
            config=self.simulation.to_config(),
            callbacks=callbacks,
            scheduler=scheduler,
        )
        engine.set_simulation_speed(self.simulation.speed)
        return engine


def load_preferences(path: Path | None = None) -> Preferences:
    target = path or DEFAULT_PREFERENCES_PATH
    if not target.exists():
        return Preferences.defaults()

    try:
        payload = json.loads(target.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Could not read preferences from %s (%s); using defaults", target, exc)
        return Preferences.defaults()

    try:
        controller_data = payload["controller"]
        plant_data = payload["plant"]
        simulation_data = payload["simulation"]
    except (KeyError, TypeError):
        logger.warning("Preferences file %s is missing sections; using defaults", target)
        return Preferences.defaults()

    try:
        controller = ControllerPrefs(**controller_data)
        plant = PlantPrefs(**plant_data)
        simulation = SimulationPrefs(**simulation_data)
    except TypeError as exc:
        logger.warning("Preferences file %s has unexpected fields (%s); using defaults", target, exc)
        return Preferences.defaults()

    return Preferences(controller=controller, plant=plant, simulation=simulation)


def save_preferences(preferences: Preferences, path: Path | None = None) -> None:
    target = path or DEFAULT_PREFERENCES_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    payload: Dict[str, Any] = {
        "controller": asdict(preferences.controller),
        "plant": asdict(preferences.plant),
        "simulation": asdict(preferences.simulation),
    }
    target.write_text(json.dumps(payload, indent=2))


__all__ = [
    "Preferences",
    "ControllerPrefs",
    "PlantPrefs",
    "SimulationPrefs",
    "load_preferences",
    "save_preferences",
    "DEFAULT_PREFERENCES_PATH",
]
