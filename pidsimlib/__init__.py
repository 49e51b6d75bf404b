"""pidsim library: PID control loop simulation against a FOPDT plant."""

from .metrics import (
    MetricsAccumulator,
    PerformanceMetrics,
    Sample,
    StepMetrics,
    compute_step_metrics,
)
from .pid_models import (
    AntiWindupMethod,
    ControllerParameters,
    ControllerState,
    ControlMode,
    FirstOrderProcess,
    PidAlgorithm,
    PlantParameters,
    PlantState,
    VelocityPIDController,
)
from .preferences import (
    ControllerPrefs,
    PlantPrefs,
    Preferences,
    SimulationPrefs,
    load_preferences,
    save_preferences,
)
from .scheduling import AsyncioScheduler, ManualScheduler, Scheduler
from .simulation import (
    SimulationCallbacks,
    SimulationConfig,
    SimulationEngine,
    SimulationResult,
    SimulationState,
    StepTest,
    history_to_columns,
    run_step_response,
)

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
    "Sample",
    "StepMetrics",
    "PerformanceMetrics",
    "MetricsAccumulator",
    "compute_step_metrics",
    "Scheduler",
    "ManualScheduler",
    "AsyncioScheduler",
    "SimulationConfig",
    "SimulationCallbacks",
    "SimulationState",
    "SimulationEngine",
    "StepTest",
    "SimulationResult",
    "run_step_response",
    "history_to_columns",
    "Preferences",
    "ControllerPrefs",
    "PlantPrefs",
    "SimulationPrefs",
    "load_preferences",
    "save_preferences",
]
