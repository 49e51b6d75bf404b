"""Compare the three PID algorithms on the same FOPDT setpoint step."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict

import plotly.graph_objects as go
from plotly.subplots import make_subplots

from pidsimlib.pid_models import ControllerParameters, ControlMode, PidAlgorithm, PlantParameters
from pidsimlib.simulation import SimulationResult, StepTest, run_step_response

ALGORITHM_COLORS = {
    PidAlgorithm.BASIC_PID: "#b30000",
    PidAlgorithm.I_PD: "#31a354",
    PidAlgorithm.PI_D: "#2c7fb8",
}


def run_simulations(duration: float = 200.0, step_value: float = 60.0) -> Dict[PidAlgorithm, SimulationResult]:
    """Simulate the same step once per algorithm."""

    results = {}
    for algorithm in PidAlgorithm:
        test = StepTest(
            duration=duration,
            step_time=5.0,
            initial_setpoint=50.0,
            final_setpoint=step_value,
            controller=ControllerParameters(
                kp=0.6,
                ti=12.0,
                td=1.0,
                algorithm=algorithm,
                mode=ControlMode.AUTO,
            ),
            plant=PlantParameters(gain=1.0, time_constant=10.0, dead_time=2.0),
        )
        results[algorithm] = run_step_response(test)
    return results


def create_figure(results: Dict[PidAlgorithm, SimulationResult]) -> go.Figure:
    """Build a Plotly figure with PV on top and controller output below."""

    fig = make_subplots(rows=2, cols=1, shared_xaxes=True, vertical_spacing=0.08)
    first = next(iter(results.values()))
    fig.add_trace(
        go.Scatter(
            name="Setpoint",
            x=first.time,
            y=first.setpoint,
            mode="lines",
            line=dict(color="#636363", dash="dash"),
        ),
        row=1,
        col=1,
    )
    for algorithm, result in results.items():
        color = ALGORITHM_COLORS[algorithm]
        fig.add_trace(
            go.Scatter(name=f"PV ({algorithm.value})", x=result.time, y=result.output, mode="lines", line=dict(color=color)),
            row=1,
            col=1,
        )
        fig.add_trace(
            go.Scatter(
                name=f"CV ({algorithm.value})",
                x=result.time,
                y=result.control,
                mode="lines",
                line=dict(color=color, dash="dot"),
            ),
            row=2,
            col=1,
        )

    fig.update_layout(
        title="Velocity-form PID variants vs FOPDT plant",
        template="plotly_white",
        legend=dict(orientation="h", x=0.5, xanchor="center", y=1.1),
    )
    fig.update_xaxes(title_text="Time (s)", row=2, col=1)
    fig.update_yaxes(title_text="Process Value", row=1, col=1)
    fig.update_yaxes(title_text="Controller Output", row=2, col=1)
    return fig


def _fmt(value: float | None) -> str:
    return "-" if value is None else f"{value:.3f}"


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    results = run_simulations()
    figure = create_figure(results)

    reports_dir = Path("reports")
    reports_dir.mkdir(exist_ok=True)
    output_path = reports_dir / "pid_fopdt_demo.html"
    figure.write_html(str(output_path), include_plotlyjs="cdn")
    print(f"Saved PID/FOPDT comparison plot to {output_path}")
    for algorithm, result in results.items():
        m = result.metrics
        print(f"{algorithm.value}:")
        print(f"  overshoot (%):      {_fmt(m.overshoot)}")
        print(f"  rise time (s):      {_fmt(m.rise_time)}")
        print(f"  settling time (s):  {_fmt(m.settling_time)}")
        print(f"  steady-state error: {_fmt(m.steady_state_error)}")
        print(f"  IAE:                {m.iae:.3f}")


if __name__ == "__main__":
    main()
