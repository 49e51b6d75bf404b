"""Dash application running the loop simulation live for interactive tuning.

``dcc.Interval`` is the host scheduler here: every interval fires
``ENGINE.tick()`` and the figure is redrawn from the engine history.
"""

from __future__ import annotations

import io
import logging
from datetime import datetime
from typing import Any, List

import plotly.graph_objects as go
from dash import Dash, Input, Output, State, callback_context, dcc, html, no_update
from dash.exceptions import PreventUpdate

from pidsimlib.metrics import PerformanceMetrics, Sample
from pidsimlib.pid_models import AntiWindupMethod, ControlMode, PidAlgorithm
from pidsimlib.preferences import load_preferences, save_preferences
from pidsimlib.simulation import SimulationCallbacks, SimulationEngine, history_to_columns

_PREFERENCES = load_preferences()
_LAST_ERROR: List[str] = []


def _record_error(exc: Exception) -> None:
    _LAST_ERROR.append(f"Simulation stopped: {exc}")


ENGINE: SimulationEngine = _PREFERENCES.build_engine(callbacks=SimulationCallbacks(on_error=_record_error))
CONTROLLER_MAX = {
    "kp": _PREFERENCES.controller.kp_max,
    "ti": _PREFERENCES.controller.ti_max,
    "td": _PREFERENCES.controller.td_max,
}


def _build_figure(samples: List[Sample]) -> go.Figure:
    columns = history_to_columns(samples)
    fig = go.Figure()
    fig.add_trace(
        go.Scatter(name="Setpoint", x=columns["time"], y=columns["setpoint"], mode="lines", line=dict(color="#2c7fb8", dash="dash"))
    )
    fig.add_trace(
        go.Scatter(name="Process Value", x=columns["time"], y=columns["process_value"], mode="lines", line=dict(color="#31a354"))
    )
    fig.add_trace(
        go.Scatter(
            name="Controller Output",
            x=columns["time"],
            y=columns["controller_output"],
            mode="lines",
            line=dict(color="#b30000"),
            yaxis="y2",
        )
    )
    fig.update_layout(
        title="Live PID loop",
        xaxis_title="Time (s)",
        yaxis=dict(title="Process Value"),
        yaxis2=dict(title="Controller Output", overlaying="y", side="right", showgrid=False),
        template="plotly_white",
        legend=dict(orientation="h", x=0.5, xanchor="center", y=1.1),
        margin=dict(l=60, r=60, t=60, b=40),
        uirevision="live",
    )
    return fig


def _format_metrics(metrics: PerformanceMetrics) -> html.Table:
    label_map = [
        ("settling_time", "Settling Time (s)"),
        ("overshoot", "Overshoot (%)"),
        ("rise_time", "Rise Time (s)"),
        ("steady_state_error", "Steady-State Error"),
        ("iae", "IAE"),
        ("ise", "ISE"),
        ("itae", "ITAE"),
        ("total_variation", "Output Total Variation"),
        ("average_error", "Mean Error (window)"),
        ("error_std_dev", "Error Std Dev (window)"),
    ]
    rows = []
    for key, label in label_map:
        value = getattr(metrics, key)
        rows.append(html.Tr([html.Th(label), html.Td("-" if value is None else f"{value:.4f}")]))
    return html.Table(rows, className="metrics-table")


def _parse_float(value: Any) -> float:
    if value is None or value == "":
        raise ValueError("Missing numeric value")
    return float(value)


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def build_numeric_field(label: str, input_id: str, value: float, step: float, **kwargs: Any) -> html.Div:
    return html.Div(
        [html.Label(label), dcc.Input(id=input_id, type="number", value=value, step=step, className="table-input", **kwargs)],
        className="control-field",
    )


_controller = ENGINE.get_state().controller_parameters
_plant = ENGINE.get_state().plant_parameters
_tick_ms = ENGINE.config.tick_interval_ms

app = Dash(__name__)
app.title = "PID Loop Simulator"

app.layout = html.Div(
    [
        html.H1("PID Loop Simulator", className="page-title"),
        html.Div(
            [
                html.Div(
                    [
                        dcc.Graph(id="live-graph", figure=_build_figure(ENGINE.get_history())),
                        html.Div(id="metrics-panel", className="metrics-card"),
                    ],
                    className="results-card",
                ),
                html.Div(
                    [
                        html.H2("Run", className="card-title"),
                        html.Div(
                            [
                                html.Button("Start", id="start-button", n_clicks=0, className="primary"),
                                html.Button("Pause", id="pause-button", n_clicks=0),
                                html.Button("Reset", id="reset-button", n_clicks=0),
                                html.Button("Step Disturbance", id="disturb-button", n_clicks=0),
                                html.Button("Download CSV", id="download-button", n_clicks=0),
                                html.Button("Save Settings", id="save-settings", n_clicks=0, className="secondary"),
                            ],
                            className="sim-actions",
                        ),
                        build_numeric_field("Setpoint", "setpoint", ENGINE.get_state().target_setpoint, 1.0),
                        build_numeric_field("Ramp Rate (/s)", "ramp-rate", 0.0, 0.1, min=0),
                        build_numeric_field("Disturbance Step", "disturb-size", 10.0, 1.0),
                        build_numeric_field("Speed (x)", "speed", ENGINE.get_state().speed, 0.1, min=0.1, max=10),
                        html.H2("Controller", className="card-title"),
                        build_numeric_field("Kp", "kp", _controller.kp, 0.01, min=0, max=CONTROLLER_MAX["kp"]),
                        build_numeric_field("Ti (s)", "ti", _controller.ti, 0.5, min=0, max=CONTROLLER_MAX["ti"]),
                        build_numeric_field("Td (s)", "td", _controller.td, 0.05, min=0, max=CONTROLLER_MAX["td"]),
                        build_numeric_field("Manual Output", "manual-output", _controller.manual_output, 1.0),
                        dcc.Dropdown(
                            id="algorithm",
                            options=[{"label": a.value, "value": a.value} for a in PidAlgorithm],
                            value=_controller.algorithm.value,
                            clearable=False,
                        ),
                        dcc.Dropdown(
                            id="anti-windup",
                            options=[{"label": a.value, "value": a.value} for a in AntiWindupMethod],
                            value=_controller.anti_windup.value,
                            clearable=False,
                        ),
                        dcc.RadioItems(
                            id="mode",
                            options=[{"label": m.value, "value": m.value} for m in ControlMode],
                            value=_controller.mode.value,
                            inline=True,
                        ),
                        html.H2("Plant", className="card-title"),
                        build_numeric_field("Gain", "plant-gain", _plant.gain, 0.1),
                        build_numeric_field("Tau (s)", "plant-tau", _plant.time_constant, 0.5, min=0.1),
                        build_numeric_field("Dead Time (s)", "plant-dead", _plant.dead_time, 0.1, min=0),
                        build_numeric_field("Disturbance (0-1)", "plant-dist", _plant.disturbance_level, 0.05, min=0, max=1),
                        build_numeric_field("Noise (0-1)", "plant-noise", _plant.noise_level, 0.01, min=0, max=1),
                        html.Div(id="status-message", className="status", children="Stopped."),
                        html.Div(id="save-status", className="status"),
                    ],
                    className="card side-panel",
                ),
            ],
            className="layout-grid",
        ),
        dcc.Interval(id="ticker", interval=_tick_ms, n_intervals=0, disabled=True),
        dcc.Download(id="download-data"),
    ]
)


@app.callback(
    Output("ticker", "disabled"),
    Output("status-message", "children"),
    Input("start-button", "n_clicks"),
    Input("pause-button", "n_clicks"),
    Input("reset-button", "n_clicks"),
    Input("disturb-button", "n_clicks"),
    State("disturb-size", "value"),
    prevent_initial_call=True,
)
def handle_run_buttons(_start: int, _pause: int, _reset: int, _disturb: int, disturb_size: Any):
    triggered = callback_context.triggered_id
    if triggered == "start-button":
        ENGINE.start()
    elif triggered == "pause-button":
        ENGINE.pause()
    elif triggered == "reset-button":
        ENGINE.reset()
    elif triggered == "disturb-button":
        try:
            ENGINE.apply_step_disturbance(_parse_float(disturb_size))
        except ValueError as exc:
            return no_update, f"Error: {exc}"
    else:
        raise PreventUpdate

    state = ENGINE.get_state()
    active = state.running and not state.paused
    label = "Running." if active else ("Paused." if state.paused else "Stopped.")
    return not active, label


@app.callback(
    Output("save-status", "children"),
    Input("setpoint", "value"),
    Input("ramp-rate", "value"),
    Input("speed", "value"),
    Input("kp", "value"),
    Input("ti", "value"),
    Input("td", "value"),
    Input("manual-output", "value"),
    Input("algorithm", "value"),
    Input("anti-windup", "value"),
    Input("mode", "value"),
    Input("plant-gain", "value"),
    Input("plant-tau", "value"),
    Input("plant-dead", "value"),
    Input("plant-dist", "value"),
    Input("plant-noise", "value"),
    prevent_initial_call=True,
)
def apply_settings(
    setpoint: Any,
    ramp_rate: Any,
    speed: Any,
    kp: Any,
    ti: Any,
    td: Any,
    manual_output: Any,
    algorithm: str,
    anti_windup: str,
    mode: str,
    gain: Any,
    tau: Any,
    dead_time: Any,
    disturbance: Any,
    noise: Any,
):
    try:
        triggered = callback_context.triggered_id
        if triggered in ("setpoint", "ramp-rate"):
            ENGINE.set_setpoint(_parse_float(setpoint), _parse_float(ramp_rate or 0.0))
        elif triggered == "speed":
            ENGINE.set_simulation_speed(_parse_float(speed))
        elif triggered == "mode":
            ENGINE.set_control_mode(ControlMode(mode))
        elif triggered in ("plant-gain", "plant-tau", "plant-dead", "plant-dist", "plant-noise"):
            ENGINE.update_plant_parameters(
                gain=_parse_float(gain),
                time_constant=_parse_float(tau),
                dead_time=_parse_float(dead_time),
                disturbance_level=_clamp(_parse_float(disturbance), 0.0, 1.0),
                noise_level=_clamp(_parse_float(noise), 0.0, 1.0),
            )
        else:
            ENGINE.update_controller_parameters(
                kp=_clamp(_parse_float(kp), 0.0, CONTROLLER_MAX["kp"]),
                ti=_clamp(_parse_float(ti), 0.0, CONTROLLER_MAX["ti"]),
                td=_clamp(_parse_float(td), 0.0, CONTROLLER_MAX["td"]),
                manual_output=_parse_float(manual_output),
                algorithm=PidAlgorithm(algorithm),
                anti_windup=AntiWindupMethod(anti_windup),
            )
    except ValueError as exc:
        return f"Rejected: {exc}"
    return f"Applied at {datetime.now().strftime('%H:%M:%S')}"


@app.callback(
    Output("live-graph", "figure"),
    Output("metrics-panel", "children"),
    Output("ticker", "disabled", allow_duplicate=True),
    Output("status-message", "children", allow_duplicate=True),
    Input("ticker", "n_intervals"),
    prevent_initial_call=True,
)
def on_tick(_n_intervals: int):
    ENGINE.tick()
    figure = _build_figure(ENGINE.get_history())
    metrics = _format_metrics(ENGINE.get_performance_metrics())
    if _LAST_ERROR:
        return figure, metrics, True, _LAST_ERROR.pop()
    return figure, metrics, no_update, no_update


@app.callback(
    Output("save-status", "children", allow_duplicate=True),
    Input("save-settings", "n_clicks"),
    prevent_initial_call=True,
)
def save_settings(n_clicks: int):
    if not n_clicks:
        raise PreventUpdate

    state = ENGINE.get_state()
    controller = state.controller_parameters
    plant = state.plant_parameters
    prefs = _PREFERENCES
    prefs.controller.kp = controller.kp
    prefs.controller.ti = controller.ti
    prefs.controller.td = controller.td
    prefs.controller.manual_output = controller.manual_output
    prefs.controller.algorithm = controller.algorithm.value
    prefs.controller.anti_windup = controller.anti_windup.value
    prefs.controller.mode = controller.mode.value
    prefs.plant.gain = plant.gain
    prefs.plant.time_constant = plant.time_constant
    prefs.plant.dead_time = plant.dead_time
    prefs.plant.disturbance_level = plant.disturbance_level
    prefs.plant.noise_level = plant.noise_level
    prefs.simulation.setpoint = state.target_setpoint
    prefs.simulation.speed = state.speed
    save_preferences(prefs)

    return f"Settings saved at {datetime.now().strftime('%H:%M:%S')}"


@app.callback(
    Output("download-data", "data"),
    Input("download-button", "n_clicks"),
    prevent_initial_call=True,
)
def download_csv(n_clicks: int):
    if n_clicks <= 0:
        raise PreventUpdate
    columns = history_to_columns(ENGINE.get_history())
    if not columns["time"]:
        raise PreventUpdate

    buffer = io.StringIO()
    buffer.write(",".join(columns.keys()))
    buffer.write("\n")
    for row in zip(*columns.values()):
        buffer.write(",".join(f"{value}" for value in row))
        buffer.write("\n")

    filename = f"pid_loop_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    return dict(content=buffer.getvalue(), filename=filename)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(debug=True)
