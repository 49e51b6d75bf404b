"""Tests for the simulation engine lifecycle, stepping and closed-loop behaviour."""

import math
from dataclasses import FrozenInstanceError

import pytest

from pidsimlib.pid_models import ControllerParameters, ControlMode, PidAlgorithm, PlantParameters
from pidsimlib.simulation import (
    SimulationCallbacks,
    SimulationConfig,
    SimulationEngine,
    StepTest,
    history_to_columns,
    run_step_response,
)

SCENARIO_CONTROLLER = ControllerParameters(kp=0.6, ti=12.0, td=0.0, mode=ControlMode.AUTO)
SCENARIO_PLANT = PlantParameters(gain=1.0, time_constant=10.0, dead_time=2.0)


def _engine(controller=SCENARIO_CONTROLLER, plant=SCENARIO_PLANT, **config):
    return SimulationEngine(controller, plant, SimulationConfig(**config))


def _run(engine, ticks):
    for _ in range(ticks):
        engine.tick()


class TestLifecycle:
    def test_initial_state(self):
        engine = _engine()
        state = engine.get_state()
        assert state.running is False
        assert state.paused is False
        assert state.simulation_time == 0.0
        assert state.setpoint == 50.0
        assert state.sample_count == 0
        assert state.latest_sample is None
        assert engine.plant.output == 50.0

    def test_start_seeds_equilibrium_sample(self):
        engine = _engine()
        engine.start()
        history = engine.get_history()
        assert len(history) == 1
        assert history[0].time == 0.0
        assert history[0].process_value == 50.0
        assert history[0].controller_output == 50.0
        assert history[0].error == 0.0
        assert engine.running

    def test_tick_ignored_while_stopped(self):
        engine = _engine()
        engine.tick()
        assert engine.get_history() == []
        assert engine.get_state().simulation_time == 0.0

    def test_pause_and_resume(self):
        changes = []
        engine = SimulationEngine(
            SCENARIO_CONTROLLER,
            SCENARIO_PLANT,
            callbacks=SimulationCallbacks(on_state_change=changes.append),
        )
        engine.start()
        _run(engine, 3)
        engine.pause()
        _run(engine, 5)
        assert engine.get_state().sample_count == 4
        assert engine.paused
        engine.resume()
        _run(engine, 2)
        assert engine.get_state().sample_count == 6
        assert changes == [True, False, True]

    def test_start_while_paused_resumes(self):
        engine = _engine()
        engine.start()
        engine.pause()
        engine.start()
        assert engine.running and not engine.paused
        assert engine.get_state().sample_count == 1

    def test_pause_requires_running(self):
        engine = _engine()
        engine.pause()
        assert not engine.paused

    def test_stop_blocks_further_ticks(self):
        engine = _engine()
        engine.start()
        _run(engine, 10)
        pending_tick = engine.tick
        engine.stop()
        pending_tick()
        assert engine.get_state().sample_count == 11
        assert not engine.running

    def test_restart_after_stop_continues_history(self):
        engine = _engine()
        engine.start()
        _run(engine, 5)
        engine.stop()
        engine.start()
        _run(engine, 5)
        times = [s.time for s in engine.get_history()]
        assert len(times) == 11
        assert times[-1] == pytest.approx(1.0)


class TestReset:
    def test_reset_matches_fresh_engine(self):
        controller = ControllerParameters(kp=0.8, ti=8.0, td=0.5, mode=ControlMode.AUTO)
        plant = PlantParameters(disturbance_level=0.3, noise_level=0.05)
        engine = _engine(controller, plant, seed=7)
        engine.start()
        _run(engine, 80)
        engine.reset()

        fresh = _engine(controller, plant, seed=7)
        assert engine.get_state().simulation_time == 0.0
        assert engine.get_history() == []
        assert engine.controller.state == fresh.controller.state
        assert engine.plant.state == fresh.plant.state

        engine.start()
        fresh.start()
        _run(engine, 40)
        _run(fresh, 40)
        assert engine.get_history() == fresh.get_history()

    def test_reset_clears_metrics(self):
        engine = _engine()
        engine.start()
        engine.set_setpoint(60.0)
        _run(engine, 50)
        assert engine.get_performance_metrics().iae > 0
        engine.reset()
        metrics = engine.get_performance_metrics()
        assert metrics.iae == 0.0
        assert metrics.max_output is None
        assert metrics.overshoot is None

    def test_reset_while_running_keeps_running(self):
        engine = _engine()
        engine.start()
        _run(engine, 5)
        engine.reset()
        assert engine.running
        assert engine.get_history() == []
        _run(engine, 1)
        assert engine.get_history()[0].time == pytest.approx(0.1)

    def test_reset_reseeds_plant_at_target(self):
        engine = _engine()
        engine.start()
        engine.set_setpoint(70.0, ramp_rate=1.0)
        _run(engine, 3)
        engine.reset()
        state = engine.get_state()
        assert state.setpoint == 70.0
        assert engine.plant.output == 70.0


class TestStepping:
    def test_sample_times_strictly_increase(self):
        engine = _engine()
        engine.start()
        _run(engine, 30)
        times = [s.time for s in engine.get_history()]
        assert all(b > a for a, b in zip(times, times[1:]))

    @pytest.mark.parametrize("speed, steps", [(1.0, 1), (2.5, 3), (4.5, 5), (5.0, 5), (0.1, 1), (0.01, 1), (50.0, 10)])
    def test_steps_per_tick(self, speed, steps):
        engine = _engine()
        engine.set_simulation_speed(speed)
        assert engine.steps_per_tick == steps

    def test_speed_is_clamped(self):
        engine = _engine()
        assert engine.set_simulation_speed(25.0) == 10.0
        assert engine.set_simulation_speed(0.0) == 0.1

    def test_speed_multiplies_throughput(self):
        engine = _engine()
        engine.set_simulation_speed(4.0)
        engine.start()
        _run(engine, 5)
        assert engine.get_state().sample_count == 21
        assert engine.get_state().simulation_time == pytest.approx(2.0)

    def test_history_is_bounded(self):
        engine = _engine(max_samples=10)
        engine.start()
        _run(engine, 30)
        history = engine.get_history()
        assert len(history) == 10
        assert history[-1].time == pytest.approx(3.0)
        assert history[0].time == pytest.approx(2.1)

    def test_history_is_a_copy(self):
        engine = _engine()
        engine.start()
        history = engine.get_history()
        history.clear()
        assert engine.get_state().sample_count == 1
        with pytest.raises(FrozenInstanceError):
            engine.get_latest_sample().setpoint = 1.0

    def test_data_callback_receives_history(self):
        updates = []
        engine = SimulationEngine(
            SCENARIO_CONTROLLER,
            SCENARIO_PLANT,
            callbacks=SimulationCallbacks(on_data_update=lambda h: updates.append(len(h))),
        )
        engine.start()
        _run(engine, 3)
        assert updates == [1, 2, 3, 4]

    def test_output_bounded_with_noise_and_disturbance(self):
        controller = ControllerParameters(
            kp=4.0, ti=2.0, td=1.0, output_min=20.0, output_max=80.0, mode=ControlMode.AUTO
        )
        plant = PlantParameters(disturbance_level=1.0, noise_level=0.3)
        engine = _engine(controller, plant, seed=11)
        engine.start()
        engine.set_setpoint(95.0)
        _run(engine, 400)
        engine.set_setpoint(5.0)
        _run(engine, 400)
        outputs = [s.controller_output for s in engine.get_history()[1:]]
        assert all(20.0 <= u <= 80.0 for u in outputs)


class TestSetpoint:
    def test_setpoint_is_clamped(self):
        engine = _engine()
        engine.set_setpoint(150.0)
        assert engine.get_state().target_setpoint == 100.0
        engine.set_setpoint(-5.0)
        assert engine.get_state().target_setpoint == 0.0

    def test_setpoint_before_start_reseeds_plant(self):
        engine = _engine()
        engine.set_setpoint(30.0, ramp_rate=2.0)
        assert engine.get_state().setpoint == 30.0
        assert engine.plant.output == 30.0

    def test_ramp_reaches_target_without_overshoot(self):
        engine = _engine()
        engine.start()
        engine.set_setpoint(60.0, ramp_rate=2.0)
        expected = math.ceil(10.0 / (2.0 * 0.1))

        steps = 0
        while engine.get_state().setpoint != 60.0:
            engine.tick()
            steps += 1
            assert engine.get_state().setpoint <= 60.0
            assert steps <= expected
        assert steps == expected

    def test_downward_ramp(self):
        engine = _engine()
        engine.start()
        engine.set_setpoint(47.0, ramp_rate=0.5)
        seen = []
        for _ in range(70):
            engine.tick()
            seen.append(engine.get_state().setpoint)
        assert min(seen) == 47.0
        assert seen[59] == 47.0
        assert seen[58] > 47.0

    def test_zero_ramp_snaps(self):
        engine = _engine()
        engine.start()
        engine.set_setpoint(65.0)
        assert engine.get_state().setpoint == 65.0


class TestConfiguration:
    def test_invalid_controller_update_keeps_parameters(self):
        engine = _engine()
        previous = engine.get_state().controller_parameters
        with pytest.raises(ValueError):
            engine.update_controller_parameters(output_min=150.0)
        assert engine.get_state().controller_parameters == previous

    def test_invalid_plant_update_keeps_parameters(self):
        engine = _engine()
        previous = engine.get_state().plant_parameters
        with pytest.raises(ValueError):
            engine.update_plant_parameters(time_constant=-1.0)
        assert engine.get_state().plant_parameters == previous

    def test_setpoint_bounds_update_reclamps_target(self):
        engine = _engine()
        engine.update_controller_parameters(setpoint_max=40.0)
        assert engine.get_state().target_setpoint == 40.0

    def test_manual_to_auto_switch_is_bumpless(self):
        engine = _engine(ControllerParameters(kp=2.0, ti=5.0, manual_output=42.0))
        engine.start()
        engine.set_setpoint(70.0)
        _run(engine, 20)
        before = engine.get_latest_sample().controller_output
        engine.set_control_mode(ControlMode.AUTO)
        _run(engine, 1)
        assert engine.get_latest_sample().controller_output == before
        assert engine.get_state().controller_parameters.mode is ControlMode.AUTO

    def test_mode_change_via_parameter_update(self):
        engine = _engine(ControllerParameters(manual_output=42.0))
        engine.start()
        engine.update_controller_parameters(mode="Auto", kp=0.5)
        _run(engine, 1)
        assert engine.get_latest_sample().controller_output == 42.0
        assert engine.controller.parameters.kp == 0.5

    def test_dead_time_update_resizes_delay_line(self):
        engine = _engine()
        engine.update_plant_parameters(dead_time=5.0)
        assert len(engine.plant.state.delay_line) == 50


class TestErrorHandling:
    def test_step_failure_stops_and_reports(self, monkeypatch):
        errors = []
        states = []
        engine = SimulationEngine(
            SCENARIO_CONTROLLER,
            SCENARIO_PLANT,
            callbacks=SimulationCallbacks(on_error=errors.append, on_state_change=states.append),
        )
        engine.start()
        _run(engine, 5)
        last_good = engine.get_latest_sample()

        def boom(_value):
            raise RuntimeError("plant exploded")

        monkeypatch.setattr(engine.plant, "calculate", boom)
        engine.tick()
        engine.tick()

        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert not engine.running
        assert states[-1] is False
        assert engine.get_latest_sample() == last_good
        assert engine.get_state().sample_count == 6

    def test_failure_mid_tick_delivers_completed_samples(self, monkeypatch):
        updates = []
        errors = []
        engine = SimulationEngine(
            SCENARIO_CONTROLLER,
            SCENARIO_PLANT,
            callbacks=SimulationCallbacks(
                on_data_update=lambda h: updates.append(len(h)), on_error=errors.append
            ),
        )
        engine.set_simulation_speed(3.0)
        engine.start()
        original = engine.plant.calculate
        calls = []

        def fail_on_third(value):
            calls.append(value)
            if len(calls) == 3:
                raise RuntimeError("plant exploded")
            return original(value)

        monkeypatch.setattr(engine.plant, "calculate", fail_on_third)
        engine.tick()

        assert len(errors) == 1
        assert engine.get_state().sample_count == 3
        assert updates[-1] == 3


class TestScenarios:
    def test_basic_pid_step_response(self):
        result = run_step_response(StepTest())
        metrics = result.metrics
        assert result.time[-1] == pytest.approx(200.0)
        assert metrics.steady_state_error is not None
        assert metrics.steady_state_error < 0.5
        assert metrics.overshoot is None or metrics.overshoot < 10.0
        assert metrics.rise_time is not None

    def test_i_pd_eliminates_kick(self):
        def max_move(algorithm):
            controller = ControllerParameters(kp=0.6, ti=12.0, algorithm=algorithm, mode=ControlMode.AUTO)
            control = run_step_response(StepTest(controller=controller)).control
            return max(abs(b - a) for a, b in zip(control, control[1:]))

        assert max_move(PidAlgorithm.I_PD) < max_move(PidAlgorithm.BASIC_PID)

    def test_step_disturbance_is_rejected(self):
        engine = _engine()
        engine.start()
        _run(engine, 1500)
        steady_output = engine.get_latest_sample().controller_output
        assert abs(engine.get_latest_sample().error) < 1e-6

        engine.apply_step_disturbance(10.0)
        assert engine.plant.internal_state == pytest.approx(60.0)
        _run(engine, 50)
        recent = engine.get_history()[-50:]
        assert min(s.controller_output for s in recent) < steady_output - 1.0

        _run(engine, 2000)
        assert abs(engine.get_latest_sample().error) < 0.2

    def test_columns_export(self):
        result = run_step_response(StepTest(duration=5.0))
        columns = history_to_columns(result.samples)
        assert columns["time"] == result.time
        assert len(columns["error"]) == len(result.samples)
