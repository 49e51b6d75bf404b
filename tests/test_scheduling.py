"""Tests for host schedulers driving the engine tick."""

import asyncio

import pytest

from pidsimlib.scheduling import AsyncioScheduler, ManualScheduler
from pidsimlib.simulation import SimulationCallbacks, SimulationConfig, SimulationEngine


class TestManualScheduler:
    def test_fires_in_time_order(self):
        scheduler = ManualScheduler()
        calls = []
        scheduler.schedule_repeating(0.3, lambda: calls.append(("slow", scheduler.now)))
        scheduler.schedule_repeating(0.2, lambda: calls.append(("fast", scheduler.now)))
        fired = scheduler.advance(0.5)
        assert fired == 3
        assert [name for name, _ in calls] == ["fast", "slow", "fast"]
        assert calls[1][1] == pytest.approx(0.3)
        assert scheduler.now == pytest.approx(0.5)

    def test_cancelled_task_never_fires(self):
        scheduler = ManualScheduler()
        calls = []
        task = scheduler.schedule_repeating(0.1, lambda: calls.append(1))
        scheduler.advance(0.25)
        task.cancel()
        scheduler.advance(1.0)
        assert len(calls) == 2
        assert scheduler.pending == 0

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            ManualScheduler().schedule_repeating(0.0, lambda: None)


class TestEngineScheduling:
    def test_start_schedules_and_stop_cancels(self):
        scheduler = ManualScheduler()
        engine = SimulationEngine(scheduler=scheduler)
        engine.start()
        assert scheduler.pending == 1

        scheduler.advance(1.05)
        assert engine.get_state().sample_count == 11

        engine.stop()
        assert scheduler.pending == 0
        scheduler.advance(1.0)
        assert engine.get_state().sample_count == 11

    def test_pause_keeps_schedule_but_skips_work(self):
        scheduler = ManualScheduler()
        engine = SimulationEngine(scheduler=scheduler)
        engine.start()
        scheduler.advance(0.35)
        engine.pause()
        scheduler.advance(1.0)
        assert scheduler.pending == 1
        assert engine.get_state().sample_count == 4
        engine.resume()
        scheduler.advance(0.2)
        assert engine.get_state().sample_count == 6

    def test_stop_from_inside_a_tick(self):
        scheduler = ManualScheduler()
        engine = SimulationEngine(scheduler=scheduler)

        def on_data(history):
            if len(history) >= 4:
                engine.stop()

        engine.callbacks = SimulationCallbacks(on_data_update=on_data)
        engine.start()
        scheduler.advance(2.0)
        assert engine.get_state().sample_count == 4
        assert not engine.running

    def test_reset_while_running_reschedules(self):
        scheduler = ManualScheduler()
        engine = SimulationEngine(scheduler=scheduler)
        engine.start()
        scheduler.advance(0.55)
        engine.reset()
        assert scheduler.pending == 1
        scheduler.advance(0.25)
        assert engine.get_state().sample_count == 2


class TestAsyncioScheduler:
    def test_drives_engine_on_event_loop(self):
        async def scenario():
            engine = SimulationEngine(
                config=SimulationConfig(tick_interval_ms=10.0),
                scheduler=AsyncioScheduler(),
            )
            engine.start()
            await asyncio.sleep(0.2)
            engine.stop()
            count = engine.get_state().sample_count
            await asyncio.sleep(0.05)
            return count, engine.get_state().sample_count

        count, later = asyncio.run(scenario())
        assert count > 1
        assert later == count
