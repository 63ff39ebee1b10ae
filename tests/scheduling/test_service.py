"""Tests for SchedulerService: the coordinating loop."""

import asyncio
import time as monotonic_time
from datetime import UTC, datetime, time, timedelta

import pytest

from routecollect.core.errors import ScheduleError, SchedulerCrashedError
from routecollect.scheduling.clock import ManualClock, OffsetClock
from routecollect.scheduling.executors import RecordingExecutor
from routecollect.scheduling.models import RunOutcome, Schedule, SchedulerState
from routecollect.scheduling.service import SchedulerService

# Tuesday 13:50 UTC; schedules below fire from 14:00
START = datetime(2024, 3, 5, 13, 50, tzinfo=UTC)


def _at(hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2024, 3, 5, hour, minute, second, tzinfo=UTC)


def _half_hourly(sid: str = "s", **kwargs) -> Schedule:
    return Schedule.from_minutes(sid, time(14), time(20), [0, 30], **kwargs)


async def _next_run(sub, timeout: float = 1.0):
    return await asyncio.wait_for(anext(sub), timeout)


class FailingClock(ManualClock):
    """ManualClock whose now() can be switched to raise."""

    def __init__(self, start: datetime) -> None:
        super().__init__(start)
        self.fail = False

    def now(self) -> datetime:
        if self.fail:
            raise RuntimeError("clock unavailable")
        return super().now()


class SlowToCancelExecutor:
    """Blocks until cancelled, then takes a while to let go."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def execute(self, schedule_id: str, due_at: datetime) -> None:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            await asyncio.sleep(0.3)
            raise


async def _collect(sub) -> list:
    return [run async for run in sub]


@pytest.fixture
def manual() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def service(settings, manual, executor) -> SchedulerService:
    return SchedulerService(executor, settings=settings, clock=manual)


class TestLifecycle:
    """start / shutdown / state."""

    @pytest.mark.asyncio
    async def test_start_idle_then_stop(self, service):
        await service.start()
        assert service.state is SchedulerState.IDLE
        assert service.health().healthy

        await service.shutdown()
        assert service.state is SchedulerState.STOPPED
        assert not service.health().healthy

    @pytest.mark.asyncio
    async def test_context_manager(self, service):
        async with service:
            assert service.is_running
        assert service.state is SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_register_before_start_rejected(self, service):
        with pytest.raises(ScheduleError):
            await service.register_schedule(_half_hourly())

    @pytest.mark.asyncio
    async def test_register_after_shutdown_rejected(self, service):
        await service.start()
        await service.shutdown()
        with pytest.raises(ScheduleError):
            await service.register_schedule(_half_hourly())

    @pytest.mark.asyncio
    async def test_shutdown_without_start(self, service):
        await service.shutdown()
        assert service.state is SchedulerState.STOPPED

    def test_requires_executor_or_dispatcher(self, settings):
        with pytest.raises(ValueError):
            SchedulerService(settings=settings)


class TestRegistration:
    """Registration and cancellation go through the loop."""

    @pytest.mark.asyncio
    async def test_register_queues_horizon(self, service):
        """A two-hour horizon from 13:50 queues 14:00, 14:30, 15:00 and 15:30."""
        async with service:
            await service.register_schedule(_half_hourly())

            assert [o.due_at for o in service.pending("s")] == [
                _at(14, 0), _at(14, 30), _at(15, 0), _at(15, 30),
            ]
            assert service.state is SchedulerState.WAITING
            assert "s" in service.schedules

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, service):
        async with service:
            await service.register_schedule(_half_hourly())
            with pytest.raises(ScheduleError):
                await service.register_schedule(_half_hourly())

    @pytest.mark.asyncio
    async def test_cancel_removes_pending(self, service):
        async with service:
            await service.register_schedule(_half_hourly("a"))
            await service.register_schedule(_half_hourly("b"))

            removed = await service.cancel_schedule("a")

            assert removed == 4
            assert service.pending("a") == []
            assert len(service.pending("b")) == 4
            assert "a" not in service.schedules

    @pytest.mark.asyncio
    async def test_cancel_unknown_rejected(self, service):
        async with service:
            with pytest.raises(ScheduleError):
                await service.cancel_schedule("missing")

    @pytest.mark.asyncio
    async def test_cancelled_schedule_never_fires(self, service, manual, executor):
        async with service:
            await service.register_schedule(_half_hourly("a"))
            await service.register_schedule(_half_hourly("b"))
            await service.cancel_schedule("a")
            sub = service.subscribe()

            manual.set(_at(14, 0))
            run = await _next_run(sub)

            assert run.schedule_id == "b"
            assert executor.count("a") == 0


class TestFiring:
    """Due occurrences reach the executor."""

    @pytest.mark.asyncio
    async def test_fires_when_due(self, service, manual, executor):
        async with service:
            await service.register_schedule(_half_hourly())
            sub = service.subscribe()

            manual.set(_at(14, 0))
            run = await _next_run(sub)

            assert run.outcome is RunOutcome.SUCCEEDED
            assert run.occurrence.due_at == _at(14, 0)
            assert executor.due_instants("s") == [_at(14, 0)]
            assert [o.due_at for o in service.pending("s")][0] == _at(14, 30)

    @pytest.mark.asyncio
    async def test_nothing_fires_early(self, service, manual, executor):
        async with service:
            await service.register_schedule(_half_hourly())
            manual.set(_at(13, 59, 59))
            await asyncio.sleep(0.02)

            assert executor.count() == 0
            assert len(service.pending("s")) == 4

    @pytest.mark.asyncio
    async def test_per_schedule_order_after_jump(self, settings, manual):
        """Several due occurrences drained at once dispatch in due order."""
        settings = settings.model_copy(update={"max_concurrency": 1, "staleness_seconds": 7200})
        executor = RecordingExecutor()
        service = SchedulerService(executor, settings=settings, clock=manual)

        async with service:
            await service.register_schedule(_half_hourly("a"))
            await service.register_schedule(
                Schedule.from_minutes("b", time(14), time(20), [15, 45])
            )
            sub = service.subscribe()

            manual.set(_at(15, 50))
            runs = [await _next_run(sub) for _ in range(8)]

        assert all(r.succeeded for r in runs)
        assert executor.due_instants("a") == [_at(14, 0), _at(14, 30), _at(15, 0), _at(15, 30)]
        assert executor.due_instants("b") == [_at(14, 15), _at(14, 45), _at(15, 15), _at(15, 45)]
        all_dues = [c.due_at for c in executor.calls]
        assert all_dues == sorted(all_dues)

    @pytest.mark.asyncio
    async def test_missed_occurrences_reported_overrun(self, service, manual, executor):
        """After a long stall, occurrences past the staleness threshold are overruns."""
        async with service:
            await service.register_schedule(_half_hourly())
            sub = service.subscribe()

            manual.set(_at(14, 40))
            runs = [await _next_run(sub) for _ in range(2)]

        by_due = {r.occurrence.due_at: r for r in runs}
        assert by_due[_at(14, 0)].outcome is RunOutcome.OVERRUN
        assert by_due[_at(14, 30)].outcome is RunOutcome.OVERRUN
        assert executor.count() == 0

    @pytest.mark.asyncio
    async def test_horizon_top_up(self, service, manual):
        """Waking later extends the queue to the new horizon."""
        async with service:
            await service.register_schedule(_half_hourly())
            sub = service.subscribe()

            manual.set(_at(14, 0))
            await _next_run(sub)

            assert [o.due_at for o in service.pending("s")] == [
                _at(14, 30), _at(15, 0), _at(15, 30), _at(16, 0),
            ]

    @pytest.mark.asyncio
    async def test_max_occurrences_exhausts_schedule(self, service, manual, executor):
        async with service:
            await service.register_schedule(_half_hourly(max_occurrences=2))
            assert len(service.pending("s")) == 2
            sub = service.subscribe()

            manual.set(_at(14, 0))
            await _next_run(sub)
            manual.set(_at(14, 30))
            await _next_run(sub)

            health = service.health()
            assert health.schedules == 1
            assert health.active_schedules == 0
            assert service.pending("s") == []

            manual.set(_at(16, 0))
            await asyncio.sleep(0.02)
            assert executor.count() == 2


class TestWakeLatency:
    """Registration interrupts a sleeping loop."""

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_registration_wakes_sleeping_loop(self, settings, executor):
        """A schedule due in 2s is picked up at once, not at the old sleep target."""
        clock = OffsetClock(datetime(2024, 3, 5, 13, 59, 58, tzinfo=UTC))
        service = SchedulerService(executor, settings=settings, clock=clock)

        async with service:
            await service.register_schedule(Schedule.from_minutes("far", time(15), time(15), [0]))
            await asyncio.sleep(0.01)
            assert service.state is SchedulerState.WAITING
            sub = service.subscribe()

            started = monotonic_time.monotonic()
            await service.register_schedule(Schedule.from_minutes("near", time(14), time(14), [0]))
            assert monotonic_time.monotonic() - started < 0.05
            assert service.health().next_due == _at(14, 0)

            run = await _next_run(sub, timeout=5.0)

        assert run.schedule_id == "near"
        assert run.succeeded
        assert run.lateness < timedelta(milliseconds=500)


class TestCrash:
    """A failure in the loop itself stops the scheduler."""

    @pytest.mark.asyncio
    async def test_clock_failure_crashes_loop(self, settings, executor):
        clock = FailingClock(START)
        service = SchedulerService(executor, settings=settings, clock=clock)
        await service.start()

        clock.fail = True
        with pytest.raises(SchedulerCrashedError):
            await service.register_schedule(_half_hourly())

        with pytest.raises(SchedulerCrashedError):
            await service.shutdown()
        assert service.state is SchedulerState.STOPPED
        assert not service.health().healthy
        assert service.get_stats().last_error is not None

    @pytest.mark.asyncio
    async def test_crash_interrupts_in_flight_run(self, settings):
        """A run in flight when the loop dies is cancelled and reported once."""
        clock = FailingClock(START)
        executor = RecordingExecutor(gate=asyncio.Event())
        service = SchedulerService(executor, settings=settings, clock=clock)
        await service.start()
        await service.register_schedule(_half_hourly())
        sub = service.subscribe()

        clock.set(_at(14, 0))
        await asyncio.sleep(0.02)
        assert service.dispatcher.in_flight == 1

        clock.fail = True
        clock.advance(timedelta(hours=1))
        runs = await asyncio.wait_for(_collect(sub), 2.0)

        assert [r.outcome for r in runs] == [RunOutcome.INTERRUPTED]
        assert runs[0].error_type == "InterruptedRunError"
        assert executor.active == 0
        assert service.dispatcher.in_flight == 0
        with pytest.raises(SchedulerCrashedError):
            await service.shutdown()
        assert service.state is SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_register_during_crash_handling_fails_fast(self, settings):
        """Commands sent while the crashed loop winds down are rejected, not queued."""
        clock = FailingClock(START)
        executor = SlowToCancelExecutor()
        service = SchedulerService(executor, settings=settings, clock=clock)
        await service.start()
        await service.register_schedule(_half_hourly())

        clock.set(_at(14, 0))
        await asyncio.wait_for(executor.started.wait(), 1.0)
        clock.fail = True
        clock.advance(timedelta(hours=1))
        await asyncio.sleep(0.05)
        assert service.state is SchedulerState.SHUTTING_DOWN
        assert not service.is_running

        with pytest.raises(SchedulerCrashedError):
            await asyncio.wait_for(service.register_schedule(_half_hourly("late")), 0.5)
        with pytest.raises(SchedulerCrashedError):
            await asyncio.wait_for(service.cancel_schedule("s"), 0.5)

        with pytest.raises(SchedulerCrashedError):
            await service.shutdown()
        assert service.state is SchedulerState.STOPPED


class TestObservability:
    @pytest.mark.asyncio
    async def test_listener_and_stats(self, service, manual):
        seen = []
        service.add_listener(seen.append)

        async with service:
            await service.register_schedule(_half_hourly())
            sub = service.subscribe()
            manual.set(_at(14, 0))
            await _next_run(sub)

        stats = service.get_stats()
        assert len(seen) == 1
        assert stats.registered == 1
        assert stats.dispatched == 1
        assert stats.outcomes["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_health_to_dict(self, service):
        async with service:
            await service.register_schedule(_half_hourly())
            data = service.health().to_dict()

        assert data["healthy"] is True
        assert data["state"] == "waiting"
        assert data["pending"] == 4
        assert data["next_due"] == _at(14, 0).isoformat()
        assert data["stats"]["registered"] == 1

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_in_flight(self, settings, manual):
        executor = RecordingExecutor(gate=asyncio.Event())
        service = SchedulerService(executor, settings=settings, clock=manual)
        await service.start()
        await service.register_schedule(_half_hourly())
        sub = service.subscribe()

        manual.set(_at(14, 0))
        await asyncio.sleep(0.02)
        assert service.dispatcher.in_flight == 1

        await service.shutdown(grace_period=0.05)
        runs = [run async for run in sub]

        assert [r.outcome for r in runs] == [RunOutcome.INTERRUPTED]
        assert service.pending() == []
