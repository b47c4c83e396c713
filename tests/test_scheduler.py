import asyncio
import datetime as dt

from fakes import THURSDAY_EVENING, TORONTO, FakeOrchestrator, make_config, make_settings, wait_until
from reservation_agent.errors import SleepInhibitError, TriggerRegistrationError
from reservation_agent.models import AutorunPolicy
from reservation_agent.power import MemorySleepInhibitor
from reservation_agent.scheduler import AutorunScheduler, SchedulerState
from reservation_agent.triggers import MemoryTriggerRegistry, ScheduledTrigger

COMMAND = ("reservation-agent", "trigger")


class MovingClock:
    def __init__(self, now: dt.datetime):
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += dt.timedelta(seconds=seconds)


class BrokenRegistry(MemoryTriggerRegistry):
    async def register(self, trigger):
        raise TriggerRegistrationError("launchctl bootstrap failed (5): Input/output error")


class BrokenInhibitor(MemorySleepInhibitor):
    async def acquire(self, reason):
        raise SleepInhibitError("Cannot run caffeinate: No such file or directory")


class SlowOrchestrator(FakeOrchestrator):
    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def check_due_configs(self, now=None, grace=None):
        self.calls.append((now, grace))
        await self.release.wait()
        return []


def timer_delay(handle):
    return handle.when() - asyncio.get_running_loop().time()


def build(settings, clock, registry=None, orchestrator=None, inhibitor=None):
    registry = registry or MemoryTriggerRegistry()
    orchestrator = orchestrator or FakeOrchestrator()
    scheduler = AutorunScheduler(
        settings, orchestrator, registry, clock=clock, command=COMMAND, sleep_inhibitor=inhibitor
    )
    return scheduler, registry, orchestrator


async def test_arm_targets_the_next_trigger_and_registers_os_trigger(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(hours=1))
    scheduler, registry, _ = build(settings, clock)
    fire_at = scheduler.arm()
    assert fire_at == THURSDAY_EVENING
    assert scheduler.state is SchedulerState.ARMED
    await wait_until(lambda: registry.history)
    assert registry.history == [ScheduledTrigger.at_instant(settings.trigger_label, THURSDAY_EVENING, COMMAND)]
    await scheduler.stop()
    assert scheduler.state is SchedulerState.IDLE


async def test_rearming_cancels_the_pending_timer(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(hours=1))
    scheduler, registry, _ = build(settings, clock)
    scheduler.arm()
    first = scheduler._handle
    scheduler.arm()
    assert first.cancelled()
    assert not scheduler._handle.cancelled()
    await scheduler.stop()


async def test_fire_checks_due_configs_then_rearms_for_tomorrow(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(seconds=0.05))
    orchestrator = FakeOrchestrator(on_check=lambda: clock.advance(1))
    scheduler, registry, _ = build(settings, clock, orchestrator=orchestrator)
    scheduler.arm()
    await wait_until(lambda: orchestrator.calls and scheduler.next_fire_at > THURSDAY_EVENING)
    assert orchestrator.calls[0][1] is None
    assert scheduler.state is SchedulerState.ARMED
    assert scheduler.next_fire_at == THURSDAY_EVENING + dt.timedelta(days=1)
    await scheduler.stop()


async def test_policy_change_recomputes(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(hours=3))
    scheduler, registry, _ = build(settings, clock)
    scheduler.arm()
    scheduler.update_policy(AutorunPolicy(trigger_time=dt.time(19, 0), prior_days=3))
    assert scheduler.next_fire_at == THURSDAY_EVENING + dt.timedelta(hours=1)
    assert scheduler.policy.prior_days == 3
    await wait_until(lambda: len(registry.history) == 2)
    assert registry.history[-1].minute == ScheduledTrigger.at_instant("x", scheduler.next_fire_at, COMMAND).minute
    await scheduler.stop()


async def test_registration_failure_does_not_disarm(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(hours=1))
    scheduler, *_ = build(settings, clock, registry=BrokenRegistry())
    scheduler.arm()
    await asyncio.sleep(0.01)
    assert scheduler.state is SchedulerState.ARMED
    await scheduler.stop()


async def test_external_trigger_uses_grace_window(settings):
    clock = MovingClock(THURSDAY_EVENING)
    scheduler, _, orchestrator = build(settings, clock)
    scheduler.on_external_trigger()
    await wait_until(lambda: orchestrator.calls)
    assert orchestrator.calls == [(None, settings.backstop_grace_seconds)]
    await scheduler.stop()


async def test_backstop_poll_keeps_checking(tmp_path):
    settings = make_settings(tmp_path, backstop_poll_seconds=0.01)
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(hours=1))
    scheduler, _, orchestrator = build(settings, clock)
    await scheduler.start()
    await wait_until(lambda: len(orchestrator.calls) >= 3)
    assert all(grace == settings.backstop_grace_seconds for _, grace in orchestrator.calls)
    await scheduler.stop()


async def test_arming_across_spring_forward_counts_real_seconds(settings):
    # Toronto moves to EDT at 02:00 on 2026-03-08, so that day is 23 hours long.
    clock = MovingClock(dt.datetime(2026, 3, 7, 18, 0, 1, tzinfo=TORONTO))
    scheduler, *_ = build(settings, clock)
    fire_at = scheduler.arm()
    assert fire_at == dt.datetime(2026, 3, 8, 18, 0, tzinfo=TORONTO)
    assert abs(timer_delay(scheduler._handle) - (23 * 3600 - 1)) < 1
    await scheduler.stop()


async def test_arming_across_fall_back_counts_real_seconds(settings):
    clock = MovingClock(dt.datetime(2026, 10, 31, 18, 0, 1, tzinfo=TORONTO))
    scheduler, *_ = build(settings, clock)
    scheduler.arm()
    assert abs(timer_delay(scheduler._handle) - (25 * 3600 - 1)) < 1
    await scheduler.stop()


async def test_fire_rearms_before_the_batch_finishes(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(seconds=0.02))
    orchestrator = SlowOrchestrator()
    scheduler, *_ = build(settings, clock, orchestrator=orchestrator)
    scheduler.arm()
    await wait_until(lambda: orchestrator.calls)
    assert scheduler.state is SchedulerState.ARMED
    assert scheduler.next_fire_at == THURSDAY_EVENING + dt.timedelta(days=1)
    orchestrator.release.set()
    await scheduler.stop()


async def test_sleep_is_blocked_ahead_of_a_due_trigger(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(minutes=2))
    inhibitor = MemorySleepInhibitor()
    orchestrator = FakeOrchestrator(due=[make_config()])
    scheduler, *_ = build(settings, clock, orchestrator=orchestrator, inhibitor=inhibitor)
    scheduler.arm()
    await wait_until(lambda: inhibitor.is_held)
    assert orchestrator.due_queries == [THURSDAY_EVENING]
    assert "18:00:00" in inhibitor.reason
    await scheduler.stop()


async def test_sleep_is_not_blocked_when_nothing_is_due(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(minutes=2))
    inhibitor = MemorySleepInhibitor()
    orchestrator = FakeOrchestrator()
    scheduler, *_ = build(settings, clock, orchestrator=orchestrator, inhibitor=inhibitor)
    scheduler.arm()
    await wait_until(lambda: orchestrator.due_queries)
    assert not inhibitor.is_held
    await scheduler.stop()


async def test_sleep_prevention_waits_for_the_lead_window(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(hours=1))
    scheduler, *_ = build(settings, clock, inhibitor=MemorySleepInhibitor())
    scheduler.arm()
    assert abs(timer_delay(scheduler._prepare_handle) - (3600 - settings.sleep_lead_seconds)) < 1
    first = scheduler._prepare_handle
    scheduler.arm()
    assert first.cancelled()
    await scheduler.stop()
    assert scheduler._prepare_handle is None


async def test_sleep_prevention_failure_keeps_the_timer(settings):
    clock = MovingClock(THURSDAY_EVENING - dt.timedelta(minutes=1))
    orchestrator = FakeOrchestrator(due=[make_config()])
    scheduler, *_ = build(settings, clock, orchestrator=orchestrator, inhibitor=BrokenInhibitor())
    scheduler.arm()
    await wait_until(lambda: orchestrator.due_queries)
    await asyncio.sleep(0.01)
    assert scheduler.state is SchedulerState.ARMED
    await scheduler.stop()
