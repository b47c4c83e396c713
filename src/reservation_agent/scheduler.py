"""Arms the daily autorun timer, the backstop poll, the OS trigger and sleep prevention."""

from __future__ import annotations

import asyncio
import datetime as dt
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

import structlog

from .config import Settings
from .errors import SleepInhibitError, TriggerRegistrationError
from .models import AutorunPolicy, RunOutcome
from .orchestrator import Orchestrator
from .power import SleepInhibitor
from .time_rules import next_trigger_after, seconds_until
from .triggers import ScheduledTrigger, TriggerRegistry, trigger_command
from .utils import now_in_timezone

LOGGER = structlog.get_logger(__name__)

Clock = Callable[[], dt.datetime]


class SchedulerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"


class AutorunScheduler:
    """Fires the orchestrator's due check at the daily trigger time.

    Three paths lead to the same check: the precise one-shot timer, a
    low-frequency backstop poll (missed timers after sleep or clock
    changes) and an external nudge from the OS trigger. The orchestrator
    deduplicates them.

    When a sleep inhibitor is supplied and the coming trigger has work, the
    machine is kept awake from ``sleep_lead_seconds`` before it; the
    orchestrator lets it sleep again once the autorun batch is done.
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: Orchestrator,
        registry: TriggerRegistry,
        *,
        policy: Optional[AutorunPolicy] = None,
        clock: Optional[Clock] = None,
        command: Optional[Tuple[str, ...]] = None,
        sleep_inhibitor: Optional[SleepInhibitor] = None,
    ):
        self._settings = settings
        self._orchestrator = orchestrator
        self._registry = registry
        self._policy = policy or settings.autorun_policy()
        self._clock = clock or (lambda: now_in_timezone(settings.timezone))
        self._command = command or trigger_command()
        self._handle: Optional[asyncio.TimerHandle] = None
        self._sleep_inhibitor = sleep_inhibitor
        self._prepare_handle: Optional[asyncio.TimerHandle] = None
        self._backstop: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self.state = SchedulerState.IDLE
        self.next_fire_at: Optional[dt.datetime] = None

    @property
    def policy(self) -> AutorunPolicy:
        return self._policy

    async def start(self) -> None:
        self.arm()
        if self._backstop is None:
            self._backstop = asyncio.create_task(self._backstop_loop(), name="autorun-backstop")
        LOGGER.info("scheduler.started", poll_seconds=self._settings.backstop_poll_seconds)

    async def stop(self) -> None:
        self._disarm()
        tasks = list(self._tasks)
        if self._backstop is not None:
            tasks.append(self._backstop)
            self._backstop = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        LOGGER.info("scheduler.stopped")

    def arm(self, after: Optional[dt.datetime] = None) -> dt.datetime:
        """Cancel any pending timer and arm one for the next trigger instant.

        ``after`` is the instant to search from when it is later than now,
        so a timer that fires a little early does not re-arm for itself.
        """
        self._disarm()
        loop = asyncio.get_running_loop()
        now = self._clock()
        reference = after if after is not None and seconds_until(after, now) > 0 else now
        fire_at = next_trigger_after(self._policy, reference)
        delay = max(0.0, seconds_until(fire_at, now))
        self._handle = loop.call_later(delay, self._on_timer)
        if self._sleep_inhibitor is not None:
            lead = max(0.0, delay - self._settings.sleep_lead_seconds)
            self._prepare_handle = loop.call_later(lead, self._on_prepare, fire_at)
        self.state = SchedulerState.ARMED
        self.next_fire_at = fire_at
        LOGGER.info("scheduler.armed", fire_at=fire_at.isoformat(), delay_seconds=round(delay, 1))
        self._spawn(self._register_os_trigger(fire_at), "os-trigger")
        return fire_at

    def update_policy(self, policy: AutorunPolicy) -> None:
        self._policy = policy
        LOGGER.info("scheduler.policy_changed", trigger=policy.trigger_label, prior_days=policy.prior_days)
        self.arm()

    def on_external_trigger(self) -> None:
        """Entry point for the OS trigger signal."""
        LOGGER.info("scheduler.external_trigger")
        self._spawn(self.check_overdue(), "external-trigger")

    async def check_overdue(self) -> List[RunOutcome]:
        return await self._orchestrator.check_due_configs(grace=self._settings.backstop_grace_seconds)

    def _disarm(self) -> None:
        for handle in (self._handle, self._prepare_handle):
            if handle is not None:
                handle.cancel()
        self._handle = self._prepare_handle = None
        self.state = SchedulerState.IDLE

    def _on_timer(self) -> None:
        fired_for = self.next_fire_at
        self._handle = None
        now = self._clock()
        LOGGER.info("scheduler.fired", at=now.isoformat())
        # Re-armed before the batch starts; the batch may run for minutes.
        self.arm(after=fired_for)
        self._spawn(self._orchestrator.check_due_configs(now=now), "autorun")

    def _on_prepare(self, fire_at: dt.datetime) -> None:
        self._prepare_handle = None
        self._spawn(self._prevent_sleep(fire_at), "sleep-prevention")

    async def _prevent_sleep(self, fire_at: dt.datetime) -> None:
        inhibitor = self._sleep_inhibitor
        if inhibitor is None or inhibitor.is_held:
            return
        due = self._orchestrator.configs_due_at(fire_at)
        if not due:
            LOGGER.debug("scheduler.sleep_prevention.nothing_due", fire_at=fire_at.isoformat())
            return
        try:
            await inhibitor.acquire(f"reservation-agent: {len(due)} autorun(s) at {fire_at:%H:%M:%S}")
        except SleepInhibitError as exc:
            LOGGER.warning("scheduler.sleep_prevention.failed", error=str(exc))

    async def _backstop_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.backstop_poll_seconds)
            await self.check_overdue()

    async def _register_os_trigger(self, fire_at: dt.datetime) -> None:
        trigger = ScheduledTrigger.at_instant(self._settings.trigger_label, fire_at, self._command)
        try:
            await self._registry.register(trigger)
        except TriggerRegistrationError as exc:
            LOGGER.warning("scheduler.os_trigger.failed", error=str(exc))

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("scheduler.task.failed", task=task.get_name(), error=str(exc), exc_info=exc)
