"""Entry point for running reservations: single, multiple and scheduled."""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

import structlog

from .automation import ProgressCallback, ReservationAutomation
from .browser import BrowserEngine
from .config import CredentialVault, Settings
from .email_client import create_mailbox
from .errors import describe
from .models import OutcomeKind, ReservationConfig, RunOutcome, RunState, RunType
from .power import SleepInhibitor
from .status import StatusBoard
from .store import ConfigurationStore
from .telegram import TelegramNotifier
from .time_rules import is_due_now, is_overdue
from .utils import now_in_timezone
from .verification import VerificationCodeRetriever

LOGGER = structlog.get_logger(__name__)

EMERGENCY_REASON = "Emergency cleanup - automation was interrupted unexpectedly"

AutomationFactory = Callable[[ReservationConfig, ProgressCallback], ReservationAutomation]
Clock = Callable[[], dt.datetime]


@dataclass
class ActiveRun:
    config: ReservationConfig
    run_type: RunType
    automation: ReservationAutomation
    task: "asyncio.Task[object]"


def build_automation_factory(settings: Settings, engine: BrowserEngine, vault: CredentialVault) -> AutomationFactory:
    """Production wiring: one fresh browser session and mailbox per run."""

    def retriever() -> VerificationCodeRetriever:
        return VerificationCodeRetriever(settings, lambda: create_mailbox(settings, vault))

    def build(config: ReservationConfig, progress: ProgressCallback) -> ReservationAutomation:
        return ReservationAutomation(
            config,
            settings,
            session_factory=engine.create_session,
            retriever_factory=retriever,
            progress=progress,
        )

    return build


class Orchestrator:
    """Fans reservations out to automations and owns every status write.

    Constructed once at startup and handed to whatever triggers runs (the
    scheduler, the status API, the CLI). All status changes go through
    this object; concurrent runs never share a browser session.
    """

    def __init__(
        self,
        settings: Settings,
        store: ConfigurationStore,
        board: StatusBoard,
        automation_factory: AutomationFactory,
        *,
        notifier: Optional[TelegramNotifier] = None,
        engine: Optional[BrowserEngine] = None,
        sleep_inhibitor: Optional[SleepInhibitor] = None,
        clock: Optional[Clock] = None,
    ):
        self._settings = settings
        self._store = store
        self._board = board
        self._automation_factory = automation_factory
        self._notifier = notifier
        self._engine = engine
        self._sleep_inhibitor = sleep_inhibitor
        self._clock = clock or (lambda: now_in_timezone(settings.timezone))
        self._active: Dict[UUID, ActiveRun] = {}
        self._checking = False
        self._handled: Set[Tuple[UUID, dt.date]] = set()
        self._shutting_down = False

    @property
    def board(self) -> StatusBoard:
        return self._board

    @property
    def sleep_inhibitor(self) -> Optional[SleepInhibitor]:
        return self._sleep_inhibitor

    @property
    def is_checking(self) -> bool:
        return self._checking

    def active_runs(self) -> List[ActiveRun]:
        return list(self._active.values())

    def configs_due_at(self, instant: dt.datetime) -> List[ReservationConfig]:
        """Configurations the trigger firing at ``instant`` would start."""
        state = self._store.load()
        if not state.global_enabled:
            return []
        policy = self._settings.autorun_policy()
        return [config for config in state.configurations if is_due_now(config, policy, instant, 0)]

    async def run_single(self, config: ReservationConfig, run_type: RunType = RunType.MANUAL) -> RunOutcome:
        """Run one configuration and wait for its outcome."""
        outcomes = await self._run_batch([config], run_type)
        return outcomes[0]

    async def run_multiple(
        self, configs: Iterable[ReservationConfig], run_type: RunType = RunType.GODMODE
    ) -> List[RunOutcome]:
        """Run every configuration concurrently, each in its own browser session."""
        return await self._run_batch(list(configs), run_type)

    async def check_due_configs(
        self, now: Optional[dt.datetime] = None, grace: Optional[float] = None
    ) -> List[RunOutcome]:
        """Run the configurations due at ``now``.

        With ``grace`` the check accepts triggers up to ``grace`` seconds in the
        past instead of the symmetric jitter tolerance. A check that starts
        while another is still in flight does nothing. The trigger-time check,
        and any check that ran a batch, lets the machine sleep again once
        nothing is running.
        """
        if self._checking:
            LOGGER.info("orchestrator.check.skipped", reason="check already in flight")
            return []
        if self._shutting_down:
            return []
        self._checking = True
        ran = False
        try:
            now = now or self._clock()
            state = self._store.load()
            if not state.global_enabled:
                LOGGER.info("orchestrator.check.disabled")
                return []
            policy = self._settings.autorun_policy()
            tolerance = self._settings.trigger_tolerance_seconds
            self._handled = {entry for entry in self._handled if entry[1] >= now.date()}
            due = []
            for config in state.configurations:
                if grace is None:
                    is_due = is_due_now(config, policy, now, tolerance)
                else:
                    is_due = is_overdue(config, policy, now, grace)
                if not is_due:
                    continue
                if (config.id, now.date()) in self._handled or self._is_running(config):
                    LOGGER.debug("orchestrator.check.already_handled", config_id=str(config.id))
                    continue
                due.append(config)
            if not due:
                return []
            self._handled.update((config.id, now.date()) for config in due)
            LOGGER.info("orchestrator.check.due", count=len(due), names=[config.name for config in due])
            ran = True
            return await self._run_batch(due, RunType.AUTOMATIC)
        finally:
            self._checking = False
            if ran or grace is None:
                await self._allow_sleep()

    async def emergency_cleanup(self, run_type: Optional[RunType] = None) -> None:
        """Abort everything in flight; no session or mailbox connection survives."""
        self._shutting_down = True
        active = list(self._active.values())
        LOGGER.warning("orchestrator.emergency_cleanup", active=len(active))
        for run in active:
            if self._board.status_for(run.config.id).state is RunState.RUNNING:
                self._board.mark_failed(run.config.id, run_type or run.run_type, EMERGENCY_REASON)
                self._persist(run.config.id)
        for run in active:
            await run.automation.abort()
            run.task.cancel()
        if active:
            await asyncio.gather(*(run.task for run in active), return_exceptions=True)
        if self._engine is not None:
            await self._engine.close_all()
        for config_id in self._board.running_ids():
            self._board.mark_failed(config_id, run_type or RunType.MANUAL, EMERGENCY_REASON)
            self._persist(config_id)
        self._board.finish_batch()
        await self._allow_sleep()

    async def _allow_sleep(self) -> None:
        inhibitor = self._sleep_inhibitor
        if inhibitor is None or not inhibitor.is_held or self._board.is_running:
            return
        await inhibitor.release()

    async def _run_batch(self, configs: List[ReservationConfig], run_type: RunType) -> List[RunOutcome]:
        configs = list({config.id: config for config in configs}.values())
        eligible = [config for config in configs if not self._is_running(config)]
        skipped = [self._not_eligible(config, run_type, "already running") for config in configs if self._is_running(config)]
        if not eligible:
            return skipped
        label = f"Running {len(eligible)} configurations" if len(eligible) > 1 else f"Starting reservation for {eligible[0].name}"
        self._board.begin_batch([config.id for config in eligible], label)
        # Claimed before the first await so a concurrent batch sees them as running.
        for config in eligible:
            self._board.mark_running(config.id, run_type)
            self._persist(config.id)
        try:
            outcomes = await asyncio.gather(*(self._run(config, run_type) for config in eligible))
        finally:
            self._board.finish_batch()
        return list(outcomes) + skipped

    async def _run(self, config: ReservationConfig, run_type: RunType) -> RunOutcome:
        log = LOGGER.bind(config_id=str(config.id), config=config.name, run_type=run_type.value)
        started_at = self._clock()
        if self._shutting_down:
            self._finish(config, run_type, EMERGENCY_REASON)
            return self._outcome(config, run_type, EMERGENCY_REASON, started_at)
        try:
            automation = self._automation_factory(config, self._board.set_task)
        except Exception as exc:
            reason = describe(exc)
            log.error("orchestrator.run.setup_failed", reason=reason)
            self._finish(config, run_type, reason)
            return self._outcome(config, run_type, reason, started_at)
        timeout = self._settings.reservation_timeout_seconds
        task = asyncio.ensure_future(asyncio.wait_for(automation.run(), timeout))
        self._active[config.id] = ActiveRun(config=config, run_type=run_type, automation=automation, task=task)
        log.info("orchestrator.run.start")
        reason: Optional[str] = None
        try:
            await task
        except asyncio.TimeoutError:
            reason = f"Reservation timed out after {timeout:g}s"
        except asyncio.CancelledError:
            if not self._shutting_down:
                self._finish(config, run_type, "Reservation was cancelled")
                raise
            reason = EMERGENCY_REASON
        except Exception as exc:
            reason = automation.failure_reason or describe(exc)
        finally:
            self._active.pop(config.id, None)

        self._finish(config, run_type, reason)
        outcome = self._outcome(config, run_type, reason, started_at)
        log.info("orchestrator.run.finished", outcome=outcome.kind.value, reason=reason)
        if self._notifier is not None:
            await self._notifier.notify(outcome, config)
        return outcome

    def _outcome(
        self, config: ReservationConfig, run_type: RunType, reason: Optional[str], started_at: dt.datetime
    ) -> RunOutcome:
        return RunOutcome(
            config_id=config.id,
            config_name=config.name,
            kind=OutcomeKind.SUCCESS if reason is None else OutcomeKind.FAILED,
            run_type=run_type,
            reason=reason,
            started_at=started_at,
            finished_at=self._clock(),
        )

    def _is_running(self, config: ReservationConfig) -> bool:
        return config.id in self._active or self._board.status_for(config.id).state is RunState.RUNNING

    def _finish(self, config: ReservationConfig, run_type: RunType, reason: Optional[str]) -> None:
        if self._board.status_for(config.id).state is not RunState.RUNNING:
            return
        if reason is None:
            self._board.mark_success(config.id, run_type)
        else:
            self._board.mark_failed(config.id, run_type, reason)
        self._persist(config.id)

    def _persist(self, config_id: UUID) -> None:
        info = self._board.last_run_for(config_id)
        if info is None:
            return
        try:
            self._store.record_last_run(config_id, info)
        except OSError as exc:
            LOGGER.warning("orchestrator.persist.failed", config_id=str(config_id), error=str(exc))

    def _not_eligible(self, config: ReservationConfig, run_type: RunType, reason: str) -> RunOutcome:
        LOGGER.info("orchestrator.run.not_eligible", config_id=str(config.id), reason=reason)
        now = self._clock()
        return RunOutcome(
            config_id=config.id,
            config_name=config.name,
            kind=OutcomeKind.NOT_ELIGIBLE,
            run_type=run_type,
            reason=reason,
            started_at=now,
            finished_at=now,
        )
