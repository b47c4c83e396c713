"""Run status store and the event channel presentation layers subscribe to."""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Set
from uuid import UUID

import structlog

from .models import LastRunInfo, RunState, RunStatus, RunType

LOGGER = structlog.get_logger(__name__)

Clock = Callable[[], dt.datetime]


class InvalidTransition(RuntimeError):
    """A status change that would skip or repeat the running state."""


@dataclass(frozen=True)
class StatusCounts:
    running: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass(frozen=True)
class StatusEvent:
    """Snapshot published after every status mutation."""

    at: dt.datetime
    is_running: bool
    last_run_status: RunStatus
    current_task: Optional[str]
    counts: StatusCounts
    config_id: Optional[UUID] = None
    config_status: Optional[RunStatus] = None


@dataclass
class Subscription:
    """Async iterator over status events; close it to stop receiving."""

    queue: "asyncio.Queue[StatusEvent]"
    _board: "StatusBoard" = field(repr=False)

    def __aiter__(self) -> AsyncIterator[StatusEvent]:
        return self

    async def __anext__(self) -> StatusEvent:
        return await self.queue.get()

    def get_nowait(self) -> StatusEvent:
        return self.queue.get_nowait()

    def drain(self) -> List[StatusEvent]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._board.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class StatusBoard:
    """Per-configuration run status plus the aggregate the UI shows.

    Only the orchestrator mutates the board; everything else reads it or
    subscribes to its events.
    """

    def __init__(self, clock: Optional[Clock] = None, queue_size: int = 256):
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))
        self._queue_size = queue_size
        self._statuses: Dict[UUID, RunStatus] = {}
        self._last_runs: Dict[UUID, LastRunInfo] = {}
        self._batch: Set[UUID] = set()
        self._subscribers: List[Subscription] = []
        self.last_run_status = RunStatus()
        self.last_run_at: Optional[dt.datetime] = None
        self.current_task: Optional[str] = None

    # -- reads -----------------------------------------------------------

    def status_for(self, config_id: UUID) -> RunStatus:
        return self._statuses.get(config_id, RunStatus())

    def last_run_for(self, config_id: UUID) -> Optional[LastRunInfo]:
        return self._last_runs.get(config_id)

    @property
    def statuses(self) -> Dict[UUID, RunStatus]:
        return dict(self._statuses)

    @property
    def is_running(self) -> bool:
        return any(status.state is RunState.RUNNING for status in self._statuses.values())

    def running_ids(self) -> List[UUID]:
        return [key for key, status in self._statuses.items() if status.state is RunState.RUNNING]

    @property
    def counts(self) -> StatusCounts:
        states = [self.status_for(config_id).state for config_id in self._batch]
        return StatusCounts(
            running=states.count(RunState.RUNNING),
            succeeded=states.count(RunState.SUCCESS),
            failed=states.count(RunState.FAILED),
        )

    def seed(self, last_runs: Dict[UUID, LastRunInfo]) -> None:
        """Load persisted last-run info so restarts keep their history."""
        for config_id, info in last_runs.items():
            self._last_runs[config_id] = info
            status = info.status
            if status.state is RunState.RUNNING:
                status = status.model_copy(update={"state": RunState.FAILED, "reason": "Interrupted by restart"})
            self._statuses[config_id] = status

    # -- writes ----------------------------------------------------------

    def begin_batch(self, config_ids: Iterable[UUID], task: str) -> None:
        if not self.is_running:
            self._batch.clear()
        self._batch.update(config_ids)
        self.current_task = task
        self.last_run_status = RunStatus(state=RunState.RUNNING)
        self.last_run_at = self._clock()
        self._publish()

    def set_task(self, task: str) -> None:
        self.current_task = task
        self._publish()

    def mark_running(self, config_id: UUID, run_type: RunType) -> RunStatus:
        previous = self.status_for(config_id)
        if previous.state is RunState.RUNNING:
            raise InvalidTransition(f"{config_id} is already running")
        status = previous.model_copy(update={"state": RunState.RUNNING, "reason": None})
        return self._store(config_id, status, run_type)

    def mark_success(self, config_id: UUID, run_type: RunType) -> RunStatus:
        previous = self._require_running(config_id)
        status = previous.model_copy(
            update={"state": RunState.SUCCESS, "reason": None, "last_success_at": self._clock()}
        )
        return self._store(config_id, status, run_type)

    def mark_failed(self, config_id: UUID, run_type: RunType, reason: str) -> RunStatus:
        previous = self._require_running(config_id)
        status = previous.model_copy(
            update={"state": RunState.FAILED, "reason": reason, "last_failure_at": self._clock()}
        )
        return self._store(config_id, status, run_type)

    def finish_batch(self) -> RunStatus:
        """Fold the finished batch into ``last_run_status``."""
        counts = self.counts
        total = counts.succeeded + counts.failed
        if counts.running:
            return self.last_run_status
        if total == 0:
            self.last_run_status = RunStatus()
        elif counts.failed == 0:
            self.last_run_status = RunStatus(state=RunState.SUCCESS)
            self.current_task = (
                "Reservation completed successfully"
                if total == 1
                else f"All {total} configurations completed successfully"
            )
        elif counts.succeeded == 0:
            reason = (
                self._single_failure_reason()
                if total == 1
                else f"All {total} configurations failed"
            )
            self.last_run_status = RunStatus(state=RunState.FAILED, reason=reason)
            self.current_task = reason
        else:
            self.last_run_status = RunStatus(state=RunState.SUCCESS)
            self.current_task = f"{counts.succeeded} successful, {counts.failed} failed"
        self.last_run_at = self._clock()
        self._publish()
        return self.last_run_status

    # -- subscriptions ---------------------------------------------------

    def subscribe(self) -> Subscription:
        subscription = Subscription(queue=asyncio.Queue(maxsize=self._queue_size), _board=self)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    # -- internals -------------------------------------------------------

    def _require_running(self, config_id: UUID) -> RunStatus:
        previous = self.status_for(config_id)
        if previous.state is not RunState.RUNNING:
            raise InvalidTransition(f"{config_id} is {previous.state.value}, expected running")
        return previous

    def _single_failure_reason(self) -> str:
        for config_id in self._batch:
            status = self.status_for(config_id)
            if status.state is RunState.FAILED:
                return status.reason or "Reservation failed"
        return "Reservation failed"

    def _store(self, config_id: UUID, status: RunStatus, run_type: RunType) -> RunStatus:
        self._statuses[config_id] = status
        self._last_runs[config_id] = LastRunInfo(status=status, at=self._clock(), run_type=run_type)
        LOGGER.debug("status.changed", config_id=str(config_id), state=status.state.value, reason=status.reason)
        self._publish(config_id, status)
        return status

    def _publish(self, config_id: Optional[UUID] = None, status: Optional[RunStatus] = None) -> None:
        event = StatusEvent(
            at=self._clock(),
            is_running=self.is_running,
            last_run_status=self.last_run_status,
            current_task=self.current_task,
            counts=self.counts,
            config_id=config_id,
            config_status=status,
        )
        for subscription in list(self._subscribers):
            queue = subscription.queue
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
