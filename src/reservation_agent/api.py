"""FastAPI application exposing run status and manual triggers."""

from __future__ import annotations

import datetime as dt
from typing import Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from . import __version__
from .config import Settings
from .errors import ConfigurationError
from .models import LastRunInfo, OutcomeKind, RunOutcome, RunStatus, RunType
from .orchestrator import Orchestrator
from .store import ConfigurationStore
from .time_rules import next_autorun_for
from .utils import now_in_timezone

LOGGER = structlog.get_logger(__name__)


class ConfigurationStatus(BaseModel):
    id: UUID
    name: str
    is_enabled: bool
    schedule: str
    status: RunStatus
    last_run: Optional[LastRunInfo] = None


class StatusResponse(BaseModel):
    """Response schema for the /status endpoint."""

    is_running: bool
    current_task: Optional[str]
    last_run_status: RunStatus
    last_run_at: Optional[dt.datetime]
    running: int
    succeeded: int
    failed: int
    global_enabled: bool
    configurations: List[ConfigurationStatus]


class NextAutorun(BaseModel):
    id: UUID
    name: str
    next_autorun: Optional[dt.datetime]


class NextResponse(BaseModel):
    generated_at: dt.datetime
    timezone: str
    trigger_time: str
    prior_days: int
    configurations: List[NextAutorun]


class OutcomeResponse(BaseModel):
    """One run result as returned to API callers."""

    config_id: UUID
    config_name: str
    kind: OutcomeKind
    run_type: RunType
    reason: Optional[str] = None
    status_text: str
    started_at: Optional[dt.datetime] = None
    finished_at: Optional[dt.datetime] = None

    @classmethod
    def from_outcome(cls, outcome: RunOutcome) -> "OutcomeResponse":
        return cls(
            config_id=outcome.config_id,
            config_name=outcome.config_name,
            kind=outcome.kind,
            run_type=outcome.run_type,
            reason=outcome.reason,
            status_text=outcome.status_text,
            started_at=outcome.started_at,
            finished_at=outcome.finished_at,
        )


class CheckResponse(BaseModel):
    outcomes: List[OutcomeResponse]


def create_app(orchestrator: Orchestrator, store: ConfigurationStore, settings: Settings) -> FastAPI:
    """Build the status API around an already constructed orchestrator."""

    app = FastAPI(title="Reservation Agent", version=__version__)

    def load_state():
        try:
            return store.load()
        except ConfigurationError as exc:
            LOGGER.error("api.configurations.invalid", error=str(exc))
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.get("/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        board = orchestrator.board
        state = load_state()
        counts = board.counts
        return StatusResponse(
            is_running=board.is_running,
            current_task=board.current_task,
            last_run_status=board.last_run_status,
            last_run_at=board.last_run_at,
            running=counts.running,
            succeeded=counts.succeeded,
            failed=counts.failed,
            global_enabled=state.global_enabled,
            configurations=[
                ConfigurationStatus(
                    id=config.id,
                    name=config.name,
                    is_enabled=config.is_enabled,
                    schedule=config.schedule_summary(),
                    status=board.status_for(config.id),
                    last_run=board.last_run_for(config.id),
                )
                for config in state.configurations
            ],
        )

    @app.get("/configurations/next", response_model=NextResponse)
    async def next_autoruns() -> NextResponse:
        state = load_state()
        policy = settings.autorun_policy()
        now = now_in_timezone(settings.timezone)
        entries: Dict[UUID, Optional[dt.datetime]] = {
            config.id: next_autorun_for(config, policy, now) if state.global_enabled else None
            for config in state.configurations
        }
        return NextResponse(
            generated_at=now,
            timezone=settings.timezone,
            trigger_time=policy.trigger_label,
            prior_days=policy.prior_days,
            configurations=[
                NextAutorun(id=config.id, name=config.name, next_autorun=entries[config.id])
                for config in state.configurations
            ],
        )

    @app.post("/configurations/{key}/run", response_model=OutcomeResponse)
    async def run_configuration(key: str) -> OutcomeResponse:
        """Run one configuration now and wait for the outcome."""
        state = load_state()
        config = state.find(key)
        if config is None:
            raise HTTPException(status_code=404, detail=f"No configuration matches {key!r}")
        LOGGER.info("api.run", config_id=str(config.id), config=config.name)
        outcome = await orchestrator.run_single(config, RunType.MANUAL)
        return OutcomeResponse.from_outcome(outcome)

    @app.post("/autorun/check", response_model=CheckResponse)
    async def autorun_check() -> CheckResponse:
        LOGGER.info("api.autorun_check")
        outcomes = await orchestrator.check_due_configs(grace=settings.backstop_grace_seconds)
        return CheckResponse(outcomes=[OutcomeResponse.from_outcome(outcome) for outcome in outcomes])

    return app
