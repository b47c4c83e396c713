import asyncio
import datetime as dt

import pytest

from fakes import (
    THURSDAY_EVENING,
    FakeEngine,
    SiteScript,
    automation_factory,
    make_config,
    make_settings,
    wait_until,
)
from reservation_agent.models import AppState, OutcomeKind, RunState, RunType, Weekday
from reservation_agent.orchestrator import EMERGENCY_REASON, Orchestrator
from reservation_agent.power import MemorySleepInhibitor
from reservation_agent.status import StatusBoard
from reservation_agent.store import MemoryConfigurationStore


class RecordingNotifier:
    def __init__(self):
        self.outcomes = []

    async def notify(self, outcome, config=None):
        self.outcomes.append(outcome)


def build(settings, clock, configs, sites=None, retrievers=None, inhibitor=None):
    engine = FakeEngine()
    sites = {} if sites is None else sites
    store = MemoryConfigurationStore(AppState(configurations=configs))
    factory = automation_factory(settings, engine, sites, clock, retrievers)
    notifier = RecordingNotifier()
    orchestrator = Orchestrator(
        settings,
        store,
        StatusBoard(clock=clock),
        factory,
        notifier=notifier,
        engine=engine,
        sleep_inhibitor=inhibitor,
        clock=clock,
    )
    return orchestrator, engine, store, notifier


async def test_run_single_success_updates_status_and_store(settings, clock):
    config = make_config()
    orchestrator, engine, store, notifier = build(settings, clock, [config])
    outcome = await orchestrator.run_single(config)
    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.run_type is RunType.MANUAL
    status = orchestrator.board.status_for(config.id)
    assert status.state is RunState.SUCCESS
    assert status.last_success_at == THURSDAY_EVENING
    assert store.runs[config.id].status.state is RunState.SUCCESS
    assert orchestrator.board.current_task == "Reservation completed successfully"
    assert notifier.outcomes == [outcome]


async def test_run_single_failure_carries_reason(settings, clock):
    config = make_config()
    orchestrator, *_ = build(settings, clock, [config], sites={config.name: SiteScript(sport_found=False)})
    outcome = await orchestrator.run_single(config)
    assert outcome.kind is OutcomeKind.FAILED
    assert "Badminton" in outcome.reason
    board = orchestrator.board
    assert board.status_for(config.id).state is RunState.FAILED
    assert board.last_run_status.state is RunState.FAILED
    assert board.last_run_status.reason == outcome.reason


async def test_run_multiple_uses_one_session_per_config(settings, clock):
    configs = [make_config("Saturday badminton"), make_config("Saturday volleyball", sport_name="Volleyball")]
    orchestrator, engine, *_ = build(settings, clock, configs)
    outcomes = await orchestrator.run_multiple(configs)
    assert [outcome.kind for outcome in outcomes] == [OutcomeKind.SUCCESS, OutcomeKind.SUCCESS]
    assert {outcome.run_type for outcome in outcomes} == {RunType.GODMODE}
    assert len({session.session_id for session in engine.sessions}) == 2
    assert engine.open_sessions == []
    assert orchestrator.board.current_task == "All 2 configurations completed successfully"


async def test_mixed_batch_aggregates_to_success(settings, clock):
    good = make_config("Saturday badminton")
    bad = make_config("Saturday volleyball", sport_name="Volleyball")
    orchestrator, *_ = build(settings, clock, [good, bad], sites={bad.name: SiteScript(sport_found=False)})
    await orchestrator.run_multiple([good, bad])
    board = orchestrator.board
    assert board.last_run_status.state is RunState.SUCCESS
    assert board.current_task == "1 successful, 1 failed"
    assert board.counts.succeeded == 1 and board.counts.failed == 1


async def test_already_running_config_is_not_eligible(settings, clock):
    config = make_config()
    block = asyncio.Event()
    orchestrator, *_ = build(settings, clock, [config], sites={config.name: SiteScript(block=block)})
    first = asyncio.create_task(orchestrator.run_single(config))
    await wait_until(lambda: orchestrator.board.is_running)
    second = await orchestrator.run_single(config)
    assert second.kind is OutcomeKind.NOT_ELIGIBLE
    assert second.reason == "already running"
    block.set()
    assert (await first).kind is OutcomeKind.SUCCESS


async def test_due_check_runs_due_configs_once(settings, clock):
    due = make_config("Saturday badminton")
    not_due = make_config("Monday squash", sport_name="Squash", slots={Weekday.MONDAY: [dt.time(7, 0)]})
    orchestrator, *_ = build(settings, clock, [due, not_due])
    outcomes = await orchestrator.check_due_configs()
    assert [outcome.config_name for outcome in outcomes] == ["Saturday badminton"]
    assert outcomes[0].run_type is RunType.AUTOMATIC
    assert await orchestrator.check_due_configs(now=THURSDAY_EVENING + dt.timedelta(seconds=1)) == []


async def test_due_check_is_not_reentrant(settings, clock):
    config = make_config()
    block = asyncio.Event()
    orchestrator, *_ = build(settings, clock, [config], sites={config.name: SiteScript(block=block)})
    first = asyncio.create_task(orchestrator.check_due_configs())
    await wait_until(lambda: orchestrator.board.is_running)
    assert orchestrator.is_checking
    assert await orchestrator.check_due_configs() == []
    block.set()
    assert len(await first) == 1
    assert not orchestrator.is_checking


async def test_due_check_respects_global_switch(settings, clock):
    config = make_config()
    orchestrator, engine, store, _ = build(settings, clock, [config])
    store.state = AppState(configurations=[config], global_enabled=False)
    assert await orchestrator.check_due_configs() == []
    assert engine.sessions == []


async def test_grace_check_only_picks_up_late_triggers(settings, clock):
    config = make_config()
    orchestrator, *_ = build(settings, clock, [config])
    early = THURSDAY_EVENING - dt.timedelta(seconds=3)
    assert await orchestrator.check_due_configs(now=early, grace=65) == []
    late = THURSDAY_EVENING + dt.timedelta(seconds=40)
    assert len(await orchestrator.check_due_configs(now=late, grace=65)) == 1


async def test_emergency_cleanup_fails_runs_and_closes_sessions(settings, clock):
    configs = [make_config("Saturday badminton"), make_config("Saturday volleyball", sport_name="Volleyball")]
    block = asyncio.Event()
    sites = {config.name: SiteScript(block=block) for config in configs}
    orchestrator, engine, store, _ = build(settings, clock, configs, sites=sites)
    batch = asyncio.create_task(orchestrator.run_multiple(configs))
    await wait_until(lambda: len(engine.sessions) == 2 and all(s.started for s in engine.sessions))
    await orchestrator.emergency_cleanup()
    outcomes = await batch
    assert {outcome.reason for outcome in outcomes} == {EMERGENCY_REASON}
    assert engine.open_sessions == []
    assert engine.close_all_calls == 1
    for config in configs:
        status = orchestrator.board.status_for(config.id)
        assert status.state is RunState.FAILED
        assert status.reason == EMERGENCY_REASON
        assert store.runs[config.id].status.state is RunState.FAILED
    assert not orchestrator.board.is_running
    assert orchestrator.active_runs() == []


async def test_nothing_starts_after_emergency_cleanup(settings, clock):
    config = make_config()
    orchestrator, engine, *_ = build(settings, clock, [config])
    await orchestrator.emergency_cleanup()
    assert await orchestrator.check_due_configs() == []
    outcome = await orchestrator.run_single(config)
    assert outcome.reason == EMERGENCY_REASON
    assert engine.sessions == []


async def test_overall_timeout_fails_the_run(tmp_path, clock):
    settings = make_settings(tmp_path, reservation_timeout_seconds=0.05)
    config = make_config()
    orchestrator, engine, *_ = build(settings, clock, [config], sites={config.name: SiteScript(block=asyncio.Event())})
    outcome = await orchestrator.run_single(config)
    assert outcome.kind is OutcomeKind.FAILED
    assert outcome.reason == "Reservation timed out after 0.05s"
    assert engine.open_sessions == []


@pytest.mark.parametrize("run_type", [RunType.MANUAL, RunType.GODMODE])
async def test_last_run_records_run_type(settings, clock, run_type):
    config = make_config()
    orchestrator, _, store, _ = build(settings, clock, [config])
    await orchestrator.run_multiple([config], run_type)
    assert store.runs[config.id].run_type is run_type


async def test_configs_due_at_the_trigger(settings, clock):
    due = make_config("Saturday badminton")
    not_due = make_config("Monday squash", sport_name="Squash", slots={Weekday.MONDAY: [dt.time(7, 0)]})
    orchestrator, _, store, _ = build(settings, clock, [due, not_due])
    assert orchestrator.configs_due_at(THURSDAY_EVENING) == [due]
    assert orchestrator.configs_due_at(THURSDAY_EVENING - dt.timedelta(minutes=5)) == []
    store.state = AppState(configurations=[due, not_due], global_enabled=False)
    assert orchestrator.configs_due_at(THURSDAY_EVENING) == []


async def test_sleep_is_allowed_once_the_automatic_batch_finishes(settings, clock):
    config = make_config()
    block = asyncio.Event()
    inhibitor = MemorySleepInhibitor()
    await inhibitor.acquire("autorun at 18:00:00")
    orchestrator, *_ = build(settings, clock, [config], sites={config.name: SiteScript(block=block)}, inhibitor=inhibitor)
    check = asyncio.create_task(orchestrator.check_due_configs())
    await wait_until(lambda: orchestrator.board.is_running)
    assert inhibitor.is_held
    block.set()
    assert len(await check) == 1
    assert not inhibitor.is_held
    assert inhibitor.history == ["acquire", "release"]


async def test_trigger_check_with_nothing_due_allows_sleep(settings, clock):
    inhibitor = MemorySleepInhibitor()
    await inhibitor.acquire("autorun at 18:00:00")
    orchestrator, *_ = build(settings, clock, [], inhibitor=inhibitor)
    assert await orchestrator.check_due_configs() == []
    assert not inhibitor.is_held


async def test_idle_backstop_check_keeps_sleep_blocked(settings, clock):
    inhibitor = MemorySleepInhibitor()
    await inhibitor.acquire("autorun at 18:00:00")
    orchestrator, *_ = build(settings, clock, [make_config()], inhibitor=inhibitor)
    early = THURSDAY_EVENING - dt.timedelta(minutes=3)
    assert await orchestrator.check_due_configs(now=early, grace=65) == []
    assert inhibitor.is_held


async def test_emergency_cleanup_allows_sleep(settings, clock):
    inhibitor = MemorySleepInhibitor()
    await inhibitor.acquire("autorun at 18:00:00")
    orchestrator, *_ = build(settings, clock, [], inhibitor=inhibitor)
    await orchestrator.emergency_cleanup()
    assert not inhibitor.is_held
