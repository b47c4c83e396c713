"""Entry point for the reservation agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional, Sequence

import structlog
import uvicorn

from .api import create_app
from .browser import BrowserEngine
from .config import Settings, SettingsCredentialVault
from .errors import ConfigurationError
from .models import AppState, OutcomeKind, ReservationConfig, RunOutcome, RunType
from .orchestrator import Orchestrator, build_automation_factory
from .power import default_sleep_inhibitor
from .scheduler import AutorunScheduler
from .status import StatusBoard
from .store import JsonConfigurationStore
from .telegram import TelegramNotifier
from .time_rules import next_autorun_for
from .triggers import InstanceBeacon, default_registry
from .utils import now_in_timezone

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_NOT_ELIGIBLE = 3


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog + stdlib logging."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.EventRenamer("event"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


LOGGER = structlog.get_logger(__name__)


def build_orchestrator(settings: Settings, store: JsonConfigurationStore) -> Orchestrator:
    """Construct the object graph shared by ``serve`` and ``run``."""
    board = StatusBoard()
    board.seed(store.last_runs())
    engine = BrowserEngine(settings)
    factory = build_automation_factory(settings, engine, SettingsCredentialVault(settings))
    return Orchestrator(
        settings,
        store,
        board,
        factory,
        notifier=TelegramNotifier(settings),
        engine=engine,
        sleep_inhibitor=default_sleep_inhibitor(settings),
    )


def open_store(settings: Settings) -> JsonConfigurationStore:
    return JsonConfigurationStore(settings.configurations_path, settings.last_runs_path)


async def serve(settings: Settings) -> int:
    """Long-running instance: scheduler, signal handling and the optional API."""
    beacon = InstanceBeacon(settings.pid_file)
    if not beacon.claim():
        print("Another reservation agent instance is already running.", file=sys.stderr)
        return EXIT_USAGE

    store = open_store(settings)
    orchestrator = build_orchestrator(settings, store)
    scheduler = AutorunScheduler(
        settings, orchestrator, default_registry(), sleep_inhibitor=orchestrator.sleep_inhibitor
    )
    stop = asyncio.Event()
    _install_signal_handlers(stop, scheduler)

    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task] = None
    try:
        await scheduler.start()
        if settings.api_enabled:
            app = create_app(orchestrator, store, settings)
            server = uvicorn.Server(
                uvicorn.Config(app, host=settings.api_host, port=settings.api_port, log_config=None)
            )
            server_task = asyncio.create_task(server.serve(), name="status-api")
            # The server stopping on its own (bind failure, its own signal capture) ends the instance.
            server_task.add_done_callback(lambda _: stop.set())
            LOGGER.info("api.started", host=settings.api_host, port=settings.api_port)
        LOGGER.info("agent.serving", pid_file=str(settings.pid_file))
        await stop.wait()
    finally:
        LOGGER.info("agent.shutdown")
        await scheduler.stop()
        await orchestrator.emergency_cleanup()
        if server is not None and server_task is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
        beacon.release()
    return EXIT_SUCCESS


def _install_signal_handlers(stop: asyncio.Event, scheduler: AutorunScheduler) -> None:
    loop = asyncio.get_running_loop()
    handlers = [(signal.SIGINT, stop.set), (getattr(signal, "SIGTERM", None), stop.set)]
    handlers.append((getattr(signal, "SIGUSR1", None), scheduler.on_external_trigger))
    for signum, handler in handlers:
        if signum is None:
            continue
        try:
            loop.add_signal_handler(signum, handler)
        except (NotImplementedError, RuntimeError):
            LOGGER.warning("agent.signal.unsupported", signal=int(signum))


def trigger(settings: Settings) -> int:
    """OS trigger launch path: nudge a running instance or do nothing."""
    beacon = InstanceBeacon(settings.pid_file)
    if beacon.signal_running():
        return EXIT_SUCCESS
    LOGGER.info("trigger.no_instance", pid_file=str(settings.pid_file))
    return EXIT_SUCCESS


def select_configs(state: AppState, names: Sequence[str], run_all: bool) -> List[ReservationConfig]:
    if run_all:
        return [config for config in state.configurations if config.is_enabled]
    selected = []
    for name in names:
        config = state.find(name)
        if config is None:
            raise ConfigurationError(f"No configuration matches {name!r}")
        selected.append(config)
    return selected


def exit_code_for(outcomes: Sequence[RunOutcome]) -> int:
    kinds = {outcome.kind for outcome in outcomes}
    if OutcomeKind.FAILED in kinds:
        return EXIT_FAILED
    if OutcomeKind.SUCCESS in kinds:
        return EXIT_SUCCESS
    return EXIT_NOT_ELIGIBLE


async def run_now(settings: Settings, names: Sequence[str], run_all: bool) -> int:
    """Manual (one configuration) or god-mode (several) run from the command line."""
    store = open_store(settings)
    configs = select_configs(store.load(), names, run_all)
    if not configs:
        print("No configurations to run.", file=sys.stderr)
        return EXIT_NOT_ELIGIBLE
    orchestrator = build_orchestrator(settings, store)
    try:
        if len(configs) == 1:
            outcomes = [await orchestrator.run_single(configs[0], RunType.MANUAL)]
        else:
            outcomes = await orchestrator.run_multiple(configs, RunType.GODMODE)
    except asyncio.CancelledError:
        await orchestrator.emergency_cleanup()
        raise
    for outcome in outcomes:
        print(outcome.status_text)
    return exit_code_for(outcomes)


def print_status(settings: Settings) -> int:
    store = open_store(settings)
    state = store.load()
    runs = store.last_runs()
    if not state.global_enabled:
        print("Autorun is globally disabled.")
    for config in state.configurations:
        info = runs.get(config.id)
        last = f"{info.status.description} ({info.run_type.display_name}, {info.at:%Y-%m-%d %H:%M})" if info else "Never run"
        flag = "" if config.is_enabled else " [disabled]"
        print(f"{config.name}{flag}: {last}")
    return EXIT_SUCCESS


def print_next(settings: Settings) -> int:
    store = open_store(settings)
    state = store.load()
    policy = settings.autorun_policy()
    now = now_in_timezone(settings.timezone)
    print(f"Trigger {policy.trigger_label}, {policy.prior_days} day(s) ahead ({settings.timezone})")
    for config in state.configurations:
        instant = next_autorun_for(config, policy, now) if state.global_enabled else None
        when = f"{instant:%a %Y-%m-%d %H:%M:%S}" if instant else "not scheduled"
        print(f"{config.name}: {when}")
    return EXIT_SUCCESS


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Book recurring facility time slots automatically.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at debug level.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("serve", help="Run the long-lived instance that fires autoruns.")
    commands.add_parser("trigger", help="Invoked by the OS scheduler; signals a running instance.")
    run_parser = commands.add_parser("run", help="Run configurations now.")
    run_parser.add_argument("names", nargs="*", help="Configuration names or ids.")
    run_parser.add_argument("--all", dest="run_all", action="store_true", help="Run every enabled configuration.")
    commands.add_parser("status", help="Show the last run of every configuration.")
    commands.add_parser("next", help="Show upcoming autorun instants.")

    args = parser.parse_args(argv)
    if args.command == "run" and not args.names and not args.run_all:
        parser.error("run needs at least one configuration name or --all")
    return args


def cli(argv: Optional[Sequence[str]] = None) -> None:
    """Console script entrypoint."""
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = Settings()
    except Exception as exc:  # pragma: no cover - startup validation
        LOGGER.exception("settings.error", error=str(exc))
        raise SystemExit(EXIT_USAGE) from exc

    try:
        if args.command == "serve":
            code = asyncio.run(serve(settings))
        elif args.command == "trigger":
            code = trigger(settings)
        elif args.command == "run":
            code = asyncio.run(run_now(settings, args.names, args.run_all))
        elif args.command == "status":
            code = print_status(settings)
        else:
            code = print_next(settings)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_USAGE) from exc
    except KeyboardInterrupt as exc:
        raise SystemExit(EXIT_FAILED) from exc
    except Exception as exc:  # pragma: no cover - top level
        LOGGER.exception("agent.failed", error=str(exc))
        raise SystemExit(EXIT_FAILED) from exc
    raise SystemExit(code)
