"""OS-level scheduled triggers and the signal path to a running instance."""

from __future__ import annotations

import asyncio
import datetime as dt
import os
import plistlib
import shlex
import shutil
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import structlog

from .errors import TriggerRegistrationError

LOGGER = structlog.get_logger(__name__)

CommandRunner = Callable[..., Awaitable[Tuple[int, str, str]]]

CRON_TAG_PREFIX = "# reservation-agent:"


@dataclass(frozen=True)
class ScheduledTrigger:
    """A daily OS wake-up at ``hour:minute`` (host local time) running ``command``.

    OS schedulers work in whole minutes. An instant with seconds is rounded up
    to the next minute so the wake-up never lands before the trigger, where the
    late-only backstop check would reject it.
    """

    label: str
    hour: int
    minute: int
    command: Tuple[str, ...]

    @classmethod
    def at_instant(cls, label: str, instant: dt.datetime, command: Tuple[str, ...]) -> "ScheduledTrigger":
        local = instant.astimezone() if instant.tzinfo is not None else instant
        if local.second or local.microsecond:
            local = local.replace(second=0, microsecond=0) + dt.timedelta(minutes=1)
        return cls(label=label, hour=local.hour, minute=local.minute, command=tuple(command))


class TriggerRegistry(Protocol):
    async def register(self, trigger: ScheduledTrigger) -> None:
        ...

    async def unregister(self, label: str) -> None:
        ...

    async def query(self, label: str) -> Optional[ScheduledTrigger]:
        ...


async def run_command(*args: str, stdin: Optional[str] = None) -> Tuple[int, str, str]:
    """Run a command and return ``(returncode, stdout, stderr)``."""
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise TriggerRegistrationError(f"Cannot run {args[0]}: {exc}") from exc
    out, err = await process.communicate(stdin.encode() if stdin is not None else None)
    return process.returncode or 0, out.decode(errors="replace"), err.decode(errors="replace")


def trigger_command() -> Tuple[str, ...]:
    """How the OS re-invokes this program on the trigger path."""
    executable = shutil.which("reservation-agent")
    if executable:
        return (executable, "trigger")
    return (sys.executable, "-m", "reservation_agent", "trigger")


class MemoryTriggerRegistry:
    """In-process registry for tests and platforms without a supported scheduler."""

    def __init__(self) -> None:
        self.triggers: Dict[str, ScheduledTrigger] = {}
        self.history: List[ScheduledTrigger] = []

    async def register(self, trigger: ScheduledTrigger) -> None:
        self.triggers[trigger.label] = trigger
        self.history.append(trigger)

    async def unregister(self, label: str) -> None:
        self.triggers.pop(label, None)

    async def query(self, label: str) -> Optional[ScheduledTrigger]:
        return self.triggers.get(label)


class LaunchdTriggerRegistry:
    """macOS LaunchAgent with a ``StartCalendarInterval`` entry."""

    def __init__(
        self,
        agents_dir: Optional[Path] = None,
        logs_dir: Optional[Path] = None,
        runner: CommandRunner = run_command,
    ):
        self._agents_dir = agents_dir or Path.home() / "Library" / "LaunchAgents"
        self._logs_dir = logs_dir or Path.home() / "Library" / "Logs" / "reservation-agent"
        self._runner = runner

    def plist_path(self, label: str) -> Path:
        return self._agents_dir / f"{label}.plist"

    @property
    def _domain(self) -> str:
        return f"gui/{os.getuid()}"

    async def register(self, trigger: ScheduledTrigger) -> None:
        path = self.plist_path(trigger.label)
        payload = {
            "Label": trigger.label,
            "ProgramArguments": list(trigger.command),
            "StartCalendarInterval": {"Hour": trigger.hour, "Minute": trigger.minute},
            "RunAtLoad": False,
            "StandardOutPath": str(self._logs_dir / "scheduled.log"),
            "StandardErrorPath": str(self._logs_dir / "scheduled_error.log"),
        }
        try:
            self._agents_dir.mkdir(parents=True, exist_ok=True)
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(plistlib.dumps(payload))
        except OSError as exc:
            raise TriggerRegistrationError(f"Cannot write {path}: {exc}") from exc
        # Replacing a loaded agent requires unloading it first; failure just means it was not loaded.
        await self._runner("launchctl", "bootout", self._domain, str(path))
        code, _, err = await self._runner("launchctl", "bootstrap", self._domain, str(path))
        if code != 0:
            raise TriggerRegistrationError(f"launchctl bootstrap failed ({code}): {err.strip()}")
        LOGGER.info("trigger.launchd.registered", label=trigger.label, hour=trigger.hour, minute=trigger.minute)

    async def unregister(self, label: str) -> None:
        path = self.plist_path(label)
        if not path.exists():
            return
        await self._runner("launchctl", "bootout", self._domain, str(path))
        try:
            path.unlink()
        except OSError as exc:
            raise TriggerRegistrationError(f"Cannot remove {path}: {exc}") from exc
        LOGGER.info("trigger.launchd.unregistered", label=label)

    async def query(self, label: str) -> Optional[ScheduledTrigger]:
        path = self.plist_path(label)
        if not path.exists():
            return None
        try:
            payload = plistlib.loads(path.read_bytes())
        except (OSError, plistlib.InvalidFileException) as exc:
            LOGGER.warning("trigger.launchd.unreadable", path=str(path), error=str(exc))
            return None
        interval = payload.get("StartCalendarInterval", {})
        return ScheduledTrigger(
            label=payload.get("Label", label),
            hour=int(interval.get("Hour", 0)),
            minute=int(interval.get("Minute", 0)),
            command=tuple(payload.get("ProgramArguments", ())),
        )


class CrontabTriggerRegistry:
    """One tagged line in the user's crontab."""

    def __init__(self, runner: CommandRunner = run_command):
        self._runner = runner

    async def _read(self) -> List[str]:
        code, out, err = await self._runner("crontab", "-l")
        if code != 0:
            # "no crontab for <user>" is the normal empty state.
            if "no crontab" in err.lower():
                return []
            raise TriggerRegistrationError(f"crontab -l failed ({code}): {err.strip()}")
        return out.splitlines()

    async def _write(self, lines: List[str]) -> None:
        text = "\n".join(lines) + "\n" if lines else ""
        code, _, err = await self._runner("crontab", "-", stdin=text)
        if code != 0:
            raise TriggerRegistrationError(f"crontab install failed ({code}): {err.strip()}")

    @staticmethod
    def _tag(label: str) -> str:
        return f"{CRON_TAG_PREFIX}{label}"

    async def register(self, trigger: ScheduledTrigger) -> None:
        tag = self._tag(trigger.label)
        lines = [line for line in await self._read() if not line.endswith(tag)]
        command = " ".join(shlex.quote(part) for part in trigger.command)
        lines.append(f"{trigger.minute} {trigger.hour} * * * {command} {tag}")
        await self._write(lines)
        LOGGER.info("trigger.cron.registered", label=trigger.label, hour=trigger.hour, minute=trigger.minute)

    async def unregister(self, label: str) -> None:
        tag = self._tag(label)
        lines = await self._read()
        kept = [line for line in lines if not line.endswith(tag)]
        if kept != lines:
            await self._write(kept)

    async def query(self, label: str) -> Optional[ScheduledTrigger]:
        tag = self._tag(label)
        for line in await self._read():
            if not line.endswith(tag):
                continue
            fields = shlex.split(line[: -len(tag)])
            if len(fields) < 6:
                return None
            return ScheduledTrigger(
                label=label, hour=int(fields[1]), minute=int(fields[0]), command=tuple(fields[5:])
            )
        return None


def default_registry() -> TriggerRegistry:
    if sys.platform == "darwin":
        return LaunchdTriggerRegistry()
    if os.name == "posix" and shutil.which("crontab"):
        return CrontabTriggerRegistry()
    LOGGER.warning("trigger.unsupported_platform", platform=sys.platform)
    return MemoryTriggerRegistry()


class InstanceBeacon:
    """Pid file marking the long-running instance so trigger launches can find it."""

    def __init__(self, pid_file: Path):
        self.pid_file = pid_file

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def running_pid(self) -> Optional[int]:
        """Pid of a live instance, ignoring stale files."""
        pid = self._read_pid()
        if pid is None or pid <= 0:
            return None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return None
        except PermissionError:
            return pid
        return pid

    def claim(self) -> bool:
        pid = self.running_pid()
        if pid is not None and pid != os.getpid():
            LOGGER.warning("beacon.already_running", pid=pid)
            return False
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()))
        LOGGER.info("beacon.claimed", pid=os.getpid(), path=str(self.pid_file))
        return True

    def release(self) -> None:
        if self._read_pid() == os.getpid():
            self.pid_file.unlink(missing_ok=True)

    def signal_running(self) -> bool:
        """Ask the running instance to check due configurations now."""
        wake = getattr(signal, "SIGUSR1", None)
        pid = self.running_pid()
        if pid is None or wake is None:
            return False
        os.kill(pid, wake)
        LOGGER.info("beacon.signalled", pid=pid)
        return True

