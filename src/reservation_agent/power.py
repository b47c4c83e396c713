"""Keeps the machine awake across the autorun trigger."""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import sys
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

import structlog

from .config import Settings
from .errors import SleepInhibitError

LOGGER = structlog.get_logger(__name__)

CommandBuilder = Callable[[str], Sequence[str]]
ProcessLauncher = Callable[..., Awaitable["asyncio.subprocess.Process"]]

STOP_TIMEOUT_SECONDS = 5.0


class SleepInhibitor(Protocol):
    @property
    def is_held(self) -> bool:
        ...

    async def acquire(self, reason: str) -> None:
        ...

    async def release(self) -> None:
        ...


class MemorySleepInhibitor:
    """Records acquire/release calls; used in tests and where no tool exists."""

    def __init__(self) -> None:
        self.reason: Optional[str] = None
        self.history: List[str] = []

    @property
    def is_held(self) -> bool:
        return self.reason is not None

    async def acquire(self, reason: str) -> None:
        if self.is_held:
            return
        self.reason = reason
        self.history.append("acquire")

    async def release(self) -> None:
        if not self.is_held:
            return
        self.reason = None
        self.history.append("release")


def caffeinate_command(reason: str) -> Sequence[str]:
    # -w ties the assertion to this process so a crash cannot leave it behind.
    return ("caffeinate", "-i", "-w", str(os.getpid()))


def systemd_inhibit_command(reason: str) -> Sequence[str]:
    return (
        "systemd-inhibit",
        "--what=idle:sleep",
        "--who=reservation-agent",
        f"--why={reason}",
        "--mode=block",
        "sleep",
        "infinity",
    )


async def _launch(*args: str) -> "asyncio.subprocess.Process":
    return await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        start_new_session=True,
    )


class ProcessSleepInhibitor:
    """Blocks idle sleep for as long as a helper process (``caffeinate``, ``systemd-inhibit``) lives.

    The helper runs in its own process group so releasing also stops any
    child it spawned.
    """

    def __init__(self, command: CommandBuilder, launcher: ProcessLauncher = _launch):
        self._command = command
        self._launcher = launcher
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def is_held(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def acquire(self, reason: str) -> None:
        if self.is_held:
            return
        args = list(self._command(reason))
        try:
            self._process = await self._launcher(*args)
        except OSError as exc:
            raise SleepInhibitError(f"Cannot run {args[0]}: {exc}") from exc
        LOGGER.info("power.sleep_blocked", reason=reason, tool=args[0], pid=self._process.pid)

    async def release(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        if process.returncode is None:
            _signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), STOP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                _signal_group(process, signal.SIGKILL)
                await process.wait()
        LOGGER.info("power.sleep_allowed", pid=process.pid)


def _signal_group(process: "asyncio.subprocess.Process", signum: int) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        pass
    except (AttributeError, PermissionError):
        process.send_signal(signum)


def default_sleep_inhibitor(settings: Settings) -> Optional[SleepInhibitor]:
    if not settings.prevent_sleep_for_autorun:
        return None
    if sys.platform == "darwin" and shutil.which("caffeinate"):
        return ProcessSleepInhibitor(caffeinate_command)
    if sys.platform.startswith("linux") and shutil.which("systemd-inhibit"):
        return ProcessSleepInhibitor(systemd_inhibit_command)
    LOGGER.warning("power.unsupported_platform", platform=sys.platform)
    return MemorySleepInhibitor()
