import datetime as dt
import os
import plistlib

import pytest

from reservation_agent.errors import TriggerRegistrationError
from reservation_agent.triggers import (
    CrontabTriggerRegistry,
    InstanceBeacon,
    LaunchdTriggerRegistry,
    MemoryTriggerRegistry,
    ScheduledTrigger,
    run_command,
)

LABEL = "com.reservation-agent.scheduled"
TRIGGER = ScheduledTrigger(label=LABEL, hour=18, minute=0, command=("/usr/local/bin/reservation-agent", "trigger"))


class FakeCrontab:
    def __init__(self, text=None):
        self.text = text
        self.calls = []

    async def __call__(self, *args, stdin=None):
        self.calls.append(args)
        if args == ("crontab", "-l"):
            if self.text is None:
                return 1, "", "no crontab for jordan\n"
            return 0, self.text, ""
        if args == ("crontab", "-"):
            self.text = stdin
            return 0, "", ""
        raise AssertionError(args)


class FakeLaunchctl:
    def __init__(self, bootstrap_code=0):
        self.calls = []
        self.bootstrap_code = bootstrap_code

    async def __call__(self, *args, stdin=None):
        self.calls.append(args)
        if args[1] == "bootstrap":
            return self.bootstrap_code, "", "Bootstrap failed: 5: Input/output error"
        return 0, "", ""


def test_trigger_from_naive_instant_keeps_wall_clock():
    trigger = ScheduledTrigger.at_instant(LABEL, dt.datetime(2026, 10, 15, 18, 0), ("agent", "trigger"))
    assert (trigger.hour, trigger.minute) == (18, 0)


def test_trigger_with_seconds_rounds_up_to_next_minute():
    trigger = ScheduledTrigger.at_instant(LABEL, dt.datetime(2026, 10, 15, 18, 0, 30), ("agent", "trigger"))
    assert (trigger.hour, trigger.minute) == (18, 1)
    late = ScheduledTrigger.at_instant(LABEL, dt.datetime(2026, 10, 15, 23, 59, 1), ("agent", "trigger"))
    assert (late.hour, late.minute) == (0, 0)


async def test_memory_registry():
    registry = MemoryTriggerRegistry()
    await registry.register(TRIGGER)
    assert await registry.query(LABEL) == TRIGGER
    await registry.unregister(LABEL)
    assert await registry.query(LABEL) is None


async def test_crontab_register_replaces_previous_line():
    crontab = FakeCrontab("0 3 * * * /usr/bin/backup\n")
    registry = CrontabTriggerRegistry(runner=crontab)
    await registry.register(TRIGGER)
    await registry.register(ScheduledTrigger(label=LABEL, hour=17, minute=45, command=TRIGGER.command))
    lines = crontab.text.splitlines()
    assert lines[0] == "0 3 * * * /usr/bin/backup"
    assert lines[1] == f"45 17 * * * /usr/local/bin/reservation-agent trigger # reservation-agent:{LABEL}"
    assert len(lines) == 2
    found = await registry.query(LABEL)
    assert (found.hour, found.minute, found.command) == (17, 45, TRIGGER.command)


async def test_crontab_quotes_paths_with_spaces():
    crontab = FakeCrontab()
    registry = CrontabTriggerRegistry(runner=crontab)
    trigger = ScheduledTrigger(label=LABEL, hour=6, minute=5, command=("/Users/Jordan Lee/bin/agent", "trigger"))
    await registry.register(trigger)
    assert "'/Users/Jordan Lee/bin/agent'" in crontab.text
    assert (await registry.query(LABEL)).command == trigger.command


async def test_crontab_unregister_and_empty_state():
    crontab = FakeCrontab()
    registry = CrontabTriggerRegistry(runner=crontab)
    assert await registry.query(LABEL) is None
    await registry.register(TRIGGER)
    await registry.unregister(LABEL)
    assert await registry.query(LABEL) is None
    assert crontab.text == ""


async def test_crontab_read_failure_raises():
    async def broken(*args, stdin=None):
        return 1, "", "crontab: permission denied"

    with pytest.raises(TriggerRegistrationError):
        await CrontabTriggerRegistry(runner=broken).register(TRIGGER)


async def test_launchd_writes_plist_and_bootstraps(tmp_path):
    launchctl = FakeLaunchctl()
    registry = LaunchdTriggerRegistry(tmp_path / "agents", tmp_path / "logs", runner=launchctl)
    await registry.register(TRIGGER)
    payload = plistlib.loads(registry.plist_path(LABEL).read_bytes())
    assert payload["StartCalendarInterval"] == {"Hour": 18, "Minute": 0}
    assert payload["ProgramArguments"] == list(TRIGGER.command)
    assert [call[1] for call in launchctl.calls] == ["bootout", "bootstrap"]
    assert launchctl.calls[1][2] == f"gui/{os.getuid()}"
    assert await registry.query(LABEL) == TRIGGER
    await registry.unregister(LABEL)
    assert not registry.plist_path(LABEL).exists()
    assert await registry.query(LABEL) is None


async def test_launchd_bootstrap_failure_raises(tmp_path):
    registry = LaunchdTriggerRegistry(tmp_path / "agents", tmp_path / "logs", runner=FakeLaunchctl(bootstrap_code=5))
    with pytest.raises(TriggerRegistrationError):
        await registry.register(TRIGGER)


async def test_run_command_missing_binary():
    with pytest.raises(TriggerRegistrationError):
        await run_command("reservation-agent-no-such-binary")


async def test_run_command_captures_output():
    code, out, _ = await run_command("sh", "-c", "cat", stdin="hello")
    assert (code, out) == (0, "hello")


def test_beacon_claim_and_release(tmp_path):
    beacon = InstanceBeacon(tmp_path / "agent.pid")
    assert beacon.running_pid() is None
    assert beacon.claim()
    assert beacon.running_pid() == os.getpid()
    assert beacon.claim()
    beacon.release()
    assert not beacon.pid_file.exists()


def test_beacon_ignores_stale_pid(tmp_path):
    pid_file = tmp_path / "agent.pid"
    pid_file.write_text("4194305")
    beacon = InstanceBeacon(pid_file)
    assert beacon.running_pid() is None
    assert not beacon.signal_running()
    pid_file.write_text("garbage")
    assert beacon.running_pid() is None
