"""In-process stand-ins for the browser, booking site, mailbox and orchestrator."""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set
from uuid import uuid4

from zoneinfo import ZoneInfo

from reservation_agent.automation import ReservationAutomation
from reservation_agent.config import Settings
from reservation_agent.email_client import SearchQuery
from reservation_agent.errors import AutomationFailed, VerificationTimeout
from reservation_agent.models import Email, ReservationConfig, TimeSlot, Weekday
from reservation_agent.site import CodeResult, PageState

TORONTO = ZoneInfo("America/Toronto")

# 2026-10-15 is a Thursday; with the default two prior days it books Saturday.
THURSDAY_EVENING = dt.datetime(2026, 10, 15, 18, 0, 0, tzinfo=TORONTO)

FACILITY_URL = "https://reservation.frontdesksuite.ca/rcfs/nepeansportsplex"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        contact_name="Jordan Lee",
        contact_phone="613-555-0199",
        contact_email="jordan@example.com",
        mail_address="jordan@example.com",
        mail_password="secret",
        mail_server="imap.example.com",
        timezone="America/Toronto",
        state_dir=tmp_path,
        verification_timeout_seconds=2.0,
        verification_poll_seconds=0.01,
        verification_initial_wait_seconds=0.0,
        reservation_timeout_seconds=5.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_config(
    name: str = "Saturday badminton",
    slots: Optional[Dict[Weekday, List[dt.time]]] = None,
    **overrides,
) -> ReservationConfig:
    if slots is None:
        slots = {Weekday.SATURDAY: [dt.time(8, 30), dt.time(9, 30)]}
    return ReservationConfig(
        name=name,
        facility_url=overrides.pop("facility_url", FACILITY_URL),
        sport_name=overrides.pop("sport_name", "Badminton"),
        day_time_slots={day: [TimeSlot(time=value) for value in times] for day, times in slots.items()},
        **overrides,
    )


class FakeSession:
    def __init__(self, on_close: Optional[Callable[["FakeSession"], None]] = None):
        self.session_id = uuid4().hex[:12]
        self.started = False
        self.close_calls = 0
        self._on_close = on_close

    @property
    def is_connected(self) -> bool:
        return self.started and self.close_calls == 0

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.close_calls += 1
        if self._on_close is not None:
            self._on_close(self)


class FakeEngine:
    def __init__(self) -> None:
        self.sessions: List[FakeSession] = []
        self.close_all_calls = 0

    def create_session(self) -> FakeSession:
        session = FakeSession()
        self.sessions.append(session)
        return session

    @property
    def open_sessions(self) -> List[FakeSession]:
        return [session for session in self.sessions if session.is_connected]

    async def close_all(self) -> None:
        self.close_all_calls += 1
        for session in list(self.sessions):
            await session.close()


@dataclass
class SiteScript:
    """How the fake booking site behaves for one configuration."""

    sport_found: bool = True
    offered_slots: Optional[Set[str]] = None
    post_submit: PageState = field(default_factory=lambda: PageState(confirmed=True))
    accepted_codes: Set[str] = field(default_factory=set)
    confirmed_after_leaving: bool = False
    leave_page_on_code: bool = False
    block: Optional[asyncio.Event] = None
    calls: List[str] = field(default_factory=list)
    entered_codes: List[str] = field(default_factory=list)


class FakePage:
    def __init__(self, session: FakeSession, script: SiteScript):
        self.session = session
        self.script = script

    async def open(self, url: str) -> None:
        self.script.calls.append("open")
        if self.script.block is not None:
            await self.script.block.wait()

    async def select_sport(self, sport_name: str) -> None:
        self.script.calls.append("select_sport")
        if not self.script.sport_found:
            raise AutomationFailed("select_sport", f"Sport button '{sport_name}' not found on the facility page")

    async def set_party_size(self, number_of_people: int) -> None:
        self.script.calls.append("set_party_size")

    async def select_time_slot(self, day_short_name: str, time_label: str) -> bool:
        self.script.calls.append(f"slot {time_label} {day_short_name}")
        offered = self.script.offered_slots
        return offered is None or f"{time_label} {day_short_name}" in offered

    async def fill_contact(self, name: str, phone: str, email: str) -> None:
        self.script.calls.append("fill_contact")

    async def submit_contact(self, max_attempts: int) -> PageState:
        self.script.calls.append("submit_contact")
        return PageState()

    async def await_post_submit(self, timeout: float) -> PageState:
        return self.script.post_submit

    async def enter_verification_code(self, code: str) -> CodeResult:
        self.script.entered_codes.append(code)
        if self.script.leave_page_on_code:
            return CodeResult.LEFT_PAGE
        return CodeResult.ACCEPTED if code in self.script.accepted_codes else CodeResult.REJECTED

    async def page_state(self) -> PageState:
        return PageState(confirmed=self.script.confirmed_after_leaving)


class FakeRetriever:
    """Hands out one batch of codes per wait; runs out into a timeout."""

    def __init__(self, batches: Optional[List[List[str]]] = None):
        self.batches = [list(batch) for batch in batches or []]
        self.waits: List[List[str]] = []
        self.closed = False

    async def initial_wait(self) -> None:
        return None

    async def wait_for_codes(self, since, exclude=(), timeout=None) -> List[str]:
        self.waits.append(list(exclude))
        while self.batches:
            codes = [code for code in self.batches.pop(0) if code not in exclude]
            if codes:
                return codes
        raise VerificationTimeout(timeout or 0, tried=len(exclude))

    async def close(self) -> None:
        self.closed = True


class FakeMailbox:
    """Mailbox holding fixed messages; ``arrivals`` land after the given number of searches."""

    def __init__(self, messages: Optional[List[Email]] = None, arrivals: Optional[Dict[int, List[Email]]] = None):
        self.messages: Dict[str, Email] = {message.uid: message for message in messages or []}
        self.arrivals = arrivals or {}
        self.queries: List[SearchQuery] = []
        self.fetched: List[str] = []
        self.connects = 0
        self.disconnects = 0

    async def connect(self) -> None:
        self.connects += 1

    async def search_emails(self, query: SearchQuery) -> List[str]:
        self.queries.append(query)
        for message in self.arrivals.pop(len(self.queries), []):
            self.messages[message.uid] = message
        return list(self.messages)

    async def fetch_email(self, uid: str) -> Email:
        self.fetched.append(uid)
        return self.messages[uid]

    async def disconnect(self) -> None:
        self.disconnects += 1


class FakeOrchestrator:
    """Records due checks coming from the scheduler."""

    def __init__(self, on_check: Optional[Callable[[], None]] = None, due: Optional[List[ReservationConfig]] = None):
        self.calls: List[tuple] = []
        self.due_queries: List[dt.datetime] = []
        self._on_check = on_check
        self._due = due or []

    def configs_due_at(self, instant: dt.datetime) -> List[ReservationConfig]:
        self.due_queries.append(instant)
        return list(self._due)

    async def check_due_configs(self, now: Optional[dt.datetime] = None, grace: Optional[float] = None):
        self.calls.append((now, grace))
        if self._on_check is not None:
            self._on_check()
        return []


def automation_factory(settings, engine: FakeEngine, sites: Dict[str, SiteScript], clock, retrievers=None):
    """Orchestrator factory building real automations over the fakes.

    ``retrievers`` maps a configuration name to the code batches its
    retriever hands out.
    """
    retrievers = retrievers or {}
    built: List[ReservationAutomation] = []

    def build(config: ReservationConfig, progress) -> ReservationAutomation:
        script = sites.setdefault(config.name, SiteScript())
        automation = ReservationAutomation(
            config,
            settings,
            session_factory=engine.create_session,
            retriever_factory=lambda: FakeRetriever(retrievers.get(config.name)),
            page_factory=lambda session, _settings: FakePage(session, script),
            clock=clock,
            progress=progress,
        )
        built.append(automation)
        return automation

    build.built = built
    return build


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
