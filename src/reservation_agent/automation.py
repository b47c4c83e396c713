"""State machine for a single reservation attempt."""

from __future__ import annotations

import asyncio
import datetime as dt
from enum import Enum
from typing import Callable, List, Optional

import structlog

from .browser import BrowserSession
from .config import Settings
from .errors import (
    AutomationFailed,
    ConfigurationError,
    ReservationError,
    RunAborted,
    VerificationFailed,
    VerificationTimeout,
    describe,
)
from .models import AutorunPolicy, ReservationConfig
from .site import CodeResult, FacilityBookingPage
from .time_rules import ReservationTarget, reservation_target
from .utils import get_zone
from .verification import VerificationCodeRetriever

LOGGER = structlog.get_logger(__name__)

# How long the page after the contact submit may take to show either outcome.
POST_SUBMIT_SETTLE_SECONDS = 8.0


class AutomationState(str, Enum):
    START = "start"
    NAVIGATED_TO_FACILITY = "navigated_to_facility"
    SPORT_SELECTED = "sport_selected"
    PARTY_SIZE_SET = "party_size_set"
    TIME_SLOT_SELECTED = "time_slot_selected"
    CONTACT_FORM_FILLED = "contact_form_filled"
    SUBMITTED = "submitted"
    AWAITING_VERIFICATION = "awaiting_verification"
    CODE_RETRIEVED = "code_retrieved"
    CONFIRMED = "confirmed"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AutomationState.DONE, AutomationState.FAILED)


_TRANSITIONS = {
    AutomationState.START: {AutomationState.NAVIGATED_TO_FACILITY},
    AutomationState.NAVIGATED_TO_FACILITY: {AutomationState.SPORT_SELECTED},
    AutomationState.SPORT_SELECTED: {AutomationState.PARTY_SIZE_SET},
    AutomationState.PARTY_SIZE_SET: {AutomationState.TIME_SLOT_SELECTED},
    AutomationState.TIME_SLOT_SELECTED: {AutomationState.CONTACT_FORM_FILLED},
    AutomationState.CONTACT_FORM_FILLED: {AutomationState.SUBMITTED},
    AutomationState.SUBMITTED: {AutomationState.AWAITING_VERIFICATION, AutomationState.CONFIRMED},
    AutomationState.AWAITING_VERIFICATION: {AutomationState.CODE_RETRIEVED},
    AutomationState.CODE_RETRIEVED: {AutomationState.CONFIRMED, AutomationState.AWAITING_VERIFICATION},
    AutomationState.CONFIRMED: {AutomationState.DONE},
}

_PROGRESS = {
    AutomationState.START: "Starting browser session",
    AutomationState.NAVIGATED_TO_FACILITY: "Facility page loaded",
    AutomationState.SPORT_SELECTED: "Sport selected",
    AutomationState.PARTY_SIZE_SET: "Group size confirmed",
    AutomationState.TIME_SLOT_SELECTED: "Time slot selected",
    AutomationState.CONTACT_FORM_FILLED: "Contact information filled",
    AutomationState.SUBMITTED: "Contact information submitted",
    AutomationState.AWAITING_VERIFICATION: "Waiting for verification email",
    AutomationState.CODE_RETRIEVED: "Trying verification code",
    AutomationState.CONFIRMED: "Reservation confirmed",
    AutomationState.DONE: "Reservation completed successfully",
}


SessionFactory = Callable[[], BrowserSession]
PageFactory = Callable[[BrowserSession, Settings], FacilityBookingPage]
RetrieverFactory = Callable[[], VerificationCodeRetriever]
ProgressCallback = Callable[[str], None]
Clock = Callable[[], dt.datetime]


class ReservationAutomation:
    """Sequences one booking from the facility page to the confirmation.

    Steps run strictly in order. Any error moves the machine to ``FAILED``
    and is re-raised unchanged for the orchestrator to report; nothing is
    retried within the run apart from the site's own "Retry" bot check on
    the contact form.
    """

    def __init__(
        self,
        config: ReservationConfig,
        settings: Settings,
        *,
        session_factory: SessionFactory,
        retriever_factory: RetrieverFactory,
        page_factory: PageFactory = FacilityBookingPage,
        policy: Optional[AutorunPolicy] = None,
        clock: Optional[Clock] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        self.config = config
        self._settings = settings
        self._session_factory = session_factory
        self._retriever_factory = retriever_factory
        self._page_factory = page_factory
        self._policy = policy or settings.autorun_policy()
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))
        self._progress = progress
        self.state = AutomationState.START
        self.history: List[AutomationState] = [AutomationState.START]
        self.failure_reason: Optional[str] = None
        self.booked_slot: Optional[str] = None
        self.session: Optional[BrowserSession] = None
        self._retriever: Optional[VerificationCodeRetriever] = None
        self._aborted = False
        self._log = LOGGER.bind(config_id=str(config.id), config=config.name)

    async def run(self) -> AutomationState:
        if self.state is not AutomationState.START:
            raise RuntimeError("An automation instance runs once")
        try:
            self._check_contact_details()
            target = self._target()
            self._notify(_PROGRESS[AutomationState.START])
            self.session = self._session_factory()
            await self.session.start()
            self._log = self._log.bind(session_id=self.session.session_id)
            if self._aborted:
                raise RunAborted("Automation was aborted")
            page = self._page_factory(self.session, self._settings)
            await self._book(page, target)
        except asyncio.CancelledError:
            self._fail("Automation was cancelled")
            raise
        except Exception as exc:
            self._fail(describe(exc))
            raise
        finally:
            await self._release()
        return self.state

    async def abort(self) -> None:
        """Tear everything down from another task; the run then fails."""
        self._aborted = True
        await self._release()

    async def _book(self, page: FacilityBookingPage, target: ReservationTarget) -> None:
        await page.open(self.config.facility_url)
        self._transition(AutomationState.NAVIGATED_TO_FACILITY)

        await page.select_sport(self.config.sport_name)
        self._transition(AutomationState.SPORT_SELECTED)

        await page.set_party_size(self.config.number_of_people)
        self._transition(AutomationState.PARTY_SIZE_SET)

        await self._select_slot(page, target)
        self._transition(AutomationState.TIME_SLOT_SELECTED)

        await page.fill_contact(
            name=self._settings.contact_name,
            phone=self._settings.contact_phone,
            email=self._settings.resolved_contact_email,
        )
        self._transition(AutomationState.CONTACT_FORM_FILLED)

        submitted_at = self._clock()
        await page.submit_contact(self._settings.max_submit_attempts)
        self._transition(AutomationState.SUBMITTED)

        outcome = await page.await_post_submit(POST_SUBMIT_SETTLE_SECONDS)
        if outcome.confirmed:
            self._transition(AutomationState.CONFIRMED)
        elif outcome.verification:
            self._transition(AutomationState.AWAITING_VERIFICATION)
            await self._verify(page, submitted_at)
            self._transition(AutomationState.CONFIRMED)
        else:
            raise AutomationFailed("submit", "Booking was neither confirmed nor asked for a verification code")

        self._transition(AutomationState.DONE)
        self._log.info("automation.done", slot=self.booked_slot)

    async def _select_slot(self, page: FacilityBookingPage, target: ReservationTarget) -> None:
        day = target.weekday.short_name
        for slot in target.slots:
            label = slot.formatted()
            if await page.select_time_slot(day, label):
                self.booked_slot = f"{target.weekday.value} {target.day.isoformat()} {label}"
                return
        wanted = ", ".join(slot.formatted() for slot in target.slots)
        raise AutomationFailed("select_time_slot", f"No configured time slot available on {day} ({wanted})")

    async def _verify(self, page: FacilityBookingPage, submitted_at: dt.datetime) -> None:
        self._retriever = self._retriever_factory()
        timeout = self._settings.verification_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        tried: List[str] = []
        await self._retriever.initial_wait()
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise VerificationTimeout(timeout, tried=len(tried))
            codes = await self._retriever.wait_for_codes(submitted_at, exclude=tried, timeout=remaining)
            self._transition(AutomationState.CODE_RETRIEVED)
            for code in codes:
                tried.append(code)
                self._log.info("automation.code.try", attempt=len(tried))
                result = await page.enter_verification_code(code)
                if result is CodeResult.ACCEPTED:
                    return
                if result is CodeResult.LEFT_PAGE:
                    state = await page.page_state()
                    if state.confirmed:
                        return
                    raise VerificationFailed("Left the verification page without a confirmation")
            self._transition(AutomationState.AWAITING_VERIFICATION)

    def _check_contact_details(self) -> None:
        missing = [
            label
            for label, value in (
                ("name", self._settings.contact_name),
                ("phone", self._settings.contact_phone),
                ("email", self._settings.resolved_contact_email),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Contact details missing: {', '.join(missing)}")

    def _target(self) -> ReservationTarget:
        today = self._clock().astimezone(get_zone(self._settings.timezone)).date()
        target = reservation_target(self.config, self._policy, today)
        if target is None:
            raise ConfigurationError(f"{self.config.name} has no time slots configured")
        return target

    def _transition(self, new_state: AutomationState) -> None:
        if self._aborted:
            raise RunAborted("Automation was aborted")
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        self._log.info("automation.state", state=new_state.value)
        self._notify(_PROGRESS.get(new_state, new_state.value))

    def _fail(self, reason: str) -> None:
        if self.state.is_terminal:
            return
        self.state = AutomationState.FAILED
        self.history.append(AutomationState.FAILED)
        self.failure_reason = reason
        self._log.warning("automation.failed", reason=reason)

    def _notify(self, text: str) -> None:
        if self._progress is not None:
            self._progress(f"{self.config.name}: {text}")

    async def _release(self) -> None:
        retriever, self._retriever = self._retriever, None
        session = self.session
        if retriever is not None:
            try:
                await retriever.close()
            except ReservationError as exc:
                self._log.warning("automation.mailbox.close_failed", error=str(exc))
        if session is not None:
            await session.close()
