"""Page object for the frontdesksuite facility booking flow."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from .browser import BrowserSession
from .config import Settings
from .errors import AutomationFailed, ElementNotFound

LOGGER = structlog.get_logger(__name__)

PARTY_SIZE_SELECTOR = '#reservationCount, input[name="ReservationCount"], input[type="number"]'
CONFIRM_SELECTOR = '#submit-btn, button[type="submit"]'
DAY_HEADER_SELECTOR = ".header-text"
PHONE_SELECTOR = "#telephone"
EMAIL_SELECTOR = "#email"
NAME_SELECTOR = 'input[id^="field"]'
CONTACT_CONFIRM_SELECTOR = '.mdc-button, #submit-btn, button[type="submit"]'
VERIFICATION_INPUT_SELECTOR = (
    'input[name*="code" i], input[placeholder*="code" i], input[id*="code" i], '
    'input[type="number"], input[type="text"]'
)
VERIFICATION_SUBMIT_SELECTOR = '#submit-btn, button[type="submit"]'

# Marker attribute used to hand an element found by script over to a real click.
TARGET_ATTRIBUTE = "data-reservation-target"

SLOT_APPEAR_SECONDS = 5.0
VERIFICATION_RESULT_SECONDS = 12.0
PAGE_STATE_POLL_SECONDS = 0.5

_MARK_SPORT_BUTTON = """
([sport, attribute]) => {
    const wanted = sport.trim().toLowerCase();
    const visible = (el) => !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length);
    const matches = Array.from(document.querySelectorAll('div, a, button'))
        .filter((el) => visible(el) && (el.textContent || '').toLowerCase().includes(wanted));
    // The innermost match is the actual button, not a container around it.
    const innermost = matches.filter((el) => !matches.some((other) => other !== el && el.contains(other)));
    if (!innermost.length) return false;
    innermost[0].setAttribute(attribute, 'sport');
    return true;
}
"""

_EXPAND_DAY_SECTION = """
([day]) => {
    const wanted = day.trim().toLowerCase();
    const visible = (el) => !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length);
    const headers = Array.from(document.getElementsByClassName('header-text')).filter(visible);
    const header = headers.find((el) => el.textContent.trim().toLowerCase().includes(wanted));
    if (!header) return false;
    header.scrollIntoView({ behavior: 'smooth', block: 'center' });
    header.click();
    return true;
}
"""

_PAGE_STATE = """
() => {
    const text = (document.body && document.body.innerText) || '';
    const lower = text.toLowerCase();
    const confirmed = !!document.querySelector('.confirmed-reservation')
        || Array.from(document.querySelectorAll('h1')).some((h) => h.textContent.trim().toLowerCase() === 'confirmation')
        || lower.includes('is now confirmed');
    const codeError = ['incorrect code', 'invalid code', 'wrong code', 'code is incorrect', 'verification failed']
        .find((phrase) => lower.includes(phrase)) || null;
    const codeInput = !!document.querySelector(
        'input[name*="code" i], input[placeholder*="code" i], input[id*="code" i], input[name*="verification" i]'
    );
    const verification = codeInput
        || lower.includes('verification code')
        || lower.includes('check your email')
        || lower.includes('enter it below');
    return {
        confirmed,
        verification,
        retry: /\\bRetry\\b/.test(text),
        codeError,
        contactForm: !!document.getElementById('telephone'),
        url: location.href,
    };
}
"""


class CodeResult(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    LEFT_PAGE = "left_page"


@dataclass(frozen=True)
class PageState:
    """What the current page shows after a submit."""

    confirmed: bool = False
    verification: bool = False
    retry: bool = False
    code_error: Optional[str] = None
    contact_form: bool = False
    url: str = ""


class FacilityBookingPage:
    """Drives one session through the facility's booking pages.

    Every method either completes its step or raises: ``AutomationFailed``
    for site-level problems, ``ElementNotFound``/``NavigationTimeout``/
    ``ScriptError`` straight from the session primitives.
    """

    def __init__(self, session: BrowserSession, settings: Settings):
        self._session = session
        self._settings = settings
        self._expanded_days: set = set()

    async def open(self, url: str) -> None:
        await self._session.navigate(url)
        await self._session.wait_for_condition(
            "() => document.readyState === 'complete'",
            timeout=self._settings.page_load_timeout_seconds,
            action="page load",
        )
        await self._session.pause(0.4, 1.0)

    async def select_sport(self, sport_name: str) -> None:
        found = await self._session.evaluate(_MARK_SPORT_BUTTON, [sport_name, TARGET_ATTRIBUTE], action="find sport")
        if not found:
            raise AutomationFailed("select_sport", f"Sport button '{sport_name}' not found on the facility page")
        await self._session.click(f'[{TARGET_ATTRIBUTE}="sport"]', action="select sport")
        LOGGER.info("site.sport_selected", session_id=self._session.session_id, sport=sport_name)

    async def set_party_size(self, number_of_people: int) -> None:
        try:
            await self._session.wait_for_element(PARTY_SIZE_SELECTOR, action="party size")
        except ElementNotFound as exc:
            raise AutomationFailed("set_party_size", "Group size page did not load") from exc
        await self._session.type_text(PARTY_SIZE_SELECTOR, str(number_of_people), action="party size")
        await self._session.pause(0.3, 0.8)
        await self._session.click(CONFIRM_SELECTOR, action="confirm party size")
        LOGGER.info("site.party_size_set", session_id=self._session.session_id, people=number_of_people)

    async def select_time_slot(self, day_short_name: str, time_label: str) -> bool:
        """Expand the day's section and click the slot; ``False`` when the site does not offer it."""
        try:
            await self._session.wait_for_element(DAY_HEADER_SELECTOR, action="time selection page")
        except ElementNotFound as exc:
            raise AutomationFailed("select_time_slot", "Time selection page did not load") from exc
        if day_short_name not in self._expanded_days:
            expanded = await self._session.evaluate(_EXPAND_DAY_SECTION, [day_short_name], action="expand day")
            if not expanded:
                LOGGER.info("site.day_missing", session_id=self._session.session_id, day=day_short_name)
                return False
            self._expanded_days.add(day_short_name)
        selector = f"[aria-label*='{time_label} {day_short_name}']"
        try:
            await self._session.wait_for_element(selector, timeout=SLOT_APPEAR_SECONDS, action="time slot")
        except ElementNotFound:
            LOGGER.info("site.slot_missing", session_id=self._session.session_id, slot=f"{time_label} {day_short_name}")
            return False
        await self._session.click(selector, action="select time slot")
        LOGGER.info("site.slot_selected", session_id=self._session.session_id, slot=f"{time_label} {day_short_name}")
        return True

    async def fill_contact(self, name: str, phone: str, email: str) -> None:
        try:
            await self._session.wait_for_element(PHONE_SELECTOR, action="contact form")
        except ElementNotFound as exc:
            raise AutomationFailed("fill_contact", "Contact information page did not load") from exc
        await self._session.type_text(PHONE_SELECTOR, phone, action="telephone")
        await self._session.pause(0.2, 0.6)
        await self._session.type_text(EMAIL_SELECTOR, email, action="email")
        await self._session.pause(0.2, 0.6)
        await self._session.type_text(NAME_SELECTOR, name, action="name")

    async def submit_contact(self, max_attempts: int) -> PageState:
        """Confirm the contact form, re-submitting while the bot check shows "Retry"."""
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await self._session.pause(1.0, 1.8)
            await self._session.click(CONTACT_CONFIRM_SELECTOR, action="confirm contact information")
            await asyncio.sleep(0.3)
            state = await self.page_state()
            if not state.retry:
                LOGGER.info("site.contact_submitted", session_id=self._session.session_id, attempt=attempt)
                return state
            LOGGER.warning("site.retry_detected", session_id=self._session.session_id, attempt=attempt)
        raise AutomationFailed(
            "submit_contact", f"Contact form was not accepted after {max_attempts} attempts"
        )

    async def await_post_submit(self, timeout: float) -> PageState:
        """Wait until the page after submitting settles on confirmation or a code challenge."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        state = await self.page_state()
        while not (state.confirmed or state.verification) and loop.time() < deadline:
            await asyncio.sleep(PAGE_STATE_POLL_SECONDS)
            state = await self.page_state()
        return state

    async def enter_verification_code(self, code: str) -> CodeResult:
        await self._session.type_text(VERIFICATION_INPUT_SELECTOR, code, action="verification code")
        await self._session.pause(0.5, 1.2)
        await self._session.click(VERIFICATION_SUBMIT_SELECTOR, action="submit verification code")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + VERIFICATION_RESULT_SECONDS
        while True:
            await asyncio.sleep(PAGE_STATE_POLL_SECONDS)
            state = await self.page_state()
            if state.confirmed:
                return CodeResult.ACCEPTED
            if state.code_error:
                LOGGER.info("site.code_rejected", session_id=self._session.session_id, reason=state.code_error)
                return CodeResult.REJECTED
            if loop.time() >= deadline:
                return CodeResult.REJECTED if state.verification else CodeResult.LEFT_PAGE

    async def page_state(self) -> PageState:
        raw = await self._session.evaluate(_PAGE_STATE, action="read page state") or {}
        return PageState(
            confirmed=bool(raw.get("confirmed")),
            verification=bool(raw.get("verification")),
            retry=bool(raw.get("retry")),
            code_error=raw.get("codeError"),
            contact_form=bool(raw.get("contactForm")),
            url=raw.get("url", ""),
        )
