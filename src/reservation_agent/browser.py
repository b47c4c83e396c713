"""Playwright browser sessions with the anti-detection layer applied."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import Settings
from .errors import ElementNotFound, NavigationFailed, NavigationTimeout, ScriptError
from .stealth import DeviceProfile, anti_detection_script, random_device_profile

LOGGER = structlog.get_logger(__name__)

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
    "--no-first-run",
    "--no-default-browser-check",
]

_DISPATCH_INPUT_EVENTS = """
(element) => {
    element.dispatchEvent(new Event('input', { bubbles: true }));
    element.dispatchEvent(new Event('change', { bubbles: true }));
    element.dispatchEvent(new Event('blur', { bubbles: true }));
}
"""


class BrowserSession:
    """One isolated browser: its own Playwright driver, browser, context and page.

    Sessions never share state with each other, so concurrent runs each get a
    fresh fingerprint and cookie jar. ``close`` may be called any number of
    times from any task and always tears everything down.
    """

    def __init__(
        self,
        settings: Settings,
        profile: Optional[DeviceProfile] = None,
        on_close: Optional[Callable[["BrowserSession"], None]] = None,
    ):
        self.session_id = uuid4().hex[:12]
        self._on_close = on_close
        self.profile = profile or random_device_profile()
        self._settings = settings
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._lock = asyncio.Lock()
        self._closed = False

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser session has not been started")
        return self._page

    @property
    def is_connected(self) -> bool:
        return not self._closed and self._browser is not None and self._browser.is_connected()

    @property
    def _element_timeout_ms(self) -> float:
        return self._settings.element_timeout_seconds * 1000

    async def start(self) -> None:
        async with self._lock:
            if self._closed:
                raise RuntimeError("Browser session was already closed")
            await self._launch()

    async def _launch(self) -> None:
        LOGGER.info("browser.start", session_id=self.session_id, headless=self._settings.headless)
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._settings.headless, args=LAUNCH_ARGS
            )
            self._context = await self._browser.new_context(
                user_agent=self.profile.user_agent,
                viewport={"width": self.profile.width, "height": self.profile.height},
                screen={"width": self.profile.width, "height": self.profile.height},
                device_scale_factor=self.profile.pixel_ratio,
                locale=self.profile.locale,
                timezone_id=self._settings.timezone,
                extra_http_headers={"Accept-Language": ",".join(self.profile.languages)},
            )
            await self._context.add_init_script(anti_detection_script(self.profile))
            self._page = await self._context.new_page()
            self._page.set_default_timeout(self._element_timeout_ms)
        except BaseException:
            await self._teardown()
            raise

    async def close(self) -> None:
        """Close page, context, browser and driver; safe to call repeatedly."""
        async with self._lock:
            self._closed = True
            await self._teardown()
        if self._on_close is not None:
            self._on_close(self)
        LOGGER.info("browser.closed", session_id=self.session_id)

    async def _teardown(self) -> None:
        page, context, browser, playwright = self._page, self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None
        for label, closer in (
            ("page", page.close if page else None),
            ("context", context.close if context else None),
            ("browser", browser.close if browser else None),
            ("driver", playwright.stop if playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except PlaywrightError as exc:
                LOGGER.debug("browser.close.error", session_id=self.session_id, part=label, error=str(exc))

    async def navigate(self, url: str) -> str:
        """Load ``url`` and wait for the full page load event."""
        timeout = self._settings.page_load_timeout_seconds
        LOGGER.info("browser.navigate", session_id=self.session_id, url=url)
        try:
            await self.page.goto(url, wait_until="load", timeout=timeout * 1000)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(url, timeout) from exc
        except PlaywrightError as exc:
            raise NavigationFailed(f"Navigation to {url} failed: {exc.message}") from exc
        return self.page.url

    async def evaluate(self, script: str, arg: Any = None, *, action: str = "evaluate") -> Any:
        try:
            return await self.page.evaluate(script, arg)
        except PlaywrightError as exc:
            raise ScriptError(action, exc.message) from exc

    async def wait_for_element(
        self, selector: str, *, timeout: Optional[float] = None, state: str = "visible", action: str = "wait"
    ) -> None:
        """Poll until ``selector`` reaches ``state`` or raise ``ElementNotFound``."""
        seconds = self._settings.element_timeout_seconds if timeout is None else timeout
        try:
            await self.page.wait_for_selector(selector, state=state, timeout=seconds * 1000)
        except PlaywrightTimeoutError as exc:
            raise ElementNotFound(selector, action, seconds) from exc
        except PlaywrightError as exc:
            raise ScriptError(action, exc.message) from exc

    async def click(self, selector: str, *, timeout: Optional[float] = None, action: str = "click") -> None:
        seconds = self._settings.element_timeout_seconds if timeout is None else timeout
        locator = self.page.locator(selector).first
        try:
            await locator.scroll_into_view_if_needed(timeout=seconds * 1000)
            await locator.hover(timeout=seconds * 1000)
            await locator.click(timeout=seconds * 1000, delay=random.randint(40, 120))
        except PlaywrightTimeoutError as exc:
            raise ElementNotFound(selector, action, seconds) from exc
        except PlaywrightError as exc:
            raise ScriptError(action, exc.message) from exc

    async def type_text(
        self, selector: str, text: str, *, timeout: Optional[float] = None, action: str = "type"
    ) -> None:
        """Type like a person, then fire input/change so site validation reacts."""
        seconds = self._settings.element_timeout_seconds if timeout is None else timeout
        locator = self.page.locator(selector).first
        try:
            await locator.click(timeout=seconds * 1000)
            await locator.fill("", timeout=seconds * 1000)
            await locator.press_sequentially(text, delay=random.randint(50, 150), timeout=seconds * 1000)
            await locator.evaluate(_DISPATCH_INPUT_EVENTS)
        except PlaywrightTimeoutError as exc:
            raise ElementNotFound(selector, action, seconds) from exc
        except PlaywrightError as exc:
            raise ScriptError(action, exc.message) from exc

    async def wait_for_condition(
        self, script: str, *, timeout: float, interval: float = 0.5, action: str = "condition"
    ) -> Any:
        """Re-evaluate ``script`` until it returns something truthy."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            value = await self.evaluate(script, action=action)
            if value:
                return value
            if loop.time() >= deadline:
                raise ElementNotFound(script.strip()[:80], action, timeout)
            await asyncio.sleep(interval)

    async def pause(self, low: float, high: float) -> None:
        """Human-like think time between interactions."""
        await asyncio.sleep(random.uniform(low, high))


class BrowserEngine:
    """Hands out fresh sessions and keeps track of the ones still open."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._sessions: Dict[str, BrowserSession] = {}

    def create_session(self) -> BrowserSession:
        session = BrowserSession(self._settings, on_close=self.release)
        self._sessions[session.session_id] = session
        return session

    def release(self, session: BrowserSession) -> None:
        self._sessions.pop(session.session_id, None)

    @property
    def open_sessions(self) -> List[BrowserSession]:
        return list(self._sessions.values())

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        if sessions:
            LOGGER.warning("browser.close_all", count=len(sessions))
        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
