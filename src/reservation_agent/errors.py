"""Exception hierarchy shared by the automation, mailbox and scheduling layers."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Coarse grouping used for reporting and retry policy."""

    VALIDATION = "validation"
    NAVIGATION = "navigation"
    AUTOMATION = "automation"
    MAILBOX = "mailbox"
    SYSTEM = "system"
    ABORTED = "aborted"


class ReservationError(Exception):
    """Base class for every failure raised by the reservation agent."""

    category: ErrorCategory = ErrorCategory.AUTOMATION
    code: str = "RESERVATION_UNKNOWN_001"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ConfigurationError(ReservationError):
    """Malformed reservation configuration, settings or credentials."""

    category = ErrorCategory.VALIDATION
    code = "RESERVATION_CONFIG_001"


class NavigationTimeout(ReservationError):
    """A page did not finish loading within its budget."""

    category = ErrorCategory.NAVIGATION
    code = "RESERVATION_TIMEOUT_001"

    def __init__(self, url: str, timeout_seconds: float):
        super().__init__(f"Page {url} failed to load within {timeout_seconds:g}s")
        self.url = url
        self.timeout_seconds = timeout_seconds


class NavigationFailed(ReservationError):
    """Navigation aborted by the browser (DNS, TLS, connection reset...)."""

    category = ErrorCategory.NAVIGATION
    code = "RESERVATION_NETWORK_001"


class ElementNotFound(ReservationError):
    """An element never became present/clickable for the requested action."""

    category = ErrorCategory.AUTOMATION
    code = "RESERVATION_ELEMENT_001"

    def __init__(self, selector: str, action: str, timeout_seconds: Optional[float] = None):
        detail = f" within {timeout_seconds:g}s" if timeout_seconds is not None else ""
        super().__init__(f"Element {selector!r} not available for {action}{detail}")
        self.selector = selector
        self.action = action
        self.timeout_seconds = timeout_seconds


class ScriptError(ReservationError):
    """Evaluating a page script raised inside the browser."""

    category = ErrorCategory.AUTOMATION
    code = "RESERVATION_SCRIPT_001"

    def __init__(self, action: str, detail: str):
        super().__init__(f"Script for {action} failed: {detail}")
        self.action = action
        self.detail = detail


class AutomationFailed(ReservationError):
    """A booking step could not be completed on the site."""

    category = ErrorCategory.AUTOMATION
    code = "RESERVATION_AUTOMATION_001"

    def __init__(self, step: str, message: str):
        super().__init__(message)
        self.step = step


class MailboxError(ReservationError):
    """Connecting, authenticating or searching the mailbox failed."""

    category = ErrorCategory.MAILBOX
    code = "RESERVATION_EMAIL_001"


class VerificationTimeout(ReservationError):
    """No usable verification code arrived before the deadline."""

    category = ErrorCategory.MAILBOX
    code = "RESERVATION_EMAIL_002"

    def __init__(self, timeout_seconds: float, tried: int = 0):
        suffix = f" ({tried} code(s) rejected)" if tried else ""
        super().__init__(f"Timed out after {timeout_seconds:g}s waiting for a verification code{suffix}")
        self.timeout_seconds = timeout_seconds
        self.tried = tried


class VerificationFailed(ReservationError):
    """The site rejected the verification code or never confirmed it."""

    category = ErrorCategory.AUTOMATION
    code = "RESERVATION_VERIFY_001"


class TriggerRegistrationError(ReservationError):
    """The OS-level scheduled trigger could not be registered or removed."""

    category = ErrorCategory.SYSTEM
    code = "RESERVATION_SYSTEM_001"


class SleepInhibitError(ReservationError):
    """The system could not be kept awake for an upcoming autorun."""

    category = ErrorCategory.SYSTEM
    code = "RESERVATION_SYSTEM_002"


class RunAborted(ReservationError):
    """The run was torn down before it could finish."""

    category = ErrorCategory.ABORTED
    code = "RESERVATION_ABORTED_001"


def describe(exc: BaseException) -> str:
    """Human-readable reason for a failed run."""
    if isinstance(exc, ReservationError):
        return exc.message
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
