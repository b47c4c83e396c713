"""Utility helpers for time zones and text handling."""

from __future__ import annotations

import datetime as dt
import re
from typing import Optional

import structlog
from dateutil import parser as date_parser
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

LOGGER = structlog.get_logger(__name__)


def get_zone(timezone_name: str) -> ZoneInfo:
    """Return a ZoneInfo instance, defaulting to UTC on failure."""
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        LOGGER.warning("timezone.unknown", timezone=timezone_name, fallback="UTC")
        return ZoneInfo("UTC")


def now_in_timezone(timezone_name: str) -> dt.datetime:
    """Current datetime in the configured timezone."""
    return dt.datetime.now(tz=get_zone(timezone_name))


def parse_datetime(text: Optional[str]) -> Optional[dt.datetime]:
    """Best-effort parsing of a mail ``Date`` header or similar timestamp."""
    if not text:
        return None
    cleaned = text.strip()
    if not cleaned:
        return None
    try:
        value = date_parser.parse(cleaned, fuzzy=True)
    except (ValueError, OverflowError) as exc:
        LOGGER.debug("datetime.parse_failed", text=cleaned, error=str(exc))
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value


def normalise_whitespace(text: str) -> str:
    """Collapse repeated whitespace into single spaces."""
    return re.sub(r"\s+", " ", text or "").strip()


def mask_address(address: str) -> str:
    """Hide most of a mail address for logs (``j***@example.com``)."""
    local, sep, domain = address.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"
