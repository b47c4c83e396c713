"""Telegram messaging helper."""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from .config import Settings
from .models import OutcomeKind, ReservationConfig, RunOutcome

LOGGER = structlog.get_logger(__name__)


def format_outcome_message(outcome: RunOutcome, config: Optional[ReservationConfig] = None) -> str:
    """Build a human-friendly message for Telegram."""
    headline = {
        OutcomeKind.SUCCESS: "Reservation confirmed",
        OutcomeKind.FAILED: "Reservation failed",
        OutcomeKind.NOT_ELIGIBLE: "Reservation skipped",
    }[outcome.kind]
    lines: list[str] = [f"{headline}: {outcome.config_name}", f"Run: {outcome.run_type.display_name}"]

    if config is not None:
        lines.append(f"Facility: {config.facility_name} ({config.sport_name})")
        summary = config.schedule_summary()
        if summary:
            lines.append(f"Schedule: {summary}")

    if outcome.reason:
        lines.append("")
        lines.append(f"Reason: {outcome.reason}")

    if outcome.started_at and outcome.finished_at:
        seconds = (outcome.finished_at - outcome.started_at).total_seconds()
        lines.append(f"Took {seconds:.0f}s")

    return "\n".join(lines).strip()


async def post_to_telegram(
    settings: Settings, text: str, transport: Optional[httpx.AsyncBaseTransport] = None
) -> None:
    """Send the composed message to Telegram."""
    payload = {
        "chat_id": settings.telegram_chat_id,
        "text": text,
        "disable_web_page_preview": True,
    }

    url = f"{settings.telegram_api_endpoint}/sendMessage"
    LOGGER.info("telegram.send.start", chat_id=settings.telegram_chat_id)

    async with httpx.AsyncClient(timeout=15.0, transport=transport) as client:
        response = await client.post(url, json=payload)
    if response.is_success:
        LOGGER.info("telegram.send.success")
        return
    LOGGER.error("telegram.send.failed", status_code=response.status_code, body=response.text)
    raise RuntimeError(f"Telegram send failed with {response.status_code}: {response.text}")


class TelegramNotifier:
    """Posts run outcomes when a bot token and chat are configured; never raises."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = settings
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return self._settings.telegram_enabled

    async def notify(self, outcome: RunOutcome, config: Optional[ReservationConfig] = None) -> None:
        if not self.enabled:
            return
        try:
            await post_to_telegram(self._settings, format_outcome_message(outcome, config), self._transport)
        except (httpx.HTTPError, RuntimeError) as exc:
            LOGGER.warning("telegram.notify.failed", error=str(exc))
