"""Polls the mailbox for verification codes sent after a booking submit."""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Callable, Collection, Dict, List, Optional

import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from .config import Settings
from .email_client import MailboxClient, SearchQuery
from .email_parser import ParsedCode, VerificationEmailClassifier, extract_code_from_email
from .errors import VerificationTimeout
from .models import Email

LOGGER = structlog.get_logger(__name__)

MailboxFactory = Callable[[], MailboxClient]


class VerificationCodeRetriever:
    """Owns one mailbox connection for the duration of one automation run."""

    def __init__(
        self,
        settings: Settings,
        mailbox_factory: MailboxFactory,
        classifier: Optional[VerificationEmailClassifier] = None,
    ):
        self._settings = settings
        self._mailbox_factory = mailbox_factory
        self._classifier = classifier or VerificationEmailClassifier.for_senders([settings.verification_sender])
        self._mailbox: Optional[MailboxClient] = None
        self._cache: Dict[str, Email] = {}
        # Mail servers and the local clock disagree by a few seconds.
        self._skew = dt.timedelta(seconds=settings.verification_clock_skew_seconds)

    async def _connected(self) -> MailboxClient:
        if self._mailbox is None:
            mailbox = self._mailbox_factory()
            await mailbox.connect()
            self._mailbox = mailbox
        return self._mailbox

    async def fetch_codes(self, since: dt.datetime, exclude: Collection[str] = ()) -> List[str]:
        """One mailbox pass: codes received after ``since``, newest first, minus ``exclude``."""
        mailbox = await self._connected()
        earliest = since - self._skew
        query = SearchQuery(
            since=earliest,
            sender=self._settings.verification_sender or None,
            subject="verif",
        )
        uids = await mailbox.search_emails(query)
        parsed: List[ParsedCode] = []
        for uid in uids:
            message = self._cache.get(uid)
            if message is None:
                message = await mailbox.fetch_email(uid)
                self._cache[uid] = message
            if message.received_at is not None and message.received_at < earliest:
                continue
            if not self._classifier(message):
                continue
            code = extract_code_from_email(message)
            if code is not None:
                parsed.append(ParsedCode(code=code, email=message))
        parsed.sort(key=_received_key, reverse=True)
        codes: List[str] = []
        for item in parsed:
            if item.code not in codes and item.code not in exclude:
                codes.append(item.code)
        LOGGER.debug("verification.poll", messages=len(uids), codes=len(codes))
        return codes

    async def wait_for_codes(
        self, since: dt.datetime, exclude: Collection[str] = (), timeout: Optional[float] = None
    ) -> List[str]:
        """Poll until at least one untried code shows up, or raise ``VerificationTimeout``."""
        timeout = self._settings.verification_timeout_seconds if timeout is None else timeout
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(timeout),
                wait=wait_fixed(self._settings.verification_poll_seconds),
                retry=retry_if_result(lambda codes: not codes),
            ):
                with attempt:
                    codes = await self.fetch_codes(since, exclude)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(codes)
        except RetryError as exc:
            raise VerificationTimeout(timeout, tried=len(exclude)) from exc
        LOGGER.info("verification.codes_found", count=len(codes))
        return codes

    async def initial_wait(self) -> None:
        await asyncio.sleep(self._settings.verification_initial_wait_seconds)

    async def close(self) -> None:
        mailbox, self._mailbox = self._mailbox, None
        self._cache.clear()
        if mailbox is not None:
            await mailbox.disconnect()


def _received_key(item: ParsedCode) -> dt.datetime:
    return item.email.received_at or dt.datetime.min.replace(tzinfo=dt.timezone.utc)
