"""Mailbox access over IMAP (generic servers and Gmail app passwords)."""

from __future__ import annotations

import asyncio
import datetime as dt
import email as email_lib
import re
from dataclasses import dataclass
from email.message import EmailMessage
from email.policy import default as default_policy
from typing import List, Optional, Protocol

import aioimaplib
import structlog

from .config import GMAIL_IMAP_SERVER, CredentialVault, MailCredentials, Settings
from .email_parser import html_to_text
from .errors import ConfigurationError, MailboxError
from .models import Email
from .utils import mask_address, parse_datetime

LOGGER = structlog.get_logger(__name__)

GMAIL_APP_PASSWORD = re.compile(r"^(?:[a-z]{4}\s[a-z]{4}\s[a-z]{4}\s[a-z]{4}|[a-z]{16})$")

_FETCH_HEADER = re.compile(rb"\{(\d+)\}$")


@dataclass(frozen=True)
class SearchQuery:
    """Messages received on or after ``since`` from ``sender`` or with ``subject`` in the subject."""

    since: dt.datetime
    sender: Optional[str] = None
    subject: Optional[str] = None

    def imap_criteria(self) -> List[str]:
        criteria = ["SINCE", self.since.strftime("%d-%b-%Y")]
        if self.sender and self.subject:
            criteria += ["OR", "FROM", _quote(self.sender), "SUBJECT", _quote(self.subject)]
        elif self.sender:
            criteria += ["FROM", _quote(self.sender)]
        elif self.subject:
            criteria += ["SUBJECT", _quote(self.subject)]
        return criteria


class MailboxClient(Protocol):
    async def connect(self) -> None:
        ...

    async def search_emails(self, query: SearchQuery) -> List[str]:
        ...

    async def fetch_email(self, uid: str) -> Email:
        ...

    async def disconnect(self) -> None:
        ...


class ImapMailboxClient:
    """IMAP over SSL using aioimaplib; one connection per instance."""

    def __init__(self, credentials: MailCredentials, timeout: float = 30.0, mailbox: str = "INBOX"):
        if not credentials.server_host:
            raise ConfigurationError("IMAP server is not configured")
        self._credentials = credentials
        self._timeout = timeout
        self._mailbox = mailbox
        self._client: Optional[aioimaplib.IMAP4_SSL] = None

    @property
    def host(self) -> str:
        return self._credentials.server_host or ""

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        if self._client is not None:
            return
        address = mask_address(self._credentials.address)
        LOGGER.info("mailbox.connect", host=self.host, port=self._credentials.port, address=address)
        client = aioimaplib.IMAP4_SSL(host=self.host, port=self._credentials.port, timeout=self._timeout)
        try:
            await client.wait_hello_from_server()
            response = await client.login(self._credentials.address, self._credentials.secret.get_secret_value())
            if response.result != "OK":
                raise MailboxError(f"Mailbox login failed for {address}: {_response_text(response)}")
            response = await client.select(self._mailbox)
            if response.result != "OK":
                raise MailboxError(f"Cannot open mailbox {self._mailbox}: {_response_text(response)}")
        except MailboxError:
            await _quietly_logout(client)
            raise
        except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as exc:
            await _quietly_logout(client)
            raise MailboxError(f"Cannot connect to {self.host}:{self._credentials.port}: {exc}") from exc
        self._client = client

    async def search_emails(self, query: SearchQuery) -> List[str]:
        client = self._require_client()
        criteria = query.imap_criteria()
        LOGGER.debug("mailbox.search", criteria=" ".join(criteria))
        try:
            response = await client.uid_search(*criteria)
        except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as exc:
            raise MailboxError(f"Mailbox search failed: {exc}") from exc
        if response.result != "OK":
            raise MailboxError(f"Mailbox search failed: {_response_text(response)}")
        uids: List[str] = []
        for line in response.lines:
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("ascii", errors="ignore")
            if "SEARCH" in line.upper() and "COMPLETED" in line.upper():
                continue
            uids.extend(token for token in line.split() if token.isdigit())
        return uids

    async def fetch_email(self, uid: str) -> Email:
        client = self._require_client()
        try:
            response = await client.uid("fetch", uid, "(RFC822)")
        except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as exc:
            raise MailboxError(f"Fetching message {uid} failed: {exc}") from exc
        if response.result != "OK":
            raise MailboxError(f"Fetching message {uid} failed: {_response_text(response)}")
        raw = _literal_from_fetch(response.lines)
        if raw is None:
            raise MailboxError(f"Message {uid} has no body")
        return parse_message(uid, raw)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await _quietly_logout(client)
            LOGGER.info("mailbox.disconnected", host=self.host)

    def _require_client(self) -> aioimaplib.IMAP4_SSL:
        if self._client is None:
            raise MailboxError("Mailbox is not connected")
        return self._client


class GmailMailboxClient(ImapMailboxClient):
    """Gmail over IMAP, which only accepts 16-letter app passwords."""

    def __init__(self, credentials: MailCredentials, timeout: float = 30.0):
        secret = credentials.secret.get_secret_value().strip()
        if not GMAIL_APP_PASSWORD.match(secret):
            raise ConfigurationError(
                "Gmail requires an app password (16 lowercase letters, optionally grouped in fours)"
            )
        super().__init__(
            MailCredentials(
                address=credentials.address,
                secret=credentials.secret,
                server_host=GMAIL_IMAP_SERVER,
                port=993,
            ),
            timeout=timeout,
        )


def create_mailbox(settings: Settings, vault: CredentialVault) -> ImapMailboxClient:
    """Pick the client variant for the configured provider."""
    credentials = vault.get_credentials("mail")
    provider = settings.mail_provider
    if provider == "auto":
        provider = "gmail" if credentials.is_gmail else "imap"
    if provider == "gmail":
        return GmailMailboxClient(credentials, timeout=settings.mail_timeout_seconds)
    return ImapMailboxClient(credentials, timeout=settings.mail_timeout_seconds)


def parse_message(uid: str, raw: bytes) -> Email:
    """Turn an RFC 822 message into an ``Email`` with a plain-text body."""
    message = email_lib.message_from_bytes(raw, policy=default_policy)
    return Email(
        uid=uid,
        sender=str(message.get("From", "")),
        subject=str(message.get("Subject", "")),
        body=_message_text(message),
        received_at=parse_datetime(message.get("Date")),
    )


def _message_text(message: EmailMessage) -> str:
    part = message.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    content = part.get_content()
    if part.get_content_type() == "text/html":
        return html_to_text(content)
    return content


def _literal_from_fetch(lines: List) -> Optional[bytes]:
    for index, line in enumerate(lines):
        if isinstance(line, bytearray):
            return bytes(line)
        if isinstance(line, bytes) and _FETCH_HEADER.search(line) and index + 1 < len(lines):
            following = lines[index + 1]
            if isinstance(following, (bytes, bytearray)):
                return bytes(following)
    return None


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _response_text(response) -> str:
    parts = []
    for line in response.lines:
        parts.append(bytes(line).decode("utf-8", errors="replace") if isinstance(line, (bytes, bytearray)) else str(line))
    return " ".join(parts).strip() or response.result


async def _quietly_logout(client: aioimaplib.IMAP4_SSL) -> None:
    try:
        await client.logout()
    except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as exc:
        LOGGER.debug("mailbox.logout.error", error=str(exc))
