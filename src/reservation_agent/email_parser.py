"""Verification-code extraction and the "is this a verification email" heuristic."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Pattern, Tuple

from bs4 import BeautifulSoup

from .models import Email
from .utils import normalise_whitespace

DEFAULT_VERIFICATION_SENDER = "noreply@frontdesksuite.com"

# Tried in order; the first candidate of valid shape wins. Bare numeric runs
# come first because they are unambiguous on this site.
CODE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(\d{6})\b"),
    re.compile(r"\b(\d{4})\b"),
    re.compile(r"verification code[\s:]*([A-Z0-9]{4,8})\b", re.IGNORECASE),
    re.compile(r"your code is[\s:]*([A-Z0-9]{4,8})\b", re.IGNORECASE),
    re.compile(r"code[\s:]*([A-Z0-9]{4,8})\b", re.IGNORECASE),
)

VALID_CODE = re.compile(r"^[A-Z0-9]{4,8}$")

PLACEHOLDER_CODES = frozenset({"0000", "1111", "1234"})

SUBJECT_KEYWORDS = ("verify", "verification", "code")
BODY_KEYWORDS = ("verification code", "your code is", "code:")


def html_to_text(html: str) -> str:
    """Visible text of an HTML body."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    return normalise_whitespace(soup.get_text(" "))


def is_valid_code(candidate: str) -> bool:
    return bool(VALID_CODE.match(candidate)) and candidate not in PLACEHOLDER_CODES


def extract_verification_code(text: str) -> Optional[str]:
    """First valid code found in ``text`` or ``None`` when there is none."""
    if not text:
        return None
    for pattern in CODE_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1)
            if is_valid_code(candidate):
                return candidate
    return None


def extract_code_from_email(email: Email) -> Optional[str]:
    """Scan subject then body; the subject rarely holds the code but is cheap to check."""
    return extract_verification_code(f"{email.subject}\n{email.body}")


@dataclass(frozen=True)
class VerificationEmailClassifier:
    """Heuristic OR of sender, subject and body signals.

    False positives are expected (any mail mentioning a "code"); the parser
    downstream still has to find a valid code in it. Set ``require_sender``
    to only trust the known sender.
    """

    senders: Tuple[str, ...] = (DEFAULT_VERIFICATION_SENDER,)
    subject_keywords: Tuple[str, ...] = SUBJECT_KEYWORDS
    body_keywords: Tuple[str, ...] = BODY_KEYWORDS
    require_sender: bool = False

    @classmethod
    def for_senders(cls, senders: Iterable[str], require_sender: bool = False) -> "VerificationEmailClassifier":
        return cls(senders=tuple(s.lower() for s in senders if s), require_sender=require_sender)

    def sender_matches(self, email: Email) -> bool:
        sender = email.sender.lower()
        return any(known.lower() in sender for known in self.senders)

    def __call__(self, email: Email) -> bool:
        if self.sender_matches(email):
            return True
        if self.require_sender:
            return False
        subject = email.subject.lower()
        if any(keyword in subject for keyword in self.subject_keywords):
            return True
        body = email.body.lower()
        return any(keyword in body for keyword in self.body_keywords)


@dataclass
class ParsedCode:
    """A code together with the message it came from."""

    code: str
    email: Email = field(repr=False)
