"""Configuration objects and helpers for the reservation agent."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, Protocol

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import DEFAULT_PRIOR_DAYS, DEFAULT_TRIGGER_TIME, MAX_PRIOR_DAYS, AutorunPolicy

GMAIL_IMAP_SERVER = "imap.gmail.com"
GMAIL_DOMAINS = ("gmail.com", "googlemail.com")


class Settings(BaseSettings):
    """Runtime configuration sourced from environment variables."""

    contact_name: str = ""
    contact_phone: str = ""
    contact_email: Optional[str] = None

    mail_provider: Literal["auto", "imap", "gmail"] = "auto"
    mail_address: str = ""
    mail_password: SecretStr = SecretStr("")
    mail_server: Optional[str] = None
    mail_port: int = 993
    mail_timeout_seconds: float = 30.0

    verification_sender: str = "noreply@frontdesksuite.com"
    verification_timeout_seconds: float = 300.0
    verification_poll_seconds: float = 5.0
    verification_initial_wait_seconds: float = 5.0
    verification_clock_skew_seconds: float = 30.0

    autorun_time: dt.time = DEFAULT_TRIGGER_TIME
    prior_days: int = DEFAULT_PRIOR_DAYS
    trigger_tolerance_seconds: float = 5.0
    backstop_poll_seconds: float = 60.0
    prevent_sleep_for_autorun: bool = True
    sleep_lead_seconds: float = 300.0

    headless: bool = True
    page_load_timeout_seconds: float = 30.0
    element_timeout_seconds: float = 10.0
    max_submit_attempts: int = 6
    reservation_timeout_seconds: float = 300.0

    timezone: str = "America/Toronto"
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".reservation-agent")
    configurations_file: Optional[Path] = None

    telegram_bot_token: Optional[SecretStr] = None
    telegram_chat_id: Optional[str] = None

    api_enabled: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    trigger_label: str = "com.reservation-agent.scheduled"

    model_config = SettingsConfigDict(
        env_prefix="RESERVATION_AGENT_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("prior_days")
    @classmethod
    def clamp_prior_days(cls, value: int) -> int:
        return max(0, min(MAX_PRIOR_DAYS, value))

    @field_validator("contact_phone")
    @classmethod
    def strip_phone_separators(cls, value: str) -> str:
        """The site's telephone field rejects dashes and spaces."""
        return "".join(ch for ch in value if ch.isdigit() or ch == "+")

    @field_validator("max_submit_attempts")
    @classmethod
    def at_least_one_attempt(cls, value: int) -> int:
        return max(1, value)

    def autorun_policy(self) -> AutorunPolicy:
        """Pure timing policy derived from these settings."""
        return AutorunPolicy(trigger_time=self.autorun_time, prior_days=self.prior_days)

    @property
    def configurations_path(self) -> Path:
        return self.configurations_file or self.state_dir / "configurations.json"

    @property
    def last_runs_path(self) -> Path:
        return self.state_dir / "last_runs.json"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "agent.pid"

    @property
    def resolved_contact_email(self) -> str:
        return self.contact_email or self.mail_address

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_bot_token.get_secret_value() and self.telegram_chat_id)

    @property
    def telegram_api_endpoint(self) -> str:
        """Base Telegram Bot API endpoint."""
        token = self.telegram_bot_token.get_secret_value() if self.telegram_bot_token else ""
        return f"https://api.telegram.org/bot{token}"

    @property
    def backstop_grace_seconds(self) -> float:
        """How late a missed trigger may still be picked up."""
        return self.backstop_poll_seconds + self.trigger_tolerance_seconds


@dataclass(frozen=True)
class MailCredentials:
    """Mailbox login handed out by the credential vault."""

    address: str
    secret: SecretStr
    server_host: Optional[str] = None
    port: int = 993

    @property
    def is_gmail(self) -> bool:
        domain = self.address.rsplit("@", 1)[-1].lower()
        return domain in GMAIL_DOMAINS or (self.server_host or "").lower() == GMAIL_IMAP_SERVER


class CredentialVault(Protocol):
    """Secure credential storage as seen by the core."""

    def get_credentials(self, kind: str) -> MailCredentials:
        ...


class SettingsCredentialVault:
    """Vault backed by the environment-sourced settings."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def get_credentials(self, kind: str) -> MailCredentials:
        if kind != "mail":
            raise ConfigurationError(f"Unknown credential kind: {kind}")
        address = self._settings.mail_address.strip()
        if not address or "@" not in address:
            raise ConfigurationError("Mailbox address is not configured")
        if not self._settings.mail_password.get_secret_value():
            raise ConfigurationError("Mailbox password is not configured")
        return MailCredentials(
            address=address,
            secret=self._settings.mail_password,
            server_host=self._settings.mail_server,
            port=self._settings.mail_port,
        )
