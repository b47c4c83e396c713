"""Shared data models used across the reservation agent."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional
from urllib.parse import urlparse
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FACILITY_HOST = "reservation.frontdesksuite.ca"
FACILITY_PATH_PREFIX = "/rcfs/"
MIN_NUMBER_OF_PEOPLE = 1
MAX_NUMBER_OF_PEOPLE = 2
MAX_SLOTS_PER_DAY = 2
MAX_SPORT_NAME_LENGTH = 50

DEFAULT_TRIGGER_TIME = dt.time(18, 0, 0)
DEFAULT_PRIOR_DAYS = 2
MAX_PRIOR_DAYS = 7


class Weekday(str, Enum):
    """Days of the week, ordered the way ``date.weekday()`` counts them."""

    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @property
    def index(self) -> int:
        return list(Weekday).index(self)

    @property
    def short_name(self) -> str:
        """Three-letter abbreviation used by the booking site ("Mon")."""
        return self.value[:3]

    @classmethod
    def from_date(cls, value: dt.date) -> "Weekday":
        return list(cls)[value.weekday()]


class TimeSlot(BaseModel):
    """A clock time without a date component."""

    id: UUID = Field(default_factory=uuid4)
    time: dt.time

    @field_validator("time")
    @classmethod
    def drop_sub_minute(cls, value: dt.time) -> dt.time:
        return value.replace(second=0, microsecond=0, tzinfo=None)

    def formatted(self) -> str:
        """Render the slot the way the site labels it, e.g. ``8:30 AM``."""
        hour = self.time.hour % 12 or 12
        suffix = "AM" if self.time.hour < 12 else "PM"
        return f"{hour}:{self.time.minute:02d} {suffix}"


class ReservationConfig(BaseModel):
    """One automation target on the facility booking site."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    facility_url: str
    sport_name: str
    number_of_people: int = Field(default=1, ge=MIN_NUMBER_OF_PEOPLE, le=MAX_NUMBER_OF_PEOPLE)
    is_enabled: bool = True
    day_time_slots: Dict[Weekday, List[TimeSlot]] = Field(default_factory=dict)

    @field_validator("name", "sport_name")
    @classmethod
    def require_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be empty")
        if len(cleaned) > MAX_SPORT_NAME_LENGTH:
            raise ValueError(f"must be {MAX_SPORT_NAME_LENGTH} characters or less")
        return cleaned

    @field_validator("facility_url")
    @classmethod
    def require_facility_url(cls, value: str) -> str:
        cleaned = value.strip()
        parsed = urlparse(cleaned)
        if parsed.scheme != "https" or parsed.hostname != FACILITY_HOST:
            raise ValueError(f"facility URL must point to https://{FACILITY_HOST}")
        if not parsed.path.startswith(FACILITY_PATH_PREFIX) or len(parsed.path) <= len(FACILITY_PATH_PREFIX):
            raise ValueError(f"facility URL path must start with {FACILITY_PATH_PREFIX}<facility>")
        return cleaned

    @model_validator(mode="after")
    def check_slots(self) -> "ReservationConfig":
        for day, slots in self.day_time_slots.items():
            if not slots:
                raise ValueError(f"no time slots selected for {day.value}")
            if len(slots) > MAX_SLOTS_PER_DAY:
                raise ValueError(f"at most {MAX_SLOTS_PER_DAY} time slots allowed for {day.value}")
            times = [slot.time for slot in slots]
            if len(set(times)) != len(times):
                raise ValueError(f"duplicate time slot for {day.value}")
        return self

    @property
    def facility_name(self) -> str:
        """Capitalised facility segment of the URL (``/rcfs/<facility>``)."""
        segment = urlparse(self.facility_url).path[len(FACILITY_PATH_PREFIX):].split("/", 1)[0]
        return segment.capitalize()

    def slots_for(self, day: Weekday) -> List[TimeSlot]:
        return sorted(self.day_time_slots.get(day, []), key=lambda slot: slot.time)

    def scheduled_days(self) -> List[Weekday]:
        return [day for day in Weekday if self.day_time_slots.get(day)]

    def schedule_summary(self) -> str:
        """Inline schedule, e.g. ``Mon 8:30 AM, 9:30 AM • Wed 7:00 PM``."""
        parts = []
        for day in self.scheduled_days():
            times = ", ".join(slot.formatted() for slot in self.slots_for(day))
            parts.append(f"{day.short_name} {times}")
        return " • ".join(parts)


class AppState(BaseModel):
    """Everything the configuration store hands to the core."""

    configurations: List[ReservationConfig] = Field(default_factory=list)
    global_enabled: bool = True

    @model_validator(mode="after")
    def unique_ids(self) -> "AppState":
        ids = [config.id for config in self.configurations]
        if len(set(ids)) != len(ids):
            raise ValueError("configuration ids must be unique")
        return self

    def find(self, key: str) -> Optional[ReservationConfig]:
        """Look a configuration up by id, id prefix or case-insensitive name."""
        lowered = key.strip().lower()
        for config in self.configurations:
            if str(config.id) == lowered or config.name.lower() == lowered:
                return config
        prefixed = [config for config in self.configurations if str(config.id).startswith(lowered)]
        return prefixed[0] if len(prefixed) == 1 else None


@dataclass(frozen=True)
class AutorunPolicy:
    """Global timing parameters for autoruns."""

    trigger_time: dt.time = DEFAULT_TRIGGER_TIME
    prior_days: int = DEFAULT_PRIOR_DAYS

    def __post_init__(self) -> None:
        object.__setattr__(self, "prior_days", max(0, min(MAX_PRIOR_DAYS, int(self.prior_days))))
        object.__setattr__(self, "trigger_time", self.trigger_time.replace(microsecond=0, tzinfo=None))

    @property
    def trigger_label(self) -> str:
        return self.trigger_time.strftime("%H:%M:%S")


class RunType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    GODMODE = "godmode"

    @property
    def display_name(self) -> str:
        return {"manual": "Manual", "automatic": "Automatic", "godmode": "God Mode"}[self.value]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.SUCCESS, RunState.FAILED)


class RunStatus(BaseModel):
    """State tag for one configuration plus its last success/failure times."""

    model_config = ConfigDict(frozen=True)

    state: RunState = RunState.IDLE
    reason: Optional[str] = None
    last_success_at: Optional[dt.datetime] = None
    last_failure_at: Optional[dt.datetime] = None

    @property
    def description(self) -> str:
        if self.state is RunState.FAILED:
            return f"Failed: {self.reason}" if self.reason else "Failed"
        return {
            RunState.IDLE: "Idle",
            RunState.RUNNING: "Running",
            RunState.SUCCESS: "Successful",
        }[self.state]


class LastRunInfo(BaseModel):
    """Outcome of the most recent run of a configuration, kept for display."""

    status: RunStatus
    at: dt.datetime
    run_type: RunType


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    NOT_ELIGIBLE = "not_eligible"


@dataclass
class RunOutcome:
    """Result of one reservation attempt as reported to callers."""

    config_id: UUID
    config_name: str
    kind: OutcomeKind
    run_type: RunType
    reason: Optional[str] = None
    started_at: Optional[dt.datetime] = None
    finished_at: Optional[dt.datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def status_text(self) -> str:
        if self.kind is OutcomeKind.SUCCESS:
            return f"{self.config_name}: reservation completed {self.run_type.display_name.lower()}"
        if self.kind is OutcomeKind.NOT_ELIGIBLE:
            return f"{self.config_name}: not eligible to run ({self.reason or 'not due'})"
        return f"{self.config_name}: failed ({self.reason or 'unknown error'})"


@dataclass(frozen=True)
class Email:
    """A message fetched from the mailbox. Never persisted."""

    uid: str
    sender: str
    subject: str
    body: str
    received_at: Optional[dt.datetime] = None
