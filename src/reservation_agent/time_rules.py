"""Pure functions deciding when a configuration's autorun fires.

The booking site opens slots a fixed number of days ahead, so a reservation
for a given weekday has to be attempted ``prior_days`` before it, at the
daily trigger time. Nothing in here reads the clock; callers pass ``now``.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import AutorunPolicy, ReservationConfig, TimeSlot, Weekday


@dataclass(frozen=True)
class ReservationTarget:
    """The calendar day a run books and the slots to try on it."""

    day: dt.date
    weekday: Weekday
    slots: List[TimeSlot]


def reservation_day_for(weekday: Weekday, today: dt.date) -> dt.date:
    """Next occurrence of ``weekday`` at or after ``today`` (same day counts)."""
    return today + dt.timedelta(days=(weekday.index - today.weekday()) % 7)


def autorun_day_for(weekday: Weekday, today: dt.date, policy: AutorunPolicy) -> dt.date:
    return reservation_day_for(weekday, today) - dt.timedelta(days=policy.prior_days)


def trigger_instant(day: dt.date, policy: AutorunPolicy, tzinfo: Optional[dt.tzinfo]) -> dt.datetime:
    return dt.datetime.combine(day, policy.trigger_time, tzinfo=tzinfo)


def seconds_until(instant: dt.datetime, now: dt.datetime) -> float:
    """Elapsed real time from ``now`` to ``instant``.

    Aware datetimes sharing a ``tzinfo`` subtract as wall-clock times, which is
    an hour off across a DST change, so both sides go through UTC first.
    """
    if instant.tzinfo is None or now.tzinfo is None:
        return (instant - now).total_seconds()
    return (instant.astimezone(dt.timezone.utc) - now.astimezone(dt.timezone.utc)).total_seconds()


def matching_weekday(config: ReservationConfig, policy: AutorunPolicy, today: dt.date) -> Optional[Weekday]:
    """A scheduled weekday whose autorun day is ``today``, if any."""
    for weekday in config.scheduled_days():
        if autorun_day_for(weekday, today, policy) == today:
            return weekday
    return None


def next_autorun_instant(
    config: ReservationConfig, policy: AutorunPolicy, now: dt.datetime
) -> Optional[dt.datetime]:
    """Today's trigger instant when today is an autorun day for ``config``."""
    if matching_weekday(config, policy, now.date()) is None:
        return None
    return trigger_instant(now.date(), policy, now.tzinfo)


def seconds_from_trigger(policy: AutorunPolicy, now: dt.datetime) -> float:
    """Signed distance of ``now``'s time of day from the trigger time."""
    current = now.hour * 3600 + now.minute * 60 + now.second + now.microsecond / 1_000_000
    target = policy.trigger_time.hour * 3600 + policy.trigger_time.minute * 60 + policy.trigger_time.second
    return current - target


def is_due_now(
    config: ReservationConfig, policy: AutorunPolicy, now: dt.datetime, tolerance: float
) -> bool:
    """True when today is an autorun day and ``now`` is within ``tolerance`` of the trigger."""
    if not config.is_enabled:
        return False
    if next_autorun_instant(config, policy, now) is None:
        return False
    return abs(seconds_from_trigger(policy, now)) <= tolerance


def is_overdue(config: ReservationConfig, policy: AutorunPolicy, now: dt.datetime, grace: float) -> bool:
    """Late-only window used by the backstop checks: trigger <= now <= trigger + grace."""
    if not config.is_enabled:
        return False
    if next_autorun_instant(config, policy, now) is None:
        return False
    return 0 <= seconds_from_trigger(policy, now) <= grace


def next_trigger_after(policy: AutorunPolicy, now: dt.datetime) -> dt.datetime:
    """First daily trigger instant strictly after ``now``."""
    candidate = trigger_instant(now.date(), policy, now.tzinfo)
    if seconds_until(candidate, now) <= 0:
        candidate = trigger_instant(now.date() + dt.timedelta(days=1), policy, now.tzinfo)
    return candidate


def next_autorun_for(
    config: ReservationConfig, policy: AutorunPolicy, now: dt.datetime, horizon_days: int = 8
) -> Optional[dt.datetime]:
    """Upcoming autorun instant for display, scanning forward day by day."""
    if not config.is_enabled or not config.scheduled_days():
        return None
    for offset in range(horizon_days):
        day = now.date() + dt.timedelta(days=offset)
        if matching_weekday(config, policy, day) is None:
            continue
        instant = trigger_instant(day, policy, now.tzinfo)
        if seconds_until(instant, now) >= 0:
            return instant
    return None


def reservation_target(
    config: ReservationConfig, policy: AutorunPolicy, today: dt.date
) -> Optional[ReservationTarget]:
    """Pick what a run started today books.

    Autorun days book ``today + prior_days``. Otherwise (manual runs on other
    days) the soonest scheduled weekday at or after that date is used.
    """
    days = config.scheduled_days()
    if not days:
        return None
    earliest = today + dt.timedelta(days=policy.prior_days)
    best: Optional[ReservationTarget] = None
    for weekday in days:
        day = reservation_day_for(weekday, earliest)
        if best is None or day < best.day:
            best = ReservationTarget(day=day, weekday=weekday, slots=config.slots_for(weekday))
    return best


def due_configs(
    configs: Iterable[ReservationConfig], policy: AutorunPolicy, now: dt.datetime, tolerance: float
) -> List[ReservationConfig]:
    return [config for config in configs if is_due_now(config, policy, now, tolerance)]
