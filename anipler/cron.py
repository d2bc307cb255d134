"""Cron expressions with a seconds field, and a loop that runs a job on them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"],
        start=1,
    )
}
_DAY_NAMES = {
    name: number
    for number, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])
}
_WILDCARDS = {"*", "?"}
_YEAR_RANGE = (1970, 2099)
_DEFAULT_SEARCH_YEARS = 8


def _parse_value(text: str, names: dict[str, int] | None) -> int:
    if names and text.upper() in names:
        return names[text.upper()]
    if not text.isdigit():
        raise ValueError(f"invalid cron value {text!r}")
    return int(text)


def _parse_field(
    text: str, low: int, high: int, names: dict[str, int] | None = None
) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"empty item in cron field {text!r}")
        base, slash, step_text = part.partition("/")
        step = 1
        if slash:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"invalid step in cron field {text!r}")
            step = int(step_text)
        if base in _WILDCARDS:
            start, end = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start, end = _parse_value(first, names), _parse_value(last, names)
            if start > end:
                raise ValueError(f"reversed range in cron field {text!r}")
        else:
            start = _parse_value(base, names)
            end = high if slash else start
        if start < low or end > high:
            raise ValueError(f"value out of range {low}-{high} in cron field {text!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    """A parsed cron expression: seconds, minutes, hours, day, month, weekday, [year]."""

    seconds: tuple[int, ...]
    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    years: frozenset[int] | None
    any_day: bool
    any_weekday: bool

    @classmethod
    def parse(cls, expression: str) -> CronSchedule:
        """Parse a 5-, 6- or 7-field expression; five fields imply second 0.

        Raises ValueError when the expression is malformed.
        """
        fields = expression.split()
        if len(fields) == 5:
            fields.insert(0, "0")
        if len(fields) not in (6, 7):
            raise ValueError(f"cron expression needs 5 to 7 fields: {expression!r}")
        second, minute, hour, day, month, weekday = fields[:6]
        weekdays = frozenset(
            value % 7 for value in _parse_field(weekday, 0, 7, _DAY_NAMES)
        )
        years = _parse_field(fields[6], *_YEAR_RANGE) if len(fields) == 7 else None
        return cls(
            seconds=tuple(sorted(_parse_field(second, 0, 59))),
            minutes=tuple(sorted(_parse_field(minute, 0, 59))),
            hours=tuple(sorted(_parse_field(hour, 0, 23))),
            days=_parse_field(day, 1, 31),
            months=_parse_field(month, 1, 12, _MONTH_NAMES),
            weekdays=weekdays,
            years=years,
            any_day=day in _WILDCARDS,
            any_weekday=weekday in _WILDCARDS,
        )

    def _day_matches(self, day: date) -> bool:
        if self.years is not None and day.year not in self.years:
            return False
        if day.month not in self.months:
            return False
        day_ok = day.day in self.days
        weekday_ok = (day.weekday() + 1) % 7 in self.weekdays
        if self.any_day and self.any_weekday:
            return True
        if self.any_day:
            return weekday_ok
        if self.any_weekday:
            return day_ok
        return day_ok or weekday_ok

    def matches(self, moment: datetime) -> bool:
        """Whether the schedule fires at this second."""
        return (
            moment.second in self.seconds
            and moment.minute in self.minutes
            and moment.hour in self.hours
            and self._day_matches(moment.date())
        )

    def _first_time(self, floor: tuple[int, int, int] | None) -> tuple[int, int, int] | None:
        for hour in self.hours:
            if floor is not None and hour < floor[0]:
                continue
            hour_exact = floor is not None and hour == floor[0]
            for minute in self.minutes:
                if hour_exact and minute < floor[1]:
                    continue
                minute_exact = hour_exact and minute == floor[1]
                for second in self.seconds:
                    if minute_exact and second < floor[2]:
                        continue
                    return hour, minute, second
        return None

    def next_after(self, moment: datetime) -> datetime:
        """The first firing time strictly after ``moment``, in the same time zone.

        Raises ValueError if the schedule never fires again.
        """
        tz = moment.tzinfo
        start = (moment.replace(microsecond=0) + timedelta(seconds=1)).replace(tzinfo=None)
        day = start.date()
        last_year = max(self.years) if self.years else day.year + _DEFAULT_SEARCH_YEARS
        if self.years and min(self.years) > day.year:
            day = date(min(self.years), 1, 1)
        while day.year <= last_year:
            if self._day_matches(day):
                floor = (start.hour, start.minute, start.second) if day == start.date() else None
                found = self._first_time(floor)
                if found is not None:
                    return datetime.combine(day, time(*found), tzinfo=tz)
            day += timedelta(days=1)
        raise ValueError("cron schedule has no upcoming firing time")


def _reap(running: set[asyncio.Task[None]], task: asyncio.Task[None]) -> None:
    running.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Scheduled job failed", exc_info=task.exception())


async def run_on_schedule(
    schedule: CronSchedule,
    job: Callable[[], Awaitable[None]],
    stop: asyncio.Event,
) -> None:
    """Start ``job`` at every firing time of ``schedule`` until ``stop`` is set.

    Jobs run as separate tasks so a slow job does not delay the next firing; any
    still running when ``stop`` is set are cancelled.
    """
    running: set[asyncio.Task[None]] = set()
    last_due: datetime | None = None
    try:
        while not stop.is_set():
            now = datetime.now().astimezone()
            reference = now if last_due is None or now > last_due else last_due
            due = schedule.next_after(reference)
            delay = max((due - now).total_seconds(), 0.0)
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            last_due = due
            task = asyncio.ensure_future(job())
            running.add(task)
            task.add_done_callback(lambda t: _reap(running, t))
    finally:
        for task in list(running):
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)