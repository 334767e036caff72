"""Slot generation for the patient booking calendar.

Open slots are derived from a doctor's daily window and the labels already
recorded in ``Doctor.slots_booked``. Nothing in this module reads or writes the
database, so a listing can be recomputed at any time with the same result.

Day keys and time labels are only ever produced by :class:`SlotKey`, which is
also used to read ``slots_booked`` back. Stored labels are parsed before they
are compared, so ``9:30 am`` and ``09:30 AM`` refer to the same slot.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from clinic_booking.core import config

logger = logging.getLogger(__name__)

_TIME_LABEL_PATTERN = re.compile(r'^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$')


def format_day_key(value: date) -> str:
    return f'{value.day}_{value.month}_{value.year}'


def parse_day_key(value: str) -> date:
    try:
        day, month, year = (int(part) for part in value.strip().split('_'))
        return date(year, month, day)
    except ValueError as exc:
        raise ValueError(f'Invalid day key: {value!r}') from exc


def format_time_label(value: time) -> str:
    hour = value.hour % 12 or 12
    meridiem = 'PM' if value.hour >= 12 else 'AM'
    return f'{hour:02d}:{value.minute:02d} {meridiem}'


def parse_time_label(value: str) -> time:
    match = _TIME_LABEL_PATTERN.match(value)
    if match is None:
        raise ValueError(f'Invalid time label: {value!r}')

    hour, minute = int(match.group(1)), int(match.group(2))
    if not 1 <= hour <= 12 or minute > 59:
        raise ValueError(f'Invalid time label: {value!r}')

    meridiem = match.group(3).upper()
    if meridiem == 'AM' and hour == 12:
        hour = 0
    elif meridiem == 'PM' and hour != 12:
        hour += 12
    return time(hour, minute)


@dataclass(frozen=True, order=True)
class SlotKey:
    """A bookable (date, time) pair with its canonical string forms."""

    slot_date: date
    slot_time: time

    @property
    def day_key(self) -> str:
        return format_day_key(self.slot_date)

    @property
    def time_label(self) -> str:
        return format_time_label(self.slot_time)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.slot_time)

    @classmethod
    def parse(cls, day_key: str, time_label: str) -> 'SlotKey':
        return cls(parse_day_key(day_key), parse_time_label(time_label))


@dataclass(frozen=True)
class DaySlots:
    slot_date: date
    slots: tuple[SlotKey, ...]

    @property
    def day_key(self) -> str:
        return format_day_key(self.slot_date)


def booked_slot_keys(slots_booked: Mapping[str, Iterable[str]] | None) -> set[SlotKey]:
    keys: set[SlotKey] = set()
    for day_key, labels in (slots_booked or {}).items():
        for label in labels or ():
            try:
                keys.add(SlotKey.parse(day_key, label))
            except ValueError:
                logger.warning('Ignoring unreadable booked slot %r on %r', label, day_key)
    return keys


def add_booked_label(slots_booked: Mapping[str, Iterable[str]] | None, key: SlotKey) -> dict[str, list[str]]:
    """Return a copy of ``slots_booked`` with ``key`` recorded under its day."""
    updated = _canonical_copy(slots_booked)
    labels = set(updated.get(key.day_key, []))
    labels.add(key.time_label)
    updated[key.day_key] = _sorted_labels(labels)
    return updated


def remove_booked_label(slots_booked: Mapping[str, Iterable[str]] | None, key: SlotKey) -> dict[str, list[str]]:
    """Return a copy of ``slots_booked`` without ``key``; empty days are dropped."""
    updated = _canonical_copy(slots_booked)
    labels = set(updated.get(key.day_key, []))
    labels.discard(key.time_label)
    if labels:
        updated[key.day_key] = _sorted_labels(labels)
    else:
        updated.pop(key.day_key, None)
    return updated


def booked_labels_for_day(slots_booked: Mapping[str, Iterable[str]] | None, slot_date: date) -> set[str]:
    return {
        key.time_label
        for key in booked_slot_keys(slots_booked)
        if key.slot_date == slot_date
    }


def _canonical_copy(slots_booked: Mapping[str, Iterable[str]] | None) -> dict[str, list[str]]:
    by_day: dict[str, set[str]] = {}
    for day_key, labels in (slots_booked or {}).items():
        for label in labels or ():
            try:
                key = SlotKey.parse(day_key, label)
            except ValueError:
                # Unreadable entries are carried over untouched for an operator to inspect.
                by_day.setdefault(day_key, set()).add(label)
                continue
            by_day.setdefault(key.day_key, set()).add(key.time_label)
    return {day_key: _sorted_labels(labels) for day_key, labels in by_day.items()}


def _label_sort_key(label: str):
    try:
        return (0, parse_time_label(label), '')
    except ValueError:
        return (1, time.min, label)


def _sorted_labels(labels: Iterable[str]) -> list[str]:
    return sorted(labels, key=_label_sort_key)


def round_up_to_interval(moment: datetime, interval_minutes: int) -> datetime:
    current = moment.replace(second=0, microsecond=0)
    remainder = (current.hour * 60 + current.minute) % interval_minutes
    if remainder:
        current += timedelta(minutes=interval_minutes - remainder)
    return current


def is_on_grid(slot_time: time, interval_minutes: int = config.SLOT_INTERVAL_MINUTES) -> bool:
    return slot_time.second == 0 and slot_time.microsecond == 0 and (
        (slot_time.hour * 60 + slot_time.minute) % interval_minutes == 0
    )


def slot_fits_window(
    slot_time: time,
    window_start: time,
    window_end: time,
    interval_minutes: int = config.SLOT_INTERVAL_MINUTES,
) -> bool:
    return is_on_grid(slot_time, interval_minutes) and window_start <= slot_time < window_end


def first_slot_start(
    day: date,
    window_start: time,
    now: datetime,
    interval_minutes: int = config.SLOT_INTERVAL_MINUTES,
    lead_minutes: int = config.BOOKING_LEAD_MINUTES,
) -> datetime:
    day_open = datetime.combine(day, window_start)
    if day != now.date():
        return day_open

    # Same-day bookings need notice: start from the later of now and opening,
    # snap to the slot grid, then add the lead time.
    earliest = round_up_to_interval(max(now, day_open), interval_minutes)
    return earliest + timedelta(minutes=lead_minutes)


def generate_slots(
    window_start: time,
    window_end: time,
    slots_booked: Mapping[str, Iterable[str]] | None,
    now: datetime,
    days: int = config.BOOKING_HORIZON_DAYS,
    interval_minutes: int = config.SLOT_INTERVAL_MINUTES,
    lead_minutes: int = config.BOOKING_LEAD_MINUTES,
) -> list[DaySlots]:
    booked = booked_slot_keys(slots_booked)
    step = timedelta(minutes=interval_minutes)
    buckets: list[DaySlots] = []

    for offset in range(days):
        current_day = now.date() + timedelta(days=offset)
        current_start = first_slot_start(current_day, window_start, now, interval_minutes, lead_minutes)
        day_close = datetime.combine(current_day, window_end)

        open_slots: list[SlotKey] = []
        # A lead time can push the first start past midnight; those belong to no bucket.
        while current_start < day_close and current_start.date() == current_day:
            key = SlotKey(current_start.date(), current_start.time())
            if key not in booked:
                open_slots.append(key)
            current_start += step

        buckets.append(DaySlots(slot_date=current_day, slots=tuple(open_slots)))

    return buckets
