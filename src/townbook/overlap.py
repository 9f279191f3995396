from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

_CLOCK_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


# STRICT: half-open intervals, back-to-back windows are fine.
# CONSERVATIVE: the legacy OR-combined check, blocks nearly every pair.
class OverlapPolicy(str, enum.Enum):
    STRICT = "strict"
    CONSERVATIVE = "conservative"

    @classmethod
    def from_setting(cls, value: Optional[str]) -> "OverlapPolicy":
        v = (value or "").strip().lower()
        try:
            return cls(v)
        except ValueError:
            raise ValueError(f"Unknown room overlap policy: {value!r}") from None


def parse_clock(value: str) -> time:
    m = _CLOCK_RE.match((value or "").strip())
    if not m:
        raise ValueError(f"Invalid clock time {value!r}, expected HH:MM")
    return time(int(m.group(1)), int(m.group(2)))


def normalize_clock(value: str) -> str:
    # "9:05" -> "09:05" so stored times compare as strings
    return parse_clock(value).strftime("%H:%M")


def combine(day: date, clock: Optional[str]) -> datetime:
    if not clock:
        return datetime.combine(day, time.min)
    return datetime.combine(day, parse_clock(clock))


@dataclass(frozen=True)
class TimeWindow:
    start_date: date
    end_date: date
    start_time: str
    end_time: str

    @property
    def start(self) -> datetime:
        return combine(self.start_date, self.start_time)

    @property
    def end(self) -> datetime:
        return combine(self.end_date, self.end_time)

    def is_valid(self) -> bool:
        return self.end > self.start


def strict_overlap(existing: TimeWindow, proposed: TimeWindow) -> bool:
    return existing.start < proposed.end and existing.end > proposed.start


def conservative_overlap(existing: TimeWindow, proposed: TimeWindow) -> bool:
    # Stored dates carry no clock part, so they compare as midnight.
    existing_start = datetime.combine(existing.start_date, time.min)
    existing_end = datetime.combine(existing.end_date, time.min)
    dates_hit = existing_start <= proposed.end or existing_end >= proposed.start
    times_hit = (
        normalize_clock(existing.start_time) <= normalize_clock(proposed.end_time)
        or normalize_clock(existing.end_time) >= normalize_clock(proposed.start_time)
    )
    return dates_hit and times_hit


def windows_overlap(existing: TimeWindow, proposed: TimeWindow, policy: OverlapPolicy) -> bool:
    if policy is OverlapPolicy.CONSERVATIVE:
        return conservative_overlap(existing, proposed)
    return strict_overlap(existing, proposed)
