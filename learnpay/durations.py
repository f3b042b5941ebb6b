# learnpay/durations.py
"""
Course access durations and the clock helpers used for expiry checks.

A duration is a tagged value (count + unit). Free text such as "6 months" is
parsed once, when a course is authored or settings are loaded, so nothing on
the enrollment path ever parses strings.
"""
import calendar
import enum
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(year|month|day)s?\s*$", re.IGNORECASE)


class DurationUnit(str, enum.Enum):
    YEAR = "year"
    MONTH = "month"
    DAY = "day"


@dataclass(frozen=True)
class AccessDuration:
    count: int
    unit: DurationUnit

    def __post_init__(self):
        if self.count < 1:
            raise ValueError("access duration count must be a positive integer")

    @classmethod
    def parse(cls, text: str) -> "AccessDuration":
        """Parse strings like "1 year", "6 months" or "30 days"."""
        match = _DURATION_RE.match(text or "")
        if not match:
            raise ValueError(f"invalid access duration: {text!r}")
        return cls(int(match.group(1)), DurationUnit(match.group(2).lower()))

    def add_to(self, start: datetime) -> datetime:
        """
        Calendar arithmetic: months and years keep the day of month, clamped
        to the last day when the target month is shorter (Jan 31 + 1 month is
        Feb 28/29).
        """
        if self.unit is DurationUnit.DAY:
            return start + timedelta(days=self.count)

        months = self.count * 12 if self.unit is DurationUnit.YEAR else self.count
        index = start.month - 1 + months
        year = start.year + index // 12
        month = index % 12 + 1
        day = min(start.day, calendar.monthrange(year, month)[1])
        return start.replace(year=year, month=month, day=day)

    def __str__(self):
        suffix = "" if self.count == 1 else "s"
        return f"{self.count} {self.unit.value}{suffix}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes even for timezone-aware columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
