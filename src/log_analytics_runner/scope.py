"""Temporal scope resolution for a run.

A run either tails the logs incrementally or rebuilds a period:
  YYYY        one year
  YYYY-MM     one month
  YYYY-MM-DD  one day

Independently an intraday window [start, stop] (HH:MM) limits which log lines
count. Everything here is validated before the run lock is taken, so a typo on
the command line never leaves a marker behind.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .errors import InvalidFormat

BUILD_DATE_PATTERNS = ("YYYY", "YYYY-MM", "YYYY-MM-DD")

_BUILD_DATE_RE = re.compile(r"(?P<year>\d{4})(?:-(?P<month>\d{2})(?:-(?P<day>\d{2}))?)?")
_HHMM_RE = re.compile(r"(?P<hh>[01]\d|2[0-3]):(?P<mm>[0-5]\d)")
_TZ_RE = re.compile(r"(?P<sign>[+-]?)(?P<hours>\d{1,2})")

TZ_MIN_HOURS = -12
TZ_MAX_HOURS = 14


@dataclass(frozen=True)
class TemporalScope:
    """Immutable description of what part of the timeline a run covers."""

    rebuild: bool = False
    build_date: Optional[str] = None
    start: Optional[str] = None
    stop: Optional[str] = None
    tz_offset: int = 0

    @property
    def granularity(self) -> Optional[str]:
        if not self.build_date:
            return None
        return {4: "year", 7: "month", 10: "day"}[len(self.build_date)]

    @property
    def has_window(self) -> bool:
        return self.start is not None or self.stop is not None

    def period_label(self) -> Optional[str]:
        return self.build_date or None

    def matches_day(self, day: str) -> bool:
        """True if `day` (YYYY-MM-DD) lies inside the rebuild period.

        A scope without a rebuild date matches every day.
        """
        if not self.build_date:
            return True
        return day.startswith(self.build_date)

    def in_window(self, hhmm: str) -> bool:
        """True if a wall-clock time HH:MM passes the intraday filter.

        Bounds are inclusive; a window whose start is after its stop wraps
        past midnight (e.g. 22:00-02:00).
        """
        if not self.has_window:
            return True
        lo = self.start or "00:00"
        hi = self.stop or "23:59"
        if lo <= hi:
            return lo <= hhmm <= hi
        return hhmm >= lo or hhmm <= hi

    def describe(self) -> str:
        parts = ["rebuild" if self.rebuild else "incremental"]
        if self.build_date:
            parts.append(f"{self.granularity}={self.build_date}")
        if self.has_window:
            parts.append(f"window={self.start or '00:00'}-{self.stop or '23:59'}")
        if self.tz_offset:
            parts.append(f"tz={self.tz_offset:+d}h")
        return " ".join(parts)


def validate_build_date(value: str) -> str:
    m = _BUILD_DATE_RE.fullmatch(value)
    if not m:
        raise InvalidFormat(
            f"Invalid build date {value!r}: expected one of {', '.join(BUILD_DATE_PATTERNS)}"
        )

    month = m.group("month")
    day = m.group("day")
    if month is not None and not 1 <= int(month) <= 12:
        raise InvalidFormat(f"Invalid build date {value!r}: month must be 01-12")
    if day is not None and not 1 <= int(day) <= 31:
        raise InvalidFormat(f"Invalid build date {value!r}: day must be 01-31")
    return value


def validate_hhmm(value: str, *, label: str = "time") -> str:
    if not _HHMM_RE.fullmatch(value):
        raise InvalidFormat(f"Invalid {label} {value!r}: expected HH:MM (00:00-23:59)")
    return value


def parse_timezone_offset(value: Optional[str]) -> int:
    """Parse a `-t/--timezone` value such as "+2", "-05" or "3" into hours."""

    if value is None or str(value).strip() == "":
        return 0
    m = _TZ_RE.fullmatch(str(value).strip())
    if not m:
        raise InvalidFormat(f"Invalid timezone offset {value!r}: expected +HH or -HH")
    hours = int(m.group("hours"))
    if m.group("sign") == "-":
        hours = -hours
    if not TZ_MIN_HOURS <= hours <= TZ_MAX_HOURS:
        raise InvalidFormat(
            f"Invalid timezone offset {value!r}: must be between {TZ_MIN_HOURS:+d} and {TZ_MAX_HOURS:+d}"
        )
    return hours


def resolve_scope(
    rebuild: bool,
    build_date: Optional[str],
    start: Optional[str],
    stop: Optional[str],
    tz_offset: int = 0,
) -> TemporalScope:
    """Validate run parameters and build the TemporalScope.

    A non-empty build date forces rebuild mode. Raises InvalidFormat on any
    malformed value.
    """

    date = (build_date or "").strip() or None
    if date is not None:
        validate_build_date(date)
        rebuild = True

    start_v = validate_hhmm(start, label="start time") if start else None
    stop_v = validate_hhmm(stop, label="stop time") if stop else None

    return TemporalScope(
        rebuild=bool(rebuild),
        build_date=date,
        start=start_v,
        stop=stop_v,
        tz_offset=int(tz_offset),
    )
