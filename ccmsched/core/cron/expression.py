"""Five-field cron expressions — parse, match, next run, describe.

Fields: ``minute hour day-of-month month day-of-week`` with day-of-week
0 = Sunday. Each field is a wildcard (``*``), a single value, a list
(``1,3,5``), a range (``1-5``) or a step (``*/15``, ``5/10``, ``1-10/2``).
All five fields must match for an instant to fire.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Union

from ccmsched.core.errors import InvalidExpression, NoMatchFound

# None = wildcard, int = single value, tuple = explicit set of values
CronField = Union[None, int, tuple[int, ...]]

FIELD_NAMES = ("minute", "hour", "day_of_month", "month", "day_of_week")
FIELD_BOUNDS = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day_of_month": (1, 31),
    "month": (1, 12),
    "day_of_week": (0, 6),
}

# Search horizon for next_run (one leap year)
MAX_LOOKAHEAD = timedelta(days=366)

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


@dataclass(frozen=True)
class CronSchedule:
    """Parsed cron expression."""

    minute: CronField = None
    hour: CronField = None
    day_of_month: CronField = None
    month: CronField = None
    day_of_week: CronField = None

    def matches(self, when: datetime) -> bool:
        return (
            field_matches(self.minute, when.minute)
            and field_matches(self.hour, when.hour)
            and self.matches_day(when)
        )

    def matches_day(self, when: datetime) -> bool:
        return (
            field_matches(self.day_of_month, when.day)
            and field_matches(self.month, when.month)
            and field_matches(self.day_of_week, cron_weekday(when))
        )


@dataclass(frozen=True)
class CronValidation:
    valid: bool
    error: str | None = None


# ════════════════════════════════════════════════════════════
# PARSING
# ════════════════════════════════════════════════════════════


def parse(expr: str) -> CronSchedule:
    """Parse a cron expression.

    Raises
    ------
    InvalidExpression
        Wrong field count, non-numeric value, value out of bounds,
        reversed range or non-positive step.
    """
    parts = expr.strip().split() if expr else []
    if len(parts) != 5:
        raise InvalidExpression(
            f"Invalid cron expression: expected 5 fields, got {len(parts)}"
        )
    values = {
        name: parse_field(part, *FIELD_BOUNDS[name])
        for name, part in zip(FIELD_NAMES, parts)
    }
    return CronSchedule(**values)


def parse_field(field: str, lo: int, hi: int) -> CronField:
    """Parse a single cron field into a wildcard, value or value set."""
    if field == "*":
        return None

    terms = field.split(",")
    if len(terms) == 1 and _is_int(field):
        return _bounded(field, lo, hi)

    values: set[int] = set()
    for term in terms:
        values.update(_parse_term(term, field, lo, hi))
    return tuple(sorted(values))


def _parse_term(term: str, field: str, lo: int, hi: int) -> range:
    if not term:
        raise InvalidExpression(f"Invalid cron field: {field!r} (empty list item)")

    step = 1
    if "/" in term:
        base, _, step_str = term.partition("/")
        if not _is_int(step_str) or int(step_str) <= 0:
            raise InvalidExpression(f"Invalid cron step: {term!r}")
        step = int(step_str)
        if base == "*":
            return range(lo, hi + 1, step)
        if "-" not in base:
            return range(_bounded(base, lo, hi), hi + 1, step)
        term = base

    if "-" in term:
        start_str, _, end_str = term.partition("-")
        start = _bounded(start_str, lo, hi)
        end = _bounded(end_str, lo, hi)
        if start > end:
            raise InvalidExpression(f"Invalid cron range: {term!r} (start > end)")
        return range(start, end + 1, step)

    value = _bounded(term, lo, hi)
    return range(value, value + 1)


def _bounded(text: str, lo: int, hi: int) -> int:
    if not _is_int(text):
        raise InvalidExpression(f"Invalid cron field value: {text!r} (expected {lo}-{hi})")
    value = int(text)
    if value < lo or value > hi:
        raise InvalidExpression(f"Invalid cron field value: {value} (expected {lo}-{hi})")
    return value


def _is_int(text: str) -> bool:
    return text.isascii() and text.isdigit()


def validate(expr: str) -> CronValidation:
    """Validate a cron expression without raising."""
    try:
        parse(expr)
    except InvalidExpression as e:
        return CronValidation(valid=False, error=str(e))
    return CronValidation(valid=True)


# ════════════════════════════════════════════════════════════
# MATCHING
# ════════════════════════════════════════════════════════════


def field_matches(field: CronField, value: int) -> bool:
    if field is None:
        return True
    if isinstance(field, int):
        return field == value
    return value in field


def cron_weekday(when: datetime) -> int:
    """Day of week in cron numbering (0 = Sunday)."""
    return (when.weekday() + 1) % 7


def matches(expr: str, when: datetime) -> bool:
    """True if ``when`` (to the minute) fires ``expr``."""
    return parse(expr).matches(when)


def next_run(expr: str, from_: datetime | None = None) -> datetime:
    """First instant strictly after ``from_`` matching ``expr``.

    The scan walks wall-clock fields, skipping whole days and hours that
    cannot match. For zone-aware ``from_`` each hit is resolved back to an
    instant in the same zone: wall times inside a DST gap are skipped, and a
    repeated wall time resolves to whichever occurrence is still ahead.

    Raises
    ------
    InvalidExpression
        If ``expr`` cannot be parsed.
    NoMatchFound
        If nothing matches within one year (e.g. ``0 0 31 2 *``).
    """
    schedule = parse(expr)
    start = from_ if from_ is not None else datetime.now()
    tz = start.tzinfo
    wall = start.replace(tzinfo=None, fold=0)
    candidate = wall.replace(second=0, microsecond=0) + timedelta(minutes=1)
    deadline = candidate + MAX_LOOKAHEAD

    while candidate <= deadline:
        if not schedule.matches_day(candidate):
            candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if not field_matches(schedule.hour, candidate.hour):
            candidate = candidate.replace(minute=0) + timedelta(hours=1)
            continue
        if field_matches(schedule.minute, candidate.minute):
            if tz is None:
                return candidate
            instant = _resolve_wall_time(candidate, tz, start)
            if instant is not None:
                return instant
        candidate += timedelta(minutes=1)

    raise NoMatchFound(f"Could not find next run time for cron expression: {expr}")


def _resolve_wall_time(wall: datetime, tz: tzinfo, after: datetime) -> datetime | None:
    """Earliest instant in ``tz`` showing ``wall`` that is later than ``after``."""
    for fold in (0, 1):
        instant = wall.replace(tzinfo=tz, fold=fold)
        # a DST gap shifts the wall clock on the round trip
        if instant.astimezone(timezone.utc).astimezone(tz).replace(tzinfo=None) != wall:
            return None
        if instant.timestamp() > after.timestamp():
            return instant
    return None


# ════════════════════════════════════════════════════════════
# DESCRIPTION
# ════════════════════════════════════════════════════════════


def describe(expr: str) -> str:
    """Best-effort human-readable rendering of ``expr``. Never raises.

    >>> describe("0 9 * * *")
    'Every day at 9:00 AM'
    >>> describe("0 8 * * 1")
    'Every Monday at 8:00 AM'
    """
    try:
        s = parse(expr)
    except InvalidExpression:
        return expr

    date_wild = s.day_of_month is None and s.month is None
    fixed_time = isinstance(s.hour, int) and isinstance(s.minute, int)

    if date_wild and s.day_of_week is None and fixed_time:
        return f"Every day at {format_time(s.hour, s.minute)}"

    if date_wild and isinstance(s.day_of_week, int) and fixed_time:
        return f"Every {DAY_NAMES[s.day_of_week]} at {format_time(s.hour, s.minute)}"

    if (
        isinstance(s.day_of_month, int)
        and s.month is None
        and s.day_of_week is None
        and fixed_time
    ):
        return (
            f"Day {s.day_of_month} of every month at {format_time(s.hour, s.minute)}"
        )

    all_days = date_wild and s.day_of_week is None
    if all_days and s.hour is None and isinstance(s.minute, int):
        return f"Every hour at minute {s.minute}"

    if all_days and isinstance(s.hour, tuple) and isinstance(s.minute, int):
        step = _uniform_step(s.hour)
        if step:
            return f"Every {step} hours at minute {s.minute}"

    if all_days and s.hour is None and isinstance(s.minute, tuple):
        step = _uniform_step(s.minute)
        if step:
            return f"Every {step} minutes"

    parts = [
        _describe_minute(s.minute),
        _describe_hour(s.hour),
        _describe_day_of_month(s.day_of_month),
        _describe_month(s.month),
        _describe_day_of_week(s.day_of_week),
    ]
    return " ".join(p for p in parts if p)


def format_time(hour: int, minute: int) -> str:
    period = "PM" if hour >= 12 else "AM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {period}"


def _uniform_step(values: tuple[int, ...]) -> int | None:
    """Step n if values are exactly 0, n, 2n, ... else None."""
    if len(values) < 2:
        return None
    step = values[1] - values[0]
    if step <= 0 or any(v != i * step for i, v in enumerate(values)):
        return None
    return step


def _join(values: tuple[int, ...]) -> str:
    return ", ".join(str(v) for v in values)


def _describe_minute(field: CronField) -> str:
    if field is None:
        return "every minute"
    if isinstance(field, int):
        return f"at minute {field}"
    return f"at minutes {_join(field)}"


def _describe_hour(field: CronField) -> str:
    if field is None:
        return "every hour"
    if isinstance(field, int):
        return f"at hour {field}"
    return f"at hours {_join(field)}"


def _describe_day_of_month(field: CronField) -> str:
    if field is None:
        return ""
    if isinstance(field, int):
        return f"on day {field}"
    return f"on days {_join(field)}"


def _describe_month(field: CronField) -> str:
    if field is None:
        return ""
    if isinstance(field, int):
        return f"in {MONTH_NAMES[field - 1]}"
    return "in " + ", ".join(MONTH_NAMES[m - 1] for m in field)


def _describe_day_of_week(field: CronField) -> str:
    if field is None:
        return ""
    if isinstance(field, int):
        return f"on {DAY_NAMES[field]}"
    return "on " + ", ".join(DAY_NAMES[d] for d in field)
