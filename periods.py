import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")

# Timestamps are stored as naive wall-clock times in the configured timezone.


def local_now() -> datetime:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    tz = ZoneInfo(get_settings().timezone)
    return value.astimezone(tz).replace(tzinfo=None)


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class Month:
    year: int
    month: int

    @classmethod
    def parse(cls, value: str) -> "Month":
        match = _MONTH_RE.match((value or "").strip())
        if not match:
            raise ValidationError("Month must be in yyyy-MM format")
        year, month = int(match.group(1)), int(match.group(2))
        if year < 1 or not 1 <= month <= 12:
            raise ValidationError("Month must be a valid calendar month")
        return cls(year, month)

    @classmethod
    def of(cls, day: date) -> "Month":
        return cls(day.year, day.month)

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        _, days = calendar.monthrange(self.year, self.month)
        return date(self.year, self.month, days)

    @property
    def start(self) -> datetime:
        return datetime.combine(self.first_day, time.min)

    @property
    def end(self) -> datetime:
        # last instant of the month, compared inclusively
        return datetime.combine(self.last_day, time.max)

    def next(self) -> "Month":
        if self.month == 12:
            return Month(self.year + 1, 1)
        return Month(self.year, self.month + 1)

    def previous(self) -> "Month":
        if self.month == 1:
            return Month(self.year - 1, 12)
        return Month(self.year, self.month - 1)

    def as_period(self, slug: Optional[str] = None) -> Period:
        return Period(slug or self.key, self.start, self.end)

    def __str__(self) -> str:
        return self.key


def month_or_current(value: Optional[str], *, today: Optional[date] = None) -> Month:
    """Parse ``yyyy-MM``; anything unparsable resolves to the current month."""
    if value:
        try:
            return Month.parse(value)
        except ValidationError:
            pass
    return Month.of(today or local_today())


def parse_bound(value: Optional[str], *, end_of_day: bool) -> Optional[datetime]:
    """Parse an ISO date or datetime query bound, or return None when unusable.

    A bare date expands to the first (``end_of_day=False``) or last instant of
    that day.
    """
    if not value:
        return None
    raw = value.strip()
    try:
        if len(raw) == 10:
            day = date.fromisoformat(raw)
            return datetime.combine(day, time.max if end_of_day else time.min)
        return to_local_naive(datetime.fromisoformat(raw))
    except ValueError:
        return None


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    current = Month.of(today)
    if period == "last-month":
        return current.previous().as_period("last-month")
    if period == "custom":
        start_at = parse_bound(start, end_of_day=False) or current.start
        end_at = parse_bound(end, end_of_day=True) or current.end
        return Period("custom", start_at, end_at)
    return current.as_period("this-month")
