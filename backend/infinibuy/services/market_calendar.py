"""
Market Calendar - US Equities Trading Days
Infinibuy Trading Core

Handles:
- NYSE/Nasdaq holiday rules (fixed dates, Nth-weekday rules, Good Friday)
- Early-close days (13:00 ET)
- Next trading day / next settlement (closing auction) time
- KST <-> ET offsets for a Korea-based scheduler

All functions are pure. Dates are US Eastern calendar dates; instants
are timezone-aware datetimes.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo


ET = ZoneInfo("America/New_York")
KST = ZoneInfo("Asia/Seoul")

MARKET_OPEN = time(9, 30)
REGULAR_CLOSE = time(16, 0)
EARLY_CLOSE = time(13, 0)

NEXT_TRADING_DAY_MAX_SCAN = 10

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

MON, TUE, WED, THU, FRI, SAT, SUN = range(7)


class SkipReason(str, Enum):
    """Why a calendar day is not a settlement day."""
    WEEKEND = "weekend"
    HOLIDAY = "holiday"
    EARLY_CLOSE = "early_close"


@dataclass
class SkippedDay:
    """A day passed over on the way to the next settlement."""
    date: date
    day_of_week: str
    reason: str
    type: SkipReason

    @property
    def date_str(self) -> str:
        return format_month_day(self.date)


@dataclass
class SettlementInfo:
    """Next closing-auction settlement as seen from a given instant."""
    date: date
    date_str: str
    day_of_week: str
    is_today: bool
    days_until: int
    execution_at: datetime
    execution_time_kst: str
    execution_time_et: str
    is_early_close: bool
    early_close_name: Optional[str]
    skipped_days: List[SkippedDay] = field(default_factory=list)


# =============================================================================
# Rule helpers
# =============================================================================

def nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    """The n-th given weekday (Mon=0) of a month, n starting at 1."""
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def last_weekday(year: int, month: int, weekday: int) -> date:
    """The last given weekday of a month."""
    if month == 12:
        last = date(year, 12, 31)
    else:
        last = date(year, month + 1, 1) - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def observed(d: date) -> date:
    """Saturday holidays are observed Friday, Sunday holidays Monday."""
    if d.weekday() == SAT:
        return d - timedelta(days=1)
    if d.weekday() == SUN:
        return d + timedelta(days=1)
    return d


def easter_sunday(year: int) -> date:
    """Anonymous Gregorian algorithm."""
    a = year % 19
    b = year // 100
    c = year % 100
    d = b // 4
    e = b % 4
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i = c // 4
    k = c % 4
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month = (h + l - 7 * m + 114) // 31
    day = ((h + l - 7 * m + 114) % 31) + 1
    return date(year, month, day)


@lru_cache(maxsize=64)
def us_market_holidays(year: int) -> Dict[date, str]:
    """Full-day market holidays for a year, keyed by observed date."""
    holidays: Dict[date, str] = {}

    # A Saturday New Year's Day is not moved into the previous year
    new_year = date(year, 1, 1)
    if new_year.weekday() != SAT:
        holidays[observed(new_year)] = "New Year's Day"

    holidays[nth_weekday(year, 1, MON, 3)] = "Martin Luther King Jr. Day"
    holidays[nth_weekday(year, 2, MON, 3)] = "Presidents' Day"
    holidays[easter_sunday(year) - timedelta(days=2)] = "Good Friday"
    holidays[last_weekday(year, 5, MON)] = "Memorial Day"
    holidays[observed(date(year, 6, 19))] = "Juneteenth"
    holidays[observed(date(year, 7, 4))] = "Independence Day"
    holidays[nth_weekday(year, 9, MON, 1)] = "Labor Day"
    holidays[nth_weekday(year, 11, THU, 4)] = "Thanksgiving Day"
    holidays[observed(date(year, 12, 25))] = "Christmas Day"
    return holidays


# =============================================================================
# Day classification
# =============================================================================

def is_weekend(d: date) -> bool:
    return d.weekday() >= SAT


def holiday_name(d: date) -> Optional[str]:
    return us_market_holidays(d.year).get(d)


def is_holiday(d: date) -> bool:
    return d in us_market_holidays(d.year)


def is_open(d: date) -> bool:
    """Weekday and not a holiday."""
    return not is_weekend(d) and not is_holiday(d)


def early_close_name(d: date) -> Optional[str]:
    """Name of the early-close session on d, if any."""
    if not is_open(d):
        return None
    if d.month == 7 and d.day == 3:
        return "Independence Day Eve"
    if d == nth_weekday(d.year, 11, THU, 4) + timedelta(days=1):
        return "Day after Thanksgiving"
    if d.month == 12 and d.day == 24:
        return "Christmas Eve"
    return None


def is_early_close(d: date) -> bool:
    return early_close_name(d) is not None


def close_time_et(d: date) -> time:
    return EARLY_CLOSE if is_early_close(d) else REGULAR_CLOSE


def next_trading_day(d: date) -> date:
    """First open day after d, scanning at most ten days ahead."""
    candidate = d
    for _ in range(NEXT_TRADING_DAY_MAX_SCAN):
        candidate = candidate + timedelta(days=1)
        if is_open(candidate):
            return candidate
    raise ValueError(f"No trading day within {NEXT_TRADING_DAY_MAX_SCAN} days of {d}")


# =============================================================================
# Timezones
# =============================================================================

def is_dst(d: date) -> bool:
    """US daylight saving: second Sunday of March to first Sunday of November."""
    start = nth_weekday(d.year, 3, SUN, 2)
    end = nth_weekday(d.year, 11, SUN, 1)
    return start <= d < end


def kst_et_offset_hours(d: date) -> int:
    """Hours KST is ahead of ET on d."""
    return 13 if is_dst(d) else 14


def market_date(now: datetime) -> date:
    """US Eastern calendar date of an instant."""
    return now.astimezone(ET).date()


def et_day_start(now: datetime) -> datetime:
    """00:00 ET of the market date containing now, as aware UTC."""
    start = datetime.combine(market_date(now), time(0, 0), tzinfo=ET)
    return start.astimezone(timezone.utc)


def is_market_hours(now: datetime) -> bool:
    """True during the regular session of an open day."""
    et_now = now.astimezone(ET)
    d = et_now.date()
    if not is_open(d):
        return False
    return MARKET_OPEN <= et_now.time() < close_time_et(d)


def format_month_day(d: date) -> str:
    return f"{d.month}/{d.day}"


# =============================================================================
# Settlement
# =============================================================================

def _skipped_between(start: date, end: date) -> List[SkippedDay]:
    skipped = []
    current = start + timedelta(days=1)
    while current < end:
        if is_weekend(current):
            skipped.append(SkippedDay(current, DAY_NAMES[current.weekday()], "Weekend", SkipReason.WEEKEND))
        elif is_holiday(current):
            skipped.append(SkippedDay(current, DAY_NAMES[current.weekday()], holiday_name(current), SkipReason.HOLIDAY))
        current += timedelta(days=1)
    return skipped


def next_settlement_time(now: datetime) -> SettlementInfo:
    """
    When the next closing auction settles, seen from `now`.

    Today is the target when it is a regular open day and the ET clock
    has not passed 16:00 (exactly 16:00 still counts as before). An
    early-close day is never today's target; the next trading day is,
    and every day passed over is itemised.
    """
    et_now = now.astimezone(ET)
    today = et_now.date()
    close = close_time_et(today)
    before_close = et_now.hour < close.hour or (et_now.hour == close.hour and et_now.minute == 0)

    skipped: List[SkippedDay] = []
    if is_open(today) and before_close and not is_early_close(today):
        target = today
    else:
        name = early_close_name(today)
        if name and not before_close:
            skipped.append(SkippedDay(today, DAY_NAMES[today.weekday()], f"{name} (early close)", SkipReason.EARLY_CLOSE))
        if not is_weekend(today) and is_holiday(today):
            skipped.append(SkippedDay(today, DAY_NAMES[today.weekday()], holiday_name(today), SkipReason.HOLIDAY))

        target = next_trading_day(today)
        skipped.extend(_skipped_between(today, target))

    target_close = close_time_et(target)
    target_early = early_close_name(target)
    execution_at = datetime.combine(target, target_close, tzinfo=ET)
    kst_at = datetime.combine(target, target_close) + timedelta(hours=kst_et_offset_hours(target))

    if target_early:
        execution_time_et = f"{target_close:%H:%M} ET (early close)"
    else:
        execution_time_et = f"{target_close:%H:%M} ET"
    day_label = "next day" if kst_at.date() > target else "same day"
    execution_time_kst = f"{kst_at:%H:%M} KST ({day_label})"

    return SettlementInfo(
        date=target,
        date_str=format_month_day(target),
        day_of_week=DAY_NAMES[target.weekday()],
        is_today=target == today,
        days_until=(target - today).days,
        execution_at=execution_at,
        execution_time_kst=execution_time_kst,
        execution_time_et=execution_time_et,
        is_early_close=target_early is not None,
        early_close_name=target_early,
        skipped_days=skipped,
    )
