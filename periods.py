import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
_MONTH_RE = re.compile(MONTH_PATTERN)


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class MonthRange:
    """Half-open ``[start, end)`` range of UTC instants covering one local month."""

    start: datetime
    end: datetime
    label: str

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    @property
    def naive_start(self) -> datetime:
        return self.start.replace(tzinfo=None)

    @property
    def naive_end(self) -> datetime:
        return self.end.replace(tzinfo=None)


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError) as exc:
        raise ConfigurationError(f"Unknown timezone: {name!r}") from exc


def parse_month(label: str) -> tuple[int, int]:
    if not _MONTH_RE.match(label):
        raise ValueError("Invalid month format. Use YYYY-MM")
    year_str, month_str = label.split("-")
    return int(year_str), int(month_str)


def month_label(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def _local_month_start(year: int, month: int, zone: ZoneInfo) -> datetime:
    # fold=0: a skipped or repeated local midnight resolves with the
    # offset in effect before the transition.
    local = datetime(year, month, 1, tzinfo=zone)
    return local.astimezone(timezone.utc)


def resolve_month(
    month: Optional[str],
    tz_name: str,
    *,
    now: Optional[datetime] = None,
) -> MonthRange:
    """Resolve a ``YYYY-MM`` label (or the current month) in ``tz_name``.

    The current month is taken from the wall clock in ``tz_name``, not the
    server's. Each boundary is the first midnight of the month in that zone,
    converted to UTC with the zone's offset at that wall-clock moment.

    Raises ConfigurationError for an unknown timezone name.
    """
    zone = load_zone(tz_name)
    if month:
        year, month_num = parse_month(month)
        label = month
    else:
        local_now = (now or datetime.now(timezone.utc)).astimezone(zone)
        year, month_num = local_now.year, local_now.month
        label = month_label(year, month_num)

    next_year, next_month = _next_month(year, month_num)
    start = _local_month_start(year, month_num, zone)
    end = _local_month_start(next_year, next_month, zone)
    return MonthRange(start=start, end=end, label=label)
