"""
Reward ledger aggregation: windowed totals, chart series and date strings
rendered in the operator's timezone.
"""

import time
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

import structlog

from ..core.config import ConfigStore
from ..core.exceptions import ValidationError
from ..core.store import Store
from ..models.records import StakeTotals
from ..models.reports import BarChart, EarningsChart, LastStake
from ..services.node_client import from_sat


logger = structlog.get_logger(__name__)

DAY = 24 * 60 * 60
# Values above this are absolute start timestamps rather than day counts
MAX_DAY_WINDOW = 99_999
DIVISIONS = ("day", "week", "month")

_DURATION_UNITS = (
    ("year", 365 * DAY),
    ("month", 30 * DAY),
    ("day", DAY),
    ("h", 60 * 60),
    ("m", 60),
    ("s", 1),
)


def resolve_timezone(name: str) -> ZoneInfo:
    """IANA zone for ``name``, matched case-insensitively."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        pass
    lowered = name.lower()
    for candidate in available_timezones():
        if candidate.lower() == lowered:
            return ZoneInfo(candidate)
    raise ValidationError("Invalid timezone", {"timezone": name})


def format_duration(seconds: int) -> str:
    """``5400`` -> ``1h 30m``; plural day/month/year units as humans write them."""
    if seconds <= 0:
        return "0s"
    parts = []
    remaining = int(seconds)
    for unit, size in _DURATION_UNITS:
        count, remaining = divmod(remaining, size)
        if not count:
            continue
        if len(unit) > 1:
            parts.append(f"{count}{unit}{'s' if count > 1 else ''}")
        else:
            parts.append(f"{count}{unit}")
    return " ".join(parts)


def bucket_start(timestamp: int, division: str, tz: ZoneInfo) -> date:
    """Local date that opens the day/week/month containing ``timestamp``."""
    local = datetime.fromtimestamp(timestamp, tz).date()
    if division == "day":
        return local
    if division == "week":
        # Weeks start on Sunday
        return local - timedelta(days=(local.weekday() + 1) % 7)
    if division == "month":
        return local.replace(day=1)
    raise ValidationError("Invalid division", {"division": division})


def next_bucket(start: date, division: str) -> date:
    if division == "day":
        return start + timedelta(days=1)
    if division == "week":
        return start + timedelta(days=7)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def local_midnight(day: date, tz: ZoneInfo) -> int:
    return int(datetime(day.year, day.month, day.day, tzinfo=tz).timestamp())


class RewardStats:
    """Read-only queries over the reward ledger."""

    def __init__(self, store: Store, config: ConfigStore):
        self.store = store
        self.config = config

    async def timezone(self) -> ZoneInfo:
        conf = await self.config.read()
        try:
            return resolve_timezone(conf.timezone)
        except ValidationError:
            logger.warning("Configured timezone is invalid, using UTC", timezone=conf.timezone)
            return ZoneInfo("UTC")

    async def _first_timestamp(self) -> int:
        first = await self.store.first_reward()
        return first.timestamp if first else 0

    async def get_stakes_days(self, days_or_start: int, now: Optional[int] = None) -> StakeTotals:
        """
        Totals of rewards between a start point and now, both inclusive.

        ``0`` starts from the first recorded reward, values up to 99999 are a
        number of days back from now and anything larger is an absolute
        start timestamp.
        """
        now = now if now is not None else int(time.time())

        if days_or_start == 0:
            start = await self._first_timestamp()
        elif days_or_start <= MAX_DAY_WINDOW:
            start = now - days_or_start * DAY
        else:
            start = days_or_start

        stakes = 0
        earned = 0
        earned_agvr = 0
        for record in await self.store.rewards_between(start, now):
            stakes += 1
            earned += record.reward
            earned_agvr += record.agvr_reward

        return StakeTotals(
            stakes=stakes,
            rewards=from_sat(earned),
            agvr=from_sat(earned_agvr),
            total=from_sat(earned + earned_agvr),
        )

    async def year_start(self, now: Optional[int] = None) -> int:
        """Timestamp of January 1st, 00:00 local time, of the current year."""
        tz = await self.timezone()
        now = now if now is not None else int(time.time())
        year = datetime.fromtimestamp(now, tz).year
        return local_midnight(date(year, 1, 1), tz)

    async def get_last_stake(self) -> LastStake:
        last = await self.store.last_reward()
        if last is None:
            return LastStake()
        tz = await self.timezone()
        stamp = datetime.fromtimestamp(last.timestamp, timezone.utc).astimezone(tz)
        return LastStake(last_stake_str=stamp.strftime("%Y-%m-%d %H:%M:%S %Z"), timestamp=last.timestamp)

    async def get_date_str(self, timestamp: int) -> str:
        tz = await self.timezone()
        return datetime.fromtimestamp(timestamp, tz).strftime("%d/%m/%y")

    async def get_earnings_chart(self, start: int, end: int) -> EarningsChart:
        """Cumulative earnings for rewards in ``[start, end)``."""
        range_start = await self._first_timestamp() if start == 0 else start
        data: List[List[float]] = [
            [from_sat(record.all_time_reward + record.all_time_agvr_reward), float(record.timestamp)]
            for record in await self.store.rewards_between(range_start, end - 1)
        ]
        return EarningsChart(
            data=data,
            start=await self.get_date_str(range_start),
            end=await self.get_date_str(end),
        )

    async def get_stake_barchart(self, start: int, end: int, division: str) -> BarChart:
        """
        Stake counts per day, week or month for rewards in ``[start, end)``.

        Buckets open at local midnight in the configured timezone (Sunday for
        weeks, the 1st for months). Every bucket between the first and the
        last stake is present, empty ones with a zero count.
        """
        if division not in DIVISIONS:
            raise ValidationError("Invalid division", {"division": division})

        tz = await self.timezone()
        range_start = await self._first_timestamp() if start == 0 else start
        records = await self.store.rewards_between(range_start, end - 1)

        counts: Dict[date, int] = Counter(
            bucket_start(record.timestamp, division, tz) for record in records
        )

        data: List[List[int]] = []
        if counts:
            current = min(counts)
            last = max(counts)
            while current <= last:
                data.append([local_midnight(current, tz), counts.get(current, 0)])
                current = next_bucket(current, division)

        return BarChart(
            data=data,
            division=division,
            start=await self.get_date_str(range_start),
            end=await self.get_date_str(end),
        )
