"""Calendar bucket rules for temporal aggregation."""

import re
from datetime import date, timedelta

from pydantic import BaseModel, ConfigDict

_ALIASES: dict[str, str] = {
    "year": "year",
    "years": "year",
    "month": "month",
    "yearmonth": "month",
    "yearmonths": "month",
    "week": "week",
    "yearweek": "week",
    "yearweeks": "week",
    "dekad": "dekad",
    "yeardekad": "dekad",
    "yeardekads": "dekad",
    "day": "day",
    "days": "day",
}

# Cyclic levels: the same month, week, dekad or day of every year
_CYCLIC = {
    "months": "yearmonths",
    "weeks": "yearweeks",
    "dekads": "yeardekads",
    "doy": "days",
}

_PERIOD_PATTERN = re.compile(r"^(?P<days>\d+)\s*-?\s*days?$")


class BucketRule(BaseModel):
    """Maps a date to the start of its calendar bucket.

    :param name: Canonical rule name (year, month, week, dekad, day, period)
    :param period_days: Period length for ``period`` rules
    """

    model_config = ConfigDict(frozen=True)

    name: str
    period_days: int | None = None

    def start(self, day: date) -> date:
        """First date of the bucket holding ``day``."""
        if self.name == "year":
            return date(day.year, 1, 1)
        if self.name == "month":
            return date(day.year, day.month, 1)
        if self.name == "week":
            return day - timedelta(days=day.weekday())
        if self.name == "dekad":
            return date(day.year, day.month, min((day.day - 1) // 10, 2) * 10 + 1)
        if self.name == "period":
            assert self.period_days is not None
            index = (day.timetuple().tm_yday - 1) // self.period_days
            return date(day.year, 1, 1) + timedelta(days=index * self.period_days)
        return day

    def label(self, start: date) -> str:
        """Human readable bucket label for a bucket start date."""
        if self.name == "year":
            return f"{start.year}"
        if self.name == "month":
            return f"{start.year}-{start.month:02d}"
        if self.name == "week":
            iso = start.isocalendar()
            return f"{iso[0]}-W{iso[1]:02d}"
        if self.name == "dekad":
            return f"{start.year}-{start.month:02d}-D{(start.day - 1) // 10 + 1}"
        if self.name == "period":
            assert self.period_days is not None
            index = (start.timetuple().tm_yday - 1) // self.period_days + 1
            return f"{start.year}-P{index:02d}"
        return start.isoformat()


def parse_bucket_rule(value: str) -> BucketRule:
    """Parse an aggregation level such as ``"month"``, ``"yearweeks"`` or ``"15days"``.

    :param value: Aggregation level name
    :returns: BucketRule
    :raises ValueError: For unknown or cyclic rule names
    """
    key = value.strip().lower()
    if key in _CYCLIC:
        raise ValueError(
            f"Aggregation level '{value}' groups the same period of different years together; "
            f"use '{_CYCLIC[key]}' to aggregate within each year"
        )
    if key in _ALIASES:
        return BucketRule(name=_ALIASES[key])
    match = _PERIOD_PATTERN.match(key)
    if match and int(match.group("days")) >= 1:
        days = int(match.group("days"))
        return BucketRule(name="day") if days == 1 else BucketRule(name="period", period_days=days)
    raise ValueError(
        f"Unknown aggregation level '{value}'. Use year, month, week, dekad, day or '<N>days' (e.g. '15days')"
    )
