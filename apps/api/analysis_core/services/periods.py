"""Period identifiers used in analysis keys."""

from datetime import date, datetime
from typing import Optional

from analysis_core.core.config import settings
from analysis_core.schemas.analysis import utcnow


def current_week(now: Optional[datetime] = None, season_start: Optional[str] = None) -> int:
    """1-based fantasy week for now; week 1 before the season starts."""
    start = date.fromisoformat(season_start or settings.SEASON_START_DATE)
    days = ((now or utcnow()).date() - start).days
    return max(days // 7 + 1, 1)


def week_period(week: int) -> str:
    return f"week-{week}"


def day_period(now: Optional[datetime] = None) -> str:
    return (now or utcnow()).strftime("%Y-%m-%d")


def hour_period(now: Optional[datetime] = None) -> str:
    return (now or utcnow()).strftime("%Y-%m-%dT%H")
