"""Scheduled analysis triggers."""

from analysis_core.jobs.analysis_triggers import (
    schedule_weekly_analysis,
    schedule_player_sync,
    schedule_news_refresh
)

__all__ = [
    'schedule_weekly_analysis',
    'schedule_player_sync',
    'schedule_news_refresh'
]
