"""
Scheduled analysis triggers.

Recurring producers for the job queue: weekly team analysis, player sync and
news refresh. Each run submits through AnalysisTrigger, so a run overlapping
an earlier one (or a user request) joins the pending job instead of
duplicating it.

@module analysis_triggers
@since 1.0.0
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from analysis_core.core.config import settings
from analysis_core.core.exceptions import QueueError
from analysis_core.schemas.analysis import AnalysisKey, JobKind, utcnow
from analysis_core.services.periods import current_week, day_period, hour_period
from analysis_core.services.request_coordinator import weekly_key
from analysis_core.services.triggers import AnalysisTrigger

logger = logging.getLogger(__name__)


class AnalysisTriggerJob:
    """
    Scheduled producer of analysis jobs.

    @class AnalysisTriggerJob
    @since 1.0.0
    """

    def __init__(
        self,
        trigger: AnalysisTrigger,
        league_id: str = settings.LEAGUE_ID,
        team_ids: Optional[List[str]] = None,
        now: Callable[[], datetime] = utcnow
    ):
        self.trigger = trigger
        self.league_id = league_id
        self.team_ids = list(settings.ACTIVE_TEAM_IDS if team_ids is None else team_ids)
        self._now = now

    async def run_weekly_analysis(self) -> Dict[str, int]:
        """
        Submit one weekly analysis per active team for the current week.

        A team whose submission fails is logged and skipped; the rest of the
        fan-out still goes out.

        @returns Counts of created, joined and failed submissions
        @since 1.0.0
        """
        week = current_week(self._now())
        counts = {"created": 0, "joined": 0, "failed": 0}

        logger.info(f"Triggering weekly analysis for {len(self.team_ids)} teams, week {week}")

        for team_id in self.team_ids:
            try:
                _, created = await self.trigger.submit(
                    weekly_key(team_id, week),
                    JobKind.WEEKLY_ANALYSIS.value,
                    {"league_id": self.league_id}
                )
            except QueueError as e:
                logger.error(f"Failed to trigger weekly analysis for team {team_id}: {e}")
                counts["failed"] += 1
                continue
            counts["created" if created else "joined"] += 1

        logger.info(
            f"Weekly analysis triggers for week {week}: "
            f"{counts['created']} created, {counts['joined']} joined, {counts['failed']} failed"
        )
        return counts

    async def run_player_sync(self) -> str:
        """Submit the league player sync for today."""
        key = AnalysisKey(subject_id=self.league_id, subject_type="players", period_id=day_period(self._now()))
        job_id, created = await self.trigger.submit(key, JobKind.PLAYER_SYNC.value, {"league_id": self.league_id})
        logger.info(f"Player sync {'triggered' if created else 'already pending'} as job {job_id}")
        return job_id

    async def run_news_refresh(self) -> str:
        key = AnalysisKey(subject_id=self.league_id, subject_type="news", period_id=hour_period(self._now()))
        job_id, created = await self.trigger.submit(key, JobKind.NEWS_REFRESH.value, {"league_id": self.league_id})
        logger.info(f"News refresh {'triggered' if created else 'already pending'} as job {job_id}")
        return job_id


def schedule_weekly_analysis(scheduler, trigger: AnalysisTrigger) -> None:
    """
    Weekly team analysis, by default every Tuesday at 08:00 UTC.

    @param scheduler - APScheduler instance
    @param trigger - submission helper
    @since 1.0.0
    """
    job = AnalysisTriggerJob(trigger)
    scheduler.add_job(
        func=job.run_weekly_analysis,
        trigger='cron',
        day_of_week=settings.WEEKLY_ANALYSIS_DAY_OF_WEEK,
        hour=settings.WEEKLY_ANALYSIS_HOUR,
        minute=0,
        id='weekly_team_analysis',
        name='Weekly Team Analysis',
        replace_existing=True
    )
    logger.info("Weekly team analysis trigger scheduled")


def schedule_player_sync(scheduler, trigger: AnalysisTrigger) -> None:
    job = AnalysisTriggerJob(trigger)
    scheduler.add_job(
        func=job.run_player_sync,
        trigger='interval',
        hours=settings.PLAYER_SYNC_INTERVAL_HOURS,
        id='player_sync',
        name='Player Sync',
        replace_existing=True
    )
    logger.info("Player sync trigger scheduled")


def schedule_news_refresh(scheduler, trigger: AnalysisTrigger) -> None:
    job = AnalysisTriggerJob(trigger)
    scheduler.add_job(
        func=job.run_news_refresh,
        trigger='interval',
        minutes=settings.NEWS_REFRESH_INTERVAL_MINUTES,
        id='news_refresh',
        name='News Refresh',
        replace_existing=True
    )
    logger.info("News refresh trigger scheduled")
