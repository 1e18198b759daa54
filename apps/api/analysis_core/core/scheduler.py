"""
Scheduler for recurring analysis triggers (APScheduler, in-process).

The scheduler only produces work: its jobs submit analysis triggers into
the job queue and never compute anything themselves.

@module scheduler
@since 1.0.0
"""

import logging
from typing import TYPE_CHECKING, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR, EVENT_JOB_MISSED

if TYPE_CHECKING:
    from analysis_core.services.triggers import AnalysisTrigger

logger = logging.getLogger(__name__)

# One scheduler per process
_scheduler: Optional[AsyncIOScheduler] = None


def _job_listener(event):
    """
    Listen to job execution events for logging.

    @param event - APScheduler job event
    @since 1.0.0
    """
    if event.code == EVENT_JOB_MISSED:
        logger.warning(f"Scheduled job {event.job_id} missed its run time")
    elif event.exception:
        logger.error(
            f"Scheduled job {event.job_id} failed with exception: {event.exception}",
            exc_info=event.exception
        )
    else:
        logger.info(f"Scheduled job {event.job_id} executed successfully")


def get_scheduler() -> AsyncIOScheduler:
    """
    Shared trigger scheduler, created on first use.

    @returns AsyncIOScheduler running on the application event loop
    @since 1.0.0
    """
    global _scheduler

    if _scheduler is None:
        job_defaults = {
            'coalesce': True,  # Combine missed runs into one
            'max_instances': 1,  # Prevent trigger overlap
            'misfire_grace_time': 300
        }

        _scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC'
        )

        _scheduler.add_listener(
            _job_listener,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED
        )

        logger.info("APScheduler initialized with AsyncIOScheduler")

    return _scheduler


def start_scheduler(trigger: "AnalysisTrigger") -> AsyncIOScheduler:
    """
    Register the recurring analysis triggers and start the scheduler.

    Should be called once during application startup.

    @param trigger - submission helper the scheduled jobs enqueue through

    @throws Exception - If scheduler fails to start

    @since 1.0.0
    """
    try:
        scheduler = get_scheduler()

        from analysis_core.jobs import (
            schedule_weekly_analysis,
            schedule_player_sync,
            schedule_news_refresh
        )

        logger.info("Scheduling analysis triggers...")

        schedule_weekly_analysis(scheduler, trigger)
        schedule_player_sync(scheduler, trigger)
        schedule_news_refresh(scheduler, trigger)

        scheduler.start()

        logger.info("Analysis trigger scheduler started successfully")

        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name} (ID: {job.id}) - Next run: {job.next_run_time}")

        return scheduler

    except Exception as e:
        logger.error(f"Failed to start scheduler: {str(e)}")
        raise


def shutdown_scheduler() -> None:
    """
    Shut down the scheduler.

    Triggers already submitted stay in the queue; nothing in flight is lost.

    @since 1.0.0
    """
    global _scheduler

    if _scheduler is not None:
        try:
            logger.info("Shutting down analysis trigger scheduler...")
            if _scheduler.running:
                _scheduler.shutdown(wait=False)
            _scheduler = None
            logger.info("Analysis trigger scheduler shut down successfully")

        except Exception as e:
            logger.error(f"Error during scheduler shutdown: {str(e)}")
            raise


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled triggers.

    @returns List of scheduled job details
    @since 1.0.0
    """
    if _scheduler is None:
        return []

    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        }
        for job in _scheduler.get_jobs()
    ]
