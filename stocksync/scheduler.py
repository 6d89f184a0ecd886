"""
Scheduled reconciliation runs.

Enqueues a `scheduled` job on the SYNC_SCHEDULE crontab when
SYNC_SCHEDULE_ENABLED is set. The scheduler only enqueues; the
orchestrator's scheduled worker pool runs the job.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from stocksync.core.config import get_settings
from stocksync.core.enums import JobKind, TriggerSource
from stocksync.core.exceptions import BaseServiceError

logger = logging.getLogger(__name__)

SCHEDULED_SYNC_JOB_ID = "scheduled_reconciliation"

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def scheduled_sync_task(orchestrator, request: Optional[dict] = None) -> Optional[str]:
    """Enqueue one scheduled reconciliation run"""
    payload = {"kind": JobKind.SCHEDULED.value, "trigger_source": TriggerSource.SCHEDULER.value}
    payload.update(request or {})
    try:
        logger.info("=== SCHEDULED SYNC STARTING ===")
        job_id = await orchestrator.enqueue(payload, actor="scheduler")
        logger.info(f"Scheduled sync enqueued as job {job_id}")
        return job_id
    except BaseServiceError as e:
        logger.error(f"Scheduled sync could not be enqueued: {e}")
        return None


def job_listener(event):
    """Listen to job events for logging"""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.info(f"Job {event.job_id} executed successfully at {datetime.now()}")


def create_scheduler(orchestrator, settings=None, request: Optional[dict] = None) -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    settings = settings or get_settings()
    scheduler = AsyncIOScheduler()
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    if settings.SYNC_SCHEDULE_ENABLED:
        scheduler.add_job(
            scheduled_sync_task,
            CronTrigger.from_crontab(settings.SYNC_SCHEDULE),
            args=[orchestrator, request],
            id=SCHEDULED_SYNC_JOB_ID,
            name="Scheduled Reconciliation",
            replace_existing=True,
            max_instances=1,  # Only one enqueue at a time
            misfire_grace_time=3600  # 1 hour grace time
        )
        logger.info(f"Scheduled sync job added with schedule: {settings.SYNC_SCHEDULE}")
    else:
        logger.info("Scheduled sync is disabled. Set SYNC_SCHEDULE_ENABLED=true to enable")

    return scheduler


async def start_scheduler(orchestrator, settings=None) -> AsyncIOScheduler:
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler(orchestrator, settings)

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Active scheduled jobs: {len(jobs)}")
            for job in jobs:
                logger.info(f"  - {job.name}: {job.trigger}")
        else:
            logger.info("No scheduled jobs configured")
    return scheduler


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped successfully")
    scheduler = None


async def get_scheduler_status():
    """Get current scheduler status and job information"""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs_info = []
    for job in scheduler.get_jobs():
        jobs_info.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
            "trigger": str(job.trigger)
        })

    return {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs_info
    }
