import logging

from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from crm_automation.core.config import settings
from crm_automation.core.observability import log_event
from crm_automation.services.engine import AutomationEngine

logger = logging.getLogger("crm_automation.scheduler")


def build_scheduler(engine: AutomationEngine) -> BackgroundScheduler:
    """Interval jobs for the retry sweep, delayed workflow actions and the log reaper."""
    scheduler = BackgroundScheduler(
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        timezone="UTC",
    )
    scheduler.add_job(
        engine.retry_due,
        IntervalTrigger(seconds=settings.retry_sweep_interval_seconds),
        id="webhook_retry_sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        engine.run_due_scheduled_actions,
        IntervalTrigger(seconds=settings.scheduled_actions_interval_seconds),
        id="workflow_scheduled_actions",
        replace_existing=True,
    )
    scheduler.add_job(
        engine.purge_expired_logs,
        IntervalTrigger(seconds=settings.log_reaper_interval_seconds),
        id="webhook_log_reaper",
        replace_existing=True,
    )
    scheduler.add_listener(_job_error, EVENT_JOB_ERROR)
    return scheduler


def _job_error(event: JobExecutionEvent) -> None:
    log_event(
        logger,
        "scheduled_job_failed",
        level=logging.ERROR,
        job_id=event.job_id,
        error=str(event.exception) if event.exception else "Unknown error",
    )
