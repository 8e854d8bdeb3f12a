from typing import Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler

from .services.reconciliation import run_hourly_sweep

logger = structlog.get_logger(__name__)

_scheduler: Optional[BackgroundScheduler] = None


def _sweep_job() -> None:
    try:
        run_hourly_sweep()
    except Exception as e:
        logger.error("attendance_sweep_failed", error=str(e), exc_info=True)


def start_scheduler() -> BackgroundScheduler:
    """Run the reconciliation sweep at minute 0 of every hour."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        return _scheduler
    _scheduler = BackgroundScheduler(timezone="UTC")
    _scheduler.add_job(
        _sweep_job,
        "cron",
        minute=0,
        id="attendance_hourly_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info("attendance_scheduler_started")
    return _scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("attendance_scheduler_stopped")
    _scheduler = None
