import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from cache import Cache
from config import get_settings
from database import session_scope
from recurrence import propagate_for_all_users


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Pre-materializes recurring budgets for the current month.

    Reads materialize on demand as well, so this job only moves the write
    off the first read of a new month.
    """

    def __init__(self, cache: Optional[Cache] = None) -> None:
        settings = get_settings()
        self.cache = cache
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = propagate_for_all_users(session, cache=self.cache)
            logger.info(f"scheduler_run: source={source} budgets_created={count}")

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_00:05"],
            id="recurring_budgets_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 00:05 budget materialization")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
