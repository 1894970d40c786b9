import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import FixedExpenseMaterializer


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = settings.scheduler_enabled
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        try:
            with session_scope() as session:
                result = FixedExpenseMaterializer(session).materialize()
        except Exception:
            logger.exception(f"scheduler_run_failed: source={source}")
            return
        logger.info(
            f"scheduler_run: source={source} created={result.created} "
            f"failed={result.failed}"
        )

    def start(self) -> None:
        if not self.enabled:
            logger.info("Scheduler disabled by configuration")
            return

        self._run_job("startup")

        trigger = CronTrigger(day=1, hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["monthly_00:05"],
            id="fixed_expenses_monthly",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="fixed_expenses_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with monthly 00:05 run and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
