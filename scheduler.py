import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import DuplicateService, UserService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.collapse_hour = settings.collapse_hour
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            user_ids = UserService(session).list_ids()

        removed = 0
        for user_id in user_ids:
            with session_scope() as session:
                result = DuplicateService(session, user_id).collapse()
                removed += result.duplicates_removed
        logger.info(
            f"scheduler_run: source={source} users={len(user_ids)} duplicates_removed={removed}"
        )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=self.collapse_hour, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{self.collapse_hour:02d}:15"],
            id="duplicate_collapse_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily duplicate collapse at {self.collapse_hour:02d}:15"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
