import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from alerts import AlertTrigger, MonthlyReporter
from config import get_settings
from database import session_scope


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        alerts: Optional[AlertTrigger] = None,
        reporter: Optional[MonthlyReporter] = None,
    ) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)
        self.alerts = alerts
        self.reporter = reporter

    def _run_sweep(self, source: str = "manual") -> None:
        logger.info(f"budget_sweep_run: source={source}")
        with session_scope() as session:
            count = self.alerts.sweep(session)
            logger.info(f"budget_sweep_run: source={source} messages_sent={count}")

    def _run_monthly_report(self, source: str = "manual") -> None:
        logger.info(f"monthly_report_run: source={source}")
        with session_scope() as session:
            count = self.reporter.run(session)
            logger.info(f"monthly_report_run: source={source} reports_sent={count}")

    def start(self) -> None:
        if self.alerts is not None:
            trigger = CronTrigger(hour=self.settings.alert_sweep_hour, minute=0)
            self.scheduler.add_job(
                self._run_sweep,
                trigger,
                args=[f"daily_{self.settings.alert_sweep_hour:02d}:00"],
                id="budget_sweep_daily",
                replace_existing=True,
                misfire_grace_time=3600,
            )

        if self.reporter is not None:
            # Fires daily; the reporter only sends on the last day of the month.
            trigger = CronTrigger(hour=self.settings.monthly_report_hour, minute=0)
            self.scheduler.add_job(
                self._run_monthly_report,
                trigger,
                args=[f"daily_{self.settings.monthly_report_hour:02d}:00"],
                id="monthly_report",
                replace_existing=True,
                misfire_grace_time=3600,
            )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with budget sweep at {self.settings.alert_sweep_hour:02d}:00"
            f" and monthly report at {self.settings.monthly_report_hour:02d}:00"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
