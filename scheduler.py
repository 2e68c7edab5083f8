import logging
from datetime import datetime
from typing import Callable, ContextManager, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from notifications import NotificationService


logger = logging.getLogger(__name__)


class AlertScheduler:
    """Owns the daily all-users alert check.

    One instance is created by the application and kept on ``app.state``.
    """

    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]] = session_scope,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = scheduler or BackgroundScheduler(timezone=settings.timezone)
        self.check_hour = settings.alert_check_hour
        self.send_email = settings.alert_emails_enabled
        self.last_check_at: Optional[datetime] = None
        self.last_users_checked = 0

    @property
    def is_running(self) -> bool:
        return bool(self.scheduler.running)

    def run_check(self, source: str = "manual", send_email: Optional[bool] = None) -> int:
        send = self.send_email if send_email is None else send_email
        logger.info(f"alert_check_run: source={source} send_email={send}")
        with self.session_factory() as session:
            count = NotificationService(session).check_all_users(send_email=send)
        self.last_check_at = datetime.now()
        self.last_users_checked = count
        logger.info(f"alert_check_run: source={source} users_checked={count}")
        return count

    def start(self) -> None:
        if self.is_running:
            return
        trigger = CronTrigger(hour=self.check_hour, minute=0)
        self.scheduler.add_job(
            self.run_check,
            trigger,
            args=[f"daily_{self.check_hour:02d}:00"],
            id="alerts_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(f"Alert scheduler started with daily {self.check_hour:02d}:00 check")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Alert scheduler stopped")

    def status(self) -> dict[str, object]:
        return {
            "is_running": self.is_running,
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "last_users_checked": self.last_users_checked,
        }
