import logging
from typing import Any, Callable, Optional, Protocol

from apscheduler.schedulers.background import BackgroundScheduler

from config import get_settings


logger = logging.getLogger(__name__)


class MailSender(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> None: ...


class LoggingMailSender:
    """Stand-in sender for deployments without an outbound mail relay."""

    def send(self, recipient: str, subject: str, body: str) -> None:
        logger.info(f"mail_send: to={recipient} subject={subject!r} chars={len(body)}")


class NotificationDispatcher:
    """Hands notifications to a background worker and returns immediately.

    Jobs run once on the scheduler's thread pool. A failing job is logged and
    never propagates back to the operation that submitted it.
    """

    def __init__(
        self,
        sender: Optional[MailSender] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        settings = get_settings()
        self.sender = sender or LoggingMailSender()
        self.scheduler = scheduler or BackgroundScheduler(timezone=settings.timezone)
        self.enabled = settings.notifications_enabled

    def _run_job(self, name: str, func: Callable[..., Any], args: tuple) -> None:
        try:
            func(*args)
        except Exception:
            logger.exception(f"notification_failed: job={name}")
            return
        logger.info(f"notification_done: job={name}")

    def submit(self, name: str, func: Callable[..., Any], *args: Any) -> None:
        if not self.enabled:
            logger.info(f"notification_skipped: job={name} reason=disabled")
            return
        try:
            self.scheduler.add_job(
                self._run_job,
                args=[name, func, args],
                misfire_grace_time=None,
            )
        except Exception:
            logger.exception(f"notification_submit_failed: job={name}")

    def send_mail(self, recipient: str, subject: str, body: str) -> None:
        self.submit("mail", self.sender.send, recipient, subject, body)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Notification dispatcher started")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Notification dispatcher stopped")
