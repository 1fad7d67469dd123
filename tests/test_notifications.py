import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler

from notifications import NotificationDispatcher


class RecordingSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.delivered = threading.Event()

    def send(self, recipient: str, subject: str, body: str) -> None:
        self.sent.append((recipient, subject, body))
        self.delivered.set()


def test_mail_is_delivered_by_background_worker() -> None:
    sender = RecordingSender()
    dispatcher = NotificationDispatcher(
        sender=sender, scheduler=BackgroundScheduler(timezone="UTC")
    )
    dispatcher.enabled = True
    dispatcher.start()
    try:
        dispatcher.send_mail("alice@example.com", "Welcome", "Hi Alice")
        assert sender.delivered.wait(timeout=5)
    finally:
        dispatcher.stop()

    assert sender.sent == [("alice@example.com", "Welcome", "Hi Alice")]


def test_failing_job_is_logged_and_not_raised(caplog) -> None:
    dispatcher = NotificationDispatcher(scheduler=BackgroundScheduler(timezone="UTC"))

    def explode() -> None:
        raise RuntimeError("relay down")

    with caplog.at_level(logging.INFO, logger="notifications"):
        dispatcher._run_job("mail", explode, ())

    messages = [record.getMessage() for record in caplog.records]
    assert "notification_failed: job=mail" in messages
    assert "notification_done: job=mail" not in messages


def test_disabled_dispatcher_schedules_nothing() -> None:
    scheduler = BackgroundScheduler(timezone="UTC")
    dispatcher = NotificationDispatcher(scheduler=scheduler)
    dispatcher.enabled = False

    dispatcher.send_mail("alice@example.com", "Welcome", "Hi Alice")

    assert scheduler.get_jobs() == []
