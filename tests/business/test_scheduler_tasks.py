"""Scheduled task and notification dispatch tests.

Tests for:
- Scheduler job registration (without starting the event loop)
- expire_packages_task / dispatch_notifications_task run via asyncio
- NotificationDispatcher success / failure bookkeeping, pending-only sends
"""
import asyncio
from datetime import timedelta

import pytest

from business.notifier import (
    LoggingNotificationSender, NotificationDeliveryError, NotificationDispatcher,
    NotificationSender,
)
from business.scheduler import Scheduler
from business.scheduler_tasks import (
    EXPIRY_SWEEP_JOB_ID, NOTIFICATION_JOB_ID, dispatch_notifications_task,
    expire_packages_task, notification_dispatch_time, register_tasks,
)
from config.settings import settings
from database.errors import NotFoundError, ValidationFailure
from database.models import PACKAGE_EXPIRED


class RecordingSender(NotificationSender):
    """Collects sent messages; fails for 'fail' messages and crashes on 'crash' ones."""

    def __init__(self):
        self.sent = []

    def send(self, notification):
        if "crash" in notification.message:
            raise RuntimeError("connection reset")
        if "fail" in notification.message:
            raise NotificationDeliveryError("gateway rejected message")
        self.sent.append(notification.message)


@pytest.fixture
def pending(shop, make_customer):
    customer, _ = make_customer()

    def _pending(message):
        return shop.notifications.create({
            "customer_id": customer.id, "type": "reminder",
            "message": message, "channel": "whatsapp",
        })
    return _pending


class TestScheduler:

    def test_register_tasks(self, shop):
        scheduler = Scheduler()
        register_tasks(scheduler, shop)
        assert set(scheduler.job_ids()) == {EXPIRY_SWEEP_JOB_ID, NOTIFICATION_JOB_ID}

    def test_remove_job(self, shop):
        scheduler = Scheduler()
        register_tasks(scheduler, shop)
        scheduler.remove_job(NOTIFICATION_JOB_ID)
        scheduler.remove_job("unknown")
        assert scheduler.job_ids() == [EXPIRY_SWEEP_JOB_ID]

    def test_stop_without_start(self):
        Scheduler().stop()

    @pytest.mark.parametrize("hour, minute, expected", [
        (0, 5, (0, 10)),
        (0, 58, (1, 3)),
        (23, 57, (0, 2)),
    ])
    def test_dispatch_time_follows_sweep(self, hour, minute, expected):
        assert notification_dispatch_time(hour, minute) == expected

    def test_dispatch_registered_after_sweep(self, shop, monkeypatch):
        monkeypatch.setattr(settings, "expiry_sweep_hour", 0)
        monkeypatch.setattr(settings, "expiry_sweep_minute", 58)
        scheduler = Scheduler()
        register_tasks(scheduler, shop)

        trigger = scheduler.scheduler.get_job(NOTIFICATION_JOB_ID).trigger
        fields = {field.name: str(field) for field in trigger.fields}
        assert (fields["hour"], fields["minute"]) == ("1", "3")


class TestExpiryTask:

    def test_marks_overdue_packages(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        overdue = make_package(customer, acquired_at=now - timedelta(days=31))
        make_package(customer)

        assert asyncio.run(expire_packages_task(shop, now)) == 1
        assert shop.packages.get(overdue.id).status == PACKAGE_EXPIRED

    def test_failure_propagates(self, shop, monkeypatch):
        def _broken(now=None):
            raise RuntimeError("sweep crashed")

        monkeypatch.setattr(shop, "expire_overdue_packages", _broken)
        with pytest.raises(RuntimeError):
            asyncio.run(expire_packages_task(shop))


class TestNotificationDispatch:

    def test_dispatch_pending(self, shop, pending):
        ok = pending("Rex is ready")
        bad = pending("please fail")
        sender = RecordingSender()

        result = asyncio.run(dispatch_notifications_task(shop, sender))

        assert result == {"sent": 1, "failed": 1}
        assert sender.sent == ["Rex is ready"]
        assert shop.notifications.get(ok.id).status == "sent"
        failed = shop.notifications.get(bad.id)
        assert failed.status == "failed"
        assert failed.meta["error"] == "gateway rejected message"

    def test_already_sent_not_resent(self, shop, pending):
        pending("Rex is ready")
        sender = RecordingSender()
        dispatcher = NotificationDispatcher(shop, sender)
        dispatcher.dispatch_pending()
        assert dispatcher.dispatch_pending() == {"sent": 0, "failed": 0}
        assert sender.sent == ["Rex is ready"]

    def test_default_sender_logs(self, shop, pending):
        notification = pending("Package expires in 3 days")
        dispatcher = NotificationDispatcher(shop)
        assert isinstance(dispatcher.sender, LoggingNotificationSender)
        assert dispatcher.dispatch(notification.id)["status"] == "sent"

    def test_dispatch_missing(self, shop):
        with pytest.raises(NotFoundError):
            NotificationDispatcher(shop).dispatch("missing")

    def test_sent_notification_is_not_resent(self, shop, pending):
        notification = pending("Rex is ready")
        sender = RecordingSender()
        dispatcher = NotificationDispatcher(shop, sender)
        dispatcher.dispatch(notification.id)

        with pytest.raises(ValidationFailure):
            dispatcher.dispatch(notification.id)
        assert sender.sent == ["Rex is ready"]

    def test_unexpected_sender_error_is_recorded(self, shop, pending):
        crashed = pending("crash now")
        ok = pending("Rex is ready")
        sender = RecordingSender()

        result = NotificationDispatcher(shop, sender).dispatch_pending()

        assert result == {"sent": 1, "failed": 1}
        assert sender.sent == ["Rex is ready"]
        failed = shop.notifications.get(crashed.id)
        assert failed.status == "failed"
        assert failed.meta["error"] == "RuntimeError: connection reset"
        assert shop.notifications.get(ok.id).status == "sent"
