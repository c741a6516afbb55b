import asyncio
from datetime import datetime, time, timedelta, timezone

import pytest

from polly.db.models import NotificationType
from polly.schemas.notification_schemas import PollCreatedEvent
from polly.tasks.background import poll_notification_scheduler
from polly.tasks.cron import notification_queue_processor


@pytest.fixture
def task_session(db_session, monkeypatch):
    """Point the task modules at the test database session."""

    def fake_session():
        yield db_session

    monkeypatch.setattr(poll_notification_scheduler, "get_sync_session", fake_session)
    monkeypatch.setattr(notification_queue_processor, "get_sync_session", fake_session)
    return db_session


class TestSchedulePollNotificationsTask:
    """Celery entry point for poll-created events."""

    def test_schedules_known_poll(self, task_session, scheduler, polls, monkeypatch):
        monkeypatch.setattr(
            poll_notification_scheduler, "build_scheduler", lambda db: scheduler
        )
        polls.add(
            PollCreatedEvent(
                id="p1",
                question="Best snack?",
                creator_id="creator",
                end_time=datetime.now(timezone.utc) + timedelta(hours=48),
            )
        )

        result = poll_notification_scheduler.schedule_poll_notifications_task(
            "req-1", "p1"
        )

        assert result == {
            "success": True,
            "poll_id": "p1",
            "created": 3,
            "duplicates": 0,
            "skipped": 0,
            "request_id": "req-1",
        }

    def test_unknown_poll_returns_failure(self, task_session, scheduler, monkeypatch):
        monkeypatch.setattr(
            poll_notification_scheduler, "build_scheduler", lambda db: scheduler
        )

        result = poll_notification_scheduler.schedule_poll_notifications_task(
            "req-2", "missing"
        )

        assert result == {
            "success": False,
            "error": "Poll not found: missing",
            "poll_id": "missing",
            "request_id": "req-2",
        }


class TestProcessNotificationQueueTask:
    """Celery beat entry point for the delivery processor."""

    def test_runs_one_batch(
        self, task_session, processor, queue, polls, store_preferences, monkeypatch
    ):
        monkeypatch.setattr(
            notification_queue_processor,
            "build_delivery_processor",
            lambda db: processor,
        )
        now = datetime.now(timezone.utc)
        polls.add(PollCreatedEvent(id="p1", question="Q?", creator_id="creator"))

        async def seed():
            for user_id in ("creator", "voter"):
                await queue.enqueue(
                    user_id=user_id,
                    notification_type=NotificationType.POLL_CLOSED,
                    scheduled_for=now - timedelta(minutes=1),
                    poll_id="p1",
                    template_data={"poll_id": "p1", "poll_question": "Q?"},
                    now=now,
                )

        # A zero-length window is never quiet, whatever the wall clock says
        for user_id in ("creator", "voter"):
            store_preferences(
                user_id, quiet_hours_start=time(0, 0), quiet_hours_end=time(0, 0)
            )
        asyncio.run(seed())

        result = notification_queue_processor.process_notification_queue_task(
            "cron-req"
        )

        assert result == {
            "success": True,
            "sent": 2,
            "failed": 0,
            "skipped": 0,
            "request_id": "cron-req",
        }
