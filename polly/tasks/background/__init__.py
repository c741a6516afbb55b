from .poll_notification_scheduler import schedule_poll_notifications_task

__all__ = [
    "schedule_poll_notifications_task",
]
