from .background import *
from .cron import *

__all__ = [
    "schedule_poll_notifications_task",
    # Scheduled/Cron Tasks
    "process_notification_queue_task",
]
