from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# Task Discovery
include = ["polly.tasks"]

# Timezone Configuration
# Quiet hours are evaluated per user, so beat itself runs on plain UTC
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 5 * 60  # 5 minutes
task_soft_time_limit = 4 * 60  # 4 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3

# Exponential Backoff Settings
task_retry_backoff = True
task_retry_backoff_max = 700  # Max 700 seconds
task_retry_jitter = False

beat_schedule = {
    # Drain due notification queue entries
    "notification-queue-processor": {
        "task": "polly.tasks.cron.notification_queue_processor.process_notification_queue_task",
        "schedule": crontab(minute=f"*/{settings.PROCESSOR_INTERVAL_MINUTES}"),
        "args": ("notification_queue_processor_cron",),
    },
}

# Default Queue
task_default_queue = "polly"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
