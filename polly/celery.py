from celery import Celery

# Create Celery app
celery = Celery("polly")

# Load configuration from polly.config.celeryconfig module
celery.config_from_object("polly.config.celeryconfig")
