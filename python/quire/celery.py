"""Celery application configuration.

Central configuration for Celery used by the worker and beat.

Usage:
    from quire.celery import celery_app

    # Enqueue the sweep by hand:
    celery_app.send_task("sweep_overdue_publish_jobs")

Beat runs sweep_overdue_publish_jobs every SWEEP_INTERVAL_S seconds so that
running jobs reach a terminal state even when no API process polls them.
"""

from celery import Celery

from quire.config import get_settings

SWEEP_INTERVAL_S = 60.0

settings = get_settings()

# Create Celery app
celery_app = Celery("quire")

# Configure from settings
celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

# Default queue
celery_app.conf.task_default_queue = "default"

celery_app.conf.beat_schedule = {
    "sweep-overdue-publish-jobs": {
        "task": "sweep_overdue_publish_jobs",
        "schedule": SWEEP_INTERVAL_S,
    },
}
