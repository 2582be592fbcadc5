"""Celery worker entrypoint.

Run with: celery -A apps.worker.main:celery_app worker --beat --loglevel=info

The worker only runs the overdue-job sweep. Publish jobs themselves are polled
by the API process that accepted them; the sweep fails any job whose poll task
died with its process.
"""

from celery.signals import beat_init, worker_process_init

from quire.celery import SWEEP_INTERVAL_S, celery_app
from quire.logging import configure_logging, get_logger

# Explicit import registers the task (no autodiscovery)
from quire.tasks import sweep_overdue_publish_jobs  # noqa: F401


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog in each worker process, same JSON format as the API."""
    configure_logging()
    get_logger(__name__).info("celery_worker_started", queue="default")


@beat_init.connect
def log_beat_schedule(**kwargs):
    configure_logging()
    get_logger(__name__).info(
        "celery_beat_started",
        tasks=sorted(celery_app.conf.beat_schedule),
        sweep_interval_s=SWEEP_INTERVAL_S,
    )


__all__ = ["celery_app"]
