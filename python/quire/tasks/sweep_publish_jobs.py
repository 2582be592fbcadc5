"""Overdue publish job sweeper.

Celery beat job: sweep_overdue_publish_jobs
- Query: state='running' AND running_since < now() - (PUBLISH_TIMEOUT_S + grace)
- Fail each job with E_PUBLISH_TIMEOUT through the job registry, so the state
  machine is enforced and a job finalized concurrently is skipped
- The grace period (one backoff cap) lets an API process that is still
  polling the job record the timeout itself first
"""

from quire.celery import celery_app
from quire.config import get_settings
from quire.db.session import get_session_factory
from quire.logging import clear_task_context, configure_task_logging, get_logger
from quire.services.publish import JobRegistry, fail_overdue_jobs

logger = get_logger(__name__)


def sweep_overdue_jobs(registry: JobRegistry | None = None) -> int:
    """Fail running jobs past their wall-clock budget.

    Returns:
        Number of jobs failed.
    """
    settings = get_settings()
    registry = registry or JobRegistry(get_session_factory())
    config = settings.publish_config()

    failed = fail_overdue_jobs(registry, config, grace_s=config.backoff_cap_s)
    if failed:
        logger.info("sweeper_complete", failed_count=failed)
    return failed


@celery_app.task(bind=True, max_retries=0, name="sweep_overdue_publish_jobs")
def sweep_overdue_publish_jobs(self, request_id: str | None = None) -> dict:
    configure_task_logging(
        request_id=request_id, task_name="sweep_overdue_publish_jobs", task_id=self.request.id
    )
    try:
        return {"failed": sweep_overdue_jobs()}
    finally:
        clear_task_context()
