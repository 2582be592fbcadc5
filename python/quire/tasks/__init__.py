"""Celery tasks for Quire.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.
"""

from quire.tasks.sweep_publish_jobs import sweep_overdue_publish_jobs

__all__ = ["sweep_overdue_publish_jobs"]
