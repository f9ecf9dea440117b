import logging
from typing import List

from django.apps import AppConfig
from django.db.models.signals import post_migrate

logger = logging.getLogger(__name__)


def ensure_job_definitions() -> List[str]:
    """Ensure every recurring job has a definition row for execution tracking."""
    from django.db import OperationalError, ProgrammingError

    from roundups.services.scheduler import JOBS

    registered = []
    try:
        for job in JOBS.values():
            job.register()
            registered.append(job.job_name)
    except (OperationalError, ProgrammingError):
        logger.debug("Database not ready for job definition initialisation.")
        return []

    logger.info("Round-up job definitions ensured: %s", registered)
    return registered


def init_jobs_after_migrate(sender, **kwargs):
    """Called automatically after migrations to register the recurring jobs."""
    ensure_job_definitions()


class RoundupsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'roundups'
    verbose_name = 'Round-up donations'

    def ready(self):
        post_migrate.connect(init_jobs_after_migrate, sender=self)
