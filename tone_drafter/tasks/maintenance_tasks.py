# tone_drafter/tasks/maintenance_tasks.py
"""
Periodischer Recovery-Task (Celery Beat): verwaiste active-Jobs als
fehlgeschlagenen Versuch werten und Retries mit abgelaufenem Backoff
wieder einplanen.
"""

import logging
from typing import Dict

from tone_drafter.celery_app import celery_app
from tone_drafter.helpers.database import get_session_factory
from tone_drafter.runtime import get_runtime

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="tasks.maintenance.recover_jobs",
    max_retries=0,
    ignore_result=True,
)
def recover_jobs(self) -> Dict[str, int]:
    logger.debug(f"🧹 [Task {self.request.id}] Job-Recovery")

    SessionFactory = get_session_factory()
    with SessionFactory() as db:
        return get_runtime().runner.recover(db)
