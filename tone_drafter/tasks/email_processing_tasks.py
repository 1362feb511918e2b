# tone_drafter/tasks/email_processing_tasks.py
"""
Celery Task für die Queue email-processing: ein Antwort-Entwurf pro Mail.
"""

import logging
from typing import Any, Dict

from celery.exceptions import Reject

from tone_drafter.celery_app import celery_app
from tone_drafter.helpers.database import get_session_factory
from tone_drafter.runtime import get_runtime

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="tasks.email_processing.process_email_job",
    max_retries=0,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_email_job(self, job_id: int) -> Dict[str, Any]:
    """
    Task: Job aus job_records ausführen (Entwurf generieren).

    Args:
        job_id: ID des JobRecords

    Returns:
        Dict mit job_id, status und dem Ergebnis des Handlers
    """
    if not job_id:
        raise Reject("Ungültige Job-ID", requeue=False)

    logger.info(f"🔧 [Task {self.request.id}] email-processing Job {job_id}")

    SessionFactory = get_session_factory()
    with SessionFactory() as db:
        job = get_runtime().runner.run(db, job_id)
        if job is None:
            raise Reject(f"Job {job_id} nicht gefunden", requeue=False)
        return {"job_id": job.id, "status": job.status, "result": job.result}
