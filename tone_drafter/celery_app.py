# tone_drafter/celery_app.py
"""Celery Application für die Draft-Pipeline.

Zwei Queues, die unabhängig skaliert werden:
- email-processing: Entwurf pro eingegangener Mail
- tone-profile: Batch-Analyse gesendeter Mails

Celery-Autoretry ist für diese Tasks deaktiviert; Retries, Backoff und
Abbruchschwelle kommen aus tone_drafter.config.RetryPolicy und werden über
den CeleryBroker als verzögerte Zustellung eingeplant.

VERWENDUNG:
    1. .env:
       - CELERY_BROKER_URL=redis://localhost:6379/1
       - CELERY_RESULT_BACKEND=redis://localhost:6379/2
       - DRAFT_MASTER_KEY=...

    2. Worker starten (pro Queue):
       celery -A tone_drafter.celery_app worker -Q email-processing --loglevel=info
       celery -A tone_drafter.celery_app worker -Q tone-profile --loglevel=info

    3. Recovery verwaister Jobs (einmal pro Deployment):
       celery -A tone_drafter.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.signals import worker_init

from tone_drafter import config
from tone_drafter.job_queue import Broker
from tone_drafter.models import QueueName

config.load_environment()

celery_app = Celery(
    "tone_drafter",
    broker=config.get_broker_url(),
    backend=config.get_result_backend(),
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Europe/Berlin",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=config.get_task_time_limit(),
    task_soft_time_limit=max(config.get_task_time_limit() - 2 * 60, 30),
    worker_prefetch_multiplier=1,
    task_routes={
        "tasks.email_processing.*": {"queue": QueueName.EMAIL_PROCESSING.value},
        "tasks.tone_profile.*": {"queue": QueueName.TONE_PROFILE.value},
        "tasks.maintenance.*": {"queue": QueueName.EMAIL_PROCESSING.value},
    },
    beat_schedule={
        "recover-jobs": {
            "task": "tasks.maintenance.recover_jobs",
            "schedule": config.get_recovery_interval(),
        },
    },
)

celery_app.autodiscover_tasks(["tone_drafter"])

TASK_NAMES = {
    QueueName.EMAIL_PROCESSING.value: "tasks.email_processing.process_email_job",
    QueueName.TONE_PROFILE.value: "tasks.tone_profile.build_tone_profile_job",
}


class CeleryBroker(Broker):
    """Stellt Job-IDs über Celery zu (send_task, kein Import der Task-Module nötig)"""

    def __init__(self, app: Celery = None):
        self.app = app or celery_app

    def send(self, queue: str, job_id: int, countdown: float = 0) -> None:
        self.app.send_task(
            TASK_NAMES[queue],
            args=[job_id],
            queue=queue,
            countdown=countdown or None,
        )


@worker_init.connect
def _validate_environment(**kwargs):
    """Kritische Variablen beim Worker-Start prüfen (Exit 1 bei Fehlern)"""
    from tone_drafter.env_validator import validate_environment
    from tone_drafter.helpers.database import init_schema

    validate_environment()
    init_schema()


if __name__ == "__main__":
    celery_app.start()
