# tone_drafter/tasks/__init__.py
"""Celery Tasks der Draft-Pipeline.

ARCHITEKTUR:
┌─────────────────────────────┐
│ Ingest (Transport-Layer)    │
│ MessageIngestService        │
└────────────┬────────────────┘
             │ JobQueue.enqueue_*(...) -> job_records + Broker.send(job_id)
             ↓
┌─────────────────────────────┐
│ Task (Celery Wrapper)       │
│ - Session Management        │
│ - nur die Job-ID als Arg    │
└────────────┬────────────────┘
             │ JobRunner.run(db, job_id)
             ↓
┌─────────────────────────────┐
│ Handler / Services          │
│ DraftOrchestrator           │
│ ToneProfileBuilder          │
│ - keine Celery-Abhängigkeit │
└─────────────────────────────┘

Retries plant der JobRunner selbst ein (RetryPolicy), deshalb max_retries=0.
recover_jobs läuft periodisch über Celery Beat und räumt verwaiste Jobs auf.

Auto-discovered durch celery_app.autodiscover_tasks() in celery_app.py
"""

from tone_drafter.tasks.email_processing_tasks import process_email_job
from tone_drafter.tasks.maintenance_tasks import recover_jobs
from tone_drafter.tasks.tone_profile_tasks import build_tone_profile_job

__all__ = [
    "process_email_job",
    "build_tone_profile_job",
    "recover_jobs",
]
