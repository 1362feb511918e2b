"""
Tone Drafter - Job Queue & Runner

Zwei Queues:
- email-processing: ein Job pro eingegangener Mail, Idempotency-Key = Message-ID
- tone-profile: ein Job pro (User, Beziehungstyp); noch wartende Jobs werden zusammengefasst

Der Zustand jedes Jobs liegt in job_records, der Broker transportiert nur
die Job-ID. Retries, Backoff und Abbruchschwelle kommen aus der RetryPolicy,
nicht aus den Defaults des Brokers.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError

from tone_drafter.config import RetryPolicy, get_job_stale_seconds
from tone_drafter.exceptions import (
    ConfigurationError,
    ConsistencyError,
    DecryptionError,
    DuplicateJobError,
    EntityNotFound,
    ProviderError,
    StaleJobError,
)
from tone_drafter.models import PENDING_JOB_STATES, JobRecord, JobStatus, QueueName, utcnow

logger = logging.getLogger(__name__)

TERMINAL_ERRORS = (DecryptionError, ConsistencyError, EntityNotFound, ConfigurationError)


def is_retryable(exc: BaseException) -> bool:
    """Entscheidet, ob ein fehlgeschlagener Job erneut eingeplant wird"""
    if isinstance(exc, ProviderError):
        return exc.retryable
    if isinstance(exc, TERMINAL_ERRORS):
        return False
    if isinstance(exc, OperationalError):
        return True
    # Unbekannte Fehler: retry bis das Budget erschöpft ist
    return True


# =============================================================================
# Broker
# =============================================================================
class Broker(ABC):
    """Transport der Job-IDs zu den Workern"""

    @abstractmethod
    def send(self, queue: str, job_id: int, countdown: float = 0) -> None:
        """Stellt den Job (ggf. verzögert) zu"""


class InMemoryBroker(Broker):
    """Broker für Tests und Single-Process-Betrieb"""

    def __init__(self):
        self.messages: List[Tuple[str, int, float]] = []

    def send(self, queue: str, job_id: int, countdown: float = 0) -> None:
        self.messages.append((queue, job_id, countdown))

    def drain(self, queue: Optional[str] = None) -> List[Tuple[str, int, float]]:
        """Entnimmt alle (oder die Nachrichten einer Queue) in FIFO-Reihenfolge"""
        taken = [m for m in self.messages if queue is None or m[0] == queue]
        self.messages = [m for m in self.messages if not (queue is None or m[0] == queue)]
        return taken


# =============================================================================
# Queue
# =============================================================================
class JobQueue:
    def __init__(self, broker: Broker, retry_policy: Optional[RetryPolicy] = None):
        self.broker = broker
        self.retry_policy = retry_policy or RetryPolicy.from_env()

    def _find_by_key(self, session, user_id: int, message_id: str) -> Optional[JobRecord]:
        return session.query(JobRecord).filter_by(
            queue=QueueName.EMAIL_PROCESSING.value, user_id=user_id, idempotency_key=message_id
        ).first()

    def enqueue_email_processing(self, session, user_id: int, message_id: str,
                                 account_id: int) -> JobRecord:
        """Legt den Job an und übergibt ihn dem Broker

        Raises:
            DuplicateJobError: für diese Message-ID existiert bereits ein Job
        """
        queue = QueueName.EMAIL_PROCESSING.value
        existing = self._find_by_key(session, user_id, message_id)
        if existing:
            raise DuplicateJobError(queue, message_id, existing.id)

        job = JobRecord(
            queue=queue,
            status=JobStatus.QUEUED.value,
            user_id=user_id,
            email_account_id=account_id,
            idempotency_key=message_id,
            payload={"user_id": user_id, "message_id": message_id, "account_id": account_id},
            max_attempts=self.retry_policy.max_attempts,
        )
        session.add(job)
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            existing = self._find_by_key(session, user_id, message_id)
            raise DuplicateJobError(queue, message_id, existing.id if existing else None) from e

        self.broker.send(queue, job.id)
        logger.info(f"📥 Job {job.id} [{queue}] eingeplant: user={user_id}, message={message_id}")
        return job

    def submit_email_processing(self, session, user_id: int, message_id: str,
                                account_id: int) -> JobRecord:
        """Wie enqueue_email_processing, ein Duplikat gilt als Erfolg"""
        try:
            return self.enqueue_email_processing(session, user_id, message_id, account_id)
        except DuplicateJobError as e:
            logger.info(f"♻️ {e}")
            return session.get(JobRecord, e.existing_job_id) if e.existing_job_id else self._find_by_key(
                session, user_id, message_id
            )

    def enqueue_tone_profile(self, session, user_id: int, relationship_type: str) -> JobRecord:
        """Plant einen Profil-Job ein; ein noch wartender Job für denselben Key wird wiederverwendet

        Wartend heißt queued oder failed_retryable im Backoff: der spätere Lauf
        liest ohnehin alle bis dahin unanalysierten gesendeten Mails.
        """
        queue = QueueName.TONE_PROFILE.value
        pending = (
            session.query(JobRecord)
            .filter(
                JobRecord.queue == queue,
                JobRecord.user_id == user_id,
                JobRecord.coalesce_key == relationship_type,
                JobRecord.status.in_(PENDING_JOB_STATES),
            )
            .first()
        )
        if pending:
            logger.debug(f"♻️ Profil-Job {pending.id} für {user_id}/{relationship_type} wartet bereits")
            return pending

        job = JobRecord(
            queue=queue,
            status=JobStatus.QUEUED.value,
            user_id=user_id,
            coalesce_key=relationship_type,
            payload={"user_id": user_id, "relationship_type": relationship_type},
            max_attempts=self.retry_policy.max_attempts,
        )
        session.add(job)
        session.commit()
        self.broker.send(queue, job.id)
        logger.info(f"📥 Job {job.id} [{queue}] eingeplant: user={user_id}, relationship={relationship_type}")
        return job

    def requeue(self, session, job_id: int) -> bool:
        """failed_retryable -> queued (Backoff abgelaufen)"""
        result = session.execute(
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.status == JobStatus.FAILED_RETRYABLE.value)
            .values(status=JobStatus.QUEUED.value, next_run_at=None)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def release_due(self, session, now: Optional[datetime] = None) -> List[int]:
        """Gibt alle Retries frei, deren Backoff abgelaufen ist, und stellt sie erneut zu

        Greift, wenn die verzögerte Broker-Nachricht verloren ging. Eine doppelte
        Zustellung ist unkritisch, der Claim im JobRunner lässt nur eine durch.
        """
        now = now or utcnow()
        due = (
            session.query(JobRecord.id, JobRecord.queue)
            .filter(
                JobRecord.status == JobStatus.FAILED_RETRYABLE.value,
                JobRecord.next_run_at <= now,
            )
            .all()
        )
        released = []
        for job_id, queue in due:
            if self.requeue(session, job_id):
                self.broker.send(queue, job_id)
                released.append(job_id)
        if released:
            logger.info(f"⏰ {len(released)} Retries nach Backoff wieder eingeplant: {released}")
        return released

    def cancel(self, session, job_id: int) -> bool:
        """Bricht einen noch nicht aktiven Job ab; aktive Jobs laufen zu Ende"""
        result = session.execute(
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.status.in_(PENDING_JOB_STATES))
            .values(status=JobStatus.CANCELLED.value, finished_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        session.commit()
        cancelled = result.rowcount == 1
        if cancelled:
            logger.info(f"🚫 Job {job_id} abgebrochen")
        return cancelled

    def cancel_for_account(self, session, account_id: int) -> int:
        result = session.execute(
            update(JobRecord)
            .where(JobRecord.email_account_id == account_id, JobRecord.status.in_(PENDING_JOB_STATES))
            .values(status=JobStatus.CANCELLED.value, finished_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        session.commit()
        if result.rowcount:
            logger.info(f"🚫 {result.rowcount} wartende Jobs für Account {account_id} abgebrochen")
        return result.rowcount


# =============================================================================
# Runner
# =============================================================================
JobHandler = Callable[[Any, JobRecord], Dict[str, Any]]


class JobRunner:
    """Treibt die Zustandsmaschine eines Jobs

    queued -> active -> completed
                     -> failed_retryable (Broker stellt nach Backoff erneut zu) -> queued
                     -> failed_terminal

    Bleibt ein Job länger als ``stale_after`` Sekunden in active, ist sein
    Worker verloren gegangen. Die nächste Zustellung (oder recover()) wertet
    das als fehlgeschlagenen Versuch.
    """

    def __init__(self, job_queue: JobQueue, handlers: Dict[str, JobHandler],
                 stale_after: Optional[float] = None):
        self.job_queue = job_queue
        self.handlers = handlers
        self.stale_after = stale_after if stale_after is not None else get_job_stale_seconds()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self.job_queue.retry_policy

    def run(self, session, job_id: int) -> Optional[JobRecord]:
        reaped = self._reap_stale(session, job_id)
        if reaped is not None:
            return reaped

        # Zustellung nach Backoff: failed_retryable -> queued
        self.job_queue.requeue(session, job_id)

        claimed = session.execute(
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.status == JobStatus.QUEUED.value)
            .values(
                status=JobStatus.ACTIVE.value,
                attempts=JobRecord.attempts + 1,
                started_at=utcnow(),
                next_run_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()

        job = session.get(JobRecord, job_id)
        if job is None:
            logger.warning(f"⚠️ Job {job_id} existiert nicht")
            return None
        if claimed.rowcount != 1:
            logger.info(f"⏭️ Job {job_id} übersprungen (Status {job.status})")
            return job

        handler = self.handlers.get(job.queue)
        if handler is None:
            return self._fail(session, job_id, ConfigurationError(f"Kein Handler für Queue {job.queue}"))

        logger.info(f"🔧 Job {job_id} [{job.queue}] Versuch {job.attempts}/{job.max_attempts}: {job.payload}")
        try:
            result = handler(session, job)
        except Exception as exc:
            session.rollback()
            return self._fail(session, job_id, exc)

        job = session.get(JobRecord, job_id)
        job.status = JobStatus.COMPLETED.value
        job.result = result
        job.last_error = None
        job.finished_at = utcnow()
        session.commit()
        logger.info(f"✅ Job {job_id} [{job.queue}] abgeschlossen")
        return job

    def recover(self, session, now: Optional[datetime] = None) -> Dict[str, int]:
        """Periodische Wartung: verwaiste active-Jobs werten, fällige Retries freigeben"""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.stale_after)
        stale_ids = [
            row.id
            for row in session.query(JobRecord.id).filter(
                JobRecord.status == JobStatus.ACTIVE.value,
                JobRecord.started_at < cutoff,
            )
        ]
        reaped = [job for job in (self._reap_stale(session, job_id, now) for job_id in stale_ids) if job]
        released = self.job_queue.release_due(session, now)

        summary = {"reaped": len(reaped), "released": len(released)}
        if reaped or released:
            logger.info(f"🧹 Job-Recovery: {summary}")
        return summary

    def _reap_stale(self, session, job_id: int, now: Optional[datetime] = None) -> Optional[JobRecord]:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.stale_after)
        # started_at wird neu gesetzt, damit nur eine Zustellung den Job wertet
        reaped = session.execute(
            update(JobRecord)
            .where(
                JobRecord.id == job_id,
                JobRecord.status == JobStatus.ACTIVE.value,
                JobRecord.started_at < cutoff,
            )
            .values(started_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if reaped.rowcount != 1:
            return None

        logger.warning(f"⏱️ Job {job_id} hing länger als {self.stale_after:.0f}s in active")
        return self._fail(
            session, job_id, StaleJobError(f"Worker verloren, kein Ergebnis nach {self.stale_after:.0f}s")
        )

    def _fail(self, session, job_id: int, exc: BaseException) -> JobRecord:
        job = session.get(JobRecord, job_id)
        job.last_error = f"{type(exc).__name__}: {exc}"[:2000]
        payload = job.payload or {}

        exhausted = replace(self.retry_policy, max_attempts=job.max_attempts).is_exhausted(job.attempts)
        if is_retryable(exc) and not exhausted:
            delay = self.retry_policy.delay_for(job.attempts)
            job.status = JobStatus.FAILED_RETRYABLE.value
            job.next_run_at = utcnow() + timedelta(seconds=delay)
            session.commit()
            self.job_queue.broker.send(job.queue, job.id, countdown=delay)
            logger.warning(
                f"🔁 Job {job.id} [{job.queue}] Versuch {job.attempts}/{job.max_attempts} "
                f"fehlgeschlagen, Retry in {delay:.0f}s: {job.last_error}"
            )
            return job

        job.status = JobStatus.FAILED_TERMINAL.value
        job.finished_at = utcnow()
        session.commit()
        logger.error(
            f"❌ Job {job.id} [{job.queue}] endgültig fehlgeschlagen: user={job.user_id}, "
            f"message={payload.get('message_id')}, relationship={payload.get('relationship_type')}, "
            f"attempts={job.attempts}/{job.max_attempts}, last_error={job.last_error}"
        )
        return job
