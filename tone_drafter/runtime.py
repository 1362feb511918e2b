"""
Tone Drafter - Verdrahtung der Pipeline

Alle Abhängigkeiten (Broker, Session-Factory, Embedder, Lock-Provider,
Key-Ring) werden explizit übergeben. Worker holen sich über
``get_runtime()`` eine prozessweite Instanz mit Celery-Broker und Redis-Locks;
Tests bauen ihre eigene mit ``build_runtime(InMemoryBroker(), ...)``.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, Optional

from tone_drafter.ai_client import build_embedding_client
from tone_drafter.config import RetryPolicy
from tone_drafter.context_retriever import ContextRetriever
from tone_drafter.draft_orchestrator import DraftOrchestrator
from tone_drafter.encryption import KeyRing
from tone_drafter.exceptions import EntityNotFound
from tone_drafter.helpers.database import get_email_account, get_inbound_message, get_session_factory
from tone_drafter.helpers.locks import LockProvider, RedisLockProvider
from tone_drafter.job_queue import Broker, JobQueue, JobRunner
from tone_drafter.models import JobRecord, QueueName
from tone_drafter.relationships import ContactRelationshipClassifier, RelationshipClassifier
from tone_drafter.services.account_service import AccountService
from tone_drafter.services.feedback_service import FeedbackService
from tone_drafter.services.message_ingest import MessageIngestService
from tone_drafter.services.provider_service import ProviderService
from tone_drafter.style_analyzer import NameExtractor, RegexNameExtractor
from tone_drafter.tone_profiles import ToneProfileBuilder, ToneProfileStore
from tone_drafter.vector_index import SqlVectorIndex

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    keyring: KeyRing
    job_queue: JobQueue
    retriever: ContextRetriever
    profile_store: ToneProfileStore
    profile_builder: ToneProfileBuilder
    classifier: RelationshipClassifier
    provider_service: ProviderService
    orchestrator: DraftOrchestrator
    feedback: FeedbackService
    ingest: MessageIngestService
    accounts: AccountService
    runner: JobRunner


def handle_email_processing(runtime: PipelineRuntime, session, job: JobRecord) -> Dict[str, Any]:
    """Job-Handler der Queue email-processing"""
    payload = job.payload or {}
    account = get_email_account(session, payload.get("account_id"), job.user_id)
    if not account:
        raise EntityNotFound(f"Account {payload.get('account_id')} nicht gefunden (user={job.user_id})")
    if not account.is_active:
        raise EntityNotFound(f"Account {account.id} ist deaktiviert")

    message = get_inbound_message(session, account.id, payload.get("message_id"), job.user_id)
    if not message:
        raise EntityNotFound(f"Mail {payload.get('message_id')} nicht gefunden (account={account.id})")

    result = runtime.orchestrator.generate_draft(session, job.user_id, account, message, job_id=job.id)
    return {
        "draft_id": result.draft_id,
        "created": result.created,
        "relationship_type": result.relationship_type,
        "retrieval_degraded": result.retrieval_degraded,
    }


def handle_tone_profile(runtime: PipelineRuntime, session, job: JobRecord) -> Dict[str, Any]:
    """Job-Handler der Queue tone-profile"""
    relationship_type = (job.payload or {}).get("relationship_type")
    if not relationship_type:
        raise EntityNotFound(f"Job {job.id} ohne relationship_type")
    return runtime.profile_builder.build(session, job.user_id, relationship_type)


def build_runtime(
    broker: Broker,
    session_factory=None,
    embedder=None,
    lock_provider: Optional[LockProvider] = None,
    keyring: Optional[KeyRing] = None,
    client_resolver=None,
    retry_policy: Optional[RetryPolicy] = None,
    classifier: Optional[RelationshipClassifier] = None,
    name_extractor: Optional[NameExtractor] = None,
    embedding_dim: Optional[int] = None,
) -> PipelineRuntime:
    session_factory = session_factory or get_session_factory()
    keyring = keyring or KeyRing.from_env()
    name_extractor = name_extractor or RegexNameExtractor()
    classifier = classifier or ContactRelationshipClassifier()

    job_queue = JobQueue(broker, retry_policy)
    retriever = ContextRetriever(
        SqlVectorIndex(session_factory, dimension=embedding_dim),
        embedder or build_embedding_client(),
    )
    profile_store = ToneProfileStore(lock_provider or RedisLockProvider())
    provider_service = ProviderService(keyring)
    feedback = FeedbackService(job_queue, name_extractor)

    orchestrator = DraftOrchestrator(
        retriever=retriever,
        profile_store=profile_store,
        classifier=classifier,
        client_resolver=client_resolver or provider_service,
    )

    runtime = PipelineRuntime(
        keyring=keyring,
        job_queue=job_queue,
        retriever=retriever,
        profile_store=profile_store,
        profile_builder=ToneProfileBuilder(profile_store, name_extractor),
        classifier=classifier,
        provider_service=provider_service,
        orchestrator=orchestrator,
        feedback=feedback,
        ingest=MessageIngestService(retriever, job_queue, feedback, classifier),
        accounts=AccountService(keyring, job_queue),
        runner=None,
    )
    runtime.runner = JobRunner(
        job_queue,
        {
            QueueName.EMAIL_PROCESSING.value: partial(handle_email_processing, runtime),
            QueueName.TONE_PROFILE.value: partial(handle_tone_profile, runtime),
        },
    )
    return runtime


_runtime: Optional[PipelineRuntime] = None


def get_runtime() -> PipelineRuntime:
    """Prozessweite Runtime für Celery-Worker (lazy)"""
    global _runtime
    if _runtime is None:
        from tone_drafter.celery_app import CeleryBroker

        _runtime = build_runtime(CeleryBroker())
        logger.info("✅ Pipeline-Runtime initialisiert")
    return _runtime
