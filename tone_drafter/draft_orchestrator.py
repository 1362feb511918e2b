"""
Tone Drafter - Draft Orchestrator

generate_draft():
1. Beziehungstyp des Absenders bestimmen      (degradiert zu "external")
2. Kontext abrufen                            (degradiert zu leerem Kontext)
3. Tone-Profil lesen                          (degradiert zu leerem Profil)
4. Prompt rendern
5. Aktiven LLM-Provider aufrufen              (Fehler -> Retry-Maschine der Job-Queue)
6. DraftTracking-Zeile atomar anlegen

Entweder existiert danach eine vollständige DraftTracking-Zeile oder keine.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tone_drafter.context_retriever import ContextRetriever, RetrievedContext
from tone_drafter.debug_logger import DebugLogger
from tone_drafter.exceptions import ProviderError, ProviderErrorKind, RetrievalUnavailable
from tone_drafter.models import DEFAULT_RELATIONSHIP, DraftTracking, EmailAccount, InboundMessage
from tone_drafter.prompt_builder import build_prompt, cleanup_reply_text, summarize_profile
from tone_drafter.relationships import RelationshipClassifier, RelationshipResult
from tone_drafter.tone_profiles import ProfileSnapshot, ToneProfileStore

logger = logging.getLogger(__name__)

DRAFT_MESSAGE_ID_DOMAIN = "tone-drafter"


def new_draft_message_id() -> str:
    return f"<draft-{uuid.uuid4().hex}@{DRAFT_MESSAGE_ID_DOMAIN}>"


@dataclass
class DraftResult:
    draft_id: int
    draft_message_id: str
    original_message_id: str
    text: str
    relationship_type: str
    context: Dict[str, Any] = field(default_factory=dict)
    created: bool = True

    @property
    def retrieval_degraded(self) -> bool:
        return bool(self.context.get("retrieval_degraded"))

    @classmethod
    def from_row(cls, row: DraftTracking, created: bool) -> "DraftResult":
        return cls(
            draft_id=row.id,
            draft_message_id=row.draft_message_id,
            original_message_id=row.original_message_id,
            text=row.generated_content,
            relationship_type=row.relationship_type,
            context=dict(row.context_data or {}),
            created=created,
        )


class DraftOrchestrator:
    """Provider-agnostische Draft-Generierung

    Args:
        retriever: ContextRetriever
        profile_store: ToneProfileStore (nur lesend)
        classifier: RelationshipClassifier
        client_resolver: Objekt mit ``resolve_client(session, user_id) -> (AIClient, provider_config)``
        context_k: Anzahl Kontext-Treffer (None = Default des Retrievers)
    """

    def __init__(
        self,
        retriever: ContextRetriever,
        profile_store: ToneProfileStore,
        classifier: RelationshipClassifier,
        client_resolver,
        context_k: Optional[int] = None,
    ):
        self.retriever = retriever
        self.profile_store = profile_store
        self.classifier = classifier
        self.client_resolver = client_resolver
        self.context_k = context_k

    def find_existing(self, session, user_id: int, original_message_id: str) -> Optional[DraftTracking]:
        return session.query(DraftTracking).filter_by(
            user_id=user_id, original_message_id=original_message_id
        ).first()

    # -------------------------------------------------------------------------
    # Degradierbare Schritte 1-3
    # -------------------------------------------------------------------------
    def _classify(self, session, user_id: int, message: InboundMessage,
                  account: EmailAccount) -> RelationshipResult:
        try:
            return self.classifier.classify(session, user_id, message.sender_address, account)
        except Exception as e:
            # Externe Fähigkeit: jeder Fehler degradiert zum Default
            logger.warning(f"⚠️ Klassifizierung fehlgeschlagen (user={user_id}): {type(e).__name__}: {e}")
            return RelationshipResult(DEFAULT_RELATIONSHIP, 0.0, "fallback")

    def _retrieve(self, user_id: int, message: InboundMessage,
                  relationship_type: str) -> Tuple[List[RetrievedContext], bool]:
        try:
            context = self.retriever.retrieve(
                user_id,
                message.body,
                relationship_type=relationship_type,
                k=self.context_k,
                exclude_ids=[message.message_id],
            )
            return context, False
        except RetrievalUnavailable as e:
            logger.warning(
                f"⚠️ Retrieval nicht verfügbar (user={user_id}, message={message.message_id}): {e} "
                f"(generiere ohne Kontext)"
            )
            return [], True

    def _load_profile(self, session, user_id: int, relationship_type: str) -> ProfileSnapshot:
        try:
            return self.profile_store.get(session, user_id, relationship_type)
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"⚠️ Tone-Profil nicht lesbar (user={user_id}, {relationship_type}): {e}")
            return ProfileSnapshot.empty(user_id, relationship_type)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------
    def generate_draft(self, session, user_id: int, account: EmailAccount,
                       original_message: InboundMessage, job_id: Optional[int] = None) -> DraftResult:
        """Erzeugt (oder liefert den bereits existierenden) Entwurf zu einer Mail

        Raises:
            ProviderError: Generierung fehlgeschlagen (Retry-Entscheidung beim JobRunner)
            ConfigurationError: kein aktiver Provider
            DecryptionError: API-Key nicht entschlüsselbar
        """
        message_id = original_message.message_id
        existing = self.find_existing(session, user_id, message_id)
        if existing:
            logger.info(f"♻️ Draft für {message_id} existiert bereits (draft={existing.id}), kein LLM-Call")
            return DraftResult.from_row(existing, created=False)

        relationship = self._classify(session, user_id, original_message, account)
        context, retrieval_degraded = self._retrieve(user_id, original_message, relationship.relationship_type)
        profile = self._load_profile(session, user_id, relationship.relationship_type)

        prompt = build_prompt(
            original_sender=original_message.sender_address,
            original_subject=original_message.subject,
            original_body=original_message.body,
            relationship_type=relationship.relationship_type,
            profile=profile,
            context=context,
            sender_name=original_message.sender_name,
        )

        client, provider = self.client_resolver.resolve_client(session, user_id)
        provider_type = getattr(provider, "provider_type", getattr(client, "provider_type", ""))
        model_name = getattr(provider, "model_name", None) or getattr(client, "model", None)

        DebugLogger.log_prompt(prompt, provider_type, model_name, session_id=str(job_id or message_id))
        raw_text = client.complete(prompt, model_name)
        text = cleanup_reply_text(raw_text)
        DebugLogger.log_output(raw_text, text, session_id=str(job_id or message_id))
        if not text:
            raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE, "Antwort nach Bereinigung leer", provider_type)

        context_data = {
            "relationship": {
                "type": relationship.relationship_type,
                "confidence": relationship.confidence,
                "method": relationship.method,
            },
            "retrieved": [{"message_id": c.message_id, "score": c.score} for c in context],
            "retrieval_degraded": retrieval_degraded,
            "profile": profile.signals(),
            "profile_summary": summarize_profile(profile),
            "provider": {"type": provider_type, "model": model_name},
        }

        row = DraftTracking(
            user_id=user_id,
            email_account_id=account.id,
            original_message_id=message_id,
            draft_message_id=new_draft_message_id(),
            generated_content=text,
            relationship_type=relationship.relationship_type,
            context_data=context_data,
        )
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            # Paralleler Job hat denselben Entwurf bereits gespeichert
            session.rollback()
            existing = self.find_existing(session, user_id, message_id)
            if existing is None:
                raise
            logger.info(f"♻️ Draft für {message_id} parallel entstanden (draft={existing.id})")
            return DraftResult.from_row(existing, created=False)

        logger.info(
            f"✅ Draft {row.id} für message={message_id} (user={user_id}, "
            f"relationship={relationship.relationship_type}, kontext={len(context)}, "
            f"profil={profile.emails_analyzed} Mails)"
        )
        return DraftResult.from_row(row, created=True)
