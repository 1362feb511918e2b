# tone_drafter/services/message_ingest.py
"""
Einstiegspunkt für den Mail-Transport-Layer

- receive_inbound: eingegangene Mail speichern, indexieren, Draft-Job einplanen
- record_sent: gesendete Mail speichern, indexieren, Feedback verarbeiten
- import_history: historische gesendete Mails für die Profil-Erstellung übernehmen

Von gesendeten Mails wird nur der selbst geschriebene Text gespeichert,
zitierte Verläufe werden vorher entfernt.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from tone_drafter.context_retriever import ContextRetriever
from tone_drafter.exceptions import ConsistencyError, EntityNotFound
from tone_drafter.helpers.database import get_email_account
from tone_drafter.job_queue import JobQueue
from tone_drafter.models import (
    DEFAULT_RELATIONSHIP,
    EmailAccount,
    InboundMessage,
    JobRecord,
    MessageDirection,
    SentMessage,
    utcnow,
)
from tone_drafter.relationships import RelationshipClassifier
from tone_drafter.reply_extractor import extract_user_text
from tone_drafter.services.feedback_service import FeedbackService

logger = logging.getLogger(__name__)


@dataclass
class HistoricalMessage:
    """Eine gesendete Mail aus dem Postfach-Import"""

    message_id: str
    recipient_address: str
    body: str
    sent_at: Optional[datetime] = None
    in_reply_to: Optional[str] = None
    relationship_type: Optional[str] = None


class MessageIngestService:
    def __init__(
        self,
        retriever: ContextRetriever,
        job_queue: JobQueue,
        feedback: FeedbackService,
        classifier: RelationshipClassifier,
    ):
        self.retriever = retriever
        self.job_queue = job_queue
        self.feedback = feedback
        self.classifier = classifier

    def _account(self, session, user_id: int, account_id: int) -> EmailAccount:
        account = get_email_account(session, account_id, user_id)
        if not account:
            raise EntityNotFound(f"Account {account_id} nicht gefunden oder gehört anderem User")
        return account

    def receive_inbound(
        self,
        session,
        user_id: int,
        account_id: int,
        message_id: str,
        sender_address: str,
        body: str,
        subject: Optional[str] = None,
        sender_name: Optional[str] = None,
        thread_id: Optional[str] = None,
        received_at: Optional[datetime] = None,
    ) -> JobRecord:
        """Speichert die Mail (idempotent) und plant den Draft-Job ein"""
        account = self._account(session, user_id, account_id)
        if not account.is_active:
            raise EntityNotFound(f"Account {account_id} ist deaktiviert")

        message = session.query(InboundMessage).filter_by(
            email_account_id=account_id, message_id=message_id
        ).first()
        if message is None:
            message = InboundMessage(
                user_id=user_id,
                email_account_id=account_id,
                message_id=message_id,
                thread_id=thread_id,
                sender_address=sender_address,
                sender_name=sender_name,
                subject=subject,
                body=body or "",
                received_at=received_at or utcnow(),
            )
            session.add(message)
            session.commit()

            relationship = self.classifier.classify(session, user_id, sender_address, account)
            self.retriever.index_message(
                user_id,
                message_id,
                body,
                relationship_type=relationship.relationship_type,
                sender=sender_address,
                timestamp=message.received_at,
                direction=MessageDirection.INBOUND.value,
            )

        return self.job_queue.submit_email_processing(session, user_id, message_id, account_id)

    def record_sent(
        self,
        session,
        user_id: int,
        account_id: int,
        message_id: str,
        recipient_address: str,
        body: str,
        in_reply_to: Optional[str] = None,
        sent_at: Optional[datetime] = None,
    ) -> SentMessage:
        """Speichert eine gesendete Mail und verarbeitet das Sent-Event"""
        account = self._account(session, user_id, account_id)

        existing = session.query(SentMessage).filter_by(
            email_account_id=account_id, message_id=message_id
        ).first()
        if existing:
            logger.info(f"♻️ Gesendete Mail {message_id} bereits erfasst")
            return existing

        relationship = self.classifier.classify(session, user_id, recipient_address, account)
        sent = SentMessage(
            user_id=user_id,
            email_account_id=account_id,
            message_id=message_id,
            in_reply_to=in_reply_to,
            recipient_address=recipient_address,
            relationship_type=relationship.relationship_type,
            body=extract_user_text(body),
            sent_at=sent_at or utcnow(),
        )
        session.add(sent)
        session.commit()

        draft = None
        try:
            draft = self.feedback.handle_sent(session, sent)
        except ConsistencyError as e:
            logger.warning(f"⚠️ Sent-Event für {message_id} verworfen: {e}")

        if draft is None:
            # Ohne Entwurf fließt die Mail direkt in das Profil ein
            self.job_queue.enqueue_tone_profile(session, user_id, sent.relationship_type)

        self.retriever.index_message(
            user_id,
            message_id,
            sent.body,
            relationship_type=sent.relationship_type,
            sender=account.email_address,
            timestamp=sent.sent_at,
            direction=MessageDirection.SENT.value,
        )
        return sent

    def import_history(self, session, user_id: int, account_id: int,
                       messages: Iterable[HistoricalMessage]) -> Dict[str, int]:
        """Übernimmt historische gesendete Mails und plant pro Beziehungstyp einen Profil-Job

        Returns:
            Anzahl neu übernommener Mails pro Beziehungstyp
        """
        account = self._account(session, user_id, account_id)
        known = {
            row.message_id
            for row in session.query(SentMessage.message_id).filter_by(email_account_id=account_id)
        }

        imported: Dict[str, int] = {}
        new_rows: List[SentMessage] = []
        for item in messages:
            if item.message_id in known:
                continue
            known.add(item.message_id)
            relationship_type = (item.relationship_type or "").strip().lower() or self.classifier.classify(
                session, user_id, item.recipient_address, account
            ).relationship_type
            row = SentMessage(
                user_id=user_id,
                email_account_id=account_id,
                message_id=item.message_id,
                in_reply_to=item.in_reply_to,
                recipient_address=item.recipient_address,
                relationship_type=relationship_type or DEFAULT_RELATIONSHIP,
                body=extract_user_text(item.body),
                sent_at=item.sent_at or utcnow(),
            )
            session.add(row)
            new_rows.append(row)
            imported[row.relationship_type] = imported.get(row.relationship_type, 0) + 1
        session.commit()

        for row in new_rows:
            self.retriever.index_message(
                user_id,
                row.message_id,
                row.body,
                relationship_type=row.relationship_type,
                sender=account.email_address,
                timestamp=row.sent_at,
                direction=MessageDirection.SENT.value,
            )
        for relationship_type in imported:
            self.job_queue.enqueue_tone_profile(session, user_id, relationship_type)

        logger.info(f"📚 Import für User {user_id}/Account {account_id}: {imported}")
        return imported
