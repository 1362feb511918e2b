# tone_drafter/services/feedback_service.py
"""
Sent-Event-Verarbeitung: Entwurf vs. gesendeter Text

Die DraftTracking-Zeile wird genau einmal aktualisiert (guarded UPDATE
auf ``sent_at IS NULL``); danach wird ein Tone-Profile-Job eingeplant,
damit die Analyse ins Profil zurückfließt.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update

from tone_drafter.edit_feedback import EditAnalysis, analyze
from tone_drafter.exceptions import ConsistencyError
from tone_drafter.job_queue import JobQueue
from tone_drafter.models import DraftTracking, SentMessage, utcnow
from tone_drafter.style_analyzer import NameExtractor

logger = logging.getLogger(__name__)


class FeedbackService:
    def __init__(self, job_queue: JobQueue, name_extractor: Optional[NameExtractor] = None):
        self.job_queue = job_queue
        self.name_extractor = name_extractor

    def find_draft(self, session, user_id: int, account_id: int,
                   original_message_id: Optional[str]) -> Optional[DraftTracking]:
        if not original_message_id:
            return None
        return session.query(DraftTracking).filter_by(
            user_id=user_id,
            email_account_id=account_id,
            original_message_id=original_message_id,
        ).first()

    def record_user_send(self, session, draft: DraftTracking, sent_text: str,
                         sent_at: Optional[datetime] = None) -> EditAnalysis:
        """Schreibt gesendeten Text + Analyse genau einmal

        Raises:
            ConsistencyError: Entwurf ist bereits als gesendet markiert
        """
        analysis = analyze(draft.generated_content, sent_text, self.name_extractor)
        result = session.execute(
            update(DraftTracking)
            .where(DraftTracking.id == draft.id, DraftTracking.sent_at.is_(None))
            .values(
                user_sent_content=sent_text,
                edit_analysis=analysis.to_dict(),
                sent_at=sent_at or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            logger.warning(f"⚠️ Draft {draft.id} ist bereits als gesendet markiert, Update abgelehnt")
            raise ConsistencyError(f"DraftTracking {draft.id} wurde bereits gesendet")
        return analysis

    def handle_sent(self, session, sent: SentMessage) -> Optional[DraftTracking]:
        """Verknüpft eine gesendete Mail mit ihrem Entwurf

        Returns:
            Die aktualisierte DraftTracking-Zeile oder None, wenn der User
            ohne Entwurf geschrieben hat (kein Fehler)
        """
        draft = self.find_draft(session, sent.user_id, sent.email_account_id, sent.in_reply_to)
        if draft is None:
            logger.debug(f"Kein Draft zu {sent.in_reply_to} (message={sent.message_id}), keine Analyse")
            return None

        analysis = self.record_user_send(session, draft, sent.body, sent.sent_at)
        sent.draft_tracking_id = draft.id
        sent.relationship_type = draft.relationship_type
        session.commit()
        session.refresh(draft)

        logger.info(
            f"✏️ Draft {draft.id} gesendet: Länge x{analysis.length_ratio}, "
            f"Formalität {analysis.formality_shift:+.2f}, Ähnlichkeit {analysis.similarity}"
        )
        self.job_queue.enqueue_tone_profile(session, sent.user_id, draft.relationship_type)
        return draft
