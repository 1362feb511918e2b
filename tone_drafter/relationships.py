"""
Tone Drafter - Beziehungstyp des Absenders

Externe Fähigkeit mit festem Vertrag: classify() liefert Typ, Konfidenz
und Methode. Die Standard-Implementierung nutzt explizite Zuordnungen
des Users und fällt sonst auf eine Domain-Heuristik zurück.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from tone_drafter.models import DEFAULT_RELATIONSHIP, ContactRelationship, EmailAccount

logger = logging.getLogger(__name__)

COLLEAGUE = "colleague"

# Freemail-Domains sagen nichts über eine gemeinsame Organisation aus
PUBLIC_MAIL_DOMAINS = {
    "gmail.com", "googlemail.com", "outlook.com", "hotmail.com", "live.com",
    "yahoo.com", "icloud.com", "me.com", "gmx.de", "gmx.net", "web.de",
    "t-online.de", "posteo.de", "proton.me", "protonmail.com", "bluewin.ch",
}


@dataclass(frozen=True)
class RelationshipResult:
    relationship_type: str
    confidence: float
    method: str


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


def address_domain(address: str) -> str:
    normalized = normalize_address(address)
    return normalized.rsplit("@", 1)[-1] if "@" in normalized else ""


class RelationshipClassifier(ABC):
    @abstractmethod
    def classify(self, session, user_id: int, sender_address: str,
                 account: Optional[EmailAccount] = None) -> RelationshipResult:
        """Beziehungstyp des Absenders aus Sicht des Users"""


class ContactRelationshipClassifier(RelationshipClassifier):
    """contact_relationships -> gleiche Firmen-Domain -> external"""

    def classify(self, session, user_id: int, sender_address: str,
                 account: Optional[EmailAccount] = None) -> RelationshipResult:
        address = normalize_address(sender_address)
        try:
            entry = session.query(ContactRelationship).filter_by(
                user_id=user_id, contact_address=address
            ).first()
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"⚠️ Beziehungs-Lookup fehlgeschlagen (user={user_id}): {e}")
            return RelationshipResult(DEFAULT_RELATIONSHIP, 0.0, "fallback")

        if entry:
            return RelationshipResult(entry.relationship_type, 1.0, "contact")

        sender_domain = address_domain(address)
        if (
            account is not None
            and sender_domain
            and sender_domain == account.domain
            and sender_domain not in PUBLIC_MAIL_DOMAINS
        ):
            return RelationshipResult(COLLEAGUE, 0.6, "domain")

        return RelationshipResult(DEFAULT_RELATIONSHIP, 0.3, "default")


def assign_relationship(session, user_id: int, contact_address: str,
                        relationship_type: str) -> ContactRelationship:
    """Legt die Zuordnung an oder überschreibt sie"""
    address = normalize_address(contact_address)
    entry = session.query(ContactRelationship).filter_by(
        user_id=user_id, contact_address=address
    ).first()
    if entry is None:
        entry = ContactRelationship(user_id=user_id, contact_address=address)
        session.add(entry)
    entry.relationship_type = relationship_type.strip().lower()
    session.commit()
    return entry
