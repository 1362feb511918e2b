"""
Tone Drafter - Reply-Extraktion

Gesendete Mails kommen roh vom Transport-Layer und enthalten meist das
zitierte Original ("On ... wrote:" gefolgt von "> ..."). Für Stil-Analyse
und Edit-Diff zählt nur der Text, den der User selbst geschrieben hat.
Signaturen bleiben erhalten, sie gehören zum Schreibstil.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from email_reply_parser import EmailReplyParser

logger = logging.getLogger(__name__)

# Zitat-Einleitungen, die der Parser nicht erkennt (deutsche Clients, Outlook)
QUOTE_START = re.compile(
    r"^[ \t]*(?:"
    r"-{2,}[ \t]*(?:Original Message|Ursprüngliche Nachricht|Originalnachricht)[ \t]*-{2,}"
    r"|Am[ \t].+[ \t]schrieb[ \t].*:"
    r")[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)


@dataclass(frozen=True)
class ExtractedReply:
    text: str
    has_quoted_content: bool


def _written_by_user(fragment) -> bool:
    if fragment.quoted or fragment.headers:
        return False
    return not fragment.hidden or fragment.signature


def extract_reply(body: Optional[str]) -> ExtractedReply:
    """Trennt den eigenen Text vom zitierten Verlauf

    Args:
        body: Roher Mail-Body (Plaintext)

    Returns:
        ExtractedReply mit dem eigenen Text und ob Zitate entfernt wurden
    """
    if not body or not body.strip():
        return ExtractedReply("", False)

    text = body.replace("\r\n", "\n")
    cut = QUOTE_START.search(text)
    if cut:
        text = text[:cut.start()]

    fragments = EmailReplyParser.read(text).fragments
    kept = [fragment.content for fragment in fragments if _written_by_user(fragment)]
    has_quoted = cut is not None or any(f.quoted or f.headers for f in fragments)

    extracted = "\n\n".join(part for part in kept if part).strip()
    if has_quoted:
        logger.debug(f"✂️ Zitat entfernt: {len(body)} -> {len(extracted)} Zeichen")
    return ExtractedReply(extracted, has_quoted)


def extract_user_text(body: Optional[str]) -> str:
    return extract_reply(body).text
