"""
Tone Drafter - Stil-Merkmale
Regelbasierte Extraktion von Formalität, Gruß-/Schlussformel und Längen-Signalen

Deutsch und Englisch werden gleichermaßen erkannt. Die Erkennung ist
lexikalisch; ein NLP-Backend kann über NameExtractor angebunden
werden, ohne die Pipeline zu ändern.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


GREETING_WORDS = (
    r"hi|hello|hey|dear|hallo|moin|servus|greetings|"
    r"liebe[rs]?|sehr\s+geehrte[rs]?|guten\s+(?:morgen|tag|abend)|"
    r"good\s+(?:morning|afternoon|evening)"
)
GREETING_LINE = re.compile(rf"^\s*(?i:{GREETING_WORDS})\b")

CLOSING_PHRASES = (
    "mit freundlichen grüßen",
    "freundliche grüße",
    "viele grüße",
    "beste grüße",
    "liebe grüße",
    "schöne grüße",
    "best regards",
    "kind regards",
    "warm regards",
    "regards",
    "sincerely",
    "yours truly",
    "all the best",
    "best wishes",
    "best",
    "cheers",
    "many thanks",
    "thanks",
    "thank you",
    "talk soon",
    "take care",
    "lg",
    "vg",
    "gruß",
)

FORMAL_GREETINGS = re.compile(r"(?i)^\s*(dear|sehr\s+geehrte[rs]?|good\s+(?:morning|afternoon|evening)|guten\s+tag)\b")
FORMAL_CLOSINGS = re.compile(r"(?i)\b(sincerely|kind regards|best regards|yours truly|mit freundlichen grüßen|freundliche grüße)\b")
TITLES = re.compile(r"\b(Mr|Mrs|Ms|Dr|Prof|Herr|Frau)\.?\s+[A-ZÄÖÜ]")
FORMAL_VOCABULARY = re.compile(
    r"(?i)\b(furthermore|therefore|moreover|kindly|regarding|pursuant|accordingly|"
    r"please find attached|at your earliest convenience|"
    r"bezüglich|hiermit|anbei|gerne|zudem|diesbezüglich)\b"
)
INFORMAL_MARKERS = re.compile(
    r"(?i)\b(hey|lol|lmao|omg|btw|fyi|haha|hehe|thx|cool|awesome|yeah|yep|nope|"
    r"gonna|wanna|gotta|dude|bro|cheers|hi)\b"
)
CONTRACTIONS = re.compile(r"(?i)\b\w+'(?:s|t|re|ve|ll|d|m)\b")
EMOJI = re.compile("[\U0001F300-\U0001FAFF☀-➿]")
WORD = re.compile(r"[\w']+", re.UNICODE)
SENTENCE_SPLIT = re.compile(r"[.!?]+(?:\s+|$)|\n{2,}")


@dataclass
class StyleFeatures:
    word_count: int
    sentence_count: int
    avg_sentence_length: float
    formality: float
    greeting: Optional[str]
    closing: Optional[str]
    uses_contractions: bool
    emoji_count: int
    exclamation_count: int

    def to_dict(self) -> Dict:
        return asdict(self)


def _lines(text: str) -> List[str]:
    return [line.strip() for line in (text or "").splitlines() if line.strip()]


def _greeting(lines: List[str]) -> Optional[str]:
    """Erste Zeile, wenn sie mit einer Grußformel beginnt (bis zum ersten Satzzeichen)"""
    if not lines or not GREETING_LINE.match(lines[0]):
        return None
    return re.split(r"[,!:;.\n]", lines[0], maxsplit=1)[0].strip() or None


def _closing(lines: List[str]) -> Optional[str]:
    """Schlussformel in den letzten drei Zeilen"""
    for line in reversed(lines[-3:]):
        normalized = line.lower().rstrip(",.! ")
        for phrase in CLOSING_PHRASES:
            if normalized == phrase or normalized.startswith(phrase + " ") or normalized.startswith(phrase + ","):
                return phrase
    return None


def _formality(text: str, lines: List[str], avg_sentence_length: float,
               contractions: int, exclamations: int) -> float:
    score = 0.5
    if lines and FORMAL_GREETINGS.match(lines[0]):
        score += 0.2
    if FORMAL_CLOSINGS.search(text):
        score += 0.2
    if TITLES.search(text):
        score += 0.15
    if FORMAL_VOCABULARY.search(text):
        score += 0.15
    informal = len(INFORMAL_MARKERS.findall(text))
    if informal:
        score -= min(0.1 * informal, 0.3)
    if exclamations > 1:
        score -= 0.1
    if contractions:
        score -= 0.1
    if avg_sentence_length > 20:
        score += 0.1
    elif 0 < avg_sentence_length < 6:
        score -= 0.1
    return round(min(max(score, 0.0), 1.0), 3)


def extract_style_features(text: str) -> StyleFeatures:
    """Extrahiert Stil-Merkmale aus einem Mail-Text"""
    text = text or ""
    lines = _lines(text)
    words = WORD.findall(text)
    sentences = [s for s in SENTENCE_SPLIT.split(text) if WORD.search(s)]
    sentence_count = max(len(sentences), 1) if words else 0
    avg_sentence_length = round(len(words) / sentence_count, 2) if sentence_count else 0.0
    contractions = len(CONTRACTIONS.findall(text))
    exclamations = text.count("!")

    return StyleFeatures(
        word_count=len(words),
        sentence_count=sentence_count,
        avg_sentence_length=avg_sentence_length,
        formality=_formality(text, lines, avg_sentence_length, contractions, exclamations),
        greeting=_greeting(lines),
        closing=_closing(lines),
        uses_contractions=contractions > 0,
        emoji_count=len(EMOJI.findall(text)),
        exclamation_count=exclamations,
    )


# =============================================================================
# Namens-Erkennung in der Grußzeile
# =============================================================================
class NameExtractor(ABC):
    """Vertrag: Name des Adressaten aus der Grußzeile"""

    @abstractmethod
    def greeting_name(self, text: str) -> Optional[str]:
        """Name in der Grußzeile oder None"""


class RegexNameExtractor(NameExtractor):
    """Grußwort + großgeschriebenes Wort (optional mit Anrede/Titel)"""

    PATTERN = re.compile(
        rf"^\s*(?i:{GREETING_WORDS})\s+"
        r"((?:(?i:mr|mrs|ms|dr|prof|herr|frau)\.?\s+)?[A-ZÄÖÜ][\w'\-]*)"
    )
    NOT_NAMES = {"all", "team", "everyone", "there", "folks", "guys", "zusammen", "alle", "leute"}

    def greeting_name(self, text: str) -> Optional[str]:
        lines = _lines(text)
        if not lines:
            return None
        match = self.PATTERN.match(lines[0])
        if not match:
            return None
        name = match.group(1).strip()
        if name.split()[-1].lower() in self.NOT_NAMES:
            return None
        return name
