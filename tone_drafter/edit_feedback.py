"""
Tone Drafter - Edit-Feedback Analyzer

``analyze(draft_text, sent_text)`` ist eine reine Funktion: sie vergleicht
den generierten Entwurf mit dem, was der User tatsächlich gesendet hat,
und liefert einen strukturierten Diff (Wort-Ergänzungen/-Löschungen,
Längen- und Formalitäts-Signale, Änderungen an Gruß und Schluss).
"""

import difflib
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from tone_drafter.style_analyzer import (
    WORD,
    NameExtractor,
    RegexNameExtractor,
    extract_style_features,
)

LENGTH_TOLERANCE = 0.05


@dataclass
class EditAnalysis:
    additions: List[str] = field(default_factory=list)
    deletions: List[str] = field(default_factory=list)
    draft_word_count: int = 0
    sent_word_count: int = 0
    length_ratio: float = 1.0
    length_delta: int = 0
    length_change: str = "unchanged"
    formality_before: float = 0.5
    formality_after: float = 0.5
    formality_shift: float = 0.0
    greeting_before: Optional[str] = None
    greeting_after: Optional[str] = None
    greeting_changed: bool = False
    greeting_name_added: Optional[str] = None
    closing_before: Optional[str] = None
    closing_after: Optional[str] = None
    closing_changed: bool = False
    similarity: float = 1.0
    unchanged: bool = True

    @property
    def length_increased(self) -> bool:
        return self.length_change == "increase"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EditAnalysis":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


def _tokens(text: str) -> List[str]:
    return [w.lower() for w in WORD.findall(text or "")]


def analyze(draft_text: str, sent_text: str,
            name_extractor: Optional[NameExtractor] = None) -> EditAnalysis:
    """Vergleicht Entwurf und gesendeten Text

    Args:
        draft_text: Vom System generierter Entwurf
        sent_text: Vom User tatsächlich gesendeter Text
        name_extractor: Erkennung des Adressaten-Namens in der Grußzeile

    Returns:
        EditAnalysis (ohne Seiteneffekte)
    """
    extractor = name_extractor or RegexNameExtractor()
    draft_tokens = _tokens(draft_text)
    sent_tokens = _tokens(sent_text)

    matcher = difflib.SequenceMatcher(a=draft_tokens, b=sent_tokens, autojunk=False)
    additions: List[str] = []
    deletions: List[str] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("replace", "delete"):
            deletions.extend(draft_tokens[i1:i2])
        if tag in ("replace", "insert"):
            additions.extend(sent_tokens[j1:j2])

    draft_count = len(draft_tokens)
    sent_count = len(sent_tokens)
    length_ratio = round(sent_count / draft_count, 3) if draft_count else float(sent_count or 1)
    if length_ratio > 1 + LENGTH_TOLERANCE:
        length_change = "increase"
    elif length_ratio < 1 - LENGTH_TOLERANCE:
        length_change = "decrease"
    else:
        length_change = "unchanged"

    before = extract_style_features(draft_text)
    after = extract_style_features(sent_text)

    name_before = extractor.greeting_name(draft_text)
    name_after = extractor.greeting_name(sent_text)
    name_added = name_after if name_after and not name_before else None

    return EditAnalysis(
        additions=additions,
        deletions=deletions,
        draft_word_count=draft_count,
        sent_word_count=sent_count,
        length_ratio=length_ratio,
        length_delta=sent_count - draft_count,
        length_change=length_change,
        formality_before=before.formality,
        formality_after=after.formality,
        formality_shift=round(after.formality - before.formality, 3),
        greeting_before=before.greeting,
        greeting_after=after.greeting,
        greeting_changed=(before.greeting or "").lower() != (after.greeting or "").lower(),
        greeting_name_added=name_added,
        closing_before=before.closing,
        closing_after=after.closing,
        closing_changed=before.closing != after.closing,
        similarity=round(matcher.ratio(), 3),
        unchanged=draft_tokens == sent_tokens,
    )
