"""
Tone Drafter - Tone Profile Store

Ein Profil pro (User, Beziehungstyp). ``merge`` ist der einzige
Schreibpfad: Read-Modify-Write unter einem Mutex pro Key, gewichteter
laufender Mittelwert für numerische Merkmale, Summen für Phrasen-Zähler.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.exc import IntegrityError

from tone_drafter import config
from tone_drafter.edit_feedback import EditAnalysis
from tone_drafter.helpers.locks import LockProvider, tone_profile_lock_name
from tone_drafter.models import DraftTracking, SentMessage, ToneProfile, utcnow
from tone_drafter.style_analyzer import (
    NameExtractor,
    RegexNameExtractor,
    StyleFeatures,
    extract_style_features,
)

logger = logging.getLogger(__name__)

NUMERIC_FIELDS = (
    "formality",
    "avg_word_count",
    "avg_sentence_length",
    "contraction_rate",
    "emoji_rate",
    "exclamation_rate",
)
PHRASE_FIELDS = ("greetings", "closings")
EDIT_NUMERIC_FIELDS = ("avg_length_ratio", "avg_formality_shift", "greeting_name_added_rate")
MAX_PHRASES = 20


def empty_profile_data() -> Dict[str, Any]:
    return {
        "formality": 0.5,
        "avg_word_count": 0.0,
        "avg_sentence_length": 0.0,
        "contraction_rate": 0.0,
        "emoji_rate": 0.0,
        "exclamation_rate": 0.0,
        "greetings": {},
        "closings": {},
        "edit_feedback": {
            "drafts_reviewed": 0,
            "avg_length_ratio": 1.0,
            "avg_formality_shift": 0.0,
            "greeting_name_added_rate": 0.0,
        },
    }


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _greeting_key(greeting: Optional[str], name: Optional[str]) -> Optional[str]:
    """'Hi Sam' -> 'hi {name}'"""
    if not greeting:
        return None
    key = greeting.lower()
    if name and name.lower() in key:
        key = key.replace(name.lower(), "{name}")
    return " ".join(key.split())


@dataclass
class StyleObservations:
    """Ein Batch aus einem Analyse-Lauf

    ``features`` zählen als analysierte Mails (emails_analyzed),
    ``edit_analyses`` als geprüfte Entwürfe (edit_feedback.drafts_reviewed).
    """

    features: List[StyleFeatures] = field(default_factory=list)
    greeting_keys: List[Optional[str]] = field(default_factory=list)
    edit_analyses: List[EditAnalysis] = field(default_factory=list)

    @classmethod
    def from_texts(cls, texts: List[str], name_extractor: Optional[NameExtractor] = None,
                   edit_analyses: Optional[List[EditAnalysis]] = None) -> "StyleObservations":
        extractor = name_extractor or RegexNameExtractor()
        observations = cls(edit_analyses=list(edit_analyses or []))
        for text in texts:
            features = extract_style_features(text)
            observations.features.append(features)
            observations.greeting_keys.append(_greeting_key(features.greeting, extractor.greeting_name(text)))
        return observations

    @property
    def count(self) -> int:
        return len(self.features)

    @property
    def is_empty(self) -> bool:
        return not self.features and not self.edit_analyses

    def to_profile_data(self) -> Dict[str, Any]:
        """Batch-Mittelwerte im Format des Profil-Blobs"""
        data = empty_profile_data()
        if self.features:
            data["formality"] = _mean([f.formality for f in self.features])
            data["avg_word_count"] = _mean([f.word_count for f in self.features])
            data["avg_sentence_length"] = _mean([f.avg_sentence_length for f in self.features])
            data["contraction_rate"] = _mean([1.0 if f.uses_contractions else 0.0 for f in self.features])
            data["emoji_rate"] = _mean([1.0 if f.emoji_count else 0.0 for f in self.features])
            data["exclamation_rate"] = _mean([1.0 if f.exclamation_count else 0.0 for f in self.features])

        keys = self.greeting_keys or [f.greeting.lower() if f.greeting else None for f in self.features]
        for key in keys:
            if key:
                data["greetings"][key] = data["greetings"].get(key, 0) + 1
        for f in self.features:
            if f.closing:
                data["closings"][f.closing] = data["closings"].get(f.closing, 0) + 1

        if self.edit_analyses:
            data["edit_feedback"] = {
                "drafts_reviewed": len(self.edit_analyses),
                "avg_length_ratio": _mean([a.length_ratio for a in self.edit_analyses]),
                "avg_formality_shift": _mean([a.formality_shift for a in self.edit_analyses]),
                "greeting_name_added_rate": _mean(
                    [1.0 if a.greeting_name_added else 0.0 for a in self.edit_analyses]
                ),
            }
        return data


def _blend(old: float, old_weight: int, new: float, new_weight: int) -> float:
    total = old_weight + new_weight
    if total <= 0:
        return new
    return round((old * old_weight + new * new_weight) / total, 4)


def _merge_phrases(old: Dict[str, int], new: Dict[str, int]) -> Dict[str, int]:
    merged = dict(old or {})
    for phrase, count in (new or {}).items():
        merged[phrase] = merged.get(phrase, 0) + int(count)
    top = sorted(merged.items(), key=lambda item: (-item[1], item[0]))[:MAX_PHRASES]
    return dict(top)


def blend_profile_data(current: Dict[str, Any], current_count: int,
                       batch: Dict[str, Any], batch_count: int) -> Dict[str, Any]:
    """Gewichteter laufender Mittelwert: (x_old*n_old + x_batch*n_batch) / (n_old + n_batch)"""
    base = empty_profile_data()
    base.update(current or {})
    result = dict(base)

    if batch_count > 0:
        for name in NUMERIC_FIELDS:
            result[name] = _blend(float(base[name]), current_count, float(batch[name]), batch_count)
    for name in PHRASE_FIELDS:
        result[name] = _merge_phrases(base.get(name, {}), batch.get(name, {}))

    old_feedback = dict(empty_profile_data()["edit_feedback"], **(base.get("edit_feedback") or {}))
    new_feedback = batch.get("edit_feedback") or {}
    reviewed_old = int(old_feedback.get("drafts_reviewed", 0))
    reviewed_new = int(new_feedback.get("drafts_reviewed", 0))
    feedback = dict(old_feedback)
    if reviewed_new > 0:
        for name in EDIT_NUMERIC_FIELDS:
            feedback[name] = _blend(float(old_feedback[name]), reviewed_old, float(new_feedback[name]), reviewed_new)
        feedback["drafts_reviewed"] = reviewed_old + reviewed_new
    result["edit_feedback"] = feedback
    return result


@dataclass
class ProfileSnapshot:
    """Profil oder leeres Profil (emails_analyzed == 0, Default-Blob)"""

    user_id: int
    relationship_type: str
    data: Dict[str, Any]
    emails_analyzed: int = 0
    last_updated: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.emails_analyzed == 0

    @classmethod
    def empty(cls, user_id: int, relationship_type: str) -> "ProfileSnapshot":
        return cls(user_id=user_id, relationship_type=relationship_type, data=empty_profile_data())

    @classmethod
    def from_row(cls, row: ToneProfile) -> "ProfileSnapshot":
        data = empty_profile_data()
        data.update(row.profile_data or {})
        return cls(
            user_id=row.user_id,
            relationship_type=row.relationship_type,
            data=data,
            emails_analyzed=row.emails_analyzed or 0,
            last_updated=row.last_updated,
        )

    def top_phrase(self, name: str) -> Optional[str]:
        phrases = self.data.get(name) or {}
        if not phrases:
            return None
        return sorted(phrases.items(), key=lambda item: (-item[1], item[0]))[0][0]

    def signals(self) -> Dict[str, Any]:
        """Kompakte Stil-Signale, die im DraftTracking-Kontext landen"""
        return {
            "emails_analyzed": self.emails_analyzed,
            "formality": round(float(self.data.get("formality", 0.5)), 3),
            "avg_word_count": round(float(self.data.get("avg_word_count", 0.0)), 1),
            "top_greeting": self.top_phrase("greetings"),
            "top_closing": self.top_phrase("closings"),
            "drafts_reviewed": (self.data.get("edit_feedback") or {}).get("drafts_reviewed", 0),
        }


class ToneProfileStore:
    """Lesen und Mergen von Tone-Profilen"""

    def __init__(self, lock_provider: LockProvider):
        self.lock_provider = lock_provider

    def get(self, session, user_id: int, relationship_type: str) -> ProfileSnapshot:
        row = session.query(ToneProfile).filter_by(
            user_id=user_id, relationship_type=relationship_type
        ).first()
        if row is None:
            return ProfileSnapshot.empty(user_id, relationship_type)
        return ProfileSnapshot.from_row(row)

    @contextmanager
    def lock(self, user_id: int, relationship_type: str) -> Iterator[None]:
        with self.lock_provider.hold(tone_profile_lock_name(user_id, relationship_type)):
            yield

    def merge(self, session, user_id: int, relationship_type: str,
              observations: StyleObservations) -> ProfileSnapshot:
        """Mergt einen Batch in das Profil (serialisiert pro Key)"""
        with self.lock(user_id, relationship_type):
            return self.merge_locked(session, user_id, relationship_type, observations)

    def merge_locked(self, session, user_id: int, relationship_type: str,
                     observations: StyleObservations) -> ProfileSnapshot:
        """Wie merge(), der Aufrufer hält den Lock bereits

        Committet die Session; bereits in der Session vorgemerkte Änderungen
        (z.B. analyzed_at der verarbeiteten Mails) landen in derselben Transaktion.
        """
        if observations.is_empty:
            session.commit()
            return self.get(session, user_id, relationship_type)

        batch = observations.to_profile_data()
        row = (
            session.query(ToneProfile)
            .filter_by(user_id=user_id, relationship_type=relationship_type)
            .with_for_update()
            .first()
        )
        if row is None:
            row = ToneProfile(
                user_id=user_id,
                relationship_type=relationship_type,
                profile_data=empty_profile_data(),
                emails_analyzed=0,
            )
            session.add(row)

        current_count = row.emails_analyzed or 0
        row.profile_data = blend_profile_data(row.profile_data, current_count, batch, observations.count)
        row.emails_analyzed = current_count + observations.count
        row.last_updated = utcnow()
        try:
            session.commit()
        except IntegrityError:
            # Paralleler Insert derselben Zeile ohne gemeinsamen Lock; der Job wird wiederholt
            session.rollback()
            logger.warning(f"⚠️ Profil {user_id}/{relationship_type} parallel angelegt, Merge verworfen")
            raise

        logger.info(
            f"✅ Tone-Profil {user_id}/{relationship_type}: +{observations.count} Mails "
            f"(gesamt {row.emails_analyzed}), +{len(observations.edit_analyses)} Entwürfe"
        )
        return ProfileSnapshot.from_row(row)


class ToneProfileBuilder:
    """Batch-Analyse gesendeter Mails für einen Tone-Profile-Job

    Liest unter dem Profil-Lock das Fenster noch nicht analysierter
    SentMessages, mergt sie und setzt analyzed_at in derselben Transaktion.
    """

    def __init__(self, store: ToneProfileStore, name_extractor: Optional[NameExtractor] = None,
                 window: Optional[int] = None):
        self.store = store
        self.name_extractor = name_extractor or RegexNameExtractor()
        self.window = window or config.get_tone_profile_window()

    def build(self, session, user_id: int, relationship_type: str) -> Dict[str, Any]:
        with self.store.lock(user_id, relationship_type):
            pending = (
                session.query(SentMessage)
                .filter(
                    SentMessage.user_id == user_id,
                    SentMessage.relationship_type == relationship_type,
                    SentMessage.analyzed_at.is_(None),
                )
                .order_by(SentMessage.sent_at.asc(), SentMessage.id.asc())
                .limit(self.window)
                .all()
            )
            if not pending:
                snapshot = self.store.get(session, user_id, relationship_type)
                logger.info(f"ℹ️ Keine neuen gesendeten Mails für {user_id}/{relationship_type}")
                return {"analyzed": 0, "drafts_reviewed": 0, "emails_analyzed": snapshot.emails_analyzed}

            draft_ids = [m.draft_tracking_id for m in pending if m.draft_tracking_id]
            edit_analyses = []
            if draft_ids:
                drafts = session.query(DraftTracking).filter(DraftTracking.id.in_(draft_ids)).all()
                edit_analyses = [EditAnalysis.from_dict(d.edit_analysis) for d in drafts if d.edit_analysis]

            observations = StyleObservations.from_texts(
                [m.body for m in pending], self.name_extractor, edit_analyses
            )
            now = utcnow()
            for message in pending:
                message.analyzed_at = now

            snapshot = self.store.merge_locked(session, user_id, relationship_type, observations)

        return {
            "analyzed": observations.count,
            "drafts_reviewed": len(edit_analyses),
            "emails_analyzed": snapshot.emails_analyzed,
        }
