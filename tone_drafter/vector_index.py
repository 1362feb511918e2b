"""
Tone Drafter - Vector Index
Embeddings als float32-Bytes in der relationalen DB, Ranking per Cosine Similarity (numpy)

Die Collection hat eine feste Dimension pro Deployment; Vektoren anderer
Dimension werden beim Schreiben abgelehnt und beim Lesen übersprungen.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from tone_drafter import config
from tone_drafter.exceptions import RetrievalUnavailable
from tone_drafter.models import MessageDirection, MessageVector

logger = logging.getLogger(__name__)


@dataclass
class VectorRecord:
    user_id: int
    message_id: str
    embedding: Sequence[float]
    relationship_type: Optional[str] = None
    sender: Optional[str] = None
    snippet: str = ""
    timestamp: Optional[datetime] = None
    direction: str = MessageDirection.INBOUND.value


@dataclass(frozen=True)
class VectorMatch:
    message_id: str
    score: float
    snippet: str
    relationship_type: Optional[str] = None
    sender: Optional[str] = None


def to_vector(values: Sequence[float]) -> np.ndarray:
    """float32-Vektor, auf Länge 1 normalisiert"""
    vector = np.asarray(values, dtype=np.float32)
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    return vector.astype(np.float32)


def embedding_to_vector(embedding_bytes: bytes) -> Optional[np.ndarray]:
    """Konvertiert gespeicherte Bytes zurück zu numpy array"""
    if not embedding_bytes:
        return None
    return np.frombuffer(embedding_bytes, dtype=np.float32)


class VectorIndex(ABC):
    """Vertrag des Vector-Index: filtern, dann nach Cosine ranken"""

    @abstractmethod
    def upsert(self, record: VectorRecord) -> None:
        """Legt den Vektor an oder ersetzt ihn (Key: user + message_id)"""

    @abstractmethod
    def query(
        self,
        user_id: int,
        vector: Sequence[float],
        relationship_type: Optional[str] = None,
        k: int = 5,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[VectorMatch]:
        """Top-k Treffer, absteigend nach Score

        Raises:
            RetrievalUnavailable: Index nicht erreichbar
        """

    @abstractmethod
    def delete(self, user_id: int, message_id: str) -> bool:
        """Entfernt einen Vektor; False wenn er nicht existierte"""


class SqlVectorIndex(VectorIndex):
    """Vector-Collection in der Tabelle message_vectors

    Nutzt eine eigene Session-Factory, damit der Index unabhängig vom
    Pool der Pipeline dimensioniert werden kann.
    """

    def __init__(self, session_factory, dimension: Optional[int] = None):
        self.session_factory = session_factory
        self.dimension = dimension or config.get_embedding_dim()

    def upsert(self, record: VectorRecord) -> None:
        vector = to_vector(record.embedding)
        if vector.shape[0] != self.dimension:
            raise ValueError(
                f"Dimension mismatch: {vector.shape[0]} != {self.dimension} "
                f"(message={record.message_id})"
            )

        try:
            with self.session_factory() as db:
                row = db.query(MessageVector).filter_by(
                    user_id=record.user_id, message_id=record.message_id
                ).first()
                if row is None:
                    row = MessageVector(user_id=record.user_id, message_id=record.message_id)
                    db.add(row)
                row.embedding = vector.tobytes()
                row.dimension = int(vector.shape[0])
                row.relationship_type = record.relationship_type
                row.sender = record.sender
                row.snippet = record.snippet
                row.direction = record.direction
                row.message_timestamp = record.timestamp
                db.commit()
        except SQLAlchemyError as e:
            raise RetrievalUnavailable(f"Vector-Index nicht beschreibbar: {e}") from e

    def query(
        self,
        user_id: int,
        vector: Sequence[float],
        relationship_type: Optional[str] = None,
        k: int = 5,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[VectorMatch]:
        if k <= 0:
            return []

        query_vector = to_vector(vector)
        if query_vector.shape[0] != self.dimension:
            logger.error(
                f"❌ Dimension mismatch: query={query_vector.shape[0]}, index={self.dimension}. "
                f"Ähnlichkeitssuche zwischen unterschiedlichen Embedding-Modellen nicht möglich!"
            )
            return []

        excluded = set(exclude_ids or ())
        try:
            with self.session_factory() as db:
                q = db.query(
                    MessageVector.message_id,
                    MessageVector.embedding,
                    MessageVector.dimension,
                    MessageVector.snippet,
                    MessageVector.relationship_type,
                    MessageVector.sender,
                ).filter(MessageVector.user_id == user_id)
                if relationship_type:
                    q = q.filter(MessageVector.relationship_type == relationship_type)
                rows = q.all()
        except SQLAlchemyError as e:
            raise RetrievalUnavailable(f"Vector-Index nicht erreichbar: {e}") from e

        candidates = [
            row for row in rows
            if row.message_id not in excluded and row.dimension == self.dimension
        ]
        if not candidates:
            return []

        # Gespeicherte Vektoren sind normalisiert, Dot-Product = Cosine
        matrix = np.vstack([embedding_to_vector(row.embedding) for row in candidates])
        scores = matrix @ query_vector
        order = np.argsort(-scores, kind="stable")[:k]

        return [
            VectorMatch(
                message_id=candidates[i].message_id,
                score=round(float(scores[i]), 4),
                snippet=candidates[i].snippet or "",
                relationship_type=candidates[i].relationship_type,
                sender=candidates[i].sender,
            )
            for i in order
        ]

    def delete(self, user_id: int, message_id: str) -> bool:
        try:
            with self.session_factory() as db:
                deleted = db.query(MessageVector).filter_by(
                    user_id=user_id, message_id=message_id
                ).delete()
                db.commit()
                return deleted > 0
        except SQLAlchemyError as e:
            raise RetrievalUnavailable(f"Vector-Index nicht erreichbar: {e}") from e
