"""
Tone Drafter - Context Retriever
Liefert zu einer Ziel-Mail die ähnlichsten früheren Nachrichten des Users
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from tone_drafter import config
from tone_drafter.exceptions import ProviderError, RetrievalUnavailable
from tone_drafter.models import MessageDirection
from tone_drafter.vector_index import VectorIndex, VectorRecord

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 400


@dataclass(frozen=True)
class RetrievedContext:
    message_id: str
    score: float
    snippet: str


def make_snippet(text: str, length: int = SNIPPET_LENGTH) -> str:
    """Kollabiert Whitespace und kürzt auf ``length`` Zeichen"""
    collapsed = " ".join((text or "").split())
    if len(collapsed) <= length:
        return collapsed
    return collapsed[: length - 1].rstrip() + "…"


class ContextRetriever:
    """Ähnlichkeitssuche über historische Nachrichten

    Args:
        vector_index: Backend für Speicherung und Ranking
        embedder: Objekt mit ``embed(text) -> List[float]``
        default_k: Anzahl Treffer, wenn ``k`` nicht angegeben ist
    """

    def __init__(self, vector_index: VectorIndex, embedder, default_k: Optional[int] = None):
        self.vector_index = vector_index
        self.embedder = embedder
        self.default_k = default_k if default_k is not None else config.get_context_top_k()

    def _embed(self, text: str) -> List[float]:
        try:
            vector = self.embedder.embed(text)
        except ProviderError as e:
            raise RetrievalUnavailable(f"Embedding fehlgeschlagen: {e}") from e
        if not vector:
            raise RetrievalUnavailable("Embedding-Provider lieferte leeren Vektor")
        return vector

    def retrieve(
        self,
        user_id: int,
        target_message: str,
        relationship_type: Optional[str] = None,
        k: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[RetrievedContext]:
        """Top-k ähnliche Nachrichten, absteigend nach Score

        Jeder Aufruf fragt den Index neu ab.

        Raises:
            RetrievalUnavailable: Index oder Embedding-Provider nicht erreichbar
        """
        limit = self.default_k if k is None else k
        if limit <= 0 or not (target_message or "").strip():
            return []

        vector = self._embed(target_message)
        matches = self.vector_index.query(
            user_id, vector, relationship_type=relationship_type, k=limit, exclude_ids=exclude_ids
        )
        logger.debug(
            f"🔍 Retrieval user={user_id} relationship={relationship_type}: {len(matches)} Treffer"
        )
        return [
            RetrievedContext(message_id=m.message_id, score=m.score, snippet=make_snippet(m.snippet))
            for m in matches
        ]

    def index_message(
        self,
        user_id: int,
        message_id: str,
        text: str,
        relationship_type: Optional[str] = None,
        sender: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        direction: str = MessageDirection.INBOUND.value,
    ) -> bool:
        """Indexiert eine Nachricht (best effort)

        Returns:
            True wenn indexiert, False wenn Embedding oder Index nicht verfügbar
        """
        if not (text or "").strip():
            return False
        try:
            vector = self._embed(text)
            self.vector_index.upsert(
                VectorRecord(
                    user_id=user_id,
                    message_id=message_id,
                    embedding=vector,
                    relationship_type=relationship_type,
                    sender=sender,
                    snippet=make_snippet(text),
                    timestamp=timestamp,
                    direction=direction,
                )
            )
            return True
        except (RetrievalUnavailable, ValueError) as e:
            logger.warning(f"⚠️ Indexierung übersprungen (user={user_id}, message={message_id}): {e}")
            return False
