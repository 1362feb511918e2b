"""
Tone Drafter - Fehler-Taxonomie

Alle fachlichen Fehler der Pipeline leiten von DraftPipelineError ab.
Der JobRunner entscheidet anhand des Typs (und bei ProviderError anhand
von ``kind``), ob ein Job erneut eingeplant oder endgültig abgebrochen wird.
"""

from enum import Enum
from typing import Optional


class DraftPipelineError(Exception):
    """Basisklasse für alle Fehler der Draft-Pipeline"""


class DecryptionError(DraftPipelineError):
    """Blob nicht entschlüsselbar: falscher/fehlender Master-Key, Tag ungültig oder Format korrupt"""


class RetrievalUnavailable(DraftPipelineError):
    """Vector-Index nicht erreichbar oder Embedding fehlgeschlagen"""


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"


RETRYABLE_PROVIDER_ERRORS = frozenset(
    {ProviderErrorKind.RATE_LIMITED, ProviderErrorKind.TIMEOUT}
)


class ProviderError(DraftPipelineError):
    """Fehler eines LLM-Providers, einheitlich über alle Adapter

    ``rate_limited`` und ``timeout`` sind retrybar, ``auth_failed`` und
    ``malformed_response`` brauchen einen Eingriff von User oder Operator.
    """

    def __init__(
        self,
        kind,
        message: str = "",
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.kind = ProviderErrorKind(kind)
        self.provider = provider
        self.status_code = status_code
        prefix = f"[{provider}] " if provider else ""
        super().__init__(f"{prefix}{self.kind.value}: {message}" if message else f"{prefix}{self.kind.value}")

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_PROVIDER_ERRORS


class DuplicateJobError(DraftPipelineError):
    """Idempotency-Key bereits vergeben, wird vom Aufrufer als Erfolg gewertet"""

    def __init__(self, queue: str, idempotency_key: str, existing_job_id: Optional[int] = None):
        self.queue = queue
        self.idempotency_key = idempotency_key
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Job für '{idempotency_key}' existiert bereits in Queue '{queue}'"
            + (f" (job={existing_job_id})" if existing_job_id else "")
        )


class ConsistencyError(DraftPipelineError):
    """Schreibzugriff verletzt eine Zustandsregel (z.B. Draft bereits als gesendet markiert)"""


class EntityNotFound(DraftPipelineError):
    """Referenzierte Zeile existiert nicht oder gehört einem anderen User"""


class ConfigurationError(DraftPipelineError):
    """Fehlende Konfiguration, z.B. kein aktiver LLM-Provider für den User"""


class LockUnavailable(DraftPipelineError):
    """Mutex für (User, Beziehungstyp) konnte nicht rechtzeitig erworben werden"""


class StaleJobError(DraftPipelineError):
    """Job hing länger als erlaubt in ``active`` (Worker beendet, OOM, Time-Limit)"""
