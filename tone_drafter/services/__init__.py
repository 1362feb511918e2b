# tone_drafter/services/__init__.py
"""Business-Logic Services.

Services sind unabhängig von Celery und werden von den Tasks
(tone_drafter.tasks) sowie vom Mail-Transport-Layer aufgerufen.
"""

from .account_service import AccountService
from .feedback_service import FeedbackService
from .message_ingest import HistoricalMessage, MessageIngestService
from .provider_service import ProviderService

__all__ = [
    "AccountService",
    "FeedbackService",
    "HistoricalMessage",
    "MessageIngestService",
    "ProviderService",
]
