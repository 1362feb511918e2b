# tone_drafter/helpers/__init__.py
"""Shared helper modules for workers and services."""

from .database import (
    get_db_session,
    get_session_factory,
    get_email_account,
    get_inbound_message,
)
from .locks import LockProvider, LocalLockProvider, RedisLockProvider, tone_profile_lock_name

__all__ = [
    # Database helpers
    "get_db_session",
    "get_session_factory",
    "get_email_account",
    "get_inbound_message",
    # Lock helpers
    "LockProvider",
    "LocalLockProvider",
    "RedisLockProvider",
    "tone_profile_lock_name",
]
