# tone_drafter/helpers/locks.py
"""Mutex-Provider für Read-Modify-Write pro (User, Beziehungstyp).

RedisLockProvider serialisiert über Prozessgrenzen hinweg (mehrere Worker),
LocalLockProvider nur innerhalb eines Prozesses (Tests, Single-Worker).
Zusätzlich sperrt der ToneProfileStore die Profil-Zeile per SELECT FOR UPDATE.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis
from redis.exceptions import LockError, RedisError
from redis.lock import Lock as RedisLock

from tone_drafter import config
from tone_drafter.exceptions import LockUnavailable

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 120           # Lock verfällt spätestens nach 2 Minuten
LOCK_BLOCKING_TIMEOUT = 30   # so lange wartet ein zweiter Worker


def tone_profile_lock_name(user_id: int, relationship_type: str) -> str:
    return f"tone_drafter:tone_profile:{user_id}:{relationship_type}"


class LockProvider(ABC):
    @abstractmethod
    def hold(self, name: str):
        """Context-Manager, der den Lock ``name`` für die Dauer des Blocks hält"""


class LocalLockProvider(LockProvider):
    """threading.Lock pro Name"""

    def __init__(self, blocking_timeout: float = LOCK_BLOCKING_TIMEOUT):
        self.blocking_timeout = blocking_timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._lock_for(name)
        if not lock.acquire(timeout=self.blocking_timeout):
            raise LockUnavailable(f"Lock {name} nach {self.blocking_timeout}s nicht verfügbar")
        try:
            yield
        finally:
            lock.release()


class RedisLockProvider(LockProvider):
    """Verteilter Lock über redis.lock.Lock"""

    def __init__(
        self,
        client: Optional["redis.Redis"] = None,
        url: Optional[str] = None,
        timeout: int = LOCK_TIMEOUT,
        blocking_timeout: float = LOCK_BLOCKING_TIMEOUT,
    ):
        self.client = client or redis.Redis.from_url(url or config.get_lock_url())
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = RedisLock(
            self.client,
            name,
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        try:
            acquired = lock.acquire(blocking=True)
        except RedisError as e:
            raise LockUnavailable(f"Redis nicht erreichbar für Lock {name}: {e}") from e
        if not acquired:
            logger.info(f"🔒 Lock {name} bereits gehalten, Job wird später wiederholt")
            raise LockUnavailable(f"Lock {name} nach {self.blocking_timeout}s nicht verfügbar")

        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as e:
                # Lock ist abgelaufen und evtl. schon von einem anderen Worker übernommen
                logger.warning(f"Redis Lock Release fehlgeschlagen ({name}): {e}")
