"""
Keyed mutual exclusion for phase tasks.

A key such as ``finalize_order-order-42`` may be held by one worker at a
time. Holders that die without releasing lose the key once its TTL runs out,
which lets a later redelivery make progress.
"""
import os
import threading
import time
import uuid
from typing import Callable, Protocol

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from .models import TaskLease

logger = structlog.get_logger(__name__)

# Default time a key stays held if its holder never releases it.
DEFAULT_TTL_SECONDS = 300


class KeyedLock(Protocol):
    def acquire(self, key: str, ttl: float = DEFAULT_TTL_SECONDS) -> str | None: ...

    def release(self, key: str, token: str) -> None: ...


def new_token() -> str:
    return uuid.uuid4().hex


class InMemoryKeyedLock:
    """
    Keyed lock for a single-process deployment.

    ``acquire`` returns a token for that acquisition (None when the key is
    taken); ``release`` only frees the key for the token that holds it, so a
    holder that outlived its TTL cannot free its successor's key.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._guard = threading.Lock()
        self._holders: dict[str, tuple[float, str]] = {}

    def acquire(self, key: str, ttl: float = DEFAULT_TTL_SECONDS) -> str | None:
        now = self._clock()
        with self._guard:
            holder = self._holders.get(key)
            if holder is not None and holder[0] > now:
                return None
            if holder is not None:
                logger.warning("lock_expired_taken_over", key=key)
            token = new_token()
            self._holders[key] = (now + ttl, token)
            return token

    def release(self, key: str, token: str) -> None:
        with self._guard:
            holder = self._holders.get(key)
            if holder is not None and holder[1] == token:
                del self._holders[key]

    def held(self, key: str) -> bool:
        with self._guard:
            holder = self._holders.get(key)
            return holder is not None and holder[0] > self._clock()


class DatabaseKeyedLock:
    """
    Keyed lease stored in the ``task_leases`` table, shared by every worker
    process pointed at the same database.
    """

    def __init__(self, session_factory, owner: str | None = None, clock: Callable[[], float] = time.time):
        self.session_factory = session_factory
        self.owner = owner or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._clock = clock

    def acquire(self, key: str, ttl: float = DEFAULT_TTL_SECONDS) -> str | None:
        now = self._clock()
        token = new_token()
        db = self.session_factory()
        try:
            lease = db.execute(select(TaskLease).where(TaskLease.key == key).with_for_update()).scalars().first()
            if lease is not None:
                if lease.expires_at > now:
                    db.rollback()
                    return None
                logger.warning("lease_expired_taken_over", key=key, previous_owner=lease.owner)
                lease.owner = self.owner
                lease.token = token
                lease.expires_at = now + ttl
            else:
                db.add(TaskLease(key=key, owner=self.owner, token=token, expires_at=now + ttl))
            db.commit()
            return token
        except IntegrityError:
            # Another worker inserted the same key first.
            db.rollback()
            return None
        finally:
            db.close()

    def release(self, key: str, token: str) -> None:
        db = self.session_factory()
        try:
            db.execute(delete(TaskLease).where(TaskLease.key == key, TaskLease.token == token))
            db.commit()
        finally:
            db.close()
