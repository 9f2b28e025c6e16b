# backend/pawbook/services/resource_locks.py
"""
Locks that serialize booking commits per constraining resource.

Key format: {kind}:{resource_id}:{date}
  kind = field | staff

Three layers, all taken in sorted key order:
- in-process lock (threads of one worker)
- Redis lock booking:lock:{key} when Redis is configured (several workers)
- resource_locks row locked with SELECT ... FOR UPDATE inside the booking
  transaction on databases that support row locks

The caller commits inside hold(); locks are released afterwards.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterable, Iterator

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError, LockError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.generated import ResourceLocks as DBResourceLock
from .slots.exceptions import TransientStoreError

logger = logging.getLogger(__name__)


def field_lock_key(field_id: int, day: date) -> str:
    return f"field:{field_id}:{day.isoformat()}"


def staff_lock_key(staff_id: int, day: date) -> str:
    return f"staff:{staff_id}:{day.isoformat()}"


class ResourceLocker:
    """Keyed locks shared by all booking writers of a process."""

    KEY_PREFIX = "booking:lock"

    def __init__(self, redis: Redis | None = None, timeout: float = 10.0):
        self.redis = redis
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _local_lock(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, db: Session, keys: Iterable[str]) -> Iterator[None]:
        ordered = sorted(set(keys))
        local_held: list[threading.Lock] = []
        redis_held = []

        try:
            for key in ordered:
                lock = self._local_lock(key)
                if not lock.acquire(timeout=self.timeout):
                    raise TransientStoreError(f"Timed out waiting for lock {key}")
                local_held.append(lock)

            if self.redis is not None:
                for key in ordered:
                    redis_lock = self.redis.lock(
                        f"{self.KEY_PREFIX}:{key}",
                        timeout=self.timeout * 3,
                        blocking_timeout=self.timeout,
                    )
                    if not redis_lock.acquire():
                        raise TransientStoreError(f"Timed out waiting for lock {key}")
                    redis_held.append(redis_lock)

            lock_rows(db, ordered)
            yield
        except RedisConnectionError as e:
            logger.error(f"Redis unavailable while locking {ordered}: {e}")
            raise TransientStoreError("Lock service is temporarily unavailable") from e
        finally:
            for redis_lock in reversed(redis_held):
                try:
                    redis_lock.release()
                except (LockError, RedisConnectionError) as e:
                    logger.warning(f"Failed to release Redis lock {redis_lock.name}: {e}")
            for lock in reversed(local_held):
                lock.release()


def lock_rows(db: Session, keys: list[str]) -> None:
    """
    Lock one resource_locks row per key until the session commits.

    SQLite has no row locks and serializes writers on its own, so only
    the in-process and Redis layers apply there.
    """
    if not keys or db.get_bind().dialect.name == "sqlite":
        return

    existing = {
        key for (key,) in
        db.query(DBResourceLock.lock_key).filter(DBResourceLock.lock_key.in_(keys)).all()
    }
    for key in keys:
        if key in existing:
            continue
        try:
            with db.begin_nested():
                db.add(DBResourceLock(lock_key=key))
        except IntegrityError:
            # Another writer created the row first; locking it below is enough
            logger.debug(f"Lock row {key} created concurrently")

    (
        db.query(DBResourceLock)
        .filter(DBResourceLock.lock_key.in_(keys))
        .order_by(DBResourceLock.lock_key)
        .with_for_update()
        .all()
    )
