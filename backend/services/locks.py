"""Named mutual-exclusion regions for booking writes.

A booking attempt locks exactly the manager, machine and member it touches,
always in that order, so two transactions naming the same entities in a
different request order cannot deadlock and unrelated bookings never wait on
each other. PostgreSQL uses transaction-scoped advisory locks; other backends
fall back to an in-process keyed mutex table owned by the engine, which is
sufficient when one service instance owns all writes.
"""

import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterator
from weakref import WeakKeyDictionary

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

MANAGER_LOCK_NAMESPACE = 7001
MACHINE_LOCK_NAMESPACE = 7002
USER_LOCK_NAMESPACE = 7003

LockKey = tuple[int, int]


class KeyedLockTable:
    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[LockKey, Lock] = {}

    def lock_for(self, key: LockKey) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock


_engine_lock_tables: 'WeakKeyDictionary[object, KeyedLockTable]' = WeakKeyDictionary()
_engine_lock_tables_guard = Lock()


def lock_table_for(engine) -> KeyedLockTable:
    with _engine_lock_tables_guard:
        table = _engine_lock_tables.get(engine)
        if table is None:
            table = KeyedLockTable()
            _engine_lock_tables[engine] = table
        return table


def ordered_lock_keys(
    manager_id: int | None = None,
    machine_id: int | None = None,
    user_id: int | None = None,
) -> list[LockKey]:
    keys = []
    if manager_id is not None:
        keys.append((MANAGER_LOCK_NAMESPACE, int(manager_id)))
    if machine_id is not None:
        keys.append((MACHINE_LOCK_NAMESPACE, int(machine_id)))
    if user_id is not None:
        keys.append((USER_LOCK_NAMESPACE, int(user_id)))
    return keys


def _acquire(db: Session, keys: list[LockKey]) -> list[Lock]:
    bind = db.get_bind()
    if bind.dialect.name == 'postgresql':
        for namespace, key in keys:
            db.execute(
                text('SELECT pg_advisory_xact_lock(:namespace, :key)'),
                {'namespace': namespace, 'key': key},
            )
        return []

    table = lock_table_for(getattr(bind, 'engine', bind))
    held: list[Lock] = []
    try:
        for key in keys:
            lock = table.lock_for(key)
            lock.acquire()
            held.append(lock)
    except BaseException:
        for lock in reversed(held):
            lock.release()
        raise
    return held


@contextmanager
def locked_transaction(
    db: Session,
    manager_id: int | None = None,
    machine_id: int | None = None,
    user_id: int | None = None,
) -> Iterator[list[LockKey]]:
    """
    Run the block as one atomic unit while holding the entities' locks.

    The session is committed when the block finishes and rolled back if it
    raises; locks are released only after the commit or rollback completes.
    """
    keys = ordered_lock_keys(manager_id, machine_id, user_id)
    held: list[Lock] = []
    try:
        held = _acquire(db, keys)
        logger.debug('Acquired booking locks %s', keys)
        yield keys
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        for lock in reversed(held):
            lock.release()
