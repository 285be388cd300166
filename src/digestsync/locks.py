"""Cluster-wide, TTL-bounded job lock.

The lock lives in a single table keyed on the lock name. Acquisition is an
insert-if-absent, so the primary key makes it atomic across every node that
shares the database. A record whose TTL has elapsed belongs to a crashed or
stuck run and is cleared before the insert is attempted.
"""
import contextlib
import datetime
import logging
import socket
import uuid
from dataclasses import dataclass

from sqlalchemy import text

from digestsync.exceptions import LockLost, LockNotAcquired
from digestsync.repository import DatabaseContext
from digestsync.utils import from_epoch, to_epoch, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lock:
    """Handle for a held lock. The token identifies this particular hold.
    """
    name: str
    holder: str
    token: str
    acquired_at: datetime.datetime


class LockCoordinator:
    """Acquires, renews and releases named job locks.
    """

    def __init__(self, db: DatabaseContext, holder: str = None, clock: callable = None):
        """Initialize lock coordinator.

        Args:
            db: Database context
            holder: Name recorded as lock holder (defaults to hostname)
            clock: Callable returning the current aware datetime
        """
        self.db = db
        self.holder = holder or socket.gethostname()
        self._clock = clock or utcnow

    @property
    def table(self) -> str:
        return self.db.tables['JobLock']

    def _clear_expired(self, conn, name: str, now: float) -> bool:
        """Delete the record for name if its TTL has elapsed.

        Returns
            True if a stale record was removed
        """
        row = conn.execute(text(f"""
            SELECT holder, expires_at FROM {self.table}
            WHERE name = :name AND expires_at <= :now
        """), {'name': name, 'now': now}).first()
        if row is None:
            return False

        logger.warning(f'Stale lock {name} detected (holder: {row[0]}, expired: {from_epoch(row[1])}), forcing release')
        conn.execute(text(f'DELETE FROM {self.table} WHERE name = :name AND expires_at <= :now'),
                     {'name': name, 'now': now})
        return True

    def try_acquire(self, name: str, ttl: datetime.timedelta) -> Lock | None:
        """Attempt to acquire the named lock without waiting.

        Args:
            name: Lock name
            ttl: Time after which the lock is considered abandoned

        Returns
            Lock if acquired, None if another holder has it
        """
        now = self._clock()
        lock = Lock(name=name, holder=self.holder, token=uuid.uuid4().hex, acquired_at=now)
        with self.db.engine.connect() as conn:
            self._clear_expired(conn, name, to_epoch(now))
            result = conn.execute(text(f"""
                INSERT INTO {self.table} (name, holder, token, acquired_at, expires_at)
                VALUES (:name, :holder, :token, :acquired_at, :expires_at)
                ON CONFLICT (name) DO NOTHING
            """), {
                'name': name,
                'holder': lock.holder,
                'token': lock.token,
                'acquired_at': to_epoch(now),
                'expires_at': to_epoch(now + ttl),
            })
            conn.commit()

        if result.rowcount > 0:
            logger.info(f'Lock {name} acquired by {self.holder} until {now + ttl}')
            return lock

        logger.info(f'Lock {name} is held by another run')
        return None

    @contextlib.contextmanager
    def acquire(self, name: str, ttl: datetime.timedelta):
        """Context manager for lock acquisition.

        Args:
            name: Lock name
            ttl: Lock time-to-live

        Raises
            LockNotAcquired: If the lock is held by another run
        """
        lock = self.try_acquire(name, ttl)
        if lock is None:
            raise LockNotAcquired(f'Lock {name} is held by another run')
        try:
            yield lock
        finally:
            self.release(lock)

    def renew(self, lock: Lock, ttl: datetime.timedelta) -> datetime.datetime:
        """Extend a held lock.

        Args:
            lock: Lock previously returned by try_acquire
            ttl: New time-to-live measured from now

        Returns
            New expiry time

        Raises
            LockLost: If the lock expired or now belongs to someone else
        """
        now = self._clock()
        expires_at = now + ttl
        sql = f"""
        UPDATE {self.table}
        SET expires_at = :expires_at
        WHERE name = :name AND token = :token AND expires_at > :now
        """
        result = self.db.execute(sql, {
            'expires_at': to_epoch(expires_at),
            'name': lock.name,
            'token': lock.token,
            'now': to_epoch(now),
        })
        if result.rowcount == 0:
            raise LockLost(f'Lock {lock.name} is no longer held by {lock.holder}')
        logger.debug(f'Lock {lock.name} renewed until {expires_at}')
        return expires_at

    def release(self, lock: Lock) -> None:
        """Release a held lock; a lock taken over by another holder is left alone.
        """
        try:
            sql = f'DELETE FROM {self.table} WHERE name = :name AND token = :token'
            result = self.db.execute(sql, {'name': lock.name, 'token': lock.token})
            if result.rowcount:
                logger.debug(f'Lock {lock.name} released by {lock.holder}')
            else:
                logger.warning(f'Lock {lock.name} was no longer held by {lock.holder} at release')
        except Exception as e:
            logger.error(f'Lock {lock.name} release failed: {e}')

    def get_holder(self, name: str) -> dict | None:
        """Return the current holder record for name, if any.
        """
        sql = f'SELECT name, holder, token, acquired_at, expires_at FROM {self.table} WHERE name = :name'
        rows = self.db.query(sql, {'name': name})
        if not rows:
            return None
        data = dict(rows[0]._mapping)
        data['acquired_at'] = from_epoch(data['acquired_at'])
        data['expires_at'] = from_epoch(data['expires_at'])
        return data
