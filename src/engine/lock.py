"""Lock management for state files.

A lock is keyed by the identity of the state file it guards. Lock records
live in an external store that offers a conditional write
(put_if_absent), so exactly one of several concurrent acquirers wins
regardless of which process they run in.

Stale locks are reported but never cleared automatically; force_unlock
is an explicit, audited operator action.
"""

import getpass
import json
import logging
import os
import re
import socket
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Protocol, runtime_checkable

from common import safe_filename
from engine.errors import InvalidToken, LockHeld, LockNotStale, LockStateUnknown

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')

LOCK_FORMAT_VERSION = '1'


def default_holder() -> str:
    """Identity recorded in new locks: user@hostname."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = 'unknown'
    return f'{user}@{socket.gethostname()}'


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace('+00:00', 'Z')


def _parse_time(value: str) -> float:
    # Fractional seconds beyond microseconds (Go writes nanoseconds) are truncated
    value = re.sub(r'(\.\d{6})\d+', r'\1', value.strip())
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value).timestamp()


@dataclass
class LockRecord:
    """An active lock on a state file.

    Serialized with Terraform's lock-info field names so records can be
    exchanged with http backends.

    Attributes:
        id: Lock token handed to the holder
        key: Identity of the guarded state file
        who: Holder identity (user@host)
        operation: Operation that took the lock (plan, apply, ...)
        created: Acquisition time (epoch seconds)
        info: Free-form extra information
    """
    id: str
    key: str
    who: str
    operation: str = ''
    created: float = 0.0
    info: str = ''

    @property
    def identified(self) -> bool:
        """False for placeholders standing in for a lock the backend did not describe."""
        return bool(self.id)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created

    def to_dict(self) -> dict:
        return {
            'ID': self.id,
            'Path': self.key,
            'Who': self.who,
            'Operation': self.operation,
            'Created': _format_time(self.created),
            'Info': self.info,
            'Version': LOCK_FORMAT_VERSION,
        }

    @classmethod
    def from_dict(cls, data: dict, key: Optional[str] = None) -> 'LockRecord':
        created = data.get('Created')
        return cls(
            id=data['ID'],
            key=data.get('Path') or key or '',
            who=data.get('Who', ''),
            operation=data.get('Operation', ''),
            created=_parse_time(created) if created else 0.0,
            info=data.get('Info', ''),
        )


@runtime_checkable
class LockStore(Protocol):
    """Storage for lock records with a conditional write.

    reports_locks is False for stores whose get() may return None while a
    lock is held.
    """

    reports_locks: bool

    def put_if_absent(self, record: LockRecord) -> Optional[LockRecord]:
        """Store record unless a lock exists for record.key.

        Returns None when stored, or the existing record when held.
        """

    def get(self, key: str) -> Optional[LockRecord]:
        """Return the active lock for key, if any."""

    def delete(self, key: str, lock_id: str) -> None:
        """Delete the lock for key if its id matches.

        Raises:
            InvalidToken: If no lock exists or the id differs
        """


class MemoryLockStore:
    """In-process lock store guarded by a mutex."""

    reports_locks = True

    def __init__(self):
        self._mutex = threading.Lock()
        self._records: dict[str, LockRecord] = {}

    def put_if_absent(self, record: LockRecord) -> Optional[LockRecord]:
        with self._mutex:
            existing = self._records.get(record.key)
            if existing is not None:
                return existing
            self._records[record.key] = record
            return None

    def get(self, key: str) -> Optional[LockRecord]:
        with self._mutex:
            return self._records.get(key)

    def delete(self, key: str, lock_id: str) -> None:
        with self._mutex:
            existing = self._records.get(key)
            if existing is None:
                raise InvalidToken(key, lock_id)
            if existing.id != lock_id:
                raise InvalidToken(key, lock_id, held=existing.id)
            del self._records[key]


class FileLockStore:
    """Lock store backed by one lock file per key in a directory.

    A lock file is published with os.link(), which fails atomically when
    the target already exists, so readers never observe a partial record.
    """

    reports_locks = True

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f'.{safe_filename(key)}.lock.json'

    def put_if_absent(self, record: LockRecord) -> Optional[LockRecord]:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(record.key)
        fd, tmp = tempfile.mkstemp(prefix='.lock-', dir=self.directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(record.to_dict(), f, indent=2)
            try:
                os.link(tmp, path)
            except FileExistsError:
                existing = self.get(record.key)
                if existing is None:
                    # Released between our link attempt and the read
                    return self.put_if_absent(record)
                return existing
            return None
        finally:
            os.unlink(tmp)

    def get(self, key: str) -> Optional[LockRecord]:
        path = self._path(key)
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        return LockRecord.from_dict(data, key=key)

    def delete(self, key: str, lock_id: str) -> None:
        existing = self.get(key)
        if existing is None:
            raise InvalidToken(key, lock_id)
        if existing.id != lock_id:
            raise InvalidToken(key, lock_id, held=existing.id)
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            raise InvalidToken(key, lock_id)


class LockManager:
    """Acquires and releases exclusive state locks.

    Attributes:
        store: Where lock records live
        stale_after: Age in seconds after which a lock is reported stale
        audit_log: Optional JSON-lines file recording forced unlocks
    """

    def __init__(self, store: LockStore, stale_after: float = 3600.0,
                 audit_log: Optional[Path] = None):
        self.store = store
        self.stale_after = stale_after
        self.audit_log = audit_log

    @property
    def reports_locks(self) -> bool:
        return getattr(self.store, 'reports_locks', True)

    def is_stale(self, record: LockRecord, now: Optional[float] = None) -> bool:
        return record.identified and record.age(now) > self.stale_after

    def inspect(self, key: str) -> Optional[LockRecord]:
        """Return the active lock for key, if any.

        None means unlocked only when reports_locks is True.
        """
        return self.store.get(key)

    def acquire(self, key: str, who: Optional[str] = None, operation: str = '',
                info: str = '') -> str:
        """Take the lock for key.

        Returns:
            Lock token to pass to release()

        Raises:
            LockHeld: If another holder has the lock
        """
        record = LockRecord(
            id=str(uuid.uuid4()),
            key=key,
            who=who or default_holder(),
            operation=operation,
            created=time.time(),
            info=info,
        )
        existing = self.store.put_if_absent(record)
        if existing is not None:
            stale = self.is_stale(existing)
            if stale:
                logger.warning(
                    f"Lock {existing.id} on '{key}' held by {existing.who} "
                    f"is stale ({existing.age():.0f}s old)"
                )
            raise LockHeld(existing, stale=stale)
        logger.debug(f"Acquired lock {record.id} on '{key}' for {operation or 'operation'}")
        return record.id

    def acquire_with_retry(self, key: str, timeout: float = 0.0, interval: float = 1.0,
                           who: Optional[str] = None, operation: str = '') -> str:
        """Take the lock, retrying for up to timeout seconds while it is held.

        Raises:
            LockHeld: If the lock is still held when the timeout expires
        """
        deadline = time.time() + timeout
        while True:
            try:
                return self.acquire(key, who=who, operation=operation)
            except LockHeld:
                remaining = deadline - time.time()
                if remaining <= 0:
                    raise
                logger.info(f"State '{key}' is locked, retrying in {min(interval, remaining):.1f}s...")
                time.sleep(min(interval, remaining))

    def release(self, key: str, token: str) -> None:
        """Release the lock for key.

        Raises:
            InvalidToken: If no lock is held or the token differs
        """
        self.store.delete(key, token)
        logger.debug(f"Released lock {token} on '{key}'")

    @contextmanager
    def hold(self, key: str, operation: str = '', timeout: float = 0.0,
             who: Optional[str] = None) -> Iterator[str]:
        """Hold the lock for the duration of a with-block.

        The lock is released on every exit path, including errors and
        KeyboardInterrupt.
        """
        token = self.acquire_with_retry(key, timeout=timeout, who=who, operation=operation)
        try:
            yield token
        finally:
            try:
                self.release(key, token)
            except InvalidToken as e:
                logger.error(f"Lock was cleared while held: {e}")

    def force_unlock(self, key: str, lock_id: str, operator: Optional[str] = None,
                     force: bool = False) -> LockRecord:
        """Clear a lock held by someone else.

        Args:
            key: State identity
            lock_id: ID of the lock to clear (must match the active lock)
            operator: Who is clearing the lock (recorded in the audit trail)
            force: Clear the lock even if it is not stale

        Returns:
            The record that was cleared

        Raises:
            InvalidToken: If no lock exists or lock_id does not match
            LockNotStale: If the lock is younger than stale_after and not force
            LockStateUnknown: If the store cannot report the lock and not force
        """
        record = self.store.get(key)
        if record is None and not self.reports_locks:
            # Only the backend knows the holder; it accepts or rejects the id
            if not force:
                raise LockStateUnknown(key, lock_id)
            record = LockRecord(id=lock_id, key=key, who='unknown')
            self.store.delete(key, lock_id)
            self._audit(record, operator or default_holder(), None, force)
            return record
        if record is None:
            raise InvalidToken(key, lock_id)
        if record.id != lock_id:
            raise InvalidToken(key, lock_id, held=record.id)

        age = record.age()
        if not force and age <= self.stale_after:
            raise LockNotStale(record, age, self.stale_after)

        self.store.delete(key, lock_id)
        self._audit(record, operator or default_holder(), age, force)
        return record

    def _audit(self, record: LockRecord, operator: str, age: Optional[float], force: bool) -> None:
        """Record a forced unlock. age is None when the backend did not report the lock."""
        entry = {
            'event': 'force-unlock',
            'time': _format_time(time.time()),
            'operator': operator,
            'forced_fresh': force and (age is None or age <= self.stale_after),
            'age_seconds': None if age is None else round(age, 1),
            'lock': record.to_dict() if age is not None else {'ID': record.id, 'Path': record.key},
        }
        age_text = 'age unknown' if age is None else f'{age:.0f}s old'
        audit_logger.warning(
            f"force-unlock by {operator}: cleared lock {record.id} on '{record.key}' "
            f"held by {record.who} ({age_text})"
        )
        if self.audit_log is not None:
            self.audit_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self.audit_log, 'a', encoding='utf-8') as f:
                f.write(json.dumps(entry) + '\n')
