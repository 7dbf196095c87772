"""State backends: where snapshots and their locks are stored.

- LocalBackend: JSON state file on disk, lock file beside it
- HttpBackend: Terraform-compatible http backend (GET/POST state,
  LOCK/UNLOCK on the lock address)

Writes are only accepted under the active lock token and with a serial
exactly one above the stored serial.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import requests

from config import EngineConfig
from engine.errors import BackendError, InvalidToken, StateConflict
from engine.lock import FileLockStore, LockManager, LockRecord, LockStore
from engine.state import StateSnapshot

logger = logging.getLogger(__name__)

# Status codes an http backend uses to report a held lock
LOCKED_STATUSES = {409, 423}


@runtime_checkable
class StateBackend(Protocol):
    """Protocol for state storage."""

    key: str

    def read(self) -> Optional[StateSnapshot]:
        """Return the stored snapshot, or None when no state exists."""

    def write(self, snapshot: StateSnapshot, lock_token: str) -> None:
        """Persist snapshot under the given lock token."""

    def lock_store(self) -> LockStore:
        """Lock store guarding this backend's state."""


def check_write(key: str, current: Optional[StateSnapshot], snapshot: StateSnapshot,
                active_lock: Optional[LockRecord], lock_token: str) -> None:
    """Validate a pending write against the stored snapshot and lock.

    Raises:
        StateConflict: If the write is not made under the active lock, the
            lineage differs, or the serial is not exactly one above the
            stored serial
    """
    if active_lock is None:
        raise StateConflict(f"Refusing to write state '{key}': state is not locked")
    if active_lock.id != lock_token:
        raise StateConflict(
            f"Refusing to write state '{key}': lock token {lock_token} "
            f"does not match active lock {active_lock.id}"
        )
    if current is None:
        if snapshot.serial < 1:
            raise StateConflict(f"First write of '{key}' must have serial >= 1")
        return
    if current.lineage != snapshot.lineage:
        raise StateConflict(
            f"Lineage mismatch for '{key}': stored {current.lineage}, writing {snapshot.lineage}"
        )
    if snapshot.serial != current.serial + 1:
        raise StateConflict(
            f"Serial conflict for '{key}': stored {current.serial}, writing {snapshot.serial}"
        )


class LocalBackend:
    """State stored in a local JSON file.

    The previous document is kept as <file>.backup. Writes go to a temp
    file that is renamed over the state file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.key = str(self.path)
        self._locks = FileLockStore(self.path.parent)

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + '.backup')

    def lock_store(self) -> LockStore:
        return self._locks

    def read(self) -> Optional[StateSnapshot]:
        """Load the state file.

        Raises:
            StateCorrupt: If the file exists but fails validation
        """
        if not self.path.exists():
            return None
        text = self.path.read_text(encoding='utf-8')
        snapshot = StateSnapshot.from_json(text)
        logger.debug(f"Loaded state {self.path} (serial {snapshot.serial})")
        return snapshot

    def write(self, snapshot: StateSnapshot, lock_token: str) -> None:
        current = self.read()
        check_write(self.key, current, snapshot, self._locks.get(self.key), lock_token)
        snapshot.lock_token = lock_token

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if current is not None:
            shutil.copy2(self.path, self.backup_path)

        fd, tmp = tempfile.mkstemp(prefix=f'.{self.path.name}-', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(snapshot.to_json())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved state {self.path} (serial {snapshot.serial})")


class HttpLockStore:
    """Lock records held by an http backend server.

    The protocol has no lock query, so get() can return None while the
    server holds a lock.
    """

    reports_locks = False

    def __init__(self, session: requests.Session, key: str, lock_address: str,
                 unlock_address: str, timeout: int = 30):
        self.session = session
        self.key = key
        self.lock_address = lock_address
        self.unlock_address = unlock_address
        self.timeout = timeout

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise BackendError(f"{method} {url} failed: {e}")

    def _record_from_response(self, resp: requests.Response, key: str) -> Optional[LockRecord]:
        try:
            data = resp.json()
        except ValueError:
            return None
        if not isinstance(data, dict) or not data.get('ID'):
            return None
        return LockRecord.from_dict(data, key=key)

    def put_if_absent(self, record: LockRecord) -> Optional[LockRecord]:
        resp = self._request('LOCK', self.lock_address, json=record.to_dict())
        if resp.status_code == 200:
            return None
        if resp.status_code in LOCKED_STATUSES:
            existing = self._record_from_response(resp, record.key)
            # An empty id marks a holder the server did not describe
            return existing or LockRecord(id='', key=record.key, who='unknown')
        raise BackendError(f"Unexpected lock response: {resp.status_code} - {resp.text[:100]}")

    def get(self, key: str) -> Optional[LockRecord]:
        # The http protocol has no lock query; servers that echo the
        # current lock on GET of the lock address are supported.
        resp = self._request('GET', self.lock_address)
        if resp.status_code != 200:
            return None
        return self._record_from_response(resp, key)

    def delete(self, key: str, lock_id: str) -> None:
        resp = self._request('UNLOCK', self.unlock_address, json={'ID': lock_id, 'Path': key})
        if resp.status_code == 200:
            return
        if resp.status_code in LOCKED_STATUSES or resp.status_code == 404:
            held = self._record_from_response(resp, key)
            raise InvalidToken(key, lock_id, held=held.id if held else None)
        raise BackendError(f"Unexpected unlock response: {resp.status_code} - {resp.text[:100]}")


class HttpBackend:
    """State stored by a remote http backend."""

    def __init__(self, address: str, lock_address: str = '', unlock_address: str = '',
                 username: str = '', password: str = '', timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.address = address
        self.key = address
        self.timeout = timeout
        self.session = session or requests.Session()
        if username:
            self.session.auth = (username, password)
        lock_address = lock_address or address
        self._locks = HttpLockStore(
            self.session, address, lock_address, unlock_address or lock_address, timeout,
        )

    def lock_store(self) -> LockStore:
        return self._locks

    def read(self) -> Optional[StateSnapshot]:
        try:
            resp = self.session.get(self.address, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise BackendError(f"Cannot read state from {self.address}: {e}")

        if resp.status_code in (204, 404):
            return None
        if resp.status_code != 200:
            raise BackendError(f"Unexpected state response: {resp.status_code} - {resp.text[:100]}")
        if not resp.text.strip():
            return None
        return StateSnapshot.from_json(resp.text)

    def write(self, snapshot: StateSnapshot, lock_token: str) -> None:
        current = self.read()
        # The server checks the ID parameter against its own lock
        check_write(self.key, current, snapshot, LockRecord(id=lock_token, key=self.key, who=''),
                    lock_token)
        snapshot.lock_token = lock_token
        try:
            resp = self.session.post(
                self.address,
                params={'ID': lock_token},
                data=snapshot.to_json(),
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise BackendError(f"Cannot write state to {self.address}: {e}")

        if resp.status_code in LOCKED_STATUSES:
            raise StateConflict(f"Server rejected state write for lock {lock_token}: {resp.text[:100]}")
        if resp.status_code not in (200, 201, 204):
            raise BackendError(f"Unexpected state write response: {resp.status_code} - {resp.text[:100]}")
        logger.debug(f"Saved state to {self.address} (serial {snapshot.serial})")


def backend_from_config(config: EngineConfig) -> StateBackend:
    """Build the configured state backend."""
    backend = config.backend
    if backend.type == 'http':
        return HttpBackend(
            address=backend.address,
            lock_address=backend.lock_address,
            unlock_address=backend.unlock_address,
            username=backend.username,
            password=backend.password,
            timeout=backend.timeout,
        )
    return LocalBackend(backend.path)


def lock_manager_for(config: EngineConfig, backend: StateBackend) -> LockManager:
    """Build a lock manager over the backend's lock store."""
    return LockManager(
        backend.lock_store(),
        stale_after=config.lock_stale_after,
        audit_log=config.audit_log,
    )
