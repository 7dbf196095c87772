"""Tests for engine.lock module."""

import json
import logging
import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.errors import InvalidToken, LockHeld, LockNotStale
from engine.lock import FileLockStore, LockManager, LockRecord, MemoryLockStore


@pytest.fixture(params=['memory', 'file'])
def store(request, tmp_path):
    """Each lock store implementation."""
    if request.param == 'memory':
        return MemoryLockStore()
    return FileLockStore(tmp_path / 'locks')


class TestLockRecord:
    """Tests for LockRecord serialization."""

    def test_terraform_field_names(self):
        record = LockRecord(id='abc', key='s.tfstate', who='me@host', operation='apply',
                            created=0.0, info='x')
        d = record.to_dict()
        assert d['ID'] == 'abc'
        assert d['Path'] == 's.tfstate'
        assert d['Who'] == 'me@host'
        assert d['Operation'] == 'apply'
        assert d['Created'] == '1970-01-01T00:00:00Z'

    def test_from_dict_parses_nanosecond_timestamps(self):
        record = LockRecord.from_dict({
            'ID': 'abc',
            'Path': 'k',
            'Who': 'w',
            'Created': '2024-05-01T10:00:00.123456789Z',
        })
        assert record.created == pytest.approx(1714557600.123456)

    def test_from_dict_defaults_key(self):
        record = LockRecord.from_dict({'ID': 'abc'}, key='fallback')
        assert record.key == 'fallback'
        assert record.created == 0.0

    def test_age(self):
        record = LockRecord(id='a', key='k', who='w', created=100.0)
        assert record.age(now=160.0) == 60.0


class TestAcquireRelease:
    """Tests for acquire/release on every store."""

    def test_acquire_returns_token(self, store):
        manager = LockManager(store)
        token = manager.acquire('x', who='alice', operation='apply')
        record = manager.inspect('x')
        assert record.id == token
        assert record.who == 'alice'
        assert record.operation == 'apply'

    def test_acquire_held_raises(self, store):
        manager = LockManager(store)
        token = manager.acquire('x', who='alice')
        with pytest.raises(LockHeld) as exc_info:
            manager.acquire('x', who='bob')
        assert exc_info.value.record.id == token
        assert exc_info.value.record.who == 'alice'
        assert exc_info.value.stale is False

    def test_keys_are_independent(self, store):
        manager = LockManager(store)
        manager.acquire('x')
        manager.acquire('y')

    def test_release_then_reacquire(self, store):
        manager = LockManager(store)
        token = manager.acquire('x')
        manager.release('x', token)
        assert manager.inspect('x') is None
        assert manager.acquire('x') != token

    def test_release_wrong_token(self, store):
        manager = LockManager(store)
        token = manager.acquire('x')
        with pytest.raises(InvalidToken) as exc_info:
            manager.release('x', 'not-the-token')
        assert exc_info.value.held == token
        assert manager.inspect('x').id == token

    def test_release_unlocked(self, store):
        manager = LockManager(store)
        with pytest.raises(InvalidToken):
            manager.release('x', 'whatever')

    def test_held_lock_reported_stale(self, store):
        manager = LockManager(store, stale_after=10)
        store.put_if_absent(LockRecord(id='old', key='x', who='ghost', created=time.time() - 60))
        with pytest.raises(LockHeld) as exc_info:
            manager.acquire('x')
        assert exc_info.value.stale is True
        assert 'force-unlock old' in str(exc_info.value)

    def test_store_reports_locks(self, store):
        assert LockManager(store).reports_locks is True

    def test_unidentified_holder_never_stale(self, store):
        manager = LockManager(store, stale_after=10)
        assert manager.is_stale(LockRecord(id='', key='x', who='unknown')) is False

    def test_concurrent_acquire_single_winner(self, store):
        manager = LockManager(store)
        workers = 8
        barrier = threading.Barrier(workers)
        tokens = []
        held = []

        def _try():
            barrier.wait()
            try:
                tokens.append(manager.acquire('x'))
            except LockHeld as e:
                held.append(e)

        threads = [threading.Thread(target=_try) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(tokens) == 1
        assert len(held) == workers - 1
        assert manager.inspect('x').id == tokens[0]


class TestHold:
    """Tests for the hold() context manager."""

    def test_releases_on_exit(self):
        manager = LockManager(MemoryLockStore())
        with manager.hold('x', operation='apply') as token:
            assert manager.inspect('x').id == token
        assert manager.inspect('x') is None

    def test_releases_on_error(self):
        manager = LockManager(MemoryLockStore())
        with pytest.raises(RuntimeError):
            with manager.hold('x'):
                raise RuntimeError('boom')
        assert manager.inspect('x') is None

    def test_releases_on_keyboard_interrupt(self):
        manager = LockManager(MemoryLockStore())
        with pytest.raises(KeyboardInterrupt):
            with manager.hold('x'):
                raise KeyboardInterrupt
        assert manager.inspect('x') is None

    def test_lock_cleared_while_held_is_logged(self, caplog):
        manager = LockManager(MemoryLockStore())
        with caplog.at_level(logging.ERROR):
            with manager.hold('x') as token:
                manager.store.delete('x', token)
        assert 'cleared while held' in caplog.text

    def test_retry_until_released(self):
        manager = LockManager(MemoryLockStore())
        token = manager.acquire('x')
        timer = threading.Timer(0.2, manager.release, args=('x', token))
        timer.start()
        try:
            acquired = manager.acquire_with_retry('x', timeout=5, interval=0.05)
        finally:
            timer.cancel()
        assert manager.inspect('x').id == acquired

    def test_retry_times_out(self):
        manager = LockManager(MemoryLockStore())
        manager.acquire('x')
        with pytest.raises(LockHeld):
            manager.acquire_with_retry('x', timeout=0.1, interval=0.05)


class TestForceUnlock:
    """Tests for force_unlock and its audit trail."""

    def _stale(self, manager, key='x'):
        record = LockRecord(id='stuck', key=key, who='ghost@old', operation='apply',
                            created=time.time() - 7200)
        manager.store.put_if_absent(record)
        return record

    def test_clears_stale_lock(self, store):
        manager = LockManager(store, stale_after=3600)
        self._stale(manager)
        cleared = manager.force_unlock('x', 'stuck', operator='ops@box')
        assert cleared.who == 'ghost@old'
        assert manager.inspect('x') is None

    def test_refuses_fresh_lock(self, store):
        manager = LockManager(store, stale_after=3600)
        token = manager.acquire('x')
        with pytest.raises(LockNotStale):
            manager.force_unlock('x', token, operator='ops')
        assert manager.inspect('x').id == token

    def test_force_clears_fresh_lock(self, store):
        manager = LockManager(store, stale_after=3600)
        token = manager.acquire('x')
        manager.force_unlock('x', token, operator='ops', force=True)
        assert manager.inspect('x') is None

    def test_id_must_match(self, store):
        manager = LockManager(store)
        self._stale(manager)
        with pytest.raises(InvalidToken):
            manager.force_unlock('x', 'other-id', operator='ops')
        assert manager.inspect('x') is not None

    def test_no_lock(self, store):
        manager = LockManager(store)
        with pytest.raises(InvalidToken):
            manager.force_unlock('x', 'stuck', operator='ops')

    def test_audit_logger(self, caplog):
        manager = LockManager(MemoryLockStore())
        self._stale(manager)
        with caplog.at_level(logging.WARNING, logger='audit'):
            manager.force_unlock('x', 'stuck', operator='ops@box')
        records = [r for r in caplog.records if r.name == 'audit']
        assert len(records) == 1
        assert 'ops@box' in records[0].getMessage()
        assert 'stuck' in records[0].getMessage()

    def test_audit_file(self, tmp_path):
        audit = tmp_path / 'audit' / 'log.jsonl'
        manager = LockManager(MemoryLockStore(), audit_log=audit)
        self._stale(manager)
        manager.force_unlock('x', 'stuck', operator='ops@box')

        lines = audit.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry['event'] == 'force-unlock'
        assert entry['operator'] == 'ops@box'
        assert entry['forced_fresh'] is False
        assert entry['lock']['ID'] == 'stuck'


class TestFileLockStore:
    """Tests specific to the file-backed store."""

    def test_lock_file_is_json(self, tmp_path):
        store = FileLockStore(tmp_path)
        manager = LockManager(store)
        token = manager.acquire('state/main.tfstate', who='alice')
        files = list(tmp_path.glob('.*.lock.json'))
        assert len(files) == 1
        assert json.loads(files[0].read_text())['ID'] == token

    def test_visible_across_instances(self, tmp_path):
        token = LockManager(FileLockStore(tmp_path)).acquire('x')
        with pytest.raises(LockHeld) as exc_info:
            LockManager(FileLockStore(tmp_path)).acquire('x')
        assert exc_info.value.record.id == token

    def test_no_temp_files_left(self, tmp_path):
        manager = LockManager(FileLockStore(tmp_path))
        manager.acquire('x')
        with pytest.raises(LockHeld):
            manager.acquire('x')
        assert not list(tmp_path.glob('.lock-*'))
