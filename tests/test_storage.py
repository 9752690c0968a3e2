"""
Write transactions: lock retry, escalation and post-commit callbacks.

A second connection holding ``BEGIN IMMEDIATE`` plays the competing
writer, with a short busy timeout so each attempt fails fast.

Usage:
    pytest tests/test_storage.py -v
"""

import sqlite3
import threading

import pytest

from recall import storage as storage_module
from recall.errors import TransientStoreError
from recall.storage import MemoryStorage


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "memory.db"


@pytest.fixture
def blocker(db_path):
    MemoryStorage(db_path)
    conn = sqlite3.connect(str(db_path), isolation_level=None, check_same_thread=False)
    yield conn
    if conn.in_transaction:
        conn.execute("ROLLBACK")
    conn.close()


def _set_marker(store):
    def unit(conn):
        store.set_state('marker', 'written', conn)
        return 'done'
    return unit


class TestTransactionRetry:
    def test_retries_until_lock_released(self, db_path, blocker):
        store = MemoryStorage(db_path, max_retries=10, retry_delay=0.02, busy_timeout=0.01)
        blocker.execute("BEGIN IMMEDIATE")
        release = threading.Timer(0.15, lambda: blocker.execute("ROLLBACK"))
        release.start()
        try:
            assert store.run_transaction(_set_marker(store)) == 'done'
        finally:
            release.join()
        assert store.get_state('marker') == 'written'

    def test_raises_after_max_retries(self, db_path, blocker, monkeypatch):
        store = MemoryStorage(db_path, max_retries=2, retry_delay=0.01, busy_timeout=0.01)
        delays = []
        monkeypatch.setattr(storage_module.time, 'sleep', delays.append)
        blocker.execute("BEGIN IMMEDIATE")

        with pytest.raises(TransientStoreError):
            store.run_transaction(_set_marker(store))
        assert delays == [0.01, 0.02]

        blocker.execute("ROLLBACK")
        assert store.get_state('marker') is None

    def test_other_errors_not_retried(self, db_path, monkeypatch):
        store = MemoryStorage(db_path, retry_delay=0.01)
        delays = []
        monkeypatch.setattr(storage_module.time, 'sleep', delays.append)

        def unit(conn):
            conn.execute("SELECT * FROM no_such_table")

        with pytest.raises(sqlite3.OperationalError):
            store.run_transaction(unit)
        assert delays == []


class TestAfterCommit:
    def test_callback_sees_committed_state(self, db_path):
        store = MemoryStorage(db_path)
        seen = []

        def unit(conn):
            store.set_state('marker', 'written', conn)
            store.after_commit(lambda: seen.append(store.get_state('marker')))
            assert seen == []

        store.run_transaction(unit)
        assert seen == ['written']

    def test_callback_dropped_on_rollback(self, db_path):
        store = MemoryStorage(db_path)
        ran = []

        def unit(conn):
            store.after_commit(lambda: ran.append(True))
            raise ValueError("unit failed")

        with pytest.raises(ValueError):
            store.run_transaction(unit)
        assert ran == []

        store.run_transaction(lambda conn: None)
        assert ran == []

    def test_outside_transaction_runs_immediately(self, db_path):
        store = MemoryStorage(db_path)
        ran = []
        store.after_commit(lambda: ran.append(True))
        assert ran == [True]

    def test_failed_write_does_not_undo_commit(self, db_path):
        store = MemoryStorage(db_path)

        def unit(conn):
            store.set_state('marker', 'written', conn)
            store.after_commit(lambda: open(db_path.parent / 'missing' / 'file.md', 'w'))
            return 'done'

        assert store.run_transaction(unit) == 'done'
        assert store.get_state('marker') == 'written'
