import sqlite3
import unittest

import pytest

import db
from db_pool import SQLiteConnectionPool
from errors import ConflictError, TransientStorageError


@pytest.mark.usefixtures("temp_db")
def test_init_creates_tables_and_is_idempotent():
    db.init()
    assert db.table_counts() == {
        "questions": 0,
        "activity_configs": 0,
        "attempts": 0,
        "user_state": 0,
        "analytics_events": 0,
    }


@pytest.mark.usefixtures("temp_db")
def test_transaction_commits_and_rolls_back():
    with db.transaction() as con:
        db.save_user_state("kid-1", {"arrange": {"level": 1, "highest_question_no": 1}}, None, 1, con=con)
    assert db.get_user_state("kid-1")["version"] == 1

    with pytest.raises(ValueError):
        with db.transaction() as con:
            db.save_user_state("kid-1", {}, None, 2, con=con)
            raise ValueError("abort")
    assert db.get_user_state("kid-1")["version"] == 1


@pytest.mark.usefixtures("temp_db")
def test_ensure_user_state_creates_empty_document_once():
    first = db.ensure_user_state("kid-1")
    second = db.ensure_user_state("kid-1")
    assert first["unlocked"] == "{}"
    assert first["version"] == 0
    assert second["created_at"] == first["created_at"]


@pytest.mark.usefixtures("temp_db")
def test_ensure_user_state_raises_when_row_is_missing(monkeypatch):
    monkeypatch.setattr(db, "get_user_state", lambda user_id, con=None: None)
    with pytest.raises(TransientStorageError):
        db.ensure_user_state("kid-1")


@pytest.mark.usefixtures("temp_db")
def test_duplicate_config_is_a_conflict():
    db.insert_config({"activity": "arrange", "display_name": "Arrange"})
    with pytest.raises(ConflictError):
        db.insert_config({"activity": "arrange", "display_name": "Arrange"})
    assert db.update_config({"activity": "missing", "display_name": "x"}) == 0


def test_decode_json_field_tolerates_bad_values():
    assert db.decode_json_field(None, []) == []
    assert db.decode_json_field("", {}) == {}
    assert db.decode_json_field("{oops", {"fallback": True}) == {"fallback": True}
    assert db.decode_json_field('["a"]') == ["a"]


class ConnectionPoolTests(unittest.TestCase):
    def test_exhausted_pool_raises_operational_error(self):
        pool = SQLiteConnectionPool(":memory:", max_connections=1, timeout=0.05)
        with pool.get_connection():
            with self.assertRaises(sqlite3.OperationalError):
                with pool.get_connection():
                    pass
        pool.close_all()

    def test_connections_are_reused(self):
        pool = SQLiteConnectionPool(":memory:", max_connections=2)
        with pool.get_connection() as first:
            pass
        with pool.get_connection() as second:
            self.assertIs(first, second)
        pool.close_all()

    def test_exhaustion_surfaces_as_transient_error(self):
        original = db._pool
        db._pool = SQLiteConnectionPool(":memory:", max_connections=1, timeout=0.05)
        try:
            with db._conn():
                with self.assertRaises(TransientStorageError):
                    db._query("SELECT 1")
        finally:
            db._pool.close_all()
            db._pool = original
